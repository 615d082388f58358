"""
Capabilities package - Contracts and adapters for external services.
"""

from contentflow.capabilities.base import (
    Capabilities,
    GenerationCapability,
    GenerationParameters,
    SearchHit,
    VectorSearchCapability,
)
from contentflow.capabilities.http import HttpGenerator
from contentflow.capabilities.memory import (
    HashingEmbedder,
    InMemoryVectorIndex,
    TemplateGenerator,
)

__all__ = [
    "Capabilities",
    "GenerationCapability",
    "GenerationParameters",
    "SearchHit",
    "VectorSearchCapability",
    "HttpGenerator",
    "HashingEmbedder",
    "InMemoryVectorIndex",
    "TemplateGenerator",
]
