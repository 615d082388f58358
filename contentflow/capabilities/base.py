"""
Capability contracts.

Node behaviors reach external services only through these narrow
interfaces: an AI text-generation service and a vector-similarity index.
"""

from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, runtime_checkable
from dataclasses import dataclass, field
from pydantic import BaseModel, Field


class GenerationParameters(BaseModel):
    """Sampling controls for a generation call."""
    temperature: float = Field(0.7, ge=0.0, le=2.0)
    top_p: float = Field(1.0, gt=0.0, le=1.0)
    top_k: Optional[int] = Field(None, ge=1)
    max_tokens: int = Field(512, ge=1)


@dataclass
class SearchHit:
    """One result of a similarity search."""
    content_id: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content_id": self.content_id,
            "score": self.score,
            "metadata": self.metadata,
        }


@runtime_checkable
class GenerationCapability(Protocol):
    def generate(self, prompt: str, parameters: GenerationParameters) -> AsyncIterator[str]:
        """Stream text chunks; raises GenerationError on failure."""
        ...


@runtime_checkable
class VectorSearchCapability(Protocol):
    async def embed(self, text: str) -> List[float]:
        ...

    async def search(
        self,
        query_embedding: List[float],
        limit: int,
        similarity_threshold: float,
    ) -> List[SearchHit]:
        """Hits ordered by descending score."""
        ...

    async def upsert(
        self,
        content_id: str,
        embedding: List[float],
        metadata: Dict[str, Any],
    ) -> None:
        ...


@dataclass
class Capabilities:
    """The set of external services available to node behaviors."""
    generator: Optional[GenerationCapability] = None
    vector_index: Optional[VectorSearchCapability] = None
