"""
In-process capability implementations.

``TemplateGenerator`` produces deterministic text without any network
access and ``InMemoryVectorIndex`` keeps embeddings in a dict. They back
the demo workflow and the test-suite, and are the defaults when no
generation service is configured.
"""

from typing import Any, AsyncIterator, Dict, List, Tuple
import asyncio
import hashlib
import math
import re

from contentflow.capabilities.base import GenerationParameters, SearchHit
from contentflow.errors import SearchError


class TemplateGenerator:
    """
    Offline text generator.

    Echoes a condensed version of the prompt back as a short post, split
    into word chunks to exercise the streaming path.
    """

    def __init__(self, chunk_words: int = 4, delay: float = 0.0):
        self.chunk_words = chunk_words
        self.delay = delay
        self.calls: List[Tuple[str, GenerationParameters]] = []

    def _compose(self, prompt: str, parameters: GenerationParameters) -> str:
        lines = [line.strip() for line in prompt.splitlines() if line.strip()]
        body = " ".join(lines)
        words = body.split()
        return " ".join(words[: parameters.max_tokens])

    async def generate(
        self, prompt: str, parameters: GenerationParameters
    ) -> AsyncIterator[str]:
        self.calls.append((prompt, parameters))
        words = self._compose(prompt, parameters).split()
        for i in range(0, len(words), self.chunk_words):
            if self.delay:
                await asyncio.sleep(self.delay)
            chunk = " ".join(words[i:i + self.chunk_words])
            yield chunk if i == 0 else " " + chunk


_TOKEN_RE = re.compile(r"[a-z0-9]+")


class HashingEmbedder:
    """Bag-of-words embedding using feature hashing."""

    def __init__(self, dimensions: int = 64):
        self.dimensions = dimensions

    def __call__(self, text: str) -> List[float]:
        vector = [0.0] * self.dimensions
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.md5(token.encode("utf-8")).digest()
            index = int.from_bytes(digest[:4], "big") % self.dimensions
            vector[index] += 1.0
        norm = math.sqrt(sum(v * v for v in vector))
        if norm:
            vector = [v / norm for v in vector]
        return vector


def cosine_similarity(a: List[float], b: List[float]) -> float:
    if len(a) != len(b):
        raise SearchError(f"Embedding dimensions differ: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if not norm_a or not norm_b:
        return 0.0
    return dot / (norm_a * norm_b)


class InMemoryVectorIndex:
    """Brute-force cosine similarity index."""

    def __init__(self, embedder: HashingEmbedder = None):
        self.embedder = embedder or HashingEmbedder()
        self._entries: Dict[str, Tuple[List[float], Dict[str, Any]]] = {}

    async def embed(self, text: str) -> List[float]:
        return self.embedder(text)

    async def search(
        self,
        query_embedding: List[float],
        limit: int,
        similarity_threshold: float,
    ) -> List[SearchHit]:
        hits = []
        for content_id, (embedding, metadata) in self._entries.items():
            score = cosine_similarity(query_embedding, embedding)
            if score >= similarity_threshold:
                hits.append(SearchHit(content_id=content_id, score=score, metadata=dict(metadata)))
        hits.sort(key=lambda h: (-h.score, h.content_id))
        return hits[:limit]

    async def upsert(
        self,
        content_id: str,
        embedding: List[float],
        metadata: Dict[str, Any],
    ) -> None:
        if not content_id:
            raise SearchError("content_id cannot be empty")
        self._entries[content_id] = (list(embedding), dict(metadata))

    async def add_text(self, content_id: str, text: str, **metadata: Any) -> None:
        """Embed and store a document."""
        await self.upsert(content_id, await self.embed(text), {"text": text, **metadata})

    def __contains__(self, content_id: str) -> bool:
        return content_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)
