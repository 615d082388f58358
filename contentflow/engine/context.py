"""
Execution Context handed to node behaviors.

All capability access goes through the context so that cancellation is
observed at every capability-call boundary (and between streamed chunks),
and slow capability calls are turned into retryable timeouts.
"""

from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional
import asyncio
import logging

from contentflow.capabilities.base import Capabilities, GenerationParameters, SearchHit
from contentflow.errors import CapabilityError, ExecutionTimeoutError, RunCancelled


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, float, Dict[str, Any]], Awaitable[None]]

_END_OF_STREAM = object()


class ExecutionContext:
    """
    Per-node view of a run.

    Attributes:
        run_id: The run being executed
        node_id: The node being executed
        attempt: 1-based attempt number
        capabilities: External services available to the node
        latency_threshold: Max seconds to wait for one capability response
    """

    def __init__(
        self,
        run_id: str,
        node_id: str,
        capabilities: Capabilities,
        cancel_event: asyncio.Event,
        latency_threshold: Optional[float] = None,
        on_progress: Optional[ProgressCallback] = None,
        attempt: int = 1,
    ):
        self.run_id = run_id
        self.node_id = node_id
        self.capabilities = capabilities
        self.latency_threshold = latency_threshold
        self.attempt = attempt
        self._cancel_event = cancel_event
        self._on_progress = on_progress
        self.progress: Optional[float] = None

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def check_cancelled(self) -> None:
        """Raise RunCancelled if the run has been cancelled."""
        if self._cancel_event.is_set():
            raise RunCancelled(f"Run '{self.run_id}' cancelled during node '{self.node_id}'")

    async def report_progress(self, fraction: float, **data: Any) -> None:
        """Report incremental progress (0.0 to 1.0) for the current node."""
        fraction = max(0.0, min(1.0, float(fraction)))
        self.progress = fraction
        if self._on_progress is not None:
            await self._on_progress(self.node_id, fraction, data)

    async def _call(self, what: str, awaitable: Awaitable[Any]) -> Any:
        try:
            if self.latency_threshold is None:
                result = await awaitable
            else:
                result = await asyncio.wait_for(awaitable, timeout=self.latency_threshold)
        except asyncio.TimeoutError as exc:
            raise ExecutionTimeoutError(
                f"{what} exceeded {self.latency_threshold}s in node '{self.node_id}'"
            ) from exc
        self.check_cancelled()
        return result

    def _require(self, name: str) -> Any:
        capability = getattr(self.capabilities, name, None)
        if capability is None:
            raise CapabilityError(f"Capability '{name}' is not configured")
        return capability

    async def generate(
        self, prompt: str, parameters: GenerationParameters
    ) -> AsyncIterator[str]:
        """Stream generated text, checking cancellation between chunks."""
        generator = self._require("generator")
        self.check_cancelled()
        stream = generator.generate(prompt, parameters).__aiter__()

        async def next_chunk():
            try:
                return await stream.__anext__()
            except StopAsyncIteration:
                return _END_OF_STREAM

        try:
            while True:
                self.check_cancelled()
                chunk = await self._call("Generation", next_chunk())
                if chunk is _END_OF_STREAM:
                    return
                yield chunk
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    async def generate_text(self, prompt: str, parameters: GenerationParameters) -> str:
        """Collect a whole generation into a single string."""
        parts = []
        async for chunk in self.generate(prompt, parameters):
            parts.append(chunk)
        return "".join(parts)

    async def embed(self, text: str) -> List[float]:
        index = self._require("vector_index")
        self.check_cancelled()
        return await self._call("Embedding", index.embed(text))

    async def search(
        self,
        query_embedding: List[float],
        limit: int,
        similarity_threshold: float,
    ) -> List[SearchHit]:
        index = self._require("vector_index")
        self.check_cancelled()
        hits = await self._call(
            "Vector search", index.search(query_embedding, limit, similarity_threshold)
        )
        return sorted(hits, key=lambda h: -h.score)

    async def upsert(self, content_id: str, embedding: List[float], metadata: Dict[str, Any]) -> None:
        index = self._require("vector_index")
        self.check_cancelled()
        await self._call("Vector upsert", index.upsert(content_id, embedding, metadata))
