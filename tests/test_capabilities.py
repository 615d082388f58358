"""
Tests for capability implementations and the execution context.
"""

import pytest
import asyncio
import json

import httpx

from contentflow.capabilities.base import Capabilities, GenerationParameters
from contentflow.capabilities.http import HttpGenerator
from contentflow.capabilities.memory import (
    HashingEmbedder,
    InMemoryVectorIndex,
    TemplateGenerator,
    cosine_similarity,
)
from contentflow.engine.context import ExecutionContext
from contentflow.errors import CapabilityError, GenerationError, RunCancelled, SearchError


async def collect(stream) -> list:
    return [chunk async for chunk in stream]


# ============================================================
# In-memory Capability Tests
# ============================================================

class TestTemplateGenerator:
    """Tests for the offline generator."""

    @pytest.mark.asyncio
    async def test_streams_chunks(self):
        """Test text arrives in word chunks that join back together."""
        generator = TemplateGenerator(chunk_words=2)
        chunks = await collect(generator.generate("one two three\n\nfour five", GenerationParameters()))

        assert chunks == ["one two", " three four", " five"]
        assert generator.calls[0][0] == "one two three\n\nfour five"

    @pytest.mark.asyncio
    async def test_respects_max_tokens(self):
        """Test output is cut to max_tokens words."""
        generator = TemplateGenerator()
        parameters = GenerationParameters(max_tokens=3)
        text = "".join(await collect(generator.generate("a b c d e f", parameters)))

        assert text == "a b c"


class TestInMemoryVectorIndex:
    """Tests for the brute-force vector index."""

    def test_embedding_is_normalized(self):
        """Test embeddings have unit length."""
        vector = HashingEmbedder(dimensions=16)("remote teams ship faster")
        assert len(vector) == 16
        assert abs(sum(v * v for v in vector) - 1.0) < 1e-9

    def test_cosine_dimension_mismatch(self):
        """Test comparing embeddings of different sizes."""
        with pytest.raises(SearchError):
            cosine_similarity([1.0], [1.0, 0.0])

    @pytest.mark.asyncio
    async def test_search_orders_by_score(self):
        """Test hits come back best first, limited and thresholded."""
        index = InMemoryVectorIndex()
        await index.add_text("cats", "cats cats cats")
        await index.add_text("mixed", "cats and dogs")
        await index.add_text("cars", "fast red cars")

        query = await index.embed("cats")
        hits = await index.search(query, limit=5, similarity_threshold=0.1)

        assert [h.content_id for h in hits] == ["cats", "mixed"]
        assert hits[0].score >= hits[1].score
        assert hits[0].metadata["text"] == "cats cats cats"

        top = await index.search(query, limit=1, similarity_threshold=0.0)
        assert [h.content_id for h in top] == ["cats"]

    @pytest.mark.asyncio
    async def test_upsert_replaces(self):
        """Test upserting the same id twice keeps one entry."""
        index = InMemoryVectorIndex()
        await index.upsert("doc", [1.0, 0.0], {"v": 1})
        await index.upsert("doc", [0.0, 1.0], {"v": 2})

        assert len(index) == 1
        hits = await index.search([0.0, 1.0], limit=1, similarity_threshold=0.5)
        assert hits[0].metadata == {"v": 2}

    @pytest.mark.asyncio
    async def test_upsert_requires_id(self):
        """Test an empty content id is rejected."""
        with pytest.raises(SearchError):
            await InMemoryVectorIndex().upsert("", [1.0], {})


# ============================================================
# HTTP Generator Tests
# ============================================================

def sse(*events: str) -> str:
    return "".join(f"data: {event}\n\n" for event in events)


class TestHttpGenerator:
    """Tests for the streaming HTTP generation client."""

    @pytest.mark.asyncio
    async def test_streams_completion_chunks(self):
        """Test SSE data lines become text chunks."""
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            body = sse(
                json.dumps({"choices": [{"text": "Hello"}]}),
                json.dumps({"choices": [{"delta": {"content": " world"}}]}),
                json.dumps({"choices": []}),
                "[DONE]",
                json.dumps({"choices": [{"text": "ignored"}]}),
            )
            return httpx.Response(200, text=body, headers={"Content-Type": "text/event-stream"})

        generator = HttpGenerator(
            url="http://generation.test/v1/completions",
            model="test-model",
            api_key="secret",
            transport=httpx.MockTransport(handler),
        )
        parameters = GenerationParameters(temperature=0.2, top_k=5, max_tokens=50)
        chunks = await collect(generator.generate("Say hello", parameters))

        assert chunks == ["Hello", " world"]
        payload = json.loads(requests[0].content)
        assert payload["model"] == "test-model"
        assert payload["prompt"] == "Say hello"
        assert payload["stream"] is True
        assert payload["top_k"] == 5
        assert requests[0].headers["Authorization"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_error_status(self):
        """Test HTTP errors become retryable generation errors."""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="overloaded")

        generator = HttpGenerator("http://generation.test", "m", transport=httpx.MockTransport(handler))

        with pytest.raises(GenerationError, match="503") as exc_info:
            await collect(generator.generate("x", GenerationParameters()))
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_connection_error(self):
        """Test transport failures become generation errors."""
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        generator = HttpGenerator("http://generation.test", "m", transport=httpx.MockTransport(handler))

        with pytest.raises(GenerationError, match="connection refused"):
            await collect(generator.generate("x", GenerationParameters()))

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        """Test malformed stream data."""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text=sse("{not json"))

        generator = HttpGenerator("http://generation.test", "m", transport=httpx.MockTransport(handler))

        with pytest.raises(GenerationError, match="Invalid JSON"):
            await collect(generator.generate("x", GenerationParameters()))


# ============================================================
# Execution Context Tests
# ============================================================

class TestExecutionContext:
    """Tests for capability access through the execution context."""

    def make_context(self, capabilities=None, **kwargs) -> ExecutionContext:
        return ExecutionContext(
            run_id="run",
            node_id="node",
            capabilities=capabilities or Capabilities(),
            cancel_event=kwargs.pop("cancel_event", asyncio.Event()),
            **kwargs,
        )

    @pytest.mark.asyncio
    async def test_missing_capability(self):
        """Test calling a capability that is not configured."""
        ctx = self.make_context()
        with pytest.raises(CapabilityError, match="vector_index"):
            await ctx.embed("text")

    @pytest.mark.asyncio
    async def test_cancelled_before_call(self):
        """Test cancellation is observed before a capability call."""
        cancel_event = asyncio.Event()
        cancel_event.set()
        ctx = self.make_context(
            Capabilities(vector_index=InMemoryVectorIndex()), cancel_event=cancel_event
        )

        with pytest.raises(RunCancelled):
            await ctx.embed("text")

    @pytest.mark.asyncio
    async def test_generate_text(self):
        """Test collecting a full generation."""
        ctx = self.make_context(Capabilities(generator=TemplateGenerator(chunk_words=1)))
        text = await ctx.generate_text("alpha beta gamma", GenerationParameters())
        assert text == "alpha beta gamma"

    @pytest.mark.asyncio
    async def test_progress_is_clamped(self):
        """Test progress reports stay within 0.0 and 1.0."""
        reports = []

        async def on_progress(node_id, fraction, data):
            reports.append((node_id, fraction, data))

        ctx = self.make_context(on_progress=on_progress)
        await ctx.report_progress(1.7, chars=10)
        await ctx.report_progress(-0.2)

        assert reports == [("node", 1.0, {"chars": 10}), ("node", 0.0, {})]
        assert ctx.progress == 0.0

    @pytest.mark.asyncio
    async def test_search_results_sorted(self):
        """Test search hits are ordered by descending score."""
        index = InMemoryVectorIndex()
        await index.add_text("a", "red apples")
        await index.add_text("b", "red red red apples apples")
        ctx = self.make_context(Capabilities(vector_index=index))

        hits = await ctx.search(await ctx.embed("red"), limit=2, similarity_threshold=0.0)
        assert [h.score for h in hits] == sorted((h.score for h in hits), reverse=True)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
