"""
Built-in Node Behaviors.

These implement the node types available on the canvas: research,
content generation, content editing, formatting, output and a small
text utility. Importing this module registers them in ``default_registry``.
"""

from typing import Any, Dict, List, Literal, Optional
import logging
import re

from pydantic import BaseModel, ConfigDict, Field

from contentflow.capabilities.base import GenerationParameters
from contentflow.engine.graph import DataType, NodeType, Port
from contentflow.engine.registry import NodeRegistry
from contentflow.errors import NodeSettingsError


logger = logging.getLogger(__name__)

# Global registry of built-in behaviors
default_registry = NodeRegistry()


class _Settings(BaseModel):
    model_config = ConfigDict(extra="forbid")


class SamplingSettings(_Settings):
    """Sampling controls shared by the AI-backed node types."""
    temperature: float = Field(0.7, ge=0.0, le=2.0)
    top_p: float = Field(1.0, gt=0.0, le=1.0)
    top_k: Optional[int] = Field(None, ge=1)
    max_tokens: int = Field(400, ge=1, le=8192)

    def parameters(self) -> GenerationParameters:
        return GenerationParameters(
            temperature=self.temperature,
            top_p=self.top_p,
            top_k=self.top_k,
            max_tokens=self.max_tokens,
        )


class _SafeFormat(dict):
    def __missing__(self, key: str) -> str:
        return ""


def render_prompt(template: str, **values: Any) -> str:
    """Fill ``{placeholders}``; unknown placeholders render empty."""
    return template.format_map(_SafeFormat(values)).strip()


async def _stream(ctx, prompt: str, settings: SamplingSettings) -> str:
    """Stream a generation, reporting progress against max_tokens."""
    parts: List[str] = []
    words = 0
    async for chunk in ctx.generate(prompt, settings.parameters()):
        parts.append(chunk)
        words += len(chunk.split())
        await ctx.report_progress(min(1.0, words / settings.max_tokens), chars=sum(map(len, parts)))
    await ctx.report_progress(1.0)
    return "".join(parts).strip()


# ============================================================
# Research
# ============================================================

class ResearchSettings(SamplingSettings):
    query: str = ""
    limit: int = Field(5, ge=1, le=50)
    similarity_threshold: float = Field(0.0, ge=-1.0, le=1.0)
    summarize: bool = False
    summary_prompt: str = "Summarize the key points about {topic}:\n{sources}"


@default_registry.behavior(
    NodeType.RESEARCH,
    inputs=[Port("topic", DataType.TEXT, required=False, description="Research topic")],
    outputs=[
        Port("research", DataType.RESEARCH, description="Matching content, best first"),
        Port("summary", DataType.TEXT),
    ],
    settings=ResearchSettings,
)
async def research(inputs: Dict[str, Any], settings: ResearchSettings, capabilities, ctx) -> Dict[str, Any]:
    """Find related content in the vector index."""
    topic = (inputs.get("topic") or settings.query or "").strip()
    if not topic:
        raise NodeSettingsError("Research needs a 'topic' input or a 'query' setting")

    embedding = await ctx.embed(topic)
    hits = await ctx.search(embedding, settings.limit, settings.similarity_threshold)
    found = [hit.to_dict() for hit in hits]
    sources = "\n".join(
        f"- {(h['metadata'] or {}).get('text') or h['content_id']}" for h in found
    )
    logger.debug(f"Research '{topic}' found {len(found)} hits")

    if settings.summarize and found:
        prompt = render_prompt(settings.summary_prompt, topic=topic, sources=sources)
        summary = await _stream(ctx, prompt, settings)
    else:
        summary = sources

    return {"research": found, "summary": summary}


# ============================================================
# Content generation / editing
# ============================================================

class ContentGenerationSettings(SamplingSettings):
    topic: str = ""
    tone: str = "professional"
    prompt_template: str = (
        "Write a {tone} social media post about {topic}.\n"
        "Use these sources where relevant:\n{research}"
    )


@default_registry.behavior(
    NodeType.CONTENT_GENERATION,
    inputs=[
        Port("topic", DataType.TEXT, required=False),
        Port("research", DataType.TEXT, required=False),
    ],
    outputs=[Port("content", DataType.CONTENT)],
    settings=ContentGenerationSettings,
)
async def content_generation(
    inputs: Dict[str, Any], settings: ContentGenerationSettings, capabilities, ctx
) -> Dict[str, Any]:
    """Draft a post with the AI generation service, streaming progress."""
    topic = (inputs.get("topic") or settings.topic or "").strip()
    if not topic:
        raise NodeSettingsError("Content generation needs a 'topic' input or setting")
    prompt = render_prompt(
        settings.prompt_template,
        topic=topic,
        tone=settings.tone,
        research=inputs.get("research") or "",
    )
    return {"content": await _stream(ctx, prompt, settings)}


class ContentEditingSettings(SamplingSettings):
    temperature: float = Field(0.3, ge=0.0, le=2.0)
    instructions: str = "Tighten the wording and fix grammar."
    prompt_template: str = "{instructions}\n\n{content}"


@default_registry.behavior(
    NodeType.CONTENT_EDITING,
    inputs=[Port("content", DataType.CONTENT)],
    outputs=[Port("content", DataType.CONTENT)],
    settings=ContentEditingSettings,
)
async def content_editing(
    inputs: Dict[str, Any], settings: ContentEditingSettings, capabilities, ctx
) -> Dict[str, Any]:
    """Rewrite a draft according to editing instructions."""
    prompt = render_prompt(
        settings.prompt_template,
        instructions=settings.instructions,
        content=inputs.get("content") or "",
    )
    return {"content": await _stream(ctx, prompt, settings)}


# ============================================================
# Format
# ============================================================

PLATFORM_LIMITS = {
    "generic": None,
    "linkedin": 3000,
    "twitter": 280,
}


class FormatSettings(_Settings):
    platform: Literal["generic", "linkedin", "twitter"] = "generic"
    max_length: Optional[int] = Field(None, ge=10)
    hashtags: List[str] = Field(default_factory=list)
    ellipsis: str = "…"


def format_for_platform(text: str, settings: FormatSettings) -> str:
    """Normalize whitespace, append hashtags and fit the platform's length."""
    paragraphs = [re.sub(r"[ \t]+", " ", p).strip() for p in re.split(r"\n\s*\n", text or "")]
    body = "\n\n".join(p for p in paragraphs if p)

    tags = " ".join("#" + tag.lstrip("#").replace(" ", "") for tag in settings.hashtags if tag.strip())
    suffix = f"\n\n{tags}" if tags else ""

    limit = settings.max_length or PLATFORM_LIMITS[settings.platform]
    if limit is not None and len(body) + len(suffix) > limit:
        room = max(0, limit - len(suffix) - len(settings.ellipsis))
        body = body[:room].rstrip() + settings.ellipsis
    return body + suffix


@default_registry.behavior(
    NodeType.FORMAT,
    inputs=[Port("content", DataType.CONTENT)],
    outputs=[
        Port("formatted", DataType.FORMATTED),
        Port("length", DataType.ANY),
    ],
    settings=FormatSettings,
)
async def format_content(inputs: Dict[str, Any], settings: FormatSettings, capabilities, ctx) -> Dict[str, Any]:
    """Shape text for a target platform."""
    formatted = format_for_platform(inputs.get("content") or "", settings)
    return {"formatted": formatted, "length": len(formatted)}


# ============================================================
# Output
# ============================================================

class OutputSettings(_Settings):
    destination: str = "draft"
    content_id: Optional[str] = None
    index_content: bool = False


@default_registry.behavior(
    NodeType.OUTPUT,
    inputs=[Port("formatted", DataType.FORMATTED)],
    outputs=[Port("published", DataType.ANY)],
    settings=OutputSettings,
)
async def output(inputs: Dict[str, Any], settings: OutputSettings, capabilities, ctx) -> Dict[str, Any]:
    """Collect the final text and optionally index it for future research."""
    text = inputs.get("formatted") or ""
    content_id = settings.content_id or f"{ctx.run_id}:{ctx.node_id}"
    if settings.index_content:
        embedding = await ctx.embed(text)
        await ctx.upsert(content_id, embedding, {"text": text, "destination": settings.destination})
    return {
        "published": {
            "content_id": content_id,
            "destination": settings.destination,
            "text": text,
            "indexed": settings.index_content,
        }
    }


# ============================================================
# Utility
# ============================================================

class UtilitySettings(_Settings):
    operation: Literal["join", "upper", "lower", "strip"] = "join"
    separator: str = "\n\n"


@default_registry.behavior(
    NodeType.UTILITY,
    inputs=[
        Port("left", DataType.TEXT, required=False, default=""),
        Port("right", DataType.TEXT, required=False, default=""),
    ],
    outputs=[Port("text", DataType.TEXT)],
    settings=UtilitySettings,
)
async def utility(inputs: Dict[str, Any], settings: UtilitySettings, capabilities, ctx) -> Dict[str, Any]:
    """Join or re-case text."""
    left = inputs.get("left") or ""
    right = inputs.get("right") or ""
    text = settings.separator.join(p for p in (left, right) if p)
    if settings.operation == "upper":
        text = text.upper()
    elif settings.operation == "lower":
        text = text.lower()
    elif settings.operation == "strip":
        text = text.strip()
    return {"text": text}
