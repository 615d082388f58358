"""
HTTP client for an OpenAI-compatible streaming completions endpoint.
"""

from typing import Any, AsyncIterator, Dict, Optional
import json
import logging

import httpx

from contentflow.capabilities.base import GenerationParameters
from contentflow.errors import GenerationError


logger = logging.getLogger(__name__)


class HttpGenerator:
    """
    Streams completions from ``POST {url}`` using server-sent events.

    Each ``data:`` line carries a JSON object whose
    ``choices[0].text`` (or ``choices[0].delta.content``) is the next chunk;
    ``data: [DONE]`` ends the stream.
    """

    def __init__(
        self,
        url: str,
        model: str,
        api_key: Optional[str] = None,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.model = model
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "text/event-stream"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _payload(self, prompt: str, parameters: GenerationParameters) -> Dict[str, Any]:
        payload = {
            "model": self.model,
            "prompt": prompt,
            "temperature": parameters.temperature,
            "top_p": parameters.top_p,
            "max_tokens": parameters.max_tokens,
            "stream": True,
        }
        if parameters.top_k is not None:
            payload["top_k"] = parameters.top_k
        return payload

    @staticmethod
    def _chunk_text(event: Dict[str, Any]) -> str:
        choices = event.get("choices") or []
        if not choices:
            return ""
        choice = choices[0]
        if "text" in choice:
            return choice.get("text") or ""
        return (choice.get("delta") or {}).get("content") or ""

    async def generate(
        self, prompt: str, parameters: GenerationParameters
    ) -> AsyncIterator[str]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                async with client.stream(
                    "POST", self.url, headers=self._headers(), json=self._payload(prompt, parameters)
                ) as response:
                    if response.status_code >= 400:
                        body = (await response.aread()).decode("utf-8", errors="replace").strip()
                        raise GenerationError(
                            f"Generation request failed ({response.status_code}): "
                            f"{body or response.reason_phrase}"
                        )
                    async for line in response.aiter_lines():
                        raw = (line or "").strip()
                        if not raw or raw.startswith(":"):
                            continue
                        if raw.startswith("data:"):
                            raw = raw[5:].strip()
                        if raw == "[DONE]":
                            return
                        try:
                            event = json.loads(raw)
                        except json.JSONDecodeError as exc:
                            raise GenerationError(f"Invalid JSON in generation stream: {raw}") from exc
                        text = self._chunk_text(event)
                        if text:
                            yield text
        except httpx.HTTPError as exc:
            logger.warning(f"Generation request to {self.url} failed: {exc}")
            raise GenerationError(f"Generation request failed: {exc}") from exc
