"""Provider stream adapters: Anthropic Messages and OpenAI-compatible chat completions.

Both wire formats are decoded here into the same small event vocabulary
(``Chunk``, ``Done``, ``StreamError``, ``ToolResponsePayload``). Nothing in this
module touches conversation state; callers consume ``AIService.stream_chat``.
"""

from __future__ import annotations

import codecs
import json
import logging
from contextlib import aclosing
from typing import Any, AsyncGenerator, AsyncIterator

import httpx

from ..config import AIConfig
from ..tools import get_tool_definitions
from .events import Chunk, Done, StreamError, StreamEvent, ToolResponsePayload

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
_DONE_SENTINEL = "[DONE]"
_DATA_PREFIX = "data: "


def create_ai_service(config: AIConfig) -> "AIService":
    return AIService(config)


async def iter_sse_data(chunks: AsyncIterator[bytes]) -> AsyncGenerator[str, None]:
    """Yield the payload of every complete ``data: `` line in an SSE byte stream.

    Bytes are decoded incrementally so multi-byte characters split across
    network reads survive. A trailing line without a newline is never yielded.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    async for raw in chunks:
        buffer += decoder.decode(raw)
        while "\n" in buffer:
            line, buffer = buffer.split("\n", 1)
            line = line.strip()
            if line.startswith(_DATA_PREFIX):
                yield line[len(_DATA_PREFIX):]


def _parse_data_line(data: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(data)
    except json.JSONDecodeError:
        logger.debug("Dropping malformed SSE data line: %.200s", data)
        return None
    if not isinstance(parsed, dict):
        logger.debug("Dropping non-object SSE payload: %.200s", data)
        return None
    return parsed


def _flatten_content(content: Any) -> str:
    """Collapse a provider-native block list to plain text for text-only providers."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [b.get("text", "") for b in content if isinstance(b, dict) and b.get("type") == "text"]
        return "\n".join(p for p in parts if p)
    return ""


class AIService:
    def __init__(self, config: AIConfig, http_client: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self._owns_client = http_client is None
        self.http = http_client if http_client is not None else self._build_client()

    def _build_client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(
            float(self.config.request_timeout),
            connect=float(self.config.connect_timeout),
        )
        return httpx.AsyncClient(timeout=timeout, verify=self.config.verify_ssl)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http.aclose()

    # -- request construction --

    def _anthropic_headers(self, api_key: str) -> dict[str, str]:
        return {
            "x-api-key": api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

    def _anthropic_body(self, messages: list[dict[str, Any]], *, stream: bool, tools: bool) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.config.model,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "stream": stream,
            "messages": [m for m in messages if m.get("role") != "system"],
        }
        if self.config.system_prompt:
            body["system"] = self.config.system_prompt
        if tools:
            body["tools"] = get_tool_definitions()
        return body

    def _openai_body(self, messages: list[dict[str, Any]]) -> dict[str, Any]:
        wire: list[dict[str, str]] = []
        if self.config.system_prompt:
            wire.append({"role": "system", "content": self.config.system_prompt})
        for msg in messages:
            text = _flatten_content(msg.get("content"))
            if msg.get("role") == "user" and not text:
                # tool_result-only turns carry nothing an OpenAI endpoint can use
                continue
            wire.append({"role": msg.get("role", "user"), "content": text})
        return {
            "model": self.config.model,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "stream": True,
            "messages": wire,
        }

    # -- public API --

    async def stream_chat(
        self,
        messages: list[dict[str, Any]],
        *,
        tools_enabled: bool = False,
    ) -> AsyncGenerator[StreamEvent, None]:
        """Issue one provider call and yield normalized events until it terminates.

        Exactly one terminal event (``Done``, ``StreamError`` or
        ``ToolResponsePayload``) ends every call. Transport failures are
        reported as ``StreamError`` rather than raised.
        """
        api_key = self.config.resolved_api_key()
        if not api_key:
            yield StreamError(f"No API key configured for provider {self.config.provider}")
            return

        provider = self.config.provider
        logger.info(
            "Provider call: provider=%s model=%s messages=%d tools=%s",
            provider,
            self.config.model,
            len(messages),
            tools_enabled,
        )
        if provider == "anthropic" and tools_enabled:
            source = self._call_anthropic_with_tools(messages, api_key)
        elif provider == "anthropic":
            source = self._stream_anthropic(messages, api_key)
        else:
            source = self._stream_openai(messages, api_key)

        try:
            async with aclosing(source) as events:
                async for event in events:
                    yield event
        except httpx.TimeoutException as e:
            logger.warning("Provider request timed out: %s", e)
            yield StreamError(f"Request timed out after {self.config.request_timeout}s")
        except (httpx.HTTPError, OSError) as e:
            logger.warning("Provider transport error: %s", e)
            yield StreamError(f"Connection error: {e}")

    async def _error_from_response(self, response: httpx.Response) -> StreamError:
        body = (await response.aread()).decode("utf-8", errors="replace")
        logger.error("Provider returned HTTP %d: %.500s", response.status_code, body)
        return StreamError(f"API error: status {response.status_code}: {body}")

    async def _stream_anthropic(self, messages: list[dict[str, Any]], api_key: str) -> AsyncGenerator[StreamEvent, None]:
        url = f"{self.config.anthropic_base_url}/v1/messages"
        body = self._anthropic_body(messages, stream=True, tools=False)
        async with self.http.stream("POST", url, headers=self._anthropic_headers(api_key), json=body) as response:
            if not response.is_success:
                yield await self._error_from_response(response)
                return
            async with aclosing(iter_sse_data(response.aiter_bytes())) as lines:
                async for data in lines:
                    if data == _DONE_SENTINEL:
                        yield Done()
                        return
                    payload = _parse_data_line(data)
                    if payload is None:
                        continue
                    kind = payload.get("type")
                    if kind == "content_block_delta":
                        text = (payload.get("delta") or {}).get("text")
                        if text:
                            yield Chunk(text)
                    elif kind == "message_stop":
                        yield Done()
                        return
                    elif kind == "error":
                        error = payload.get("error") or {}
                        yield StreamError(f"API error: {error.get('message', 'unknown error')}")
                        return
        yield Done()

    async def _call_anthropic_with_tools(
        self, messages: list[dict[str, Any]], api_key: str
    ) -> AsyncGenerator[StreamEvent, None]:
        url = f"{self.config.anthropic_base_url}/v1/messages"
        body = self._anthropic_body(messages, stream=False, tools=True)
        response = await self.http.post(url, headers=self._anthropic_headers(api_key), json=body)
        if not response.is_success:
            yield await self._error_from_response(response)
            return

        raw = response.text
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            yield StreamError("Malformed response body from provider")
            return
        content = parsed.get("content") if isinstance(parsed, dict) else None
        if not isinstance(content, list):
            yield StreamError("Provider response has no content array")
            return

        has_tool_use = False
        for block in content:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and block.get("text"):
                yield Chunk(block["text"])
            elif block.get("type") == "tool_use":
                has_tool_use = True

        if has_tool_use:
            yield ToolResponsePayload(raw)
        else:
            yield Done()

    async def _stream_openai(self, messages: list[dict[str, Any]], api_key: str) -> AsyncGenerator[StreamEvent, None]:
        url = f"{self.config.openai_base_url}/chat/completions"
        headers = {"Authorization": f"Bearer {api_key}", "content-type": "application/json"}
        async with self.http.stream("POST", url, headers=headers, json=self._openai_body(messages)) as response:
            if not response.is_success:
                yield await self._error_from_response(response)
                return
            async with aclosing(iter_sse_data(response.aiter_bytes())) as lines:
                async for data in lines:
                    if data == _DONE_SENTINEL:
                        yield Done()
                        return
                    payload = _parse_data_line(data)
                    if payload is None:
                        continue
                    choices = payload.get("choices") or []
                    if not choices or not isinstance(choices[0], dict):
                        continue
                    text = (choices[0].get("delta") or {}).get("content")
                    if text:
                        yield Chunk(text)
        yield Done()
