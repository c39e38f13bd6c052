"""Tests for the provider stream adapters, using httpx.MockTransport."""

from __future__ import annotations

import json
from typing import Any, Callable

import httpx
import pytest

from prochat.config import AIConfig
from prochat.services.ai_service import AIService, iter_sse_data
from prochat.services.events import Chunk, Done, StreamError, ToolResponsePayload

_MESSAGES = [{"role": "user", "content": "hi"}]


def _make_config(**overrides: Any) -> AIConfig:
    defaults: dict[str, Any] = {
        "provider": "anthropic",
        "model": "claude-test",
        "anthropic_api_key": "test-key",
        "openai_api_key": "test-key",
        "system_prompt": "Be brief.",
    }
    defaults.update(overrides)
    return AIConfig(**defaults)


def _service(handler: Callable[[httpx.Request], httpx.Response], **overrides: Any) -> AIService:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AIService(_make_config(**overrides), http_client=client)


def _sse(*payloads: Any) -> bytes:
    lines = []
    for p in payloads:
        data = p if isinstance(p, str) else json.dumps(p)
        lines.append(f"data: {data}\n\n")
    return "".join(lines).encode("utf-8")


def _delta(text: str) -> dict[str, Any]:
    return {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}}


async def _collect(service: AIService, messages: list[dict[str, Any]] = _MESSAGES, **kwargs: Any) -> list[Any]:
    return [event async for event in service.stream_chat(messages, **kwargs)]


async def _aiter(parts: list[bytes]):
    for part in parts:
        yield part


class TestIterSseData:
    @pytest.mark.asyncio
    async def test_lines_split_across_reads(self) -> None:
        parts = [b'data: {"a"', b": 1}\n", b"\ndata: [DONE]\n"]
        assert [d async for d in iter_sse_data(_aiter(parts))] == ['{"a": 1}', "[DONE]"]

    @pytest.mark.asyncio
    async def test_multibyte_character_split_across_reads(self) -> None:
        encoded = "data: café ☕\n".encode("utf-8")
        split = encoded.index("☕".encode("utf-8")) + 1
        parts = [encoded[:split], encoded[split:]]
        assert [d async for d in iter_sse_data(_aiter(parts))] == ["café ☕"]

    @pytest.mark.asyncio
    async def test_ignores_non_data_lines(self) -> None:
        parts = [b"event: ping\n", b": comment\n", b"data: x\n", b"data: trailing-without-newline"]
        assert [d async for d in iter_sse_data(_aiter(parts))] == ["x"]


class TestAnthropicStream:
    @pytest.mark.asyncio
    async def test_chunks_then_single_done(self) -> None:
        body = (
            b"event: message_start\n"
            + _sse({"type": "message_start", "message": {}})
            + _sse(_delta("Hel"), _delta("lo"), {"type": "message_delta"}, {"type": "message_stop"})
        )
        service = _service(lambda request: httpx.Response(200, content=body))
        events = await _collect(service)
        assert events == [Chunk("Hel"), Chunk("lo"), Done()]

    @pytest.mark.asyncio
    async def test_request_shape(self) -> None:
        seen: dict[str, Any] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, content=_sse({"type": "message_stop"}))

        service = _service(handler, anthropic_base_url="http://anthropic.test")
        messages = [{"role": "system", "content": "ignored"}, {"role": "user", "content": "hi"}]
        await _collect(service, messages)
        assert seen["url"] == "http://anthropic.test/v1/messages"
        assert seen["headers"]["x-api-key"] == "test-key"
        assert seen["headers"]["anthropic-version"] == "2023-06-01"
        assert seen["body"]["stream"] is True
        assert seen["body"]["system"] == "Be brief."
        assert seen["body"]["messages"] == [{"role": "user", "content": "hi"}]
        assert "tools" not in seen["body"]

    @pytest.mark.asyncio
    async def test_done_sentinel(self) -> None:
        service = _service(lambda request: httpx.Response(200, content=_sse(_delta("a"), "[DONE]", _delta("b"))))
        assert await _collect(service) == [Chunk("a"), Done()]

    @pytest.mark.asyncio
    async def test_malformed_lines_are_skipped(self) -> None:
        body = _sse(_delta("a"), "{not json", "[1, 2]", _delta("b"), {"type": "message_stop"})
        service = _service(lambda request: httpx.Response(200, content=body))
        assert await _collect(service) == [Chunk("a"), Chunk("b"), Done()]

    @pytest.mark.asyncio
    async def test_stream_end_without_stop_is_done(self) -> None:
        service = _service(lambda request: httpx.Response(200, content=_sse(_delta("partial"))))
        assert await _collect(service) == [Chunk("partial"), Done()]

    @pytest.mark.asyncio
    async def test_http_error_is_single_stream_error(self) -> None:
        service = _service(lambda request: httpx.Response(401, content=b'{"error": "invalid x-api-key"}'))
        events = await _collect(service)
        assert len(events) == 1
        assert isinstance(events[0], StreamError)
        assert "status 401" in events[0].message
        assert "invalid x-api-key" in events[0].message

    @pytest.mark.asyncio
    async def test_error_event_in_stream(self) -> None:
        body = _sse(_delta("a"), {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})
        service = _service(lambda request: httpx.Response(200, content=body))
        assert await _collect(service) == [Chunk("a"), StreamError("API error: Overloaded")]

    @pytest.mark.asyncio
    async def test_connection_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused")

        events = await _collect(_service(handler))
        assert len(events) == 1
        assert isinstance(events[0], StreamError)
        assert events[0].message.startswith("Connection error:")

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("too slow")

        events = await _collect(_service(handler, request_timeout=30))
        assert events == [StreamError("Request timed out after 30s")]

    @pytest.mark.asyncio
    async def test_missing_key_never_calls_provider(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200)

        events = await _collect(_service(handler, anthropic_api_key=""))
        assert len(events) == 1 and isinstance(events[0], StreamError)
        assert calls == []


class TestAnthropicTools:
    @pytest.mark.asyncio
    async def test_tool_use_yields_text_then_payload(self) -> None:
        response_body = {
            "content": [
                {"type": "text", "text": "Let me look."},
                {"type": "tool_use", "id": "toolu_1", "name": "read_file", "input": {"path": "a.txt"}},
            ],
            "stop_reason": "tool_use",
        }
        seen: dict[str, Any] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=response_body)

        events = await _collect(_service(handler), tools_enabled=True)
        assert events[0] == Chunk("Let me look.")
        assert isinstance(events[1], ToolResponsePayload)
        assert json.loads(events[1].raw) == response_body
        assert len(events) == 2
        assert seen["body"]["stream"] is False
        assert [t["name"] for t in seen["body"]["tools"]] == [
            "read_file",
            "write_file",
            "list_files",
            "search_files",
            "execute",
            "edit_file",
        ]

    @pytest.mark.asyncio
    async def test_text_only_response_is_done(self) -> None:
        body = {"content": [{"type": "text", "text": "All done."}]}
        events = await _collect(_service(lambda r: httpx.Response(200, json=body)), tools_enabled=True)
        assert events == [Chunk("All done."), Done()]

    @pytest.mark.asyncio
    async def test_malformed_body(self) -> None:
        events = await _collect(_service(lambda r: httpx.Response(200, content=b"<html>")), tools_enabled=True)
        assert events == [StreamError("Malformed response body from provider")]

    @pytest.mark.asyncio
    async def test_missing_content_array(self) -> None:
        events = await _collect(_service(lambda r: httpx.Response(200, json={"id": "x"})), tools_enabled=True)
        assert events == [StreamError("Provider response has no content array")]


class TestOpenAIStream:
    @pytest.mark.asyncio
    async def test_chunks_and_request_shape(self) -> None:
        seen: dict[str, Any] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            body = _sse(
                {"choices": [{"delta": {"role": "assistant"}}]},
                {"choices": [{"delta": {"content": "Hi"}}]},
                {"choices": [{"delta": {"content": " there"}}]},
                {"choices": []},
                "[DONE]",
            )
            return httpx.Response(200, content=body)

        service = _service(handler, provider="openai", openai_base_url="http://openai.test/v1")
        messages = [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": [{"type": "text", "text": "calling"}, {"type": "tool_use", "id": "t"}]},
            {"role": "user", "content": [{"type": "tool_result", "tool_use_id": "t", "content": "x"}]},
        ]
        events = await _collect(service, messages)
        assert events == [Chunk("Hi"), Chunk(" there"), Done()]
        assert seen["url"] == "http://openai.test/v1/chat/completions"
        assert seen["auth"] == "Bearer test-key"
        assert seen["body"]["messages"] == [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "calling"},
        ]

    @pytest.mark.asyncio
    async def test_http_error(self) -> None:
        service = _service(lambda r: httpx.Response(500, content=b"boom"), provider="openai")
        events = await _collect(service)
        assert events == [StreamError("API error: status 500: boom")]


class TestClientConfiguration:
    def test_timeouts_from_config(self) -> None:
        service = AIService(_make_config(request_timeout=60, connect_timeout=7))
        assert service.http.timeout.read == 60.0
        assert service.http.timeout.connect == 7.0

    @pytest.mark.asyncio
    async def test_injected_client_not_closed(self) -> None:
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        service = AIService(_make_config(), http_client=client)
        await service.aclose()
        assert not client.is_closed
        await client.aclose()
