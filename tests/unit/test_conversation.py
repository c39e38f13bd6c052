"""Tests for ConversationState: display entries, provider history and the persisted record."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from prochat.config import AIConfig, AppConfig, AppSettings
from prochat.models import StoredConversation, StoredMessage
from prochat.services import storage
from prochat.services.conversation import (
    CANCELLED_BY_USER,
    ConversationState,
    InputMode,
    NoApiKey,
    NoAssistantMessage,
    NoUserMessage,
    StillStreaming,
)
from prochat.services.orchestrator import ConfirmDecision, OrchestratorState, ToolOrchestrator
from prochat.tools import PermissionTable, ToolExecutor, ToolResult


class _Launcher:
    def __init__(self) -> None:
        self.calls: list[tuple[int, list[dict[str, Any]], bool]] = []

    def __call__(self, turn_id: int, messages: list[dict[str, Any]], tools_enabled: bool) -> None:
        self.calls.append((turn_id, messages, tools_enabled))


def _make_state(
    tmp_path: Path,
    *,
    api_key: str = "test-key",
    tools: bool = False,
    permissions: PermissionTable | None = None,
) -> tuple[ConversationState, _Launcher, MagicMock]:
    config = AppConfig(
        ai=AIConfig(provider="anthropic", anthropic_api_key=api_key),
        app=AppSettings(data_dir=tmp_path),
    )
    config.tools.enabled = tools
    executor = MagicMock(spec=ToolExecutor)
    executor.execute.return_value = ToolResult.ok("file contents")
    launcher = _Launcher()
    state = ConversationState(config, launcher, ToolOrchestrator(executor, permissions))
    return state, launcher, executor


def _tool_payload(*blocks: dict[str, Any]) -> str:
    return json.dumps({"content": list(blocks), "stop_reason": "tool_use"})


def _complete_turn(state: ConversationState, text: str) -> None:
    state.on_chunk(text)
    state.on_done()


class TestSend:
    def test_blank_input_is_a_no_op(self, tmp_path: Path) -> None:
        state, launcher, _ = _make_state(tmp_path)
        assert state.send("   ") is False
        assert state.entries == []
        assert state.history == []
        assert launcher.calls == []

    def test_send_starts_turn(self, tmp_path: Path) -> None:
        state, launcher, _ = _make_state(tmp_path)
        assert state.send("hi") is True
        assert [(e.role, e.text) for e in state.entries] == [("user", "hi"), ("assistant", "")]
        assert state.history == [{"role": "user", "content": "hi"}]
        assert launcher.calls == [(1, [{"role": "user", "content": "hi"}], False)]
        assert state.streaming and state.busy
        assert state.accepts(1)
        assert [m.content for m in state.record.messages] == ["hi"]

    def test_launcher_gets_a_snapshot(self, tmp_path: Path) -> None:
        state, launcher, _ = _make_state(tmp_path)
        state.send("hi")
        launcher.calls[0][1].append({"role": "user", "content": "mutated"})
        assert state.history == [{"role": "user", "content": "hi"}]

    def test_send_while_streaming_raises(self, tmp_path: Path) -> None:
        state, launcher, _ = _make_state(tmp_path)
        state.send("one")
        with pytest.raises(StillStreaming):
            state.send("two")
        assert len(launcher.calls) == 1
        assert len(state.entries) == 2

    def test_missing_api_key(self, tmp_path: Path) -> None:
        state, launcher, _ = _make_state(tmp_path, api_key="")
        with pytest.raises(NoApiKey, match="ANTHROPIC_API_KEY"):
            state.send("hi")
        assert state.entries == []
        assert launcher.calls == []

    def test_completed_turn(self, tmp_path: Path) -> None:
        state, _, _ = _make_state(tmp_path)
        state.send("hi")
        state.on_chunk("Hel")
        state.on_chunk("lo")
        assert state.entries[-1].text == "Hello"
        state.on_done()
        assert not state.busy
        assert state.active_turn is None
        assert state.turns_completed == 1
        assert state.last_response_time is not None
        assert state.history == [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "Hello"}]
        saved = storage.get_conversation(tmp_path / "conversations", state.record.id)
        assert saved is not None
        assert [(m.role, m.content) for m in saved.messages] == [("user", "hi"), ("assistant", "Hello")]
        assert saved.title == "hi"

    def test_second_turn_uses_new_turn_id(self, tmp_path: Path) -> None:
        state, launcher, _ = _make_state(tmp_path)
        state.send("one")
        _complete_turn(state, "1")
        state.send("two")
        assert launcher.calls[1][0] == 2
        assert not state.accepts(1)
        assert len(launcher.calls[1][1]) == 3


class TestErrors:
    def test_error_removes_empty_placeholder(self, tmp_path: Path) -> None:
        state, _, _ = _make_state(tmp_path)
        state.send("hi")
        state.on_error("API error: status 500: boom")
        assert [e.role for e in state.entries] == ["user"]
        assert state.history == [{"role": "user", "content": "hi"}]
        assert state.status_message == "Error: API error: status 500: boom"
        assert not state.busy

    def test_error_after_partial_text_keeps_it(self, tmp_path: Path) -> None:
        state, _, _ = _make_state(tmp_path)
        state.send("hi")
        state.on_chunk("partial")
        state.on_error("Connection error: reset")
        assert state.entries[-1].text == "partial"
        assert state.history[-1] == {"role": "assistant", "content": "partial"}

    def test_events_ignored_when_not_streaming(self, tmp_path: Path) -> None:
        state, _, _ = _make_state(tmp_path)
        state.on_chunk("stray")
        state.on_done()
        state.on_error("stray")
        assert state.entries == []
        assert state.turns_completed == 0


class TestCancel:
    def test_cancel_keeps_partial_reply(self, tmp_path: Path) -> None:
        state, _, _ = _make_state(tmp_path)
        state.send("write a poem")
        state.on_chunk("0123456789")
        assert state.cancel() is True
        assert state.entries[-1].text == "0123456789"
        assert state.history[-1] == {"role": "assistant", "content": "0123456789"}
        assert not state.busy
        assert not state.accepts(1)
        assert state.status_message == "Cancelled"
        saved = storage.get_conversation(tmp_path / "conversations", state.record.id)
        assert saved is not None
        assert saved.messages[-1].role == "assistant"
        assert saved.messages[-1].content == "0123456789"

    def test_cancel_with_no_text_drops_placeholder(self, tmp_path: Path) -> None:
        state, _, _ = _make_state(tmp_path)
        state.send("hi")
        state.cancel()
        assert [e.role for e in state.entries] == ["user"]

    def test_cancel_when_idle(self, tmp_path: Path) -> None:
        state, _, _ = _make_state(tmp_path)
        assert state.cancel() is False


class TestRetry:
    def test_retry_while_streaming_changes_nothing(self, tmp_path: Path) -> None:
        state, launcher, _ = _make_state(tmp_path)
        state.send("hi")
        state.on_chunk("partial")
        entries_before = [(e.role, e.text) for e in state.entries]
        history_before = list(state.history)
        with pytest.raises(StillStreaming):
            state.retry()
        assert [(e.role, e.text) for e in state.entries] == entries_before
        assert state.history == history_before
        assert len(launcher.calls) == 1

    def test_retry_after_load(self, tmp_path: Path) -> None:
        conv = StoredConversation(
            messages=[
                StoredMessage(role="user", content="hi"),
                StoredMessage(role="assistant", content="hello"),
            ]
        )
        storage.save_conversation(tmp_path / "conversations", conv)
        state, launcher, _ = _make_state(tmp_path)

        assert state.load(conv.id) is True
        assert state.history == [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}]

        state.retry()
        assert [(e.role, e.text) for e in state.entries] == [("user", "hi"), ("assistant", "")]
        assert state.history == [{"role": "user", "content": "hi"}]
        assert launcher.calls[-1][1] == [{"role": "user", "content": "hi"}]
        assert state.status_message == "Retrying..."

        _complete_turn(state, "hello again")
        assert state.history[-1] == {"role": "assistant", "content": "hello again"}
        assert [m.content for m in state.record.messages] == ["hi", "hello again"]

    def test_retry_after_load_and_send(self, tmp_path: Path) -> None:
        conv = StoredConversation(
            id="abc",
            messages=[
                StoredMessage(role="user", content="first"),
                StoredMessage(role="assistant", content="reply"),
            ],
        )
        storage.save_conversation(tmp_path / "conversations", conv)
        state, launcher, _ = _make_state(tmp_path)
        state.load("abc")
        before_send = list(state.history)

        state.send("hi")
        sent = list(state.history)
        _complete_turn(state, "hello")
        state.retry()

        assert [(e.role, e.text) for e in state.entries] == [
            ("user", "first"),
            ("assistant", "reply"),
            ("user", "hi"),
            ("assistant", ""),
        ]
        assert state.history == sent
        assert len(state.history) == len(before_send) + 1
        assert launcher.calls[-1][1] == before_send + [{"role": "user", "content": "hi"}]
        assert [m.content for m in state.record.messages] == ["first", "reply", "hi"]

    def test_retry_without_assistant_message(self, tmp_path: Path) -> None:
        state, _, _ = _make_state(tmp_path)
        with pytest.raises(NoAssistantMessage):
            state.retry()

    def test_retry_removes_tool_exchange(self, tmp_path: Path) -> None:
        state, _, _ = _make_state(tmp_path)
        state.entries = []
        state.history = [
            {"role": "user", "content": "look"},
            {"role": "assistant", "content": [{"type": "tool_use", "id": "t1", "name": "read_file", "input": {}}]},
            {"role": "user", "content": [{"type": "tool_result", "tool_use_id": "t1", "content": "x"}]},
        ]
        state.send("next")
        _complete_turn(state, "answer")
        state.retry()
        assert state.history[-1] == {"role": "user", "content": "next"}


class TestEditLast:
    def test_edit_last_restores_input(self, tmp_path: Path) -> None:
        state, _, _ = _make_state(tmp_path)
        state.send("first")
        _complete_turn(state, "reply one")
        state.send("second")
        _complete_turn(state, "reply two")

        assert state.edit_last() == "second"
        assert [e.text for e in state.entries] == ["first", "reply one"]
        assert state.history == [
            {"role": "user", "content": "first"},
            {"role": "assistant", "content": "reply one"},
        ]
        assert state.input_mode is InputMode.EDITING
        assert state.take_input_buffer() == "second"
        assert state.take_input_buffer() is None
        assert [m.content for m in state.record.messages] == ["first", "reply one"]

    def test_edit_with_no_user_message(self, tmp_path: Path) -> None:
        state, _, _ = _make_state(tmp_path)
        with pytest.raises(NoUserMessage):
            state.edit_last()

    def test_send_after_edit_returns_to_normal(self, tmp_path: Path) -> None:
        state, _, _ = _make_state(tmp_path)
        state.send("typo")
        _complete_turn(state, "?")
        state.edit_last()
        state.send("fixed")
        assert state.input_mode is InputMode.NORMAL


class TestToolTurns:
    @pytest.mark.asyncio
    async def test_auto_allowed_tool_continues(self, tmp_path: Path) -> None:
        state, launcher, executor = _make_state(tmp_path, tools=True)
        state.send("read a.txt")
        assert launcher.calls[0][2] is True
        assert state.orchestrator.state is OrchestratorState.DISPATCHED

        state.on_chunk("Let me look.")
        await state.on_tool_payload(
            _tool_payload(
                {"type": "text", "text": "Let me look."},
                {"type": "tool_use", "id": "t1", "name": "read_file", "input": {"path": "a.txt"}},
            )
        )

        executor.execute.assert_called_once()
        assert [m["role"] for m in state.history] == ["user", "assistant", "user"]
        assert state.history[2]["content"][0]["tool_use_id"] == "t1"
        assert len(launcher.calls) == 2
        assert launcher.calls[1][0] == 2
        assert state.accepts(2)
        assert state.entries[1].text == "Let me look."
        assert state.entries[1].tool_invocations[0].tool_name == "read_file"
        assert state.entries[2].text == ""

        _complete_turn(state, "It says hello.")
        assert not state.busy
        assert state.orchestrator.state is OrchestratorState.IDLE
        assert [m.content for m in state.record.messages] == ["read a.txt", "Let me look.", "It says hello."]

    @pytest.mark.asyncio
    async def test_confirmation_then_allow(self, tmp_path: Path) -> None:
        state, launcher, executor = _make_state(tmp_path, tools=True, permissions=PermissionTable())
        state.send("run ls")
        await state.on_tool_payload(
            _tool_payload({"type": "tool_use", "id": "t1", "name": "execute", "input": {"command": "ls"}})
        )
        assert state.pending_confirmation is not None
        assert state.pending_confirmation.args_summary == "$ ls"
        assert state.busy
        assert len(launcher.calls) == 1
        executor.execute.assert_not_called()

        assert await state.answer_confirmation(ConfirmDecision.ALLOW_ONCE) is True
        assert state.pending_confirmation is None
        executor.execute.assert_called_once()
        assert len(launcher.calls) == 2

    @pytest.mark.asyncio
    async def test_cancel_during_confirmation(self, tmp_path: Path) -> None:
        state, launcher, executor = _make_state(tmp_path, tools=True, permissions=PermissionTable())
        state.send("run ls")
        await state.on_tool_payload(
            _tool_payload({"type": "tool_use", "id": "t1", "name": "execute", "input": {"command": "ls"}})
        )
        assert state.cancel() is True
        assert not state.busy
        assert state.pending_confirmation is None
        result_block = state.history[-1]["content"][0]
        assert result_block == {
            "type": "tool_result",
            "tool_use_id": "t1",
            "content": CANCELLED_BY_USER,
            "is_error": True,
        }
        assert [e.role for e in state.entries] == ["user", "assistant"]
        invocation = state.entries[-1].tool_invocations[0]
        assert invocation.tool_name == "execute"
        assert invocation.result == ToolResult.fail(CANCELLED_BY_USER)
        shown = sum(1 for e in state.entries if e.role == "assistant")
        sent = sum(1 for m in state.history if m["role"] == "assistant")
        assert shown >= sent
        assert len(launcher.calls) == 1
        executor.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_retry_after_cancelled_confirmation(self, tmp_path: Path) -> None:
        state, launcher, _ = _make_state(tmp_path, tools=True, permissions=PermissionTable())
        state.send("run ls")
        await state.on_tool_payload(
            _tool_payload({"type": "tool_use", "id": "t1", "name": "execute", "input": {"command": "ls"}})
        )
        state.cancel()
        state.retry()
        assert state.history == [{"role": "user", "content": "run ls"}]
        assert launcher.calls[-1][1] == [{"role": "user", "content": "run ls"}]
        assert [(e.role, e.text) for e in state.entries] == [("user", "run ls"), ("assistant", "")]

    @pytest.mark.asyncio
    async def test_malformed_payload_fails_turn(self, tmp_path: Path) -> None:
        state, _, _ = _make_state(tmp_path, tools=True)
        state.send("hi")
        await state.on_tool_payload("{broken")
        assert state.status_message == "Error: Malformed tool response from provider"
        assert not state.busy
        assert state.orchestrator.state is OrchestratorState.IDLE

    @pytest.mark.asyncio
    async def test_payload_without_tool_calls_finishes_turn(self, tmp_path: Path) -> None:
        state, launcher, _ = _make_state(tmp_path, tools=True)
        state.send("hi")
        state.on_chunk("Just text.")
        await state.on_tool_payload(_tool_payload({"type": "text", "text": "Just text."}))
        assert not state.busy
        assert state.turns_completed == 1
        assert state.history[-1] == {"role": "assistant", "content": "Just text."}
        assert len(launcher.calls) == 1

    def test_tools_inactive_for_openai(self, tmp_path: Path) -> None:
        state, _, _ = _make_state(tmp_path, tools=True)
        state.config.ai.provider = "openai"
        assert state.tools_active() is False


class TestLifecycle:
    def test_new_conversation_saves_and_resets(self, tmp_path: Path) -> None:
        state, _, _ = _make_state(tmp_path)
        state.send("hi")
        _complete_turn(state, "hello")
        old_id = state.record.id
        state.new_conversation()
        assert state.entries == [] and state.history == []
        assert state.record.id != old_id
        assert storage.get_conversation(tmp_path / "conversations", old_id) is not None

    def test_new_conversation_cancels_active_turn(self, tmp_path: Path) -> None:
        state, _, _ = _make_state(tmp_path)
        state.send("hi")
        state.new_conversation()
        assert not state.busy
        assert state.active_turn is None

    def test_load_while_busy_raises(self, tmp_path: Path) -> None:
        state, _, _ = _make_state(tmp_path)
        state.send("hi")
        with pytest.raises(StillStreaming):
            state.load("whatever")

    def test_load_missing(self, tmp_path: Path) -> None:
        state, _, _ = _make_state(tmp_path)
        assert state.load("missing") is False
        assert state.status_message == "Conversation not found: missing"

    def test_load_latest(self, tmp_path: Path) -> None:
        state, _, _ = _make_state(tmp_path)
        assert state.load_latest() is False
        state.send("hi")
        _complete_turn(state, "hello")
        conv_id = state.record.id
        state.clear()
        assert state.load_latest() is True
        assert state.record.id == conv_id

    def test_export_markdown(self, tmp_path: Path) -> None:
        state, _, _ = _make_state(tmp_path)
        state.send("hi")
        _complete_turn(state, "**hello**")
        text = state.export_markdown()
        assert text.startswith("# hi\n")
        assert "## User" in text
        assert "**hello**" in text

    def test_view_snapshot(self, tmp_path: Path) -> None:
        state, _, _ = _make_state(tmp_path)
        state.send("hi")
        view = state.view()
        assert view.streaming and view.busy
        assert view.provider == "anthropic"
        assert view.stream_elapsed is not None
        assert len(view.entries) == 2
        assert view.title == "hi"
        assert view.token_estimate == 0
        state.entries.append(state.entries[0])
        assert len(view.entries) == 2
