"""Conversation state: the display transcript, provider history and persisted record.

The three views are only ever changed together, inside the operations of
``ConversationState``:

- ``entries`` (``DisplayEntry``): what the user sees, including tool
  invocations and an empty assistant placeholder while a reply streams.
- ``history``: the provider-shaped message list resent on every call. Tool
  exchanges live here as raw block lists.
- ``record`` (``StoredConversation``): the durable copy. It is re-derived from
  ``entries`` (non-empty text only) by ``_project`` and written to disk when a
  turn ends or on explicit save.
"""

from __future__ import annotations

import copy
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from ..config import AppConfig, save_last_conversation
from ..models import ConversationSummary, StoredConversation, StoredMessage, now_iso
from ..tools import parse_tool_calls
from . import storage
from .orchestrator import ConfirmationRequest, ConfirmDecision, ToolInvocation, ToolOrchestrator

logger = logging.getLogger(__name__)

# (turn_id, messages snapshot, tools_enabled) -> None; must not block.
Launcher = Callable[[int, list[dict[str, Any]], bool], None]

CANCELLED_BY_USER = "Cancelled by user"


class ConversationError(Exception):
    """A user-facing operation was refused; nothing was changed."""

    default_message = "Operation not allowed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class StillStreaming(ConversationError):
    default_message = "Still waiting for the current response"


class NoAssistantMessage(ConversationError):
    default_message = "No assistant message to retry"


class NoUserMessage(ConversationError):
    default_message = "No user message to edit"


class NoApiKey(ConversationError):
    default_message = "No API key configured"


class InputMode(Enum):
    NORMAL = "normal"
    EDITING = "editing"


@dataclass
class DisplayEntry:
    role: str
    text: str
    timestamp: str = field(default_factory=now_iso)
    tool_invocations: list[ToolInvocation] = field(default_factory=list)


@dataclass
class StreamSession:
    accumulated_text: str = ""
    start_time: float = field(default_factory=time.monotonic)

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.start_time


@dataclass(frozen=True)
class ChatView:
    """Snapshot handed to the renderer after every event."""

    conversation_id: str
    title: str
    entries: tuple[DisplayEntry, ...]
    streaming: bool
    busy: bool
    pending_confirmation: ConfirmationRequest | None
    status_message: str | None
    provider: str
    model: str
    tools_enabled: bool
    tick: int
    stream_elapsed: float | None
    last_response_time: float | None
    turns_completed: int
    token_estimate: int
    input_mode: InputMode


def _is_tool_result_message(message: dict[str, Any]) -> bool:
    content = message.get("content")
    return (
        message.get("role") == "user"
        and isinstance(content, list)
        and any(isinstance(b, dict) and b.get("type") == "tool_result" for b in content)
    )


def _has_tool_use(message: dict[str, Any]) -> bool:
    content = message.get("content")
    return isinstance(content, list) and any(isinstance(b, dict) and b.get("type") == "tool_use" for b in content)


def _last_index(items: list[Any], predicate: Callable[[Any], bool]) -> int | None:
    for i in range(len(items) - 1, -1, -1):
        if predicate(items[i]):
            return i
    return None


def estimate_tokens(messages: list[dict[str, Any]]) -> int:
    """Rough token count (about four characters per token)."""
    chars = 0
    for msg in messages:
        content = msg.get("content")
        if isinstance(content, str):
            chars += len(content)
        else:
            chars += len(json.dumps(content, default=str))
    return chars // 4


class ConversationState:
    def __init__(
        self,
        config: AppConfig,
        launcher: Launcher,
        orchestrator: ToolOrchestrator,
        history_dir: Path | None = None,
    ) -> None:
        self.config = config
        self.launcher = launcher
        self.orchestrator = orchestrator
        self.history_dir = history_dir or config.app.conversations_dir
        self.tools_enabled = config.tools.enabled

        self.entries: list[DisplayEntry] = []
        self.history: list[dict[str, Any]] = []
        self.record = StoredConversation()
        self._dirty = False

        self.streaming = False
        self.session: StreamSession | None = None
        self.active_turn: int | None = None
        self._turn_counter = 0
        self._turn_started: float | None = None

        self.input_buffer: str | None = None
        self.input_mode = InputMode.NORMAL
        self.status_message: str | None = None
        self.pending_confirmation: ConfirmationRequest | None = None
        self.last_response_time: float | None = None
        self.turns_completed = 0
        self.tick = 0
        self.should_quit = False

    # -- queries --

    @property
    def busy(self) -> bool:
        """A turn is in progress: a call is streaming or tool calls are unresolved."""
        return self.streaming or self.orchestrator.busy

    def accepts(self, turn_id: int) -> bool:
        return self.active_turn is not None and turn_id == self.active_turn

    def tools_active(self) -> bool:
        # Tool use is only wired for the Anthropic wire format
        return self.tools_enabled and self.config.ai.provider == "anthropic"

    def view(self) -> ChatView:
        return ChatView(
            conversation_id=self.record.id,
            title=self.record.title,
            entries=tuple(self.entries),
            streaming=self.streaming,
            busy=self.busy,
            pending_confirmation=self.pending_confirmation,
            status_message=self.status_message,
            provider=self.config.ai.provider,
            model=self.config.ai.model,
            tools_enabled=self.tools_active(),
            tick=self.tick,
            stream_elapsed=self.session.elapsed if self.session else None,
            last_response_time=self.last_response_time,
            turns_completed=self.turns_completed,
            token_estimate=estimate_tokens(self.history),
            input_mode=self.input_mode,
        )

    # -- user operations --

    def send(self, text: str) -> bool:
        """Start a new turn with ``text``. Returns False (and does nothing) for blank input."""
        if not text.strip():
            return False
        if self.busy:
            raise StillStreaming()
        self._require_api_key()

        self.entries.append(DisplayEntry("user", text))
        self.history.append({"role": "user", "content": text})
        self._project()
        self.entries.append(DisplayEntry("assistant", ""))
        self.input_mode = InputMode.NORMAL
        self.status_message = None
        self._turn_started = time.monotonic()
        self._launch(self.tools_active())
        return True

    def retry(self) -> None:
        """Drop the last assistant reply and ask the provider again."""
        if self.busy:
            raise StillStreaming()
        if not self.entries or self.entries[-1].role != "assistant":
            raise NoAssistantMessage()
        self._require_api_key()
        trimmed = self._history_without_last_assistant()
        if not trimmed:
            raise NoUserMessage("No user message to retry")

        self.entries.pop()
        self.history = trimmed
        self._project()
        self.entries.append(DisplayEntry("assistant", ""))
        self.status_message = "Retrying..."
        self._turn_started = time.monotonic()
        self._launch(self.tools_active())

    def edit_last(self) -> str:
        """Move the last user message back into the input buffer, dropping its turn."""
        if self.busy:
            raise StillStreaming()
        user_idx = _last_index(self.entries, lambda e: e.role == "user")
        if user_idx is None:
            raise NoUserMessage()

        text = self.entries[user_idx].text
        # everything after the last user entry is that turn's reply
        del self.entries[user_idx:]
        hist_idx = _last_index(self.history, lambda m: m.get("role") == "user" and isinstance(m.get("content"), str))
        if hist_idx is not None:
            del self.history[hist_idx:]
        self._project()
        self.input_buffer = text
        self.input_mode = InputMode.EDITING
        self.status_message = "Editing last message"
        return text

    def cancel(self) -> bool:
        """Stop the current turn. Returns False when nothing was in progress."""
        if self.orchestrator.awaiting_confirmation:
            message = self.orchestrator.abandon(CANCELLED_BY_USER, self._attach_invocation)
            if message:
                self.history.append(message)
            self.pending_confirmation = None
            self.active_turn = None
            self._finish_bookkeeping(save=True)
            self.status_message = "Cancelled"
            return True

        if not self.streaming:
            return False
        text = self._end_stream()
        self._commit_reply(text)
        self.orchestrator.reset()
        self._finish_bookkeeping(save=True)
        self.status_message = "Cancelled"
        logger.info("Turn cancelled after %d characters", len(text))
        return True

    async def answer_confirmation(self, decision: ConfirmDecision) -> bool:
        if not self.orchestrator.awaiting_confirmation:
            return False
        request = await self.orchestrator.resolve(decision, self._attach_invocation)
        self._after_tool_step(request)
        return True

    # -- provider events (turn id already checked by the coordinator) --

    def on_chunk(self, text: str) -> None:
        if not self.streaming or self.session is None:
            return
        self.session.accumulated_text += text
        entry = self._open_entry()
        if entry is not None:
            entry.text = self.session.accumulated_text

    def on_done(self) -> None:
        if not self.streaming:
            return
        text = self._end_stream()
        self._commit_reply(text)
        self.orchestrator.reset()
        self.turns_completed += 1
        self._finish_bookkeeping(save=True)

    def on_error(self, message: str) -> None:
        if not self.streaming:
            return
        self._fail_turn(message, self._end_stream())

    async def on_tool_payload(self, raw: str) -> None:
        if not self.streaming:
            return
        text = self._end_stream()
        try:
            parsed = json.loads(raw)
            content = parsed["content"]
            if not isinstance(content, list):
                raise TypeError("content is not a list")
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.error("Malformed tool response: %s", e)
            self._fail_turn("Malformed tool response from provider", text)
            return

        calls = parse_tool_calls(content)
        if not calls:
            self._commit_reply(text)
            self.orchestrator.reset()
            self.turns_completed += 1
            self._finish_bookkeeping(save=True)
            return

        entry = self._open_entry()
        if entry is not None:
            entry.text = text
        self.history.append({"role": "assistant", "content": content})
        self.orchestrator.begin(calls)
        request = await self.orchestrator.advance(self._attach_invocation)
        self._after_tool_step(request)

    # -- conversation lifecycle --

    def new_conversation(self) -> None:
        if self.busy:
            self.cancel()
        if self._dirty and self.record.messages:
            self.save()
        self._reset_views()
        self.status_message = "New conversation"

    def clear(self) -> None:
        if self.busy:
            self.cancel()
        self._reset_views()
        self.status_message = "Conversation cleared"

    def load(self, conversation_id: str) -> bool:
        if self.busy:
            raise StillStreaming()
        conv = storage.get_conversation(self.history_dir, conversation_id)
        if conv is None:
            self.status_message = f"Conversation not found: {conversation_id}"
            return False
        self._reset_views()
        self.record = conv
        self.entries = [DisplayEntry(m.role, m.content, m.timestamp) for m in conv.messages]
        self.history = [
            {"role": m.role, "content": m.content} for m in conv.messages if m.role in ("user", "assistant")
        ]
        self.status_message = f"Loaded: {conv.title}"
        logger.info("Loaded conversation %s (%d messages)", conv.id, len(conv.messages))
        return True

    def load_latest(self) -> bool:
        latest = storage.get_latest_conversation(self.history_dir)
        if latest is None:
            return False
        return self.load(latest.id)

    def list_conversations(self, limit: int | None = None) -> list[ConversationSummary]:
        return storage.list_conversations(self.history_dir, limit=limit)

    def delete(self, conversation_id: str) -> bool:
        """Delete a saved conversation other than the open one. Returns False if it did not exist."""
        if conversation_id == self.record.id:
            raise ConversationError("Cannot delete the open conversation; use /clear")
        deleted = storage.delete_conversation(self.history_dir, conversation_id)
        if deleted:
            logger.info("Deleted conversation %s", conversation_id)
        return deleted

    def save(self) -> None:
        self._project()
        storage.save_conversation(self.history_dir, self.record)
        self._dirty = False
        if self.config.config_path is not None:
            save_last_conversation(self.record.id, self.config.config_path)

    def export_markdown(self) -> str:
        lines = [f"# {self.record.title}", ""]
        for entry in self.entries:
            if not entry.text and not entry.tool_invocations:
                continue
            label = "User" if entry.role == "user" else "Assistant"
            lines.append(f"## {label} ({entry.timestamp})")
            lines.append("")
            if entry.text:
                lines.append(entry.text)
                lines.append("")
            for inv in entry.tool_invocations:
                mark = "ok" if inv.result.success else "error"
                lines.append(f"- `{inv.tool_name}` {inv.args_summary} ({mark})")
            if entry.tool_invocations:
                lines.append("")
        return "\n".join(lines).rstrip() + "\n"

    def take_input_buffer(self) -> str | None:
        text, self.input_buffer = self.input_buffer, None
        return text

    # -- internals --

    def _require_api_key(self) -> None:
        if not self.config.ai.resolved_api_key():
            provider = self.config.ai.provider
            env = "ANTHROPIC_API_KEY" if provider == "anthropic" else "OPENAI_API_KEY"
            raise NoApiKey(f"No API key for {provider}; set {env} or ai.{provider}_api_key")

    def _launch(self, tools: bool) -> None:
        self._turn_counter += 1
        self.active_turn = self._turn_counter
        self.streaming = True
        self.session = StreamSession()
        if tools:
            self.orchestrator.dispatched()
        self.launcher(self.active_turn, copy.deepcopy(self.history), tools)

    def _end_stream(self) -> str:
        text = self.session.accumulated_text if self.session else ""
        self.streaming = False
        self.session = None
        self.active_turn = None
        return text

    def _open_entry(self) -> DisplayEntry | None:
        if self.entries and self.entries[-1].role == "assistant":
            return self.entries[-1]
        return None

    def _commit_reply(self, text: str) -> None:
        """Record the final text of a provider call, or drop its empty placeholder."""
        if not text:
            self._drop_empty_placeholder()
            return
        entry = self._open_entry()
        if entry is not None:
            entry.text = text
        self.history.append({"role": "assistant", "content": text})

    def _drop_empty_placeholder(self) -> None:
        entry = self._open_entry()
        if entry is not None and not entry.text and not entry.tool_invocations:
            self.entries.pop()

    def _attach_invocation(self, invocation: ToolInvocation) -> None:
        entry = self._open_entry()
        if entry is None:
            entry = DisplayEntry("assistant", "")
            self.entries.append(entry)
        entry.tool_invocations.append(invocation)

    def _after_tool_step(self, request: ConfirmationRequest | None) -> None:
        self.pending_confirmation = request
        if request is not None:
            self.status_message = None
            return
        self.history.append(self.orchestrator.start_continuation())
        self.entries.append(DisplayEntry("assistant", ""))
        self._launch(tools=True)

    def _history_without_last_assistant(self) -> list[dict[str, Any]]:
        trimmed = list(self.history)
        idx = _last_index(trimmed, lambda m: m.get("role") == "assistant")
        if idx is None:
            return trimmed
        end = idx + 1
        # a tool_use message takes its tool_result reply with it
        if _has_tool_use(trimmed[idx]) and end < len(trimmed) and _is_tool_result_message(trimmed[end]):
            end += 1
        del trimmed[idx:end]
        return trimmed

    def _fail_turn(self, message: str, text: str) -> None:
        self._commit_reply(text)
        self.orchestrator.reset()
        self.pending_confirmation = None
        self._finish_bookkeeping(save=bool(text))
        self.status_message = f"Error: {message}"
        logger.warning("Turn failed: %s", message)

    def _finish_bookkeeping(self, save: bool) -> None:
        if self._turn_started is not None:
            self.last_response_time = time.monotonic() - self._turn_started
            self._turn_started = None
        self._project()
        if save:
            try:
                self.save()
            except (OSError, ValueError) as e:
                logger.error("Failed to save conversation %s: %s", self.record.id, e)
                self.status_message = f"Failed to save conversation: {e}"

    def _project(self) -> None:
        self.record.messages = [
            StoredMessage(role=e.role, content=e.text, timestamp=e.timestamp) for e in self.entries if e.text
        ]
        self.record.auto_title()
        self.record.touch()
        self._dirty = True

    def _reset_views(self) -> None:
        self.entries = []
        self.history = []
        self.record = StoredConversation()
        self._dirty = False
        self.streaming = False
        self.session = None
        self.active_turn = None
        self.pending_confirmation = None
        self.input_mode = InputMode.NORMAL
        self.orchestrator.reset()
