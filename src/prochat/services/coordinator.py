"""The single event loop that owns conversation state.

Every producer (terminal input, the ticker, provider call tasks) only ever puts
events on one ``asyncio.Queue``. ``EventCoordinator.run`` takes them off in
arrival order and is the only code that mutates ``ConversationState``, the
orchestrator's pending calls, and the permission table.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

from .ai_service import AIService
from .conversation import ChatView, ConversationError, ConversationState
from .events import (
    AppEvent,
    Chunk,
    Done,
    InputLine,
    KeyPress,
    ProviderUpdate,
    Resize,
    StreamError,
    Tick,
    ToolResponsePayload,
)
from .orchestrator import ConfirmDecision, parse_decision

logger = logging.getLogger(__name__)

CONFIRM_HINT = "Answer y (allow once), a (always allow), n (deny) or d (always deny)"


class Renderer(Protocol):
    def render(self, view: ChatView) -> None: ...


class InputSource(Protocol):
    def prefill(self, text: str) -> None: ...

    def refresh(self, view: ChatView) -> None: ...


class CommandHandler(Protocol):
    async def handle(self, line: str) -> None: ...


class CallLauncher:
    """Spawns one task per provider call; each task only posts events to the queue."""

    def __init__(self, ai_service: AIService, queue: asyncio.Queue[AppEvent]) -> None:
        self.ai_service = ai_service
        self.queue = queue
        self._tasks: set[asyncio.Task[None]] = set()

    def __call__(self, turn_id: int, messages: list[dict[str, Any]], tools_enabled: bool) -> None:
        task = asyncio.get_running_loop().create_task(
            self._pump(turn_id, messages, tools_enabled), name=f"provider-turn-{turn_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _pump(self, turn_id: int, messages: list[dict[str, Any]], tools_enabled: bool) -> None:
        try:
            async for event in self.ai_service.stream_chat(messages, tools_enabled=tools_enabled):
                await self.queue.put(ProviderUpdate(turn_id, event))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Provider task for turn %d crashed", turn_id)
            await self.queue.put(ProviderUpdate(turn_id, StreamError(f"Unexpected error: {e}")))

    @property
    def active_tasks(self) -> int:
        return len(self._tasks)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)


class EventCoordinator:
    def __init__(
        self,
        state: ConversationState,
        renderer: Renderer,
        queue: asyncio.Queue[AppEvent],
        commands: CommandHandler | None = None,
        input_source: InputSource | None = None,
    ) -> None:
        self.state = state
        self.renderer = renderer
        self.queue = queue
        self.commands = commands
        self.input_source = input_source
        self.terminal_size: tuple[int, int] | None = None
        self.dropped_events = 0

    async def run(self) -> None:
        self._render()
        while not self.state.should_quit:
            event = await self.queue.get()
            await self.process(event)

    async def process(self, event: AppEvent) -> None:
        """Dispatch one event, then hand a fresh view to the renderer."""
        try:
            await self.dispatch(event)
        except ConversationError as e:
            self.state.status_message = e.message
        except Exception:
            logger.exception("Unhandled error while processing %s", type(event).__name__)
            self.state.status_message = "Internal error (details in the log file)"
        text = self.state.take_input_buffer()
        if text is not None and self.input_source is not None:
            self.input_source.prefill(text)
        self._render()

    async def dispatch(self, event: AppEvent) -> None:
        if isinstance(event, ProviderUpdate):
            await self._on_provider(event)
        elif isinstance(event, InputLine):
            await self._on_line(event.text)
        elif isinstance(event, KeyPress):
            await self._on_key(event.key)
        elif isinstance(event, Tick):
            self.state.tick += 1
        elif isinstance(event, Resize):
            self.terminal_size = (event.columns, event.rows)

    async def _on_provider(self, update: ProviderUpdate) -> None:
        if not self.state.accepts(update.turn_id):
            self.dropped_events += 1
            logger.debug("Dropping %s for stale turn %d", type(update.event).__name__, update.turn_id)
            return
        event = update.event
        if isinstance(event, Chunk):
            self.state.on_chunk(event.text)
        elif isinstance(event, Done):
            self.state.on_done()
        elif isinstance(event, StreamError):
            self.state.on_error(event.message)
        elif isinstance(event, ToolResponsePayload):
            await self.state.on_tool_payload(event.raw)

    async def _on_line(self, text: str) -> None:
        if self.state.pending_confirmation is not None:
            decision = parse_decision(text)
            if decision is None:
                self.state.status_message = CONFIRM_HINT
                return
            await self.state.answer_confirmation(decision)
            return

        stripped = text.strip()
        if stripped.startswith("/") and self.commands is not None:
            await self.commands.handle(stripped)
            return
        self.state.send(stripped)

    async def _on_key(self, key: str) -> None:
        if key in ("escape", "c-c"):
            if self.state.pending_confirmation is not None and key == "escape":
                await self.state.answer_confirmation(ConfirmDecision.DENY_ONCE)
            elif self.state.busy:
                self.state.cancel()
        elif key == "c-r":
            self.state.retry()
        elif key == "c-e":
            self.state.edit_last()
        elif key == "c-n":
            self.state.new_conversation()

    def _render(self) -> None:
        view = self.state.view()
        self.renderer.render(view)
        if self.input_source is not None:
            self.input_source.refresh(view)
