"""Interactive terminal front end: prompt_toolkit input, ticker, and start-up wiring."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from typing import Any

from prompt_toolkit import PromptSession
from prompt_toolkit.filters import Condition
from prompt_toolkit.formatted_text import HTML
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.patch_stdout import patch_stdout

from ..config import AppConfig
from ..services.ai_service import create_ai_service
from ..services.conversation import ChatView, ConversationError, ConversationState
from ..services.coordinator import CallLauncher, EventCoordinator
from ..services.events import AppEvent, InputLine, KeyPress, Resize, Tick
from ..services.orchestrator import ToolOrchestrator
from ..tools import PermissionTable, ToolExecutor
from .commands import SlashCommands
from .renderer import GOLD, TerminalRenderer

logger = logging.getLogger(__name__)

_PROMPT = HTML(f"<style fg='{GOLD}'>❯</style> ")


class TerminalInput:
    """Reads lines and hot keys, posting them to the coordinator's queue."""

    def __init__(self, queue: asyncio.Queue[AppEvent], renderer: TerminalRenderer) -> None:
        self.queue = queue
        self._busy = False
        self._pending_prefill: str | None = None

        kb = KeyBindings()

        # Escape only matters while a turn is running; otherwise leave it to prompt_toolkit
        @kb.add("escape", filter=Condition(lambda: self._busy))
        def _escape(event: Any) -> None:
            self._post(KeyPress("escape"))

        @kb.add("c-r")
        def _retry(event: Any) -> None:
            self._post(KeyPress("c-r"))

        @kb.add("c-e")
        def _edit(event: Any) -> None:
            self._post(KeyPress("c-e"))

        @kb.add("c-n")
        def _new(event: Any) -> None:
            self._post(KeyPress("c-n"))

        @kb.add("c-c")
        def _ctrl_c(event: Any) -> None:
            buf = event.current_buffer
            if buf.text:
                buf.reset()
            else:
                self._post(KeyPress("c-c"))

        self.session: PromptSession[str] = PromptSession(
            key_bindings=kb,
            bottom_toolbar=renderer.status_line,
            refresh_interval=0.5,
        )
        renderer.set_invalidate(self._invalidate)

    def _post(self, event: AppEvent) -> None:
        self.queue.put_nowait(event)

    def _invalidate(self) -> None:
        app = self.session.app
        if app.is_running:
            app.invalidate()

    def refresh(self, view: ChatView) -> None:
        self._busy = view.busy

    def prefill(self, text: str) -> None:
        """Put ``text`` into the input line, or into the next prompt if none is active."""
        if self.session.app.is_running:
            buf = self.session.default_buffer
            buf.text = text
            buf.cursor_position = len(text)
        else:
            self._pending_prefill = text

    async def run(self) -> None:
        while True:
            default, self._pending_prefill = self._pending_prefill or "", None
            try:
                text = await self.session.prompt_async(_PROMPT, default=default)
            except EOFError:
                await self.queue.put(InputLine("/quit"))
                return
            except KeyboardInterrupt:
                continue
            await self.queue.put(InputLine(text))


async def tick_source(queue: asyncio.Queue[AppEvent], interval: float) -> None:
    """Post a Tick every ``interval`` seconds, and a Resize when the terminal size changes."""
    last_size = shutil.get_terminal_size()
    while True:
        await asyncio.sleep(interval)
        await queue.put(Tick())
        size = shutil.get_terminal_size()
        if size != last_size:
            last_size = size
            await queue.put(Resize(size.columns, size.lines))


def build_state(config: AppConfig, queue: asyncio.Queue[AppEvent], no_tools: bool = False) -> tuple[ConversationState, CallLauncher]:
    ai_service = create_ai_service(config.ai)
    launcher = CallLauncher(ai_service, queue)
    executor = ToolExecutor(os.getcwd(), command_timeout=config.tools.command_timeout)
    permissions = PermissionTable.with_defaults(config.tools.allowed_tools, config.tools.denied_tools)
    state = ConversationState(config, launcher, ToolOrchestrator(executor, permissions))
    if no_tools:
        state.tools_enabled = False
    return state, launcher


def _restore_conversation(state: ConversationState, config: AppConfig, conversation_id: str | None) -> None:
    if conversation_id:
        if not state.load(conversation_id):
            state.status_message = f"Conversation {conversation_id} not found, starting new"
        return
    last = config.cli.last_conversation_id
    if config.cli.restore_last and last and not state.load(last):
        logger.info("Last conversation %s is gone; starting fresh", last)
        state.status_message = None


async def run_cli(
    config: AppConfig,
    prompt: str | None = None,
    conversation_id: str | None = None,
    no_tools: bool = False,
) -> None:
    queue: asyncio.Queue[AppEvent] = asyncio.Queue()
    state, launcher = build_state(config, queue, no_tools=no_tools)
    _restore_conversation(state, config, conversation_id)

    with patch_stdout():
        renderer = TerminalRenderer(notify_on_complete=config.cli.notify_on_complete)
        terminal = TerminalInput(queue, renderer)
        coordinator = EventCoordinator(state, renderer, queue, commands=SlashCommands(state), input_source=terminal)
        renderer.render_welcome(state.view(), os.getcwd())

        if prompt:
            try:
                state.send(prompt)
            except ConversationError as e:
                state.status_message = e.message

        producers = [
            asyncio.create_task(terminal.run(), name="terminal-input"),
            asyncio.create_task(tick_source(queue, config.cli.tick_rate_ms / 1000), name="ticker"),
        ]
        try:
            await coordinator.run()
        finally:
            for task in producers:
                task.cancel()
            await asyncio.gather(*producers, return_exceptions=True)
            await launcher.shutdown()
            await launcher.ai_service.aclose()
            if state.record.messages:
                try:
                    state.save()
                except (OSError, ValueError) as e:
                    logger.error("Final save failed: %s", e)
