"""Rich-based terminal output for the chat client.

The renderer is a sink: it receives a ``ChatView`` after every event and
prints whatever has not been printed yet. Assistant replies are rendered as
Markdown once complete; while a reply streams, progress lives in the prompt's
bottom toolbar (``status_line``).
"""

from __future__ import annotations

from typing import Callable

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.padding import Padding

from ..services.conversation import ChatView, DisplayEntry
from ..services.orchestrator import ConfirmationRequest, ToolInvocation

GOLD = "#C5A059"
MUTED = "grey62"
CHROME = "grey42"
ERROR_RED = "red"

_SPINNER = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏"
_COLLAPSED_PREVIEW_LINES = 3


def _humanize_elapsed(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m {secs:02d}s"


class TerminalRenderer:
    def __init__(self, console: Console | None = None, notify_on_complete: bool = True) -> None:
        self.console = console or Console()
        self.notify_on_complete = notify_on_complete
        self._conversation_id: str | None = None
        self._printed: list[DisplayEntry] = []  # entries already on screen, in order
        self._shown_status: str | None = None
        self._shown_confirmation: ConfirmationRequest | None = None
        self._turns_completed = 0
        self._status_line = ""
        self._invalidate: Callable[[], None] | None = None

    def set_invalidate(self, callback: Callable[[], None]) -> None:
        """Register a callback that redraws the prompt (and its toolbar)."""
        self._invalidate = callback

    def status_line(self) -> str:
        return self._status_line

    def render(self, view: ChatView) -> None:
        replay = view.conversation_id != self._conversation_id
        if replay:
            self._conversation_id = view.conversation_id
            self._printed = []
            if view.entries:
                self.console.rule(f"[{MUTED}]{escape(view.title)}[/{MUTED}]", style=CHROME)

        self._render_entries(view, replay)
        self._render_confirmation(view.pending_confirmation)
        self._render_status(view.status_message)

        if view.turns_completed > self._turns_completed:
            self._turns_completed = view.turns_completed
            if self.notify_on_complete:
                self.console.bell()

        self._status_line = self._build_status_line(view)
        if self._invalidate is not None:
            self._invalidate()

    def _render_entries(self, view: ChatView, replay: bool) -> None:
        entries = view.entries
        keep = 0
        while keep < len(self._printed) and keep < len(entries) and self._printed[keep] is entries[keep]:
            keep += 1
        self._printed = self._printed[:keep]

        for index in range(keep, len(view.entries)):
            entry = view.entries[index]
            is_open = view.busy and index == len(view.entries) - 1 and entry.role == "assistant"
            if is_open:
                break
            self._render_entry(entry, echo_user=replay)
            self._printed.append(entry)

    def _render_entry(self, entry: DisplayEntry, echo_user: bool) -> None:
        if entry.role == "user":
            # the prompt line already shows what was typed this session
            if echo_user:
                self.console.print(f"[{GOLD}]❯[/{GOLD}] {escape(entry.text)}")
            return
        if entry.text.strip():
            self.console.print(Padding(Markdown(entry.text), (0, 2, 0, 2)))
        for invocation in entry.tool_invocations:
            self.render_tool_invocation(invocation)
        if entry.text.strip() or entry.tool_invocations:
            self.console.print()

    def render_tool_invocation(self, invocation: ToolInvocation) -> None:
        ok = invocation.result.success
        mark = "[green]✓[/green]" if ok else f"[{ERROR_RED}]✗[/{ERROR_RED}]"
        self.console.print(
            f"  {mark} [bold]{escape(invocation.tool_name)}[/bold] [{MUTED}]{escape(invocation.args_summary)}[/{MUTED}]"
        )
        lines = invocation.result.output.splitlines()
        shown = lines[:_COLLAPSED_PREVIEW_LINES] if invocation.collapsed else lines
        style = MUTED if ok else ERROR_RED
        for line in shown:
            self.console.print(f"    [{style}]{escape(line)}[/{style}]")
        if invocation.collapsed:
            hidden = len(lines) - len(shown)
            self.console.print(f"    [{CHROME}]… {hidden} more lines[/{CHROME}]")

    def _render_confirmation(self, request: ConfirmationRequest | None) -> None:
        if request is None or request == self._shown_confirmation:
            self._shown_confirmation = request
            return
        self._shown_confirmation = request
        position = f" ({request.index + 1}/{request.total})" if request.total > 1 else ""
        self.console.print(
            f"\n[yellow bold]Allow {escape(request.tool_name)}?[/yellow bold]{position} "
            f"[{MUTED}]{escape(request.args_summary)}[/{MUTED}]"
        )
        self.console.print(f"  [{MUTED}][y] Allow once  [a] Always allow  [n] Deny  [d] Always deny[/{MUTED}]")

    def _render_status(self, message: str | None) -> None:
        if message == self._shown_status:
            return
        self._shown_status = message
        if not message:
            return
        if message.startswith("Error:"):
            self.console.print(f"[{ERROR_RED} bold]Error:[/{ERROR_RED} bold] {escape(message[len('Error:'):].strip())}")
        else:
            self.console.print(f"[{MUTED}]{escape(message)}[/{MUTED}]")

    def _build_status_line(self, view: ChatView) -> str:
        if view.pending_confirmation is not None:
            return f" waiting for confirmation: {view.pending_confirmation.tool_name}"
        if view.streaming:
            frame = _SPINNER[view.tick % len(_SPINNER)]
            elapsed = _humanize_elapsed(view.stream_elapsed or 0.0)
            chars = len(view.entries[-1].text) if view.entries else 0
            return f" {frame} Thinking... {elapsed} · {chars} chars · Esc to cancel"
        parts = [f"{view.provider}/{view.model}", "tools on" if view.tools_enabled else "tools off"]
        parts.append(f"~{view.token_estimate:,} tokens")
        if view.last_response_time is not None:
            parts.append(f"last {_humanize_elapsed(view.last_response_time)}")
        return " " + " · ".join(parts)

    def render_welcome(self, view: ChatView, working_dir: str) -> None:
        self.console.print(f"\n[bold {GOLD}]pro-chat[/bold {GOLD}] - {escape(working_dir)}")
        tools = "on" if view.tools_enabled else "off"
        self.console.print(f"  [{MUTED}]Model: {escape(view.provider)}/{escape(view.model)} | Tools: {tools}[/{MUTED}]")
        self.console.print(
            f"  [{MUTED}]Type /help for commands, Esc to cancel, Ctrl+R retry, Ctrl+E edit, Ctrl+D to exit[/{MUTED}]\n"
        )
