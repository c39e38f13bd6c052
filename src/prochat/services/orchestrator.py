"""Tool-use state machine: permission checks, sequencing, and result assembly.

A tool-enabled provider response may request several tool calls. They are
resolved strictly in the order the provider returned them, pausing whenever a
call needs the user's confirmation. Once every call has a result, one user
message of ``tool_result`` blocks is built for the continuation request.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from ..tools import InvalidTool, PermissionTable, ToolCall, ToolExecutor, ToolPermission, ToolResult, format_tool_args

logger = logging.getLogger(__name__)

COLLAPSE_THRESHOLD = 10  # output lines above which an invocation renders collapsed

DENIED_BY_POLICY = "Tool execution denied by user"
DENIED_ONCE = "Denied by user"
NOT_EXECUTED = "not executed"


class OrchestratorState(Enum):
    IDLE = "idle"
    DISPATCHED = "dispatched"
    PARSED = "parsed"
    AUTO_EXECUTED = "auto_executed"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    ALL_RESOLVED = "all_resolved"
    CONTINUING = "continuing"


class ConfirmDecision(Enum):
    ALLOW_ONCE = "allow_once"
    ALWAYS_ALLOW = "always_allow"
    DENY_ONCE = "deny_once"
    DENY_ALWAYS = "deny_always"


_DECISION_KEYS: dict[str, ConfirmDecision] = {
    "": ConfirmDecision.ALLOW_ONCE,
    "y": ConfirmDecision.ALLOW_ONCE,
    "yes": ConfirmDecision.ALLOW_ONCE,
    "a": ConfirmDecision.ALWAYS_ALLOW,
    "always": ConfirmDecision.ALWAYS_ALLOW,
    "n": ConfirmDecision.DENY_ONCE,
    "no": ConfirmDecision.DENY_ONCE,
    "d": ConfirmDecision.DENY_ALWAYS,
    "deny": ConfirmDecision.DENY_ALWAYS,
}


def parse_decision(answer: str) -> ConfirmDecision | None:
    """Map a typed confirmation answer to a decision, or None if unrecognized."""
    return _DECISION_KEYS.get(answer.strip().lower())


@dataclass
class ToolInvocation:
    tool_name: str
    args_summary: str
    result: ToolResult
    collapsed: bool = False


@dataclass(frozen=True)
class ConfirmationRequest:
    call_id: str
    tool_name: str
    args_summary: str
    index: int
    total: int


InvocationSink = Callable[[ToolInvocation], None]


class ToolOrchestrator:
    def __init__(self, executor: ToolExecutor, permissions: PermissionTable | None = None) -> None:
        self.executor = executor
        self.permissions = permissions if permissions is not None else PermissionTable.with_defaults()
        self.state = OrchestratorState.IDLE
        self.pending: list[ToolCall] = []
        self.index = 0
        self.results: dict[str, ToolResult] = {}

    @property
    def busy(self) -> bool:
        """True while a tool-enabled exchange has not reached its final answer."""
        return self.state is not OrchestratorState.IDLE

    @property
    def awaiting_confirmation(self) -> bool:
        return self.state is OrchestratorState.AWAITING_CONFIRMATION

    def dispatched(self) -> None:
        if self.state is OrchestratorState.IDLE:
            self.state = OrchestratorState.DISPATCHED

    def begin(self, calls: list[ToolCall]) -> None:
        if not calls:
            raise ValueError("begin() needs at least one tool call")
        self.pending = list(calls)
        self.index = 0
        self.results = {}
        self.state = OrchestratorState.PARSED
        logger.info("Resolving %d tool call(s): %s", len(calls), ", ".join(c.tool.name for c in calls))

    def current_request(self) -> ConfirmationRequest | None:
        if not self.awaiting_confirmation:
            return None
        call = self.pending[self.index]
        return ConfirmationRequest(
            call_id=call.id,
            tool_name=call.tool.name,
            args_summary=format_tool_args(call.tool),
            index=self.index,
            total=len(self.pending),
        )

    async def advance(self, sink: InvocationSink) -> ConfirmationRequest | None:
        """Resolve calls until one needs confirmation (returned) or all are done (None)."""
        while self.index < len(self.pending):
            call = self.pending[self.index]
            if isinstance(call.tool, InvalidTool):
                self._record(call, ToolResult.fail(call.tool.error), sink)
                continue

            permission = self.permissions.get(call.tool.name)
            if permission is ToolPermission.AUTO_ALLOW:
                self.state = OrchestratorState.AUTO_EXECUTED
                result = await asyncio.to_thread(self.executor.execute, call.tool)
                self._record(call, result, sink)
            elif permission is ToolPermission.DENY:
                self._record(call, ToolResult.fail(DENIED_BY_POLICY), sink)
            else:
                self.state = OrchestratorState.AWAITING_CONFIRMATION
                return self.current_request()

        self.state = OrchestratorState.ALL_RESOLVED
        return None

    async def resolve(self, decision: ConfirmDecision, sink: InvocationSink) -> ConfirmationRequest | None:
        """Apply the user's answer to the call awaiting confirmation, then keep advancing."""
        if not self.awaiting_confirmation:
            raise RuntimeError("No tool call is awaiting confirmation")
        call = self.pending[self.index]
        name = call.tool.name

        if decision is ConfirmDecision.ALWAYS_ALLOW:
            self.permissions.set(name, ToolPermission.AUTO_ALLOW)
        elif decision is ConfirmDecision.DENY_ALWAYS:
            self.permissions.set(name, ToolPermission.DENY)

        if decision in (ConfirmDecision.ALLOW_ONCE, ConfirmDecision.ALWAYS_ALLOW):
            self.state = OrchestratorState.AUTO_EXECUTED
            result = await asyncio.to_thread(self.executor.execute, call.tool)
        else:
            result = ToolResult.fail(DENIED_ONCE)
        logger.info("Confirmation for %s: %s", name, decision.value)
        self._record(call, result, sink)
        return await self.advance(sink)

    def _record(self, call: ToolCall, result: ToolResult, sink: InvocationSink) -> None:
        self.results[call.id] = result
        self.index += 1
        sink(
            ToolInvocation(
                tool_name=call.tool.name,
                args_summary=format_tool_args(call.tool),
                result=result,
                collapsed=len(result.output.splitlines()) > COLLAPSE_THRESHOLD,
            )
        )

    def build_results_message(self) -> dict[str, Any]:
        blocks = []
        for call in self.pending:
            result = self.results.get(call.id) or ToolResult.fail(NOT_EXECUTED)
            blocks.append(
                {
                    "type": "tool_result",
                    "tool_use_id": call.id,
                    "content": result.output,
                    "is_error": not result.success,
                }
            )
        return {"role": "user", "content": blocks}

    def start_continuation(self) -> dict[str, Any]:
        """Build the tool_result message and move to CONTINUING."""
        if self.state is not OrchestratorState.ALL_RESOLVED:
            raise RuntimeError(f"Cannot continue from state {self.state.value}")
        message = self.build_results_message()
        self._clear_pending()
        self.state = OrchestratorState.CONTINUING
        return message

    def abandon(self, reason: str, sink: InvocationSink) -> dict[str, Any] | None:
        """Fail every unresolved call with ``reason`` and return the tool_result message.

        Each failed call is reported to ``sink`` like any other result. Returns None
        when no calls were pending. The orchestrator ends IDLE.
        """
        if not self.pending:
            self.reset()
            return None
        while self.index < len(self.pending):
            self._record(self.pending[self.index], ToolResult.fail(reason), sink)
        message = self.build_results_message()
        self.reset()
        return message

    def reset(self) -> None:
        self._clear_pending()
        self.state = OrchestratorState.IDLE

    def _clear_pending(self) -> None:
        self.pending = []
        self.index = 0
        self.results = {}
