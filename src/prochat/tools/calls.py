"""Tool request variants, results, and parsing of provider tool_use blocks."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, ClassVar, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReadFile:
    name: ClassVar[str] = "read_file"
    path: str


@dataclass(frozen=True)
class WriteFile:
    name: ClassVar[str] = "write_file"
    path: str
    content: str


@dataclass(frozen=True)
class ListFiles:
    name: ClassVar[str] = "list_files"
    path: str | None = None
    pattern: str | None = None


@dataclass(frozen=True)
class SearchFiles:
    name: ClassVar[str] = "search_files"
    pattern: str
    path: str | None = None


@dataclass(frozen=True)
class Execute:
    name: ClassVar[str] = "execute"
    command: str


@dataclass(frozen=True)
class EditFile:
    name: ClassVar[str] = "edit_file"
    path: str
    old_text: str
    new_text: str


@dataclass(frozen=True)
class InvalidTool:
    """A tool_use block that names an unknown tool or carries unusable input.

    Kept as a call so its id still receives a tool_result.
    """

    name: str
    error: str


Tool = Union[ReadFile, WriteFile, ListFiles, SearchFiles, Execute, EditFile, InvalidTool]


@dataclass(frozen=True)
class ToolCall:
    id: str
    tool: Tool


@dataclass(frozen=True)
class ToolResult:
    success: bool
    output: str

    @classmethod
    def ok(cls, output: str) -> ToolResult:
        return cls(success=True, output=output)

    @classmethod
    def fail(cls, output: str) -> ToolResult:
        return cls(success=False, output=output)


class _ArgumentError(ValueError):
    pass


def _arg(args: dict[str, Any], key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str):
        raise _ArgumentError(f"'{key}' is required and must be a string")
    return value


def _opt_arg(args: dict[str, Any], key: str) -> str | None:
    value = args.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise _ArgumentError(f"'{key}' must be a string")
    return value


def _build_tool(name: str, args: dict[str, Any]) -> Tool:
    if name == ReadFile.name:
        return ReadFile(path=_arg(args, "path"))
    if name == WriteFile.name:
        return WriteFile(path=_arg(args, "path"), content=_arg(args, "content"))
    if name == ListFiles.name:
        return ListFiles(path=_opt_arg(args, "path"), pattern=_opt_arg(args, "pattern"))
    if name == SearchFiles.name:
        return SearchFiles(pattern=_arg(args, "pattern"), path=_opt_arg(args, "path"))
    if name == Execute.name:
        return Execute(command=_arg(args, "command"))
    if name == EditFile.name:
        return EditFile(path=_arg(args, "path"), old_text=_arg(args, "old_text"), new_text=_arg(args, "new_text"))
    return InvalidTool(name=name, error=f"Unknown tool: {name}")


def parse_tool_calls(content: list[Any]) -> list[ToolCall]:
    """Extract tool calls, in order, from a provider ``content`` block list.

    Blocks without an id are skipped since no tool_result could reference them.
    """
    calls: list[ToolCall] = []
    for block in content:
        if not isinstance(block, dict) or block.get("type") != "tool_use":
            continue
        call_id = block.get("id")
        if not isinstance(call_id, str) or not call_id:
            logger.warning("Skipping tool_use block without an id: %.200s", block)
            continue
        name = block.get("name")
        if not isinstance(name, str) or not name:
            calls.append(ToolCall(call_id, InvalidTool(name="", error="Tool call is missing a name")))
            continue
        args = block.get("input")
        if not isinstance(args, dict):
            args = {}
        try:
            tool = _build_tool(name, args)
        except _ArgumentError as e:
            tool = InvalidTool(name=name, error=f"Invalid input for {name}: {e}")
        calls.append(ToolCall(call_id, tool))
    return calls


def format_tool_args(tool: Tool) -> str:
    """Short human-readable summary of a call's arguments."""
    if isinstance(tool, ReadFile):
        return f"path: {tool.path}"
    if isinstance(tool, WriteFile):
        return f"path: {tool.path} ({len(tool.content.encode('utf-8'))} bytes)"
    if isinstance(tool, ListFiles):
        summary = f"path: {tool.path or '.'}"
        return f"{summary}, pattern: {tool.pattern}" if tool.pattern else summary
    if isinstance(tool, SearchFiles):
        return f"pattern: {tool.pattern}, path: {tool.path}" if tool.path else f"pattern: {tool.pattern}"
    if isinstance(tool, Execute):
        return f"$ {tool.command}"
    if isinstance(tool, EditFile):
        return f"path: {tool.path}, replacing {len(tool.old_text)} chars"
    return tool.error
