"""Built-in tools the model can call: file access, search and shell execution."""

from __future__ import annotations

from typing import Any

from .calls import (
    EditFile,
    Execute,
    InvalidTool,
    ListFiles,
    ReadFile,
    SearchFiles,
    Tool,
    ToolCall,
    ToolResult,
    WriteFile,
    format_tool_args,
    parse_tool_calls,
)
from .executor import ToolExecutor
from .permissions import PermissionTable, ToolPermission, parse_permission

__all__ = [
    "EditFile",
    "Execute",
    "InvalidTool",
    "ListFiles",
    "PermissionTable",
    "ReadFile",
    "SearchFiles",
    "Tool",
    "ToolCall",
    "ToolExecutor",
    "ToolPermission",
    "ToolResult",
    "WriteFile",
    "format_tool_args",
    "get_tool_definitions",
    "parse_permission",
    "parse_tool_calls",
    "tool_names",
]


def get_tool_definitions() -> list[dict[str, Any]]:
    """Tool schemas in Anthropic ``tools`` format, in a stable order."""
    from . import edit, execute, list_files, read, search, write

    return [dict(module.DEFINITION) for module in (read, write, list_files, search, execute, edit)]


def tool_names() -> list[str]:
    return [d["name"] for d in get_tool_definitions()]
