"""Read file contents tool."""

from __future__ import annotations

import os
from typing import Any

from .calls import ToolResult
from .security import validate_path

_MAX_OUTPUT = 100_000

DEFINITION: dict[str, Any] = {
    "name": "read_file",
    "description": "Read the contents of a file. Returns numbered lines.",
    "input_schema": {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "File path (relative to working directory or absolute)"},
        },
        "required": ["path"],
    },
}


def handle(path: str, working_dir: str) -> ToolResult:
    resolved, error = validate_path(path, working_dir)
    if error:
        return ToolResult.fail(error)
    if not os.path.isfile(resolved):
        return ToolResult.fail(f"File not found: {path}")
    try:
        with open(resolved, encoding="utf-8", errors="replace") as f:
            lines = f.read().splitlines()
    except OSError as e:
        return ToolResult.fail(f"Failed to read {path}: {e}")

    content = "\n".join(f"{i:>6}\t{line}" for i, line in enumerate(lines, start=1))
    if len(content) > _MAX_OUTPUT:
        content = content[:_MAX_OUTPUT] + "\n... (truncated)"
    return ToolResult.ok(content)
