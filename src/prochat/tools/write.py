"""Write/create file tool."""

from __future__ import annotations

import os
from typing import Any

from .calls import ToolResult
from .security import validate_path

DEFINITION: dict[str, Any] = {
    "name": "write_file",
    "description": "Write content to a file. Creates parent directories if needed. Overwrites existing files.",
    "input_schema": {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "File path (relative to working directory or absolute)"},
            "content": {"type": "string", "description": "The content to write to the file"},
        },
        "required": ["path", "content"],
    },
}


def handle(path: str, content: str, working_dir: str) -> ToolResult:
    resolved, error = validate_path(path, working_dir)
    if error:
        return ToolResult.fail(error)
    data = content.encode("utf-8")
    try:
        os.makedirs(os.path.dirname(resolved), exist_ok=True)
        with open(resolved, "wb") as f:
            f.write(data)
    except OSError as e:
        return ToolResult.fail(f"Failed to write {path}: {e}")
    return ToolResult.ok(f"Wrote {len(data)} bytes to {path}")
