"""File pattern matching tool using glob."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from .calls import ToolResult
from .security import validate_path

_MAX_RESULTS = 500

DEFINITION: dict[str, Any] = {
    "name": "list_files",
    "description": "List files under a directory, optionally filtered by a glob pattern (e.g. \"**/*.py\").",
    "input_schema": {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Directory to list. Defaults to working directory."},
            "pattern": {"type": "string", "description": 'Glob pattern relative to path. Defaults to "**/*".'},
        },
        "required": [],
    },
}


def handle(path: str | None, pattern: str | None, working_dir: str) -> ToolResult:
    pattern = pattern or "**/*"
    if "\x00" in pattern:
        return ToolResult.fail("Pattern contains null bytes")

    base_path = path or "."
    resolved, error = validate_path(base_path, working_dir)
    if error:
        return ToolResult.fail(error)

    base = Path(resolved)
    if not base.is_dir():
        return ToolResult.fail(f"Directory not found: {base_path}")

    try:
        matches = sorted(str(Path(base_path) / m.relative_to(base)) for m in base.glob(pattern) if m.is_file())
    except (OSError, ValueError) as e:
        return ToolResult.fail(f"Failed to list {base_path}: {e}")

    if not matches:
        return ToolResult.ok("No files matched the pattern.")

    output = "\n".join(matches[:_MAX_RESULTS])
    if len(matches) > _MAX_RESULTS:
        output += f"\n... ({len(matches) - _MAX_RESULTS} more)"
    return ToolResult.ok(output)
