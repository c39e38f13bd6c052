"""Edit file via unique exact-string replacement."""

from __future__ import annotations

import os
import tempfile
from typing import Any

from .calls import ToolResult
from .security import validate_path

DEFINITION: dict[str, Any] = {
    "name": "edit_file",
    "description": (
        "Edit a file by replacing an exact string with new text. "
        "The old_text must appear exactly once in the file; include surrounding lines to make it unique."
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "File path (relative to working directory or absolute)"},
            "old_text": {"type": "string", "description": "The exact text to find and replace"},
            "new_text": {"type": "string", "description": "The replacement text"},
        },
        "required": ["path", "old_text", "new_text"],
    },
}


def _write_atomic(resolved: str, content: str) -> None:
    directory = os.path.dirname(resolved)
    fd, tmp_name = tempfile.mkstemp(dir=directory, prefix=".edit-")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(content)
        try:
            os.chmod(tmp_name, os.stat(resolved).st_mode & 0o7777)
        except OSError:
            pass
        os.replace(tmp_name, resolved)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def handle(path: str, old_text: str, new_text: str, working_dir: str) -> ToolResult:
    resolved, error = validate_path(path, working_dir)
    if error:
        return ToolResult.fail(error)
    if not os.path.isfile(resolved):
        return ToolResult.fail(f"File not found: {path}")
    if not old_text:
        return ToolResult.fail("old_text must not be empty")
    try:
        with open(resolved, encoding="utf-8", newline="") as f:
            content = f.read()
    except (OSError, UnicodeDecodeError) as e:
        return ToolResult.fail(f"Failed to read {path}: {e}")

    count = content.count(old_text)
    if count == 0:
        return ToolResult.fail(f"old_text not found in {path}")
    if count > 1:
        return ToolResult.fail(
            f"old_text matches {count} locations in {path} -- provide more context to make it unique"
        )

    try:
        _write_atomic(resolved, content.replace(old_text, new_text, 1))
    except OSError as e:
        return ToolResult.fail(f"Failed to write {path}: {e}")
    return ToolResult.ok(f"Applied edit to {path} (replaced 1 occurrence)")
