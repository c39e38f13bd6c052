"""Regex file search tool: ripgrep when installed, otherwise a line-by-line scan."""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
from pathlib import Path
from typing import Any

from .calls import ToolResult
from .security import validate_path

logger = logging.getLogger(__name__)

_MAX_OUTPUT = 100_000
_MAX_FILE_SIZE = 5_000_000  # 5MB
_MAX_MATCHES = 200
_SEARCH_TIMEOUT = 60

DEFINITION: dict[str, Any] = {
    "name": "search_files",
    "description": "Search file contents for a regex pattern. Returns matching lines as path:line:text.",
    "input_schema": {
        "type": "object",
        "properties": {
            "pattern": {"type": "string", "description": "Regex pattern to search for"},
            "path": {
                "type": "string",
                "description": "File or directory to search in. Defaults to working directory.",
            },
        },
        "required": ["pattern"],
    },
}


def _truncate(text: str) -> str:
    if len(text) > _MAX_OUTPUT:
        return text[:_MAX_OUTPUT] + "\n... (truncated)"
    return text


def _search_with_rg(rg: str, pattern: str, target: str, working_dir: str) -> ToolResult:
    try:
        proc = subprocess.run(
            [rg, "--line-number", "--no-heading", "--color=never", "--", pattern, target],
            capture_output=True,
            cwd=working_dir,
            timeout=_SEARCH_TIMEOUT,
        )
    except subprocess.TimeoutExpired:
        return ToolResult.fail(f"Search timed out after {_SEARCH_TIMEOUT} seconds")
    except OSError as e:
        return ToolResult.fail(f"Failed to run search: {e}")

    stdout = proc.stdout.decode("utf-8", errors="replace")
    stderr = proc.stderr.decode("utf-8", errors="replace").strip()
    if proc.returncode == 1 and not stderr:
        return ToolResult.ok("No matches found.")
    if proc.returncode not in (0, 1):
        return ToolResult.fail(stderr or f"Search failed with exit code {proc.returncode}")
    return ToolResult.ok(_truncate(stdout.rstrip("\n")) or "No matches found.")


def _search_file(file_path: Path, regex: re.Pattern[str], label: str) -> list[str]:
    try:
        if file_path.stat().st_size > _MAX_FILE_SIZE:
            return []
        text = file_path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return []
    return [f"{label}:{i}:{line}" for i, line in enumerate(text.splitlines(), start=1) if regex.search(line)]


def _search_in_process(pattern: str, base_path: str, resolved: str) -> ToolResult:
    try:
        regex = re.compile(pattern)
    except re.error as e:
        return ToolResult.fail(f"Invalid regex: {e}")

    base = Path(resolved)
    if base.is_file():
        matches = _search_file(base, regex, base_path)
    elif base.is_dir():
        matches = []
        try:
            for file_path in sorted(base.rglob("*")):
                if not file_path.is_file():
                    continue
                label = str(Path(base_path) / file_path.relative_to(base))
                matches.extend(_search_file(file_path, regex, label))
                if len(matches) >= _MAX_MATCHES:
                    break
        except OSError as e:
            return ToolResult.fail(f"Search failed: {e}")
    else:
        return ToolResult.fail(f"Path not found: {base_path}")

    if not matches:
        return ToolResult.ok("No matches found.")
    return ToolResult.ok(_truncate("\n".join(matches[:_MAX_MATCHES])))


def handle(pattern: str, path: str | None, working_dir: str) -> ToolResult:
    base_path = path or "."
    resolved, error = validate_path(base_path, working_dir)
    if error:
        return ToolResult.fail(error)

    rg = shutil.which("rg")
    if rg:
        return _search_with_rg(rg, pattern, resolved, working_dir)
    logger.debug("ripgrep not found; using in-process search")
    return _search_in_process(pattern, base_path, resolved)
