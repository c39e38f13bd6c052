"""Shell command execution tool."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import tempfile
import time
from typing import IO, Any

from .calls import ToolResult
from .security import check_command

logger = logging.getLogger(__name__)

_MAX_OUTPUT = 100_000
_POLL_INTERVAL = 0.05
DEFAULT_TIMEOUT = 120

DEFINITION: dict[str, Any] = {
    "name": "execute",
    "description": (
        "Execute a shell command with sh -c in the working directory and return its output. "
        "Commands that run longer than the configured timeout are killed."
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "The shell command to execute"},
        },
        "required": ["command"],
    },
}


def _read_capture(f: IO[bytes]) -> str:
    f.seek(0)
    text = f.read().decode("utf-8", errors="replace")
    if len(text) > _MAX_OUTPUT:
        text = text[:_MAX_OUTPUT] + "\n... (truncated)"
    return text


def _kill(proc: subprocess.Popen[bytes]) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError, AttributeError):
        proc.kill()
    proc.wait()


def handle(command: str, working_dir: str, timeout: float = DEFAULT_TIMEOUT) -> ToolResult:
    refusal = check_command(command)
    if refusal:
        return ToolResult.fail(refusal)

    with tempfile.TemporaryFile() as out, tempfile.TemporaryFile() as err:
        try:
            proc = subprocess.Popen(
                ["sh", "-c", command],
                stdin=subprocess.DEVNULL,
                stdout=out,
                stderr=err,
                cwd=working_dir,
                start_new_session=True,
            )
        except OSError as e:
            return ToolResult.fail(f"Failed to spawn command: {e}")

        started = time.monotonic()
        while proc.poll() is None:
            if time.monotonic() - started > timeout:
                _kill(proc)
                logger.info("Command timed out after %ss: %.100s", timeout, command)
                return ToolResult.fail(f"Command timed out after {timeout:g} seconds")
            time.sleep(_POLL_INTERVAL)

        stdout = _read_capture(out)
        stderr = _read_capture(err)

    output = stdout
    if stderr:
        if output and not output.endswith("\n"):
            output += "\n"
        output += "[stderr]\n" + stderr
    if not output:
        output = "(no output)"

    if proc.returncode != 0:
        return ToolResult.fail(f"Exit code {proc.returncode}\n{output}")
    return ToolResult.ok(output)
