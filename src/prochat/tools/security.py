"""Guards applied before a tool touches the filesystem or spawns a shell.

Paths are resolved against the working directory and refused when they land on
credential files or kernel pseudo-filesystems. Commands are only refused when a
shell segment is, as a whole, one of a handful of machine-wrecking invocations;
everything else is left to the user's confirmation policy.
"""

from __future__ import annotations

import logging
import os
import shlex

logger = logging.getLogger(__name__)

_SENSITIVE_FILES = frozenset({"/etc/shadow", "/etc/sudoers"})
_SYSTEM_TREES = ("/proc", "/sys", "/dev")

_SEPARATORS = frozenset({";", "&&", "||", "|", "&"})
_ROOT_TARGETS = frozenset({"/", "/*"})
_FORK_BOMB = ":(){:|:&};:"


def _refused(resolved: str) -> bool:
    candidates = {resolved, os.path.realpath(resolved)}
    if candidates & _SENSITIVE_FILES:
        return True
    return any(c == tree or c.startswith(tree + "/") for c in candidates for tree in _SYSTEM_TREES)


def validate_path(path: str, working_dir: str) -> tuple[str, str | None]:
    """Resolve ``path`` against ``working_dir``.

    Returns (resolved_path, error_message); the path is unusable when the error is set.
    """
    if "\x00" in path:
        return "", "Path contains null bytes"

    resolved = os.path.realpath(os.path.join(working_dir, os.path.expanduser(path)))
    if _refused(resolved):
        logger.warning("Refused tool access to %s", resolved)
        return "", f"Access denied: {path}"
    return resolved, None


def _segments(command: str) -> list[list[str]]:
    lexer = shlex.shlex(command, posix=True, punctuation_chars=True)
    lexer.whitespace_split = True
    segments: list[list[str]] = [[]]
    for token in lexer:
        if token in _SEPARATORS:
            segments.append([])
        else:
            segments[-1].append(token)
    return [s for s in segments if s]


def _wipes_root(words: list[str]) -> bool:
    if words[0] != "rm":
        return False
    flags = "".join(w.lstrip("-") for w in words[1:] if w.startswith("-") and not w.startswith("--"))
    targets = [w for w in words[1:] if not w.startswith("-")]
    recursive = "r" in flags or "R" in flags or "--recursive" in words
    return recursive and bool(targets) and all(t in _ROOT_TARGETS for t in targets)


def _formats_disk(words: list[str]) -> bool:
    return words[0] == "mkfs" or words[0].startswith("mkfs.")


def _overwrites_device(words: list[str]) -> bool:
    return words[0] == "dd" and any(w.startswith("of=/dev/") for w in words[1:])


_CHECKS = (
    (_wipes_root, "deleting the filesystem root"),
    (_formats_disk, "formatting a disk"),
    (_overwrites_device, "writing raw data to a device"),
)


def check_command(command: str) -> str | None:
    """Return why ``command`` is refused, or None when it may run."""
    if "\x00" in command:
        return "Command contains null bytes"
    if not command.strip():
        return "Command is empty"
    if _FORK_BOMB in "".join(command.split()):
        return "Blocked: fork bomb"

    try:
        segments = _segments(command)
    except ValueError:
        # unbalanced quoting; sh reports it
        return None
    for words in segments:
        if words[0] == "sudo" and len(words) > 1:
            words = words[1:]
        for check, label in _CHECKS:
            if check(words):
                logger.warning("Refused command (%s): %.100s", label, command)
                return f"Blocked: {label} is not allowed"
    return None
