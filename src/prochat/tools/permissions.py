"""Per-tool permission policy.

Pure data, no I/O. Each orchestrator owns its own table.
"""

from __future__ import annotations

from enum import Enum


class ToolPermission(Enum):
    AUTO_ALLOW = "auto_allow"
    ASK_FIRST = "ask_first"
    DENY = "deny"


READ_ONLY_TOOLS = ("read_file", "list_files", "search_files")

PERMISSION_NAMES: dict[str, ToolPermission] = {
    "auto": ToolPermission.AUTO_ALLOW,
    "allow": ToolPermission.AUTO_ALLOW,
    "auto_allow": ToolPermission.AUTO_ALLOW,
    "ask": ToolPermission.ASK_FIRST,
    "ask_first": ToolPermission.ASK_FIRST,
    "deny": ToolPermission.DENY,
}


def parse_permission(raw: str) -> ToolPermission:
    """Parse a policy name. Raises ValueError on unknown input."""
    try:
        return PERMISSION_NAMES[raw.lower().strip()]
    except KeyError:
        raise ValueError(f"Unknown permission {raw!r}; use one of: allow, ask, deny") from None


class PermissionTable:
    """Mapping of tool name to permission; unlisted tools are ASK_FIRST."""

    def __init__(self, entries: dict[str, ToolPermission] | None = None) -> None:
        self._entries: dict[str, ToolPermission] = dict(entries or {})

    @classmethod
    def with_defaults(
        cls,
        allowed_tools: list[str] | None = None,
        denied_tools: list[str] | None = None,
    ) -> PermissionTable:
        """Read-only tools auto-allowed, then config overrides; denials win."""
        table = cls({name: ToolPermission.AUTO_ALLOW for name in READ_ONLY_TOOLS})
        for name in allowed_tools or []:
            table.set(name, ToolPermission.AUTO_ALLOW)
        for name in denied_tools or []:
            table.set(name, ToolPermission.DENY)
        return table

    def get(self, tool_name: str) -> ToolPermission:
        return self._entries.get(tool_name, ToolPermission.ASK_FIRST)

    def set(self, tool_name: str, permission: ToolPermission) -> None:
        self._entries[tool_name] = permission

    def items(self) -> list[tuple[str, ToolPermission]]:
        return sorted(self._entries.items())
