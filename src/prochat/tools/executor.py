"""Synchronous tool executor: runs one tool call against the local system."""

from __future__ import annotations

import logging
import os

from . import edit, execute, list_files, read, search, write
from .calls import (
    EditFile,
    Execute,
    InvalidTool,
    ListFiles,
    ReadFile,
    SearchFiles,
    Tool,
    ToolResult,
    WriteFile,
)

logger = logging.getLogger(__name__)


class ToolExecutor:
    """Runs tools relative to a working directory. Every call blocks until done."""

    def __init__(self, working_dir: str | None = None, command_timeout: float = execute.DEFAULT_TIMEOUT) -> None:
        self.working_dir = working_dir or os.getcwd()
        self.command_timeout = command_timeout

    def execute(self, tool: Tool) -> ToolResult:
        logger.info("Executing tool %s", tool.name)
        try:
            result = self._dispatch(tool)
        except Exception as e:
            # A tool failure must reach the model as a result, never abort the turn
            logger.exception("Tool %s raised", tool.name)
            result = ToolResult.fail(f"{tool.name} failed: {e}")
        if not result.success:
            logger.info("Tool %s failed: %.200s", tool.name, result.output)
        return result

    def _dispatch(self, tool: Tool) -> ToolResult:
        wd = self.working_dir
        if isinstance(tool, ReadFile):
            return read.handle(tool.path, wd)
        if isinstance(tool, WriteFile):
            return write.handle(tool.path, tool.content, wd)
        if isinstance(tool, ListFiles):
            return list_files.handle(tool.path, tool.pattern, wd)
        if isinstance(tool, SearchFiles):
            return search.handle(tool.pattern, tool.path, wd)
        if isinstance(tool, Execute):
            return execute.handle(tool.command, wd, timeout=self.command_timeout)
        if isinstance(tool, EditFile):
            return edit.handle(tool.path, tool.old_text, tool.new_text, wd)
        if isinstance(tool, InvalidTool):
            return ToolResult.fail(tool.error)
        raise TypeError(f"Unsupported tool request: {tool!r}")
