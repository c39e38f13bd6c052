"""Slash commands typed at the prompt."""

from __future__ import annotations

import logging
from pathlib import Path

from ..config import DEFAULT_MODELS, MODEL_ALIASES, PROVIDERS, AIConfig, resolve_model_alias
from ..services.conversation import ConversationState
from ..tools import parse_permission

logger = logging.getLogger(__name__)

HELP_TEXT = """\
Commands:
  /new              Save and start a new conversation
  /clear            Discard the current conversation
  /model [NAME]     Show or switch model (aliases: see /models)
  /models           List model aliases
  /provider [NAME]  Show or switch provider (anthropic, openai)
  /system [TEXT]    Show or set the system prompt
  /temp [VALUE]     Show or set temperature (0.0-2.0)
  /tools [on|off]   Toggle tool use; /tools NAME allow|ask|deny sets a policy
  /history          List saved conversations
  /load ID|N        Load a conversation by id, id prefix, or /history number
  /resume           Load the most recent conversation
  /delete ID        Delete a saved conversation
  /retry            Regenerate the last reply (Ctrl+R)
  /edit             Edit the last message (Ctrl+E)
  /cancel           Cancel the current reply (Esc)
  /save             Save the conversation now
  /export [PATH]    Export the conversation as markdown
  /quit             Exit (Ctrl+D)"""

_HISTORY_LIMIT = 20


class SlashCommands:
    def __init__(self, state: ConversationState) -> None:
        self.state = state
        self._last_listing: list[str] = []

    @property
    def _ai(self) -> AIConfig:
        return self.state.config.ai

    def _say(self, message: str) -> None:
        self.state.status_message = message

    async def handle(self, line: str) -> None:
        parts = line.split(maxsplit=1)
        command = parts[0].lower()
        arg = parts[1].strip() if len(parts) > 1 else ""
        logger.debug("Slash command %s", command)

        if command in ("/quit", "/q", "/exit"):
            self.state.should_quit = True
        elif command in ("/help", "/h", "/?"):
            self._say(HELP_TEXT)
        elif command in ("/new", "/n"):
            self.state.new_conversation()
        elif command in ("/clear", "/c"):
            self.state.clear()
        elif command in ("/model", "/m"):
            self._model(arg)
        elif command == "/models":
            aliases = ", ".join(f"{k} -> {v}" for k, v in MODEL_ALIASES.items())
            self._say(f"Model aliases: {aliases}")
        elif command == "/provider":
            self._provider(arg)
        elif command == "/system":
            self._system(arg)
        elif command == "/temp":
            self._temperature(arg)
        elif command == "/tools":
            self._tools(arg)
        elif command == "/history":
            self._history()
        elif command in ("/load", "/l"):
            self._load(arg)
        elif command == "/resume":
            if not self.state.load_latest():
                self._say("No saved conversations")
        elif command == "/delete":
            self._delete(arg)
        elif command in ("/retry", "/r"):
            self.state.retry()
        elif command in ("/edit", "/e"):
            self.state.edit_last()
        elif command == "/cancel":
            if not self.state.cancel():
                self._say("Nothing to cancel")
        elif command == "/save":
            self.state.save()
            self._say(f"Saved conversation {self.state.record.id}")
        elif command == "/export":
            self._export(arg)
        else:
            self._say(f"Unknown command: {command} (try /help)")

    def _model(self, arg: str) -> None:
        if not arg:
            self._say(f"Current model: {self._ai.model}")
            return
        self._ai.model = resolve_model_alias(arg)
        self._say(f"Model set to {self._ai.model}")

    def _provider(self, arg: str) -> None:
        if not arg:
            self._say(f"Current provider: {self._ai.provider}")
            return
        provider = arg.lower()
        if provider not in PROVIDERS:
            self._say(f"Unknown provider: {arg} (use {' or '.join(PROVIDERS)})")
            return
        if provider != self._ai.provider:
            self._ai.provider = provider
            self._ai.model = DEFAULT_MODELS[provider]
        self._say(f"Provider set to {provider} ({self._ai.model})")

    def _system(self, arg: str) -> None:
        if not arg:
            self._say(f"System prompt: {self._ai.system_prompt or '(none)'}")
            return
        self._ai.system_prompt = arg
        self._say("System prompt updated")

    def _temperature(self, arg: str) -> None:
        if not arg:
            self._say(f"Temperature: {self._ai.temperature}")
            return
        try:
            value = float(arg)
        except ValueError:
            self._say(f"Invalid temperature: {arg}")
            return
        if not 0.0 <= value <= 2.0:
            self._say("Temperature must be between 0.0 and 2.0")
            return
        self._ai.temperature = value
        self._say(f"Temperature set to {value}")

    def _tools(self, arg: str) -> None:
        words = arg.split()
        if not words:
            table = self.state.orchestrator.permissions.items()
            policies = ", ".join(f"{name}={perm.value}" for name, perm in table) or "(defaults)"
            state = "on" if self.state.tools_active() else "off"
            self._say(f"Tools {state}. Policies: {policies}")
            return
        if len(words) == 1 and words[0].lower() in ("on", "off"):
            self.state.tools_enabled = words[0].lower() == "on"
            note = "" if self._ai.provider == "anthropic" or not self.state.tools_enabled else " (anthropic only)"
            self._say(f"Tools {words[0].lower()}{note}")
            return
        if len(words) == 2:
            try:
                permission = parse_permission(words[1])
            except ValueError as e:
                self._say(str(e))
                return
            self.state.orchestrator.permissions.set(words[0], permission)
            self._say(f"{words[0]}: {permission.value}")
            return
        self._say("Usage: /tools [on|off] or /tools NAME allow|ask|deny")

    def _history(self) -> None:
        summaries = self.state.list_conversations(limit=_HISTORY_LIMIT)
        if not summaries:
            self._say("No saved conversations")
            return
        self._last_listing = [s.id for s in summaries]
        lines = ["Saved conversations:"]
        for n, s in enumerate(summaries, start=1):
            lines.append(f"  {n:>2}. {s.id[:8]}  {s.title}  ({s.message_count} messages, {s.updated_at[:16]})")
        lines.append("Use /load N or /load ID")
        self._say("\n".join(lines))

    def _resolve_id(self, arg: str) -> str | None:
        if arg.isdigit() and self._last_listing:
            index = int(arg) - 1
            if 0 <= index < len(self._last_listing):
                return self._last_listing[index]
            return None
        matches = [s.id for s in self.state.list_conversations() if s.id.startswith(arg)]
        if len(matches) == 1:
            return matches[0]
        return arg if arg in matches else None

    def _load(self, arg: str) -> None:
        if not arg:
            self._say("Usage: /load ID|N")
            return
        conversation_id = self._resolve_id(arg)
        if conversation_id is None:
            self._say(f"No unique conversation matches {arg}")
            return
        self.state.load(conversation_id)

    def _delete(self, arg: str) -> None:
        conversation_id = self._resolve_id(arg) if arg else None
        if conversation_id is None:
            self._say(f"No unique conversation matches {arg}" if arg else "Usage: /delete ID")
            return
        if self.state.delete(conversation_id):
            self._say(f"Deleted conversation {conversation_id}")
        else:
            self._say(f"Conversation not found: {conversation_id}")

    def _export(self, arg: str) -> None:
        path = Path(arg).expanduser() if arg else Path(f"conversation-{self.state.record.id[:8]}.md")
        try:
            path.write_text(self.state.export_markdown(), encoding="utf-8")
        except OSError as e:
            self._say(f"Export failed: {e}")
            return
        self._say(f"Exported to {path}")
