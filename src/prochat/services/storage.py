"""Conversation persistence: one JSON document per conversation id."""

from __future__ import annotations

import logging
import os
import re
import tempfile
from pathlib import Path

from pydantic import ValidationError

from ..models import ConversationSummary, StoredConversation

logger = logging.getLogger(__name__)

_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


def _conversation_path(directory: Path, conversation_id: str) -> Path:
    if not _ID_RE.match(conversation_id):
        raise ValueError(f"Invalid conversation id: {conversation_id!r}")
    return directory / f"{conversation_id}.json"


def save_conversation(directory: Path, conversation: StoredConversation) -> Path:
    """Write the conversation atomically and return the file path."""
    path = _conversation_path(directory, conversation.id)
    directory.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=directory, prefix=".tmp-", suffix=".json")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(conversation.model_dump_json(indent=2))
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise
    logger.debug("Saved conversation %s (%d messages)", conversation.id, len(conversation.messages))
    return path


def get_conversation(directory: Path, conversation_id: str) -> StoredConversation | None:
    try:
        path = _conversation_path(directory, conversation_id)
    except ValueError:
        return None
    if not path.is_file():
        return None
    try:
        return StoredConversation.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, ValidationError) as e:
        logger.warning("Could not read conversation %s: %s", conversation_id, e)
        return None


def list_conversations(directory: Path, limit: int | None = None) -> list[ConversationSummary]:
    """Summaries of stored conversations, most recently updated first.

    Unreadable files are skipped with a warning.
    """
    if not directory.is_dir():
        return []
    summaries: list[ConversationSummary] = []
    for path in directory.glob("*.json"):
        try:
            conv = StoredConversation.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.warning("Skipping unreadable conversation file %s: %s", path.name, e)
            continue
        summaries.append(
            ConversationSummary(
                id=conv.id,
                title=conv.title,
                created_at=conv.created_at,
                updated_at=conv.updated_at,
                message_count=len(conv.messages),
            )
        )
    summaries.sort(key=lambda s: s.updated_at, reverse=True)
    if limit is not None:
        summaries = summaries[:limit]
    return summaries


def get_latest_conversation(directory: Path) -> StoredConversation | None:
    latest = list_conversations(directory, limit=1)
    if not latest:
        return None
    return get_conversation(directory, latest[0].id)


def delete_conversation(directory: Path, conversation_id: str) -> bool:
    try:
        path = _conversation_path(directory, conversation_id)
    except ValueError:
        return False
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True
