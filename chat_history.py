import re
import json
import logging
from typing import Any, Dict, List, Optional

from kv_store import KeyValueStore, StoreError

logger = logging.getLogger("docs_chat.history")

CHAT_PREFIX = "chat:"
CHAT_TTL_SECONDS = 60 * 60 * 24 * 7
SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


def is_valid_session_id(session_id: Optional[str]) -> bool:
    return bool(session_id) and bool(SESSION_ID_RE.match(session_id))


class ChatHistoryStore:
    """Per-session chat transcripts kept in the key-value store for a week."""

    def __init__(self, store: Optional[KeyValueStore], ttl_seconds: int = CHAT_TTL_SECONDS):
        self.store = store
        self.ttl_seconds = ttl_seconds

    @property
    def configured(self) -> bool:
        return self.store is not None

    def _key(self, session_id: str) -> str:
        return f"{CHAT_PREFIX}{session_id}"

    def save(self, session_id: str, messages: List[Dict[str, Any]]) -> bool:
        if self.store is None:
            logger.info("Not configured, skipping save")
            return False
        if not is_valid_session_id(session_id):
            logger.warning("Rejected invalid session id: %r", session_id)
            return False
        key = self._key(session_id)
        try:
            self.store.set(key, json.dumps(messages, ensure_ascii=False), ttl_seconds=self.ttl_seconds)
        except StoreError as exc:
            logger.error("Save error: %s", exc)
            return False
        return True

    def load(self, session_id: str) -> Optional[List[Dict[str, Any]]]:
        if self.store is None:
            logger.info("Not configured, returning None")
            return None
        if not is_valid_session_id(session_id):
            logger.warning("Rejected invalid session id: %r", session_id)
            return None
        try:
            data = self.store.get(self._key(session_id))
        except StoreError as exc:
            logger.error("Get error: %s", exc)
            return None
        if not data:
            return None
        try:
            messages = json.loads(data)
        except ValueError:
            logger.warning("Discarding unreadable history for session %s", session_id)
            return None
        return messages if isinstance(messages, list) else None

    def delete(self, session_id: str) -> bool:
        if self.store is None or not is_valid_session_id(session_id):
            return False
        try:
            self.store.delete(self._key(session_id))
        except StoreError as exc:
            logger.error("Delete error: %s", exc)
            return False
        return True
