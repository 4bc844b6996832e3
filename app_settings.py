import json
import pathlib
import logging
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ValidationError

from kv_store import KeyValueStore, StoreError

logger = logging.getLogger("docs_chat.settings")

SETTINGS_KEY = "app:settings"
DEFAULT_MODEL = "gemini-3-flash-preview"
AVAILABLE_MODELS = [
    "gemini-3-flash-preview",
    "gemini-2.5-flash",
    "gemini-2.5-flash-lite",
    "gemini-2.5-pro",
]

DEFAULT_SYSTEM_PROMPT = """You are a friendly, knowledgeable AI assistant.

## Role
- Give accurate, helpful answers to the user's questions.
- When document search (RAG) is enabled, answer from the provided documents.

## Style
- Clear, structured answers.
- Use lists or step-by-step explanations where they help.
- Keep a casual, friendly tone.

## Cautions
- Say you don't know instead of guessing.
- Name the source when an answer comes from a document."""


class Settings(BaseModel):
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    model: str = DEFAULT_MODEL


class SettingsUnavailableError(RuntimeError):
    pass


def _resolve_instructions_path(path_value: str) -> pathlib.Path:
    path = pathlib.Path(path_value)
    if not path.is_absolute():
        path = (pathlib.Path(__file__).resolve().parent / path).resolve()
    return path


def load_system_instructions(path_value: Optional[str]) -> Tuple[str, str, Optional[str]]:
    """Default system prompt: (text, source, resolved path)."""
    if not path_value:
        return DEFAULT_SYSTEM_PROMPT, "default", None

    path = _resolve_instructions_path(path_value)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.warning("System instructions file not found: %s. Falling back to default.", path)
        return DEFAULT_SYSTEM_PROMPT, "default", str(path)
    except OSError as exc:
        logger.warning(
            "Failed to read system instructions file %s: %s. Falling back to default.",
            path,
            exc,
        )
        return DEFAULT_SYSTEM_PROMPT, "default", str(path)

    text = text.strip()
    if text == "":
        logger.warning("System instructions file %s is empty; using the built-in prompt.", path)
        return DEFAULT_SYSTEM_PROMPT, "default", str(path)
    return text, "file", str(path)


class SettingsStore:
    def __init__(self, store: Optional[KeyValueStore], defaults: Optional[Settings] = None):
        self.store = store
        self.defaults = defaults or Settings()

    def get(self) -> Settings:
        if self.store is None:
            logger.info("KV not configured, using defaults")
            return self.defaults.model_copy()
        try:
            raw = self.store.get(SETTINGS_KEY)
        except StoreError as exc:
            logger.error("Failed to read settings: %s", exc)
            return self.defaults.model_copy()
        if not raw:
            return self.defaults.model_copy()
        try:
            stored = json.loads(raw)
        except ValueError:
            logger.warning("Stored settings are not valid JSON; using defaults")
            return self.defaults.model_copy()
        if not isinstance(stored, dict):
            return self.defaults.model_copy()
        merged = self.defaults.model_dump()
        merged.update({k: v for k, v in stored.items() if k in merged and v is not None})
        try:
            return Settings(**merged)
        except ValidationError as exc:
            logger.warning("Stored settings are invalid (%s); using defaults", exc)
            return self.defaults.model_copy()

    def save(self, changes: Dict[str, Any]) -> Settings:
        if self.store is None:
            raise SettingsUnavailableError(
                "KV not configured. Set KV_URL (or KV_BACKEND) to persist settings."
            )
        current = self.get().model_dump()
        current.update({k: v for k, v in changes.items() if k in current and v is not None})
        updated = Settings(**current)
        try:
            self.store.set(SETTINGS_KEY, updated.model_dump_json())
        except StoreError:
            logger.exception("Failed to save settings")
            raise
        return updated

    def system_prompt(self) -> str:
        return self.get().system_prompt or self.defaults.system_prompt
