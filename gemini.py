import io
import time
import logging
from typing import Any, Callable, Dict, List, Optional

from google import genai
from google.genai import types

logger = logging.getLogger("docs_chat.gemini")

STORE_NAME_PREFIX = "fileSearchStores/"
POLL_INTERVAL_SECONDS = 5
POLL_MAX_ATTEMPTS = 6


def genai_client(api_key: Optional[str]) -> genai.Client:
    if not api_key:
        raise RuntimeError("Missing GOOGLE_GENERATIVE_AI_API_KEY")
    return genai.Client(api_key=api_key)


def to_jsonable(obj: Any) -> Any:
    # SDK objects are pydantic models
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json", exclude_none=True)
    return obj


def check_api_connection(client: genai.Client, model: str) -> bool:
    try:
        response = client.models.generate_content(model=model, contents="ping")
        return response is not None
    except Exception as exc:
        logger.warning("Gemini connection check failed: %s", exc)
        return False


# -----------------------------
# Chat generation
# -----------------------------
def build_contents(history: Optional[List[Dict[str, Any]]], message: str) -> List[types.Content]:
    contents: List[types.Content] = []
    for msg in history or []:
        role = "user" if msg.get("role") == "user" else "model"
        contents.append(types.Content(role=role, parts=[types.Part(text=msg.get("content") or "")]))
    contents.append(types.Content(role="user", parts=[types.Part(text=message)]))
    return contents


def file_search_tool(store_name: str) -> types.Tool:
    return types.Tool(file_search=types.FileSearch(file_search_store_names=[store_name]))


def generate_answer(
    client: genai.Client,
    model: str,
    system_instruction: str,
    contents: List[types.Content],
    store_name: Optional[str] = None,
):
    config_params: Dict[str, Any] = {"system_instruction": system_instruction}
    if store_name and store_name.strip():
        config_params["tools"] = [file_search_tool(store_name)]

    logger.info(
        "generate_content model=%s store=%s system_instruction_chars=%d turns=%d",
        model,
        store_name or "-",
        len(system_instruction or ""),
        len(contents),
    )
    response = client.models.generate_content(
        model=model,
        contents=contents,
        config=types.GenerateContentConfig(**config_params),
    )
    return response


def extract_citations(response: Any) -> List[Any]:
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return []
    grounding = getattr(candidates[0], "grounding_metadata", None)
    if grounding is None:
        return []
    return [to_jsonable(c) for c in (getattr(grounding, "grounding_chunks", None) or [])]


def finish_reason(response: Any) -> Optional[str]:
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return None
    reason = getattr(candidates[0], "finish_reason", None)
    return str(reason) if reason is not None else None


# -----------------------------
# Upload completion polling
# -----------------------------
def await_completion(
    operation: Any,
    get_status: Callable[[Any], Any],
    interval: float = POLL_INTERVAL_SECONDS,
    max_attempts: int = POLL_MAX_ATTEMPTS,
    sleep: Optional[Callable[[float], None]] = None,
) -> Any:
    """
    Wait for a provider operation to report ``done``.

    - Returns at once (no sleep, no refetch) when the operation is already done.
    - Otherwise sleeps ``interval`` seconds before each refetch, at most
      ``max_attempts`` refetches.
    - The last observed operation is returned either way; a falsy ``done``
      means the wait timed out. Errors raised by ``get_status`` propagate.
    """
    sleep = sleep or time.sleep
    attempts = 0
    while not operation.done and attempts < max_attempts:
        sleep(interval)
        operation = get_status(operation)
        attempts += 1
        logger.debug("Operation poll %d/%d done=%s", attempts, max_attempts, operation.done)

    if not operation.done:
        logger.warning("Operation still running after %d checks", attempts)
    return operation


# -----------------------------
# File search stores
# -----------------------------
def store_name_for(store_id: str) -> str:
    return store_id if store_id.startswith(STORE_NAME_PREFIX) else STORE_NAME_PREFIX + store_id


def list_file_search_stores(client: genai.Client) -> List[Any]:
    return [to_jsonable(s) for s in client.file_search_stores.list()]


def create_file_search_store(client: genai.Client, display_name: str) -> Any:
    store = client.file_search_stores.create(config={"display_name": display_name})
    logger.info("Created file search store %s (%s)", store.name, display_name)
    return to_jsonable(store)


def delete_file_search_store(client: genai.Client, store_id: str) -> None:
    name = store_name_for(store_id)
    client.file_search_stores.delete(name=name, config={"force": True})
    logger.info("Deleted file search store %s", name)


def list_store_documents(client: genai.Client, store_name: str) -> List[Any]:
    return [to_jsonable(d) for d in client.file_search_stores.documents.list(parent=store_name)]


def document_name_for(store_name: str, document_id: str) -> str:
    if document_id.startswith(STORE_NAME_PREFIX):
        return document_id
    return f"{store_name}/documents/{document_id}"


def delete_store_document(client: genai.Client, store_name: str, document_id: str) -> None:
    name = document_name_for(store_name, document_id)
    client.file_search_stores.documents.delete(name=name, config={"force": True})
    logger.info("Deleted store document %s", name)


def upload_to_store(
    client: genai.Client,
    store_name: str,
    filename: str,
    data: bytes,
    mime_type: Optional[str] = None,
    interval: float = POLL_INTERVAL_SECONDS,
    max_attempts: int = POLL_MAX_ATTEMPTS,
) -> Any:
    operation = client.file_search_stores.upload_to_file_search_store(
        file_search_store_name=store_name,
        file=io.BytesIO(data),
        config={
            "display_name": filename,
            "mime_type": mime_type or "application/octet-stream",
        },
    )
    logger.info("Upload started: %s -> %s (%d bytes)", filename, store_name, len(data))
    return await_completion(
        operation,
        client.operations.get,
        interval=interval,
        max_attempts=max_attempts,
    )
