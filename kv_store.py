import time
import threading
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

import redis
from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.identity import DefaultAzureCredential
from azure.storage.blob import BlobServiceClient, ContainerClient

logger = logging.getLogger("docs_chat.kv")

EXPIRES_AT_META = "expires_at"


class StoreError(RuntimeError):
    """Raised when the key-value backend cannot be reached or refuses a call."""


class KeyValueStore(ABC):
    backend = "abstract"

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def keys(self, prefix: str) -> List[str]:
        ...

    @abstractmethod
    def expire(self, key: str, seconds: int) -> bool:
        ...


# -----------------------------
# Redis (Vercel KV / Upstash expose a redis:// URL)
# -----------------------------
class RedisKeyValueStore(KeyValueStore):
    backend = "redis"

    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisKeyValueStore":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def get(self, key: str) -> Optional[str]:
        try:
            return self.client.get(key)
        except redis.RedisError as exc:
            raise StoreError(f"redis get {key!r} failed: {exc}") from exc

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        try:
            self.client.set(key, value, ex=ttl_seconds)
        except redis.RedisError as exc:
            raise StoreError(f"redis set {key!r} failed: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self.client.delete(key)
        except redis.RedisError as exc:
            raise StoreError(f"redis delete {key!r} failed: {exc}") from exc

    def keys(self, prefix: str) -> List[str]:
        try:
            return list(self.client.scan_iter(match=f"{prefix}*"))
        except redis.RedisError as exc:
            raise StoreError(f"redis scan {prefix!r} failed: {exc}") from exc

    def expire(self, key: str, seconds: int) -> bool:
        try:
            return bool(self.client.expire(key, seconds))
        except redis.RedisError as exc:
            raise StoreError(f"redis expire {key!r} failed: {exc}") from exc


# -----------------------------
# Azure Blob Storage (one blob per key)
# -----------------------------
def azure_blob_service_client(
    connection_string: Optional[str] = None,
    account: Optional[str] = None,
) -> BlobServiceClient:
    if connection_string:
        return BlobServiceClient.from_connection_string(connection_string)

    if not account:
        raise RuntimeError("Missing AZURE_STORAGE_ACCOUNT (or AZURE_STORAGE_CONNECTION_STRING).")

    account_url = f"https://{account}.blob.core.windows.net"
    cred = DefaultAzureCredential(exclude_interactive_browser_credential=False)
    return BlobServiceClient(account_url=account_url, credential=cred)


class BlobKeyValueStore(KeyValueStore):
    """Key-value store on top of a blob container.

    Each key becomes the blob ``<prefix><key>``. Blob storage has no native
    per-object TTL, so expiry is written to the blob metadata as an epoch
    timestamp and checked on every read; expired blobs are deleted lazily.
    """

    backend = "azure_blob"

    def __init__(self, container: ContainerClient, prefix: str = "kv/"):
        self.container = container
        self.prefix = prefix

    def _blob(self, key: str):
        return self.container.get_blob_client(self.prefix + key)

    def get(self, key: str) -> Optional[str]:
        blob = self._blob(key)
        try:
            downloader = blob.download_blob()
            metadata = downloader.properties.metadata or {}
            expires_at = metadata.get(EXPIRES_AT_META)
            data = downloader.readall()
        except ResourceNotFoundError:
            return None
        except AzureError as exc:
            raise StoreError(f"blob get {key!r} failed: {exc}") from exc

        try:
            expired = bool(expires_at) and float(expires_at) <= time.time()
            text = data.decode("utf-8")
        except (ValueError, UnicodeDecodeError) as exc:
            raise StoreError(f"blob {key!r} is unreadable: {exc}") from exc

        if expired:
            logger.debug("Blob %s expired at %s; removing", blob.blob_name, expires_at)
            self.delete(key)
            return None
        return text

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        metadata = {}
        if ttl_seconds:
            metadata[EXPIRES_AT_META] = str(time.time() + ttl_seconds)
        try:
            self._blob(key).upload_blob(value.encode("utf-8"), overwrite=True, metadata=metadata)
        except AzureError as exc:
            raise StoreError(f"blob set {key!r} failed: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self._blob(key).delete_blob()
        except ResourceNotFoundError:
            return
        except AzureError as exc:
            raise StoreError(f"blob delete {key!r} failed: {exc}") from exc

    def keys(self, prefix: str) -> List[str]:
        try:
            blobs = self.container.list_blobs(name_starts_with=self.prefix + prefix)
            return [b.name[len(self.prefix):] for b in blobs]
        except AzureError as exc:
            raise StoreError(f"blob list {prefix!r} failed: {exc}") from exc

    def expire(self, key: str, seconds: int) -> bool:
        try:
            self._blob(key).set_blob_metadata({EXPIRES_AT_META: str(time.time() + seconds)})
            return True
        except ResourceNotFoundError:
            return False
        except AzureError as exc:
            raise StoreError(f"blob expire {key!r} failed: {exc}") from exc


# -----------------------------
# In-process store (local runs without a KV service)
# -----------------------------
class MemoryKeyValueStore(KeyValueStore):
    backend = "memory"

    def __init__(self):
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        # sync routes run in a thread pool
        self._lock = threading.Lock()

    def _get_item(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        # caller holds the lock
        item = self._data.get(key)
        if item is None:
            return None
        expires_at = item[1]
        if expires_at is not None and expires_at <= time.time():
            self._data.pop(key, None)
            return None
        return item

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            item = self._get_item(key)
        return item[0] if item else None

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = time.time() + ttl_seconds if ttl_seconds else None
        with self._lock:
            self._data[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self, prefix: str) -> List[str]:
        with self._lock:
            return [k for k in list(self._data) if k.startswith(prefix) and self._get_item(k)]

    def expire(self, key: str, seconds: int) -> bool:
        with self._lock:
            item = self._get_item(key)
            if item is None:
                return False
            self._data[key] = (item[0], time.time() + seconds)
            return True


def create_kv_store(
    backend: str = "",
    url: Optional[str] = None,
    azure_connection_string: Optional[str] = None,
    azure_account: Optional[str] = None,
    azure_container: Optional[str] = None,
    azure_prefix: str = "kv/",
) -> Optional[KeyValueStore]:
    """Build the store once at startup. Returns None when nothing is configured."""
    backend = (backend or "").strip().lower()
    azure_ready = bool(azure_container and (azure_connection_string or azure_account))

    if not backend:
        if url:
            backend = "redis"
        elif azure_ready:
            backend = "azure_blob"
        else:
            logger.info("No key-value store configured; history and settings will not persist.")
            return None

    if backend == "redis":
        if not url:
            raise RuntimeError("KV_BACKEND=redis requires KV_URL")
        return RedisKeyValueStore.from_url(url)

    if backend == "azure_blob":
        if not azure_ready:
            raise RuntimeError(
                "KV_BACKEND=azure_blob requires AZURE_STORAGE_CONTAINER and "
                "AZURE_STORAGE_CONNECTION_STRING or AZURE_STORAGE_ACCOUNT"
            )
        bsc = azure_blob_service_client(azure_connection_string, azure_account)
        return BlobKeyValueStore(bsc.get_container_client(azure_container), prefix=azure_prefix)

    if backend == "memory":
        return MemoryKeyValueStore()

    raise RuntimeError(f"Unknown KV_BACKEND: {backend}")
