import io
import re
import pathlib
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from kv_store import KeyValueStore, StoreError

logger = logging.getLogger("docs_chat.rag")

# Optional loaders
try:
    from pypdf import PdfReader
except Exception:
    PdfReader = None

try:
    import docx  # python-docx
except Exception:
    docx = None


DOC_PREFIX = "doc:"
DEFAULT_TOP_K = 3
MAX_SNIPPET_CHARS = 500
MIN_TOKEN_LENGTH = 3

ALLOWED_EXTS = {".txt", ".md", ".markdown", ".pdf", ".docx", ".html", ".htm"}


@dataclass
class Document:
    id: str
    content: str


@dataclass
class ScoredDocument:
    id: str
    content: str
    similarity: float


@dataclass
class RankResult:
    """Outcome of a ranking pass.

    ``available`` is False when the store could not be scanned at all; the
    documents list is then empty and ``reason`` says why.
    """

    available: bool
    documents: List[ScoredDocument] = field(default_factory=list)
    reason: str = ""

    @classmethod
    def ok(cls, documents: List[ScoredDocument]) -> "RankResult":
        return cls(available=True, documents=documents)

    @classmethod
    def unavailable(cls, reason: str) -> "RankResult":
        return cls(available=False, reason=reason)


# -----------------------------
# Scoring
# -----------------------------
def tokenize(query: str) -> List[str]:
    # "" -> [""] and surrounding whitespace yields empty tokens; both still count
    # towards the denominator.
    return re.split(r"\s+", query.lower())


def calculate_similarity(tokens: List[str], text: str) -> float:
    text_lower = text.lower()
    matches = 0
    for token in tokens:
        if len(token) >= MIN_TOKEN_LENGTH and token in text_lower:
            matches += 1
    return matches / max(len(tokens), 1)


# -----------------------------
# Ranker
# -----------------------------
class RelevanceRanker:
    def __init__(self, store: Optional[KeyValueStore], prefix: str = DOC_PREFIX):
        self.store = store
        self.prefix = prefix

    def search(self, query: str, top_k: int = DEFAULT_TOP_K) -> RankResult:
        if self.store is None:
            return RankResult.unavailable("key-value store not configured")

        try:
            keys = self.store.keys(self.prefix)
        except Exception as exc:
            logger.error("Document scan failed: %s", exc)
            return RankResult.unavailable(str(exc))

        if not keys:
            logger.info("No documents found under %s", self.prefix)
            return RankResult.ok([])

        tokens = tokenize(query)
        scored: List[ScoredDocument] = []
        for key in keys:
            try:
                content = self.store.get(key)
            except Exception as exc:
                logger.error("Error fetching document %s: %s", key, exc)
                continue
            if not content:
                continue
            content = str(content)
            similarity = calculate_similarity(tokens, content)
            if similarity > 0:
                scored.append(
                    ScoredDocument(id=key, content=content[:MAX_SNIPPET_CHARS], similarity=similarity)
                )

        scored.sort(key=lambda d: d.similarity, reverse=True)
        return RankResult.ok(scored[:top_k])

    def rank(self, query: str, top_k: int = DEFAULT_TOP_K) -> List[ScoredDocument]:
        result = self.search(query, top_k)
        if not result.available:
            logger.warning("Retrieval unavailable (%s); continuing without references.", result.reason)
        return result.documents


def format_reference_block(documents: List[ScoredDocument]) -> str:
    if not documents:
        return ""
    blocks = []
    for d in documents:
        blocks.append(f"[DOCUMENT: {d.id} | similarity {d.similarity:.2f}]\n{d.content}")
    return "## Reference documents\n\n" + "\n\n---\n\n".join(blocks)


# -----------------------------
# Document CRUD (admin)
# -----------------------------
class DocumentRepository:
    def __init__(self, store: Optional[KeyValueStore], prefix: str = DOC_PREFIX):
        self.store = store
        self.prefix = prefix

    def key_for(self, document_id: str) -> str:
        return document_id if document_id.startswith(self.prefix) else self.prefix + document_id

    def save(self, document_id: str, content: str) -> bool:
        if self.store is None:
            logger.info("Not configured, skipping document save")
            return False
        try:
            self.store.set(self.key_for(document_id), content)
        except StoreError as exc:
            logger.error("Document save error: %s", exc)
            return False
        logger.info("Document saved: %s", document_id)
        return True

    def get_all(self) -> List[Document]:
        if self.store is None:
            return []
        try:
            keys = self.store.keys(self.prefix)
            documents = []
            for key in keys:
                try:
                    content = self.store.get(key)
                except StoreError as exc:
                    logger.error("Error fetching document %s: %s", key, exc)
                    continue
                if content:
                    documents.append(Document(id=key, content=str(content)))
            return documents
        except StoreError as exc:
            logger.error("Document fetch-all error: %s", exc)
            return []

    def delete(self, document_id: str) -> bool:
        if self.store is None:
            return False
        try:
            self.store.delete(self.key_for(document_id))
        except StoreError as exc:
            logger.error("Document delete error: %s", exc)
            return False
        logger.info("Document deleted: %s", document_id)
        return True


# -----------------------------
# Text extraction for uploaded documents
# -----------------------------
def clean_text(s: str) -> str:
    s = s.replace("\x00", " ")
    s = re.sub(r"[ \t]+", " ", s)
    s = re.sub(r"\n{3,}", "\n\n", s)
    return s.strip()


def extract_text_from_bytes(filename: str, data: bytes) -> str:
    ext = pathlib.Path(filename).suffix.lower()

    if ext in {".txt", ".md", ".markdown"}:
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError:
            return data.decode("utf-8", errors="ignore")

    if ext in {".html", ".htm"}:
        html = data.decode("utf-8", errors="ignore")
        html = re.sub(r"(?is)<(script|style).*?>.*?</\1>", " ", html)
        html = re.sub(r"(?is)<br\s*/?>", "\n", html)
        html = re.sub(r"(?is)</p\s*>", "\n\n", html)
        html = re.sub(r"(?is)<.*?>", " ", html)
        return clean_text(html)

    if ext == ".pdf":
        if PdfReader is None:
            raise RuntimeError("PDF support not available. Install pypdf.")
        reader = PdfReader(io.BytesIO(data))
        parts = []
        for page in reader.pages:
            try:
                parts.append(page.extract_text() or "")
            except Exception:
                parts.append("")
        return clean_text("\n\n".join(parts))

    if ext == ".docx":
        if docx is None:
            raise RuntimeError("DOCX support not available. Install python-docx.")
        d = docx.Document(io.BytesIO(data))
        parts = [p.text for p in d.paragraphs if p.text and p.text.strip()]
        return clean_text("\n".join(parts))

    # Fallback: try decoding
    return data.decode("utf-8", errors="ignore")
