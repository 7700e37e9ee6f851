"""
document_service.py - Document operations wired to storage, cache and engines

The service owns the unit of work for text replacement: the current text is
read, the change batch is validated and applied, and the new text is written
together with a version increment inside one storage transaction.

Concurrent replacements on the same document are last-write-wins unless the
caller passes ``expected_version``, in which case a stale read is rejected
with VersionConflictError.
"""
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional
import uuid

from cache_manager import CacheManager
from config import settings
from document_search import (
    Hit,
    OccurrenceSearcher,
    RankConfig,
    RankedDocument,
    RankedSearcher,
    SearchConfig,
)
from errors import (
    ConflictError,
    DocumentError,
    ExtractionError,
    NotFoundError,
    PayloadTooLargeError,
    ValidationError,
)
from extraction import extract_text, is_pdf, looks_plain_text
from logger import get_logger
from metrics import cache_hits, cache_misses, replacements_applied, replace_failures, uploads
from security import sanitize_filename, storage_key_for
from storage import Document, Storage
from text_edit import apply_changes, parse_changes

logger = get_logger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"


@dataclass
class ReplaceResult:
    """Outcome of a successful replace request"""
    id: str
    version: int
    updated_text: str
    changes_applied: int

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "version": self.version,
            "updatedText": self.updated_text,
            "changesApplied": self.changes_applied,
        }


def search_config_from_settings() -> SearchConfig:
    return SearchConfig(
        radius=settings.get('snippet_radius', 50),
        default_limit=settings.get('search_default_limit', 25),
        max_limit=settings.get('search_max_limit', 500),
        early_stop=settings.get('search_early_stop', False),
    )


def rank_config_from_settings() -> RankConfig:
    return RankConfig(
        radius=settings.get('ranked_snippet_radius', 90),
        default_k=settings.get('ranked_default_k', 10),
        max_k=settings.get('ranked_max_k', 50),
        candidate_rows=settings.get('ranked_candidate_rows', 200),
    )


class DocumentService:
    """Document CRUD, upload, occurrence search, ranked search and replacement"""

    def __init__(self, storage: Storage, cache: Optional[CacheManager] = None,
                 upload_dir: Optional[str] = None,
                 search_config: Optional[SearchConfig] = None,
                 rank_config: Optional[RankConfig] = None):
        self.storage = storage
        self.cache = cache
        self.upload_dir = Path(upload_dir or settings.get('upload_dir', 'data/uploads'))
        self.occurrence_searcher = OccurrenceSearcher(
            storage.find_candidate_texts, search_config or search_config_from_settings()
        )
        self.ranked_searcher = RankedSearcher(
            storage.find_ranked_candidates, rank_config or rank_config_from_settings()
        )

    # Documents
    def list_documents(self) -> List[Document]:
        return self.storage.list_documents()

    def get_document(self, document_id: str) -> Document:
        document = self.storage.get_document(document_id)
        if not document:
            raise NotFoundError("not found", document_id=document_id)
        return document

    def create_document(self, name: Optional[str], mime_type: Optional[str] = None,
                        size_bytes: Optional[int] = None) -> Document:
        """Create a logical document without a stored file or text body"""
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("name required")
        return self.storage.create_document(
            name=name,
            mime_type=mime_type or "text/plain",
            size_bytes=size_bytes or 0,
            storage_key=f"logical://{name}",
        )

    def delete_document(self, document_id: str) -> Document:
        document = self.storage.delete_document(document_id)
        if not document:
            raise NotFoundError("not found", document_id=document_id)

        if self.cache:
            self.cache.invalidate(document_id)

        if not document.storage_key.startswith("logical://"):
            stored = self.upload_dir / document.storage_key
            try:
                stored.unlink()
            except FileNotFoundError:
                logger.warning(f"Stored file for document {document_id} already missing: {stored}")
        return document

    # Text
    def get_text(self, document_id: str) -> str:
        """
        Current text of a document, read through the text cache

        The text and its version are read together, so the cache write is
        rejected when another worker already cached a newer version.

        Raises:
            NotFoundError: Document does not exist
            ConflictError: Document exists but has no editable text
        """
        if self.cache:
            cached = self.cache.get_text(document_id)
            if cached is not None:
                cache_hits.inc()
                return cached.text
            cache_misses.inc()

        current = self.storage.get_versioned_text(document_id)
        if current is None:
            # Distinguish a missing document from one without text
            self.get_document(document_id)
            raise ConflictError(
                "document has no editable text (e.g., binary-only or extraction missing)",
                document_id=document_id
            )

        version, text_body = current
        if self.cache:
            self.cache.put_text(document_id, version, text_body)
        return text_body

    def replace(self, document_id: str, changes: Any,
                expected_version: Optional[int] = None) -> ReplaceResult:
        """
        Apply a batch of range replacements to a document's text

        Args:
            document_id: Document to edit
            changes: Request payload ``[{operation, range: {start, end}, text}]``
            expected_version: Optional version the offsets were computed against

        Returns:
            ReplaceResult with the new version and text

        Raises:
            NotFoundError, ConflictError, VersionConflictError, ValidationError
        """
        if expected_version is not None and (
            isinstance(expected_version, bool) or not isinstance(expected_version, int)
        ):
            raise ValidationError("expectedVersion must be an integer")

        applied = []

        def transform(current: str) -> str:
            batch = parse_changes(changes, len(current))
            applied.extend(batch)
            return apply_changes(current, batch)

        try:
            version, updated_text = self.storage.update_document_text(
                document_id, transform, expected_version
            )
        except DocumentError as e:
            replace_failures.labels(type(e).__name__).inc()
            raise

        if self.cache:
            self.cache.put_text(document_id, version, updated_text)
        replacements_applied.inc(len(applied))

        return ReplaceResult(
            id=document_id,
            version=version,
            updated_text=updated_text,
            changes_applied=len(applied),
        )

    # Search
    @staticmethod
    def _require_query(query: Optional[str], message: str) -> str:
        if not isinstance(query, str) or not query.strip():
            raise ValidationError(message)
        return query

    def search(self, query: Optional[str], limit: Optional[int] = None,
               offset: Optional[int] = 0, document_id: Optional[str] = None) -> List[Hit]:
        """Occurrence search across all documents, or within one"""
        query = self._require_query(query, "q query parameter required")
        hits = self.occurrence_searcher.search(query, limit, offset, document_id)
        logger.debug(f"Occurrence search '{query}' returned {len(hits)} hits")
        return hits

    def rank(self, query: Optional[str], k: Optional[int] = None) -> List[RankedDocument]:
        """Top-k documents scored by occurrence count"""
        query = self._require_query(query, "q required")
        return self.ranked_searcher.rank(query, k)

    # Upload
    def upload(self, filename: Optional[str], mime_type: Optional[str], data: bytes) -> Document:
        """
        Store an uploaded file, create its document and extract its text

        Extraction problems never fail the upload; the document is created
        without a text body and a warning is logged.
        """
        max_bytes = settings.get('max_upload_bytes', 5 * 1024 * 1024)
        if len(data) > max_bytes:
            raise PayloadTooLargeError(f"file too large (max {max_bytes} bytes)")

        document_id = str(uuid.uuid4())
        name = sanitize_filename(filename or "upload.bin")
        mime_type = mime_type or DEFAULT_MIME_TYPE
        key = storage_key_for(document_id, name)

        self.upload_dir.mkdir(parents=True, exist_ok=True)
        stored = self.upload_dir / key
        stored.write_bytes(data)

        try:
            document = self.storage.create_document(
                name=name,
                mime_type=mime_type,
                size_bytes=len(data),
                storage_key=key,
                document_id=document_id,
            )
        except Exception:
            logger.error(f"Document row for upload {name} not created, removing {stored}")
            stored.unlink(missing_ok=True)
            raise

        if looks_plain_text(mime_type, name):
            uploads.labels("text").inc()
        elif is_pdf(mime_type, name):
            uploads.labels("pdf").inc()
        else:
            uploads.labels("binary").inc()

        try:
            extracted = extract_text(data, mime_type, name)
        except ExtractionError as e:
            logger.warning(f"Text extraction failed for {name}: {e}")
            extracted = ""

        if extracted:
            self.storage.save_document_text(document_id, extracted)
        else:
            logger.info(f"No searchable text extracted from {name}")

        return document
