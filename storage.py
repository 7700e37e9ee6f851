"""
storage.py - Document persistence with transactional text updates
"""
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, Any, List, Optional, Tuple

from sqlalchemy import (
    create_engine, Column, Integer, String, Text, DateTime, ForeignKey, Index, JSON,
    text, func, and_, or_
)
from sqlalchemy.engine import make_url
from sqlalchemy.orm import declarative_base, sessionmaker, Session, scoped_session
from sqlalchemy.pool import QueuePool, NullPool, StaticPool
from sqlalchemy.exc import SQLAlchemyError, IntegrityError, OperationalError
import threading

from config import settings
from document_search import CandidateText, RankedCandidate
from errors import NotFoundError, ConflictError, VersionConflictError
from logger import get_logger

logger = get_logger(__name__)

Base = declarative_base()


class Document(Base):
    __tablename__ = 'documents'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False, index=True)
    mime_type = Column(String(100), nullable=False, default="text/plain")
    size_bytes = Column(Integer, nullable=False, default=0)
    storage_key = Column(String(512), nullable=False)
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "mimeType": self.mime_type,
            "sizeBytes": self.size_bytes,
            "storageKey": self.storage_key,
            "version": self.version,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


class DocumentText(Base):
    """Editable, searchable text body; at most one per document"""
    __tablename__ = 'document_texts'

    id = Column(Integer, primary_key=True, index=True)
    document_id = Column(
        String(36), ForeignKey('documents.id', ondelete='CASCADE'),
        unique=True, nullable=False
    )
    text = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class AuditLog(Base):
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True)
    timestamp = Column(DateTime, default=datetime.utcnow, index=True)
    request_id = Column(String(36), index=True)
    user_id = Column(String(255), index=True)
    action = Column(String(100), nullable=False, index=True)
    resource_type = Column(String(50))
    resource_id = Column(String(100))
    ip_address = Column(String(45))
    user_agent = Column(Text)
    status_code = Column(Integer)
    error_message = Column(Text)
    # DB column stays "metadata"; the attribute name is reserved by SQLAlchemy
    meta = Column("metadata", JSON)

    __table_args__ = (
        Index('idx_audit_user_timestamp', 'user_id', 'timestamp'),
        Index('idx_audit_action_timestamp', 'action', 'timestamp'),
    )


class Storage:
    def __init__(self, db_url: str = None):
        """Initialize storage with connection pooling suited to the database"""
        self.db_url = db_url or settings.get('database_url')
        self._lock = threading.RLock()

        self.is_postgresql = 'postgresql' in self.db_url
        self.is_sqlite = 'sqlite' in self.db_url

        engine_kwargs = {
            "pool_pre_ping": True,
            "echo": settings.get('debug', False),
        }

        if self.is_postgresql:
            engine_kwargs.update(
                poolclass=QueuePool,
                pool_size=settings.get('database_pool_size', 20),
                max_overflow=settings.get('database_max_overflow', 40),
                pool_recycle=settings.get('database_pool_recycle', 3600),
                connect_args={
                    "connect_timeout": 10,
                    "options": "-c statement_timeout=30000"
                },
            )
        elif self.is_sqlite:
            database = make_url(self.db_url).database
            in_memory = not database or database == ":memory:"
            if not in_memory:
                Path(database).parent.mkdir(parents=True, exist_ok=True)
            # An in-memory database lives only as long as its one connection
            engine_kwargs.update(
                poolclass=StaticPool if in_memory else NullPool,
                connect_args={"check_same_thread": False, "timeout": 30},
            )

        self.engine = create_engine(self.db_url, **engine_kwargs)

        self.SessionFactory = sessionmaker(bind=self.engine, expire_on_commit=False)
        self.Session = scoped_session(self.SessionFactory)

        logger.info(f"Storage initialized with database: {make_url(self.db_url).render_as_string()}")

    def init_db(self):
        """Initialize database tables with retry logic"""
        max_retries = 3
        retry_delay = 1

        for attempt in range(max_retries):
            try:
                with self._lock:
                    Base.metadata.create_all(bind=self.engine)
                    logger.info("Database tables initialized")
                    return
            except OperationalError as e:
                if attempt < max_retries - 1:
                    logger.warning(f"Database init attempt {attempt + 1} failed: {e}")
                    time.sleep(retry_delay * (2 ** attempt))
                else:
                    logger.error(f"Database initialization failed after {max_retries} attempts: {e}")
                    raise

    @contextmanager
    def get_session(self) -> Session:
        """Get a database session with automatic cleanup and proper error handling"""
        session = self.Session()
        try:
            yield session
            session.commit()
        except IntegrityError as e:
            session.rollback()
            logger.error(f"Database integrity error: {str(e)}")
            raise
        except OperationalError as e:
            session.rollback()
            logger.error(f"Database operational error: {str(e)}")
            raise
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database error: {str(e)}")
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def transaction(self) -> Session:
        """Explicit transaction context with proper isolation"""
        session = self.Session()

        if self.is_postgresql:
            session.execute(text("SET TRANSACTION ISOLATION LEVEL READ COMMITTED"))

        try:
            yield session
            session.commit()
            logger.debug("Transaction committed successfully")
        except Exception as e:
            session.rollback()
            logger.debug(f"Transaction rolled back: {str(e)}")
            raise
        finally:
            session.close()

    def check_connection(self) -> bool:
        """Check database connection health"""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database connection check failed: {e}")
            return False

    # Document Methods
    def create_document(self, name: str, mime_type: str = "text/plain", size_bytes: int = 0,
                        storage_key: Optional[str] = None, document_id: Optional[str] = None,
                        text_body: Optional[str] = None,
                        created_at: Optional[datetime] = None) -> Document:
        """Create a document row, and its text body when one is given"""
        with self.transaction() as session:
            document = Document(
                id=document_id or str(uuid.uuid4()),
                name=name,
                mime_type=mime_type,
                size_bytes=size_bytes,
                storage_key=storage_key or f"logical://{name}",
                version=0,
                created_at=created_at or datetime.utcnow(),
            )
            session.add(document)
            session.flush()

            if text_body:
                session.add(DocumentText(document_id=document.id, text=text_body))

            session.flush()
            session.refresh(document)
            logger.info(f"Created document {document.id} ({name})")
            return document

    def get_document(self, document_id: str) -> Optional[Document]:
        with self.get_session() as session:
            return session.query(Document).filter(Document.id == document_id).first()

    def list_documents(self, limit: Optional[int] = None, offset: int = 0) -> List[Document]:
        """Documents newest first"""
        with self.get_session() as session:
            query = session.query(Document).order_by(Document.created_at.desc()).offset(offset)
            if limit:
                query = query.limit(limit)
            return query.all()

    def delete_document(self, document_id: str) -> Optional[Document]:
        """Delete a document and its text; returns the deleted row"""
        with self.transaction() as session:
            document = session.query(Document).filter(Document.id == document_id).first()
            if not document:
                return None

            session.query(DocumentText).filter(
                DocumentText.document_id == document_id
            ).delete(synchronize_session=False)
            session.delete(document)
            logger.info(f"Deleted document {document_id}")
            return document

    # Text Methods
    def get_document_text(self, document_id: str) -> Optional[str]:
        """Current text body of a document, or None when it has none"""
        current = self.get_versioned_text(document_id)
        return current[1] if current else None

    def get_versioned_text(self, document_id: str) -> Optional[Tuple[int, str]]:
        """(version, text) of a document read together, or None when it has no text"""
        with self.get_session() as session:
            row = session.query(Document.version, DocumentText.text)\
                         .join(DocumentText, DocumentText.document_id == Document.id)\
                         .filter(Document.id == document_id)\
                         .first()
            return (row.version, row.text) if row else None

    def save_document_text(self, document_id: str, text_body: str):
        """Create or overwrite the text body without touching the version"""
        with self.transaction() as session:
            row = session.query(DocumentText).filter(
                DocumentText.document_id == document_id
            ).first()
            if row:
                row.text = text_body
            else:
                session.add(DocumentText(document_id=document_id, text=text_body))
            logger.info(f"Stored {len(text_body)} characters of text for document {document_id}")

    def update_document_text(self, document_id: str, transform: Callable[[str], str],
                             expected_version: Optional[int] = None) -> Tuple[int, str]:
        """
        Read-modify-write of a document's text as one unit of work

        The current text is read, passed to ``transform`` and the result is
        written together with a version increment in the same transaction.
        If ``transform`` raises, nothing is written.

        Args:
            document_id: Document to edit
            transform: Function from current text to new text
            expected_version: Reject the update if the stored version differs

        Returns:
            Tuple of (new_version, new_text)

        Raises:
            NotFoundError: Document does not exist
            ConflictError: Document has no editable text
            VersionConflictError: Stored version differs from expected_version
        """
        with self.transaction() as session:
            query = session.query(Document).filter(Document.id == document_id)
            if self.is_postgresql:
                query = query.with_for_update()
            document = query.first()
            if not document:
                raise NotFoundError("not found", document_id=document_id)

            body = session.query(DocumentText).filter(
                DocumentText.document_id == document_id
            ).first()
            if not body:
                raise ConflictError(
                    "document has no editable text (e.g., binary-only or extraction missing)",
                    document_id=document_id
                )

            if expected_version is not None and document.version != expected_version:
                raise VersionConflictError(document_id, expected_version, document.version)

            new_text = transform(body.text)

            body.text = new_text
            document.version += 1
            document.updated_at = datetime.utcnow()
            session.flush()

            logger.info(
                f"Updated text of document {document_id} "
                f"(version {document.version - 1} → {document.version})"
            )
            return document.version, new_text

    def put_document_text(self, document_id: str, new_text: str,
                          expected_version: Optional[int] = None) -> int:
        """Persist new text and increment the version together; returns the new version"""
        version, _ = self.update_document_text(
            document_id, lambda _current: new_text, expected_version
        )
        return version

    # Search Methods
    @staticmethod
    def _contains(column, term: str):
        return func.lower(column, type_=Text).contains(term.lower(), autoescape=True)

    def find_candidate_texts(self, terms: List[str], document_id: Optional[str] = None,
                             max_rows: int = 25) -> List[CandidateText]:
        """Texts containing any term, newest document first"""
        if not terms:
            return []

        with self.get_session() as session:
            query = session.query(
                DocumentText.text,
                Document.id,
                Document.name,
                Document.created_at
            ).join(Document, Document.id == DocumentText.document_id)\
             .filter(or_(*[self._contains(DocumentText.text, t) for t in terms]))

            if document_id:
                query = query.filter(DocumentText.document_id == document_id)

            rows = query.order_by(Document.created_at.desc()).limit(max_rows).all()

        return [
            CandidateText(
                text=row.text,
                document_id=row.id,
                document_name=row.name,
                document_created_at=row.created_at
            )
            for row in rows
        ]

    def find_ranked_candidates(self, terms: List[str], max_rows: int = 200) -> List[RankedCandidate]:
        """Documents where every term occurs in the name or the text, newest first"""
        if not terms:
            return []

        with self.get_session() as session:
            rows = session.query(Document.id, Document.name, DocumentText.text)\
                          .outerjoin(DocumentText, DocumentText.document_id == Document.id)\
                          .filter(and_(*[
                              or_(self._contains(Document.name, t),
                                  self._contains(DocumentText.text, t))
                              for t in terms
                          ]))\
                          .order_by(Document.created_at.desc())\
                          .limit(max_rows)\
                          .all()

        return [
            RankedCandidate(document_id=row.id, name=row.name, text=row.text)
            for row in rows
        ]

    # Audit Logging Methods
    def log_audit(self, action: str, request_id: str = None, user_id: str = None,
                  resource_type: str = None, resource_id: str = None,
                  ip_address: str = None, user_agent: str = None,
                  status_code: int = None, error_message: str = None,
                  metadata: Dict = None):
        """Create audit log entry"""
        if not settings.enable_audit_log:
            return

        try:
            with self.get_session() as session:
                session.add(AuditLog(
                    request_id=request_id,
                    user_id=user_id or "anonymous",
                    action=action[:100],
                    resource_type=resource_type,
                    resource_id=resource_id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    status_code=status_code,
                    error_message=error_message,
                    meta=metadata
                ))
        except Exception as e:
            # Don't fail the main operation if audit logging fails
            logger.error(f"Audit logging failed: {e}")

    def get_audit_logs(self, user_id: str = None, action: str = None,
                       start_date: datetime = None, end_date: datetime = None,
                       limit: int = 100) -> List[AuditLog]:
        """Query audit logs"""
        with self.get_session() as session:
            query = session.query(AuditLog)

            if user_id:
                query = query.filter(AuditLog.user_id == user_id)
            if action:
                query = query.filter(AuditLog.action == action)
            if start_date:
                query = query.filter(AuditLog.timestamp >= start_date)
            if end_date:
                query = query.filter(AuditLog.timestamp <= end_date)

            return query.order_by(AuditLog.timestamp.desc()).limit(limit).all()

    def cleanup_old_audit_logs(self, days: int = None) -> int:
        """Delete audit entries older than the retention period"""
        days = days or settings.audit_retention_days
        cutoff = datetime.utcnow() - timedelta(days=days)

        with self.transaction() as session:
            deleted = session.query(AuditLog).filter(
                AuditLog.timestamp < cutoff
            ).delete(synchronize_session=False)

        logger.info(f"Cleaned up {deleted} audit log entries older than {days} days")
        return deleted

    # Statistics
    def get_statistics(self) -> Dict[str, Any]:
        with self.get_session() as session:
            total_documents = session.query(func.count(Document.id)).scalar() or 0
            with_text = session.query(func.count(DocumentText.id)).scalar() or 0
            total_chars = session.query(func.sum(func.length(DocumentText.text))).scalar() or 0

            return {
                "total_documents": total_documents,
                "documents_with_text": with_text,
                "total_text_characters": int(total_chars),
            }

    def close(self):
        """Close all database connections"""
        self.Session.remove()
        self.engine.dispose()
        logger.info("Database connections closed")
