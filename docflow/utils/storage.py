"""
Storage and Persistence Module

SQLite-backed repositories for documents, templates, companies, email
delivery logs and queue jobs. Records are stored as JSON blobs next to the
columns used for lookups and ordering.
"""

import json
import sqlite3
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import aiosqlite

from docflow.core.config import get_settings
from docflow.models import (
    Company,
    DocumentRecord,
    DocumentStatus,
    DocumentType,
    EmailLog,
    EmailStatus,
    FileKind,
    Template,
    utc_now,
)
from docflow.utils.errors import DuplicateDocumentError, StorageError
from docflow.utils.logger import get_logger

logger = get_logger(__name__)


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class BaseRepository(ABC):
    """Abstract base class for repositories."""

    def __init__(self, db: "Database"):
        self.db = db

    @abstractmethod
    async def create(self, record: Any) -> str:
        """Create a new record."""
        pass

    @abstractmethod
    async def get(self, id: str) -> Optional[Any]:
        """Get a record by ID."""
        pass

    @abstractmethod
    async def update(self, record: Any) -> bool:
        """Update a record."""
        pass


class Database:
    """
    SQLite database manager.

    Holds a single aiosqlite connection, creates the schema and provides
    a context manager for transactions.
    """

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path or get_settings().database_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection: Optional[aiosqlite.Connection] = None

    async def connect(self) -> None:
        """Establish database connection."""
        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row
        await self._create_tables()
        logger.info("database_connected", path=str(self.db_path))

    async def close(self) -> None:
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None
            logger.info("database_closed")

    async def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        conn = self._require()

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS documents (
                id TEXT PRIMARY KEY,
                content_digest TEXT NOT NULL,
                file_name TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                deleted_at TEXT,
                data TEXT NOT NULL
            )
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS templates (
                id TEXT PRIMARY KEY,
                owner_scope TEXT NOT NULL,
                document_type TEXT NOT NULL,
                file_kind TEXT NOT NULL,
                is_default INTEGER NOT NULL DEFAULT 0,
                enabled INTEGER NOT NULL DEFAULT 1,
                priority INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                data TEXT NOT NULL
            )
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS companies (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                reference_no TEXT,
                code TEXT,
                data TEXT NOT NULL
            )
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS email_logs (
                id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                data TEXT NOT NULL
            )
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                queue_name TEXT NOT NULL,
                id TEXT NOT NULL,
                state TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                data TEXT NOT NULL,
                PRIMARY KEY (queue_name, id)
            )
        """)

        # One live document per content digest
        await conn.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS ux_documents_live_digest
            ON documents(content_digest)
            WHERE deleted_at IS NULL
              AND status IN ('processing', 'parsed', 'unallocated')
        """)
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_documents_digest ON documents(content_digest)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_documents_name ON documents(file_name)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_templates_lookup "
            "ON templates(file_kind, document_type)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_companies_reference ON companies(reference_no)"
        )
        await conn.commit()

    def _require(self) -> aiosqlite.Connection:
        if not self._connection:
            raise RuntimeError("Database not connected")
        return self._connection

    @asynccontextmanager
    async def transaction(self):
        """Context manager for database transactions."""
        conn = self._require()
        try:
            yield conn
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise

    async def execute(self, query: str, parameters: tuple = ()) -> aiosqlite.Cursor:
        """Execute a SQL query and commit."""
        conn = self._require()
        cursor = await conn.execute(query, parameters)
        await conn.commit()
        return cursor

    async def fetchone(self, query: str, parameters: tuple = ()) -> Optional[aiosqlite.Row]:
        """Fetch a single row."""
        cursor = await self._require().execute(query, parameters)
        return await cursor.fetchone()

    async def fetchall(self, query: str, parameters: tuple = ()) -> List[aiosqlite.Row]:
        """Fetch all rows."""
        cursor = await self._require().execute(query, parameters)
        return await cursor.fetchall()


class DocumentRepository(BaseRepository):
    """Repository for ingested document records. Deletion is always soft."""

    async def create(self, record: DocumentRecord) -> str:
        try:
            await self.db.execute(
                """
                INSERT INTO documents
                (id, content_digest, file_name, status, created_at, deleted_at, data)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.content_digest,
                    record.file_name,
                    record.status.value,
                    _ts(record.created_at),
                    _ts(record.deleted_at),
                    record.model_dump_json(),
                ),
            )
        except sqlite3.IntegrityError as e:
            await self.db._require().rollback()
            if "content_digest" in str(e):
                raise DuplicateDocumentError(record.content_digest) from e
            raise StorageError(f"Failed to save document: {e}") from e

        logger.debug("document_created", document_id=record.id, status=record.status.value)
        return record.id

    async def get(self, id: str) -> Optional[DocumentRecord]:
        row = await self.db.fetchone("SELECT data FROM documents WHERE id = ?", (id,))
        return DocumentRecord.model_validate_json(row["data"]) if row else None

    async def update(self, record: DocumentRecord) -> bool:
        record.updated_at = utc_now()
        try:
            cursor = await self.db.execute(
                """
                UPDATE documents
                SET status = ?, deleted_at = ?, file_name = ?, data = ?
                WHERE id = ?
                """,
                (
                    record.status.value,
                    _ts(record.deleted_at),
                    record.file_name,
                    record.model_dump_json(),
                    record.id,
                ),
            )
        except sqlite3.IntegrityError as e:
            await self.db._require().rollback()
            raise DuplicateDocumentError(record.content_digest) from e
        return cursor.rowcount > 0

    async def soft_delete(self, id: str, when: Optional[datetime] = None) -> bool:
        record = await self.get(id)
        if not record or record.is_deleted:
            return False
        record.deleted_at = when or utc_now()
        return await self.update(record)

    async def find_by_digest(self, content_digest: str) -> List[DocumentRecord]:
        """All records with this digest, deleted ones included, oldest first."""
        rows = await self.db.fetchall(
            "SELECT data FROM documents WHERE content_digest = ? ORDER BY created_at ASC",
            (content_digest,),
        )
        return [DocumentRecord.model_validate_json(r["data"]) for r in rows]

    async def find_recent_by_name(self, file_name: str, since: datetime) -> List[DocumentRecord]:
        rows = await self.db.fetchall(
            "SELECT data FROM documents WHERE file_name = ?",
            (file_name,),
        )
        records = [DocumentRecord.model_validate_json(r["data"]) for r in rows]
        return [r for r in records if r.created_at >= since]

    async def list_documents(
        self,
        status: Optional[DocumentStatus] = None,
        include_deleted: bool = False,
    ) -> List[DocumentRecord]:
        query = "SELECT data FROM documents"
        clauses, params = [], []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if not include_deleted:
            clauses.append("deleted_at IS NULL")
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at ASC"
        rows = await self.db.fetchall(query, tuple(params))
        return [DocumentRecord.model_validate_json(r["data"]) for r in rows]


class TemplateRepository(BaseRepository):
    """Repository for coordinate templates."""

    ORDER = " ORDER BY is_default DESC, priority DESC, created_at DESC"

    def _hydrate(self, row: aiosqlite.Row) -> Template:
        template = Template.model_validate_json(row["data"])
        # Columns are authoritative for flags changed in bulk
        return template.model_copy(update={
            "is_default": bool(row["is_default"]),
            "enabled": bool(row["enabled"]),
            "priority": row["priority"],
        })

    async def create(self, template: Template) -> str:
        await self.db.execute(
            """
            INSERT INTO templates
            (id, owner_scope, document_type, file_kind, is_default, enabled,
             priority, created_at, data)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                template.id,
                template.owner_scope,
                template.document_type.value,
                template.file_kind.value,
                int(template.is_default),
                int(template.enabled),
                template.priority,
                _ts(template.created_at),
                template.model_dump_json(),
            ),
        )
        if template.is_default:
            await self.set_default(template.id)
        return template.id

    async def get(self, id: str) -> Optional[Template]:
        row = await self.db.fetchone("SELECT * FROM templates WHERE id = ?", (id,))
        return self._hydrate(row) if row else None

    async def update(self, template: Template) -> bool:
        cursor = await self.db.execute(
            """
            UPDATE templates
            SET owner_scope = ?, document_type = ?, file_kind = ?, enabled = ?,
                priority = ?, data = ?
            WHERE id = ?
            """,
            (
                template.owner_scope,
                template.document_type.value,
                template.file_kind.value,
                int(template.enabled),
                template.priority,
                template.model_dump_json(),
                template.id,
            ),
        )
        if template.is_default:
            await self.set_default(template.id)
        return cursor.rowcount > 0

    async def delete(self, id: str) -> bool:
        cursor = await self.db.execute("DELETE FROM templates WHERE id = ?", (id,))
        return cursor.rowcount > 0

    async def find(
        self,
        file_kind: FileKind,
        document_type: Optional[DocumentType] = None,
        is_default: Optional[bool] = None,
        enabled_only: bool = True,
    ) -> List[Template]:
        """Templates of a file kind, best candidate first."""
        clauses, params = ["file_kind = ?"], [file_kind.value]
        if document_type is not None:
            clauses.append("document_type = ?")
            params.append(document_type.value)
        if is_default is not None:
            clauses.append("is_default = ?")
            params.append(int(is_default))
        if enabled_only:
            clauses.append("enabled = 1")
        rows = await self.db.fetchall(
            "SELECT * FROM templates WHERE " + " AND ".join(clauses) + self.ORDER,
            tuple(params),
        )
        return [self._hydrate(r) for r in rows]

    async def set_default(self, template_id: str) -> Template:
        """Mark a template default and clear its siblings in one transaction."""
        template = await self.get(template_id)
        if template is None:
            raise StorageError(f"Template {template_id} not found")

        async with self.db.transaction() as conn:
            await conn.execute(
                """
                UPDATE templates SET is_default = 0
                WHERE owner_scope = ? AND document_type = ? AND file_kind = ? AND id != ?
                """,
                (
                    template.owner_scope,
                    template.document_type.value,
                    template.file_kind.value,
                    template.id,
                ),
            )
            await conn.execute(
                "UPDATE templates SET is_default = 1 WHERE id = ?",
                (template.id,),
            )

        logger.info("template_default_set", template_id=template.id,
                    document_type=template.document_type.value,
                    file_kind=template.file_kind.value)
        return template.model_copy(update={"is_default": True})


def normalize_reference(value: Optional[str]) -> Optional[str]:
    """
    Normalize an account/reference number for exact matching.

    Whitespace is trimmed. Values containing digits keep only the digits
    without leading zeros, so "AC-0012345" and "12345" compare equal.
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    digits = "".join(ch for ch in text if ch.isdigit())
    if digits:
        return digits.lstrip("0") or "0"
    return text.upper()


class CompanyRepository(BaseRepository):
    """Repository for business entities."""

    async def create(self, company: Company) -> str:
        await self.db.execute(
            "INSERT INTO companies (id, name, reference_no, code, data) VALUES (?, ?, ?, ?, ?)",
            (
                company.id,
                company.name,
                normalize_reference(company.reference_no),
                company.code.strip().upper() if company.code else None,
                company.model_dump_json(),
            ),
        )
        return company.id

    async def get(self, id: str) -> Optional[Company]:
        row = await self.db.fetchone("SELECT data FROM companies WHERE id = ?", (id,))
        return Company.model_validate_json(row["data"]) if row else None

    async def update(self, company: Company) -> bool:
        cursor = await self.db.execute(
            "UPDATE companies SET name = ?, reference_no = ?, code = ?, data = ? WHERE id = ?",
            (
                company.name,
                normalize_reference(company.reference_no),
                company.code.strip().upper() if company.code else None,
                company.model_dump_json(),
                company.id,
            ),
        )
        return cursor.rowcount > 0

    async def find_by_reference(self, account_number: str) -> Optional[Company]:
        """Exact match on normalized reference number, then on company code."""
        normalized = normalize_reference(account_number)
        if normalized is None:
            return None
        row = await self.db.fetchone(
            "SELECT data FROM companies WHERE reference_no = ? LIMIT 1",
            (normalized,),
        )
        if row is None:
            row = await self.db.fetchone(
                "SELECT data FROM companies WHERE code = ? LIMIT 1",
                (str(account_number).strip().upper(),),
            )
        return Company.model_validate_json(row["data"]) if row else None


class EmailLogRepository(BaseRepository):
    """Repository for email delivery logs."""

    async def create(self, log: EmailLog) -> str:
        await self.db.execute(
            "INSERT INTO email_logs (id, status, created_at, data) VALUES (?, ?, ?, ?)",
            (log.id, log.status.value, _ts(log.created_at), log.model_dump_json()),
        )
        return log.id

    async def get(self, id: str) -> Optional[EmailLog]:
        row = await self.db.fetchone("SELECT data FROM email_logs WHERE id = ?", (id,))
        return EmailLog.model_validate_json(row["data"]) if row else None

    async def update(self, log: EmailLog) -> bool:
        log.updated_at = utc_now()
        cursor = await self.db.execute(
            "UPDATE email_logs SET status = ?, data = ? WHERE id = ?",
            (log.status.value, log.model_dump_json(), log.id),
        )
        return cursor.rowcount > 0

    async def list_logs(
        self,
        page: int = 1,
        page_size: int = 50,
        status: Optional[EmailStatus] = None,
    ) -> Tuple[List[EmailLog], int]:
        """Newest first, with the total count for pagination."""
        where, params = "", ()
        if status is not None:
            where, params = " WHERE status = ?", (status.value,)
        total_row = await self.db.fetchone(f"SELECT COUNT(*) AS n FROM email_logs{where}", params)
        offset = max(page - 1, 0) * page_size
        rows = await self.db.fetchall(
            f"SELECT data FROM email_logs{where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
            params + (page_size, offset),
        )
        return [EmailLog.model_validate_json(r["data"]) for r in rows], total_row["n"]


class JobRepository(BaseRepository):
    """
    Durable copy of queue jobs.

    Rows hold a job's serialized record keyed by ``(queue_name, id)``, so
    queued, delayed and in-flight work survives a restart. The queue owns
    the record format; this repository only stores it.
    """

    async def create(self, record: Dict[str, Any]) -> str:
        await self.save(record)
        return record["id"]

    async def get(self, id: str, queue_name: Optional[str] = None) -> Optional[Dict[str, Any]]:
        query, params = "SELECT data FROM jobs WHERE id = ?", (id,)
        if queue_name is not None:
            query, params = query + " AND queue_name = ?", params + (queue_name,)
        row = await self.db.fetchone(query, params)
        return json.loads(row["data"]) if row else None

    async def update(self, record: Dict[str, Any]) -> bool:
        await self.save(record)
        return True

    async def save(self, record: Dict[str, Any]) -> None:
        try:
            await self.db.execute(
                """
                INSERT INTO jobs (queue_name, id, state, updated_at, data)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (queue_name, id) DO UPDATE SET
                    state = excluded.state,
                    updated_at = excluded.updated_at,
                    data = excluded.data
                """,
                (
                    record["queue_name"],
                    record["id"],
                    record["state"],
                    _ts(utc_now()),
                    json.dumps(record, default=str),
                ),
            )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to save job {record['id']}: {e}") from e

    async def delete(self, queue_name: str, job_ids: Iterable[str]) -> int:
        ids = list(job_ids)
        if not ids:
            return 0
        placeholders = ", ".join("?" for _ in ids)
        try:
            cursor = await self.db.execute(
                f"DELETE FROM jobs WHERE queue_name = ? AND id IN ({placeholders})",
                (queue_name, *ids),
            )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to delete jobs: {e}") from e
        return cursor.rowcount

    async def load(self, queue_name: str) -> List[Dict[str, Any]]:
        """Every stored job of one queue, oldest first."""
        rows = await self.db.fetchall(
            "SELECT data FROM jobs WHERE queue_name = ?",
            (queue_name,),
        )
        records = [json.loads(r["data"]) for r in rows]
        records.sort(key=lambda r: r.get("timestamp") or 0)
        return records


class Storage:
    """Connected database plus its repositories."""

    def __init__(self, db_path: Optional[Path] = None):
        self.db = Database(db_path)
        self.documents = DocumentRepository(self.db)
        self.templates = TemplateRepository(self.db)
        self.companies = CompanyRepository(self.db)
        self.email_logs = EmailLogRepository(self.db)
        self.jobs = JobRepository(self.db)

    async def connect(self) -> "Storage":
        await self.db.connect()
        return self

    async def close(self) -> None:
        await self.db.close()
