"""
SQLite-based pipeline repository for single-instance deployments.

Each entity is stored as JSON next to the columns the pipeline queries on
(status, parent id, normalized vendor name), so the schema stays small while
status/parent lookups remain indexed.
"""

import sqlite3
from typing import Optional, Type, TypeVar
from pydantic import BaseModel

from ...models.batch import Analysis, Batch, BatchStatus, Document, DocumentStatus
from ...models.invoice import Invoice, InvoiceStatus, Vendor
from .repository_base import PipelineRepository

T = TypeVar("T", bound=BaseModel)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS batches (
        id TEXT PRIMARY KEY,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_batches_status ON batches(status)",
    """
    CREATE TABLE IF NOT EXISTS documents (
        id TEXT PRIMARY KEY,
        batch_id TEXT NOT NULL,
        status TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_documents_batch ON documents(batch_id)",
    "CREATE INDEX IF NOT EXISTS idx_documents_status ON documents(status)",
    """
    CREATE TABLE IF NOT EXISTS invoices (
        id TEXT PRIMARY KEY,
        document_id TEXT NOT NULL,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_invoices_document ON invoices(document_id)",
    "CREATE INDEX IF NOT EXISTS idx_invoices_status ON invoices(status)",
    """
    CREATE TABLE IF NOT EXISTS vendors (
        id TEXT PRIMARY KEY,
        name_lower TEXT NOT NULL,
        created_at TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_vendors_name ON vendors(name_lower)",
    """
    CREATE TABLE IF NOT EXISTS analyses (
        id TEXT PRIMARY KEY,
        batch_id TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_analyses_batch ON analyses(batch_id)",
]


class SQLiteRepository(PipelineRepository):
    """
    SQLite-backed repository with persistent storage.

    Features:
    - Persistent storage across application restarts
    - Status and parent-id indexes for pipeline queries
    - Thread-safe operations (connection per call, SQLite's built-in locking)
    """

    def __init__(self, db_path: str = "pipeline.db"):
        """
        Initialize repository with database path.

        Args:
            db_path: Path to SQLite database file (default: pipeline.db)
        """
        self.db_path = db_path
        self._init_database()

    def _init_database(self):
        """Create tables if they don't exist"""
        conn = sqlite3.connect(self.db_path)
        cursor = conn.cursor()
        for statement in SCHEMA:
            cursor.execute(statement)
        conn.commit()
        conn.close()

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection with row factory"""
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _execute(self, sql: str, params: tuple = ()) -> int:
        conn = self._get_connection()
        try:
            cursor = conn.execute(sql, params)
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def _fetch(self, model: Type[T], sql: str, params: tuple = ()) -> list[T]:
        conn = self._get_connection()
        try:
            rows = conn.execute(sql, params).fetchall()
        finally:
            conn.close()
        return [model.model_validate_json(row["data"]) for row in rows]

    def _fetch_one(self, model: Type[T], sql: str, params: tuple = ()) -> Optional[T]:
        results = self._fetch(model, sql, params)
        return results[0] if results else None

    # Batches

    def save_batch(self, batch: Batch) -> Batch:
        self._execute(
            "INSERT OR REPLACE INTO batches (id, status, created_at, data) VALUES (?, ?, ?, ?)",
            (batch.id, batch.status.value, batch.created_at.isoformat(), batch.model_dump_json()),
        )
        return batch

    def get_batch(self, batch_id: str) -> Optional[Batch]:
        return self._fetch_one(Batch, "SELECT data FROM batches WHERE id = ?", (batch_id,))

    def list_batches(self, status: BatchStatus | None = None) -> list[Batch]:
        if status is None:
            return self._fetch(Batch, "SELECT data FROM batches ORDER BY created_at DESC")
        return self._fetch(
            Batch,
            "SELECT data FROM batches WHERE status = ? ORDER BY created_at DESC",
            (status.value,),
        )

    def delete_batch(self, batch_id: str) -> bool:
        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                "DELETE FROM invoices WHERE document_id IN (SELECT id FROM documents WHERE batch_id = ?)",
                (batch_id,),
            )
            cursor.execute("DELETE FROM documents WHERE batch_id = ?", (batch_id,))
            cursor.execute("DELETE FROM analyses WHERE batch_id = ?", (batch_id,))
            cursor.execute("DELETE FROM batches WHERE id = ?", (batch_id,))
            rows_affected = cursor.rowcount
            conn.commit()
        finally:
            conn.close()
        return rows_affected > 0

    # Documents

    def save_document(self, document: Document) -> Document:
        self._execute(
            "INSERT OR REPLACE INTO documents (id, batch_id, status, data) VALUES (?, ?, ?, ?)",
            (document.id, document.batch_id, document.status.value, document.model_dump_json()),
        )
        return document

    def get_document(self, document_id: str) -> Optional[Document]:
        return self._fetch_one(Document, "SELECT data FROM documents WHERE id = ?", (document_id,))

    def list_documents_by_batch(self, batch_id: str) -> list[Document]:
        batch = self.get_batch(batch_id)
        if batch is None:
            return []
        documents = {
            d.id: d
            for d in self._fetch(Document, "SELECT data FROM documents WHERE batch_id = ?", (batch_id,))
        }
        return [documents[d] for d in batch.document_ids if d in documents]

    def list_documents_by_status(self, status: DocumentStatus) -> list[Document]:
        return self._fetch(Document, "SELECT data FROM documents WHERE status = ?", (status.value,))

    # Invoices

    def save_invoice(self, invoice: Invoice) -> Invoice:
        self._execute(
            """
            INSERT OR REPLACE INTO invoices (id, document_id, status, created_at, data)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                invoice.id,
                invoice.document_id,
                invoice.status.value,
                invoice.created_at.isoformat(),
                invoice.model_dump_json(),
            ),
        )
        return invoice

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        return self._fetch_one(Invoice, "SELECT data FROM invoices WHERE id = ?", (invoice_id,))

    def list_invoices_by_document(self, document_id: str) -> list[Invoice]:
        return self._fetch(
            Invoice,
            "SELECT data FROM invoices WHERE document_id = ? ORDER BY created_at",
            (document_id,),
        )

    def list_invoices(self, status: InvoiceStatus | None = None) -> list[Invoice]:
        if status is None:
            return self._fetch(Invoice, "SELECT data FROM invoices ORDER BY created_at DESC")
        return self._fetch(
            Invoice,
            "SELECT data FROM invoices WHERE status = ? ORDER BY created_at DESC",
            (status.value,),
        )

    # Vendors

    def save_vendor(self, vendor: Vendor) -> Vendor:
        self._execute(
            "INSERT OR REPLACE INTO vendors (id, name_lower, created_at, data) VALUES (?, ?, ?, ?)",
            (vendor.id, vendor.name.lower(), vendor.created_at.isoformat(), vendor.model_dump_json()),
        )
        return vendor

    def get_vendor(self, vendor_id: str) -> Optional[Vendor]:
        return self._fetch_one(Vendor, "SELECT data FROM vendors WHERE id = ?", (vendor_id,))

    def find_vendor_by_name(self, name: str) -> Optional[Vendor]:
        return self._fetch_one(
            Vendor, "SELECT data FROM vendors WHERE name_lower = ?", (name.strip().lower(),)
        )

    def search_vendors(self, fragment: str) -> list[Vendor]:
        return self._fetch(
            Vendor,
            "SELECT data FROM vendors WHERE instr(name_lower, ?) > 0 ORDER BY created_at",
            (fragment.strip().lower(),),
        )

    def list_vendors(self) -> list[Vendor]:
        return self._fetch(Vendor, "SELECT data FROM vendors ORDER BY name_lower")

    # Analyses

    def save_analysis(self, analysis: Analysis) -> Analysis:
        self._execute(
            "INSERT OR REPLACE INTO analyses (id, batch_id, data) VALUES (?, ?, ?)",
            (analysis.id, analysis.batch_id, analysis.model_dump_json()),
        )
        return analysis

    def get_analysis_by_batch(self, batch_id: str) -> Optional[Analysis]:
        return self._fetch_one(
            Analysis, "SELECT data FROM analyses WHERE batch_id = ? LIMIT 1", (batch_id,)
        )
