from .repository_base import PipelineRepository
from .memory import InMemoryRepository
from .sqlite_repository import SQLiteRepository
from .file_store import FileStore, LocalFileStore


def create_repository(db_path: str = "") -> PipelineRepository:
    """SQLite when a database path is configured, in-memory otherwise"""
    if db_path:
        return SQLiteRepository(db_path)
    return InMemoryRepository()


__all__ = [
    "PipelineRepository",
    "InMemoryRepository",
    "SQLiteRepository",
    "FileStore",
    "LocalFileStore",
    "create_repository",
]
