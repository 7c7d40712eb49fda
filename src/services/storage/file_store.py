"""
Object storage for uploaded document bytes.

The pipeline only needs store/retrieve/delete; LocalFileStore keeps files on
disk under a root directory, one sub-directory per batch.
"""

import re
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from loguru import logger

from ...core.errors import StorageError

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class FileStore(ABC):
    @abstractmethod
    def store(self, data: bytes, key: str) -> str:
        """
        Store bytes under a key.

        Args:
            data: File content
            key: Logical key, e.g. "<batch_id>/<file name>"

        Returns:
            Storage path to use for retrieve/delete
        """
        pass

    @abstractmethod
    def retrieve(self, path: str) -> bytes:
        pass

    @abstractmethod
    def delete(self, path: str) -> None:
        pass

    @abstractmethod
    def exists(self, path: str) -> bool:
        pass


def safe_file_name(file_name: str) -> str:
    name = _UNSAFE_CHARS.sub("_", Path(file_name or "").name).strip("._")
    return name or "document"


class LocalFileStore(FileStore):
    def __init__(self, root: str | Path = "./storage"):
        self.root = Path(root).resolve()

    def _resolve(self, path: str) -> Path:
        full = (self.root / path).resolve()
        if full != self.root and self.root not in full.parents:
            raise StorageError(f"Path escapes storage root: {path}")
        return full

    def store(self, data: bytes, key: str) -> str:
        prefix, _, file_name = key.rpartition("/")
        parts = [safe_file_name(p) for p in prefix.split("/") if p]
        relative = Path(*parts, f"{uuid.uuid4().hex[:12]}_{safe_file_name(file_name)}")
        target = self._resolve(relative.as_posix())
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            raise StorageError(f"Failed to store {key}: {e}") from e
        logger.debug("Stored file", path=relative.as_posix(), size=len(data))
        return relative.as_posix()

    def retrieve(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return target.read_bytes()
        except FileNotFoundError as e:
            raise StorageError(f"File not found in storage: {path}") from e
        except OSError as e:
            raise StorageError(f"Failed to read {path}: {e}") from e

    def delete(self, path: str) -> None:
        target = self._resolve(path)
        try:
            target.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to delete {path}: {e}") from e

    def exists(self, path: str) -> bool:
        try:
            return self._resolve(path).is_file()
        except StorageError:
            return False
