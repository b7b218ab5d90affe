"""Object storage for generated documents (invoices)."""

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path

from casedesk.core.config import settings


class StorageError(Exception):
    """Base exception for storage errors."""

    pass


class StorageBackend(ABC):
    """Abstract base class for storage backends.

    Keys are chosen by the caller, so writing the same key twice replaces
    the object instead of creating a second one.
    """

    @abstractmethod
    async def upload(
        self,
        file_data: bytes,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> str:
        """Store file under key and return its durable URL.

        Raises:
            StorageError: If the object cannot be written
        """
        pass

    @abstractmethod
    async def download(self, key: str) -> bytes:
        pass

    @abstractmethod
    async def exists(self, key: str) -> bool:
        pass


class LocalStorageBackend(StorageBackend):
    """Local filesystem storage backend served under a public base URL."""

    def __init__(self, base_path: str = "./storage", base_url: str = "") -> None:
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.base_url = base_url.rstrip("/")

    def _path(self, key: str) -> Path:
        path = (self.base_path / key).resolve()
        if self.base_path.resolve() not in path.parents:
            raise StorageError(f"Invalid storage key: {key}")
        return path

    def url_for(self, key: str) -> str:
        return f"{self.base_url}/{key}" if self.base_url else key

    async def upload(
        self,
        file_data: bytes,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> str:
        """Write file to the local filesystem."""
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(path.write_bytes, file_data)
        except OSError as e:
            raise StorageError(f"Failed to store {key}: {e}") from e

        return self.url_for(key)

    async def download(self, key: str) -> bytes:
        """Read file from the local filesystem."""
        path = self._path(key)

        if not path.exists():
            raise StorageError(f"File not found: {key}")

        return await asyncio.to_thread(path.read_bytes)

    async def exists(self, key: str) -> bool:
        return self._path(key).exists()


def get_storage_backend() -> StorageBackend:
    """Get the configured storage backend."""
    return LocalStorageBackend(
        base_path=settings.invoice_storage_path,
        base_url=settings.invoice_base_url,
    )
