"""
Object Store Interface
Abstract base class for the blob stores backing uploaded media.
"""

from abc import ABC, abstractmethod


class ObjectStore(ABC):
    """
    Upload/download/delete/presign against a single bucket.

    Implementations translate provider failures into the pipeline's error
    taxonomy: a missing key raises ``NotFoundError``, an unreachable store
    raises ``TransientIOError`` (retryable by the caller).
    """

    @abstractmethod
    def presign_upload(self, key: str, content_type: str, ttl_seconds: int = 3600) -> str:
        """
        Generates a URL the client PUTs the bytes to directly.
        Args:
            key: Destination object key.
            content_type: Content type the client must send.
            ttl_seconds: URL lifetime.
        Returns:
            The presigned URL.
        """

    @abstractmethod
    def presign_download(self, key: str, ttl_seconds: int = 3600) -> str:
        """Generates a time-limited GET URL for ``key``."""

    @abstractmethod
    def download(self, key: str) -> bytes:
        """
        Reads a whole object into memory.
        Raises:
            NotFoundError: the key does not exist.
            TransientIOError: the store could not be reached.
        """

    @abstractmethod
    def upload(self, key: str, data: bytes, content_type: str) -> None:
        """Writes ``data`` under ``key``, overwriting any existing object."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Deletes ``key``. Deleting a missing key is not an error."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Checks if an object exists."""

    def ensure_bucket(self) -> bool:
        """
        Creates the backing bucket/directory when missing.
        Returns True if it had to be created.
        """
        return False
