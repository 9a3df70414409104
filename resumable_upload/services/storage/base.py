from abc import ABC, abstractmethod
from typing import Optional

class BaseStorage(ABC):
    @abstractmethod
    async def save_chunk(self, upload_session_id: str, chunk_index: int, chunk_data: bytes) -> str:
        pass

    @abstractmethod
    async def chunk_exists(self, upload_session_id: str, chunk_index: int) -> bool:
        pass

    @abstractmethod
    async def merge_chunks(self, upload_session_id: str, total_chunks: int, merged_file_path: str) -> dict:
        """Concatenate chunks in index order; returns size and content hash of the result."""

    @abstractmethod
    async def upload_file(self, file_path: str, object_key: str) -> str:
        """Publish an assembled file and return its location."""

    @abstractmethod
    async def delete_file(self, file_path_or_key: str, storage_type: Optional[str] = None) -> None:
        pass

    @abstractmethod
    async def cleanup_session(self, upload_session_id: str) -> Optional[dict]:
        pass

    @abstractmethod
    def local_path(self, location: str) -> Optional[str]:
        """Filesystem path of a published file, or None when it lives remotely."""
