"""HTTP transport for the initiating side of an upload."""
import logging
from typing import Any, Dict, Optional

import httpx

from resumable_upload.core.exceptions import (
    ChunkRejected, IntegrityError, MissingChunks, SessionConflict, SessionNotFound,
    TransientTransportError, UploadError
)

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {408, 425, 429}


class ChunkTransport:
    def __init__(
        self,
        base_url: str = "",
        token: Optional[str] = None,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.timeout = timeout
        self.headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url)

    async def __aenter__(self) -> "ChunkTransport":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _error_for(self, response: httpx.Response, upload_id: str, chunk_index: Optional[int]) -> UploadError:
        try:
            body = response.json()
            detail = body.get("detail") if isinstance(body, dict) else body
        except ValueError:
            detail = response.text
        code = detail.get("error") if isinstance(detail, dict) else None
        message = detail.get("message", str(detail)) if isinstance(detail, dict) else str(detail)

        if response.status_code >= 500 or response.status_code in RETRYABLE_STATUS_CODES:
            return TransientTransportError(
                f"HTTP {response.status_code}: {message}", status_code=response.status_code
            )
        if code == "missing_chunks":
            return MissingChunks(upload_id, detail.get("missing", []))
        if code == "integrity":
            return IntegrityError(upload_id, detail.get("expected", ""), detail.get("actual", ""))
        if response.status_code == 404:
            return SessionNotFound(upload_id)
        if response.status_code == 409:
            return SessionConflict(upload_id, message)
        return ChunkRejected(chunk_index, message, status_code=response.status_code)

    async def _request(
        self,
        method: str,
        path: str,
        upload_id: str,
        chunk_index: Optional[int] = None,
        timeout: Optional[float] = None,
        expect_data: bool = True,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        try:
            response = await self._client.request(
                method, path, headers=self.headers,
                timeout=self.timeout if timeout is None else timeout,
                **kwargs
            )
        except httpx.TransportError as e:
            raise TransientTransportError(f"{method} {path} failed: {e!r}")

        if response.status_code >= 400:
            error = self._error_for(response, upload_id, chunk_index)
            logger.debug(f"{method} {path} -> {response.status_code}: {error}")
            raise error

        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict) or ("data" not in body and expect_data):
            raise ChunkRejected(
                chunk_index, f"malformed response to {method} {path}", status_code=response.status_code
            )
        return body

    async def init_session(
        self,
        upload_id: str,
        file_name: str,
        file_size: int,
        content_hash: str,
        total_chunks: int,
        chunk_size: int,
    ) -> Dict[str, Any]:
        body = await self._request(
            "POST",
            "/upload/init",
            upload_id,
            json={
                "upload_id": upload_id,
                "file_name": file_name,
                "file_size": file_size,
                "content_hash": content_hash,
                "total_chunks": total_chunks,
                "chunk_size": chunk_size,
            },
        )
        return body["data"]

    async def send_chunk(
        self,
        upload_id: str,
        chunk_index: int,
        total_chunks: int,
        chunk_data: bytes,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Send one chunk. Re-sending an accepted chunk is acknowledged as success."""
        body = await self._request(
            "PUT",
            f"/upload/{upload_id}/chunks/{chunk_index}",
            upload_id,
            chunk_index,
            timeout=timeout,
            data={"total_chunks": str(total_chunks)},
            files={"chunk": ("chunk.bin", chunk_data, "application/octet-stream")},
        )
        return body["data"]

    async def get_status(self, upload_id: str) -> Dict[str, Any]:
        body = await self._request("GET", f"/upload/{upload_id}/status", upload_id)
        return body["data"]

    async def complete(self, upload_id: str, content_hash: str, metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        body = await self._request(
            "POST",
            f"/upload/{upload_id}/complete",
            upload_id,
            json={"content_hash": content_hash, "metadata": metadata or {}},
        )
        return body["data"]

    async def cancel(self, upload_id: str) -> None:
        await self._request("DELETE", f"/upload/{upload_id}", upload_id, expect_data=False)
