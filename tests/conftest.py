import os
import tempfile
import time
import uuid

# Settings are read once at import time, so the environment goes first
_ROOT = tempfile.mkdtemp(prefix="resumable_upload_tests_")
JWT_SECRET = "test-secret-key-with-enough-bytes-for-hs256"
JWT_ISSUER = "main-service"
JWT_AUDIENCE = "upload-service"

os.environ["ENV"] = "test"
os.environ["MAIN_SERVICE_JWT_PUBLIC_KEY"] = JWT_SECRET
os.environ["JWT_ALGORITHM"] = "HS256"
os.environ["EXPECTED_JWT_ISSUER"] = JWT_ISSUER
os.environ["EXPECTED_JWT_AUDIENCE"] = JWT_AUDIENCE
os.environ["STORAGE_BACKEND"] = "local"
os.environ["CATALOG_NOTIFY_URL"] = ""
os.environ["LOCAL_TEMP_CHUNK_PATH"] = os.path.join(_ROOT, "chunks")
os.environ["SESSION_STORE_PATH"] = os.path.join(_ROOT, "sessions")
os.environ["CATALOG_PATH"] = os.path.join(_ROOT, "catalog")
os.environ["PERSISTENT_LOCAL_STORAGE_PATH"] = os.path.join(_ROOT, "files")

import httpx
import jwt
import pytest
from fastapi.testclient import TestClient

from resumable_upload.main import app


def make_token(sub="user-1", **claims):
    payload = {
        "sub": sub,
        "iss": JWT_ISSUER,
        "aud": JWT_AUDIENCE,
        "exp": int(time.time()) + 3600,
    }
    payload.update(claims)
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def bearer(sub="user-1"):
    return {"Authorization": f"Bearer {make_token(sub)}"}


def new_upload_id():
    return uuid.uuid4().hex


class FaultInjectingTransport(httpx.AsyncBaseTransport):
    """
    Routes requests to the ASGI app and fails chosen chunk PUTs with a 503
    before they reach it. `fail_chunks` maps chunk index -> failures left.
    """

    def __init__(self, fail_chunks=None):
        self.inner = httpx.ASGITransport(app=app)
        self.fail_chunks = dict(fail_chunks or {})
        self.requests = []

    def chunk_puts(self):
        return [path for method, path in self.requests if method == "PUT"]

    async def handle_async_request(self, request):
        self.requests.append((request.method, request.url.path))
        if request.method == "PUT" and "/chunks/" in request.url.path:
            index = int(request.url.path.rsplit("/", 1)[-1])
            if self.fail_chunks.get(index, 0) > 0:
                self.fail_chunks[index] -= 1
                return httpx.Response(
                    503, json={"detail": {"error": "unavailable", "message": "injected failure"}}
                )
        return await self.inner.handle_async_request(request)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="session")
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def auth_headers():
    return bearer("user-1")
