import hashlib
import os

from conftest import bearer, make_token, new_upload_id

from resumable_upload.core.config import settings
from resumable_upload.services.upload_service import upload_service

CHUNK_SIZE = 1000
DATA = os.urandom(2500)


def _init(client, headers, upload_id, data=DATA, content_hash=None, **overrides):
    body = {
        "upload_id": upload_id,
        "file_name": "book.epub",
        "file_size": len(data),
        "content_hash": content_hash or hashlib.sha1(data).hexdigest(),
        "total_chunks": (len(data) + CHUNK_SIZE - 1) // CHUNK_SIZE,
        "chunk_size": CHUNK_SIZE,
    }
    body.update(overrides)
    return client.post("/upload/init", json=body, headers=headers)


def _put(client, headers, upload_id, index, data=DATA, total_chunks=3, payload=None):
    if payload is None:
        payload = data[index * CHUNK_SIZE:(index + 1) * CHUNK_SIZE]
    return client.put(
        f"/upload/{upload_id}/chunks/{index}",
        data={"total_chunks": str(total_chunks)},
        files={"chunk": ("chunk.bin", payload, "application/octet-stream")},
        headers=headers,
    )


def _complete(client, headers, upload_id, data=DATA, content_hash=None, metadata=None):
    return client.post(
        f"/upload/{upload_id}/complete",
        json={"content_hash": content_hash or hashlib.sha1(data).hexdigest(), "metadata": metadata or {}},
        headers=headers,
    )


def _status(client, headers, upload_id):
    return client.get(f"/upload/{upload_id}/status", headers=headers)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_missing_or_invalid_token(client):
    upload_id = new_upload_id()
    assert _init(client, {}, upload_id).status_code in (401, 403)
    assert _init(client, {"Authorization": "Bearer not-a-jwt"}, upload_id).status_code == 401
    wrong_audience = {"Authorization": f"Bearer {make_token(aud='someone-else')}"}
    assert _init(client, wrong_audience, upload_id).status_code == 401


def test_token_without_subject_is_forbidden(client):
    headers = {"Authorization": f"Bearer {make_token(sub='')}"}
    assert _init(client, headers, new_upload_id()).status_code == 403


def test_full_upload_flow(client, auth_headers):
    upload_id = new_upload_id()
    response = _init(client, auth_headers, upload_id)
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "pending"
    assert response.json()["data"]["total_chunks"] == 3

    # Chunks may arrive in any order
    for index in (2, 0, 1):
        response = _put(client, auth_headers, upload_id, index)
        assert response.status_code == 200
        assert response.json()["data"]["chunk_index"] == index

    status = _status(client, auth_headers, upload_id).json()["data"]
    assert status["completed_chunks"] == [0, 1, 2]
    assert status["status"] == "uploading"
    assert status["progress"] == 100.0

    response = _complete(client, auth_headers, upload_id, metadata={"title": "Book"})
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["file_size"] == len(DATA)
    assert data["content_hash"] == hashlib.sha1(DATA).hexdigest()

    status = _status(client, auth_headers, upload_id).json()["data"]
    assert status["status"] == "completed"
    assert status["archive_id"] == data["archive_id"]

    record = client.get(f"/files/{data['archive_id']}", headers=auth_headers).json()["data"]
    assert record["metadata"]["title"] == "Book"
    assert record["session_id"] == upload_id

    download = client.get(f"/files/{data['archive_id']}/download", headers=auth_headers)
    assert download.status_code == 200
    assert download.content == DATA

    # Chunk staging is gone once the artifact exists
    assert not os.path.exists(os.path.join(settings.LOCAL_TEMP_CHUNK_PATH, upload_id))


def test_init_is_idempotent_and_conflicts_on_mismatch(client, auth_headers):
    upload_id = new_upload_id()
    assert _init(client, auth_headers, upload_id).status_code == 200
    assert _put(client, auth_headers, upload_id, 1).status_code == 200

    again = _init(client, auth_headers, upload_id)
    assert again.status_code == 200
    assert again.json()["data"]["completed_chunks"] == [1]

    conflict = _init(client, auth_headers, upload_id, content_hash="f" * 40)
    assert conflict.status_code == 409
    assert conflict.json()["detail"]["error"] == "conflict"


def test_init_validation(client, auth_headers):
    assert _init(client, auth_headers, new_upload_id(), total_chunks=5).status_code == 400
    too_large = _init(
        client, auth_headers, new_upload_id(),
        file_size=settings.MAX_FILE_SIZE + 1, total_chunks=1, chunk_size=settings.MAX_FILE_SIZE + 1,
    )
    assert too_large.status_code == 413
    assert _init(client, auth_headers, "bad/id").status_code == 422


def test_put_chunk_is_idempotent(client, auth_headers):
    upload_id = new_upload_id()
    _init(client, auth_headers, upload_id)
    first = _put(client, auth_headers, upload_id, 0)
    second = _put(client, auth_headers, upload_id, 0)
    assert first.status_code == second.status_code == 200
    assert second.json()["data"]["completed_count"] == 1

    # An accepted chunk is never overwritten
    third = _put(client, auth_headers, upload_id, 0, payload=b"x" * CHUNK_SIZE)
    assert third.status_code == 200
    assert _status(client, auth_headers, upload_id).json()["data"]["completed_chunks"] == [0]


def test_put_chunk_rejections(client, auth_headers):
    upload_id = new_upload_id()
    _init(client, auth_headers, upload_id)

    out_of_range = _put(client, auth_headers, upload_id, 3, payload=b"x")
    assert out_of_range.status_code == 400
    assert out_of_range.json()["detail"]["error"] == "rejected"

    wrong_total = _put(client, auth_headers, upload_id, 0, total_chunks=4)
    assert wrong_total.status_code == 400

    wrong_length = _put(client, auth_headers, upload_id, 2, payload=b"x" * CHUNK_SIZE)
    assert wrong_length.status_code == 400

    assert _put(client, auth_headers, new_upload_id(), 0).status_code == 404
    assert _status(client, auth_headers, upload_id).json()["data"]["completed_chunks"] == []


def test_complete_with_missing_chunks(client, auth_headers):
    upload_id = new_upload_id()
    _init(client, auth_headers, upload_id)
    _put(client, auth_headers, upload_id, 0)
    _put(client, auth_headers, upload_id, 2)

    response = _complete(client, auth_headers, upload_id)
    assert response.status_code == 409
    assert response.json()["detail"]["error"] == "missing_chunks"
    assert response.json()["detail"]["missing"] == [1]


def test_complete_is_idempotent(client, auth_headers):
    upload_id = new_upload_id()
    _init(client, auth_headers, upload_id)
    for index in range(3):
        _put(client, auth_headers, upload_id, index)

    first = _complete(client, auth_headers, upload_id)
    second = _complete(client, auth_headers, upload_id)
    assert first.status_code == second.status_code == 200
    assert first.json()["data"]["archive_id"] == second.json()["data"]["archive_id"]

    archives = [
        f for f in client.get("/files/", headers=auth_headers).json()["files"]
        if f["session_id"] == upload_id
    ]
    assert len(archives) == 1


def test_integrity_failure_registers_nothing(client):
    headers = bearer("integrity-user")
    upload_id = new_upload_id()
    claimed_hash = hashlib.sha1(b"some other content").hexdigest()
    _init(client, headers, upload_id, content_hash=claimed_hash)
    for index in range(3):
        assert _put(client, headers, upload_id, index).status_code == 200

    response = _complete(client, headers, upload_id, content_hash=claimed_hash)
    assert response.status_code == 422
    detail = response.json()["detail"]
    assert detail["error"] == "integrity"
    assert detail["actual"] == hashlib.sha1(DATA).hexdigest()

    status = _status(client, headers, upload_id).json()["data"]
    assert status["status"] == "failed"
    assert status["archive_id"] is None
    assert client.get("/files/", headers=headers).json()["files"] == []


def test_complete_can_be_retried_after_integrity_failure(client, auth_headers):
    upload_id = new_upload_id()
    _init(client, auth_headers, upload_id)
    for index in range(3):
        _put(client, auth_headers, upload_id, index)
    response = _complete(client, auth_headers, upload_id, content_hash="0" * 40)
    assert response.status_code == 422
    assert _status(client, auth_headers, upload_id).json()["data"]["status"] == "failed"

    # Chunks are kept, so a retry with the right digest succeeds
    response = _complete(client, auth_headers, upload_id)
    assert response.status_code == 200
    assert _status(client, auth_headers, upload_id).json()["data"]["status"] == "completed"


def test_fallback_key_skips_hash_verification(client, auth_headers):
    upload_id = new_upload_id()
    key = "book.epub_1700000000000"
    _init(client, auth_headers, upload_id, content_hash=key)
    for index in range(3):
        _put(client, auth_headers, upload_id, index)
    response = _complete(client, auth_headers, upload_id, content_hash=key)
    assert response.status_code == 200
    assert response.json()["data"]["content_hash"] == hashlib.sha1(DATA).hexdigest()


def test_non_digest_hash_cannot_bypass_verification(client, auth_headers):
    upload_id = new_upload_id()
    _init(client, auth_headers, upload_id)
    for index in range(3):
        _put(client, auth_headers, upload_id, index)

    response = _complete(client, auth_headers, upload_id, content_hash="not-the-digest")
    assert response.status_code == 422
    assert response.json()["detail"]["error"] == "integrity"
    status = _status(client, auth_headers, upload_id).json()["data"]
    assert status["status"] == "failed"
    assert status["archive_id"] is None


def test_fallback_key_must_match_the_session_key(client, auth_headers):
    upload_id = new_upload_id()
    _init(client, auth_headers, upload_id, content_hash="book.epub_1700000000000")
    for index in range(3):
        _put(client, auth_headers, upload_id, index)

    response = _complete(client, auth_headers, upload_id, content_hash="book.epub_1800000000000")
    assert response.status_code == 422
    assert response.json()["detail"]["error"] == "integrity"


def test_lost_staged_chunk_is_requested_again(client, auth_headers):
    upload_id = new_upload_id()
    _init(client, auth_headers, upload_id)
    for index in range(3):
        _put(client, auth_headers, upload_id, index)
    os.remove(os.path.join(settings.LOCAL_TEMP_CHUNK_PATH, upload_id, "chunk_1"))

    response = _complete(client, auth_headers, upload_id)
    assert response.status_code == 409
    assert response.json()["detail"]["error"] == "missing_chunks"
    assert response.json()["detail"]["missing"] == [1]
    status = _status(client, auth_headers, upload_id).json()["data"]
    assert status["status"] == "failed"
    assert status["completed_chunks"] == [0, 2]

    assert _put(client, auth_headers, upload_id, 1).status_code == 200
    assert _status(client, auth_headers, upload_id).json()["data"]["status"] == "uploading"
    assert _complete(client, auth_headers, upload_id).status_code == 200


def test_locks_are_dropped_once_a_session_is_finished(client, auth_headers):
    completed, cancelled = new_upload_id(), new_upload_id()
    for upload_id in (completed, cancelled):
        _init(client, auth_headers, upload_id)
        _put(client, auth_headers, upload_id, 0)
    for index in (1, 2):
        _put(client, auth_headers, completed, index)

    assert _complete(client, auth_headers, completed).status_code == 200
    assert client.delete(f"/upload/{cancelled}", headers=auth_headers).status_code == 200

    for upload_id in (completed, cancelled):
        assert upload_id not in upload_service._finalize_locks
        assert upload_id not in upload_service.store._locks



def test_empty_file_upload(client, auth_headers):
    upload_id = new_upload_id()
    response = _init(client, auth_headers, upload_id, data=b"")
    assert response.json()["data"]["total_chunks"] == 0
    response = _complete(client, auth_headers, upload_id, data=b"")
    assert response.status_code == 200
    assert response.json()["data"]["file_size"] == 0


def test_sessions_are_private_to_their_owner(client, auth_headers):
    upload_id = new_upload_id()
    _init(client, auth_headers, upload_id)
    other = bearer("user-2")
    assert _status(client, other, upload_id).status_code == 404
    assert _put(client, other, upload_id, 0).status_code == 404
    assert client.delete(f"/upload/{upload_id}", headers=other).status_code == 404


def test_cancel_removes_session(client, auth_headers):
    upload_id = new_upload_id()
    _init(client, auth_headers, upload_id)
    _put(client, auth_headers, upload_id, 0)
    assert client.delete(f"/upload/{upload_id}", headers=auth_headers).status_code == 200
    assert _status(client, auth_headers, upload_id).status_code == 404
    assert not os.path.exists(os.path.join(settings.LOCAL_TEMP_CHUNK_PATH, upload_id))


def test_list_sessions(client):
    headers = bearer("listing-user")
    pending, done = new_upload_id(), new_upload_id()
    _init(client, headers, pending)
    _init(client, headers, done, data=b"")
    _complete(client, headers, done, data=b"")

    all_ids = {s["upload_id"] for s in client.get("/upload/sessions", headers=headers).json()["sessions"]}
    assert all_ids == {pending, done}
    completed = client.get("/upload/sessions", params={"session_status": "completed"}, headers=headers)
    assert [s["upload_id"] for s in completed.json()["sessions"]] == [done]
