"""分片上传接口的集成测试用例。"""

from datetime import timedelta

from fastapi.testclient import TestClient

from app.packages.upload.core.timezone import now as tz_now
from app.packages.upload.crud.file_record import file_record_crud
from app.packages.upload.crud.upload_session import upload_session_crud

MIB = 1024 * 1024


def _init(client: TestClient, headers, *, file_name="movie.mp4", total_size=52428800, total_chunks=10):
    response = client.post(
        "/api/v1/uploads/init",
        json={
            "fileName": file_name,
            "mimeType": "video/mp4",
            "totalSizeBytes": total_size,
            "totalChunks": total_chunks,
        },
        headers=headers,
    )
    assert response.status_code == 200, response.text
    return response.json()["data"]


def _send_chunk(client: TestClient, headers, upload, index: int, data: bytes):
    return client.post(
        "/api/v1/uploads/chunk",
        data={
            "uploadId": upload["uploadId"],
            "chunkIndex": str(index),
            "storageFileName": upload["storageFileName"],
        },
        files={"chunk": ("blob", data, "application/octet-stream")},
        headers=headers,
    )


def test_full_upload_with_duplicate_chunk(client: TestClient, auth_headers, storage_node, db_session_fixture):
    """50 MiB 文件按 5 MiB 分 10 片上传，重复的分片不重复计数。"""
    upload = _init(client, auth_headers)
    assert upload["chunkSizeBytes"] == 5 * MIB
    assert upload["totalChunks"] == 10

    first = _send_chunk(client, auth_headers, upload, 3, bytes([3]) * (5 * MIB))
    assert first.status_code == 200
    assert first.json()["data"]["skipped"] is False
    assert first.json()["data"]["uploadedCount"] == 1

    duplicate = _send_chunk(client, auth_headers, upload, 3, bytes([3]) * (5 * MIB))
    assert duplicate.status_code == 200
    assert duplicate.json()["data"]["skipped"] is True
    assert duplicate.json()["data"]["uploadedCount"] == 1

    last = None
    for index in (0, 1, 2, 4, 5, 6, 7, 8, 9):
        last = _send_chunk(client, auth_headers, upload, index, bytes([index]) * (5 * MIB))
        assert last.status_code == 200, last.text
    progress = last.json()["data"]
    assert progress["progressPct"] == 100
    assert progress["isComplete"] is True

    status_response = client.get(
        "/api/v1/uploads/status", params={"uploadId": upload["uploadId"]}, headers=auth_headers
    )
    assert status_response.json()["data"]["state"] == "complete"

    finalize = client.post(
        "/api/v1/uploads/finalize",
        json={"uploadId": upload["uploadId"], "storageFileName": upload["storageFileName"]},
        headers=auth_headers,
    )
    assert finalize.status_code == 200, finalize.text
    payload = finalize.json()["data"]
    assert payload["file"]["sizeBytes"] == 52428800
    assert payload["file"]["name"] == "movie.mp4"
    assert payload["file"]["mimeType"] == "video/mp4"
    assert payload["file"]["storagePath"] == f"user-1/{upload['storageFileName']}"
    assert storage_node.size_of("user-1", upload["storageFileName"]) == 52428800
    assert len(storage_node.append_calls) == 10
    assert file_record_crud.count_by_upload_id(db_session_fixture, upload["uploadId"]) == 1


def test_finalize_with_missing_chunks(client: TestClient, auth_headers, small_chunk_size, db_session_fixture):
    """10 片中只上传 7 片时拒绝收尾，并返回缺失的下标。"""
    upload = _init(client, auth_headers, file_name="data.bin", total_size=10 * small_chunk_size)
    for index in (0, 1, 3, 4, 6, 7, 9):
        response = _send_chunk(client, auth_headers, upload, index, b"d" * small_chunk_size)
        assert response.status_code == 200

    response = client.post(
        "/api/v1/uploads/finalize",
        json={"uploadId": upload["uploadId"], "storageFileName": upload["storageFileName"]},
        headers=auth_headers,
    )

    assert response.status_code == 400
    payload = response.json()
    assert payload["code"] == 400
    assert payload["data"]["missingChunks"] == [2, 5, 8]
    assert payload["data"]["uploadedCount"] == 7
    assert file_record_crud.get_by_upload_id(db_session_fixture, upload["uploadId"]) is None


def test_status_lists_uploaded_indices(client: TestClient, auth_headers, small_chunk_size):
    upload = _init(client, auth_headers, file_name="a.txt", total_size=3 * small_chunk_size, total_chunks=3)
    _send_chunk(client, auth_headers, upload, 1, b"s" * small_chunk_size)

    response = client.get("/api/v1/uploads/status", params={"uploadId": upload["uploadId"]}, headers=auth_headers)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["state"] == "uploading"
    assert data["uploadedIndices"] == [1]
    assert data["fileName"] == "a.txt"


def test_storage_failure_returns_bad_gateway(client: TestClient, auth_headers, storage_node, small_chunk_size):
    upload = _init(client, auth_headers, file_name="a.txt", total_size=small_chunk_size, total_chunks=1)
    storage_node.fail_appends = 1

    response = _send_chunk(client, auth_headers, upload, 0, b"f" * small_chunk_size)

    assert response.status_code == 502
    assert response.json()["data"]["retryable"] is True
    status_data = client.get(
        "/api/v1/uploads/status", params={"uploadId": upload["uploadId"]}, headers=auth_headers
    ).json()["data"]
    assert status_data["uploadedCount"] == 0

    retry = _send_chunk(client, auth_headers, upload, 0, b"f" * small_chunk_size)
    assert retry.status_code == 200
    assert retry.json()["data"]["isComplete"] is True


def test_init_requires_fields(client: TestClient, auth_headers):
    response = client.post("/api/v1/uploads/init", json={"mimeType": "text/plain"}, headers=auth_headers)

    assert response.status_code == 400
    payload = response.json()
    assert payload["code"] == 400
    assert "fileName" in payload["data"]


def test_chunk_requires_form_fields(client: TestClient, auth_headers):
    response = client.post("/api/v1/uploads/chunk", data={"chunkIndex": "0"}, headers=auth_headers)

    assert response.status_code == 400
    assert response.json()["msg"] == "缺少分片数据"


def test_requests_without_token_are_rejected(client: TestClient):
    response = client.post("/api/v1/uploads/init", json={"fileName": "a.txt"})

    assert response.status_code == 401
    payload = response.json()
    assert payload["code"] == 401
    assert payload["msg"] == "缺少认证信息"


def test_other_caller_cannot_touch_session(
    client: TestClient, auth_headers, other_auth_headers, small_chunk_size
):
    upload = _init(client, auth_headers, file_name="a.txt", total_size=small_chunk_size, total_chunks=1)

    status_response = client.get(
        "/api/v1/uploads/status", params={"uploadId": upload["uploadId"]}, headers=other_auth_headers
    )
    chunk_response = _send_chunk(client, other_auth_headers, upload, 0, b"o" * small_chunk_size)

    assert status_response.status_code == 403
    assert status_response.json()["data"] is None
    assert chunk_response.status_code == 403


def test_unknown_upload_returns_not_found(client: TestClient, auth_headers):
    response = client.get("/api/v1/uploads/status", params={"uploadId": "does-not-exist"}, headers=auth_headers)

    assert response.status_code == 404


def test_cancel_upload(client: TestClient, auth_headers, small_chunk_size):
    upload = _init(client, auth_headers, file_name="a.txt", total_size=2 * small_chunk_size, total_chunks=2)

    response = client.delete(f"/api/v1/uploads/{upload['uploadId']}", headers=auth_headers)
    assert response.status_code == 200
    assert response.json()["data"]["uploadId"] == upload["uploadId"]

    status_response = client.get(
        "/api/v1/uploads/status", params={"uploadId": upload["uploadId"]}, headers=auth_headers
    )
    assert status_response.status_code == 404


def test_health_reports_storage_node(client: TestClient, storage_node):
    response = client.get("/health", headers={"X-Request-ID": "probe-1"})
    assert response.status_code == 200
    assert response.json()["data"] == {"status": "healthy", "storageNode": "up"}
    assert response.headers["x-request-id"] == "probe-1"

    storage_node.healthy = False
    assert client.get("/health").json()["data"]["storageNode"] == "down"


def test_status_of_expired_upload_is_not_found(client: TestClient, auth_headers, small_chunk_size, db_session_fixture):
    upload = _init(client, auth_headers, file_name="a.txt", total_size=small_chunk_size, total_chunks=1)
    session = upload_session_crud.get(db_session_fixture, upload["uploadId"])
    session.expires_at = tz_now() - timedelta(seconds=1)
    db_session_fixture.commit()

    response = client.get("/api/v1/uploads/status", params={"uploadId": upload["uploadId"]}, headers=auth_headers)

    assert response.status_code == 404
    assert response.json()["code"] == 404
