"""测试夹具：为 pytest 提供数据库、存储节点替身与客户端的共享配置。"""

import base64
import hashlib
import json
import math
import os
import tempfile
from typing import Dict, Generator, List, Optional

TEST_DB_PATH = os.path.join(os.path.dirname(__file__), "test.db")
TEST_DATABASE_URL = f"sqlite:///{TEST_DB_PATH}"

# 引擎在导入时创建，必须先写好环境变量再导入应用
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["CLEANUP_WORKER_ENABLED"] = "false"
os.environ["JWT_SECRET_KEY"] = "test-secret-key"
os.environ["LOG_DIR"] = os.path.join(tempfile.gettempdir(), "chunked-upload-test-logs")
os.environ["TIMEZONE"] = "UTC"

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402

from app.main import app  # noqa: E402
from app.packages.upload.core.config import get_settings  # noqa: E402
from app.packages.upload.core.dependencies import get_cleanup, get_db, get_storage_node  # noqa: E402
from app.packages.upload.core.security import create_access_token  # noqa: E402
from app.packages.upload.db import session as db_session  # noqa: E402
from app.packages.upload.models.base import Base  # noqa: E402
from app.packages.upload.services.cleanup_worker import CleanupWorker, InMemoryCleanupQueue  # noqa: E402
from app.packages.upload.services.session_service import upload_session_service  # noqa: E402
from app.packages.upload.services.storage_client import StorageNodeClient  # noqa: E402

STORAGE_BASE_URL = "http://storage-node.test"


class FakeStorageNode:
    """按偏移写入的存储节点替身，行为与真实节点的接口约定一致。"""

    def __init__(self) -> None:
        self.files: Dict[str, bytearray] = {}
        self.append_calls: List[dict] = []
        self.fail_appends = 0
        self.fail_status = 503
        self.healthy = True

    def handle(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/health":
            return httpx.Response(200 if self.healthy else 503, json={"ok": self.healthy})

        payload = json.loads(request.content)
        key = f"{payload['userId']}/{payload['fileName']}"

        if request.url.path == "/chunk-append":
            self.append_calls.append({k: v for k, v in payload.items() if k != "data"})
            if self.fail_appends > 0:
                self.fail_appends -= 1
                return httpx.Response(self.fail_status, json={"error": "unavailable"})
            data = base64.b64decode(payload["data"])
            if hashlib.sha256(data).hexdigest() != payload["sha256"]:
                return httpx.Response(400, json={"error": "checksum mismatch"})
            buffer = self.files.setdefault(key, bytearray())
            offset = payload["offset"]
            end = offset + len(data)
            if len(buffer) < end:
                buffer.extend(b"\0" * (end - len(buffer)))
            buffer[offset:end] = data
            return httpx.Response(200, json={"currentSize": len(buffer)})

        if request.url.path == "/verify-file":
            if key not in self.files:
                return httpx.Response(404, json={"exists": False})
            return httpx.Response(200, json={"exists": True, "size": len(self.files[key])})

        return httpx.Response(404, json={"error": "unknown route"})

    def size_of(self, owner_id: str, storage_file_name: str) -> int:
        return len(self.files.get(f"{owner_id}/{storage_file_name}", b""))


@pytest.fixture(scope="session", autouse=True)
def setup_test_database() -> Generator[None, None, None]:
    """创建隔离的 SQLite 测试数据库，并在会话结束后清理。"""
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)

    engine = db_session.build_engine(TEST_DATABASE_URL)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    db_session.engine = engine
    db_session.SessionLocal = TestingSessionLocal

    Base.metadata.create_all(bind=engine)
    yield

    engine.dispose()
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)


@pytest.fixture(autouse=True)
def clean_tables() -> Generator[None, None, None]:
    """每个用例结束后清空所有表，保证用例之间互不影响。"""
    yield
    with db_session.engine.begin() as connection:
        for table in reversed(Base.metadata.sorted_tables):
            connection.execute(table.delete())


@pytest.fixture()
def db_session_fixture() -> Generator[Session, None, None]:
    """提供给测试用例使用的数据库会话。"""
    session = db_session.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def storage_node() -> FakeStorageNode:
    return FakeStorageNode()


@pytest.fixture()
def storage_client(storage_node: FakeStorageNode) -> Generator[StorageNodeClient, None, None]:
    client = StorageNodeClient(
        STORAGE_BASE_URL,
        "test-api-key",
        timeout=5.0,
        transport=httpx.MockTransport(storage_node.handle),
    )
    yield client
    client.close()


@pytest.fixture()
def cleanup_worker() -> CleanupWorker:
    """不启动线程的清理器，用例里通过 ``drain()`` 同步执行任务。"""
    return CleanupWorker(InMemoryCleanupQueue(), retry_base_seconds=0.0)


@pytest.fixture()
def client(storage_client: StorageNodeClient, cleanup_worker: CleanupWorker):
    """构建 FastAPI TestClient，并注入测试专用的数据库、存储节点与清理器依赖。"""
    def override_get_db() -> Generator[Session, None, None]:
        session = db_session.SessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_storage_node] = lambda: storage_client
    app.dependency_overrides[get_cleanup] = lambda: cleanup_worker

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def _bearer(user_id: str) -> Dict[str, str]:
    token = create_access_token({"sub": user_id})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def auth_headers() -> Dict[str, str]:
    return _bearer("user-1")


@pytest.fixture()
def other_auth_headers() -> Dict[str, str]:
    return _bearer("user-2")


@pytest.fixture()
def small_chunk_size(monkeypatch) -> int:
    """把分片大小调小到 1 KiB，只影响之后创建的会话。"""
    monkeypatch.setattr(get_settings(), "chunk_size_bytes", 1024)
    return 1024


@pytest.fixture()
def make_upload(db_session_fixture: Session, small_chunk_size: int):
    """在服务层直接创建上传会话，返回 ``init`` 接口的 ``data``。"""
    def _make(
        *,
        owner_id: str = "user-1",
        file_name: str = "notes.txt",
        total_size_bytes: int = 10 * 1024,
        total_chunks: Optional[int] = None,
    ) -> dict:
        if total_chunks is None:
            total_chunks = math.ceil(total_size_bytes / small_chunk_size)
        response = upload_session_service.init_upload(
            db_session_fixture,
            owner_id=owner_id,
            file_name=file_name,
            mime_type="text/plain",
            total_size_bytes=total_size_bytes,
            total_chunks=total_chunks,
        )
        return response["data"]

    return _make
