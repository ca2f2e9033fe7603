"""后台清理测试：成功清理、指数退避重试与超过上限后丢弃。"""

import time
from datetime import timedelta

import redis

from app.packages.upload.core.config import get_settings
from app.packages.upload.core.timezone import now as tz_now
from app.packages.upload.crud.upload_session import upload_session_crud
from app.packages.upload.db import session as db_session
from app.packages.upload.services.chunk_recorder import chunk_recorder
from app.packages.upload.services.cleanup_worker import (
    CleanupJob,
    CleanupWorker,
    InMemoryCleanupQueue,
    build_cleanup_queue,
)


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.current = start

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


def test_drain_purges_session_and_ledger(db_session_fixture, make_upload, cleanup_worker):
    upload = make_upload(total_size_bytes=2 * 1024)
    chunk_recorder.record_chunk(db_session_fixture, upload_id=upload["uploadId"], chunk_index=0)

    cleanup_worker.enqueue(upload["uploadId"])
    processed = cleanup_worker.drain()

    assert processed == 1
    assert cleanup_worker.queue.size() == 0
    db_session_fixture.expire_all()
    assert upload_session_crud.get(db_session_fixture, upload["uploadId"]) is None
    assert chunk_recorder.has_chunk(db_session_fixture, upload_id=upload["uploadId"], chunk_index=0) is False


def test_cleanup_of_missing_session_succeeds(cleanup_worker):
    assert cleanup_worker.process(CleanupJob(upload_id="already-gone")) is True
    assert cleanup_worker.queue.size() == 0


def test_failed_cleanup_retries_with_backoff_then_drops():
    clock = FakeClock()
    calls = []

    def failing_factory():
        calls.append(clock())
        raise RuntimeError("database unavailable")

    worker = CleanupWorker(
        InMemoryCleanupQueue(),
        session_factory=failing_factory,
        max_attempts=3,
        retry_base_seconds=2.0,
        clock=clock,
    )
    worker.enqueue("upload-1")

    assert worker.drain() == 1
    assert worker.queue.size() == 1

    # 退避未到期前不会重试
    clock.advance(1.5)
    assert worker.drain() == 0

    clock.advance(0.5)
    assert worker.drain() == 1
    assert worker.queue.size() == 1

    clock.advance(3.5)
    assert worker.drain() == 0
    clock.advance(0.5)
    assert worker.drain() == 1

    assert worker.queue.size() == 0
    assert calls == [1000.0, 1002.0, 1006.0]


def test_sweep_removes_expired_sessions(db_session_fixture, make_upload, cleanup_worker):
    upload = make_upload()
    session = upload_session_crud.get(db_session_fixture, upload["uploadId"])
    session.expires_at = tz_now() - timedelta(hours=1)
    db_session_fixture.commit()

    assert cleanup_worker.sweep() == 1
    db_session_fixture.expire_all()
    assert upload_session_crud.get(db_session_fixture, upload["uploadId"]) is None


def test_default_queue_backend_is_in_memory():
    assert isinstance(build_cleanup_queue(get_settings()), InMemoryCleanupQueue)


def test_cleanup_job_serialization():
    job = CleanupJob(upload_id="upload-1", attempts=2, not_before=12.5)

    assert CleanupJob.loads(job.dumps()) == job


class _FlakyQueue(InMemoryCleanupQueue):
    """前几次取任务时模拟 Redis 连接中断。"""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    def pop_due(self, now: float):
        if self.failures > 0:
            self.failures -= 1
            raise redis.ConnectionError("connection reset by peer")
        return super().pop_due(now)


class _UnwritableQueue(InMemoryCleanupQueue):
    def push(self, job: CleanupJob) -> None:
        raise redis.ConnectionError("connection reset by peer")


def test_worker_thread_survives_queue_errors(make_upload):
    upload = make_upload()
    queue = _FlakyQueue(failures=3)
    worker = CleanupWorker(queue, poll_interval_seconds=0.01, sweep_interval_seconds=3600)
    queue.push(CleanupJob(upload_id=upload["uploadId"]))

    worker.start()
    try:
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline:
            with db_session.SessionLocal() as db:
                if upload_session_crud.get(db, upload["uploadId"]) is None:
                    break
            time.sleep(0.02)
        assert worker.is_running
    finally:
        worker.stop()

    assert queue.failures == 0
    assert queue.size() == 0
    with db_session.SessionLocal() as db:
        assert upload_session_crud.get(db, upload["uploadId"]) is None


def test_requeue_failure_is_logged_not_raised():
    def failing_factory():
        raise RuntimeError("database unavailable")

    worker = CleanupWorker(_UnwritableQueue(), session_factory=failing_factory, max_attempts=3)

    assert worker.process(CleanupJob(upload_id="upload-1")) is False
    assert worker.queue.size() == 0
