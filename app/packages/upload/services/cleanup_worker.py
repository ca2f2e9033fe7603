"""后台清理：收尾成功后异步删除分片账本与会话。

清理与请求链路解耦：finalize 只负责把任务放入队列，由独立线程消费，
失败按指数退避重试，超过上限后记录错误并丢弃。清理失败不会回滚已提交的
文件记录，残留的会话最终也会被过期清扫带走。
"""

from __future__ import annotations

import json
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass
from typing import Callable, Deque, Optional

import redis
from sqlalchemy.orm import Session

from app.packages.upload.core.config import Settings, get_settings
from app.packages.upload.core.enums import CleanupQueueBackendEnum
from app.packages.upload.core.logger import logger
from app.packages.upload.db import session as db_session
from app.packages.upload.services.session_service import upload_session_service


@dataclass
class CleanupJob:
    upload_id: str
    attempts: int = 0
    not_before: float = 0.0

    def dumps(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def loads(cls, raw: str) -> "CleanupJob":
        return cls(**json.loads(raw))


class CleanupQueue:
    """清理队列接口：按 ``not_before`` 取出已到期的任务。"""

    def push(self, job: CleanupJob) -> None:  # pragma: no cover - interface definition
        raise NotImplementedError

    def pop_due(self, now: float) -> Optional[CleanupJob]:  # pragma: no cover
        raise NotImplementedError

    def size(self) -> int:  # pragma: no cover
        raise NotImplementedError


class InMemoryCleanupQueue(CleanupQueue):
    """进程内队列，用于单实例部署、测试或 Redis 不可用时的回退。"""

    def __init__(self) -> None:
        self._jobs: Deque[CleanupJob] = deque()
        self._lock = threading.Lock()

    def push(self, job: CleanupJob) -> None:
        with self._lock:
            self._jobs.append(job)

    def pop_due(self, now: float) -> Optional[CleanupJob]:
        with self._lock:
            for job in self._jobs:
                if job.not_before <= now:
                    self._jobs.remove(job)
                    return job
        return None

    def size(self) -> int:
        with self._lock:
            return len(self._jobs)


class RedisCleanupQueue(CleanupQueue):
    """基于 Redis 有序集合的队列，分值为最早可执行时间，多实例共享。"""

    def __init__(self, url: str, key: str = "chunked-upload:cleanup") -> None:
        self._client = redis.Redis.from_url(url, decode_responses=True)
        self._client.ping()
        self._key = key

    def push(self, job: CleanupJob) -> None:
        self._client.zadd(self._key, {job.dumps(): job.not_before})

    def pop_due(self, now: float) -> Optional[CleanupJob]:
        candidates = self._client.zrangebyscore(self._key, "-inf", now, start=0, num=1)
        for raw in candidates:
            # ZREM 成功的实例才拥有该任务，其余实例会拿到 0
            if self._client.zrem(self._key, raw):
                return CleanupJob.loads(raw)
        return None

    def size(self) -> int:
        return int(self._client.zcard(self._key))


def build_cleanup_queue(settings: Settings) -> CleanupQueue:
    backend = (settings.cleanup_queue_backend or "").strip().lower()
    if backend != CleanupQueueBackendEnum.REDIS.value:
        return InMemoryCleanupQueue()
    try:
        queue = RedisCleanupQueue(settings.redis_url)
        logger.info("Cleanup queue initialized with Redis at %s", settings.redis_url)
        return queue
    except redis.RedisError as exc:  # pragma: no cover - fallback path
        logger.warning("Redis unavailable (%s), falling back to in-memory cleanup queue", exc)
        return InMemoryCleanupQueue()


def _default_session_factory() -> Session:
    # 每次调用时读取模块属性，测试替换 SessionLocal 后同样生效
    return db_session.SessionLocal()


class CleanupWorker:
    def __init__(
        self,
        queue: CleanupQueue,
        *,
        session_factory: Callable[[], Session] = _default_session_factory,
        max_attempts: int = 5,
        retry_base_seconds: float = 2.0,
        poll_interval_seconds: float = 1.0,
        sweep_interval_seconds: float = 600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.queue = queue
        self._session_factory = session_factory
        self._max_attempts = max(1, max_attempts)
        self._retry_base_seconds = retry_base_seconds
        self._poll_interval_seconds = poll_interval_seconds
        self._sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_sweep = 0.0

    def enqueue(self, upload_id: str) -> None:
        self.queue.push(CleanupJob(upload_id=upload_id, not_before=self._clock()))
        logger.debug("Queued cleanup for upload %s", upload_id, extra={"upload_id": upload_id})

    def process(self, job: CleanupJob) -> bool:
        """执行一次清理；失败时按退避重新入队，返回本次是否成功。"""
        try:
            with self._session_factory() as db:
                existed = upload_session_service.purge_session(db, upload_id=job.upload_id)
        except Exception as exc:
            job.attempts += 1
            if job.attempts >= self._max_attempts:
                logger.error(
                    "Dropping cleanup for upload %s after %s attempts: %s",
                    job.upload_id,
                    job.attempts,
                    exc,
                    extra={"upload_id": job.upload_id},
                )
                return False
            delay = self._retry_base_seconds * (2 ** (job.attempts - 1))
            job.not_before = self._clock() + delay
            try:
                self.queue.push(job)
            except Exception:
                logger.exception(
                    "Failed to requeue cleanup for upload %s, leaving it to the expiry sweep",
                    job.upload_id,
                    extra={"upload_id": job.upload_id},
                )
                return False
            logger.warning(
                "Cleanup for upload %s failed (attempt %s), retrying in %.1fs: %s",
                job.upload_id,
                job.attempts,
                delay,
                exc,
                extra={"upload_id": job.upload_id},
            )
            return False

        logger.info(
            "Cleaned up session for upload %s%s",
            job.upload_id,
            "" if existed else " (already gone)",
            extra={"upload_id": job.upload_id},
        )
        return True

    def drain(self) -> int:
        """同步处理所有已到期任务，返回处理的任务数。"""
        processed = 0
        while True:
            job = self.queue.pop_due(self._clock())
            if job is None:
                return processed
            self.process(job)
            processed += 1

    def sweep(self) -> int:
        try:
            with self._session_factory() as db:
                return upload_session_service.sweep_expired(db)
        except Exception:
            logger.exception("Expiry sweep failed")
            return 0

    # ----------------------------
    # 线程生命周期
    # ----------------------------
    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="upload-cleanup", daemon=True)
        self._thread.start()
        logger.info("Cleanup worker started")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Cleanup worker stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            # 队列后端的瞬时故障只影响本轮，线程必须继续运行
            try:
                self.drain()
                if self._clock() - self._last_sweep >= self._sweep_interval_seconds:
                    self.sweep()
                    self._last_sweep = self._clock()
            except Exception:
                logger.exception("Cleanup worker iteration failed")
            self._stop_event.wait(self._poll_interval_seconds)


_worker: Optional[CleanupWorker] = None
_worker_lock = threading.Lock()


def get_cleanup_worker() -> CleanupWorker:
    global _worker
    if _worker is not None:
        return _worker
    with _worker_lock:
        if _worker is None:
            settings = get_settings()
            _worker = CleanupWorker(
                build_cleanup_queue(settings),
                max_attempts=settings.cleanup_max_attempts,
                retry_base_seconds=settings.cleanup_retry_base_seconds,
                poll_interval_seconds=settings.cleanup_poll_interval_seconds,
                sweep_interval_seconds=settings.expiry_sweep_interval_seconds,
            )
    return _worker
