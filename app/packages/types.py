"""主应用与业务包之间的装配契约。"""

from __future__ import annotations

from dataclasses import dataclass
from logging import Logger
from typing import TYPE_CHECKING, Any, Callable

from fastapi import APIRouter

if TYPE_CHECKING:
    from app.packages.upload.services.cleanup_worker import CleanupWorker
    from app.packages.upload.services.storage_client import StorageNodeClient


@dataclass(frozen=True)
class AppPackage:
    """``app.main`` 只通过这些入口使用业务包：路由、配置、日志、建表、异常处理，
    以及需要随进程启停的后台清理线程和存储节点连接池。"""

    name: str
    api_router: APIRouter
    get_settings: Callable[[], Any]
    setup_logging: Callable[[], None]
    logger: Logger
    init_db: Callable[[], None]
    create_response: Callable[..., dict]
    http_exception_handler: Callable[..., Any]
    generic_exception_handler: Callable[..., Any]
    get_cleanup_worker: Callable[[], "CleanupWorker"]
    get_storage_client: Callable[[], "StorageNodeClient"]
