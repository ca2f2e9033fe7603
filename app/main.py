"""应用入口：负责创建 FastAPI 实例并绑定生命周期事件。"""

from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.middleware.request_id import RequestIdMiddleware
from app.packages import get_active_package
from app.packages.upload.core.dependencies import get_storage_node
from app.packages.upload.services.storage_client import StorageNodeClient

package = get_active_package()
package.setup_logging()
settings = package.get_settings()
logger = package.logger
create_response = package.create_response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """启动时建表并拉起清理线程，退出时停止线程、释放存储节点连接池。"""
    package.init_db()
    worker = package.get_cleanup_worker()
    if settings.cleanup_worker_enabled:
        worker.start()
    logger.info("SUCCESS - Application running at http://127.0.0.1:%s", settings.app_port)
    yield
    if settings.cleanup_worker_enabled:
        worker.stop()
    package.get_storage_client().close()


app = FastAPI(title=settings.project_name, debug=settings.debug, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)
app.add_middleware(RequestIdMiddleware)


@app.exception_handler(HTTPException)
async def custom_http_exception_handler(request, exc):  # pragma: no cover - framework glue
    """将 ``HTTPException`` 转换为统一的响应结构。"""
    return await package.http_exception_handler(request, exc)


@app.exception_handler(Exception)
async def custom_generic_exception_handler(request, exc):  # pragma: no cover - framework glue
    """捕获未预料异常并包装为标准错误响应。"""
    return await package.generic_exception_handler(request, exc)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc):  # pragma: no cover - framework glue
    """统一处理请求体验证失败的场景。"""
    def _serialize(obj: Any) -> Any:
        if isinstance(obj, Exception):
            return str(obj)
        if isinstance(obj, dict):
            return {key: _serialize(value) for key, value in obj.items()}
        if isinstance(obj, (list, tuple)):
            return [_serialize(item) for item in obj]
        if isinstance(obj, bytes):
            return f"<{len(obj)} bytes>"
        return obj

    serialized_errors = _serialize(exc.errors())
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=create_response("请求参数验证失败", serialized_errors, status.HTTP_422_UNPROCESSABLE_ENTITY),
    )


@app.get("/health")
def health_check(storage: StorageNodeClient = Depends(get_storage_node)) -> dict:
    """提供健康检查接口，同时探测存储节点是否可达。"""
    storage_ok = storage.health()
    return create_response("OK", {"status": "healthy", "storageNode": "up" if storage_ok else "down"})


app.include_router(package.api_router, prefix=settings.api_v1_str)
