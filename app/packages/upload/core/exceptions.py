"""异常处理模块：定义统一的业务异常与响应格式。

上传流程里的每一种失败都有独立的异常类型，客户端据此决定是重试、
断点续传还是重新 ``init``：

- ``UploadValidationError``：请求字段缺失或非法，未发生任何状态变更；
- ``UploadNotFoundError``：会话不存在或已过期，需重新初始化；
- ``UploadForbiddenError``：调用方不是会话所有者；
- ``MissingChunksError``：尚有分片未确认，``data`` 中列出缺失下标；
- ``StorageNodeError``：存储节点调用失败，可整片重试；
- ``RemoteFileMissingError`` / ``UploadIntegrityError``：存储节点状态异常，需人工介入。
"""

from typing import Any, Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

from app.packages.upload.core.logger import logger


class AppException(HTTPException):
    """携带统一响应结构的业务异常，方便在全局处理中转换响应体。"""

    def __init__(self, msg: str, code: int = status.HTTP_400_BAD_REQUEST, data=None) -> None:
        super().__init__(status_code=code, detail=msg)
        self.data = data


class UploadValidationError(AppException):
    def __init__(self, msg: str, data: Any = None) -> None:
        super().__init__(msg, status.HTTP_400_BAD_REQUEST, data)


class UploadNotFoundError(AppException):
    def __init__(self, msg: str = "上传会话不存在或已过期，请重新初始化上传") -> None:
        super().__init__(msg, status.HTTP_404_NOT_FOUND)


class UploadForbiddenError(AppException):
    # 不回传任何会话信息，避免泄露他人会话是否存在
    def __init__(self, msg: str = "无权访问该上传会话") -> None:
        super().__init__(msg, status.HTTP_403_FORBIDDEN)


class MissingChunksError(AppException):
    """分片未全部确认时拒绝收尾，并给出精确的缺失下标以便断点续传。"""

    def __init__(self, missing_chunks: list[int], uploaded_count: int, total_chunks: int) -> None:
        super().__init__(
            "存在未上传的分片，请补传后再完成上传",
            status.HTTP_400_BAD_REQUEST,
            {
                "missingChunks": missing_chunks,
                "uploadedCount": uploaded_count,
                "totalChunks": total_chunks,
            },
        )
        self.missing_chunks = missing_chunks


class StorageNodeError(AppException):
    """存储节点不可达或返回非 2xx；调用方应整片重试。"""

    def __init__(self, msg: str, *, upstream_status: Optional[int] = None, retryable: bool = True) -> None:
        super().__init__(
            msg,
            status.HTTP_502_BAD_GATEWAY,
            {"retryable": retryable, "upstreamStatus": upstream_status},
        )
        self.upstream_status = upstream_status
        self.retryable = retryable


class RemoteFileMissingError(AppException):
    def __init__(self, storage_file_name: str) -> None:
        super().__init__(
            "存储节点上找不到目标文件，上传数据已丢失",
            status.HTTP_410_GONE,
            {"reason": "remote_file_missing", "storageFileName": storage_file_name},
        )


class UploadIntegrityError(AppException):
    def __init__(self, storage_file_name: str, expected_size: int, actual_size: int) -> None:
        super().__init__(
            "存储节点上的文件大小与声明不一致",
            status.HTTP_409_CONFLICT,
            {
                "reason": "size_mismatch",
                "storageFileName": storage_file_name,
                "expectedSize": expected_size,
                "actualSize": actual_size,
            },
        )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:  # pragma: no cover - framework glue
    """将 FastAPI 的 ``HTTPException`` 转换为统一响应格式。"""
    payload = {"msg": exc.detail, "data": getattr(exc, "data", None), "code": exc.status_code}
    return JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:  # pragma: no cover - framework glue
    """兜底处理：将未捕获异常转换为标准的 500 响应结构。"""
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    payload = {
        "msg": "服务器内部错误",
        "data": None,
        "code": status.HTTP_500_INTERNAL_SERVER_ERROR,
    }
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=payload)
