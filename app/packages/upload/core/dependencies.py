"""依赖注入模块：封装 FastAPI 中复用度高的依赖函数。"""

from collections.abc import Generator
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from app.packages.upload.core.constants import ACCESS_TOKEN_TYPE
from app.packages.upload.core.security import decode_and_verify_token, extract_caller_id
from app.packages.upload.db import session as db_session
from app.packages.upload.services.cleanup_worker import CleanupWorker, get_cleanup_worker
from app.packages.upload.services.storage_client import StorageNodeClient, get_storage_client

security_scheme = HTTPBearer(auto_error=False)


def get_db() -> Generator[Session, None, None]:
    """生成一个数据库会话，并在请求结束后自动关闭。"""
    db = db_session.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_caller_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security_scheme),
) -> str:
    """解析 ``Authorization`` 头部并返回调用方 ID，缺失或非法时抛出 401。"""
    if not credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="缺少认证信息")

    if credentials.scheme.lower() != ACCESS_TOKEN_TYPE:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="认证类型无效")

    payload = decode_and_verify_token(credentials.credentials)
    if payload is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token 无效或已过期")

    caller_id = extract_caller_id(payload)
    if caller_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token 无效")
    return caller_id


def get_storage_node() -> StorageNodeClient:
    return get_storage_client()


def get_cleanup() -> CleanupWorker:
    return get_cleanup_worker()
