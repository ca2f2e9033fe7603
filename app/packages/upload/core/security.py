"""安全模块：校验身份提供方签发的 JWT，并解析出调用方 ID。

本服务不负责登录，只信任共享密钥签名的访问令牌；``create_access_token``
用于联调脚本与测试生成令牌。
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from .config import get_settings
from .logger import logger


def create_access_token(subject: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """根据传入载荷生成带有过期时间的签名 JWT。"""
    settings = get_settings()
    expire = datetime.now(timezone.utc) + (
        expires_delta if expires_delta else timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode = subject.copy()
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_and_verify_token(token: str) -> Optional[Dict[str, Any]]:
    """解码并校验 JWT（含过期时间），非法时返回 ``None``。"""
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:  # pragma: no cover - logging side effect
        logger.warning("Failed to decode JWT: %s", exc)
        return None


def extract_caller_id(payload: Dict[str, Any]) -> Optional[str]:
    """优先读取标准 ``sub`` 声明，兼容旧令牌里的 ``user_id``。"""
    caller = payload.get("sub") or payload.get("user_id")
    if caller is None:
        return None
    caller = str(caller).strip()
    return caller or None
