"""存储节点客户端：把分片字节直接追加到远端正在增长的目标文件上。

与存储节点约定的接口（节点由外部团队实现）：

``POST /chunk-append``
    请求体 ``{fileName, userId, chunkIndex, totalChunks, isFirstChunk, isLastChunk,
    offset, chunkSize, sha256, data}``，``data`` 为 base64 编码的分片字节。
    节点必须把字节写到 ``offset`` 处（已存在则原位覆盖），因此同一分片重发
    只会覆盖相同位置的相同内容，不会形成二次追加。``sha256`` 供节点发现
    同一位置被写入不同内容的冲突。成功返回 ``{currentSize}``。

``POST /verify-file``
    请求体 ``{fileName, userId, expectedSize}``，返回 ``{exists, size}``。

base64 会带来约 33% 的传输膨胀，节点接口为 JSON，接受这一开销。
"""

from __future__ import annotations

import base64
import hashlib
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Optional

import httpx

from app.packages.upload.core.config import get_settings
from app.packages.upload.core.exceptions import StorageNodeError
from app.packages.upload.core.logger import logger

_RETRYABLE_STATUS = {408, 425, 429}


@dataclass(frozen=True)
class AppendResult:
    current_remote_size: int


@dataclass(frozen=True)
class VerifyResult:
    exists: bool
    size: int


def encode_chunk(chunk: bytes) -> str:
    return base64.b64encode(chunk).decode("ascii")


def chunk_digest(chunk: bytes) -> str:
    return hashlib.sha256(chunk).hexdigest()


class StorageNodeClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 60.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={"Authorization": f"Bearer {api_key}", "User-Agent": "chunked-upload-coordinator/1.0"},
        )

    def append_chunk(
        self,
        *,
        storage_file_name: str,
        owner_id: str,
        chunk: bytes,
        chunk_index: int,
        total_chunks: int,
        is_first_chunk: bool,
        is_last_chunk: bool,
        offset: int,
    ) -> AppendResult:
        """追加一个分片；任何失败都抛出 ``StorageNodeError``，调用方不得记账。"""
        payload = {
            "fileName": storage_file_name,
            "userId": owner_id,
            "chunkIndex": chunk_index,
            "totalChunks": total_chunks,
            "isFirstChunk": is_first_chunk,
            "isLastChunk": is_last_chunk,
            "offset": offset,
            "chunkSize": len(chunk),
            "sha256": chunk_digest(chunk),
            "data": encode_chunk(chunk),
        }
        body = self._post("/chunk-append", payload, action="append")
        current_size = body.get("currentSize")
        if not isinstance(current_size, int):
            raise StorageNodeError("存储节点返回的追加结果无法解析")
        logger.debug(
            "Appended chunk %s of %s at offset %s (remote size %s)",
            chunk_index,
            storage_file_name,
            offset,
            current_size,
            extra={"storage_file_name": storage_file_name, "chunk_index": chunk_index},
        )
        return AppendResult(current_remote_size=current_size)

    def verify_file(self, *, storage_file_name: str, owner_id: str, expected_size: int) -> VerifyResult:
        payload = {"fileName": storage_file_name, "userId": owner_id, "expectedSize": expected_size}
        body = self._post("/verify-file", payload, action="verify", not_found_ok=True)
        if body is None:
            return VerifyResult(exists=False, size=0)
        exists = bool(body.get("exists"))
        size = body.get("size") or 0
        if not isinstance(size, int):
            raise StorageNodeError("存储节点返回的校验结果无法解析")
        return VerifyResult(exists=exists, size=size if exists else 0)

    def health(self) -> bool:
        try:
            response = self._client.get("/health")
        except httpx.HTTPError as exc:
            logger.warning("Storage node health probe failed: %s", exc)
            return False
        return response.is_success

    def close(self) -> None:
        self._client.close()

    def _post(
        self, path: str, payload: Dict[str, Any], *, action: str, not_found_ok: bool = False
    ) -> Optional[Dict[str, Any]]:
        try:
            response = self._client.post(path, json=payload)
        except httpx.TimeoutException as exc:
            logger.warning("Storage node %s timed out: %s", action, exc)
            raise StorageNodeError("存储节点响应超时，请重试") from exc
        except httpx.HTTPError as exc:
            logger.warning("Storage node %s failed: %s", action, exc)
            raise StorageNodeError("无法连接存储节点，请重试") from exc

        if not_found_ok and response.status_code == 404:
            return None
        if not response.is_success:
            retryable = response.status_code >= 500 or response.status_code in _RETRYABLE_STATUS
            logger.error(
                "Storage node %s returned %s: %s", action, response.status_code, response.text[:500]
            )
            raise StorageNodeError(
                f"存储节点返回错误（HTTP {response.status_code}）",
                upstream_status=response.status_code,
                retryable=retryable,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise StorageNodeError("存储节点返回了无法解析的响应") from exc
        if not isinstance(body, dict):
            raise StorageNodeError("存储节点返回了无法解析的响应")
        return body


@lru_cache
def get_storage_client() -> StorageNodeClient:
    """进程级单例，复用 httpx 连接池。"""
    settings = get_settings()
    return StorageNodeClient(
        settings.storage_node_base_url,
        settings.storage_node_api_key,
        timeout=settings.storage_node_timeout_seconds,
    )
