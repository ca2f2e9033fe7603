"""上传会话服务：负责会话的创建、查询、取消与过期清扫。

会话只保存账目信息，任何分片字节都不会经过这里。
"""

from __future__ import annotations

import math
import re
import time
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.packages.upload.core.config import get_settings
from app.packages.upload.core.constants import DEFAULT_MIME_TYPE, HTTP_STATUS_OK, STORAGE_FILE_PREFIX
from app.packages.upload.core.enums import UploadStateEnum
from app.packages.upload.core.exceptions import (
    UploadForbiddenError,
    UploadNotFoundError,
    UploadValidationError,
)
from app.packages.upload.core.logger import logger
from app.packages.upload.core.responses import create_response
from app.packages.upload.core.timezone import format_iso, hours_from_now, is_past, now as tz_now
from app.packages.upload.crud.file_record import file_record_crud
from app.packages.upload.crud.upload_session import upload_session_crud
from app.packages.upload.models.upload_session import UploadSession
from app.packages.upload.services.chunk_recorder import ChunkProgress, chunk_recorder

_EXTENSION_PATTERN = re.compile(r"^[a-z0-9]{1,16}$")


def generate_storage_file_name(file_name: str) -> str:
    """生成全局唯一的存储文件名：时间前缀 + 随机后缀 + 原扩展名。

    前 16 位为毫秒时间戳的十六进制，保证大致按创建顺序排列；
    后 16 位取自 uuid4，同一毫秒内的并发会话也不会撞名。
    """
    timestamp = format(int(time.time() * 1000), "016x")
    random_part = uuid.uuid4().hex[:16]
    _, dot, ext = file_name.rpartition(".")
    ext = ext.lower() if dot else ""
    suffix = f".{ext}" if ext and _EXTENSION_PATTERN.match(ext) else ""
    return f"{STORAGE_FILE_PREFIX}{timestamp}{random_part}{suffix}"


def expected_chunk_count(total_size_bytes: int, chunk_size_bytes: int) -> int:
    return math.ceil(total_size_bytes / chunk_size_bytes)


class UploadSessionService:
    # ----------------------------
    # 创建
    # ----------------------------
    def init_upload(
        self,
        db: Session,
        *,
        owner_id: str,
        file_name: Optional[str],
        mime_type: Optional[str],
        total_size_bytes: Optional[int],
        total_chunks: Optional[int],
        folder_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        settings = get_settings()
        name = (file_name or "").strip()
        chunk_size = settings.chunk_size_bytes
        self._validate_init(name, total_size_bytes, total_chunks, chunk_size)

        session = upload_session_crud.create(
            db,
            {
                "upload_id": str(uuid.uuid4()),
                "owner_id": owner_id,
                "file_name": name,
                "mime_type": (mime_type or "").strip() or DEFAULT_MIME_TYPE,
                "total_size_bytes": total_size_bytes,
                "total_chunks": total_chunks,
                "chunk_size_bytes": chunk_size,
                "storage_file_name": generate_storage_file_name(name),
                "folder_id": folder_id or None,
                "created_at": tz_now(),
                "expires_at": hours_from_now(settings.session_ttl_hours),
            },
        )
        logger.info(
            "Initialized chunked upload %s for %s -> %s (%s chunks)",
            session.upload_id,
            session.file_name,
            session.storage_file_name,
            session.total_chunks,
            extra={"upload_id": session.upload_id, "owner_id": owner_id},
        )
        data = {
            "uploadId": session.upload_id,
            "storageFileName": session.storage_file_name,
            "chunkSizeBytes": session.chunk_size_bytes,
            "totalChunks": session.total_chunks,
            "expiresAt": format_iso(session.expires_at),
        }
        return create_response("上传会话创建成功", data, HTTP_STATUS_OK)

    # ----------------------------
    # 查询
    # ----------------------------
    def get_active(self, db: Session, *, upload_id: Optional[str], caller_id: str) -> UploadSession:
        """取出仍然有效的会话并校验归属；过期与不存在统一视为 404。"""
        if not upload_id:
            raise UploadValidationError("缺少 uploadId")
        session = upload_session_crud.get(db, upload_id)
        if session is None or is_past(session.expires_at):
            raise UploadNotFoundError()
        if session.owner_id != caller_id:
            logger.warning(
                "Caller %s attempted to access upload %s owned by another user",
                caller_id,
                upload_id,
                extra={"upload_id": upload_id},
            )
            raise UploadForbiddenError()
        return session

    def get_status(self, db: Session, *, upload_id: Optional[str], caller_id: str) -> Dict[str, Any]:
        session = self.get_active(db, upload_id=upload_id, caller_id=caller_id)
        progress = chunk_recorder.get_progress(db, upload_id=session.upload_id, total_chunks=session.total_chunks)
        finalized = file_record_crud.get_by_upload_id(db, session.upload_id) is not None
        data = {
            "uploadId": session.upload_id,
            "fileName": session.file_name,
            "storageFileName": session.storage_file_name,
            "state": self.state_of(session, progress, finalized=finalized).value,
            **progress.to_dict(),
            "expiresAt": format_iso(session.expires_at),
        }
        return create_response("获取上传进度成功", data, HTTP_STATUS_OK)

    @staticmethod
    def state_of(session: UploadSession, progress: ChunkProgress, *, finalized: bool = False) -> UploadStateEnum:
        if finalized:
            return UploadStateEnum.FINALIZED
        if is_past(session.expires_at):
            return UploadStateEnum.EXPIRED
        if progress.is_complete:
            return UploadStateEnum.COMPLETE
        if progress.uploaded_count > 0:
            return UploadStateEnum.UPLOADING
        return UploadStateEnum.CREATED

    # ----------------------------
    # 取消与清理
    # ----------------------------
    def cancel(self, db: Session, *, upload_id: Optional[str], caller_id: str) -> Dict[str, Any]:
        """立即作废会话；已在途的追加不受影响，远端残留字节由存储侧回收。"""
        session = self.get_active(db, upload_id=upload_id, caller_id=caller_id)
        if file_record_crud.get_by_upload_id(db, session.upload_id) is not None:
            raise UploadValidationError("上传已完成，无法取消")
        self.purge_session(db, upload_id=session.upload_id)
        logger.info("Cancelled upload %s", session.upload_id, extra={"upload_id": session.upload_id})
        return create_response("上传已取消", {"uploadId": session.upload_id}, HTTP_STATUS_OK)

    def purge_session(self, db: Session, *, upload_id: str) -> bool:
        """在同一事务里删除分片账本与会话，返回会话此前是否存在。"""
        try:
            chunk_recorder.purge(db, upload_id=upload_id)
            deleted = upload_session_crud.delete_by_upload_id(db, upload_id)
            db.commit()
        except Exception:
            db.rollback()
            raise
        return deleted > 0

    def sweep_expired(self, db: Session, *, now: Optional[datetime] = None) -> int:
        """删除所有已过期会话及其账本，返回清理的会话数。"""
        reference = now or tz_now()
        removed = 0
        # purge 每次提交都会让实例过期，先取出主键
        upload_ids = [session.upload_id for session in upload_session_crud.list_expired(db, now=reference)]
        for upload_id in upload_ids:
            if self.purge_session(db, upload_id=upload_id):
                removed += 1
        if removed:
            logger.info("Expiry sweep removed %s upload sessions", removed)
        return removed

    # ----------------------------
    # 工具方法
    # ----------------------------
    @staticmethod
    def _validate_init(
        name: str,
        total_size_bytes: Optional[int],
        total_chunks: Optional[int],
        chunk_size: int,
    ) -> None:
        errors: Dict[str, str] = {}
        if not name:
            errors["fileName"] = "文件名不能为空"
        elif len(name) > get_settings().max_file_name_length:
            errors["fileName"] = "文件名过长"
        if not _is_positive_int(total_size_bytes):
            errors["totalSizeBytes"] = "文件大小必须为正整数"
        if not _is_positive_int(total_chunks):
            errors["totalChunks"] = "分片数量必须为正整数"
        if errors:
            raise UploadValidationError("缺少必填字段或字段非法", errors)

        expected = expected_chunk_count(total_size_bytes, chunk_size)
        if total_chunks != expected:
            raise UploadValidationError(
                "分片数量与文件大小不匹配",
                {"totalChunks": total_chunks, "expectedChunks": expected, "chunkSizeBytes": chunk_size},
            )


def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


upload_session_service = UploadSessionService()
