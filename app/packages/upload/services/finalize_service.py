"""上传收尾服务：确认分片齐全、校验远端文件，再写入唯一的文件记录。

对外可见的幂等性：客户端因响应丢失而重复调用 finalize 时，返回已有的
文件记录，绝不会产生第二条。判断依据有两处：
1. 会话仍在时，写入前按 ``storage_path`` 查重；
2. 会话已被清理时，按 ``upload_id`` + ``storage_path`` 找到先前的记录即视为已成功。
并发的两次 finalize 由 ``files`` 表上的唯一约束兜底，输的一方回读赢家的记录。
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.packages.upload.core.constants import HTTP_STATUS_OK
from app.packages.upload.core.exceptions import (
    MissingChunksError,
    RemoteFileMissingError,
    UploadIntegrityError,
    UploadNotFoundError,
    UploadValidationError,
)
from app.packages.upload.core.logger import logger
from app.packages.upload.core.responses import create_response
from app.packages.upload.core.timezone import format_iso, now as tz_now
from app.packages.upload.crud.file_record import file_record_crud
from app.packages.upload.crud.upload_session import upload_session_crud
from app.packages.upload.models.file_record import FileRecord
from app.packages.upload.models.upload_session import UploadSession
from app.packages.upload.services.chunk_recorder import chunk_recorder
from app.packages.upload.services.cleanup_worker import CleanupWorker
from app.packages.upload.services.session_service import upload_session_service
from app.packages.upload.services.storage_client import StorageNodeClient


def serialize_file_record(record: FileRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "uploadId": record.upload_id,
        "ownerId": record.owner_id,
        "folderId": record.folder_id,
        "name": record.name,
        "originalName": record.original_name,
        "mimeType": record.mime_type,
        "sizeBytes": record.size_bytes,
        "storagePath": record.storage_path,
        "createdAt": format_iso(record.created_at),
    }


class FinalizeService:
    def finalize(
        self,
        db: Session,
        storage: StorageNodeClient,
        cleanup: CleanupWorker,
        *,
        caller_id: str,
        upload_id: Optional[str],
        storage_file_name: Optional[str],
    ) -> Dict[str, Any]:
        if not upload_id:
            raise UploadValidationError("缺少 uploadId")

        try:
            session = upload_session_service.get_active(db, upload_id=upload_id, caller_id=caller_id)
        except UploadNotFoundError:
            previous = self._previous_result(db, upload_id, caller_id, storage_file_name)
            if previous is None:
                raise
            logger.info("Upload %s was already finalized, returning existing file", upload_id)
            return self._response(previous, already_finalized=True)

        if storage_file_name and storage_file_name != session.storage_file_name:
            raise UploadValidationError("storageFileName 与上传会话不匹配")

        progress = chunk_recorder.get_progress(db, upload_id=session.upload_id, total_chunks=session.total_chunks)
        if not progress.is_complete:
            missing = progress.missing_indices()
            logger.info(
                "Finalization of upload %s rejected: %s/%s chunks recorded, missing %s",
                session.upload_id,
                progress.uploaded_count,
                progress.total_chunks,
                missing,
                extra={"upload_id": session.upload_id},
            )
            raise MissingChunksError(missing, progress.uploaded_count, progress.total_chunks)

        existing = file_record_crud.get_by_storage_path(db, session.storage_path)
        if existing is not None:
            cleanup_requested = self._schedule_cleanup(cleanup, session.upload_id)
            return self._response(existing, already_finalized=True, cleanup_scheduled=cleanup_requested)

        verified = storage.verify_file(
            storage_file_name=session.storage_file_name,
            owner_id=session.owner_id,
            expected_size=session.total_size_bytes,
        )
        if not verified.exists:
            logger.error(
                "File %s not found on storage node while finalizing upload %s",
                session.storage_file_name,
                session.upload_id,
                extra={"upload_id": session.upload_id, "storage_file_name": session.storage_file_name},
            )
            raise RemoteFileMissingError(session.storage_file_name)
        if verified.size != session.total_size_bytes:
            logger.error(
                "Size mismatch for %s: expected %s, storage node reports %s",
                session.storage_file_name,
                session.total_size_bytes,
                verified.size,
                extra={"upload_id": session.upload_id, "storage_file_name": session.storage_file_name},
            )
            raise UploadIntegrityError(session.storage_file_name, session.total_size_bytes, verified.size)

        record, lost_race = self._commit_file_record(db, session, verified.size)
        cleanup_requested = self._schedule_cleanup(cleanup, session.upload_id)
        if lost_race:
            return self._response(record, already_finalized=True, cleanup_scheduled=cleanup_requested)
        logger.info(
            "Chunked upload complete: %s (%s bytes) -> %s",
            session.file_name,
            verified.size,
            record.storage_path,
            extra={"upload_id": session.upload_id},
        )
        return self._response(record, already_finalized=False, cleanup_scheduled=cleanup_requested)

    # ----------------------------
    # 工具方法
    # ----------------------------
    @staticmethod
    def _previous_result(
        db: Session, upload_id: str, caller_id: str, storage_file_name: Optional[str]
    ) -> Optional[FileRecord]:
        # 会话仍存在（只是过期或属于他人）时不能据此判定为先前成功
        if not storage_file_name or upload_session_crud.get(db, upload_id) is not None:
            return None
        record = file_record_crud.get_by_upload_id(db, upload_id)
        if record is None or record.storage_path != f"{caller_id}/{storage_file_name}":
            return None
        return record

    @staticmethod
    def _commit_file_record(db: Session, session: UploadSession, size_bytes: int) -> Tuple[FileRecord, bool]:
        """写入文件记录，返回 ``(记录, 是否输给了并发的 finalize)``。"""
        try:
            record = file_record_crud.create(
                db,
                {
                    "upload_id": session.upload_id,
                    "owner_id": session.owner_id,
                    "folder_id": session.folder_id,
                    "name": session.file_name,
                    "original_name": session.file_name,
                    "mime_type": session.mime_type,
                    "size_bytes": size_bytes,
                    "storage_path": session.storage_path,
                    "created_at": tz_now(),
                },
            )
            return record, False
        except IntegrityError:
            db.rollback()
            winner = file_record_crud.get_by_upload_id(db, session.upload_id)
            if winner is None:
                raise
            logger.info("Concurrent finalize for upload %s already committed", session.upload_id)
            return winner, True

    @staticmethod
    def _schedule_cleanup(cleanup: CleanupWorker, upload_id: str) -> bool:
        try:
            cleanup.enqueue(upload_id)
        except Exception as exc:
            # 清理只是善后，入队失败由过期清扫兜底
            logger.error("Failed to queue cleanup for upload %s: %s", upload_id, exc, extra={"upload_id": upload_id})
            return False
        return True

    @staticmethod
    def _response(record: FileRecord, *, already_finalized: bool, cleanup_scheduled: bool = False) -> Dict[str, Any]:
        data = {
            "file": serialize_file_record(record),
            "fileSize": record.size_bytes,
            "alreadyFinalized": already_finalized,
            "cleanupScheduled": cleanup_scheduled,
        }
        msg = "上传已完成" if already_finalized else "上传完成"
        return create_response(msg, data, HTTP_STATUS_OK)


finalize_service = FinalizeService()
