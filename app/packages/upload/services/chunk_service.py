"""分片接收服务：校验分片 → 追加到存储节点 → 记账。

顺序不可颠倒：只有存储节点确认写入后才记账，追加失败时账本保持原样，
客户端整片重发即可。
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.packages.upload.core.constants import HTTP_STATUS_OK
from app.packages.upload.core.exceptions import UploadValidationError
from app.packages.upload.core.logger import logger
from app.packages.upload.core.responses import create_response
from app.packages.upload.models.upload_session import UploadSession
from app.packages.upload.services.chunk_recorder import chunk_recorder
from app.packages.upload.services.session_service import upload_session_service
from app.packages.upload.services.storage_client import StorageNodeClient


def expected_chunk_length(session: UploadSession, chunk_index: int) -> int:
    """除最后一片外都等于会话的分片大小，最后一片取余量。"""
    if chunk_index < session.total_chunks - 1:
        return session.chunk_size_bytes
    return session.total_size_bytes - session.chunk_size_bytes * (session.total_chunks - 1)


class ChunkService:
    def upload_chunk(
        self,
        db: Session,
        storage: StorageNodeClient,
        *,
        caller_id: str,
        upload_id: Optional[str],
        chunk_index: Optional[int],
        storage_file_name: Optional[str],
        chunk: bytes,
    ) -> Dict[str, Any]:
        session = upload_session_service.get_active(db, upload_id=upload_id, caller_id=caller_id)
        self._validate_chunk(session, chunk_index, storage_file_name, chunk)

        if chunk_recorder.has_chunk(db, upload_id=session.upload_id, chunk_index=chunk_index):
            logger.info(
                "Chunk %s of upload %s already recorded, skipping storage append",
                chunk_index,
                session.upload_id,
                extra={"upload_id": session.upload_id, "chunk_index": chunk_index},
            )
            progress = chunk_recorder.get_progress(
                db, upload_id=session.upload_id, total_chunks=session.total_chunks
            )
            summary = progress.to_dict()
            summary.pop("uploadedIndices", None)
            return self._response(session, chunk_index, summary, skipped=True)

        append = storage.append_chunk(
            storage_file_name=session.storage_file_name,
            owner_id=session.owner_id,
            chunk=chunk,
            chunk_index=chunk_index,
            total_chunks=session.total_chunks,
            is_first_chunk=chunk_index == 0,
            is_last_chunk=chunk_index == session.total_chunks - 1,
            offset=chunk_index * session.chunk_size_bytes,
        )
        result = chunk_recorder.record_chunk(db, upload_id=session.upload_id, chunk_index=chunk_index)
        # 并发重复提交时另一方已先记账，此时同样标记为 skipped
        return self._response(
            session,
            chunk_index,
            result.progress.to_dict(),
            skipped=not result.inserted,
            current_remote_size=append.current_remote_size,
        )

    @staticmethod
    def _validate_chunk(
        session: UploadSession,
        chunk_index: Optional[int],
        storage_file_name: Optional[str],
        chunk: bytes,
    ) -> None:
        if chunk_index is None or chunk_index < 0 or chunk_index >= session.total_chunks:
            raise UploadValidationError(
                f"分片下标越界，应在 0 到 {session.total_chunks - 1} 之间",
                {"chunkIndex": chunk_index, "totalChunks": session.total_chunks},
            )
        if storage_file_name and storage_file_name != session.storage_file_name:
            raise UploadValidationError("storageFileName 与上传会话不匹配")
        expected = expected_chunk_length(session, chunk_index)
        if len(chunk) != expected:
            raise UploadValidationError(
                "分片大小与会话约定不一致",
                {"chunkIndex": chunk_index, "expectedBytes": expected, "receivedBytes": len(chunk)},
            )

    @staticmethod
    def _response(
        session: UploadSession,
        chunk_index: int,
        progress: Dict[str, Any],
        *,
        skipped: bool,
        current_remote_size: Optional[int] = None,
    ) -> Dict[str, Any]:
        data = {
            "chunkIndex": chunk_index,
            **progress,
            "skipped": skipped,
            "storageFileName": session.storage_file_name,
        }
        if current_remote_size is not None:
            data["currentRemoteSize"] = current_remote_size
        return create_response("分片上传成功", data, HTTP_STATUS_OK)


chunk_service = ChunkService()
