"""分片记录器：维护"哪些分片已确认落盘"的幂等账本。

调用约定：只有在存储节点确认追加成功之后，才能调用 ``record_chunk``。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.packages.upload.core.exceptions import UploadNotFoundError, UploadValidationError
from app.packages.upload.core.logger import logger
from app.packages.upload.crud.upload_chunk import upload_chunk_crud
from app.packages.upload.crud.upload_session import upload_session_crud
from app.packages.upload.models.upload_session import UploadSession


@dataclass
class ChunkProgress:
    uploaded_count: int
    total_chunks: int
    uploaded_indices: Optional[List[int]] = field(default=None)

    @property
    def progress_pct(self) -> float:
        if self.total_chunks <= 0:
            return 0.0
        return round(self.uploaded_count / self.total_chunks * 100, 2)

    @property
    def is_complete(self) -> bool:
        return self.total_chunks > 0 and self.uploaded_count == self.total_chunks

    def missing_indices(self) -> List[int]:
        """返回 ``[0, total_chunks)`` 中尚未确认的下标（升序）。"""
        uploaded = set(self.uploaded_indices or [])
        return [index for index in range(self.total_chunks) if index not in uploaded]

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "uploadedCount": self.uploaded_count,
            "totalChunks": self.total_chunks,
            "progressPct": self.progress_pct,
            "isComplete": self.is_complete,
        }
        if self.uploaded_indices is not None:
            data["uploadedIndices"] = list(self.uploaded_indices)
        return data


@dataclass
class ChunkRecordResult:
    progress: ChunkProgress
    inserted: bool


class ChunkRecorder:
    def record_chunk(self, db: Session, *, upload_id: str, chunk_index: int) -> ChunkRecordResult:
        """幂等地记录一个分片并返回最新进度。

        插入与重新计数在同一事务内完成：先对会话行加锁（PostgreSQL 下为
        ``SELECT ... FOR UPDATE``），再 ``INSERT ... ON CONFLICT DO NOTHING``，
        最后 ``COUNT``。同一上传的并发记录因此串行化，重复下标只会被计数一次。
        """
        try:
            session = (
                upload_session_crud.query(db)
                .filter(UploadSession.upload_id == upload_id)
                .with_for_update()
                .first()
            )
            if session is None:
                db.rollback()
                raise UploadNotFoundError()
            if chunk_index < 0 or chunk_index >= session.total_chunks:
                db.rollback()
                raise UploadValidationError(
                    f"分片下标越界，应在 0 到 {session.total_chunks - 1} 之间",
                    {"chunkIndex": chunk_index, "totalChunks": session.total_chunks},
                )

            inserted = upload_chunk_crud.insert_if_absent(db, upload_id=upload_id, chunk_index=chunk_index)
            uploaded_count = upload_chunk_crud.count(db, upload_id)
            total_chunks = session.total_chunks
            db.commit()
        except IntegrityError as exc:
            # 会话在加锁之后被并发删除（取消/过期清理）时，外键约束会拒绝写入
            db.rollback()
            logger.warning("Chunk %s of upload %s rejected by ledger: %s", chunk_index, upload_id, exc.orig)
            raise UploadNotFoundError() from exc

        progress = ChunkProgress(uploaded_count=uploaded_count, total_chunks=total_chunks)
        if inserted:
            logger.info(
                "Recorded chunk %s/%s for upload %s (%.2f%%)",
                chunk_index + 1,
                total_chunks,
                upload_id,
                progress.progress_pct,
                extra={"upload_id": upload_id, "chunk_index": chunk_index},
            )
        else:
            logger.info(
                "Chunk %s of upload %s already recorded",
                chunk_index,
                upload_id,
                extra={"upload_id": upload_id, "chunk_index": chunk_index},
            )
        return ChunkRecordResult(progress=progress, inserted=inserted)

    def get_progress(self, db: Session, *, upload_id: str, total_chunks: int) -> ChunkProgress:
        """只读查询：返回已确认下标及其派生进度。"""
        indices = upload_chunk_crud.list_indices(db, upload_id)
        return ChunkProgress(uploaded_count=len(indices), total_chunks=total_chunks, uploaded_indices=indices)

    def has_chunk(self, db: Session, *, upload_id: str, chunk_index: int) -> bool:
        return upload_chunk_crud.exists(db, upload_id=upload_id, chunk_index=chunk_index)

    def purge(self, db: Session, *, upload_id: str) -> int:
        """批量删除某次上传的账本行，由调用方决定何时提交。"""
        return upload_chunk_crud.delete_for_upload(db, upload_id)


chunk_recorder = ChunkRecorder()
