"""分片上传相关路由：init → chunk（可重复、可并发）→ status → finalize。"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Path, Query, UploadFile
from sqlalchemy.orm import Session

from app.packages.upload.api.v1.schemas.uploads import (
    ChunkUploadResponse,
    UploadCancelResponse,
    UploadFinalizeBody,
    UploadFinalizeResponse,
    UploadInitBody,
    UploadInitResponse,
    UploadStatusResponse,
)
from app.packages.upload.core.dependencies import (
    get_cleanup,
    get_current_caller_id,
    get_db,
    get_storage_node,
)
from app.packages.upload.core.exceptions import UploadValidationError
from app.packages.upload.services.chunk_service import chunk_service
from app.packages.upload.services.cleanup_worker import CleanupWorker
from app.packages.upload.services.finalize_service import finalize_service
from app.packages.upload.services.session_service import upload_session_service
from app.packages.upload.services.storage_client import StorageNodeClient

router = APIRouter(prefix="/uploads", tags=["uploads"])


@router.post("/init", response_model=UploadInitResponse)
def init_upload(
    payload: UploadInitBody,
    db: Session = Depends(get_db),
    caller_id: str = Depends(get_current_caller_id),
):
    return upload_session_service.init_upload(
        db,
        owner_id=caller_id,
        file_name=payload.fileName,
        mime_type=payload.mimeType,
        total_size_bytes=payload.totalSizeBytes,
        total_chunks=payload.totalChunks,
        folder_id=payload.folderId,
    )


@router.post("/chunk", response_model=ChunkUploadResponse)
def upload_chunk(
    chunk: Optional[UploadFile] = File(None),
    upload_id: Optional[str] = Form(None, alias="uploadId"),
    chunk_index: Optional[int] = Form(None, alias="chunkIndex"),
    storage_file_name: Optional[str] = Form(None, alias="storageFileName"),
    db: Session = Depends(get_db),
    storage: StorageNodeClient = Depends(get_storage_node),
    caller_id: str = Depends(get_current_caller_id),
):
    """接收一个分片。

    同一分片重复提交会返回 ``skipped: true`` 且不再写存储节点；
    存储节点失败时返回 502，账本不变，客户端整片重试即可。
    """
    if chunk is None or not upload_id or chunk_index is None:
        raise UploadValidationError("缺少分片数据")
    data = chunk.file.read()
    return chunk_service.upload_chunk(
        db,
        storage,
        caller_id=caller_id,
        upload_id=upload_id,
        chunk_index=chunk_index,
        storage_file_name=storage_file_name,
        chunk=data,
    )


@router.get("/status", response_model=UploadStatusResponse)
def upload_status(
    upload_id: Optional[str] = Query(None, alias="uploadId"),
    db: Session = Depends(get_db),
    caller_id: str = Depends(get_current_caller_id),
):
    return upload_session_service.get_status(db, upload_id=upload_id, caller_id=caller_id)


@router.post("/finalize", response_model=UploadFinalizeResponse)
def finalize_upload(
    payload: UploadFinalizeBody,
    db: Session = Depends(get_db),
    storage: StorageNodeClient = Depends(get_storage_node),
    cleanup: CleanupWorker = Depends(get_cleanup),
    caller_id: str = Depends(get_current_caller_id),
):
    return finalize_service.finalize(
        db,
        storage,
        cleanup,
        caller_id=caller_id,
        upload_id=payload.uploadId,
        storage_file_name=payload.storageFileName,
    )


@router.delete("/{upload_id}", response_model=UploadCancelResponse)
def cancel_upload(
    upload_id: str = Path(..., min_length=1),
    db: Session = Depends(get_db),
    caller_id: str = Depends(get_current_caller_id),
):
    return upload_session_service.cancel(db, upload_id=upload_id, caller_id=caller_id)
