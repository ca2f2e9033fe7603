"""分片上传 请求/响应模型。

字段采用 camelCase，与上传客户端的约定保持一致；请求字段一律可选，
缺失与非法值由服务层统一校验并返回 400。
"""

from typing import Any, Optional

from pydantic import BaseModel

from app.packages.upload.api.v1.schemas.common import ResponseEnvelope


class UploadInitBody(BaseModel):
    fileName: Optional[str] = None
    mimeType: Optional[str] = None
    totalSizeBytes: Optional[int] = None
    totalChunks: Optional[int] = None
    folderId: Optional[str] = None


class UploadFinalizeBody(BaseModel):
    uploadId: Optional[str] = None
    storageFileName: Optional[str] = None


class UploadInitData(BaseModel):
    uploadId: str
    storageFileName: str
    chunkSizeBytes: int
    totalChunks: int
    expiresAt: str


class ChunkProgressData(BaseModel):
    chunkIndex: int
    uploadedCount: int
    totalChunks: int
    progressPct: float
    isComplete: bool
    skipped: bool = False
    storageFileName: str
    currentRemoteSize: Optional[int] = None


class UploadStatusData(BaseModel):
    uploadId: str
    fileName: str
    storageFileName: str
    state: str
    uploadedCount: int
    totalChunks: int
    progressPct: float
    isComplete: bool
    uploadedIndices: list[int]
    expiresAt: str


class FileRecordData(BaseModel):
    id: int
    uploadId: Optional[str] = None
    ownerId: str
    folderId: Optional[str] = None
    name: str
    originalName: str
    mimeType: str
    sizeBytes: int
    storagePath: str
    createdAt: Optional[str] = None


class UploadFinalizeData(BaseModel):
    file: FileRecordData
    fileSize: int
    alreadyFinalized: bool = False
    cleanupScheduled: bool = False


UploadInitResponse = ResponseEnvelope[UploadInitData]
ChunkUploadResponse = ResponseEnvelope[ChunkProgressData]
UploadStatusResponse = ResponseEnvelope[UploadStatusData]
UploadFinalizeResponse = ResponseEnvelope[UploadFinalizeData]
UploadCancelResponse = ResponseEnvelope[dict[str, Any]]
