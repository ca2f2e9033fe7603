"""模型包初始化，便于统一导入 ORM 实体并触发模型注册。"""

from app.packages.upload.models.file_record import FileRecord
from app.packages.upload.models.upload_chunk import UploadChunk
from app.packages.upload.models.upload_session import UploadSession

__all__ = [
    "FileRecord",
    "UploadChunk",
    "UploadSession",
]
