"""分片上传会话模型。"""

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.packages.upload.models.base import Base, CreatedAtMixin


class UploadSession(CreatedAtMixin, Base):
    """一次可续传上传的账目信息。

    说明：
    - ``storage_file_name`` 在 ``init`` 时生成且之后不再变化，分片下标都相对它解释；
    - ``chunk_size_bytes`` 固化创建时的分片大小，配置调整不影响进行中的会话；
    - 已确认的分片只记录在 ``upload_chunks`` 表中，本表不冗余任何进度字段。
    """

    __tablename__ = "chunked_upload_sessions"

    upload_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), index=True)
    file_name: Mapped[str] = mapped_column(String(255))
    mime_type: Mapped[str] = mapped_column(String(255))
    total_size_bytes: Mapped[int] = mapped_column(BigInteger)
    total_chunks: Mapped[int] = mapped_column(Integer)
    chunk_size_bytes: Mapped[int] = mapped_column(Integer)
    storage_file_name: Mapped[str] = mapped_column(String(128), unique=True)
    folder_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)

    @property
    def storage_path(self) -> str:
        return f"{self.owner_id}/{self.storage_file_name}"

    def __repr__(self) -> str:
        return f"<UploadSession(upload_id={self.upload_id}, file_name={self.file_name})>"
