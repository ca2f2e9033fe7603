"""分片账本模型：每个已确认写入存储节点的分片对应一行。"""

from sqlalchemy import ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.packages.upload.models.base import Base, CreatedAtMixin


class UploadChunk(CreatedAtMixin, Base):
    # (upload_id, chunk_index) 作为联合主键，重复写入由数据库约束去重
    __tablename__ = "upload_chunks"

    upload_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("chunked_upload_sessions.upload_id", ondelete="CASCADE"),
        primary_key=True,
    )
    chunk_index: Mapped[int] = mapped_column(Integer, primary_key=True)
