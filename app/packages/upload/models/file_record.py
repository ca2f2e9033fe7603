"""文件元数据模型：上传收尾成功后对用户可见的最终记录。"""

from typing import Optional

from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from app.packages.upload.models.base import Base, CreatedAtMixin


class FileRecord(CreatedAtMixin, Base):
    """每次成功收尾只产生一条记录。

    ``upload_id`` 与 ``storage_path`` 均唯一，并发重复的 finalize 只有一方能写入。
    ``size_bytes`` 取存储节点校验后的实际大小，而不是客户端声明值。
    """

    __tablename__ = "files"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    upload_id: Mapped[Optional[str]] = mapped_column(String(36), unique=True, nullable=True)
    owner_id: Mapped[str] = mapped_column(String(64), index=True)
    folder_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(255))
    original_name: Mapped[str] = mapped_column(String(255))
    mime_type: Mapped[str] = mapped_column(String(255))
    size_bytes: Mapped[int] = mapped_column(BigInteger, default=0)
    storage_path: Mapped[str] = mapped_column(String(512), unique=True)
