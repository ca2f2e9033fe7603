"""上传会话 CRUD。"""

from __future__ import annotations

from datetime import datetime
from typing import List

from sqlalchemy import delete
from sqlalchemy.orm import Session

from app.packages.upload.crud.base import CRUDBase
from app.packages.upload.models.upload_session import UploadSession


class CRUDUploadSession(CRUDBase[UploadSession]):
    def list_expired(self, db: Session, *, now: datetime, limit: int = 500) -> List[UploadSession]:
        query = self.query(db).filter(self.model.expires_at <= now)
        return query.order_by(self.model.expires_at.asc()).limit(limit).all()

    def delete_by_upload_id(self, db: Session, upload_id: str) -> int:
        """按主键批量删除，不经过 ORM 实例；由调用方负责提交。"""
        result = db.execute(delete(self.model).where(self.model.upload_id == upload_id))
        return int(result.rowcount or 0)


upload_session_crud = CRUDUploadSession(UploadSession)
