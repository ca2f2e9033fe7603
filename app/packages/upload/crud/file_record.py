"""文件记录 CRUD。"""

from __future__ import annotations

from typing import Optional

from sqlalchemy.orm import Session

from app.packages.upload.crud.base import CRUDBase
from app.packages.upload.models.file_record import FileRecord


class CRUDFileRecord(CRUDBase[FileRecord]):
    def get_by_upload_id(self, db: Session, upload_id: str) -> Optional[FileRecord]:
        return self.query(db).filter(self.model.upload_id == upload_id).first()

    def get_by_storage_path(self, db: Session, storage_path: str) -> Optional[FileRecord]:
        return self.query(db).filter(self.model.storage_path == storage_path).first()

    def count_by_upload_id(self, db: Session, upload_id: str) -> int:
        return self.query(db).filter(self.model.upload_id == upload_id).count()


file_record_crud = CRUDFileRecord(FileRecord)
