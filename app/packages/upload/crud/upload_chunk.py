"""分片账本 CRUD：提供"不存在才插入"的原子写入与计数。"""

from __future__ import annotations

from typing import List

from sqlalchemy import delete, func, insert, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from app.packages.upload.crud.base import CRUDBase
from app.packages.upload.models.upload_chunk import UploadChunk


class CRUDUploadChunk(CRUDBase[UploadChunk]):
    def insert_if_absent(self, db: Session, *, upload_id: str, chunk_index: int) -> bool:
        """插入一行账本记录，主键冲突时静默跳过。

        返回本次是否真正插入。冲突判断交给数据库唯一约束完成，
        不存在"先查再写"的竞态窗口。
        """
        values = {"upload_id": upload_id, "chunk_index": chunk_index}
        dialect = db.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = postgresql.insert(self.model).values(**values).on_conflict_do_nothing(
                index_elements=["upload_id", "chunk_index"]
            )
        elif dialect == "sqlite":
            stmt = sqlite.insert(self.model).values(**values).on_conflict_do_nothing(
                index_elements=["upload_id", "chunk_index"]
            )
        elif dialect in {"mysql", "mariadb"}:
            stmt = insert(self.model).values(**values).prefix_with("IGNORE")
        else:  # pragma: no cover - 未适配的方言
            raise NotImplementedError(f"insert_if_absent is not supported on dialect '{dialect}'")
        result = db.execute(stmt)
        return (result.rowcount or 0) > 0

    def exists(self, db: Session, *, upload_id: str, chunk_index: int) -> bool:
        return self.get(db, (upload_id, chunk_index)) is not None

    def count(self, db: Session, upload_id: str) -> int:
        stmt = select(func.count()).select_from(self.model).where(self.model.upload_id == upload_id)
        return int(db.execute(stmt).scalar() or 0)

    def list_indices(self, db: Session, upload_id: str) -> List[int]:
        stmt = (
            select(self.model.chunk_index)
            .where(self.model.upload_id == upload_id)
            .order_by(self.model.chunk_index.asc())
        )
        return [int(row) for row in db.execute(stmt).scalars().all()]

    def delete_for_upload(self, db: Session, upload_id: str) -> int:
        result = db.execute(delete(self.model).where(self.model.upload_id == upload_id))
        return int(result.rowcount or 0)


upload_chunk_crud = CRUDUploadChunk(UploadChunk)
