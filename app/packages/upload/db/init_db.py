"""Database bootstrapping utilities."""

from __future__ import annotations

import logging

from app.packages.upload.db import session as db_session
from app.packages.upload.models.base import Base
from app.packages.upload import models  # noqa: F401 - register tables on the metadata

logger = logging.getLogger(__name__)


def init_db() -> None:
    """确保上传相关的表存在；生产环境的结构变更仍以迁移脚本为准。"""
    # 通过模块属性读取 engine，测试中替换后的引擎同样生效
    Base.metadata.create_all(bind=db_session.engine)
    logger.info("Upload tables ensured: %s", ", ".join(sorted(Base.metadata.tables)))
