"""枚举定义：约束上传会话状态与清理任务类型的可选值。"""

from enum import Enum


class UploadStateEnum(str, Enum):
    """上传会话的生命周期状态。

    ``COMPLETE`` 完全由分片账本推导，``FINALIZED`` 之后会话随即被清理。
    """

    CREATED = "created"
    UPLOADING = "uploading"
    COMPLETE = "complete"
    FINALIZED = "finalized"
    EXPIRED = "expired"


class CleanupQueueBackendEnum(str, Enum):
    MEMORY = "memory"
    REDIS = "redis"
