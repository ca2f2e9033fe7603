"""常量定义：HTTP 状态码与上传相关的固定取值。"""

HTTP_STATUS_OK = 200

ACCESS_TOKEN_TYPE = "bearer"

DEFAULT_MIME_TYPE = "application/octet-stream"
STORAGE_FILE_PREFIX = "file_"
