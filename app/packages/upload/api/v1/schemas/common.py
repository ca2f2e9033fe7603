"""上传接口共用的响应外层结构。"""

from typing import Generic, Optional, TypeVar

from pydantic import BaseModel

DataT = TypeVar("DataT")


class ResponseEnvelope(BaseModel, Generic[DataT]):
    """``{msg, data, code}``：``code`` 与 HTTP 状态码保持一致，失败时 ``data`` 携带可恢复信息。"""

    msg: str
    data: Optional[DataT] = None
    code: int
