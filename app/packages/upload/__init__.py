"""分片上传业务包：会话管理、分片账本、存储节点追加与收尾校验。"""

from app.packages.types import AppPackage

from .api.v1 import api_router
from .core.config import get_settings
from .core.exceptions import generic_exception_handler, http_exception_handler
from .core.logger import logger, setup_logging
from .core.responses import create_response
from .db.init_db import init_db
from .services.cleanup_worker import get_cleanup_worker
from .services.storage_client import get_storage_client

package = AppPackage(
    name="upload",
    api_router=api_router,
    get_settings=get_settings,
    setup_logging=setup_logging,
    logger=logger,
    init_db=init_db,
    create_response=create_response,
    http_exception_handler=http_exception_handler,
    generic_exception_handler=generic_exception_handler,
    get_cleanup_worker=get_cleanup_worker,
    get_storage_client=get_storage_client,
)

__all__ = ["package", "api_router", "get_settings"]
