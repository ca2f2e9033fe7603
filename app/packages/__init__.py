"""业务包注册中心：主应用按 ``APP_ACTIVE_PACKAGE`` 选择要挂载的业务包。"""

from __future__ import annotations

import os
from typing import Dict

from . import upload
from .types import AppPackage

DEFAULT_PACKAGE = upload.package.name

PACKAGE_REGISTRY: Dict[str, AppPackage] = {pkg.name: pkg for pkg in (upload.package,)}


def get_active_package() -> AppPackage:
    package_name = os.getenv("APP_ACTIVE_PACKAGE", DEFAULT_PACKAGE).strip() or DEFAULT_PACKAGE
    if package_name not in PACKAGE_REGISTRY:
        available = ", ".join(sorted(PACKAGE_REGISTRY))
        raise RuntimeError(f"未知的业务包 '{package_name}'，可用选项：{available}")
    return PACKAGE_REGISTRY[package_name]


__all__ = ["upload", "AppPackage", "PACKAGE_REGISTRY", "get_active_package"]
