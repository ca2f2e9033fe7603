"""时区工具方法：会话过期判断统一走这里，避免各处混用 naive/aware 时间。"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from zoneinfo import ZoneInfo

from app.packages.upload.core.config import get_settings


def get_timezone() -> ZoneInfo:
    """返回配置指定的时区信息。"""
    return get_settings().timezone_info


def now() -> datetime:
    """返回当前时区的时间。"""
    return datetime.now(get_timezone())


def to_local(value: Optional[datetime]) -> Optional[datetime]:
    """将 ``datetime`` 转换为配置时区。

    SQLite 读回的时间不带时区，按写入时的配置时区解释。
    """
    if value is None:
        return None
    tz = get_timezone()
    if value.tzinfo is None:
        return value.replace(tzinfo=tz)
    return value.astimezone(tz)


def hours_from_now(hours: int) -> datetime:
    return now() + timedelta(hours=hours)


def is_past(value: Optional[datetime], *, reference: Optional[datetime] = None) -> bool:
    """判断时间点是否已经过去；空值视为未过期。"""
    localized = to_local(value)
    if localized is None:
        return False
    return localized <= (to_local(reference) if reference is not None else now())


def format_iso(value: Optional[datetime]) -> Optional[str]:
    """输出带时区偏移的 ISO-8601 字符串，供接口返回。"""
    localized = to_local(value)
    if localized is None:
        return None
    return localized.isoformat(timespec="seconds")
