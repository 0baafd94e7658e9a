"""
时间工具 - 统一使用带时区的UTC时间

PostgreSQL的timestamptz列经asyncpg读出为UTC aware时间，SQLite会丢弃时区信息，
因此所有naive时间一律按UTC解释。
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """当前UTC时间"""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """转换为UTC aware时间，naive时间视为UTC"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
