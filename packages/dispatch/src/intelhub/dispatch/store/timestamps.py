"""时间列编解码：统一以 UTC ISO 字符串落库"""

from datetime import UTC, datetime


def to_db(value: datetime) -> str:
    """naive 时间视为 UTC"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def to_db_opt(value: datetime | None) -> str | None:
    return to_db(value) if value is not None else None


def from_db(value: str) -> datetime:
    return datetime.fromisoformat(value)


def from_db_opt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None
