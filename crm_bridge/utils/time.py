from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

MILLISECONDS_THRESHOLD = 1_000_000_000_000


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def normalize_epoch_seconds(value: Any) -> int:
    """Coerce a seconds-or-milliseconds epoch value to whole seconds.

    Missing or unparseable values fall back to the current time.
    """
    if isinstance(value, bool) or value is None:
        return int(utc_now().timestamp())
    if isinstance(value, str):
        cleaned = value.strip()
        try:
            value = float(cleaned)
        except ValueError:
            parsed = parse_timestamp(cleaned)
            if parsed is None:
                return int(utc_now().timestamp())
            return int(parsed.timestamp())
    if isinstance(value, (int, float)):
        timestamp = float(value)
        if timestamp > MILLISECONDS_THRESHOLD:
            timestamp = timestamp / 1000.0
        return int(timestamp)
    return int(utc_now().timestamp())


def parse_timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, (int, float)):
        timestamp = float(value)
        if timestamp > MILLISECONDS_THRESHOLD:
            timestamp = timestamp / 1000.0
        return datetime.fromtimestamp(timestamp, tz=timezone.utc)
    if isinstance(value, str):
        cleaned = value.replace("Z", "+00:00")
        try:
            parsed = datetime.fromisoformat(cleaned)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    return None


def resolve_timezone(name: str) -> ZoneInfo | timezone:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def format_local(timestamp: int | None, tz_name: str) -> str:
    if not timestamp:
        return "Data desconhecida"
    moment = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    return moment.astimezone(resolve_timezone(tz_name)).strftime("%d/%m/%Y %H:%M:%S")
