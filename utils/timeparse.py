from datetime import datetime, timezone


def utcnow() -> datetime:
    # naive UTC, matching what the DateTime columns store
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_iso(dt_str: str) -> datetime:
    # Expect ISO format like "2026-01-20T18:00:00" or "2026-01-20T18:00:00+05:45"
    if dt_str.endswith("Z"):
        dt_str = dt_str[:-1] + "+00:00"
    return to_naive_utc(datetime.fromisoformat(dt_str))


def parse_hhmm(value: str) -> int:
    """
    "09:30" -> 570 minutes from midnight. "24:00" is accepted as end of day.
    """
    if not isinstance(value, str) or ":" not in value:
        raise ValueError("time must be HH:MM")
    hours, minutes = value.strip().split(":", 1)
    h, m = int(hours), int(minutes)
    if h == 24 and m == 0:
        return 24 * 60
    if not (0 <= h < 24 and 0 <= m < 60):
        raise ValueError("time must be between 00:00 and 24:00")
    return h * 60 + m


def format_hhmm(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"
