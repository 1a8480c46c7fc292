from datetime import datetime, timezone


def utcnow() -> datetime:
    # Naive UTC: SQLite drops tzinfo on the way back, so everything stays naive.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat_utc(dt: datetime) -> str:
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.isoformat() + "Z"
