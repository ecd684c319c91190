from datetime import date, datetime, time, timezone
from typing import List, Optional, Tuple

def now_utc():
    return datetime.now(timezone.utc)

def _parse_ymd(value: str) -> date:
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except (TypeError, ValueError):
        raise ValueError(f"Invalid date: {value} (expected YYYY-MM-DD)")

def parse_date_range(start: Optional[str] = None, end: Optional[str] = None, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """
    start/end = "YYYY-MM-DD", both inclusive, interpreted in UTC.
    Defaults: Jan 1 of the current year .. today.
    Returns (start of first day, last second of last day).
    """
    n = now or now_utc()
    start_d = _parse_ymd(start) if start else date(n.year, 1, 1)
    end_d = _parse_ymd(end) if end else n.date()
    if end_d < start_d:
        raise ValueError("from must not be after to")
    start_dt = datetime.combine(start_d, time.min, tzinfo=timezone.utc)
    end_dt = datetime.combine(end_d, time(23, 59, 59), tzinfo=timezone.utc)
    return start_dt, end_dt

def month_key(dt: datetime) -> str:
    return f"{dt.year:04d}-{dt.month:02d}"

def month_keys(start: datetime, end: datetime) -> List[str]:
    """Every YYYY-MM between start and end, both inclusive."""
    keys = []
    y, m = start.year, start.month
    while (y, m) <= (end.year, end.month):
        keys.append(f"{y:04d}-{m:02d}")
        m += 1
        if m > 12:
            y, m = y + 1, 1
    return keys
