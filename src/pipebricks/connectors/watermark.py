from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable, List, Optional

from pipebricks.core.contracts import Record
from pipebricks.core.utils import ensure_utc


def parse_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def parse_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return ensure_utc(datetime(value.year, value.month, value.day))
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return ensure_utc(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


def compare_values(left: Any, right: Any) -> int:
    """Three-way compare: numeric, then ISO-8601 datetime, then string."""
    ln, rn = parse_number(left), parse_number(right)
    if ln is not None and rn is not None:
        return (ln > rn) - (ln < rn)
    ld, rd = parse_datetime(left), parse_datetime(right)
    if ld is not None and rd is not None:
        return (ld > rd) - (ld < rd)
    ls, rs = str(left), str(right)
    return (ls > rs) - (ls < rs)


def is_after(value: Any, watermark: Any) -> bool:
    if value is None:
        return False
    return compare_values(value, watermark) > 0


def filter_after(records: Iterable[Record], field: str, watermark: Any) -> List[Record]:
    """Records whose ``field`` is strictly greater than ``watermark``; missing or null values are dropped."""
    return [r for r in records if is_after(r.get(field), watermark)]


def to_watermark_text(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def max_watermark(records: Iterable[Record], field: str, current: Optional[str] = None) -> Optional[str]:
    """Greatest non-null ``field`` value among ``records``, or ``current`` when there is none greater."""
    best: Any = current
    for record in records:
        value = record.get(field)
        if value is None:
            continue
        if best is None or compare_values(value, best) > 0:
            best = value
    return None if best is None else to_watermark_text(best)
