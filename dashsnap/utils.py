import hashlib, json, re
from datetime import datetime, date, timezone

from dateutil.relativedelta import relativedelta

_PERIODE_RE = re.compile(r"^\d{4}(0[1-9]|1[0-2])$")

def sha256_json(obj) -> str:
    return hashlib.sha256(json.dumps(obj, sort_keys=True, default=str).encode()).hexdigest()

def now_utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()

def periode_for(d: date) -> str:
    return f"{d.year}{d.month:02d}"

def is_last_day_of_month(d: date) -> bool:
    # relativedelta clamps day=31 to the month's real last day
    return d == d + relativedelta(day=31)

def parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValueError("date must be YYYY-MM-DD")

def validate_periode(value: str) -> str:
    if not isinstance(value, str) or not _PERIODE_RE.match(value):
        raise ValueError("periode must be YYYYMM")
    return value
