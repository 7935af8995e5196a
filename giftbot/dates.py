import re
from datetime import datetime, timezone, date, timedelta
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from giftbot import config

_DASH_VARIANTS = re.compile("[\u2010-\u2015\u2212]")
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


# =========================
# TIMEZONE
# =========================
@lru_cache(maxsize=8)
def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except ZoneInfoNotFoundError as e:
        raise RuntimeError(
            f"ZoneInfo timezone '{name}' not found. On Windows, install tzdata:\n"
            f"  python -m pip install tzdata\n"
            f"Then restart."
        ) from e


def local_tz() -> ZoneInfo:
    return _zone(config.TZ_NAME)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def local_date(instant: datetime, tz: ZoneInfo | None = None) -> date:
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(tz or local_tz()).date()


def local_date_str(instant: datetime, tz: ZoneInfo | None = None) -> str:
    return local_date(instant, tz).isoformat()


def parse_utc(value: str) -> datetime:
    dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# =========================
# CALENDAR MATH
# =========================
def day_offset(start: date, end: date) -> int:
    """Whole calendar days from start to end; negative when end is earlier."""
    return (end - start).days


def add_days(day: date, days: int) -> date:
    return day + timedelta(days=days)


def parse_birthday(raw: str | None) -> date | None:
    if not raw:
        return None
    s = _DASH_VARIANTS.sub("-", raw.strip())
    if not _ISO_DATE.match(s):
        return None
    y, m, d = (int(part) for part in s.split("-"))
    try:
        return date(y, m, d)
    except ValueError:
        return None


def parse_date(text: str) -> date:
    return date.fromisoformat(str(text).strip()[:10])


def occurrence_in_year(birthday: date, year: int) -> date:
    try:
        return birthday.replace(year=year)
    except ValueError:
        # Feb 29 outside a leap year
        return date(year, 2, 28)


def next_occurrence(birthday: date, today: date) -> date:
    """The celebrant's next birthday on or after today."""
    this_year = occurrence_in_year(birthday, today.year)
    if this_year >= today:
        return this_year
    return occurrence_in_year(birthday, today.year + 1)
