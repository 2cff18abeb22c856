from datetime import date, datetime, timedelta


class InvalidDate(ValueError):
    """Raised when a raw value can't be read as a calendar date."""

    def __init__(self, value):
        self.value = value
        super().__init__(f"Invalid date: {value!r} (expected YYYY-MM-DD)")


def _as_date(value: date) -> date:
    # datetime is a date subclass, so check it first
    if isinstance(value, datetime):
        return value.date()
    return value


def parse_date(value) -> date:
    """Read an ISO calendar date. Full timestamps are truncated to their date."""
    if isinstance(value, (date, datetime)):
        return _as_date(value)
    if not isinstance(value, str):
        raise InvalidDate(value)
    text = value.strip()
    try:
        if len(text) > 10:
            return datetime.fromisoformat(text).date()
        return date.fromisoformat(text)
    except ValueError:
        raise InvalidDate(value) from None


def days_between(a: date, b: date) -> int:
    """Signed number of whole days from a to b."""
    return (_as_date(b) - _as_date(a)).days


def add_days(d: date, n: int) -> date:
    return _as_date(d) + timedelta(days=n)


def sub_days(d: date, n: int) -> date:
    return _as_date(d) - timedelta(days=n)


def is_same_day(a: date, b: date) -> bool:
    return _as_date(a) == _as_date(b)


def is_within_inclusive(d: date, start: date, end: date) -> bool:
    return _as_date(start) <= _as_date(d) <= _as_date(end)


def format_date(d: date) -> str:
    """Render as 'Mar 21, 2024'."""
    d = _as_date(d)
    return f"{d.strftime('%b')} {d.day}, {d.year}"
