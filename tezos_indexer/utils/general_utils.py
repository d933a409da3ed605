import datetime
from typing import Callable, Iterable, List, Tuple, TypeVar
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

T = TypeVar("T")


def to_utc(value: datetime.datetime) -> datetime.datetime:
    # Naive datetimes come back from SQLite and are always stored as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc)


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def start_of_day_utc(day: datetime.date) -> datetime.datetime:
    return datetime.datetime(day.year, day.month, day.day, tzinfo=datetime.timezone.utc)


def format_rfc3339(value: datetime.datetime) -> str:
    return to_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")


def sum_amounts(amounts: Iterable[str]) -> str:
    """Adds decimal amount strings without overflow. Unparseable values are skipped."""
    total = 0
    for amount in amounts:
        try:
            total += int(amount)
        except (TypeError, ValueError):
            continue
    return str(total)


def redact_dsn(dsn: str) -> str:
    try:
        return make_url(dsn).render_as_string(hide_password=True)
    except ArgumentError:
        return "<unparseable dsn>"


def truncate_str(s: str, max_len: int) -> str:
    if len(s) > max_len:
        return s[:max_len]
    else:
        return s


def split_trailing_group(
    items: List[T], key: Callable[[T], object]
) -> Tuple[List[T], List[T]]:
    """
    Splits off the trailing run of items sharing the last item's key.

    Returns (ready, held). If every item shares the key, nothing is held back.
    """
    if not items:
        return [], []
    last_key = key(items[-1])
    index = len(items)
    while index > 0 and key(items[index - 1]) == last_key:
        index -= 1
    if index == 0:
        return list(items), []
    return items[:index], items[index:]


