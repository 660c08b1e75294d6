"""
Date helpers for the ledger and reports.

Issue dates are stored DD/MM/YYYY; report records carry YYYY-MM-DD;
range queries use the day-aligned window [start 00:00:00, end 23:59:59.999].
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple, Union

from ledger.core.errors import ValidationError
from ledger.models import DateRange

END_OF_DAY = time(23, 59, 59, 999000)


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what MongoDB hands back"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def format_date(value: Union[date, datetime]) -> str:
    """YYYY-MM-DD"""
    return value.strftime("%Y-%m-%d")


def format_issue_date(value: date) -> str:
    """DD/MM/YYYY, the stored issue date format"""
    return value.strftime("%d/%m/%Y")


def parse_issue_date(value: str) -> str:
    """
    Convert a stored DD/MM/YYYY date to YYYY-MM-DD.
    Values without '/' are assumed to be YYYY-MM-DD already.
    """
    if not value or "/" not in value:
        return value
    day, month, year = value.split("/")
    return f"{year}-{month.zfill(2)}-{day.zfill(2)}"


def day_window(date_range: DateRange) -> Tuple[datetime, datetime]:
    """[start 00:00:00, end 23:59:59.999] for a date range"""
    if date_range.start > date_range.end:
        raise ValidationError(
            f"Invalid date range: {date_range.start} is after {date_range.end}"
        )
    start = datetime.combine(date_range.start, time.min)
    end = datetime.combine(date_range.end, END_OF_DAY)
    return start, end


def date_range_for_preset(preset: str, today: Optional[date] = None) -> DateRange:
    """
    this_month - first to last day of the current month
    last_month - first to last day of the previous month
    ytd        - January 1st to today
    """
    today = today or utcnow().date()
    first_of_month = today.replace(day=1)

    if preset == "this_month":
        next_month = (first_of_month + timedelta(days=32)).replace(day=1)
        return DateRange(start=first_of_month, end=next_month - timedelta(days=1), preset="this_month")
    if preset == "last_month":
        last_day = first_of_month - timedelta(days=1)
        return DateRange(start=last_day.replace(day=1), end=last_day, preset="last_month")
    if preset == "ytd":
        return DateRange(start=today.replace(month=1, day=1), end=today, preset="ytd")

    raise ValidationError(f"Unknown preset: {preset}")
