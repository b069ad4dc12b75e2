"""
Sending window for steps flagged `business_hours`.

A due time that falls outside SENDING_HOUR_START..SENDING_HOUR_END in
TARGET_TIMEZONE, on a weekend (unless SEND_ON_WEEKENDS) or on a US holiday
is pushed to the start of the next open window. All inputs and outputs are
naive UTC datetimes, the convention used throughout the engine.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Dict, Optional, Tuple

import pytz

import config

logger = logging.getLogger("sequencer.sending_window")


# ==============================================================================
# US holiday calendar
# ==============================================================================

def _nth_weekday(year: int, month: int, weekday: int, n: int) -> date:
    """n-th given weekday (0=Mon) of a month"""
    first = date(year, month, 1)
    offset = (weekday - first.weekday()) % 7
    return first + timedelta(days=offset, weeks=n - 1)


def _last_weekday(year: int, month: int, weekday: int) -> date:
    """Last given weekday of a month"""
    if month == 12:
        last = date(year, 12, 31)
    else:
        last = date(year, month + 1, 1) - timedelta(days=1)
    return last - timedelta(days=(last.weekday() - weekday) % 7)


def get_us_holidays(year: int) -> Dict[date, str]:
    """US federal holidays plus the quiet days around them"""
    thanksgiving = _nth_weekday(year, 11, 3, 4)
    return {
        date(year, 1, 1): "New Year's Day",
        _nth_weekday(year, 1, 0, 3): "Martin Luther King Jr. Day",
        _nth_weekday(year, 2, 0, 3): "Presidents' Day",
        _last_weekday(year, 5, 0): "Memorial Day",
        date(year, 6, 19): "Juneteenth",
        date(year, 7, 4): "Independence Day",
        _nth_weekday(year, 9, 0, 1): "Labor Day",
        date(year, 11, 11): "Veterans Day",
        thanksgiving: "Thanksgiving",
        thanksgiving + timedelta(days=1): "Day After Thanksgiving",
        date(year, 12, 24): "Christmas Eve",
        date(year, 12, 25): "Christmas Day",
        date(year, 12, 31): "New Year's Eve",
    }


def is_holiday(target_date: date) -> Tuple[bool, Optional[str]]:
    holidays = get_us_holidays(target_date.year)
    if target_date in holidays:
        return True, holidays[target_date]
    return False, None


def is_sending_day(target_date: date, send_on_weekends: bool = None) -> bool:
    if send_on_weekends is None:
        send_on_weekends = config.SEND_ON_WEEKENDS
    if target_date.weekday() >= 5 and not send_on_weekends:
        return False
    return not is_holiday(target_date)[0]


# ==============================================================================
# Window arithmetic
# ==============================================================================

def _to_local(moment: datetime, tz) -> datetime:
    return pytz.UTC.localize(moment).astimezone(tz)


def _to_utc(local: datetime) -> datetime:
    return local.astimezone(pytz.UTC).replace(tzinfo=None)


def is_within_window(moment: datetime, timezone: str = None, start_hour: int = None,
                     end_hour: int = None, send_on_weekends: bool = None) -> bool:
    tz = pytz.timezone(timezone or config.TARGET_TIMEZONE)
    start_hour = config.SENDING_HOUR_START if start_hour is None else start_hour
    end_hour = config.SENDING_HOUR_END if end_hour is None else end_hour

    local = _to_local(moment, tz)
    if not is_sending_day(local.date(), send_on_weekends):
        return False
    return start_hour <= local.hour < end_hour


def next_business_time(moment: datetime, timezone: str = None, start_hour: int = None,
                       end_hour: int = None, send_on_weekends: bool = None) -> datetime:
    """
    `moment` itself when it is inside the sending window, otherwise the
    start of the next window (naive UTC).
    """
    tz = pytz.timezone(timezone or config.TARGET_TIMEZONE)
    start_hour = config.SENDING_HOUR_START if start_hour is None else start_hour
    end_hour = config.SENDING_HOUR_END if end_hour is None else end_hour

    if is_within_window(moment, timezone, start_hour, end_hour, send_on_weekends):
        return moment

    local = _to_local(moment, tz)
    day = local.date()
    if local.hour >= start_hour:
        day += timedelta(days=1)

    # Longest closed stretch is a holiday-adjacent weekend; two weeks is plenty
    for _ in range(14):
        if is_sending_day(day, send_on_weekends):
            opening = tz.localize(datetime(day.year, day.month, day.day, start_hour))
            shifted = _to_utc(opening)
            logger.debug(f"sending_window_shift: {moment} -> {shifted}")
            return shifted
        day += timedelta(days=1)

    return moment
