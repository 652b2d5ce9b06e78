"""Billing schedule date arithmetic.

Pure functions over UTC Unix timestamps (seconds). Adds billing periods
with calendar-aware month handling and derives next payment, trial end
and end of prepaid term dates for a subscription.
"""

import calendar
import math
from datetime import datetime, timezone
from typing import Optional, Union

from pydantic import BaseModel, Field

from billing_lifecycle.models.subscription import BillingPeriod

# Seconds in common time units
SECONDS_PER_MINUTE = 60
SECONDS_PER_HOUR = 60 * SECONDS_PER_MINUTE
SECONDS_PER_DAY = 24 * SECONDS_PER_HOUR
SECONDS_PER_WEEK = 7 * SECONDS_PER_DAY
SECONDS_PER_YEAR = 365 * SECONDS_PER_DAY

# Average cycle lengths used for estimates, not for scheduling
DAYS_IN_CYCLE = {
    BillingPeriod.DAY: 1,
    BillingPeriod.WEEK: 7,
    BillingPeriod.MONTH: 30.4375,
    BillingPeriod.YEAR: 365.25,
}

PERIOD_ORDER = [BillingPeriod.DAY, BillingPeriod.WEEK, BillingPeriod.MONTH, BillingPeriod.YEAR]

STORAGE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

DEFAULT_NEXT_PAYMENT_THRESHOLD = 2 * SECONDS_PER_HOUR
DEFAULT_END_DATE_MARGIN = 23 * SECONDS_PER_HOUR
DEFAULT_MAX_ITERATIONS = 3000


class ScheduleFacts(BaseModel):
    """Subscription facts a billing date calculation depends on."""

    start: int = Field(default=0, description="Start date")
    next_payment: int = Field(default=0, description="Stored next payment date")
    trial_end: int = Field(default=0, description="Trial end date")
    last_payment: int = Field(default=0, description="Latest of last order created/paid")
    end: int = Field(default=0, description="End date")
    billing_interval: int = Field(default=1, ge=1)
    billing_period: BillingPeriod = Field(default=BillingPeriod.MONTH)
    is_synced: bool = Field(default=False, description="Renewal day is synchronised")
    payment_count: int = Field(default=0, description="Completed payments so far")
    utc_offset: int = Field(default=0, description="Site offset applied to month arithmetic")


def parse_billing_period(period: Union[str, BillingPeriod]) -> BillingPeriod:
    """Parse a billing period name.

    Accepts singular or plural unit names in any case.

    Args:
        period: Period name (e.g., "month", "Weeks")

    Returns:
        BillingPeriod

    Raises:
        ValueError: If the period is not day, week, month or year

    Examples:
        >>> parse_billing_period("Months")
        <BillingPeriod.MONTH: 'month'>
    """
    if isinstance(period, BillingPeriod):
        return period
    if not period or not isinstance(period, str):
        raise ValueError("Period must be a non-empty string")

    name = period.strip().lower()
    if name.endswith("s"):
        name = name[:-1]
    try:
        return BillingPeriod(name)
    except ValueError:
        raise ValueError(
            f"Unsupported billing period: '{period}'. Supported periods: day, week, month, year"
        ) from None


def _is_last_day_of_month(moment: datetime) -> bool:
    return moment.day == calendar.monthrange(moment.year, moment.month)[1]


def add_months(from_timestamp: int, number_of_months: int, utc_offset: int = 0) -> int:
    """Add calendar months to a timestamp.

    Keeps the day of month and time of day. A day that does not exist in
    the target month is clamped to that month's last day, and a date on the
    last day of its month stays on the last day of the target month.

    Args:
        from_timestamp: UTC timestamp in seconds
        number_of_months: Months to add
        utc_offset: Seconds to shift into site time before doing month arithmetic

    Returns:
        UTC timestamp in seconds

    Examples:
        >>> add_months(1706695200, 1)  # 2024-01-31 10:00 UTC
        1709200800  # 2024-02-29 10:00 UTC
    """
    moment = datetime.fromtimestamp(from_timestamp + utc_offset, tz=timezone.utc)

    month_index = moment.month - 1 + number_of_months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    days_in_target = calendar.monthrange(year, month)[1]

    if _is_last_day_of_month(moment):
        day = days_in_target
    else:
        day = min(moment.day, days_in_target)

    result = moment.replace(year=year, month=month, day=day)
    return int(result.timestamp()) - utc_offset


def add_periods(
    interval: int,
    period: Union[str, BillingPeriod],
    from_timestamp: int,
    utc_offset: int = 0,
) -> int:
    """Add a number of billing periods to a timestamp.

    Days and weeks are added as plain seconds. Months use calendar-aware
    month addition and years are added as twelve months.

    Args:
        interval: Number of periods to add
        period: Billing period unit
        from_timestamp: UTC timestamp in seconds
        utc_offset: Site offset for month arithmetic

    Returns:
        UTC timestamp in seconds (unchanged when interval is not positive)

    Examples:
        >>> add_periods(2, "week", 1704067200)
        1705276800
        >>> add_periods(1, "month", 1675159200)  # 2023-01-31 10:00 UTC
        1677578400  # 2023-02-28 10:00 UTC
    """
    if interval <= 0:
        return from_timestamp

    period = parse_billing_period(period)

    if period == BillingPeriod.DAY:
        return from_timestamp + interval * SECONDS_PER_DAY
    elif period == BillingPeriod.WEEK:
        return from_timestamp + interval * SECONDS_PER_WEEK
    elif period == BillingPeriod.MONTH:
        return add_months(from_timestamp, interval, utc_offset)
    else:
        return add_months(from_timestamp, 12 * interval, utc_offset)


def calculate_next_payment(
    facts: ScheduleFacts,
    now: int,
    threshold: int = DEFAULT_NEXT_PAYMENT_THRESHOLD,
    end_margin: int = DEFAULT_END_DATE_MARGIN,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
) -> int:
    """Calculate when the next renewal payment is due.

    A trial that has not ended yet makes the trial end the next payment.
    Otherwise an anchor is chosen and billing intervals are added until the
    result is at least ``threshold`` seconds after ``now``, so a repeated or
    delayed calculation never lands in the past or on the same day twice.

    Anchor preference:
    1. stored next payment, when it is in the past and this is the first
       renewal after a trial or the subscription is synchronised
    2. last payment, when on or after the start date
    3. stored next payment, when after the start date
    4. start date

    Args:
        facts: Subscription schedule facts
        now: Current UTC timestamp
        threshold: Minimum distance of the result from now
        end_margin: No payment when payment + margin passes the end date
        max_iterations: Safety cap on period additions

    Returns:
        UTC timestamp of the next payment, or 0 when no more payments are due
    """
    if facts.trial_end > now:
        next_payment = facts.trial_end
    else:
        if (
            facts.next_payment != 0
            and facts.next_payment < now
            and ((facts.trial_end != 0 and facts.payment_count <= 1) or facts.is_synced)
        ):
            from_timestamp = facts.next_payment
        elif facts.last_payment >= facts.start:
            from_timestamp = facts.last_payment
        elif facts.next_payment > facts.start:
            from_timestamp = facts.next_payment
        else:
            from_timestamp = facts.start

        next_payment = add_periods(
            facts.billing_interval, facts.billing_period, from_timestamp, facts.utc_offset
        )

        iterations = 1
        while next_payment < now + threshold and iterations < max_iterations:
            next_payment = add_periods(
                facts.billing_interval, facts.billing_period, next_payment, facts.utc_offset
            )
            iterations += 1

    if facts.end != 0 and next_payment + end_margin > facts.end:
        return 0

    return next_payment


def calculate_trial_end(payment_count: int, facts: ScheduleFacts, now: int, **kwargs) -> int:
    """Calculate the trial end date.

    Once two or more payments have been made there is no trial to end;
    otherwise the trial ends when the next payment is due.

    Args:
        payment_count: Completed payments so far
        facts: Subscription schedule facts
        now: Current UTC timestamp
        **kwargs: Passed through to calculate_next_payment

    Returns:
        UTC timestamp, or 0
    """
    if payment_count >= 2:
        return 0
    return calculate_next_payment(facts, now, **kwargs)


def calculate_end_of_prepaid_term(next_payment: int, end: int, now: int) -> int:
    """Calculate until when the customer has already paid.

    Args:
        next_payment: Stored next payment date (0 if none)
        end: Stored end date (0 if none)
        now: Current UTC timestamp

    Returns:
        next_payment if it is still ahead, now if there is no paid-up term
        left, otherwise the end date
    """
    if next_payment >= now:
        return next_payment
    # No end date counts as already past
    elif end <= now:
        return now
    return end


def estimate_periods_between(
    start_timestamp: int,
    end_timestamp: int,
    unit: Union[str, BillingPeriod] = BillingPeriod.MONTH,
    rounding: str = "ceil",
) -> int:
    """Estimate how many billing periods fit between two timestamps.

    Months are counted by stepping with calendar month addition; other units
    divide the elapsed seconds, with leap days discounted for years.

    Args:
        start_timestamp: UTC timestamp
        end_timestamp: UTC timestamp
        unit: Billing period unit
        rounding: "ceil" or "floor"

    Returns:
        Number of periods (0 when end is not after start)
    """
    if end_timestamp <= start_timestamp:
        return 0

    unit = parse_billing_period(unit)

    if unit == BillingPeriod.MONTH:
        timestamp = start_timestamp
        if rounding == "ceil":
            periods = 0
            while timestamp < end_timestamp:
                timestamp = add_months(timestamp, 1)
                periods += 1
        else:
            periods = -1
            while timestamp <= end_timestamp:
                timestamp = add_months(timestamp, 1)
                periods += 1
        return periods

    seconds_between = end_timestamp - start_timestamp
    if unit == BillingPeriod.DAY:
        denominator = SECONDS_PER_DAY
    elif unit == BillingPeriod.WEEK:
        denominator = SECONDS_PER_WEEK
    else:
        denominator = SECONDS_PER_YEAR
        seconds_between -= number_of_leap_days(start_timestamp, end_timestamp) * SECONDS_PER_DAY

    ratio = seconds_between / denominator
    return int(math.ceil(ratio)) if rounding == "ceil" else int(math.floor(ratio))


def number_of_leap_days(start_timestamp: int, end_timestamp: int) -> int:
    """Count the February 29ths between two UTC timestamps."""
    start_year = datetime.fromtimestamp(start_timestamp, tz=timezone.utc).year
    end_year = datetime.fromtimestamp(end_timestamp, tz=timezone.utc).year

    count = 0
    for year in range(start_year, end_year + 1):
        if not calendar.isleap(year):
            continue
        leap_day = datetime(year, 2, 29, tzinfo=timezone.utc)
        leap_day_start = int(leap_day.timestamp())
        leap_day_end = leap_day_start + SECONDS_PER_DAY - 1
        if leap_day_end >= start_timestamp and leap_day_start <= end_timestamp:
            count += 1
    return count


def get_days_in_cycle(period: Union[str, BillingPeriod], interval: int) -> float:
    """Average number of days in a billing cycle.

    Examples:
        >>> get_days_in_cycle("month", 3)
        91.3125
    """
    return DAYS_IN_CYCLE[parse_billing_period(period)] * interval


def get_longest_period(
    current_period: Optional[Union[str, BillingPeriod]],
    new_period: Union[str, BillingPeriod],
) -> BillingPeriod:
    """Return the longer of two billing periods (current may be empty)."""
    new_period = parse_billing_period(new_period)
    if not current_period:
        return new_period
    current_period = parse_billing_period(current_period)
    return max(current_period, new_period, key=PERIOD_ORDER.index)


def get_shortest_period(
    current_period: Optional[Union[str, BillingPeriod]],
    new_period: Union[str, BillingPeriod],
) -> BillingPeriod:
    """Return the shorter of two billing periods (current may be empty)."""
    new_period = parse_billing_period(new_period)
    if not current_period:
        return new_period
    current_period = parse_billing_period(current_period)
    return min(current_period, new_period, key=PERIOD_ORDER.index)


def is_datetime_mysql_format(value: object) -> bool:
    """Check that a value is a ``YYYY-MM-DD HH:MM:SS`` string for a real date.

    Examples:
        >>> is_datetime_mysql_format("2024-02-29 10:00:00")
        True
        >>> is_datetime_mysql_format("2023-02-29 10:00:00")
        False
    """
    if not isinstance(value, str):
        return False
    try:
        parsed = datetime.strptime(value, STORAGE_DATE_FORMAT)
    except ValueError:
        return False
    return parsed.year >= 1900 and parsed.strftime(STORAGE_DATE_FORMAT) == value


def date_to_time(value: Union[int, str, datetime, None]) -> int:
    """Convert a stored date value to a UTC timestamp.

    Accepts timestamps, numeric strings, timezone-aware or naive (UTC)
    datetimes and ``YYYY-MM-DD HH:MM:SS`` strings in UTC. Empty values
    and zero map to 0.

    Raises:
        ValueError: If a string is not a recognised date
    """
    if value is None or value == 0 or value == "" or value == "0":
        return 0
    if isinstance(value, bool):
        raise ValueError(f"Invalid date value: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp())

    text = str(value).strip()
    if text.lstrip("-").isdigit():
        return int(text)
    if is_datetime_mysql_format(text):
        return int(datetime.strptime(text, STORAGE_DATE_FORMAT).replace(tzinfo=timezone.utc).timestamp())
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValueError(f"Invalid date value: {value!r}") from None
    return date_to_time(parsed)


def time_to_date_string(timestamp: int) -> Optional[str]:
    """Convert a UTC timestamp to ``YYYY-MM-DD HH:MM:SS`` (None for 0)."""
    if not timestamp:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime(STORAGE_DATE_FORMAT)
