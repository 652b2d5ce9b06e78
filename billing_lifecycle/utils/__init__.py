"""Utility functions and helpers for the billing engine."""

from billing_lifecycle.utils.date_schedule import (
    ScheduleFacts,
    add_months,
    add_periods,
    calculate_end_of_prepaid_term,
    calculate_next_payment,
    calculate_trial_end,
    date_to_time,
    estimate_periods_between,
    get_days_in_cycle,
    get_longest_period,
    get_shortest_period,
    is_datetime_mysql_format,
    number_of_leap_days,
    parse_billing_period,
    time_to_date_string,
)

__all__ = [
    # Period arithmetic
    "add_months",
    "add_periods",
    "parse_billing_period",
    # Schedule calculations
    "ScheduleFacts",
    "calculate_next_payment",
    "calculate_trial_end",
    "calculate_end_of_prepaid_term",
    # Period helpers
    "estimate_periods_between",
    "number_of_leap_days",
    "get_days_in_cycle",
    "get_longest_period",
    "get_shortest_period",
    # Storage date format
    "date_to_time",
    "time_to_date_string",
    "is_datetime_mysql_format",
]
