"""
Clear Ledger - Period & Date Helpers

Pure date arithmetic shared by the dashboard, the goal projector and the
scheduled payment lifecycle. All dates travel as calendar-date strings
(YYYY-MM-DD); no timezone conversion is performed anywhere.

Functions:
- resolve_period: symbolic period name -> (start, end) date range
- previous_period: the range of equal length right before a given range
- percent_change / trend_direction: period-over-period comparison
- advance_date: next due date for a recurring frequency
- monthly_schedule: N monthly-spaced dates from an anchor date
- months_between / days_until: distances used by goal and payment views

License: MIT
"""

import datetime
import math

from dateutil.relativedelta import relativedelta

DATE_FORMAT = '%Y-%m-%d'

PERIODS = ('today', 'week', 'month', 'quarter', 'year')
DEFAULT_PERIOD = 'month'

# Recurring frequency -> offset added to the current due date.
# relativedelta clamps month overflow to the last day of the target month.
FREQUENCY_STEPS = {
    'weekly': relativedelta(days=7),
    'biweekly': relativedelta(days=14),
    'monthly': relativedelta(months=1),
    'quarterly': relativedelta(months=3),
    'yearly': relativedelta(years=1),
}

# Recurring transaction templates may also repeat daily
TEMPLATE_STEPS = dict(FREQUENCY_STEPS, daily=relativedelta(days=1))


def to_date(value):
    """Coerce a date, datetime or 'YYYY-MM-DD...' string to a datetime.date."""
    if value is None:
        return None
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    return datetime.datetime.strptime(str(value)[:10], DATE_FORMAT).date()


def to_date_str(value):
    """Format a date-like value as 'YYYY-MM-DD'."""
    if value is None:
        return None
    return to_date(value).strftime(DATE_FORMAT)


def resolve_period(period, today):
    """
    Map a symbolic period to an inclusive calendar date range ending today.

    Args:
        period (str): One of today, week, month, quarter, year. Anything else
                      resolves as 'month'.
        today (date|str): Reference day

    Returns:
        tuple: (start, end) as 'YYYY-MM-DD' strings, end == today

    Example:
        resolve_period('month', '2025-03-18')  # ('2025-03-01', '2025-03-18')
    """
    today = to_date(today)

    if period == 'today':
        start = today
    elif period == 'week':
        start = today - datetime.timedelta(days=7)
    elif period == 'quarter':
        start = today - relativedelta(months=3)
    elif period == 'year':
        start = today.replace(month=1, day=1)
    else:
        start = today.replace(day=1)

    return to_date_str(start), to_date_str(today)


def previous_period(start, end):
    """
    Return the range of equal length immediately before [start, end].

    The previous range is [start - length, start - 1 day] with length measured
    as end - start. Single-day periods use a length of one day so that "today"
    is compared with yesterday instead of an empty range.
    """
    start = to_date(start)
    end = to_date(end)
    length = max((end - start).days, 1)

    previous_start = start - datetime.timedelta(days=length)
    previous_end = start - datetime.timedelta(days=1)
    return to_date_str(previous_start), to_date_str(previous_end)


def percent_change(current, previous):
    """Whole-number percentage change, rounded half up. 0 when previous is 0."""
    if not previous or previous <= 0:
        return 0
    return int(math.floor((current - previous) / previous * 100 + 0.5))


def trend_direction(change):
    if change > 0:
        return 'up'
    if change < 0:
        return 'down'
    return 'stable'


def advance_date(due_date, frequency, steps=FREQUENCY_STEPS):
    """
    Compute the next due date of a recurring payment.

    Weekly and bi-weekly add 7 and 14 days. Monthly, quarterly and yearly add
    calendar months; when the day does not exist in the target month the
    result is clamped to that month's last day (2025-01-31 monthly gives
    2025-02-28). Recurring transaction templates pass steps=TEMPLATE_STEPS,
    which adds daily.

    Raises:
        ValueError: Unknown frequency
    """
    try:
        step = steps[frequency]
    except KeyError:
        raise ValueError(f"Unknown recurring frequency: {frequency!r}")
    return to_date_str(to_date(due_date) + step)


def monthly_schedule(anchor, count, offset=0):
    """
    Return `count` monthly-spaced dates starting `offset` months after anchor.

    Every date is computed from the anchor itself so end-of-month anchors do
    not drift (Jan 31 -> Feb 28 -> Mar 31).
    """
    anchor = to_date(anchor)
    return [to_date_str(anchor + relativedelta(months=i + offset)) for i in range(count)]


def months_between(today, target):
    """Calendar month difference between two dates (may be negative)."""
    today = to_date(today)
    target = to_date(target)
    return (target.year - today.year) * 12 + (target.month - today.month)


def days_until(due_date, today):
    return (to_date(due_date) - to_date(today)).days
