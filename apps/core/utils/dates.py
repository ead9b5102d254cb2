import calendar
from datetime import date, timedelta

DAY_STEPS = {
    'weekly': 7,
    'biweekly': 14,
}
MONTH_STEPS = {
    'monthly': 1,
    'quarterly': 3,
    'yearly': 12,
}


def add_months(value: date, months: int) -> date:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def occurrence_date(start: date, frequency: str, index: int):
    """Date of the ``index``-th occurrence of a schedule starting on ``start``.

    Month based frequencies keep the starting day, clamped to the end of
    shorter months. Returns None past the first occurrence of a one-off.
    """
    if index == 0:
        return start
    if frequency in DAY_STEPS:
        return start + timedelta(days=DAY_STEPS[frequency] * index)
    if frequency in MONTH_STEPS:
        return add_months(start, MONTH_STEPS[frequency] * index)
    return None
