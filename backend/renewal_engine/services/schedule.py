"""Billing schedule arithmetic"""
from datetime import datetime

from dateutil.relativedelta import relativedelta

from renewal_engine.models import IntervalUnit


def interval_delta(count: int, unit: str) -> relativedelta:
    """Calendar-aware delta for `count` units

    Month and year steps clamp to the last day of shorter months
    (Jan 31 + 1 month = Feb 28/29).
    """
    if count < 1:
        raise ValueError(f"Interval count must be positive, got {count}")
    unit = IntervalUnit(unit)
    if unit == IntervalUnit.DAY:
        return relativedelta(days=count)
    if unit == IntervalUnit.WEEK:
        return relativedelta(weeks=count)
    if unit == IntervalUnit.MONTH:
        return relativedelta(months=count)
    return relativedelta(years=count)


def advance(when: datetime, count: int, unit: str) -> datetime:
    return when + interval_delta(count, unit)


def next_billing_date(subscription, now: datetime) -> datetime:
    """Date of the next charge after a successful renewal at `now`"""
    return advance(now, subscription.interval_count, subscription.interval_unit)


def first_billing_date(subscription) -> datetime:
    """First renewal date: end of trial, or one period after start"""
    if subscription.has_trial:
        return advance(subscription.start_date, subscription.trial_interval_count, subscription.trial_interval_unit)
    return advance(subscription.start_date, subscription.interval_count, subscription.interval_unit)
