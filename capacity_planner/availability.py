from __future__ import annotations

import logging
from datetime import date
from typing import List, Sequence, Tuple

from .models import Absence, AvailabilityBreakdown, Holiday, OverheadTask, Person, PlanningPeriod
from .working_days import (
    count_working_days,
    inclusive_days,
    is_working_day,
    iter_days,
    overlap,
    parse_iso_date,
    parse_working_days,
    unknown_working_day_tokens,
)

logger = logging.getLogger(__name__)


def calculate_available_hours(
    base_hours: float,
    absence_hours: float,
    holiday_hours: float,
    required_overhead_hours: float,
    optional_overhead_hours: float,
    optional_weight: float,
) -> float:
    remaining = (
        base_hours
        - absence_hours
        - holiday_hours
        - required_overhead_hours
        - optional_overhead_hours * optional_weight
    )
    return max(0.0, remaining)


def _absence_spans(absences: Sequence[Absence]) -> List[Tuple[date, date]]:
    return [
        (parse_iso_date(absence.start_date, "absence.start_date"), parse_iso_date(absence.end_date, "absence.end_date"))
        for absence in absences
    ]


def _count_holiday_days(
    holidays: Sequence[Holiday],
    period_start: date,
    period_end: date,
    working_days: frozenset,
    absence_spans: Sequence[Tuple[date, date]],
) -> int:
    counted = 0
    for holiday in holidays:
        window = overlap(
            parse_iso_date(holiday.start_date, "holiday.start_date"),
            parse_iso_date(holiday.end_date, "holiday.end_date"),
            period_start,
            period_end,
        )
        if window is None:
            continue
        for day in iter_days(*window):
            if not is_working_day(day, working_days):
                continue
            if any(start <= day <= end for start, end in absence_spans):
                continue
            counted += 1
    return counted


def compute_breakdown(
    person: Person,
    period: PlanningPeriod,
    absences: Sequence[Absence],
    holidays: Sequence[Holiday],
    overhead_tasks: Sequence[OverheadTask],
) -> AvailabilityBreakdown:
    """Net working-hour budget of ``person`` over ``period``.

    ``absences`` and ``holidays`` are expected to already be the rows that
    overlap the period; holidays are only counted on the person's working
    days and never on a day already covered by an absence. Optional overhead
    is reported raw but deducted at its task weight.
    """
    period_start = parse_iso_date(period.start_date, "period.start_date")
    period_end = parse_iso_date(period.end_date, "period.end_date")
    total_weeks = inclusive_days(period_start, period_end) / 7.0

    unknown = unknown_working_day_tokens(person.working_days)
    if unknown:
        logger.warning(
            "Person %s has unrecognised working days %s; they still count toward hours per day",
            person.id,
            ", ".join(unknown),
        )
    working_days_count = count_working_days(person.working_days)
    working_days = total_weeks * working_days_count
    hours_per_day = person.available_hours_per_week / working_days_count if working_days_count else 0.0
    base_hours = working_days * hours_per_day

    absence_days = sum(absence.days for absence in absences)
    absence_hours = absence_days * hours_per_day

    holiday_days = 0
    if person.country_id is not None:
        holiday_days = _count_holiday_days(
            holidays,
            period_start,
            period_end,
            parse_working_days(person.working_days),
            _absence_spans(absences),
        )
    holiday_hours = holiday_days * hours_per_day

    overhead_hours = 0.0
    optional_overhead_hours = 0.0
    weighted_optional_hours = 0.0
    for task in overhead_tasks:
        if task.effort_period == "weekly":
            task_hours = task.effort_hours * total_weeks
        elif task.effort_period == "daily":
            task_hours = task.effort_hours * working_days
        else:
            task_hours = 0.0
        if task.is_optional:
            optional_overhead_hours += task_hours
            weighted_optional_hours += task_hours * task.optional_weight
        else:
            overhead_hours += task_hours

    # weights differ per task, so the weighted sum is passed at weight 1
    available_hours = calculate_available_hours(
        base_hours, absence_hours, holiday_hours, overhead_hours, weighted_optional_hours, 1.0
    )
    logger.debug(
        "Person %s period %s: base=%.2f absence=%.2f holiday=%.2f overhead=%.2f optional=%.2f -> %.2f",
        person.id,
        period.id,
        base_hours,
        absence_hours,
        holiday_hours,
        overhead_hours,
        optional_overhead_hours,
        available_hours,
    )
    return AvailabilityBreakdown(
        available_hours=available_hours,
        base_hours=base_hours,
        absence_days=absence_days,
        absence_hours=absence_hours,
        holiday_days=holiday_days,
        holiday_hours=holiday_hours,
        overhead_hours=overhead_hours,
        optional_overhead_hours=optional_overhead_hours,
    )


def calculate_person_available_hours(store, person: Person, period: PlanningPeriod) -> AvailabilityBreakdown:
    """Load the person's absences, holidays and overhead for ``period`` from ``store`` and compute the breakdown."""
    window = (period.start_date, period.end_date)
    with store.transaction():
        absences = store.list_absences(person.id, overlapping=window)
        holidays = (
            store.list_holidays(person.country_id, overlapping=window) if person.country_id is not None else []
        )
        overhead_tasks = store.overhead_tasks_for(person.id, period.id)
    return compute_breakdown(person, period, absences, holidays, overhead_tasks)
