from __future__ import annotations

import logging
from typing import Dict, List, Mapping, Sequence

import pandas as pd

from .availability import calculate_person_available_hours
from .errors import ReferenceNotFound
from .models import (
    PRIORITY_LABELS,
    VIABILITY_THRESHOLD_PCT,
    Assignment,
    AssignmentSummary,
    AvailabilityBreakdown,
    CapacityOverview,
    Person,
    PersonAssignmentSummary,
    PersonCapacity,
    PlanningPeriod,
    Project,
    ProjectRequirement,
    ProjectStaffing,
)

logger = logging.getLogger(__name__)

PEOPLE_COLUMNS = [
    "person_id",
    "person_name",
    "person_email",
    "available_hours",
    "base_hours",
    "absence_hours",
    "holiday_hours",
    "overhead_hours",
    "optional_overhead_hours",
    "allocated_hours",
    "effective_hours",
    "utilization_pct",
    "over_committed",
    "projects",
]

PROJECT_COLUMNS = [
    "project_id",
    "project_name",
    "priority",
    "priority_label",
    "required_hours",
    "allocated_hours",
    "effective_hours",
    "staffing_pct",
    "viable",
    "shortfall",
    "people",
]


def utilization_percentage(allocated_hours: float, available_hours: float) -> float:
    return allocated_hours / available_hours * 100.0 if available_hours > 0 else 0.0


def staffing_percentage(effective_hours: float, required_hours: float) -> float:
    return effective_hours / required_hours * 100.0 if required_hours > 0 else 0.0


def _allocated_hours(breakdown: AvailabilityBreakdown, assignment: Assignment) -> float:
    return breakdown.available_hours * assignment.effective_allocation_percentage() / 100.0


def _build_person_capacity(
    person: Person,
    breakdown: AvailabilityBreakdown,
    assignments: Sequence[Assignment],
    project_names: Mapping[int, str],
) -> PersonCapacity:
    summaries: List[AssignmentSummary] = []
    total_allocated = 0.0
    total_effective = 0.0
    for assignment in assignments:
        total_allocated += _allocated_hours(breakdown, assignment)
        total_effective += assignment.effective_hours()
        summaries.append(
            AssignmentSummary(
                assignment_id=assignment.id,
                project_name=project_names.get(assignment.project_id, f"Project {assignment.project_id}"),
                allocation_percentage=assignment.effective_allocation_percentage(),
                effective_hours=assignment.effective_hours(),
                is_pinned=assignment.has_pin,
            )
        )
    utilization = utilization_percentage(total_allocated, breakdown.available_hours)
    return PersonCapacity(
        person_id=person.id,
        person_name=person.name,
        person_email=person.email,
        breakdown=breakdown,
        total_allocated_hours=total_allocated,
        total_effective_hours=total_effective,
        utilization_percentage=utilization,
        is_over_committed=utilization > 100.0,
        assignments=summaries,
    )


def _build_project_staffing(
    project: Project,
    requirement: ProjectRequirement,
    assignments: Sequence[Assignment],
    people: Mapping[int, Person],
    breakdowns: Mapping[int, AvailabilityBreakdown],
    viability_threshold_pct: float,
) -> ProjectStaffing:
    assigned: List[PersonAssignmentSummary] = []
    total_allocated = 0.0
    total_effective = 0.0
    for assignment in assignments:
        breakdown = breakdowns[assignment.person_id]
        total_allocated += _allocated_hours(breakdown, assignment)
        total_effective += assignment.effective_hours()
        assigned.append(
            PersonAssignmentSummary(
                assignment_id=assignment.id,
                person_name=people[assignment.person_id].name,
                allocation_percentage=assignment.effective_allocation_percentage(),
                productivity_factor=assignment.productivity_factor,
                effective_hours=assignment.effective_hours(),
                breakdown=breakdown,
                is_pinned=assignment.has_pin,
            )
        )
    required = requirement.required_hours
    staffing = staffing_percentage(total_effective, required)
    # nothing required means nothing missing
    is_viable = required <= 0 or staffing >= viability_threshold_pct
    shortfall = 0.0 if is_viable else max(0.0, required - total_effective)
    return ProjectStaffing(
        project_id=project.id,
        project_name=project.name,
        priority=requirement.priority,
        required_hours=required,
        total_allocated_hours=total_allocated,
        total_effective_hours=total_effective,
        staffing_percentage=staffing,
        is_viable=is_viable,
        shortfall=shortfall,
        assigned_people=assigned,
    )


class _BreakdownCache:
    """Availability per person, computed at most once per report."""

    def __init__(self, store, period: PlanningPeriod) -> None:
        self.store = store
        self.period = period
        self._values: Dict[int, AvailabilityBreakdown] = {}

    def __getitem__(self, person_id: int) -> AvailabilityBreakdown:
        if person_id not in self._values:
            person = self.store.get_person(person_id)
            self._values[person_id] = calculate_person_available_hours(self.store, person, self.period)
        return self._values[person_id]


def capacity_overview(
    store,
    planning_period_id: int,
    *,
    viability_threshold_pct: float = VIABILITY_THRESHOLD_PCT,
) -> CapacityOverview:
    period = store.get_planning_period(planning_period_id)
    assignments = store.list_assignments(planning_period_id=planning_period_id)
    people = store.list_people()
    projects = {project.id: project for project in store.list_projects()}
    project_names = {project_id: project.name for project_id, project in projects.items()}
    breakdowns = _BreakdownCache(store, period)

    people_capacity = [
        _build_person_capacity(
            person,
            breakdowns[person.id],
            [assignment for assignment in assignments if assignment.person_id == person.id],
            project_names,
        )
        for person in people
    ]

    people_by_id = {person.id: person for person in people}
    requirements = sorted(
        store.list_requirements(planning_period_id),
        key=lambda req: (-req.priority, projects[req.project_id].name, req.project_id),
    )
    project_staffing = [
        _build_project_staffing(
            projects[requirement.project_id],
            requirement,
            [assignment for assignment in assignments if assignment.project_id == requirement.project_id],
            people_by_id,
            breakdowns,
            viability_threshold_pct,
        )
        for requirement in requirements
    ]

    overview = CapacityOverview(
        total_people=len(people_capacity),
        total_projects=len(project_staffing),
        over_committed_people=sum(1 for item in people_capacity if item.is_over_committed),
        under_staffed_projects=sum(1 for item in project_staffing if not item.is_viable),
        people_capacity=people_capacity,
        project_staffing=project_staffing,
    )
    logger.info(
        "Capacity overview for period %s: %d people (%d over-committed), %d projects (%d under-staffed)",
        planning_period_id,
        overview.total_people,
        overview.over_committed_people,
        overview.total_projects,
        overview.under_staffed_projects,
    )
    return overview


def person_capacity(store, person_id: int, planning_period_id: int) -> PersonCapacity:
    person = store.get_person(person_id)
    period = store.get_planning_period(planning_period_id)
    breakdown = calculate_person_available_hours(store, person, period)
    assignments = store.list_assignments(planning_period_id=planning_period_id, person_id=person_id)
    project_names = {project.id: project.name for project in store.list_projects()}
    return _build_person_capacity(person, breakdown, assignments, project_names)


def project_staffing(
    store,
    project_id: int,
    planning_period_id: int,
    *,
    viability_threshold_pct: float = VIABILITY_THRESHOLD_PCT,
) -> ProjectStaffing:
    project = store.get_project(project_id)
    period = store.get_planning_period(planning_period_id)
    requirement = store.get_requirement(project_id, planning_period_id)
    if requirement is None:
        raise ReferenceNotFound("project requirement", f"{project_id}/{planning_period_id}")
    assignments = store.list_assignments(planning_period_id=planning_period_id, project_id=project_id)
    people = {person.id: person for person in store.list_people()}
    return _build_project_staffing(
        project,
        requirement,
        assignments,
        people,
        _BreakdownCache(store, period),
        viability_threshold_pct,
    )


def _join(values: Sequence[str]) -> str:
    return ";".join(sorted(set(values)))


def people_frame(overview: CapacityOverview) -> pd.DataFrame:
    rows = []
    for item in overview.people_capacity:
        breakdown = item.breakdown
        rows.append(
            {
                "person_id": item.person_id,
                "person_name": item.person_name,
                "person_email": item.person_email,
                "available_hours": round(breakdown.available_hours, 2),
                "base_hours": round(breakdown.base_hours, 2),
                "absence_hours": round(breakdown.absence_hours, 2),
                "holiday_hours": round(breakdown.holiday_hours, 2),
                "overhead_hours": round(breakdown.overhead_hours, 2),
                "optional_overhead_hours": round(breakdown.optional_overhead_hours, 2),
                "allocated_hours": round(item.total_allocated_hours, 2),
                "effective_hours": round(item.total_effective_hours, 2),
                "utilization_pct": round(item.utilization_percentage, 2),
                "over_committed": item.is_over_committed,
                "projects": _join([summary.project_name for summary in item.assignments]),
            }
        )
    return pd.DataFrame(rows, columns=PEOPLE_COLUMNS)


def projects_frame(overview: CapacityOverview) -> pd.DataFrame:
    rows = []
    for item in overview.project_staffing:
        rows.append(
            {
                "project_id": item.project_id,
                "project_name": item.project_name,
                "priority": item.priority,
                "priority_label": PRIORITY_LABELS.get(item.priority, str(item.priority)),
                "required_hours": round(item.required_hours, 2),
                "allocated_hours": round(item.total_allocated_hours, 2),
                "effective_hours": round(item.total_effective_hours, 2),
                "staffing_pct": round(item.staffing_percentage, 2),
                "viable": item.is_viable,
                "shortfall": round(item.shortfall, 2),
                "people": _join([summary.person_name for summary in item.assigned_people]),
            }
        )
    return pd.DataFrame(rows, columns=PROJECT_COLUMNS)


def overview_to_dict(overview: CapacityOverview) -> Dict[str, object]:
    """JSON-ready view of an overview; frames are used so numbers match the CSV export."""
    return {
        "total_people": overview.total_people,
        "total_projects": overview.total_projects,
        "over_committed_people": overview.over_committed_people,
        "under_staffed_projects": overview.under_staffed_projects,
        "people_capacity": people_frame(overview).to_dict(orient="records"),
        "project_staffing": projects_frame(overview).to_dict(orient="records"),
    }
