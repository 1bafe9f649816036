from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from itertools import groupby
from typing import Dict, List, Mapping, Sequence, Tuple

from .availability import calculate_person_available_hours
from .models import (
    PRIORITY_LABELS,
    Assignment,
    AssignmentCalculation,
    OptimizationResult,
    ProjectRequirement,
    ProjectShortfall,
)
from .store import now_iso

logger = logging.getLogger(__name__)

EPSILON = 1e-9
NO_ASSIGNMENTS_WARNING = "No assignments found for this planning period"


@dataclass
class PersonState:
    available_hours: float
    remaining_percentage: float = 100.0

    def max_contribution(self, productivity_factor: float) -> float:
        return self.available_hours * (self.remaining_percentage / 100.0) * productivity_factor

    def commit(self, percentage: float) -> None:
        self.remaining_percentage = max(0.0, self.remaining_percentage - percentage)


def calculate_assignment_effective_hours(
    available_hours: float, allocation_percentage: float, productivity_factor: float
) -> float:
    return available_hours * (allocation_percentage / 100.0) * productivity_factor


def _apply_pins(
    assignments: Sequence[Assignment],
    states: Dict[int, PersonState],
    result: OptimizationResult,
) -> Dict[int, float]:
    pinned_pct_by_person: Dict[int, float] = defaultdict(float)
    pinned_hours_by_project: Dict[int, float] = defaultdict(float)
    for assignment in assignments:
        if assignment.is_pinned and assignment.pinned_allocation_percentage is None:
            result.warnings.append(
                f"Assignment ID {assignment.id} is pinned without a percentage; it is allocated proportionally"
            )
            continue
        if not assignment.has_pin:
            continue
        state = states[assignment.person_id]
        percentage = float(assignment.pinned_allocation_percentage)
        hours = calculate_assignment_effective_hours(
            state.available_hours, percentage, assignment.productivity_factor
        )
        result.calculations.append(AssignmentCalculation(assignment.id, percentage, hours))
        pinned_pct_by_person[assignment.person_id] += percentage
        pinned_hours_by_project[assignment.project_id] += hours
    for person_id in sorted(pinned_pct_by_person):
        pinned = pinned_pct_by_person[person_id]
        if pinned > 100.0 + EPSILON:
            result.warnings.append(
                f"Person ID {person_id} has pinned allocations totalling {pinned:.1f}%, which exceeds 100%"
            )
        states[person_id].commit(pinned)
    return pinned_hours_by_project


def _distribute_project(
    requirement: ProjectRequirement,
    project_name: str,
    assignments: Sequence[Assignment],
    states: Dict[int, PersonState],
    pinned_hours: float,
    result: OptimizationResult,
) -> None:
    required = requirement.required_hours
    flexible = [assignment for assignment in assignments if not assignment.has_pin]
    contributions = [
        (assignment, states[assignment.person_id].max_contribution(assignment.productivity_factor))
        for assignment in flexible
    ]
    total_available = sum(contribution for _, contribution in contributions)
    achieved = pinned_hours

    if total_available > 0:
        to_distribute = min(max(0.0, required - pinned_hours), total_available)
        for assignment, contribution in contributions:
            state = states[assignment.person_id]
            share = (contribution / total_available) * to_distribute
            percentage = 0.0
            if assignment.productivity_factor > 0 and state.available_hours > 0:
                percentage = (share / assignment.productivity_factor) / state.available_hours * 100.0
                percentage = min(percentage, state.remaining_percentage)
            hours = calculate_assignment_effective_hours(
                state.available_hours, percentage, assignment.productivity_factor
            )
            state.commit(percentage)
            achieved += hours
            result.calculations.append(AssignmentCalculation(assignment.id, percentage, hours))
            logger.debug(
                "Assignment %s (person %s): %.2f%% -> %.2fh effective",
                assignment.id,
                assignment.person_id,
                percentage,
                hours,
            )
    else:
        for assignment in flexible:
            result.calculations.append(AssignmentCalculation(assignment.id, 0.0, 0.0))

    if achieved < required - EPSILON:
        shortfall = required - achieved
        shortfall_pct = shortfall / required * 100.0
        result.infeasible_projects.append(
            ProjectShortfall(
                project_id=requirement.project_id,
                project_name=project_name,
                required_hours=required,
                available_effective_hours=achieved,
                shortfall=shortfall,
                shortfall_percentage=shortfall_pct,
            )
        )
        message = (
            f"Project '{project_name}' is understaffed: {shortfall:.1f}h short "
            f"({shortfall_pct:.1f}% of {required:.1f}h required)"
        )
        result.warnings.append(message)
        logger.warning(message)


def allocate(
    assignments: Sequence[Assignment],
    requirements: Mapping[int, ProjectRequirement],
    available_hours: Mapping[int, float],
    project_names: Mapping[int, str],
) -> OptimizationResult:
    """Priority-tiered proportional allocation over one planning period.

    ``available_hours`` maps each assigned person to the hours computed for
    the period. Pinned assignments keep their percentage and are charged to
    the person before anything else. Projects are then served from the
    highest priority down; within a project the outstanding hours are split
    in proportion to each person's remaining contribution.
    """
    result = OptimizationResult()
    if not assignments:
        result.warnings.append(NO_ASSIGNMENTS_WARNING)
        return result

    ordered = sorted(assignments, key=lambda assignment: assignment.id)
    states = {
        person_id: PersonState(available_hours=float(available_hours[person_id]))
        for person_id in sorted({assignment.person_id for assignment in ordered})
    }
    pinned_hours_by_project = _apply_pins(ordered, states, result)

    by_project: Dict[int, List[Assignment]] = defaultdict(list)
    for assignment in ordered:
        by_project[assignment.project_id].append(assignment)

    plans: List[Tuple[ProjectRequirement, List[Assignment]]] = []
    for project_id in sorted(by_project):
        requirement = requirements.get(project_id)
        if requirement is None:
            result.warnings.append(f"Project ID {project_id} has assignments but no requirement defined")
            continue
        plans.append((requirement, by_project[project_id]))
    plans.sort(key=lambda item: (-item[0].priority, item[0].project_id))

    for priority, tier in groupby(plans, key=lambda item: item[0].priority):
        tier = list(tier)
        logger.debug(
            "Allocating %s tier: %d project(s)", PRIORITY_LABELS.get(priority, priority), len(tier)
        )
        for requirement, project_assignments in tier:
            _distribute_project(
                requirement,
                project_names.get(requirement.project_id, f"Project {requirement.project_id}"),
                project_assignments,
                states,
                pinned_hours_by_project.get(requirement.project_id, 0.0),
                result,
            )
    return result


def optimize_assignments(store, planning_period_id: int) -> OptimizationResult:
    """Run the allocation for one planning period and persist the calculated fields.

    Lookups that fail raise before anything is written. Rows are then saved
    one at a time; a failing write propagates and leaves earlier rows updated.
    """
    period = store.get_planning_period(planning_period_id)
    assignments = store.list_assignments(planning_period_id=planning_period_id)
    logger.info("Optimizing planning period %s (%d assignments)", planning_period_id, len(assignments))
    if not assignments:
        return allocate([], {}, {}, {})

    requirements = {req.project_id: req for req in store.list_requirements(planning_period_id)}
    project_names = {project.id: project.name for project in store.list_projects()}
    available_hours: Dict[int, float] = {}
    for person_id in sorted({assignment.person_id for assignment in assignments}):
        person = store.get_person(person_id)
        available_hours[person_id] = calculate_person_available_hours(store, person, period).available_hours

    result = allocate(assignments, requirements, available_hours, project_names)

    calculated_at = now_iso()
    for calculation in result.calculations:
        store.save_calculation(
            calculation.assignment_id,
            calculation.calculated_allocation_percentage,
            calculation.calculated_effective_hours,
            calculated_at,
        )
    logger.info(
        "Planning period %s: %d calculations saved, %d understaffed project(s), %d warning(s)",
        planning_period_id,
        len(result.calculations),
        len(result.infeasible_projects),
        len(result.warnings),
    )
    return result
