"""Tests for the allocation optimizer."""

import sqlite3

import pytest

from capacity_planner.engine import (
    NO_ASSIGNMENTS_WARNING,
    allocate,
    calculate_assignment_effective_hours,
    optimize_assignments,
)
from capacity_planner.errors import ReferenceNotFound
from capacity_planner.models import (
    PRIORITY_BLOCKER,
    PRIORITY_HIGH,
    PRIORITY_LOW,
    PRIORITY_MEDIUM,
    Assignment,
    ProjectRequirement,
)
from capacity_planner.reporting import person_capacity


def make_assignment(assignment_id, person_id, project_id, productivity=1.0, pinned=None, is_pinned=None):
    return Assignment(
        id=assignment_id,
        person_id=person_id,
        project_id=project_id,
        planning_period_id=1,
        productivity_factor=productivity,
        start_date="2024-01-01",
        end_date="2024-01-28",
        is_pinned=pinned is not None if is_pinned is None else is_pinned,
        pinned_allocation_percentage=pinned,
    )


def make_requirement(project_id, required_hours, priority=PRIORITY_MEDIUM):
    return ProjectRequirement(project_id, project_id, 1, required_hours, priority)


def by_assignment(result):
    return {calc.assignment_id: calc for calc in result.calculations}


class TestEffectiveHours:
    def test_reference_scenario(self):
        assert calculate_assignment_effective_hours(40, 100, 0.8) == pytest.approx(32.0)

    def test_linear_in_each_argument(self):
        base = calculate_assignment_effective_hours(40, 50, 0.5)
        assert calculate_assignment_effective_hours(80, 50, 0.5) == pytest.approx(2 * base)
        assert calculate_assignment_effective_hours(40, 100, 0.5) == pytest.approx(2 * base)
        assert calculate_assignment_effective_hours(40, 50, 1.0) == pytest.approx(2 * base)

    def test_zero_when_any_argument_zero(self):
        assert calculate_assignment_effective_hours(0, 50, 0.5) == 0
        assert calculate_assignment_effective_hours(40, 0, 0.5) == 0
        assert calculate_assignment_effective_hours(40, 50, 0) == 0


class TestAllocate:
    def test_no_assignments(self):
        result = allocate([], {}, {}, {})
        assert result.success
        assert result.calculations == []
        assert result.warnings == [NO_ASSIGNMENTS_WARNING]

    def test_proportional_split(self):
        assignments = [make_assignment(1, 1, 10, 0.5), make_assignment(2, 2, 10, 0.5)]
        result = allocate(assignments, {10: make_requirement(10, 40)}, {1: 60.0, 2: 20.0}, {10: "Apollo"})

        calcs = by_assignment(result)
        assert calcs[1].calculated_effective_hours == pytest.approx(30.0)
        assert calcs[2].calculated_effective_hours == pytest.approx(10.0)
        share = calcs[1].calculated_effective_hours / (
            calcs[1].calculated_effective_hours + calcs[2].calculated_effective_hours
        )
        assert share == pytest.approx(0.75)
        assert calcs[1].calculated_allocation_percentage == pytest.approx(100.0)
        assert result.infeasible_projects == []

    def test_distribution_capped_at_requirement(self):
        assignments = [make_assignment(1, 1, 10), make_assignment(2, 2, 10)]
        result = allocate(assignments, {10: make_requirement(10, 40)}, {1: 100.0, 2: 100.0}, {})

        calcs = by_assignment(result)
        assert calcs[1].calculated_allocation_percentage == pytest.approx(20.0)
        assert calcs[2].calculated_allocation_percentage == pytest.approx(20.0)
        assert sum(c.calculated_effective_hours for c in calcs.values()) == pytest.approx(40.0)

    def test_higher_priority_served_first(self):
        # the low priority project has the lower id, so only priority can put it second
        assignments = [make_assignment(1, 1, 5), make_assignment(2, 1, 6)]
        requirements = {
            5: make_requirement(5, 80, PRIORITY_LOW),
            6: make_requirement(6, 80, PRIORITY_HIGH),
        }
        result = allocate(assignments, requirements, {1: 100.0}, {5: "Low", 6: "High"})

        calcs = by_assignment(result)
        assert calcs[2].calculated_effective_hours == pytest.approx(80.0)
        assert calcs[1].calculated_effective_hours == pytest.approx(20.0)
        assert [item.project_id for item in result.infeasible_projects] == [5]
        shortfall = result.infeasible_projects[0]
        assert shortfall.shortfall == pytest.approx(60.0)
        assert shortfall.shortfall_percentage == pytest.approx(75.0)
        assert any("Low" in warning for warning in result.warnings)

    def test_priority_monotonicity(self):
        assignments = [make_assignment(1, 1, 1), make_assignment(2, 1, 2), make_assignment(3, 1, 3)]
        requirements = {
            1: make_requirement(1, 50, PRIORITY_MEDIUM),
            2: make_requirement(2, 50, PRIORITY_BLOCKER),
            3: make_requirement(3, 50, PRIORITY_LOW),
        }
        result = allocate(assignments, requirements, {1: 100.0}, {})

        shortfalls = {item.project_id: item.shortfall for item in result.infeasible_projects}
        assert shortfalls.get(2, 0.0) <= shortfalls.get(1, 0.0) <= shortfalls.get(3, 0.0)
        assert shortfalls == {3: pytest.approx(50.0)}

    def test_ties_processed_by_project_id(self):
        assignments = [make_assignment(1, 1, 8), make_assignment(2, 1, 7)]
        requirements = {7: make_requirement(7, 70), 8: make_requirement(8, 70)}
        result = allocate(assignments, requirements, {1: 100.0}, {})

        calcs = by_assignment(result)
        assert calcs[2].calculated_effective_hours == pytest.approx(70.0)
        assert calcs[1].calculated_effective_hours == pytest.approx(30.0)

    def test_remaining_capacity_never_negative(self):
        assignments = [make_assignment(i, 1, i) for i in range(1, 5)]
        requirements = {i: make_requirement(i, 60) for i in range(1, 5)}
        result = allocate(assignments, requirements, {1: 100.0}, {})

        total = sum(calc.calculated_allocation_percentage for calc in result.calculations)
        assert total <= 100.0 + 1e-9
        assert all(calc.calculated_allocation_percentage >= 0 for calc in result.calculations)

    def test_missing_requirement_warns_and_skips(self):
        assignments = [make_assignment(1, 1, 9), make_assignment(2, 1, 10)]
        result = allocate(assignments, {10: make_requirement(10, 20)}, {1: 100.0}, {})

        assert "Project ID 9 has assignments but no requirement defined" in result.warnings
        assert set(by_assignment(result)) == {2}

    def test_zero_capacity(self):
        assignments = [make_assignment(1, 1, 10)]
        result = allocate(assignments, {10: make_requirement(10, 40)}, {1: 0.0}, {10: "Apollo"})

        calcs = by_assignment(result)
        assert calcs[1].calculated_allocation_percentage == 0.0
        assert calcs[1].calculated_effective_hours == 0.0
        assert result.infeasible_projects[0].shortfall == pytest.approx(40.0)

    def test_zero_productivity(self):
        assignments = [make_assignment(1, 1, 10, productivity=0.0), make_assignment(2, 2, 10)]
        result = allocate(assignments, {10: make_requirement(10, 40)}, {1: 100.0, 2: 100.0}, {})

        calcs = by_assignment(result)
        assert calcs[1].calculated_allocation_percentage == 0.0
        assert calcs[2].calculated_effective_hours == pytest.approx(40.0)

    def test_nothing_required(self):
        result = allocate([make_assignment(1, 1, 10)], {10: make_requirement(10, 0)}, {1: 100.0}, {})

        assert by_assignment(result)[1].calculated_allocation_percentage == 0.0
        assert result.infeasible_projects == []


class TestPinning:
    def test_pinned_percentage_charged_first(self):
        assignments = [make_assignment(1, 1, 10, pinned=50.0), make_assignment(2, 1, 11)]
        requirements = {
            10: make_requirement(10, 10, PRIORITY_LOW),
            11: make_requirement(11, 100, PRIORITY_HIGH),
        }
        result = allocate(assignments, requirements, {1: 100.0}, {})

        calcs = by_assignment(result)
        assert calcs[1].calculated_allocation_percentage == 50.0
        assert calcs[1].calculated_effective_hours == pytest.approx(50.0)
        assert calcs[2].calculated_allocation_percentage == pytest.approx(50.0)
        assert [item.project_id for item in result.infeasible_projects] == [11]

    def test_pinned_hours_reduce_requirement(self):
        assignments = [make_assignment(1, 1, 10, pinned=50.0), make_assignment(2, 2, 10)]
        result = allocate(assignments, {10: make_requirement(10, 80)}, {1: 100.0, 2: 100.0}, {})

        calcs = by_assignment(result)
        assert calcs[2].calculated_effective_hours == pytest.approx(30.0)
        assert result.infeasible_projects == []

    def test_pins_over_100_percent_warn(self):
        assignments = [
            make_assignment(1, 1, 10, pinned=70.0),
            make_assignment(2, 1, 11, pinned=50.0),
            make_assignment(3, 1, 12),
        ]
        requirements = {10: make_requirement(10, 0), 11: make_requirement(11, 0), 12: make_requirement(12, 10)}
        result = allocate(assignments, requirements, {1: 100.0}, {})

        assert any("exceeds 100%" in warning for warning in result.warnings)
        assert by_assignment(result)[3].calculated_allocation_percentage == 0.0

    def test_pinned_flag_without_percentage_is_unpinned(self):
        assignments = [make_assignment(1, 1, 10, is_pinned=True)]
        result = allocate(assignments, {10: make_requirement(10, 40)}, {1: 100.0}, {})

        assert any("without a percentage" in warning for warning in result.warnings)
        assert by_assignment(result)[1].calculated_effective_hours == pytest.approx(40.0)


class TestOptimizeAssignments:
    def test_persists_calculations(self, store, seed):
        period = seed.period()
        alice = seed.person("Alice")
        bob = seed.person("Bob")
        project = seed.project("Apollo", period, 120, PRIORITY_HIGH)
        first = seed.assignment(alice, project, period, 0.5)
        second = seed.assignment(bob, project, period, 1.0)

        result = optimize_assignments(store, period.id)

        assert len(result.calculations) == 2
        saved_first = store.get_assignment(first.id)
        saved_second = store.get_assignment(second.id)
        assert saved_first.last_calculated_at is not None
        assert saved_first.calculated_effective_hours + saved_second.calculated_effective_hours == pytest.approx(
            120.0
        )
        # max contributions 80h and 160h
        assert saved_second.calculated_effective_hours == pytest.approx(80.0)

    def test_idempotent(self, store, seed):
        period = seed.period()
        people = [seed.person() for _ in range(3)]
        projects = [
            seed.project(period=period, required_hours=hours, priority=priority)
            for hours, priority in ((200, PRIORITY_HIGH), (150, PRIORITY_MEDIUM), (90, PRIORITY_MEDIUM))
        ]
        for index, person in enumerate(people):
            for project in projects[index:]:
                seed.assignment(person, project, period, 0.8)

        optimize_assignments(store, period.id)
        first = [
            (a.calculated_allocation_percentage, a.calculated_effective_hours)
            for a in store.list_assignments(planning_period_id=period.id)
        ]
        optimize_assignments(store, period.id)
        second = [
            (a.calculated_allocation_percentage, a.calculated_effective_hours)
            for a in store.list_assignments(planning_period_id=period.id)
        ]
        assert first == second

    def test_empty_period(self, store, seed):
        period = seed.period()
        result = optimize_assignments(store, period.id)
        assert result.warnings == [NO_ASSIGNMENTS_WARNING]

    def test_missing_period(self, store):
        with pytest.raises(ReferenceNotFound):
            optimize_assignments(store, 404)

    def test_failed_write_propagates_after_earlier_rows(self, store, seed, monkeypatch):
        period = seed.period()
        alice, bob = seed.person("Alice"), seed.person("Bob")
        project = seed.project("Apollo", period, 120)
        seed.assignment(alice, project, period)
        seed.assignment(bob, project, period)

        saved = []
        original = store.save_calculation

        def flaky_save(assignment_id, *args):
            if saved:
                raise sqlite3.OperationalError("disk I/O error")
            original(assignment_id, *args)
            saved.append(assignment_id)

        monkeypatch.setattr(store, "save_calculation", flaky_save)
        with pytest.raises(sqlite3.OperationalError):
            optimize_assignments(store, period.id)

        written = {a.id: a.last_calculated_at for a in store.list_assignments(planning_period_id=period.id)}
        assert len(saved) == 1
        assert written[saved[0]] is not None
        assert [value for key, value in written.items() if key != saved[0]] == [None]

    def test_rerun_after_requirement_removed(self, store, seed):
        period = seed.period()
        person = seed.person()
        project = seed.project("Apollo", period, 80)
        assignment = seed.assignment(person, project, period)
        optimize_assignments(store, period.id)
        assert store.get_assignment(assignment.id).calculated_allocation_percentage == pytest.approx(50.0)

        store.delete_requirement(store.get_requirement(project.id, period.id).id)
        result = optimize_assignments(store, period.id)

        assert f"Project ID {project.id} has assignments but no requirement defined" in result.warnings
        assert store.get_assignment(assignment.id).calculated_allocation_percentage is None
        assert person_capacity(store, person.id, period.id).utilization_percentage == 0.0

    def test_same_availability_across_assignments(self, store, seed):
        period = seed.period()
        person = seed.person()
        first = seed.project(period=period, required_hours=40)
        second = seed.project(period=period, required_hours=40)
        seed.assignment(person, first, period)
        seed.assignment(person, second, period)

        optimize_assignments(store, period.id)

        for assignment in store.list_assignments(planning_period_id=period.id):
            assert assignment.calculated_allocation_percentage == pytest.approx(25.0)
            assert assignment.calculated_effective_hours == pytest.approx(40.0)
