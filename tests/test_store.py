"""Tests for the SQLite record store and its command-layer validation."""

import pytest

from capacity_planner.errors import DateParseError, ReferenceNotFound, ValidationError
from capacity_planner.models import PRIORITY_BLOCKER, PRIORITY_MEDIUM
from capacity_planner.store import CALCULATED_FIELDS, CapacityStore


def calculated(store, assignment_id):
    assignment = store.get_assignment(assignment_id)
    return tuple(getattr(assignment, name) for name in CALCULATED_FIELDS)


class TestEntities:
    def test_get_missing_raises(self, store):
        with pytest.raises(ReferenceNotFound) as excinfo:
            store.get_person(42)
        assert excinfo.value.entity_id == 42

    def test_person_round_trip(self, store, seed):
        country = seed.country("fr", "France")
        person = seed.person("Ada", 32.0, "Mon,Tue,Wed,Thu", country)
        assert store.get_person(person.id) == person
        assert person.country_id == country.id
        assert store.get_country_by_code("FR").id == country.id

    def test_person_rejects_unknown_working_days(self, store):
        with pytest.raises(ValidationError):
            store.create_person("Ada", "ada@example.com", 40, "Mon,Funday")

    def test_update_person(self, store, seed):
        person = seed.person()
        updated = store.update_person(person.id, available_hours_per_week=20.0, working_days="Mon,Tue")
        assert updated.available_hours_per_week == 20.0
        with pytest.raises(ValidationError):
            store.update_person(person.id, working_days="Someday")
        with pytest.raises(ValidationError):
            store.update_person(person.id, id=9)

    def test_period_validation(self, store):
        with pytest.raises(ValidationError):
            store.create_planning_period("2024-02-01", "2024-01-01")
        with pytest.raises(DateParseError):
            store.create_planning_period("2024-01-01", "2024-01-32")

    def test_overlap_filters(self, store, seed):
        person = seed.person()
        store.create_absence(person.id, "2023-12-28", "2024-01-02", 3)
        store.create_absence(person.id, "2024-01-31", "2024-02-02", 2)
        store.create_absence(person.id, "2024-02-05", "2024-02-06", 2)

        inside = store.list_absences(person.id, overlapping=("2024-01-01", "2024-01-31"))
        assert [absence.days for absence in inside] == [3, 2]
        assert len(store.list_absences(person.id)) == 3

    def test_overlapping_holiday_rejected(self, store, seed):
        country = seed.country()
        store.create_holiday(country.id, "2024-12-24", "2024-12-26", "Christmas")
        with pytest.raises(ValidationError):
            store.create_holiday(country.id, "2024-12-26", "2024-12-26", "Boxing Day")
        other = seed.country("AT", "Austria")
        store.create_holiday(other.id, "2024-12-26", "2024-12-26", "Stefanitag")

    def test_overhead_task_defaults_weight(self):
        with CapacityStore(":memory:", default_optional_weight=0.25) as db:
            job = db.create_job("Lead")
            task = db.create_overhead_task(job.id, "Hiring", 2.0, "weekly", is_optional=True)
            assert task.optional_weight == 0.25
            assert task.is_optional is True
            with pytest.raises(ValidationError):
                db.create_overhead_task(job.id, "Bad", 1.0, "monthly")
            with pytest.raises(ValidationError):
                db.create_overhead_task(job.id, "Bad", 1.0, "daily", optional_weight=1.5)


class TestRequirements:
    def test_upsert_replaces(self, store, seed):
        period = seed.period()
        project = seed.project(period=period, required_hours=100)
        store.upsert_requirement(project.id, period.id, 150, PRIORITY_BLOCKER)

        requirement = store.get_requirement(project.id, period.id)
        assert requirement.required_hours == 150
        assert requirement.priority_label == "Blocker"
        assert len(store.list_requirements(period.id)) == 1

    def test_rejects_bad_values(self, store, seed):
        period = seed.period()
        project = seed.project()
        with pytest.raises(ValidationError):
            store.upsert_requirement(project.id, period.id, -1)
        with pytest.raises(ValidationError):
            store.upsert_requirement(project.id, period.id, 10, priority=15)

    def test_batch_is_all_or_nothing(self, store, seed):
        period = seed.period()
        project = seed.project()
        items = [
            {"project_id": project.id, "required_hours": 10},
            {"project_id": 999, "required_hours": 20},
        ]
        with pytest.raises(ReferenceNotFound):
            store.batch_upsert_requirements(period.id, items)
        assert store.list_requirements(period.id) == []

    def test_batch_default_priority(self, store, seed):
        period = seed.period()
        first, second = seed.project(), seed.project()
        saved = store.batch_upsert_requirements(
            period.id,
            [
                {"project_id": first.id, "required_hours": 10},
                {"project_id": second.id, "required_hours": 20, "priority": PRIORITY_BLOCKER},
            ],
        )
        assert [req.priority for req in saved] == [PRIORITY_MEDIUM, PRIORITY_BLOCKER]


class TestAssignments:
    def test_requires_requirement(self, store, seed):
        period = seed.period()
        with pytest.raises(ValidationError):
            seed.assignment(seed.person(), seed.project(), period)

    def test_dates_default_to_period(self, store, seed):
        period = seed.period()
        assignment = seed.assignment(seed.person(), seed.project(period=period, required_hours=10), period)
        assert (assignment.start_date, assignment.end_date) == (period.start_date, period.end_date)
        assert assignment.is_pinned is False
        assert assignment.calculated_allocation_percentage is None

    @pytest.mark.parametrize(
        "start, end",
        [("2023-12-31", "2024-01-10"), ("2024-01-10", "2024-02-01"), ("2024-01-20", "2024-01-10")],
    )
    def test_dates_validated(self, store, seed, start, end):
        period = seed.period()
        project = seed.project(period=period, required_hours=10)
        with pytest.raises(ValidationError):
            seed.assignment(seed.person(), project, period, start_date=start, end_date=end)

    def test_productivity_and_pin_ranges(self, store, seed):
        period = seed.period()
        project = seed.project(period=period, required_hours=10)
        person = seed.person()
        with pytest.raises(ValidationError):
            seed.assignment(person, project, period, 1.5)
        with pytest.raises(ValidationError):
            seed.assignment(person, project, period, is_pinned=True, pinned_allocation_percentage=120)

    def test_update_revalidates(self, store, seed):
        period = seed.period()
        project = seed.project(period=period, required_hours=10)
        assignment = seed.assignment(seed.person(), project, period)
        updated = store.update_assignment(assignment.id, is_pinned=True, pinned_allocation_percentage=40)
        assert updated.has_pin
        with pytest.raises(ValidationError):
            store.update_assignment(assignment.id, end_date="2024-03-01")

    def test_save_calculation_missing_row(self, store):
        with pytest.raises(ReferenceNotFound):
            store.save_calculation(77, 10.0, 5.0)


class TestInvalidation:
    def build(self, store, seed):
        period = seed.period()
        alice, bob = seed.person("Alice"), seed.person("Bob")
        apollo = seed.project("Apollo", period, 50)
        gemini = seed.project("Gemini", period, 50)
        rows = {
            "alice_apollo": seed.assignment(alice, apollo, period),
            "bob_apollo": seed.assignment(bob, apollo, period),
            "bob_gemini": seed.assignment(bob, gemini, period),
        }
        for assignment in rows.values():
            store.save_calculation(assignment.id, 10.0, 16.0, "2024-01-01T00:00:00+00:00")
        return period, alice, bob, apollo, rows

    def test_clear_for_person(self, store, seed):
        _, alice, _, _, rows = self.build(store, seed)
        assert store.clear_calculations_for(person_id=alice.id) == 1
        assert calculated(store, rows["alice_apollo"].id) == (None, None, None)
        assert calculated(store, rows["bob_apollo"].id)[0] == 10.0

    def test_clear_requires_one_selector(self, store):
        with pytest.raises(ValueError):
            store.clear_calculations_for()
        with pytest.raises(ValueError):
            store.clear_calculations_for(person_id=1, project_id=1)

    def test_delete_project_clears_then_cascades(self, store, seed, monkeypatch):
        _, _, _, apollo, rows = self.build(store, seed)
        cleared = []
        original = store.clear_calculations_for

        def spy(**kwargs):
            cleared.append(kwargs)
            return original(**kwargs)

        monkeypatch.setattr(store, "clear_calculations_for", spy)
        store.delete_project(apollo.id)

        assert cleared == [{"project_id": apollo.id}]
        remaining = store.list_assignments()
        assert [assignment.id for assignment in remaining] == [rows["bob_gemini"].id]
        assert remaining[0].calculated_effective_hours == 16.0

    def test_delete_requirement_clears_its_assignments(self, store, seed):
        period, _, _, apollo, rows = self.build(store, seed)
        requirement = store.get_requirement(apollo.id, period.id)
        store.delete_requirement(requirement.id)

        assert store.get_requirement(apollo.id, period.id) is None
        assert calculated(store, rows["alice_apollo"].id) == (None, None, None)
        assert calculated(store, rows["bob_apollo"].id) == (None, None, None)
        assert calculated(store, rows["bob_gemini"].id)[0] == 10.0

    def test_delete_missing_requirement(self, store):
        with pytest.raises(ReferenceNotFound):
            store.delete_requirement(12)

    def test_delete_period_cascades(self, store, seed):
        period, _, bob, _, _ = self.build(store, seed)
        assert store.planning_period_dependencies(period.id) == {"requirement_count": 2, "assignment_count": 3}
        store.delete_planning_period(period.id)
        assert store.list_assignments() == []
        assert store.person_dependencies(bob.id) == {"assignment_count": 0, "absence_count": 0}

    def test_delete_missing_person(self, store):
        with pytest.raises(ReferenceNotFound):
            store.delete_person(5)


class TestTransactions:
    def test_rollback_on_error(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.create_project("Doomed")
                raise RuntimeError("boom")
        assert store.list_projects() == []

    def test_nested_blocks_join(self, store):
        with store.transaction():
            store.create_project("Outer")
            with store.transaction():
                store.create_project("Inner")
        assert sorted(project.name for project in store.list_projects()) == ["Inner", "Outer"]
