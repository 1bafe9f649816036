"""Shared fixtures: an in-memory store and a small builder for planning data."""

import itertools

import pytest

from capacity_planner.models import DEFAULT_WORKING_DAYS, PRIORITY_MEDIUM
from capacity_planner.store import CapacityStore


class Seed:
    def __init__(self, store):
        self.store = store
        self._counter = itertools.count(1)

    def period(self, start="2024-01-01", end="2024-01-28", name="January"):
        # 2024-01-01 is a Monday, so the default period is exactly four weeks
        return self.store.create_planning_period(start, end, name)

    def country(self, iso_code="DE", name="Germany"):
        return self.store.create_country(iso_code, name)

    def person(self, name=None, hours=40.0, working_days=DEFAULT_WORKING_DAYS, country=None):
        number = next(self._counter)
        name = name or f"Person {number}"
        return self.store.create_person(
            name,
            f"person{number}@example.com",
            hours,
            working_days,
            country.id if country is not None else None,
        )

    def project(self, name=None, period=None, required_hours=None, priority=PRIORITY_MEDIUM):
        project = self.store.create_project(name or f"Project {next(self._counter)}")
        if period is not None and required_hours is not None:
            self.store.upsert_requirement(project.id, period.id, required_hours, priority)
        return project

    def assignment(self, person, project, period, productivity=1.0, **kwargs):
        return self.store.create_assignment(person.id, project.id, period.id, productivity, **kwargs)


@pytest.fixture
def store():
    db = CapacityStore(":memory:")
    yield db
    db.close()


@pytest.fixture
def seed(store):
    return Seed(store)


@pytest.fixture(autouse=True)
def _no_db_env(monkeypatch):
    monkeypatch.delenv("CAPACITY_PLANNER_DB", raising=False)
