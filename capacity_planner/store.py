from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Type, TypeVar

from .errors import ReferenceNotFound, ValidationError
from .models import (
    DEFAULT_OPTIONAL_WEIGHT,
    DEFAULT_PRODUCTIVITY_FACTOR,
    DEFAULT_WORKING_DAYS,
    EFFORT_PERIODS,
    PRIORITY_LABELS,
    PRIORITY_MEDIUM,
    Absence,
    Assignment,
    Country,
    Holiday,
    Job,
    OverheadTask,
    Person,
    PersonJobAssignment,
    PlanningPeriod,
    Project,
    ProjectRequirement,
)
from .working_days import format_iso_date, parse_iso_date, unknown_working_day_tokens

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "capacity_planner.db"

T = TypeVar("T")

CALCULATED_FIELDS = (
    "calculated_allocation_percentage",
    "calculated_effective_hours",
    "last_calculated_at",
)

# -----------------------------
# Schema
# -----------------------------
SCHEMA_STATEMENTS: Tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS countries (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        iso_code TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS people (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        available_hours_per_week REAL NOT NULL,
        working_days TEXT NOT NULL DEFAULT 'Mon,Tue,Wed,Thu,Fri',
        country_id INTEGER REFERENCES countries(id) ON DELETE SET NULL,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS planning_periods (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT,
        start_date TEXT NOT NULL,
        end_date TEXT NOT NULL,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS projects (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        description TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS project_requirements (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
        planning_period_id INTEGER NOT NULL REFERENCES planning_periods(id) ON DELETE CASCADE,
        required_hours REAL NOT NULL,
        priority INTEGER NOT NULL DEFAULT 10,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(project_id, planning_period_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS assignments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        person_id INTEGER NOT NULL REFERENCES people(id) ON DELETE CASCADE,
        project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
        planning_period_id INTEGER NOT NULL REFERENCES planning_periods(id) ON DELETE CASCADE,
        productivity_factor REAL NOT NULL DEFAULT 0.5,
        start_date TEXT NOT NULL,
        end_date TEXT NOT NULL,
        is_pinned BOOLEAN NOT NULL DEFAULT 0,
        pinned_allocation_percentage REAL,
        calculated_allocation_percentage REAL,
        calculated_effective_hours REAL,
        last_calculated_at TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS absences (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        person_id INTEGER NOT NULL REFERENCES people(id) ON DELETE CASCADE,
        start_date TEXT NOT NULL,
        end_date TEXT NOT NULL,
        days INTEGER NOT NULL,
        reason TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS jobs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL UNIQUE,
        description TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS job_overhead_tasks (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        job_id INTEGER NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        description TEXT,
        effort_hours REAL NOT NULL,
        effort_period TEXT NOT NULL CHECK(effort_period IN ('daily', 'weekly')),
        is_optional BOOLEAN NOT NULL DEFAULT 0,
        optional_weight REAL NOT NULL DEFAULT 0.5,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS person_job_assignments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        person_id INTEGER NOT NULL REFERENCES people(id) ON DELETE CASCADE,
        job_id INTEGER NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
        planning_period_id INTEGER NOT NULL REFERENCES planning_periods(id) ON DELETE CASCADE,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(person_id, job_id, planning_period_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS holidays (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        country_id INTEGER NOT NULL REFERENCES countries(id) ON DELETE CASCADE,
        name TEXT,
        start_date TEXT NOT NULL,
        end_date TEXT NOT NULL,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_assignments_person ON assignments(person_id);",
    "CREATE INDEX IF NOT EXISTS idx_assignments_project ON assignments(project_id);",
    "CREATE INDEX IF NOT EXISTS idx_assignments_period ON assignments(planning_period_id);",
    "CREATE INDEX IF NOT EXISTS idx_absences_person ON absences(person_id);",
    "CREATE INDEX IF NOT EXISTS idx_overhead_tasks_job ON job_overhead_tasks(job_id);",
    "CREATE INDEX IF NOT EXISTS idx_person_jobs_person ON person_job_assignments(person_id);",
    "CREATE INDEX IF NOT EXISTS idx_person_jobs_period ON person_job_assignments(planning_period_id);",
    "CREATE INDEX IF NOT EXISTS idx_requirements_period ON project_requirements(planning_period_id);",
    "CREATE INDEX IF NOT EXISTS idx_holidays_country ON holidays(country_id);",
    "CREATE INDEX IF NOT EXISTS idx_holidays_dates ON holidays(start_date, end_date);",
)


def ensure_schema(con: sqlite3.Connection) -> None:
    for statement in SCHEMA_STATEMENTS:
        con.execute(statement)
    con.commit()


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _from_row(cls: Type[T], row: sqlite3.Row) -> T:
    keys = row.keys()
    values: Dict[str, Any] = {}
    for item in fields(cls):
        if item.name not in keys:
            continue
        value = row[item.name]
        if item.name in ("is_pinned", "is_optional"):
            value = bool(value)
        values[item.name] = value
    return cls(**values)


def _normalize_date(value: object, field_name: str) -> str:
    return format_iso_date(parse_iso_date(value, field_name))


def _validate_date_order(start: str, end: str, label: str) -> None:
    if parse_iso_date(start, "start_date") > parse_iso_date(end, "end_date"):
        raise ValidationError(f"{label}: start date must be on or before end date")


def _validate_fraction(value: float, field_name: str) -> float:
    value = float(value)
    if not 0.0 <= value <= 1.0:
        raise ValidationError(f"{field_name} must be in [0, 1], got {value}")
    return value


class CapacityStore:
    """SQLite-backed record store for every planning entity.

    One instance owns one connection; open a separate store per thread.
    """

    def __init__(
        self,
        path: str | Path = DEFAULT_DB_PATH,
        *,
        default_optional_weight: float = DEFAULT_OPTIONAL_WEIGHT,
    ) -> None:
        self.path = str(path)
        self.default_optional_weight = default_optional_weight
        self._depth = 0
        self._con = sqlite3.connect(self.path)
        self._con.row_factory = sqlite3.Row
        self._con.execute("PRAGMA foreign_keys=ON;")
        if self.path != ":memory:":
            self._con.execute("PRAGMA journal_mode=WAL;")
        ensure_schema(self._con)

    # -----------------------------
    # Connection helpers
    # -----------------------------
    def close(self) -> None:
        self._con.close()

    def __enter__(self) -> "CapacityStore":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """All-or-nothing block; nested blocks join the outermost one."""
        if self._depth:
            self._depth += 1
            try:
                yield self._con
            finally:
                self._depth -= 1
            return
        self._depth = 1
        if not self._con.in_transaction:
            self._con.execute("BEGIN")
        try:
            yield self._con
            self._con.commit()
        except BaseException:
            self._con.rollback()
            raise
        finally:
            self._depth = 0

    def _exec(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        try:
            with self.transaction() as con:
                return con.execute(sql, tuple(params))
        except sqlite3.Error as exc:
            logger.error("Store write failed: %s", exc)
            raise

    def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        return self._con.execute(sql, tuple(params)).fetchall()

    def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        return self._con.execute(sql, tuple(params)).fetchone()

    def _count(self, sql: str, params: Sequence[Any] = ()) -> int:
        row = self._fetchone(sql, params)
        return int(row[0] or 0) if row else 0

    def _get(self, cls: Type[T], table: str, entity: str, entity_id: int) -> T:
        row = self._fetchone(f"SELECT * FROM {table} WHERE id = ?", (entity_id,))
        if row is None:
            raise ReferenceNotFound(entity, entity_id)
        return _from_row(cls, row)

    def _update(self, table: str, entity_id: int, changes: Mapping[str, Any]) -> None:
        if not changes:
            return
        assignments = ", ".join(f"{column} = ?" for column in changes)
        self._exec(
            f"UPDATE {table} SET {assignments} WHERE id = ?",
            (*changes.values(), entity_id),
        )

    @staticmethod
    def _overlap_clause(overlapping: Optional[Tuple[object, object]], clauses: List[str], params: List[Any]) -> None:
        if overlapping is None:
            return
        range_start = _normalize_date(overlapping[0], "range start")
        range_end = _normalize_date(overlapping[1], "range end")
        clauses.append("start_date <= ? AND end_date >= ?")
        params.extend([range_end, range_start])

    # -----------------------------
    # Countries
    # -----------------------------
    def create_country(self, iso_code: str, name: str) -> Country:
        cur = self._exec(
            "INSERT INTO countries (iso_code, name) VALUES (?, ?)", (iso_code.strip().upper(), name)
        )
        return self.get_country(cur.lastrowid)

    def get_country(self, country_id: int) -> Country:
        return self._get(Country, "countries", "country", country_id)

    def get_country_by_code(self, iso_code: str) -> Country:
        code = iso_code.strip().upper()
        row = self._fetchone("SELECT * FROM countries WHERE iso_code = ?", (code,))
        if row is None:
            raise ReferenceNotFound("country", code)
        return _from_row(Country, row)

    def list_countries(self) -> List[Country]:
        return [_from_row(Country, row) for row in self._fetchall("SELECT * FROM countries ORDER BY name")]

    def delete_country(self, country_id: int) -> None:
        self.get_country(country_id)
        self._exec("DELETE FROM countries WHERE id = ?", (country_id,))

    # -----------------------------
    # People
    # -----------------------------
    @staticmethod
    def _validate_person(available_hours_per_week: float, working_days: str) -> None:
        if float(available_hours_per_week) < 0:
            raise ValidationError("available_hours_per_week must not be negative")
        unknown = unknown_working_day_tokens(working_days)
        if unknown:
            raise ValidationError(f"unrecognised working days: {', '.join(unknown)}")

    def create_person(
        self,
        name: str,
        email: str,
        available_hours_per_week: float,
        working_days: str = DEFAULT_WORKING_DAYS,
        country_id: Optional[int] = None,
    ) -> Person:
        self._validate_person(available_hours_per_week, working_days)
        if country_id is not None:
            self.get_country(country_id)
        cur = self._exec(
            "INSERT INTO people (name, email, available_hours_per_week, working_days, country_id) "
            "VALUES (?, ?, ?, ?, ?)",
            (name, email, float(available_hours_per_week), working_days, country_id),
        )
        return self.get_person(cur.lastrowid)

    def get_person(self, person_id: int) -> Person:
        return self._get(Person, "people", "person", person_id)

    def list_people(self) -> List[Person]:
        return [_from_row(Person, row) for row in self._fetchall("SELECT * FROM people ORDER BY name, id")]

    def update_person(self, person_id: int, **changes: Any) -> Person:
        current = self.get_person(person_id)
        allowed = {"name", "email", "available_hours_per_week", "working_days", "country_id"}
        unexpected = set(changes) - allowed
        if unexpected:
            raise ValidationError(f"cannot update person fields: {', '.join(sorted(unexpected))}")
        self._validate_person(
            changes.get("available_hours_per_week", current.available_hours_per_week),
            changes.get("working_days", current.working_days),
        )
        if changes.get("country_id") is not None:
            self.get_country(changes["country_id"])
        self._update("people", person_id, changes)
        return self.get_person(person_id)

    def person_dependencies(self, person_id: int) -> Dict[str, int]:
        return {
            "assignment_count": self._count("SELECT COUNT(*) FROM assignments WHERE person_id = ?", (person_id,)),
            "absence_count": self._count("SELECT COUNT(*) FROM absences WHERE person_id = ?", (person_id,)),
        }

    def delete_person(self, person_id: int) -> None:
        self.get_person(person_id)
        with self.transaction():
            cleared = self.clear_calculations_for(person_id=person_id)
            self._exec("DELETE FROM people WHERE id = ?", (person_id,))
        logger.info("Deleted person %s (cleared %d cached calculations)", person_id, cleared)

    # -----------------------------
    # Planning periods
    # -----------------------------
    def create_planning_period(self, start_date: object, end_date: object, name: Optional[str] = None) -> PlanningPeriod:
        start = _normalize_date(start_date, "start_date")
        end = _normalize_date(end_date, "end_date")
        _validate_date_order(start, end, "planning period")
        cur = self._exec(
            "INSERT INTO planning_periods (name, start_date, end_date) VALUES (?, ?, ?)", (name, start, end)
        )
        return self.get_planning_period(cur.lastrowid)

    def get_planning_period(self, period_id: int) -> PlanningPeriod:
        return self._get(PlanningPeriod, "planning_periods", "planning period", period_id)

    def list_planning_periods(self) -> List[PlanningPeriod]:
        rows = self._fetchall("SELECT * FROM planning_periods ORDER BY start_date DESC, id")
        return [_from_row(PlanningPeriod, row) for row in rows]

    def update_planning_period(self, period_id: int, **changes: Any) -> PlanningPeriod:
        current = self.get_planning_period(period_id)
        unexpected = set(changes) - {"name", "start_date", "end_date"}
        if unexpected:
            raise ValidationError(f"cannot update planning period fields: {', '.join(sorted(unexpected))}")
        for key in ("start_date", "end_date"):
            if key in changes:
                changes[key] = _normalize_date(changes[key], key)
        _validate_date_order(
            changes.get("start_date", current.start_date),
            changes.get("end_date", current.end_date),
            "planning period",
        )
        self._update("planning_periods", period_id, changes)
        return self.get_planning_period(period_id)

    def planning_period_dependencies(self, period_id: int) -> Dict[str, int]:
        return {
            "requirement_count": self._count(
                "SELECT COUNT(*) FROM project_requirements WHERE planning_period_id = ?", (period_id,)
            ),
            "assignment_count": self._count(
                "SELECT COUNT(*) FROM assignments WHERE planning_period_id = ?", (period_id,)
            ),
        }

    def delete_planning_period(self, period_id: int) -> None:
        self.get_planning_period(period_id)
        with self.transaction():
            cleared = self.clear_calculations_for(planning_period_id=period_id)
            self._exec("DELETE FROM planning_periods WHERE id = ?", (period_id,))
        logger.info("Deleted planning period %s (cleared %d cached calculations)", period_id, cleared)

    # -----------------------------
    # Projects and requirements
    # -----------------------------
    def create_project(self, name: str, description: Optional[str] = None) -> Project:
        cur = self._exec("INSERT INTO projects (name, description) VALUES (?, ?)", (name, description))
        return self.get_project(cur.lastrowid)

    def get_project(self, project_id: int) -> Project:
        return self._get(Project, "projects", "project", project_id)

    def list_projects(self) -> List[Project]:
        return [_from_row(Project, row) for row in self._fetchall("SELECT * FROM projects ORDER BY name, id")]

    def update_project(self, project_id: int, **changes: Any) -> Project:
        self.get_project(project_id)
        unexpected = set(changes) - {"name", "description"}
        if unexpected:
            raise ValidationError(f"cannot update project fields: {', '.join(sorted(unexpected))}")
        self._update("projects", project_id, changes)
        return self.get_project(project_id)

    def project_dependencies(self, project_id: int) -> Dict[str, int]:
        return {
            "requirement_count": self._count(
                "SELECT COUNT(*) FROM project_requirements WHERE project_id = ?", (project_id,)
            ),
            "assignment_count": self._count("SELECT COUNT(*) FROM assignments WHERE project_id = ?", (project_id,)),
        }

    def delete_project(self, project_id: int) -> None:
        self.get_project(project_id)
        with self.transaction():
            cleared = self.clear_calculations_for(project_id=project_id)
            self._exec("DELETE FROM projects WHERE id = ?", (project_id,))
        logger.info("Deleted project %s (cleared %d cached calculations)", project_id, cleared)

    def upsert_requirement(
        self,
        project_id: int,
        planning_period_id: int,
        required_hours: float,
        priority: int = PRIORITY_MEDIUM,
    ) -> ProjectRequirement:
        if float(required_hours) < 0:
            raise ValidationError("required_hours must not be negative")
        if priority not in PRIORITY_LABELS:
            raise ValidationError(f"unsupported priority {priority!r}")
        self.get_project(project_id)
        self.get_planning_period(planning_period_id)
        self._exec(
            "INSERT INTO project_requirements (project_id, planning_period_id, required_hours, priority) "
            "VALUES (?, ?, ?, ?) "
            "ON CONFLICT(project_id, planning_period_id) "
            "DO UPDATE SET required_hours = excluded.required_hours, priority = excluded.priority",
            (project_id, planning_period_id, float(required_hours), int(priority)),
        )
        row = self._fetchone(
            "SELECT * FROM project_requirements WHERE project_id = ? AND planning_period_id = ?",
            (project_id, planning_period_id),
        )
        if row is None:
            raise ReferenceNotFound("project requirement", f"{project_id}/{planning_period_id}")
        return _from_row(ProjectRequirement, row)

    def batch_upsert_requirements(
        self, planning_period_id: int, requirements: Iterable[Mapping[str, Any]]
    ) -> List[ProjectRequirement]:
        with self.transaction():
            saved = [
                self.upsert_requirement(
                    int(item["project_id"]),
                    planning_period_id,
                    item["required_hours"],
                    int(item.get("priority", PRIORITY_MEDIUM)),
                )
                for item in requirements
            ]
        logger.info("Upserted %d requirements for planning period %s", len(saved), planning_period_id)
        return saved

    def get_requirement(self, project_id: int, planning_period_id: int) -> Optional[ProjectRequirement]:
        row = self._fetchone(
            "SELECT * FROM project_requirements WHERE project_id = ? AND planning_period_id = ?",
            (project_id, planning_period_id),
        )
        return _from_row(ProjectRequirement, row) if row else None

    def list_requirements(self, planning_period_id: Optional[int] = None) -> List[ProjectRequirement]:
        if planning_period_id is None:
            rows = self._fetchall("SELECT * FROM project_requirements ORDER BY id")
        else:
            rows = self._fetchall(
                "SELECT * FROM project_requirements WHERE planning_period_id = ? ORDER BY id",
                (planning_period_id,),
            )
        return [_from_row(ProjectRequirement, row) for row in rows]

    def delete_requirement(self, requirement_id: int) -> None:
        """Remove a requirement; assignments it covered lose their calculated cache."""
        requirement = self._get(ProjectRequirement, "project_requirements", "project requirement", requirement_id)
        reset = ", ".join(f"{name} = NULL" for name in CALCULATED_FIELDS)
        with self.transaction():
            cur = self._exec(
                f"UPDATE assignments SET {reset} WHERE project_id = ? AND planning_period_id = ?",
                (requirement.project_id, requirement.planning_period_id),
            )
            self._exec("DELETE FROM project_requirements WHERE id = ?", (requirement_id,))
        logger.info(
            "Deleted requirement %s for project %s (cleared %d cached calculations)",
            requirement_id,
            requirement.project_id,
            cur.rowcount,
        )

    # -----------------------------
    # Assignments and the calculated cache
    # -----------------------------
    def _validated_assignment_fields(
        self,
        person_id: int,
        project_id: int,
        planning_period_id: int,
        productivity_factor: float,
        start_date: Optional[object],
        end_date: Optional[object],
        is_pinned: bool,
        pinned_allocation_percentage: Optional[float],
    ) -> Dict[str, Any]:
        self.get_person(person_id)
        self.get_project(project_id)
        period = self.get_planning_period(planning_period_id)
        if self.get_requirement(project_id, planning_period_id) is None:
            logger.warning(
                "No project requirement for project %s in planning period %s", project_id, planning_period_id
            )
            raise ValidationError(
                "project requirement must be defined for this planning period before assigning people"
            )
        start = _normalize_date(start_date if start_date is not None else period.start_date, "start_date")
        end = _normalize_date(end_date if end_date is not None else period.end_date, "end_date")
        for label, value in (("start date", start), ("end date", end)):
            if value < period.start_date or value > period.end_date:
                raise ValidationError(f"{label} must be within the planning period")
        _validate_date_order(start, end, "assignment")
        if pinned_allocation_percentage is not None:
            pinned_allocation_percentage = float(pinned_allocation_percentage)
            if not 0.0 <= pinned_allocation_percentage <= 100.0:
                raise ValidationError("pinned_allocation_percentage must be in [0, 100]")
        return {
            "person_id": person_id,
            "project_id": project_id,
            "planning_period_id": planning_period_id,
            "productivity_factor": _validate_fraction(productivity_factor, "productivity_factor"),
            "start_date": start,
            "end_date": end,
            "is_pinned": 1 if is_pinned else 0,
            "pinned_allocation_percentage": pinned_allocation_percentage,
        }

    def create_assignment(
        self,
        person_id: int,
        project_id: int,
        planning_period_id: int,
        productivity_factor: float = DEFAULT_PRODUCTIVITY_FACTOR,
        start_date: Optional[object] = None,
        end_date: Optional[object] = None,
        *,
        is_pinned: bool = False,
        pinned_allocation_percentage: Optional[float] = None,
    ) -> Assignment:
        values = self._validated_assignment_fields(
            person_id,
            project_id,
            planning_period_id,
            productivity_factor,
            start_date,
            end_date,
            is_pinned,
            pinned_allocation_percentage,
        )
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        cur = self._exec(f"INSERT INTO assignments ({columns}) VALUES ({placeholders})", list(values.values()))
        return self.get_assignment(cur.lastrowid)

    def update_assignment(self, assignment_id: int, **changes: Any) -> Assignment:
        current = self.get_assignment(assignment_id)
        editable = {
            "person_id",
            "project_id",
            "planning_period_id",
            "productivity_factor",
            "start_date",
            "end_date",
            "is_pinned",
            "pinned_allocation_percentage",
        }
        unexpected = set(changes) - editable
        if unexpected:
            raise ValidationError(f"cannot update assignment fields: {', '.join(sorted(unexpected))}")
        merged = {name: changes.get(name, getattr(current, name)) for name in editable}
        values = self._validated_assignment_fields(**merged)
        self._update("assignments", assignment_id, values)
        return self.get_assignment(assignment_id)

    def get_assignment(self, assignment_id: int) -> Assignment:
        return self._get(Assignment, "assignments", "assignment", assignment_id)

    def list_assignments(
        self,
        *,
        planning_period_id: Optional[int] = None,
        person_id: Optional[int] = None,
        project_id: Optional[int] = None,
    ) -> List[Assignment]:
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in (
            ("planning_period_id", planning_period_id),
            ("person_id", person_id),
            ("project_id", project_id),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._fetchall(f"SELECT * FROM assignments{where} ORDER BY id", params)
        return [_from_row(Assignment, row) for row in rows]

    def delete_assignment(self, assignment_id: int) -> None:
        self._exec("DELETE FROM assignments WHERE id = ?", (assignment_id,))

    def save_calculation(
        self,
        assignment_id: int,
        allocation_percentage: float,
        effective_hours: float,
        calculated_at: Optional[str] = None,
    ) -> None:
        cur = self._exec(
            "UPDATE assignments SET calculated_allocation_percentage = ?, calculated_effective_hours = ?, "
            "last_calculated_at = ? WHERE id = ?",
            (allocation_percentage, effective_hours, calculated_at or now_iso(), assignment_id),
        )
        if cur.rowcount == 0:
            raise ReferenceNotFound("assignment", assignment_id)

    def clear_calculations_for(
        self,
        *,
        person_id: Optional[int] = None,
        project_id: Optional[int] = None,
        planning_period_id: Optional[int] = None,
    ) -> int:
        """Null the calculated cache on every assignment referencing the given entity."""
        selectors = [
            (column, value)
            for column, value in (
                ("person_id", person_id),
                ("project_id", project_id),
                ("planning_period_id", planning_period_id),
            )
            if value is not None
        ]
        if len(selectors) != 1:
            raise ValueError("exactly one of person_id, project_id, planning_period_id is required")
        column, value = selectors[0]
        reset = ", ".join(f"{name} = NULL" for name in CALCULATED_FIELDS)
        cur = self._exec(f"UPDATE assignments SET {reset} WHERE {column} = ?", (value,))
        return cur.rowcount

    # -----------------------------
    # Absences
    # -----------------------------
    def create_absence(
        self,
        person_id: int,
        start_date: object,
        end_date: object,
        days: int,
        reason: Optional[str] = None,
    ) -> Absence:
        self.get_person(person_id)
        start = _normalize_date(start_date, "start_date")
        end = _normalize_date(end_date, "end_date")
        _validate_date_order(start, end, "absence")
        if int(days) < 0:
            raise ValidationError("absence days must not be negative")
        cur = self._exec(
            "INSERT INTO absences (person_id, start_date, end_date, days, reason) VALUES (?, ?, ?, ?, ?)",
            (person_id, start, end, int(days), reason),
        )
        return _from_row(Absence, self._fetchone("SELECT * FROM absences WHERE id = ?", (cur.lastrowid,)))

    def list_absences(
        self,
        person_id: Optional[int] = None,
        *,
        overlapping: Optional[Tuple[object, object]] = None,
    ) -> List[Absence]:
        clauses: List[str] = []
        params: List[Any] = []
        if person_id is not None:
            clauses.append("person_id = ?")
            params.append(person_id)
        self._overlap_clause(overlapping, clauses, params)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._fetchall(f"SELECT * FROM absences{where} ORDER BY start_date, id", params)
        return [_from_row(Absence, row) for row in rows]

    def delete_absence(self, absence_id: int) -> None:
        self._exec("DELETE FROM absences WHERE id = ?", (absence_id,))

    # -----------------------------
    # Holidays
    # -----------------------------
    def _insert_holiday(self, country_id: int, start: str, end: str, name: Optional[str]) -> int:
        cur = self._exec(
            "INSERT INTO holidays (country_id, name, start_date, end_date) VALUES (?, ?, ?, ?)",
            (country_id, name, start, end),
        )
        return cur.lastrowid

    def create_holiday(
        self,
        country_id: int,
        start_date: object,
        end_date: object,
        name: Optional[str] = None,
    ) -> Holiday:
        self.get_country(country_id)
        start = _normalize_date(start_date, "start_date")
        end = _normalize_date(end_date, "end_date")
        _validate_date_order(start, end, "holiday")
        if self.list_holidays(country_id, overlapping=(start, end)):
            raise ValidationError("a holiday already exists for this country during this period")
        holiday_id = self._insert_holiday(country_id, start, end, name)
        return _from_row(Holiday, self._fetchone("SELECT * FROM holidays WHERE id = ?", (holiday_id,)))

    def batch_create_holidays(self, holidays: Iterable[Mapping[str, Any]]) -> int:
        created = 0
        with self.transaction():
            for item in holidays:
                start = _normalize_date(item["start_date"], "start_date")
                end = _normalize_date(item.get("end_date", item["start_date"]), "end_date")
                _validate_date_order(start, end, "holiday")
                self._insert_holiday(int(item["country_id"]), start, end, item.get("name"))
                created += 1
        logger.info("Created %d holidays", created)
        return created

    def list_holidays(
        self,
        country_id: Optional[int] = None,
        *,
        overlapping: Optional[Tuple[object, object]] = None,
    ) -> List[Holiday]:
        clauses: List[str] = []
        params: List[Any] = []
        if country_id is not None:
            clauses.append("country_id = ?")
            params.append(country_id)
        self._overlap_clause(overlapping, clauses, params)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._fetchall(f"SELECT * FROM holidays{where} ORDER BY start_date, id", params)
        return [_from_row(Holiday, row) for row in rows]

    def delete_holiday(self, holiday_id: int) -> None:
        self._exec("DELETE FROM holidays WHERE id = ?", (holiday_id,))

    # -----------------------------
    # Jobs and overhead tasks
    # -----------------------------
    def create_job(self, name: str, description: Optional[str] = None) -> Job:
        cur = self._exec("INSERT INTO jobs (name, description) VALUES (?, ?)", (name, description))
        return self.get_job(cur.lastrowid)

    def get_job(self, job_id: int) -> Job:
        return self._get(Job, "jobs", "job", job_id)

    def list_jobs(self) -> List[Job]:
        return [_from_row(Job, row) for row in self._fetchall("SELECT * FROM jobs ORDER BY name")]

    def delete_job(self, job_id: int) -> None:
        self._exec("DELETE FROM jobs WHERE id = ?", (job_id,))

    def create_overhead_task(
        self,
        job_id: int,
        name: str,
        effort_hours: float,
        effort_period: str,
        *,
        is_optional: bool = False,
        optional_weight: Optional[float] = None,
        description: Optional[str] = None,
    ) -> OverheadTask:
        self.get_job(job_id)
        if effort_period not in EFFORT_PERIODS:
            raise ValidationError(f"effort_period must be one of {', '.join(EFFORT_PERIODS)}")
        if float(effort_hours) < 0:
            raise ValidationError("effort_hours must not be negative")
        weight = self.default_optional_weight if optional_weight is None else optional_weight
        cur = self._exec(
            "INSERT INTO job_overhead_tasks "
            "(job_id, name, description, effort_hours, effort_period, is_optional, optional_weight) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                job_id,
                name,
                description,
                float(effort_hours),
                effort_period,
                1 if is_optional else 0,
                _validate_fraction(weight, "optional_weight"),
            ),
        )
        row = self._fetchone("SELECT * FROM job_overhead_tasks WHERE id = ?", (cur.lastrowid,))
        return _from_row(OverheadTask, row)

    def list_overhead_tasks(self, job_id: int) -> List[OverheadTask]:
        rows = self._fetchall("SELECT * FROM job_overhead_tasks WHERE job_id = ? ORDER BY id", (job_id,))
        return [_from_row(OverheadTask, row) for row in rows]

    def delete_overhead_task(self, task_id: int) -> None:
        self._exec("DELETE FROM job_overhead_tasks WHERE id = ?", (task_id,))

    def assign_job(self, person_id: int, job_id: int, planning_period_id: int) -> PersonJobAssignment:
        self.get_person(person_id)
        self.get_job(job_id)
        self.get_planning_period(planning_period_id)
        cur = self._exec(
            "INSERT INTO person_job_assignments (person_id, job_id, planning_period_id) VALUES (?, ?, ?)",
            (person_id, job_id, planning_period_id),
        )
        row = self._fetchone("SELECT * FROM person_job_assignments WHERE id = ?", (cur.lastrowid,))
        return _from_row(PersonJobAssignment, row)

    def list_person_jobs(
        self, person_id: Optional[int] = None, planning_period_id: Optional[int] = None
    ) -> List[PersonJobAssignment]:
        clauses: List[str] = []
        params: List[Any] = []
        if person_id is not None:
            clauses.append("person_id = ?")
            params.append(person_id)
        if planning_period_id is not None:
            clauses.append("planning_period_id = ?")
            params.append(planning_period_id)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._fetchall(f"SELECT * FROM person_job_assignments{where} ORDER BY id", params)
        return [_from_row(PersonJobAssignment, row) for row in rows]

    def delete_person_job(self, person_job_id: int) -> None:
        self._exec("DELETE FROM person_job_assignments WHERE id = ?", (person_job_id,))

    def overhead_tasks_for(self, person_id: int, planning_period_id: int) -> List[OverheadTask]:
        """Overhead tasks of every job the person holds in the period, one entry per held job."""
        rows = self._fetchall(
            "SELECT t.* FROM person_job_assignments pj "
            "JOIN job_overhead_tasks t ON t.job_id = pj.job_id "
            "WHERE pj.person_id = ? AND pj.planning_period_id = ? ORDER BY pj.id, t.id",
            (person_id, planning_period_id),
        )
        return [_from_row(OverheadTask, row) for row in rows]
