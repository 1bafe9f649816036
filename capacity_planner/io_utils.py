from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import pandas as pd

from .models import DEFAULT_WORKING_DAYS, PRIORITY_LABELS, PRIORITY_MEDIUM, PlannerConfig

DB_ENV_VAR = "CAPACITY_PLANNER_DB"

_PRIORITY_BY_LABEL = {label.lower(): value for value, label in PRIORITY_LABELS.items()}


def _number(data: Mapping[str, Any], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{key} must be a number")
    return float(value)


def _string(data: Mapping[str, Any], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{key} must be a non-empty string")
    return value


def load_config(path: Optional[str | Path] = None) -> PlannerConfig:
    if path is None:
        return PlannerConfig()
    data = json.loads(Path(path).read_text())
    if not isinstance(data, dict):
        raise ValueError("config file must contain a JSON object")
    defaults = PlannerConfig()

    database_path = _string(data, "database_path", defaults.database_path)
    logging_level = _string(data, "logging_level", defaults.logging_level).upper()

    viability_threshold_pct = _number(data, "viability_threshold_pct", defaults.viability_threshold_pct)
    if not (0 < viability_threshold_pct <= 100):
        raise ValueError("viability_threshold_pct must be in (0, 100]")

    default_optional_weight = _number(data, "default_optional_weight", defaults.default_optional_weight)
    if not (0 <= default_optional_weight <= 1):
        raise ValueError("default_optional_weight must be in [0, 1]")

    holiday_api_base_url = _string(data, "holiday_api_base_url", defaults.holiday_api_base_url)
    holiday_api_timeout_seconds = _number(
        data, "holiday_api_timeout_seconds", defaults.holiday_api_timeout_seconds
    )
    if holiday_api_timeout_seconds <= 0:
        raise ValueError("holiday_api_timeout_seconds must be positive")

    return PlannerConfig(
        database_path=database_path,
        logging_level=logging_level,
        viability_threshold_pct=viability_threshold_pct,
        default_optional_weight=default_optional_weight,
        holiday_api_base_url=holiday_api_base_url,
        holiday_api_timeout_seconds=holiday_api_timeout_seconds,
    )


def resolve_database_path(config: PlannerConfig, override: Optional[str] = None) -> str:
    """Explicit override first, then the environment, then the config file."""
    return override or os.environ.get(DB_ENV_VAR) or config.database_path


def parse_priority(value: object) -> int:
    if value is None:
        return PRIORITY_MEDIUM
    if isinstance(value, str):
        key = value.strip().lower()
        if key in _PRIORITY_BY_LABEL:
            return _PRIORITY_BY_LABEL[key]
        try:
            value = int(key)
        except ValueError as exc:
            raise ValueError(f"unsupported priority '{value}'") from exc
    if isinstance(value, bool) or not isinstance(value, int) or value not in PRIORITY_LABELS:
        raise ValueError(f"unsupported priority '{value}'")
    return value


def _entries(data: Mapping[str, Any], key: str) -> List[Dict[str, Any]]:
    items = data.get(key, [])
    if not isinstance(items, list):
        raise ValueError(f"'{key}' must be an array")
    for item in items:
        if not isinstance(item, dict):
            raise ValueError(f"'{key}' entries must be objects")
    return items


def _lookup(index: Mapping[str, int], key: object, kind: str) -> int:
    if key not in index:
        raise ValueError(f"unknown {kind} '{key}'")
    return index[key]


def load_portfolio(store, path: str | Path) -> Dict[str, int]:
    """Seed ``store`` from a portfolio JSON document in a single transaction.

    People are referenced by email, countries by ISO code, and projects and
    jobs by name. Returns the number of records created per section.
    """
    data = json.loads(Path(path).read_text())
    if not isinstance(data, dict):
        raise ValueError("portfolio file must contain a JSON object")
    counts: Dict[str, int] = {}
    with store.transaction():
        countries: Dict[str, int] = {}
        for entry in _entries(data, "countries"):
            country = store.create_country(entry["iso_code"], entry["name"])
            countries[country.iso_code] = country.id
        counts["countries"] = len(countries)

        people: Dict[str, int] = {}
        for entry in _entries(data, "people"):
            country_code = entry.get("country")
            person = store.create_person(
                entry["name"],
                entry["email"],
                entry["available_hours_per_week"],
                entry.get("working_days", DEFAULT_WORKING_DAYS),
                _lookup(countries, str(country_code).upper(), "country") if country_code else None,
            )
            people[person.email] = person.id
        counts["people"] = len(people)

        jobs: Dict[str, int] = {}
        tasks = 0
        for entry in _entries(data, "jobs"):
            job = store.create_job(entry["name"], entry.get("description"))
            jobs[job.name] = job.id
            for task in _entries(entry, "overhead_tasks"):
                store.create_overhead_task(
                    job.id,
                    task["name"],
                    task["effort_hours"],
                    task["effort_period"],
                    is_optional=bool(task.get("is_optional", False)),
                    optional_weight=task.get("optional_weight"),
                    description=task.get("description"),
                )
                tasks += 1
        counts["jobs"] = len(jobs)
        counts["overhead_tasks"] = tasks

        projects: Dict[str, int] = {}
        for entry in _entries(data, "projects"):
            project = store.create_project(entry["name"], entry.get("description"))
            projects[project.name] = project.id
        counts["projects"] = len(projects)

        counts.update(periods=0, requirements=0, assignments=0, job_assignments=0)
        for entry in _entries(data, "planning_periods"):
            period = store.create_planning_period(entry["start_date"], entry["end_date"], entry.get("name"))
            counts["periods"] += 1
            requirements = [
                {
                    "project_id": _lookup(projects, item["project"], "project"),
                    "required_hours": item["required_hours"],
                    "priority": parse_priority(item.get("priority")),
                }
                for item in _entries(entry, "requirements")
            ]
            store.batch_upsert_requirements(period.id, requirements)
            counts["requirements"] += len(requirements)
            for item in _entries(entry, "assignments"):
                pinned = item.get("pinned_allocation_percentage")
                store.create_assignment(
                    _lookup(people, item["person"], "person"),
                    _lookup(projects, item["project"], "project"),
                    period.id,
                    item.get("productivity_factor", 0.5),
                    item.get("start_date"),
                    item.get("end_date"),
                    is_pinned=bool(item.get("is_pinned", pinned is not None)),
                    pinned_allocation_percentage=pinned,
                )
                counts["assignments"] += 1
            for item in _entries(entry, "job_assignments"):
                store.assign_job(
                    _lookup(people, item["person"], "person"),
                    _lookup(jobs, item["job"], "job"),
                    period.id,
                )
                counts["job_assignments"] += 1

        for entry in _entries(data, "absences"):
            store.create_absence(
                _lookup(people, entry["person"], "person"),
                entry["start_date"],
                entry["end_date"],
                entry["days"],
                entry.get("reason"),
            )
        counts["absences"] = len(_entries(data, "absences"))

        holidays = [
            {
                "country_id": _lookup(countries, str(entry["country"]).upper(), "country"),
                "start_date": entry["start_date"],
                "end_date": entry.get("end_date", entry["start_date"]),
                "name": entry.get("name"),
            }
            for entry in _entries(data, "holidays")
        ]
        counts["holidays"] = store.batch_create_holidays(holidays) if holidays else 0
    return counts


def ensure_directory(path: str | Path) -> Path:
    target = Path(path)
    target.mkdir(parents=True, exist_ok=True)
    return target


def write_csv(df: pd.DataFrame, path: str | Path) -> None:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)
