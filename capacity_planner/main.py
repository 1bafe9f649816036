from __future__ import annotations

import argparse
import logging
import sqlite3
import sys
from functools import partial
from pathlib import Path
from typing import Callable, Dict, List, Optional

from . import engine, reporting
from .availability import calculate_person_available_hours
from .errors import CapacityPlannerError
from .holidays import fetch_public_holidays, import_holidays
from .io_utils import ensure_directory, load_config, load_portfolio, resolve_database_path, write_csv
from .models import OptimizationResult, PlannerConfig
from .store import CapacityStore

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Capacity planner: availability, priority-based allocation and staffing reports."
    )
    parser.add_argument("--config", help="Path to configuration JSON file")
    parser.add_argument("--db", help="SQLite database path (overrides config and CAPACITY_PLANNER_DB)")
    parser.add_argument("--log-level", help="Logging level (overrides config.logging_level)")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init", help="Create the database schema")

    load = commands.add_parser("load", help="Seed the database from a portfolio JSON file")
    load.add_argument("portfolio", help="Path to portfolio JSON")

    availability = commands.add_parser("availability", help="Show available hours per person")
    availability.add_argument("--period", type=int, required=True, help="Planning period id")
    availability.add_argument("--person", type=int, help="Only this person id")

    optimize = commands.add_parser("optimize", help="Allocate assignments for a planning period")
    optimize.add_argument("--period", type=int, required=True, help="Planning period id")

    overview = commands.add_parser("overview", help="Print the capacity overview of a planning period")
    overview.add_argument("--period", type=int, required=True, help="Planning period id")
    overview.add_argument("--outdir", help="Also write people_capacity.csv and project_staffing.csv here")

    holidays = commands.add_parser("import-holidays", help="Import public holidays for a country")
    holidays.add_argument("country", help="ISO country code, e.g. DE")
    holidays.add_argument("years", type=int, nargs="+", help="One or more years")

    delete = commands.add_parser("delete", help="Delete a person, project or planning period")
    delete.add_argument("entity", choices=("person", "project", "period"))
    delete.add_argument("id", type=int)
    return parser


def _configure_logging(level_name: str) -> None:
    level = getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(levelname)s %(message)s")


def _cmd_init(store: CapacityStore, args: argparse.Namespace, cfg: PlannerConfig) -> None:
    print(f"Initialized database at {store.path}")


def _cmd_load(store: CapacityStore, args: argparse.Namespace, cfg: PlannerConfig) -> None:
    counts = load_portfolio(store, args.portfolio)
    summary = ", ".join(f"{count} {name}" for name, count in counts.items())
    print(f"Loaded {summary}")


def _cmd_availability(store: CapacityStore, args: argparse.Namespace, cfg: PlannerConfig) -> None:
    period = store.get_planning_period(args.period)
    people = [store.get_person(args.person)] if args.person is not None else store.list_people()
    print(f"Availability for {period.name or f'period {period.id}'} ({period.start_date} to {period.end_date}):")
    for person in people:
        breakdown = calculate_person_available_hours(store, person, period)
        print(
            f"- {person.name}: {breakdown.available_hours:.1f}h available "
            f"(base {breakdown.base_hours:.1f}h, absences {breakdown.absence_days}d/{breakdown.absence_hours:.1f}h, "
            f"holidays {breakdown.holiday_days}d/{breakdown.holiday_hours:.1f}h, "
            f"overhead {breakdown.overhead_hours:.1f}h, optional {breakdown.optional_overhead_hours:.1f}h)"
        )


def _print_optimization(result: OptimizationResult) -> None:
    print(f"Calculated {len(result.calculations)} assignments.")
    if result.infeasible_projects:
        print("\nUnderstaffed projects:")
        for item in result.infeasible_projects:
            print(
                f"- {item.project_name}: {item.available_effective_hours:.1f}h of {item.required_hours:.1f}h "
                f"(short {item.shortfall:.1f}h, {item.shortfall_percentage:.1f}%)"
            )
    else:
        print("\nUnderstaffed projects: none")
    if result.warnings:
        print("\nWarnings:")
        for warning in result.warnings:
            print(f"- {warning}")


def _cmd_optimize(store: CapacityStore, args: argparse.Namespace, cfg: PlannerConfig) -> None:
    _print_optimization(engine.optimize_assignments(store, args.period))


def _cmd_overview(store: CapacityStore, args: argparse.Namespace, cfg: PlannerConfig) -> None:
    overview = reporting.capacity_overview(
        store, args.period, viability_threshold_pct=cfg.viability_threshold_pct
    )
    print(
        f"{overview.total_people} people ({overview.over_committed_people} over-committed), "
        f"{overview.total_projects} projects ({overview.under_staffed_projects} under-staffed)"
    )
    for person in overview.people_capacity:
        flag = " OVER" if person.is_over_committed else ""
        print(
            f"- {person.person_name}: {person.utilization_percentage:.1f}% of "
            f"{person.total_available_hours:.1f}h{flag}"
        )
    for project in overview.project_staffing:
        status = "viable" if project.is_viable else f"short {project.shortfall:.1f}h"
        print(
            f"- {project.project_name}: {project.total_effective_hours:.1f}h of "
            f"{project.required_hours:.1f}h ({project.staffing_percentage:.1f}%, {status})"
        )
    if args.outdir:
        outdir_path = ensure_directory(args.outdir)
        people_path = Path(outdir_path) / "people_capacity.csv"
        projects_path = Path(outdir_path) / "project_staffing.csv"
        write_csv(reporting.people_frame(overview), people_path)
        write_csv(reporting.projects_frame(overview), projects_path)
        print(f"Wrote {people_path}")
        print(f"Wrote {projects_path}")


def _cmd_import_holidays(store: CapacityStore, args: argparse.Namespace, cfg: PlannerConfig) -> None:
    fetch = partial(
        fetch_public_holidays,
        base_url=cfg.holiday_api_base_url,
        timeout=cfg.holiday_api_timeout_seconds,
    )
    results = import_holidays(store, args.country, args.years, fetch=fetch)
    for result in results:
        print(
            f"{result.country_code} {result.year}: imported {result.imported_count}, "
            f"skipped {result.skipped_count} already present"
        )
    missing = sorted(set(args.years) - {result.year for result in results})
    if missing:
        print(f"Failed years: {', '.join(str(year) for year in missing)}", file=sys.stderr)


def _cmd_delete(store: CapacityStore, args: argparse.Namespace, cfg: PlannerConfig) -> None:
    if args.entity == "person":
        dependencies = store.person_dependencies(args.id)
        store.delete_person(args.id)
    elif args.entity == "project":
        dependencies = store.project_dependencies(args.id)
        store.delete_project(args.id)
    else:
        dependencies = store.planning_period_dependencies(args.id)
        store.delete_planning_period(args.id)
    removed = ", ".join(f"{name.replace('_count', 's')}: {count}" for name, count in dependencies.items())
    print(f"Deleted {args.entity} {args.id} ({removed})")


_COMMANDS: Dict[str, Callable[[CapacityStore, argparse.Namespace, PlannerConfig], None]] = {
    "init": _cmd_init,
    "load": _cmd_load,
    "availability": _cmd_availability,
    "optimize": _cmd_optimize,
    "overview": _cmd_overview,
    "import-holidays": _cmd_import_holidays,
    "delete": _cmd_delete,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    try:
        cfg = load_config(args.config)
    except (OSError, ValueError) as exc:
        print(str(exc), file=sys.stderr)
        return 2
    _configure_logging(args.log_level or cfg.logging_level)

    store = CapacityStore(
        resolve_database_path(cfg, args.db),
        default_optional_weight=cfg.default_optional_weight,
    )
    try:
        _COMMANDS[args.command](store, args, cfg)
    except (CapacityPlannerError, ValueError, KeyError, sqlite3.Error) as exc:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(str(exc), file=sys.stderr)
        return 1
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
