from __future__ import annotations

import os
from dataclasses import asdict, replace
from functools import partial
from typing import Dict, List, Optional

from flask import Flask, g, jsonify, request, url_for

from capacity_planner.errors import HolidayFetchError, ReferenceNotFound
from capacity_planner.holidays import fetch_public_holidays, import_holidays, preview_holiday_import
from capacity_planner.io_utils import DB_ENV_VAR
from capacity_planner.models import PlannerConfig
from capacity_planner.reporting import capacity_overview, overview_to_dict, person_capacity, project_staffing
from capacity_planner.store import CapacityStore

from .jobs import Job, JobConflictError, JobStore


def _resolve_config(config: Optional[PlannerConfig]) -> PlannerConfig:
    cfg = config or PlannerConfig()
    env_value = os.getenv(DB_ENV_VAR)
    if env_value:
        cfg = replace(cfg, database_path=env_value)
    return cfg


def _job_to_dict(job: Job) -> Dict[str, object]:
    payload = job.to_dict()
    payload["status_url"] = url_for("status_job", job_id=job.id)
    return payload


def _parse_years(data: Dict[str, object]) -> List[int]:
    raw = data.get("years")
    if raw is None and data.get("year") is not None:
        raw = [data["year"]]
    if not isinstance(raw, list) or not raw:
        raise ValueError("years must be a non-empty array")
    try:
        return [int(year) for year in raw]
    except (TypeError, ValueError) as exc:
        raise ValueError("years must contain integers") from exc


def create_app(config: Optional[PlannerConfig] = None) -> Flask:
    app = Flask(__name__)
    cfg = _resolve_config(config)
    database_path = cfg.database_path
    job_store = JobStore(database_path, default_optional_weight=cfg.default_optional_weight)
    app.config["PLANNER_CONFIG"] = cfg
    app.config["JOB_STORE"] = job_store
    app.config["HOLIDAY_FETCH"] = partial(
        fetch_public_holidays,
        base_url=cfg.holiday_api_base_url,
        timeout=cfg.holiday_api_timeout_seconds,
    )

    def _store() -> CapacityStore:
        if "store" not in g:
            g.store = CapacityStore(database_path, default_optional_weight=cfg.default_optional_weight)
        return g.store

    @app.teardown_appcontext
    def _close_store(exc: Optional[BaseException]) -> None:
        store = g.pop("store", None)
        if store is not None:
            store.close()

    @app.errorhandler(ReferenceNotFound)
    def _not_found(exc: ReferenceNotFound):
        return jsonify({"error": str(exc)}), 404

    @app.errorhandler(ValueError)
    def _bad_request(exc: ValueError):
        return jsonify({"error": str(exc)}), 400

    @app.errorhandler(HolidayFetchError)
    def _bad_gateway(exc: HolidayFetchError):
        return jsonify({"error": str(exc)}), 502

    @app.get("/api/periods")
    def list_periods():
        return jsonify({"periods": [asdict(period) for period in _store().list_planning_periods()]})

    @app.get("/api/periods/<int:period_id>/overview")
    def period_overview(period_id: int):
        overview = capacity_overview(
            _store(), period_id, viability_threshold_pct=cfg.viability_threshold_pct
        )
        return jsonify(overview_to_dict(overview))

    @app.get("/api/periods/<int:period_id>/people/<int:person_id>/capacity")
    def person_capacity_view(period_id: int, person_id: int):
        view = person_capacity(_store(), person_id, period_id)
        payload = asdict(view)
        payload["total_available_hours"] = view.total_available_hours
        return jsonify(payload)

    @app.get("/api/periods/<int:period_id>/projects/<int:project_id>/staffing")
    def project_staffing_view(period_id: int, project_id: int):
        view = project_staffing(
            _store(), project_id, period_id, viability_threshold_pct=cfg.viability_threshold_pct
        )
        return jsonify(asdict(view))

    @app.post("/api/periods/<int:period_id>/optimize")
    def run_optimization(period_id: int):
        _store().get_planning_period(period_id)
        try:
            job = job_store.create_job(period_id)
        except JobConflictError as exc:
            return jsonify({"error": str(exc), "job_id": exc.job_id}), 409
        job_store.start_job(job)
        status_url = url_for("status_job", job_id=job.id)
        return jsonify({"job_id": job.id, "status_url": status_url}), 202

    @app.get("/status/<job_id>")
    def status_job(job_id: str):
        job = job_store.get_job(job_id)
        if not job:
            return jsonify({"error": "job not found"}), 404
        return jsonify(_job_to_dict(job))

    @app.get("/api/jobs")
    def list_jobs():
        return jsonify({"jobs": [_job_to_dict(job) for job in job_store.list_jobs()]})

    @app.delete("/api/people/<int:person_id>")
    def delete_person(person_id: int):
        store = _store()
        store.get_person(person_id)
        dependencies = store.person_dependencies(person_id)
        store.delete_person(person_id)
        return jsonify({"deleted": person_id, "dependencies": dependencies})

    @app.delete("/api/projects/<int:project_id>")
    def delete_project(project_id: int):
        store = _store()
        store.get_project(project_id)
        dependencies = store.project_dependencies(project_id)
        store.delete_project(project_id)
        return jsonify({"deleted": project_id, "dependencies": dependencies})

    @app.delete("/api/periods/<int:period_id>")
    def delete_period(period_id: int):
        store = _store()
        store.get_planning_period(period_id)
        dependencies = store.planning_period_dependencies(period_id)
        store.delete_planning_period(period_id)
        return jsonify({"deleted": period_id, "dependencies": dependencies})

    @app.post("/api/holidays/import")
    def import_country_holidays():
        data = request.get_json(silent=True) or {}
        country_code = data.get("country_code")
        if not country_code or not isinstance(country_code, str):
            return jsonify({"error": "country_code is required"}), 400
        years = _parse_years(data)
        fetch = app.config["HOLIDAY_FETCH"]
        if data.get("preview"):
            preview = preview_holiday_import(_store(), country_code, years[0], fetch=fetch)
            return jsonify({"holidays": [asdict(item) for item in preview]})
        results = import_holidays(_store(), country_code, years, fetch=fetch)
        imported_years = {result.year for result in results}
        return jsonify(
            {
                "results": [asdict(result) for result in results],
                "failed_years": [year for year in years if year not in imported_years],
            }
        )

    return app


if __name__ == "__main__":  # pragma: no cover
    create_app().run(debug=True)
