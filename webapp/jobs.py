from __future__ import annotations

import copy
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

from capacity_planner.engine import optimize_assignments
from capacity_planner.models import DEFAULT_OPTIONAL_WEIGHT, OptimizationResult
from capacity_planner.store import CapacityStore

logger = logging.getLogger(__name__)

JobState = Literal["queued", "running", "done", "failed"]
ACTIVE_STATES = ("queued", "running")
MAX_MESSAGE_LENGTH = 2000


def _now_iso() -> str:
    """Return current UTC timestamp as ISO string with second precision."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _trim_message(text: str, limit: int = MAX_MESSAGE_LENGTH) -> str:
    """Clamp message length to avoid unbounded memory growth."""
    if len(text) <= limit:
        return text
    return text[-limit:]


def _summary(result: OptimizationResult) -> str:
    if not result.calculations and result.warnings:
        return result.warnings[0]
    return (
        f"{len(result.calculations)} assignments calculated, "
        f"{len(result.infeasible_projects)} understaffed, {len(result.warnings)} warnings"
    )


class JobConflictError(RuntimeError):
    def __init__(self, planning_period_id: int, job_id: str) -> None:
        super().__init__(f"optimization for planning period {planning_period_id} already in progress ({job_id})")
        self.planning_period_id = planning_period_id
        self.job_id = job_id


@dataclass
class Job:
    id: str
    planning_period_id: int
    state: JobState = "queued"
    created_at: str = field(default_factory=_now_iso)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    result: Optional[Dict[str, object]] = None
    message: str = ""

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "planning_period_id": self.planning_period_id,
            "state": self.state,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "result": copy.deepcopy(self.result),
            "message": self.message,
        }


class JobStore:
    """In-memory registry of optimization jobs, each run on its own thread and store connection.

    At most one job per planning period may be queued or running at a time.
    """

    def __init__(self, database_path: str, *, default_optional_weight: float = DEFAULT_OPTIONAL_WEIGHT) -> None:
        self.database_path = database_path
        self.default_optional_weight = default_optional_weight
        self._jobs: Dict[str, Job] = {}
        self._threads: Dict[str, threading.Thread] = {}
        self._lock = threading.Lock()

    def create_job(self, planning_period_id: int) -> Job:
        with self._lock:
            for existing in self._jobs.values():
                if existing.planning_period_id == planning_period_id and existing.state in ACTIVE_STATES:
                    raise JobConflictError(planning_period_id, existing.id)
            job = Job(id=str(uuid.uuid4()), planning_period_id=planning_period_id)
            self._jobs[job.id] = job
        return job

    def start_job(self, job: Job) -> None:
        thread = threading.Thread(target=self._run_job, args=(job.id,), daemon=True)
        with self._lock:
            self._threads[job.id] = thread
        thread.start()

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    def list_jobs(self) -> List[Job]:
        with self._lock:
            jobs = list(self._jobs.values())
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [copy.deepcopy(job) for job in jobs]

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Optional[Job]:
        with self._lock:
            thread = self._threads.get(job_id)
        if thread is not None:
            thread.join(timeout)
        return self.get_job(job_id)

    def _get_period(self, job_id: str) -> int:
        with self._lock:
            return self._jobs[job_id].planning_period_id

    def _update_job(self, job_id: str, **changes: object) -> None:
        with self._lock:
            job = self._jobs[job_id]
            for key, value in changes.items():
                if key == "message" and isinstance(value, str):
                    value = _trim_message(value)
                setattr(job, key, value)

    def _run_job(self, job_id: str) -> None:
        self._update_job(job_id, state="running", started_at=_now_iso())
        planning_period_id = self._get_period(job_id)
        try:
            with CapacityStore(self.database_path, default_optional_weight=self.default_optional_weight) as store:
                result = optimize_assignments(store, planning_period_id)
            self._update_job(
                job_id,
                state="done",
                finished_at=_now_iso(),
                result=result.to_dict(),
                message=_summary(result),
            )
        except Exception as exc:
            logger.exception("Optimization job %s for period %s failed", job_id, planning_period_id)
            self._update_job(
                job_id,
                state="failed",
                finished_at=_now_iso(),
                message=_trim_message(str(exc)),
            )
        finally:
            with self._lock:
                self._threads.pop(job_id, None)
