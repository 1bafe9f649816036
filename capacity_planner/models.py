from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional


PRIORITY_LOW = 0
PRIORITY_MEDIUM = 10
PRIORITY_HIGH = 20
PRIORITY_BLOCKER = 30

PRIORITY_LABELS: Dict[int, str] = {
    PRIORITY_LOW: "Low",
    PRIORITY_MEDIUM: "Medium",
    PRIORITY_HIGH: "High",
    PRIORITY_BLOCKER: "Blocker",
}

EFFORT_PERIODS = ("daily", "weekly")

DEFAULT_OPTIONAL_WEIGHT = 0.5
DEFAULT_PRODUCTIVITY_FACTOR = 0.5
DEFAULT_WORKING_DAYS = "Mon,Tue,Wed,Thu,Fri"
VIABILITY_THRESHOLD_PCT = 99.95


@dataclass(frozen=True)
class Country:
    id: int
    iso_code: str
    name: str


@dataclass(frozen=True)
class Person:
    """Person roster entry; ``working_days`` is the raw comma separated spec."""

    id: int
    name: str
    email: str
    available_hours_per_week: float
    working_days: str = DEFAULT_WORKING_DAYS
    country_id: Optional[int] = None


@dataclass(frozen=True)
class PlanningPeriod:
    id: int
    start_date: str
    end_date: str
    name: Optional[str] = None


@dataclass(frozen=True)
class Absence:
    id: int
    person_id: int
    start_date: str
    end_date: str
    days: int
    reason: Optional[str] = None


@dataclass(frozen=True)
class Holiday:
    id: int
    country_id: int
    start_date: str
    end_date: str
    name: Optional[str] = None


@dataclass(frozen=True)
class Job:
    id: int
    name: str
    description: Optional[str] = None


@dataclass(frozen=True)
class OverheadTask:
    """Recurring duty attached to a job, deducted from every holder's capacity."""

    id: int
    job_id: int
    name: str
    effort_hours: float
    effort_period: str
    is_optional: bool = False
    optional_weight: float = DEFAULT_OPTIONAL_WEIGHT
    description: Optional[str] = None


@dataclass(frozen=True)
class PersonJobAssignment:
    id: int
    person_id: int
    job_id: int
    planning_period_id: int


@dataclass(frozen=True)
class Project:
    id: int
    name: str
    description: Optional[str] = None


@dataclass(frozen=True)
class ProjectRequirement:
    id: int
    project_id: int
    planning_period_id: int
    required_hours: float
    priority: int = PRIORITY_MEDIUM

    @property
    def priority_label(self) -> str:
        return PRIORITY_LABELS.get(self.priority, str(self.priority))


@dataclass(frozen=True)
class Assignment:
    """Person-on-project link; the ``calculated_*`` fields are a cache owned by the optimizer."""

    id: int
    person_id: int
    project_id: int
    planning_period_id: int
    productivity_factor: float
    start_date: str
    end_date: str
    is_pinned: bool = False
    pinned_allocation_percentage: Optional[float] = None
    calculated_allocation_percentage: Optional[float] = None
    calculated_effective_hours: Optional[float] = None
    last_calculated_at: Optional[str] = None

    @property
    def has_pin(self) -> bool:
        return self.is_pinned and self.pinned_allocation_percentage is not None

    def effective_allocation_percentage(self) -> float:
        if self.has_pin:
            return float(self.pinned_allocation_percentage)
        return self.calculated_allocation_percentage or 0.0

    def effective_hours(self) -> float:
        return self.calculated_effective_hours or 0.0


@dataclass(frozen=True)
class AvailabilityBreakdown:
    available_hours: float
    base_hours: float
    absence_days: int
    absence_hours: float
    holiday_days: int
    holiday_hours: float
    overhead_hours: float
    optional_overhead_hours: float


@dataclass(frozen=True)
class AssignmentCalculation:
    assignment_id: int
    calculated_allocation_percentage: float
    calculated_effective_hours: float


@dataclass(frozen=True)
class ProjectShortfall:
    project_id: int
    project_name: str
    required_hours: float
    available_effective_hours: float
    shortfall: float
    shortfall_percentage: float


@dataclass
class OptimizationResult:
    success: bool = True
    calculations: List[AssignmentCalculation] = field(default_factory=list)
    infeasible_projects: List[ProjectShortfall] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "success": self.success,
            "calculations": [vars(calc) for calc in self.calculations],
            "infeasible_projects": [vars(item) for item in self.infeasible_projects],
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class AssignmentSummary:
    assignment_id: int
    project_name: str
    allocation_percentage: float
    effective_hours: float
    is_pinned: bool = False


@dataclass(frozen=True)
class PersonAssignmentSummary:
    assignment_id: int
    person_name: str
    allocation_percentage: float
    productivity_factor: float
    effective_hours: float
    breakdown: AvailabilityBreakdown
    is_pinned: bool = False


@dataclass(frozen=True)
class PersonCapacity:
    person_id: int
    person_name: str
    person_email: str
    breakdown: AvailabilityBreakdown
    total_allocated_hours: float
    total_effective_hours: float
    utilization_percentage: float
    is_over_committed: bool
    assignments: List[AssignmentSummary] = field(default_factory=list)

    @property
    def total_available_hours(self) -> float:
        return self.breakdown.available_hours


@dataclass(frozen=True)
class ProjectStaffing:
    project_id: int
    project_name: str
    priority: int
    required_hours: float
    total_allocated_hours: float
    total_effective_hours: float
    staffing_percentage: float
    is_viable: bool
    shortfall: float
    assigned_people: List[PersonAssignmentSummary] = field(default_factory=list)


@dataclass(frozen=True)
class CapacityOverview:
    total_people: int
    total_projects: int
    over_committed_people: int
    under_staffed_projects: int
    people_capacity: List[PersonCapacity] = field(default_factory=list)
    project_staffing: List[ProjectStaffing] = field(default_factory=list)


@dataclass(frozen=True)
class PlannerConfig:
    database_path: str = "capacity_planner.db"
    logging_level: str = "INFO"
    viability_threshold_pct: float = VIABILITY_THRESHOLD_PCT
    default_optional_weight: float = DEFAULT_OPTIONAL_WEIGHT
    holiday_api_base_url: str = "https://date.nager.at/api/v3"
    holiday_api_timeout_seconds: float = 10.0
