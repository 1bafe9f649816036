from __future__ import annotations

from typing import Optional


class CapacityPlannerError(Exception):
    """Base class for failures the caller has to act on."""


class DateParseError(CapacityPlannerError, ValueError):
    def __init__(self, field_name: str, value: object) -> None:
        super().__init__(f"invalid date in '{field_name}': {value!r}")
        self.field = field_name
        self.value = value


class ReferenceNotFound(CapacityPlannerError, LookupError):
    def __init__(self, entity: str, entity_id: object) -> None:
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class ValidationError(CapacityPlannerError, ValueError):
    pass


class HolidayFetchError(CapacityPlannerError):
    def __init__(self, country_code: str, year: int, reason: str, status: Optional[int] = None) -> None:
        super().__init__(f"failed to fetch holidays for {country_code} ({year}): {reason}")
        self.country_code = country_code
        self.year = year
        self.reason = reason
        self.status = status
