from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Set
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from .errors import DateParseError, HolidayFetchError
from .models import PlannerConfig
from .working_days import format_iso_date, parse_iso_date

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = PlannerConfig.holiday_api_base_url
DEFAULT_TIMEOUT_SECONDS = PlannerConfig.holiday_api_timeout_seconds


@dataclass(frozen=True)
class PublicHoliday:
    date: str
    local_name: str
    name: str


@dataclass(frozen=True)
class HolidayPreview:
    date: str
    local_name: str
    name: str
    is_duplicate: bool


@dataclass(frozen=True)
class ImportHolidaysResult:
    country_code: str
    year: int
    imported_count: int
    skipped_count: int


FetchHolidays = Callable[[str, int], List[PublicHoliday]]


def fetch_public_holidays(
    country_code: str,
    year: int,
    *,
    base_url: str = DEFAULT_BASE_URL,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> List[PublicHoliday]:
    """Download the public holidays of one country and year from a Nager.Date compatible API."""
    code = country_code.strip().upper()
    url = f"{base_url.rstrip('/')}/PublicHolidays/{int(year)}/{quote(code)}"
    request = Request(url, headers={"Accept": "application/json"})
    try:
        with urlopen(request, timeout=timeout) as response:
            payload = response.read()
    except HTTPError as exc:
        raise HolidayFetchError(code, year, f"HTTP {exc.code}", status=exc.code) from exc
    except (URLError, TimeoutError, OSError) as exc:
        raise HolidayFetchError(code, year, str(getattr(exc, "reason", exc))) from exc
    try:
        data = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise HolidayFetchError(code, year, "response is not valid JSON") from exc
    if not isinstance(data, list):
        raise HolidayFetchError(code, year, "expected a JSON array of holidays")
    holidays: List[PublicHoliday] = []
    for entry in data:
        if not isinstance(entry, dict) or "date" not in entry:
            raise HolidayFetchError(code, year, "holiday entry without a date")
        try:
            day = format_iso_date(parse_iso_date(str(entry["date"]), "date"))
        except DateParseError as exc:
            raise HolidayFetchError(code, year, f"invalid holiday date {entry['date']!r}") from exc
        holidays.append(
            PublicHoliday(
                date=day,
                local_name=str(entry.get("localName") or ""),
                name=str(entry.get("name") or ""),
            )
        )
    return holidays


def _existing_start_dates(store, country_id: int, year: int) -> Set[str]:
    window = (f"{year:04d}-01-01", f"{year:04d}-12-31")
    return {holiday.start_date for holiday in store.list_holidays(country_id, overlapping=window)}


def _normalized(holiday: PublicHoliday) -> str:
    return format_iso_date(parse_iso_date(holiday.date, "date"))


def preview_holiday_import(
    store,
    country_code: str,
    year: int,
    *,
    fetch: Optional[FetchHolidays] = None,
) -> List[HolidayPreview]:
    """Fetched holidays flagged with whether the country already has one starting that day."""
    country = store.get_country_by_code(country_code)
    fetched = (fetch or fetch_public_holidays)(country.iso_code, year)
    existing = _existing_start_dates(store, country.id, year)
    preview: List[HolidayPreview] = []
    for holiday in fetched:
        day = _normalized(holiday)
        preview.append(
            HolidayPreview(
                date=day,
                local_name=holiday.local_name,
                name=holiday.name,
                is_duplicate=day in existing,
            )
        )
    return preview


def import_holidays(
    store,
    country_code: str,
    years: Iterable[int],
    *,
    fetch: Optional[FetchHolidays] = None,
) -> List[ImportHolidaysResult]:
    """Store the public holidays of ``country_code`` for each year, skipping days already present.

    A year whose download fails is logged and left out of the results; the
    other years are still imported.
    """
    country = store.get_country_by_code(country_code)
    fetch = fetch or fetch_public_holidays
    results: List[ImportHolidaysResult] = []
    for year in years:
        try:
            fetched = fetch(country.iso_code, year)
        except HolidayFetchError as exc:
            logger.error("%s", exc)
            logger.warning("Skipping holiday import for %s %s", country.iso_code, year)
            continue
        existing = _existing_start_dates(store, country.id, year)
        rows = []
        skipped = 0
        for holiday in fetched:
            day = _normalized(holiday)
            if day in existing:
                skipped += 1
                continue
            existing.add(day)
            rows.append(
                {
                    "country_id": country.id,
                    "start_date": day,
                    "end_date": day,
                    "name": holiday.local_name or holiday.name or None,
                }
            )
        imported = store.batch_create_holidays(rows) if rows else 0
        logger.info(
            "Imported %d holidays for %s %s (%d already present)", imported, country.iso_code, year, skipped
        )
        results.append(
            ImportHolidaysResult(
                country_code=country.iso_code,
                year=year,
                imported_count=imported,
                skipped_count=skipped,
            )
        )
    return results
