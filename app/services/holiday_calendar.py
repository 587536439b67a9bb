"""Public-holiday calendar client.

Holidays are fetched per year from a structured (JSON) endpoint, falling back
to the plain-text iCalendar feed of the same provider when the JSON endpoint
yields nothing. Successful years are cached in-process so overlapping
previews do not hit the network again.
"""
import json
import logging
import threading
import time
from datetime import date, datetime, timedelta
from functools import lru_cache
from typing import Dict, Iterable, List, Optional, Tuple, Union

import httpx

from app.core.config import settings
from app.core.exceptions import HolidayFetchFailed
from app.core.monitoring import HOLIDAY_FETCH_COUNT, HOLIDAY_FETCH_DURATION
from app.schemas import HolidayPeriod

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (compatible; SchoolScheduler/1.0)"

HolidayMap = Dict[date, str]


def _parse_compact_date(value: str) -> Optional[date]:
    value = (value or "").strip()
    if len(value) > 8:
        value = value[:8]
    if len(value) != 8:
        return None
    try:
        return datetime.strptime(value, "%Y%m%d").date()
    except ValueError:
        return None


def parse_holiday_json(payload: dict) -> HolidayMap:
    """Extract {date: name} from a VCALENDAR/VEVENT JSON document; the first name per date wins."""
    if not isinstance(payload, dict):
        raise ValueError("unexpected holiday document")
    holidays: HolidayMap = {}
    for calendar in payload.get("VCALENDAR") or []:
        for event in calendar.get("VEVENT") or []:
            raw = (event.get("DTSTART") or "").strip() or (event.get("DTSTART;VALUE=DATE") or "").strip()
            d = _parse_compact_date(raw)
            if d is None:
                continue
            holidays.setdefault(d, (event.get("SUMMARY") or "").strip())
    return holidays


def parse_holiday_ics(text: str) -> HolidayMap:
    """Extract {date: name} from DTSTART/SUMMARY pairs of an iCalendar text feed."""
    holidays: HolidayMap = {}
    current_date: Optional[date] = None
    current_summary = ""
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if line.startswith("DTSTART"):
            _, sep, value = line.partition(":")
            if sep:
                current_date = _parse_compact_date(value) or current_date
        elif line.startswith("SUMMARY:"):
            current_summary = line[len("SUMMARY:"):].strip()
        elif line == "END:VEVENT":
            if current_date and current_summary:
                holidays.setdefault(current_date, current_summary)
            current_date = None
            current_summary = ""
    return holidays


def holiday_name(holidays: HolidayMap, value: Union[date, datetime, str]) -> Optional[str]:
    """Look up a holiday name by date, datetime, "YYYY-MM-DD" or "YYYYMMDD"."""
    if isinstance(value, datetime):
        return holidays.get(value.date())
    if isinstance(value, date):
        return holidays.get(value)
    raw = str(value).strip()
    if raw[:8].isdigit():
        d = _parse_compact_date(raw)
        return holidays.get(d) if d else None
    for fmt in ("%Y-%m-%d", "%Y/%m/%d"):
        try:
            return holidays.get(datetime.strptime(raw[:10], fmt).date())
        except ValueError:
            continue
    return None


def merge_holiday_periods(holidays: HolidayMap, periods: Optional[Iterable[HolidayPeriod]]) -> HolidayMap:
    """Add school-specific closures; public holiday names win on shared dates."""
    merged = dict(holidays)
    for period in periods or []:
        current = period.start_date
        while current <= period.end_date:
            merged.setdefault(current, period.name or "Closure")
            current += timedelta(days=1)
    return merged


class HolidayCalendar:
    """Fetch-and-cache client for the public holiday provider."""

    def __init__(
        self,
        client: Optional[httpx.Client] = None,
        *,
        json_url: Optional[str] = None,
        ics_url: Optional[str] = None,
        referer_url: Optional[str] = None,
        timeout: Optional[float] = None,
        cache_ttl: Optional[int] = None,
    ):
        self.json_url = json_url or settings.holiday_json_url
        self.ics_url = ics_url or settings.holiday_ics_url
        self.referer_url = referer_url or settings.holiday_referer_url
        self.cache_ttl = settings.holiday_cache_ttl_seconds if cache_ttl is None else cache_ttl
        self._client = client or httpx.Client(timeout=settings.holiday_timeout_seconds if timeout is None else timeout)
        self._cache: Dict[int, Tuple[float, HolidayMap]] = {}
        self._lock = threading.Lock()

    def close(self) -> None:
        self._client.close()

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def _cached(self, year: int) -> Optional[HolidayMap]:
        with self._lock:
            entry = self._cache.get(year)
            if entry is None:
                return None
            stored_at, holidays = entry
            if time.monotonic() - stored_at > self.cache_ttl:
                del self._cache[year]
                return None
            return holidays

    def _store(self, year: int, holidays: HolidayMap) -> None:
        with self._lock:
            self._cache[year] = (time.monotonic(), holidays)

    def _get(self, source: str, url_template: str, year: int, accept: str) -> httpx.Response:
        be_year = year + 543
        url = url_template.format(year=year, be_year=be_year)
        headers = {
            "User-Agent": USER_AGENT,
            "Accept": accept,
            "Referer": self.referer_url.format(year=year, be_year=be_year),
        }
        with HOLIDAY_FETCH_DURATION.labels(source=source).time():
            response = self._client.get(url, headers=headers)
        if response.status_code != 200:
            raise ValueError(f"status {response.status_code}")
        return response

    def _fetch_json(self, year: int) -> HolidayMap:
        body = self._get("json", self.json_url, year, "application/json, text/plain, */*").text.strip()
        if not body:
            return {}
        if body.startswith("<"):
            raise ValueError("unexpected html content")
        return parse_holiday_json(json.loads(body))

    def _fetch_ics(self, year: int) -> HolidayMap:
        return parse_holiday_ics(self._get("ics", self.ics_url, year, "text/calendar, text/plain, */*").text)

    def _fetch_year(self, year: int) -> Tuple[HolidayMap, List[str]]:
        errors: List[str] = []
        for source, fetch in (("json", self._fetch_json), ("ics", self._fetch_ics)):
            try:
                holidays = fetch(year)
            except (httpx.HTTPError, ValueError) as e:
                HOLIDAY_FETCH_COUNT.labels(source=source, status="error").inc()
                errors.append(f"{source}: {e}")
                logger.info("Holiday %s source failed for %d: %s", source, year, e)
                continue
            if holidays:
                HOLIDAY_FETCH_COUNT.labels(source=source, status="ok").inc()
                return holidays, errors
            HOLIDAY_FETCH_COUNT.labels(source=source, status="empty").inc()
        return {}, errors

    def fetch_holidays(self, start_year: int, end_year: int) -> HolidayMap:
        """Holidays for [start_year, end_year]; raises HolidayFetchFailed only if every failing year left nothing."""
        holidays: HolidayMap = {}
        failures: List[str] = []
        for year in range(start_year, end_year + 1):
            year_holidays = self._cached(year)
            if year_holidays is not None:
                HOLIDAY_FETCH_COUNT.labels(source="cache", status="ok").inc()
            else:
                year_holidays, year_errors = self._fetch_year(year)
                if not year_holidays:
                    if year_errors:
                        failures.append(f"{year}: {' | '.join(year_errors)}")
                    continue
                self._store(year, year_holidays)
            for d, name in year_holidays.items():
                holidays.setdefault(d, name)

        if failures:
            if not holidays:
                raise HolidayFetchFailed(f"failed to fetch holidays: {'; '.join(failures)}", failures)
            logger.warning("Partial holiday fetch failures: %s", "; ".join(failures))
        return dict(sorted(holidays.items()))


@lru_cache(maxsize=1)
def get_holiday_calendar() -> HolidayCalendar:
    """Process-wide calendar (FastAPI dependency), so the per-year cache is shared across requests."""
    return HolidayCalendar()
