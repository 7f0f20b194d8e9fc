"""
Index Series Loader - Vegetation-index time series from the agronomic data API.

The API takes the parcel outline as an uploaded GeoJSON file plus a date
range and answers with per-date NDVI (raw, interpolated and smoothed).
"""

import json
import logging
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from loaders.geometry import GeoJSON, ensure_feature_collection, extract_records, first_value
from phenology.errors import DataUnavailableError
from phenology.models import RawObservation, parse_date
from phenology.seasons import shift_years

log = logging.getLogger(__name__)

# Historical windows run past the current date so the old season's harvest is visible
HISTORICAL_EXTENSION_DAYS = 90


def parse_index_payload(payload: Any) -> List[RawObservation]:
    """Typed observations from any known response shape; unusable records are skipped."""
    observations = []
    for record in extract_records(payload):
        if not isinstance(record, dict):
            continue
        try:
            day = parse_date(first_value(record, "date", "data"))
        except ValueError:
            continue
        if day is None:
            continue
        obs = RawObservation(
            date=day,
            raw=first_value(record, "ndvi_raw", "ndvi", "value"),
            interpolated=first_value(record, "ndvi_interp", "ndvi_interpolated"),
            smoothed=first_value(record, "ndvi_smooth", "ndvi_smoothed"),
            cloud_cover=first_value(record, "cloud_cover", "nuvem"),
            quality=record.get("quality"),
        )
        if obs.has_value:
            observations.append(obs)
    return observations


class IndexSeriesLoader:
    """
    Usage:
        loader = IndexSeriesLoader("https://api.example.com")
        observations = loader.fetch_series(geojson, date(2025, 9, 1), date(2026, 2, 10))
    """

    def __init__(self, base_url: str = "http://localhost:8000", timeout: float = 60.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()

    @retry(
        retry=retry_if_exception_type(requests.RequestException),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        reraise=True,
    )
    def _post_with_file(self, endpoint: str, fields: Dict[str, Any], geometry: GeoJSON) -> Any:
        geojson = json.dumps(ensure_feature_collection(geometry))
        response = self.session.post(
            f"{self.base_url}{endpoint}",
            data=fields,
            files={"arquivo": ("geometry.geojson", geojson, "application/geo+json")},
            headers={"Accept": "application/json"},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()

    def fetch_series(self, geometry: GeoJSON, start: date, end: date) -> List[RawObservation]:
        """
        Observations between two dates.

        Raises:
            DataUnavailableError: the API is down or answered with nothing usable
        """
        fields = {"start_date": start.isoformat(), "end_date": end.isoformat()}
        try:
            payload = self._post_with_file("/consulta-ndvi", fields, geometry)
        except (requests.RequestException, ValueError) as e:
            log.error(f"Index series request failed ({start} to {end}): {e}")
            raise DataUnavailableError("index_series", str(e)) from e

        observations = parse_index_payload(payload)
        if not observations:
            raise DataUnavailableError("index_series", f"no usable points between {start} and {end}")
        log.info(f"Fetched {len(observations)} index observations ({start} to {end})")
        return observations

    def fetch_historical(
        self,
        geometry: GeoJSON,
        season_start: date,
        as_of: date,
        years: int = 3,
    ) -> List[List[RawObservation]]:
        """Prior seasons, newest first. Seasons that fail to load are skipped."""
        seasons = []
        for offset in range(1, years + 1):
            start = shift_years(season_start, -offset)
            end = shift_years(as_of, -offset) + timedelta(days=HISTORICAL_EXTENSION_DAYS)
            try:
                seasons.append(self.fetch_series(geometry, start, end))
            except DataUnavailableError as e:
                log.warning(f"Historical season -{offset} unavailable: {e}")
        return seasons


# Singleton
_loader: Optional[IndexSeriesLoader] = None

def get_index_loader(base_url: str = None) -> IndexSeriesLoader:
    """Get singleton index series loader."""
    global _loader
    if _loader is None:
        _loader = IndexSeriesLoader(base_url or "http://localhost:8000")
    return _loader
