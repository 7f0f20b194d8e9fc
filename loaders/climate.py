"""
Climate Loader - Daily temperature, water balance and precipitation.

All three come from the agronomic data API as JSON; responses are parsed
into typed daily records at this boundary.
"""

import logging
from datetime import date
from typing import Any, Dict, List, Optional

import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from loaders.geometry import GeoJSON, centroid, ensure_feature_collection, extract_records, first_value
from phenology.errors import DataUnavailableError
from phenology.models import (
    DailyPrecipitation,
    DailyTemperature,
    DailyWaterBalance,
    finite_float,
    parse_date,
)

log = logging.getLogger(__name__)

# The water-balance service has no wheat model; bean is the closest cycle
WATER_BALANCE_CROPS = {"SOJA": "SOJA", "MILHO": "MILHO", "ALGODAO": "ALGODAO", "TRIGO": "FEIJAO"}


def _record_date(record: Dict[str, Any]) -> Optional[date]:
    try:
        return parse_date(first_value(record, "date", "data"))
    except ValueError:
        return None


def parse_temperature(payload: Any) -> List[DailyTemperature]:
    days = []
    for record in extract_records(payload):
        day = _record_date(record)
        if day is None:
            continue
        entry = DailyTemperature(
            date=day,
            tmin=finite_float(first_value(record, "tmin", "temp_min")),
            tmax=finite_float(first_value(record, "tmax", "temp_max")),
            tavg=finite_float(first_value(record, "value", "temp_media", "temperatura")),
        )
        if entry.tmean is not None:
            days.append(entry)
    return sorted(days, key=lambda d: d.date)


def parse_water_balance(payload: Any) -> List[DailyWaterBalance]:
    days = []
    for record in extract_records(payload):
        day = _record_date(record)
        if day is None:
            continue
        etc = finite_float(first_value(record, "ETc", "etc")) or 0.0
        etr = finite_float(first_value(record, "ETr", "etr", "ETreal")) or 0.0
        days.append(DailyWaterBalance(date=day, etc=etc, etr=etr))
    return sorted(days, key=lambda d: d.date)


def parse_precipitation(payload: Any) -> List[DailyPrecipitation]:
    days = []
    for record in extract_records(payload):
        day = _record_date(record)
        if day is None:
            continue
        mm = finite_float(first_value(record, "GPM_mm_day", "precip", "precipMm", "value")) or 0.0
        days.append(DailyPrecipitation(date=day, mm=max(0.0, mm)))
    return sorted(days, key=lambda d: d.date)


class ClimateLoader:
    """
    Usage:
        loader = ClimateLoader("https://api.example.com")
        temps = loader.fetch_temperature(geojson, planting, today)
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
    def _post_json(self, endpoint: str, body: Dict[str, Any]) -> Any:
        response = self.session.post(f"{self.base_url}{endpoint}", json=body, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    def _fetch(self, source: str, endpoint: str, body: Dict[str, Any]) -> Any:
        try:
            return self._post_json(endpoint, body)
        except (requests.RequestException, ValueError) as e:
            log.warning(f"{source} request failed: {e}")
            raise DataUnavailableError(source, str(e)) from e

    def fetch_temperature(self, geometry: GeoJSON, start: date, end: date) -> List[DailyTemperature]:
        payload = self._fetch("temperature", "/consulta-temperatura-json", {
            "geojson": ensure_feature_collection(geometry),
            "start_date": start.isoformat(),
            "end_date": end.isoformat(),
        })
        days = parse_temperature(payload)
        log.info(f"Fetched {len(days)} days of temperature")
        return days

    def fetch_water_balance(self, geometry: GeoJSON, planting: date, crop: str) -> List[DailyWaterBalance]:
        payload = self._fetch("water_balance", "/consulta-balanco-hidrico-json", {
            "geojson": ensure_feature_collection(geometry),
            "data_plantio": planting.isoformat(),
            "cultura": WATER_BALANCE_CROPS.get(str(crop).upper(), "SOJA"),
        })
        days = parse_water_balance(payload)
        log.info(f"Fetched {len(days)} days of water balance")
        return days

    def fetch_precipitation(self, geometry: GeoJSON, start: date, end: date) -> List[DailyPrecipitation]:
        point = centroid(geometry)
        if point is None:
            raise DataUnavailableError("precipitation", "parcel geometry has no polygon")
        lat, lon = point
        payload = self._fetch("precipitation", "/consulta-precipitacao", {
            "pontos": [{"latitude": lat, "longitude": lon}],
            "start_date": start.isoformat(),
            "end_date": end.isoformat(),
        })
        days = parse_precipitation(payload)
        log.info(f"Fetched {len(days)} days of precipitation")
        return days


# Singleton
_loader: Optional[ClimateLoader] = None

def get_climate_loader(base_url: str = None) -> ClimateLoader:
    """Get singleton climate loader."""
    global _loader
    if _loader is None:
        _loader = ClimateLoader(base_url or "http://localhost:8000")
    return _loader
