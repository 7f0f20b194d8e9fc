import math
from datetime import date, timedelta

import pytest

from phenology.models import (
    DailyPrecipitation,
    DailyTemperature,
    DailyWaterBalance,
    ParcelContext,
    RadarObservation,
    RawObservation,
)

PEAK_DATE = date(2025, 12, 20)
SOS_DATE = date(2025, 10, 5)
LAST_DATE = date(2026, 2, 10)

PARCEL_GEOMETRY = {
    "type": "Polygon",
    "coordinates": [[[-47.90, -15.80], [-47.88, -15.80], [-47.88, -15.78], [-47.90, -15.78], [-47.90, -15.80]]],
}


def soybean_values(shift_years: int = 0):
    """(date, value) pairs of a healthy soybean season, late in senescence."""
    rows = []
    start = date(2025, 9, 5)
    for i in range(6):
        rows.append((start + timedelta(days=5 * i), 0.20))
    for t in range(0, 75, 5):
        rows.append((SOS_DATE + timedelta(days=t), 0.36 + 0.49 * math.sin(math.pi / 2 * t / 76)))
    rows.append((PEAK_DATE, 0.85))
    k = math.log(0.67 / 0.12) / 52
    for t in list(range(5, 55, 5)) + [52]:
        rows.append((PEAK_DATE + timedelta(days=t), 0.18 + 0.67 * math.exp(-k * t)))
    if shift_years:
        rows = [(d.replace(year=d.year + shift_years), v) for d, v in rows]
    return [(d, round(v, 4)) for d, v in rows]


def soybean_observations(shift_years: int = 0):
    return [RawObservation(date=d, raw=v, cloud_cover=5.0) for d, v in soybean_values(shift_years)]


def flat_observations(value: float = 0.25, points: int = 20):
    start = date(2025, 9, 5)
    return [RawObservation(date=start + timedelta(days=7 * i), raw=value) for i in range(points)]


def daily_range(start: date, end: date):
    day = start
    while day <= end:
        yield day
        day += timedelta(days=1)


@pytest.fixture
def soybean_series():
    return soybean_observations()


@pytest.fixture
def soybean_parcel():
    """A soybean parcel with every source pre-supplied and mild weather."""
    start, end = date(2025, 9, 20), LAST_DATE
    return ParcelContext(
        parcel_id="parcel-1",
        crop_type="SOJA",
        area_ha=120.0,
        season_start=date(2025, 9, 1),
        season_end=date(2026, 4, 30),
        geometry=PARCEL_GEOMETRY,
        as_of=LAST_DATE,
        observations=soybean_observations(),
        historical=[soybean_observations(-1), soybean_observations(-2)],
        radar=[],
        temperatures=[DailyTemperature(date=d, tmin=13.0, tmax=24.0) for d in daily_range(start, end)],
        water_balance=[DailyWaterBalance(date=d, etc=4.0, etr=4.0) for d in daily_range(start, end)],
        precipitation=[DailyPrecipitation(date=d, mm=1.0) for d in daily_range(start, date(2026, 3, 31))],
    )


@pytest.fixture
def radar_for_series():
    """Radar acquisitions on optical dates, linearly related to the optical values."""
    def _build(values, slope=0.8, intercept=0.1):
        return [RadarObservation(date=d, rvi=round((v - intercept) / slope, 6)) for d, v in values]
    return _build
