import pytest
from datetime import date

from phenology.config import NormalizerSettings
from phenology.errors import EmptySeriesError
from phenology.models import RawObservation
from phenology.normalizer import SeriesNormalizer
from phenology.seasons import season_year, shift_years


@pytest.fixture
def normalizer():
    return SeriesNormalizer(NormalizerSettings())


def test_orders_by_date(normalizer):
    """Verify output is sorted regardless of input order."""
    obs = [
        RawObservation(date(2025, 11, 10), raw=0.5),
        RawObservation(date(2025, 10, 1), raw=0.3),
        RawObservation(date(2025, 10, 20), raw=0.4),
    ]
    points = normalizer.normalize(obs)
    assert [p.date for p in points] == [date(2025, 10, 1), date(2025, 10, 20), date(2025, 11, 10)]
    assert all(p.season_year == 2025 for p in points)


def test_too_few_points_raises(normalizer):
    """Verify fewer than three usable points is an empty-series error."""
    obs = [RawObservation(date(2025, 10, 1), raw=0.3), RawObservation(date(2025, 10, 6), raw=0.4)]
    with pytest.raises(EmptySeriesError):
        normalizer.normalize(obs)


def test_duplicate_dates_keep_highest_quality(normalizer):
    """Verify a duplicate date keeps the best observation."""
    obs = [
        RawObservation(date(2025, 10, 1), raw=0.30),
        RawObservation(date(2025, 10, 6), raw=0.35, quality=0.9),
        RawObservation(date(2025, 10, 6), raw=0.60, quality=0.4),
        RawObservation(date(2025, 10, 11), raw=0.40),
    ]
    points = normalizer.normalize(obs)
    assert len(points) == 3
    assert points[1].raw == 0.35


def test_duplicate_dates_equal_quality_last_wins(normalizer):
    """Verify the later arrival wins when quality ties."""
    obs = [
        RawObservation(date(2025, 10, 1), raw=0.30),
        RawObservation(date(2025, 10, 6), raw=0.35),
        RawObservation(date(2025, 10, 6), raw=0.45),
        RawObservation(date(2025, 10, 11), raw=0.40),
    ]
    points = normalizer.normalize(obs)
    assert points[1].raw == 0.45


def test_cloudy_and_invalid_points_dropped(normalizer):
    """Verify cloud-obscured and non-finite values are discarded."""
    obs = [
        RawObservation(date(2025, 10, 1), raw=0.30),
        RawObservation(date(2025, 10, 6), raw=0.90, cloud_cover=80.0),
        RawObservation(date(2025, 10, 11), raw=float("nan")),
        RawObservation(date(2025, 10, 16), raw=0.40),
        RawObservation(date(2025, 10, 21), raw=0.45),
    ]
    points = normalizer.normalize(obs)
    assert [p.date.day for p in points] == [1, 16, 21]


def test_effective_value_precedence(normalizer):
    """Verify smoothed beats interpolated beats raw."""
    obs = [
        RawObservation(date(2025, 10, 1), raw=0.30, interpolated=0.31, smoothed=0.32),
        RawObservation(date(2025, 10, 6), raw=0.35, interpolated=0.36),
        RawObservation(date(2025, 10, 11), raw=0.40),
    ]
    points = normalizer.normalize(obs)
    assert [p.effective for p in points] == [0.32, 0.36, 0.40]


def test_historical_flag(normalizer, soybean_series):
    points = normalizer.normalize(soybean_series, is_historical=True)
    assert all(p.is_historical for p in points)


def test_season_year_cutover():
    """Verify dates before August belong to the previous season."""
    assert season_year(date(2025, 9, 1)) == 2025
    assert season_year(date(2026, 2, 1)) == 2025
    assert season_year(date(2026, 8, 1)) == 2026


def test_shift_years_leap_day():
    assert shift_years(date(2024, 2, 29), 1) == date(2025, 2, 28)
    assert shift_years(date(2023, 11, 1), 2) == date(2025, 11, 1)
