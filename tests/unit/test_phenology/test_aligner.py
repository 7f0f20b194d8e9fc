import pytest
from datetime import date, timedelta

from conftest import soybean_observations
from phenology.aligner import SeasonAligner, historical_cycle_length
from phenology.config import AlignerSettings
from phenology.crops import get_profile
from phenology.models import IndexPoint
from phenology.normalizer import SeriesNormalizer


@pytest.fixture
def aligner():
    return SeasonAligner(AlignerSettings())


def _points(start: date, values, step: int = 10):
    return [IndexPoint(date=start + timedelta(days=step * i), raw=v) for i, v in enumerate(values)]


def test_align_season_shifts_to_current_calendar(aligner):
    """Verify a 2023 season maps onto 2025 dates with an offset of two."""
    season = _points(date(2023, 10, 2), [0.2, 0.4, 0.6, 0.8, 0.6, 0.4])

    aligned = aligner.align_season(season, 2025)
    assert aligned.season_year == 2023
    assert aligned.year_offset_to_current == 2
    assert date(2025, 11, 1) in [p.date for p in aligned.points]
    assert all(p.is_historical for p in aligned.points)
    assert all(p.season_year == 2025 for p in aligned.points)


def test_align_season_is_idempotent(aligner):
    """Verify aligning an already aligned season changes nothing."""
    season = _points(date(2023, 10, 2), [0.2, 0.4, 0.6, 0.8, 0.6, 0.4])
    once = aligner.align_season(season, 2025)
    twice = aligner.align_season(list(once.points), 2025)
    assert twice.year_offset_to_current == 0
    assert twice.points == once.points


def test_season_year_of_prefers_later_year_on_tie(aligner):
    points = [IndexPoint(date=d, raw=0.3) for d in (date(2024, 6, 1), date(2024, 7, 1), date(2024, 8, 15), date(2024, 9, 15))]
    # Two points in season 2023 (Jun, Jul) and two in season 2024 (Aug+, Sep+)
    assert aligner.season_year_of(points) == 2024


def test_align_correlation_with_identical_history(aligner):
    """Verify a prior season with the same shape correlates near one."""
    normalizer = SeriesNormalizer()
    current = normalizer.normalize(soybean_observations())
    history = [
        normalizer.normalize(soybean_observations(-1), is_historical=True),
        normalizer.normalize(soybean_observations(-2), is_historical=True),
    ]

    result = aligner.align(current, history, "SOJA")
    assert len(result.seasons) == 2
    assert set(result.correlations) == {2023, 2024}
    assert result.historical_correlation == pytest.approx(1.0, abs=0.01)
    assert result.expected_cycle_days is not None
    assert result.envelope
    assert all(row["min"] <= row["mean"] <= row["max"] for row in result.envelope)


def test_align_skips_short_and_non_prior_seasons(aligner):
    normalizer = SeriesNormalizer()
    current = normalizer.normalize(soybean_observations())
    short = _points(date(2023, 10, 1), [0.3, 0.5, 0.7])
    same_season = normalizer.normalize(soybean_observations(), is_historical=True)

    result = aligner.align(current, [short, same_season], "SOJA")
    assert result.seasons == []
    assert result.historical_correlation is None
    assert len([d for d in result.diagnostics if d.startswith("HISTORICAL_SKIPPED")]) == 2


def test_correlation_undefined_without_overlap(aligner):
    """Verify a season that never overlaps the current dates has no correlation."""
    current = _points(date(2025, 9, 1), [0.2, 0.3, 0.4, 0.5, 0.6])
    history = _points(date(2025, 3, 1), [0.2, 0.5, 0.8, 0.5, 0.2])

    result = aligner.align(current, [history])
    assert len(result.seasons) == 1
    assert result.historical_correlation is None
    assert any(d.startswith("HISTORICAL_CORRELATION_UNDEFINED") for d in result.diagnostics)


def test_historical_cycle_length_of_complete_season():
    points = SeriesNormalizer().normalize(soybean_observations(-1))
    length = historical_cycle_length(points, get_profile("SOJA"))
    assert length is not None
    assert 90 <= length <= 150
