import numpy as np
import pytest
from datetime import date, timedelta

from conftest import PEAK_DATE, SOS_DATE, flat_observations, soybean_observations, soybean_values
from phenology.config import DetectorSettings
from phenology.cycle import CycleDetector, detect_replanting
from phenology.errors import UnknownCropError
from phenology.models import EosMethod, HealthLabel, IndexPoint, PatternStatus, RawObservation, Regime
from phenology.normalizer import SeriesNormalizer
from phenology.pattern import classify


@pytest.fixture
def detector():
    return CycleDetector(DetectorSettings())


@pytest.fixture
def soybean_points():
    return SeriesNormalizer().normalize(soybean_observations())


def test_soybean_season_in_senescence(detector, soybean_points):
    """Verify SOS, peak, regime and extrapolated EOS of a healthy soybean season."""
    cycle = detector.detect(soybean_points, "SOJA")

    assert not cycle.disqualified
    assert cycle.sos_date == SOS_DATE
    assert cycle.peak_date == PEAK_DATE
    assert cycle.peak_value == pytest.approx(0.85)
    assert cycle.regime == Regime.SENESCENCE
    assert cycle.eos_method == EosMethod.DECAY_EXTRAPOLATION
    assert abs((cycle.eos_date - date(2026, 2, 26)).days) <= 5
    assert cycle.health_label == HealthLabel.GOOD
    assert 0.004 <= cycle.decline_rate <= 0.020


def test_dates_are_ordered(detector, soybean_points):
    """Verify SOS <= peak <= EOS and the cycle length matches."""
    cycle = detector.detect(soybean_points, "SOYBEAN")
    assert cycle.sos_date <= cycle.peak_date <= cycle.eos_date
    assert cycle.cycle_length_days == (cycle.eos_date - cycle.sos_date).days
    assert 90 <= cycle.cycle_length_days <= 150


def test_planting_date_estimated_from_sos(detector, soybean_points):
    cycle = detector.detect(soybean_points, "SOJA")
    assert not cycle.planting_from_input
    assert cycle.planting_date == SOS_DATE - timedelta(days=8)


def test_planting_date_from_input(detector, soybean_points):
    cycle = detector.detect(soybean_points, "SOJA", planting_date=date(2025, 9, 25))
    assert cycle.planting_from_input
    assert cycle.planting_date == date(2025, 9, 25)
    assert any(d.startswith("PLANTING_DATE_PROVIDED") for d in cycle.diagnostics)


def test_observed_eos_when_harvest_value_reached(detector):
    """Verify EOS is the observed date once the series falls below the harvest value."""
    obs = soybean_observations()
    extra = [(date(2026, 2, 15), 0.27), (date(2026, 2, 20), 0.24), (date(2026, 2, 25), 0.22)]
    for day, value in extra:
        obs.append(RawObservation(date=day, raw=value))
    points = SeriesNormalizer().normalize(obs)

    cycle = detector.detect(points, "SOJA")
    assert cycle.eos_method == EosMethod.OBSERVED
    assert cycle.eos_date == date(2026, 2, 20)


def test_vegetative_regime_projects_eos(detector):
    """Verify a still-rising series is VEGETATIVE and EOS lies in the future."""
    points = SeriesNormalizer().normalize(soybean_observations())
    rising = [p for p in points if p.date <= date(2025, 11, 20)]

    cycle = detector.detect(rising, "SOJA", as_of=date(2025, 11, 20))
    assert cycle.regime == Regime.VEGETATIVE
    assert cycle.eos_method == EosMethod.VEGETATIVE_PROJECTION
    assert cycle.eos_date > date(2025, 11, 20)
    assert cycle.sos_date + timedelta(days=90) <= cycle.eos_date <= cycle.sos_date + timedelta(days=150)
    assert not any(d.startswith("EOS_IN_PAST") for d in cycle.diagnostics)


def test_low_vigor_disqualifies(detector):
    """Verify a flat low series is disqualified before any phenology."""
    points = SeriesNormalizer().normalize(flat_observations(0.25))
    cycle = detector.detect(points, "SOJA")

    assert cycle.disqualified
    assert cycle.sos_date is None
    assert cycle.eos_date is None
    assert any(d.startswith("LOW_VIGOR") for d in cycle.diagnostics)

    pattern = classify(points, "SOJA", cycle)
    assert pattern.status == PatternStatus.NO_CROP
    assert pattern.hypotheses


def test_empty_series_is_no_data(detector):
    cycle = detector.detect([], "SOJA")
    assert cycle.disqualified
    assert cycle.diagnostics[0].startswith("NO_DATA")


def test_unknown_crop(detector, soybean_points):
    with pytest.raises(UnknownCropError):
        detector.detect(soybean_points, "COFFEE")


def test_soybean_pattern_is_typical(detector, soybean_points):
    cycle = detector.detect(soybean_points, "SOJA")
    pattern = classify(soybean_points, "SOJA", cycle)
    assert pattern.status == PatternStatus.TYPICAL
    assert pattern.hypotheses == []


def test_detect_replanting():
    """Verify a collapse between two green stretches is reported."""
    values = np.array([0.2, 0.3, 0.5, 0.6, 0.7, 0.7, 0.3, 0.6, 0.7, 0.75, 0.8, 0.8])
    assert detect_replanting(values) is not None
    assert detect_replanting(np.array([0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.8, 0.7, 0.6, 0.5, 0.4])) is None


def test_series_is_not_mutated(detector, soybean_points):
    before = list(soybean_points)
    detector.detect(soybean_points, "SOJA")
    assert soybean_points == before
    assert isinstance(soybean_points[0], IndexPoint)


def _through_peak():
    return [RawObservation(date=d, raw=v) for d, v in soybean_values() if d <= PEAK_DATE]


def _noisy_plateau():
    """Rise to the peak, then 14 points alternating around a slight decline."""
    obs = _through_peak()
    for x in range(14):
        noise = 0.08 if x % 2 == 0 else -0.08
        obs.append(RawObservation(date=PEAK_DATE + timedelta(days=5 * (x + 1)),
                                  raw=round(0.70 - 0.006 * (x - 6.5) + noise, 4)))
    return SeriesNormalizer().normalize(obs)


def test_noisy_plateau_is_reproductive():
    """Verify a declining slope with a poor linear fit is read as plateau."""
    points = _noisy_plateau()
    cycle = CycleDetector(DetectorSettings(slope_threshold=0.001)).detect(points, "SOJA")

    assert cycle.regime == Regime.REPRODUCTIVE
    assert cycle.eos_method == EosMethod.TREND_CONTINUATION
    regime = next(d for d in cycle.diagnostics if d.startswith("REGIME"))
    assert "R² 0.1" in regime
    assert any(d.startswith("EOS_TREND_CONTINUATION") for d in cycle.diagnostics)


def test_trend_fit_threshold_is_configurable():
    points = _noisy_plateau()
    cycle = CycleDetector(DetectorSettings(slope_threshold=0.001, min_trend_r2=0.0)).detect(points, "SOJA")
    assert cycle.regime == Regime.SENESCENCE


def test_clean_plateau_continues_trend(detector):
    """Verify a flat canopy after the peak projects EOS from the minimum decline rate."""
    obs = _through_peak()
    obs += [RawObservation(date=PEAK_DATE + timedelta(days=5 * (i + 1)), raw=round(0.84 - 0.004 * i, 4))
            for i in range(6)]
    cycle = detector.detect(SeriesNormalizer().normalize(obs), "SOJA")

    assert cycle.regime == Regime.REPRODUCTIVE
    assert cycle.eos_method == EosMethod.TREND_CONTINUATION
    assert cycle.eos_date > PEAK_DATE + timedelta(days=30)
    assert cycle.cycle_length_days <= 150


def test_decay_fit_failure_falls_back_to_trend():
    """Verify a decline too short to fit still gets a trend-continuation EOS."""
    obs = _through_peak()
    obs += [RawObservation(date=date(2025, 12, 25), raw=0.70), RawObservation(date=date(2025, 12, 30), raw=0.55)]
    cycle = CycleDetector(DetectorSettings(trend_window=4)).detect(SeriesNormalizer().normalize(obs), "SOJA")

    assert cycle.regime == Regime.SENESCENCE
    assert cycle.eos_method == EosMethod.TREND_CONTINUATION
    assert "EOS_DECAY_FIT_FAILED: falling back to trend continuation" in cycle.diagnostics
    assert cycle.eos_date == date(2026, 1, 15)
