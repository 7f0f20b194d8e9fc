import pytest
from datetime import date, timedelta

from conftest import daily_range
from phenology.adjusters import (
    PrecipitationAdjuster,
    ThermalAdjuster,
    WaterBalanceAdjuster,
    cap_shift,
    combine,
)
from phenology.config import AdjusterSettings
from phenology.crops import get_profile
from phenology.models import (
    AdjustmentKind,
    CycleResult,
    DailyPrecipitation,
    DailyTemperature,
    DailyWaterBalance,
    EnvironmentalAdjustment,
    Regime,
)

PLANTING = date(2025, 10, 1)
EOS = date(2026, 2, 1)


@pytest.fixture
def cycle():
    return CycleResult(
        sos_date=PLANTING + timedelta(days=8),
        peak_date=date(2025, 12, 15),
        eos_date=EOS,
        planting_date=PLANTING,
        regime=Regime.SENESCENCE,
    )


def _temperatures(tmean: float, end: date):
    return [DailyTemperature(date=d, tavg=tmean) for d in daily_range(PLANTING, end)]


def test_cap_shift():
    assert cap_shift(14.6, 10) == 10
    assert cap_shift(-3.4, 10) == -3
    assert cap_shift(-30, 12) == -12


def test_thermal_small_delay(cycle):
    """Verify GDD maturity a few days after EOS produces a small blended delay."""
    adjustment = ThermalAdjuster().adjust(cycle, get_profile("SOJA"), _temperatures(20.0, date(2026, 2, 28)))
    assert adjustment.kind == AdjustmentKind.THERMAL
    assert adjustment.stress_level == "HIGH"
    assert adjustment.details["maturity_date"] == "2026-02-07"
    assert adjustment.days_shift == 3


def test_thermal_projection_is_capped(cycle):
    """Verify a far projected maturity is capped at the thermal limit."""
    adjustment = ThermalAdjuster().adjust(cycle, get_profile("SOJA"), _temperatures(14.0, date(2026, 2, 28)))
    assert adjustment.raw_days_shift > 10
    assert adjustment.days_shift == 10


def test_thermal_past_maturity_discarded_while_vegetative(cycle):
    cycle.regime = Regime.VEGETATIVE
    cycle.eos_date = date(2026, 4, 15)
    adjustment = ThermalAdjuster().adjust(cycle, get_profile("SOJA"), _temperatures(20.0, date(2026, 3, 31)))
    assert adjustment.days_shift == 0
    assert "discarded" in adjustment.details["note"]


def test_thermal_without_data(cycle):
    adjustment = ThermalAdjuster().adjust(cycle, get_profile("SOJA"), [])
    assert adjustment.stress_level == "NO_DATA"
    assert adjustment.days_shift == 0


def test_water_severe_deficit(cycle):
    """Verify a large accumulated deficit is SEVERE and lowers the yield factor."""
    records = [DailyWaterBalance(date=d, etc=8.0, etr=2.0) for d in daily_range(PLANTING, PLANTING + timedelta(days=19))]
    adjustment = WaterBalanceAdjuster().adjust(cycle, records)
    assert adjustment.stress_level == "SEVERE"
    assert adjustment.days_shift == 12
    assert adjustment.flag_raised
    assert adjustment.details["yield_factor"] == 0.70


def test_water_reproductive_multiplier(cycle):
    """Verify the deficit weighs more during the reproductive regime."""
    records = [DailyWaterBalance(date=d, etc=5.0, etr=1.0) for d in daily_range(PLANTING, PLANTING + timedelta(days=9))]
    assert WaterBalanceAdjuster().adjust(cycle, records).stress_level == "LIGHT"
    cycle.regime = Regime.REPRODUCTIVE
    assert WaterBalanceAdjuster().adjust(cycle, records).stress_level == "MODERATE"


def test_water_direction_setting(cycle):
    records = [DailyWaterBalance(date=d, etc=8.0, etr=2.0) for d in daily_range(PLANTING, PLANTING + timedelta(days=19))]
    adjustment = WaterBalanceAdjuster(AdjusterSettings(water_stress_direction=-1)).adjust(cycle, records)
    assert adjustment.days_shift == -12


def test_water_no_stress(cycle):
    records = [DailyWaterBalance(date=d, etc=4.0, etr=4.0) for d in daily_range(PLANTING, EOS)]
    adjustment = WaterBalanceAdjuster().adjust(cycle, records)
    assert adjustment.stress_level == "NONE"
    assert adjustment.days_shift == 0
    assert not adjustment.fired


@pytest.mark.parametrize("daily_mm, risk, shift", [
    (1.0, "LOW", 0),
    (4.5, "MEDIUM", 0),
    (6.0, "MEDIUM", 3),
    (12.0, "HIGH", 5),
])
def test_precipitation_harvest_window(cycle, daily_mm, risk, shift):
    """Verify rain in the ten days before EOS sets the quality risk."""
    records = [DailyPrecipitation(date=d, mm=daily_mm) for d in daily_range(EOS - timedelta(days=20), EOS)]
    adjustment = PrecipitationAdjuster().adjust(cycle, records)
    assert adjustment.stress_level == risk
    assert adjustment.days_shift == shift
    assert adjustment.details["total_mm"] == pytest.approx(10 * daily_mm)


def test_precipitation_without_eos(cycle):
    cycle.eos_date = None
    assert PrecipitationAdjuster().adjust(cycle, []).stress_level == "NOT_APPLICABLE"


def test_combine_caps_and_clamps():
    """Verify each shift is capped and the total is clamped to 21 days."""
    adjustments = [
        EnvironmentalAdjustment(kind=AdjustmentKind.THERMAL, days_shift=15, flag_raised=True),
        EnvironmentalAdjustment(kind=AdjustmentKind.WATER, days_shift=12, flag_raised=True),
        EnvironmentalAdjustment(kind=AdjustmentKind.PRECIPITATION, days_shift=9, flag_raised=True),
    ]
    combined = combine(adjustments, AdjusterSettings())
    assert combined.get(AdjustmentKind.THERMAL).days_shift == 10
    assert combined.get(AdjustmentKind.PRECIPITATION).days_shift == 5
    assert combined.uncapped_total == 27
    assert combined.total_shift_days == 21
    assert combined.clamped


def test_combine_is_order_independent():
    a = EnvironmentalAdjustment(kind=AdjustmentKind.THERMAL, days_shift=-4)
    b = EnvironmentalAdjustment(kind=AdjustmentKind.WATER, days_shift=7)
    first = combine([a, b])
    second = combine([b, a])
    assert first.total_shift_days == second.total_shift_days == 3
    assert not first.clamped


def test_combine_empty():
    combined = combine([])
    assert combined.total_shift_days == 0
    assert combined.fired == []
