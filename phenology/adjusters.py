"""
Environmental Adjusters - Nudge the detected EOS with climate evidence.

Three independent adjusters:
- Thermal: growing degree days (GDD) accumulated vs. the crop requirement
- Water balance: accumulated deficit and stress days
- Precipitation: rain in the harvest window (grain-quality risk)

Each adjuster caps its own shift; combine() sums the capped shifts and
clamps the total so stacked adjustments cannot run away.
"""

import logging
import math
from datetime import date, timedelta
from typing import Dict, List, Optional

import pandas as pd

from phenology.config import AdjusterSettings
from phenology.crops import CropProfile
from phenology.models import (
    AdjustmentKind,
    CombinedAdjustment,
    CycleResult,
    DailyPrecipitation,
    DailyTemperature,
    DailyWaterBalance,
    EnvironmentalAdjustment,
    Regime,
    iso,
)

log = logging.getLogger(__name__)

GDD_CONFIDENCE_WEIGHT = {"HIGH": 0.90, "MEDIUM": 0.70, "LOW": 0.50}

NDVI_REGIME_WEIGHT = {
    Regime.SENESCENCE: 0.85,
    Regime.REPRODUCTIVE: 0.70,
    Regime.VEGETATIVE: 0.50,
}

# (level, deficit above, stress days above, shift days, yield factor)
WATER_STRESS_LEVELS = [
    ("SEVERE", 100.0, 21, 12, 0.70),
    ("MODERATE", 50.0, 14, 7, 0.85),
    ("LIGHT", 25.0, None, 3, 0.95),
]

STRESS_DAY_DEFICIT_MM = 5.0
REPRODUCTIVE_DEFICIT_MULTIPLIER = 1.5
RAINY_DAY_MM = 0.5


def cap_shift(days: float, cap: int) -> int:
    """Round a shift to whole days and clamp it to ±cap."""
    return int(max(-cap, min(cap, round(days))))


# ═══════════════════════════════════════════════════════════════════════════
# THERMAL
# ═══════════════════════════════════════════════════════════════════════════
class ThermalAdjuster:
    """GDD-based maturity, blended with the NDVI EOS by confidence."""

    def __init__(self, settings: AdjusterSettings = None):
        self.settings = settings or AdjusterSettings()

    def adjust(
        self,
        cycle: CycleResult,
        profile: CropProfile,
        temperatures: List[DailyTemperature],
    ) -> EnvironmentalAdjustment:
        adjustment = EnvironmentalAdjustment(kind=AdjustmentKind.THERMAL)
        if cycle.eos_date is None or cycle.planting_date is None:
            adjustment.stress_level = "NOT_APPLICABLE"
            return adjustment

        days = sorted(
            (t for t in temperatures if t.date >= cycle.planting_date and t.tmean is not None),
            key=lambda t: t.date,
        )
        if not days:
            adjustment.stress_level = "NO_DATA"
            adjustment.triggering_metric = "no temperature data since planting"
            return adjustment

        daily = [max(0.0, t.tmean - profile.gdd_base_temp) for t in days]
        accumulated = sum(daily)
        required = profile.gdd_required
        progress = accumulated / required if required > 0 else 0.0
        if len(days) >= 60:
            confidence = "HIGH"
        elif len(days) >= 30:
            confidence = "MEDIUM"
        else:
            confidence = "LOW"

        maturity = self._maturity_date(days, daily, required)
        today = days[-1].date
        adjustment.stress_level = confidence
        adjustment.triggering_metric = f"GDD {accumulated:.0f}/{required:.0f} ({progress:.0%})"
        adjustment.details = {
            "accumulated": round(accumulated, 1),
            "required": required,
            "progress": round(progress * 100, 1),
            "maturity_date": iso(maturity),
            "days_to_maturity": (maturity - today).days if maturity and maturity > today else 0,
            "confidence": confidence,
        }

        if maturity is None:
            adjustment.details["note"] = "not enough data to project maturity"
            return adjustment
        if maturity < today and cycle.regime == Regime.VEGETATIVE:
            adjustment.details["note"] = "GDD maturity in the past while crop still vegetative; discarded"
            log.warning(f"Discarding GDD maturity {iso(maturity)}: NDVI shows active growth")
            return adjustment

        gdd_w = GDD_CONFIDENCE_WEIGHT[confidence]
        ndvi_w = NDVI_REGIME_WEIGHT.get(cycle.regime, 0.5)
        raw = (maturity - cycle.eos_date).days * gdd_w / (gdd_w + ndvi_w)
        adjustment.raw_days_shift = round(raw, 2)
        adjustment.days_shift = cap_shift(raw, self.settings.thermal_cap_days)
        return adjustment

    def _maturity_date(self, days: List[DailyTemperature], daily: List[float], required: float) -> Optional[date]:
        running = 0.0
        for record, gdd in zip(days, daily):
            running += gdd
            if running >= required:
                return record.date

        window = self.settings.projection_window_days
        if len(daily) < window:
            return None
        recent = sum(daily[-window:]) / window
        if recent <= 0:
            return None
        remaining = math.ceil((required - running) / recent)
        return days[-1].date + timedelta(days=remaining)


# ═══════════════════════════════════════════════════════════════════════════
# WATER BALANCE
# ═══════════════════════════════════════════════════════════════════════════
class WaterBalanceAdjuster:
    """Accumulated water deficit since planting."""

    def __init__(self, settings: AdjusterSettings = None):
        self.settings = settings or AdjusterSettings()

    def adjust(self, cycle: CycleResult, records: List[DailyWaterBalance]) -> EnvironmentalAdjustment:
        adjustment = EnvironmentalAdjustment(kind=AdjustmentKind.WATER, details={"yield_factor": 1.0})
        start = cycle.planting_date or date.min
        rows = [{"date": r.date, "etc": r.etc, "etr": r.etr} for r in records if r.date >= start]
        if not rows:
            adjustment.stress_level = "NO_DATA"
            adjustment.triggering_metric = "no water balance data since planting"
            return adjustment

        frame = pd.DataFrame(rows).sort_values("date")
        frame["deficit"] = (frame["etc"] - frame["etr"]).clip(lower=0)
        deficit = float(frame["deficit"].sum())
        stress_days = int((frame["deficit"] > STRESS_DAY_DEFICIT_MM).sum())
        if cycle.regime == Regime.REPRODUCTIVE:
            deficit *= REPRODUCTIVE_DEFICIT_MULTIPLIER

        level, shift, yield_factor = "NONE", 0, 1.0
        for name, deficit_above, days_above, level_shift, factor in WATER_STRESS_LEVELS:
            if deficit > deficit_above or (days_above is not None and stress_days > days_above):
                level, shift, yield_factor = name, level_shift, factor
                break

        raw = self.settings.water_stress_direction * shift
        adjustment.stress_level = level
        adjustment.flag_raised = level != "NONE"
        adjustment.raw_days_shift = float(raw)
        adjustment.days_shift = cap_shift(raw, self.settings.water_cap_days)
        adjustment.triggering_metric = f"deficit {deficit:.0f} mm, {stress_days} stress days"
        adjustment.details = {
            "deficit_mm": round(deficit, 1),
            "stress_days": stress_days,
            "yield_factor": yield_factor,
        }
        return adjustment


# ═══════════════════════════════════════════════════════════════════════════
# PRECIPITATION
# ═══════════════════════════════════════════════════════════════════════════
class PrecipitationAdjuster:
    """Rain right before harvest raises grain-quality risk and may delay harvest."""

    def __init__(self, settings: AdjusterSettings = None):
        self.settings = settings or AdjusterSettings()

    def adjust(self, cycle: CycleResult, records: List[DailyPrecipitation]) -> EnvironmentalAdjustment:
        adjustment = EnvironmentalAdjustment(kind=AdjustmentKind.PRECIPITATION, stress_level="LOW")
        if cycle.eos_date is None:
            adjustment.stress_level = "NOT_APPLICABLE"
            return adjustment

        window_start = cycle.eos_date - timedelta(days=self.settings.harvest_window_days)
        window = [r for r in records if window_start < r.date <= cycle.eos_date]
        if not window:
            adjustment.stress_level = "NO_DATA"
            adjustment.triggering_metric = "no precipitation data in harvest window"
            return adjustment

        total = sum(r.mm for r in window)
        rainy_days = sum(1 for r in window if r.mm > RAINY_DAY_MM)
        if total > 100:
            risk, shift = "HIGH", 5
        elif total > 50:
            risk, shift = "MEDIUM", 3
        elif total > 40:
            risk, shift = "MEDIUM", 0
        else:
            risk, shift = "LOW", 0

        adjustment.stress_level = risk
        adjustment.flag_raised = risk != "LOW"
        adjustment.raw_days_shift = float(shift)
        adjustment.days_shift = cap_shift(shift, self.settings.precipitation_cap_days)
        adjustment.triggering_metric = f"{total:.0f} mm in {self.settings.harvest_window_days} days before harvest"
        adjustment.details = {
            "total_mm": round(total, 1),
            "rainy_days": rainy_days,
            "quality_risk": risk,
        }
        return adjustment


# ═══════════════════════════════════════════════════════════════════════════
# COMBINATION
# ═══════════════════════════════════════════════════════════════════════════
def combine(adjustments: List[EnvironmentalAdjustment], settings: AdjusterSettings = None) -> CombinedAdjustment:
    """Sum independently capped shifts and clamp the total window."""
    settings = settings or AdjusterSettings()
    caps: Dict[AdjustmentKind, int] = {
        AdjustmentKind.THERMAL: settings.thermal_cap_days,
        AdjustmentKind.WATER: settings.water_cap_days,
        AdjustmentKind.PRECIPITATION: settings.precipitation_cap_days,
    }
    ordered = sorted(adjustments, key=lambda a: a.kind.value)
    for adjustment in ordered:
        adjustment.days_shift = cap_shift(adjustment.days_shift, caps[adjustment.kind])

    uncapped = sum(a.days_shift for a in ordered)
    limit = settings.max_total_shift_days
    total = max(-limit, min(limit, uncapped))
    combined = CombinedAdjustment(
        adjustments=ordered,
        total_shift_days=total,
        uncapped_total=uncapped,
        clamped=total != uncapped,
    )
    if combined.clamped:
        log.info(f"Combined EOS shift {uncapped:+d} days clamped to {total:+d}")
    return combined
