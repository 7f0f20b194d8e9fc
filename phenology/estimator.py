"""
Yield & Confidence Estimator - Turns detected events into a harvest forecast.

Confidence is an additive 0-100 score: evidence adds points, environmental
adjustments and poor health take some away. Yield scales the crop's base
productivity by vigor, health, water stress and confidence.
"""

import logging
from datetime import timedelta
from typing import List, Optional

from phenology.config import EstimatorSettings
from phenology.crops import get_profile
from phenology.models import (
    AdjustmentKind,
    AlignmentResult,
    CombinedAdjustment,
    ConfidenceLabel,
    CropPattern,
    CycleResult,
    Estimate,
    FusionResult,
    HealthLabel,
    ParcelContext,
)

log = logging.getLogger(__name__)

BASE_CONFIDENCE = 10
HEALTH_YIELD_FACTOR = {HealthLabel.GOOD: 1.0, HealthLabel.FAIR: 0.85, HealthLabel.POOR: 0.65}
HEALTH_PENALTY = {HealthLabel.GOOD: 0, HealthLabel.FAIR: 5, HealthLabel.POOR: 10}


def confidence_label(score: int, settings: EstimatorSettings = None) -> ConfidenceLabel:
    """Monotonic mapping of a 0-100 score to LOW/MEDIUM/HIGH."""
    settings = settings or EstimatorSettings()
    if score > settings.high_threshold:
        return ConfidenceLabel.HIGH
    if score > settings.medium_threshold:
        return ConfidenceLabel.MEDIUM
    return ConfidenceLabel.LOW


class YieldEstimator:
    """
    Usage:
        estimator = YieldEstimator(EstimatorSettings())
        estimate = estimator.estimate(parcel, cycle, pattern, alignment, fusion, combined)
    """

    def __init__(self, settings: EstimatorSettings = None):
        self.settings = settings or EstimatorSettings()

    def estimate(
        self,
        parcel: ParcelContext,
        cycle: CycleResult,
        pattern: Optional[CropPattern] = None,
        alignment: Optional[AlignmentResult] = None,
        fusion: Optional[FusionResult] = None,
        combined: Optional[CombinedAdjustment] = None,
    ) -> Estimate:
        profile = get_profile(parcel.crop_type)
        factors: List[str] = []
        diagnostics: List[str] = []
        score = self._score(parcel, cycle, alignment, fusion, combined, profile, factors, diagnostics)
        label = confidence_label(score, self.settings)

        adjusted_eos = None
        if cycle.eos_date is not None:
            shift = combined.total_shift_days if combined else 0
            adjusted_eos = cycle.eos_date + timedelta(days=shift)

        yield_kg_ha = volume = None
        if cycle.peak_value is not None:
            vigor = max(0.3, min(1.0, (cycle.peak_value - 0.3) / 0.5))
            health = HEALTH_YIELD_FACTOR.get(cycle.health_label, 1.0)
            water = 1.0
            if combined is not None:
                water_adj = combined.get(AdjustmentKind.WATER)
                if water_adj is not None:
                    water = water_adj.details.get("yield_factor", 1.0)
            conf_factor = 0.85 + 0.15 * score / 100
            yield_kg_ha = round(profile.base_yield_kg_ha * vigor * health * water * conf_factor, 1)
            volume = round(parcel.area_ha * yield_kg_ha / 1000, 2)
            factors.append(
                f"yield: base {profile.base_yield_kg_ha:.0f} x vigor {vigor:.2f} x health {health:.2f} "
                f"x water {water:.2f} x confidence {conf_factor:.3f}"
            )

        log.debug(f"Estimate for {parcel.parcel_id}: confidence={score} ({label.value}), yield={yield_kg_ha}")
        return Estimate(
            confidence=score,
            confidence_label=label,
            adjusted_eos_date=adjusted_eos,
            yield_kg_ha=yield_kg_ha,
            volume_tonnes=volume,
            factors=factors,
            diagnostics=diagnostics,
        )

    def _score(self, parcel, cycle, alignment, fusion, combined, profile, factors, diagnostics) -> int:
        score = BASE_CONFIDENCE
        factors.append(f"base +{BASE_CONFIDENCE}")

        if parcel.planting_date is not None:
            consistent = True
            if cycle.sos_date is not None:
                emergence = parcel.planting_date + timedelta(days=profile.emergence_days)
                consistent = abs((cycle.sos_date - emergence).days) <= self.settings.planting_tolerance_days
            if consistent:
                score += 25
                factors.append("planting date supplied and consistent +25")
            else:
                score += 10
                factors.append("planting date supplied but inconsistent with detected SOS +10")
                diagnostics.append("PLANTING_INCONSISTENT: declared planting does not match detected SOS")

        if cycle.sos_date is not None and not cycle.sos_fallback:
            score += 20
            factors.append("SOS detected +20")
        if cycle.eos_date is not None:
            score += 15
            factors.append("EOS defined +15")
        if cycle.peak_date is not None:
            score += 15
            factors.append("peak defined +15")
        if cycle.cycle_length_days is not None and (
            profile.cycle_min_days <= cycle.cycle_length_days <= profile.cycle_max_days
        ):
            score += 10
            factors.append("cycle length within crop bounds +10")
        if cycle.peak_value is not None and cycle.peak_value >= profile.peak_min:
            score += 5
            factors.append("peak at expected vigor +5")

        correlation = alignment.historical_correlation if alignment else None
        if correlation is not None:
            if correlation > 0.7:
                score += 10
                factors.append(f"historical correlation {correlation:.2f} +10")
            elif correlation > 0.5:
                score += 5
                factors.append(f"historical correlation {correlation:.2f} +5")

        if cycle.point_count >= 20:
            score += 5
            factors.append(f"{cycle.point_count} observations +5")
        if fusion is not None and fusion.continuity_score >= 0.9:
            score += 5
            factors.append(f"series continuity {fusion.continuity_score:.2f} +5")

        if combined is not None:
            penalty = min(10.0, 2 * len(combined.fired) + abs(combined.total_shift_days) / 3)
            if penalty > 0:
                score -= penalty
                factors.append(f"environmental adjustments -{penalty:.1f}")

        health_penalty = HEALTH_PENALTY.get(cycle.health_label, 0)
        if health_penalty:
            score -= health_penalty
            factors.append(f"health {cycle.health_label.value} -{health_penalty}")

        return int(max(0, min(100, round(score))))
