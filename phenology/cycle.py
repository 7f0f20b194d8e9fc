"""
Cycle Detector - Finds SOS, peak and EOS in one season of index values.

EOS depends on where the series ends relative to the crop cycle:

- VEGETATIVE: still greening up; EOS is projected from the rising trend
  and the expected cycle length, whichever comes first.
- REPRODUCTIVE: near the plateau; EOS follows the trend continuation.
- SENESCENCE: decline already observed; EOS comes from an exponential
  decay fit of the decline segment, extrapolated to the harvest threshold.
"""

import logging
import math
from datetime import date, timedelta
from typing import List, Optional, Tuple, Union

import numpy as np

from phenology.config import DetectorSettings
from phenology.crops import CropProfile, CropType, get_profile
from phenology.models import CycleResult, EosMethod, HealthLabel, IndexPoint, Regime, iso

log = logging.getLogger(__name__)

_OK = "ok"
_MARGINAL = "marginal"
_BAD = "bad"


def linear_trend(days: np.ndarray, values: np.ndarray) -> Tuple[float, float, float]:
    """Least-squares slope, intercept and R² (0 when undefined)."""
    if len(days) < 2 or np.ptp(days) == 0:
        return 0.0, float(values[-1]) if len(values) else 0.0, 0.0
    slope, intercept = np.polyfit(days, values, 1)
    fitted = slope * days + intercept
    ss_res = float(np.sum((values - fitted) ** 2))
    ss_tot = float(np.sum((values - values.mean()) ** 2))
    r2 = 1.0 - ss_res / ss_tot if ss_tot > 0 else 0.0
    return float(slope), float(intercept), r2


def detect_replanting(values: np.ndarray) -> Optional[int]:
    """Index of a collapse between two green stretches (replanting), if any."""
    for i in range(5, len(values) - 5):
        before = values[i - 3:i].mean()
        after = values[i + 1:i + 4].mean()
        if before > 0.5 and values[i] < 0.35 and after > 0.5:
            return i
    return None


class CycleDetector:
    """
    Usage:
        detector = CycleDetector(DetectorSettings())
        cycle = detector.detect(points, "SOJA")
    """

    def __init__(self, settings: DetectorSettings = None):
        self.settings = settings or DetectorSettings()

    def detect(
        self,
        points: List[IndexPoint],
        crop: Union[str, CropType],
        planting_date: Optional[date] = None,
        as_of: Optional[date] = None,
        expected_cycle_days: Optional[float] = None,
    ) -> CycleResult:
        profile = get_profile(crop)
        result = CycleResult(point_count=len(points))
        diag = result.diagnostics
        if not points:
            result.disqualified = True
            diag.append("NO_DATA: series is empty")
            return result

        dates = [p.date for p in points]
        values = np.array([p.effective for p in points], dtype=float)
        days = np.array([(d - dates[0]).days for d in dates], dtype=float)
        as_of = as_of or dates[-1]

        # Peak
        peak_idx = int(np.argmax(values))
        peak_value = float(values[peak_idx])
        result.peak_value = round(peak_value, 4)
        if peak_value < profile.min_vigor:
            result.disqualified = True
            diag.append(
                f"LOW_VIGOR: peak {peak_value:.2f} below minimum vigor {profile.min_vigor:.2f} "
                f"for {profile.label}; crop not identifiable"
            )
            return result

        result.peak_date = dates[peak_idx]
        diag.append(f"PEAK: {peak_value:.2f} on {iso(result.peak_date)}")
        if peak_value < profile.peak_min:
            diag.append(f"LOW_PEAK: peak below expected {profile.peak_min:.2f} for {profile.label}")

        # SOS
        sos_idx = self._find_sos(values, peak_idx, result)
        result.sos_date = dates[sos_idx]

        # Planting
        if planting_date:
            result.planting_date = planting_date
            result.planting_from_input = True
            diag.append(f"PLANTING_DATE_PROVIDED: {iso(planting_date)}")
        else:
            result.planting_date = result.sos_date - timedelta(days=profile.emergence_days)
            diag.append(f"PLANTING_ESTIMATED: SOS minus {profile.emergence_days} emergence days")

        replant_idx = detect_replanting(values)
        if replant_idx is not None:
            result.replanting_detected = True
            diag.append(f"REPLANTING_DETECTED: collapse on {iso(dates[replant_idx])} between green stretches")

        # Regime + EOS
        window = min(self.settings.trend_window, len(values))
        slope, _, r2 = linear_trend(days[-window:], values[-window:])
        result.regime = self._classify_regime(values, peak_idx, slope, r2)
        diag.append(f"REGIME: {result.regime.value} (trailing slope {slope:+.4f}/day, R² {r2:.2f})")

        if result.regime == Regime.SENESCENCE:
            eos, method = self._eos_senescence(dates, days, values, peak_idx, slope, profile, diag)
        elif result.regime == Regime.VEGETATIVE:
            eos, method = self._eos_vegetative(
                dates, values, slope, profile, result.planting_date, expected_cycle_days, diag
            )
        else:
            eos, method = self._eos_reproductive(dates, values, slope, profile, diag)

        if method != EosMethod.OBSERVED:
            eos = self._clip_to_cycle_bounds(eos, result, profile, diag)
        result.eos_date = max(eos, result.peak_date)
        result.eos_method = method
        result.cycle_length_days = (result.eos_date - result.sos_date).days

        if method != EosMethod.OBSERVED and result.eos_date < as_of and result.regime != Regime.SENESCENCE:
            diag.append(f"EOS_IN_PAST: projected EOS {iso(result.eos_date)} is before {iso(as_of)}")

        # Health
        result.health_label = self._assess_health(values, days, peak_idx, result, profile)
        return result

    # ─────────────────────────────────────────────────────────────────────
    # SOS
    # ─────────────────────────────────────────────────────────────────────
    def _find_sos(self, values: np.ndarray, peak_idx: int, result: CycleResult) -> int:
        """Start of the above-threshold run that ends at the peak."""
        n_base = max(1, min(self.settings.baseline_points, peak_idx))
        baseline = float(np.median(values[:n_base]))
        threshold = baseline + self.settings.greenup_fraction * (values[peak_idx] - baseline)

        for i in range(peak_idx - 1, -1, -1):
            if values[i] < threshold:
                result.diagnostics.append(
                    f"SOS: green-up crossing above {threshold:.2f} (baseline {baseline:.2f})"
                )
                return i + 1

        result.sos_fallback = True
        result.diagnostics.append(
            f"SOS_FALLBACK: no crossing above {threshold:.2f} before peak; using first date (low confidence)"
        )
        return 0

    # ─────────────────────────────────────────────────────────────────────
    # REGIME
    # ─────────────────────────────────────────────────────────────────────
    def _classify_regime(self, values: np.ndarray, peak_idx: int, slope: float, r2: float) -> Regime:
        """A rising or declining trend only counts when the line fits; otherwise plateau."""
        last = values[-1]
        peak = values[peak_idx]
        thr = self.settings.slope_threshold
        trending = r2 > self.settings.min_trend_r2
        if (peak_idx < len(values) - 1 and last < self.settings.senescence_drop_ratio * peak
                and slope < -thr and trending):
            return Regime.SENESCENCE
        if peak_idx == len(values) - 1 or (slope > thr and trending):
            return Regime.VEGETATIVE
        return Regime.REPRODUCTIVE

    # ─────────────────────────────────────────────────────────────────────
    # EOS PER REGIME
    # ─────────────────────────────────────────────────────────────────────
    def _eos_senescence(self, dates, days, values, peak_idx, slope, profile: CropProfile, diag):
        for i in range(peak_idx + 1, len(values)):
            if values[i] <= profile.harvest_ndvi:
                diag.append(f"EOS_OBSERVED: value reached {profile.harvest_ndvi:.2f} on {iso(dates[i])}")
                return dates[i], EosMethod.OBSERVED

        floor = self.settings.decay_floor
        start = max(peak_idx + 1, len(values) - self.settings.trend_window)
        seg_days = days[start:]
        seg_values = values[start:]
        usable = seg_values > floor + 0.005
        seg_days, seg_values = seg_days[usable], seg_values[usable]

        if len(seg_values) >= 3:
            rate, intercept = np.polyfit(seg_days, np.log(seg_values - floor), 1)
            if rate < 0:
                target = math.log(profile.harvest_ndvi - floor)
                t_star = (target - intercept) / rate
                eos = dates[0] + timedelta(days=int(round(t_star)))
                eos = max(eos, dates[-1])
                diag.append(
                    f"EOS_DECAY_EXTRAPOLATION: decay rate {-rate:.4f}/day toward floor {floor:.2f}, "
                    f"harvest threshold {profile.harvest_ndvi:.2f} on {iso(eos)}"
                )
                return eos, EosMethod.DECAY_EXTRAPOLATION

        diag.append("EOS_DECAY_FIT_FAILED: falling back to trend continuation")
        return self._eos_reproductive(dates, values, slope, profile, diag)

    def _eos_vegetative(self, dates, values, slope, profile: CropProfile, planting, expected_cycle_days, diag):
        low, high = self.settings.index_bounds
        last = float(values[-1])
        plateau = min(high, max(last, profile.peak_min))
        days_to_plateau = (plateau - last) / slope if slope > 1e-6 and plateau > last else 0.0
        trend_eos = dates[-1] + timedelta(days=int(round(days_to_plateau)) + profile.peak_to_eos_days)

        cycle_days = expected_cycle_days or profile.cycle_days
        source = "historical seasons" if expected_cycle_days else "crop profile"
        cycle_eos = planting + timedelta(days=int(round(cycle_days)))

        eos = min(trend_eos, cycle_eos)
        diag.append(
            f"EOS_VEGETATIVE_PROJECTION: trend {iso(trend_eos)} (plateau {plateau:.2f} within "
            f"[{low:.2f}, {high:.2f}]), cycle {iso(cycle_eos)} ({cycle_days:.0f} days from {source})"
        )
        return eos, EosMethod.VEGETATIVE_PROJECTION

    def _eos_reproductive(self, dates, values, slope, profile: CropProfile, diag):
        last = float(values[-1])
        rate = max(-slope if slope < 0 else 0.0, self.settings.min_decline_rate)
        remaining = max(0.0, (last - profile.harvest_ndvi) / rate)
        eos = dates[-1] + timedelta(days=int(round(remaining)))
        diag.append(f"EOS_TREND_CONTINUATION: decline {rate:.4f}/day to {profile.harvest_ndvi:.2f}")
        return eos, EosMethod.TREND_CONTINUATION

    def _clip_to_cycle_bounds(self, eos: date, result: CycleResult, profile: CropProfile, diag) -> date:
        if result.sos_fallback:
            return eos
        lower = result.sos_date + timedelta(days=profile.cycle_min_days)
        upper = result.sos_date + timedelta(days=profile.cycle_max_days)
        if eos < lower:
            diag.append(f"EOS_CLIPPED: {iso(eos)} raised to minimum cycle ({profile.cycle_min_days} days)")
            return lower
        if eos > upper:
            diag.append(f"EOS_CLIPPED: {iso(eos)} lowered to maximum cycle ({profile.cycle_max_days} days)")
            return upper
        return eos

    # ─────────────────────────────────────────────────────────────────────
    # HEALTH
    # ─────────────────────────────────────────────────────────────────────
    def _assess_health(self, values, days, peak_idx, result: CycleResult, profile: CropProfile) -> HealthLabel:
        diag = result.diagnostics
        peak = float(values[peak_idx])
        if peak >= profile.peak_min:
            peak_status = _OK
        elif peak >= profile.anomalous_peak:
            peak_status = _MARGINAL
        else:
            peak_status = _BAD

        decline_status = _OK
        if result.regime == Regime.SENESCENCE:
            elapsed = days[-1] - days[peak_idx]
            rate = (peak - float(values[-1])) / elapsed if elapsed > 0 else 0.0
            result.decline_rate = round(rate, 5)
            lo, hi = profile.decline_normal
            mlo, mhi = profile.decline_marginal
            if lo <= rate <= hi:
                decline_status = _OK
            elif mlo <= rate <= mhi:
                decline_status = _MARGINAL
            else:
                decline_status = _BAD
            diag.append(f"DECLINE_RATE: {rate:.4f}/day ({decline_status})")
        else:
            diag.append("DECLINE_RATE: not yet observable")

        statuses = (peak_status, decline_status)
        if statuses == (_OK, _OK):
            label = HealthLabel.GOOD
        elif _BAD not in statuses and statuses.count(_MARGINAL) == 1:
            label = HealthLabel.FAIR
        else:
            label = HealthLabel.POOR
        diag.append(f"HEALTH: {label.value} (peak {peak_status}, decline {decline_status})")
        return label
