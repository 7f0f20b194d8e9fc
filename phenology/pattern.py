"""
Crop Pattern - Decides whether a series looks like the declared crop.

A NO_CROP verdict is what makes the pipeline short-circuit.
"""

import logging
from typing import List, Union

import numpy as np

from phenology.crops import CropType, get_profile
from phenology.models import CropPattern, CycleResult, IndexPoint, PatternStatus

log = logging.getLogger(__name__)


def no_crop_hypotheses(mean_value: float) -> List[str]:
    """Likely explanations for a parcel without an identifiable crop."""
    if mean_value < 0.20:
        return ["Bare soil or urban area", "Recently tilled field"]
    if mean_value < 0.35:
        return ["Degraded pasture", "Crop residue (straw) after harvest"]
    return ["Pasture", "Spontaneous vegetation"]


def classify(points: List[IndexPoint], crop: Union[str, CropType], cycle: CycleResult) -> CropPattern:
    """Classify the series as TYPICAL, ATYPICAL, ANOMALOUS or NO_CROP."""
    profile = get_profile(crop)
    values = np.array([p.effective for p in points], dtype=float)
    peak = float(values.max())
    basal = float(np.percentile(values, 10))
    amplitude = peak - basal
    mean_value = float(values.mean())

    pattern = CropPattern(
        status=PatternStatus.TYPICAL,
        peak=round(peak, 4),
        basal=round(basal, 4),
        amplitude=round(amplitude, 4),
        mean=round(mean_value, 4),
    )

    if cycle.disqualified or (peak < profile.min_vigor and amplitude < profile.no_crop_amplitude):
        pattern.status = PatternStatus.NO_CROP
        pattern.reasons.append(
            f"Peak {peak:.2f} and amplitude {amplitude:.2f} do not show a {profile.label} cycle"
        )
        pattern.hypotheses = no_crop_hypotheses(mean_value)
        log.info(f"No crop identified (peak={peak:.2f}, amplitude={amplitude:.2f})")
        return pattern

    if peak < profile.anomalous_peak:
        pattern.status = PatternStatus.ANOMALOUS
        pattern.reasons.append(f"Peak {peak:.2f} below {profile.anomalous_peak:.2f}")
    if amplitude < 0.5 * profile.expected_amplitude:
        pattern.status = PatternStatus.ANOMALOUS
        pattern.reasons.append(f"Amplitude {amplitude:.2f} below half of expected {profile.expected_amplitude:.2f}")
    if pattern.status == PatternStatus.ANOMALOUS:
        pattern.hypotheses = ["Severe stress or crop failure", "Different crop than declared"]
        return pattern

    if peak < profile.peak_min:
        pattern.status = PatternStatus.ATYPICAL
        pattern.reasons.append(f"Peak {peak:.2f} below expected {profile.peak_min:.2f}")
    if cycle.cycle_length_days is not None and not (
        profile.cycle_min_days <= cycle.cycle_length_days <= profile.cycle_max_days
    ):
        pattern.status = PatternStatus.ATYPICAL
        pattern.reasons.append(
            f"Cycle of {cycle.cycle_length_days} days outside "
            f"{profile.cycle_min_days}-{profile.cycle_max_days}"
        )
    if cycle.replanting_detected:
        pattern.status = PatternStatus.ATYPICAL
        pattern.reasons.append("Replanting detected")
    return pattern
