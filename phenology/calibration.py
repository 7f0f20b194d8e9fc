"""
Radar Calibration - Per-parcel linear fit of optical index against RVI.

The cache allows lock-free reads of the current calibration while refits
for one parcel are serialized: the first writer fits, later writers see
the fresh calibration and skip their own fit.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Dict, List, Optional

import numpy as np

from phenology.config import FusionSettings
from phenology.models import FusionCalibration, IndexPoint, PointSource, RadarObservation

log = logging.getLogger(__name__)


@dataclass
class CalibrationPair:
    """An optical value and a radar value observed on the same or adjacent days."""
    date: date
    optical: float
    radar: float
    quality: float


def match_pairs(
    optical: List[IndexPoint],
    radar: List[RadarObservation],
    settings: FusionSettings,
    cloud_cover: Optional[Dict[date, float]] = None,
) -> List[CalibrationPair]:
    """Pair each radar acquisition with the nearest optical point within tolerance."""
    cloud_cover = cloud_cover or {}
    by_date = {p.date: p for p in optical if p.source == PointSource.OPTICAL and p.effective is not None}
    pairs = []
    for obs in radar:
        value = obs.value
        if value is None:
            continue
        best = None
        for offset in range(settings.pair_tolerance_days + 1):
            for candidate in (obs.date - timedelta(days=offset), obs.date + timedelta(days=offset)):
                if candidate in by_date:
                    best = (by_date[candidate], offset)
                    break
            if best:
                break
        if best is None:
            continue
        point, offset = best
        temporal_quality = 1.0 - 0.2 * offset
        cloud_quality = 1.0 - cloud_cover.get(point.date, 0.0) / 100.0
        quality = temporal_quality * cloud_quality
        if quality < settings.min_pair_quality:
            continue
        pairs.append(CalibrationPair(date=point.date, optical=point.effective, radar=value, quality=quality))
    return pairs


def fit_calibration(pairs: List[CalibrationPair], settings: FusionSettings) -> Optional[FusionCalibration]:
    """Ordinary least squares optical = slope * radar + intercept; None below min_pairs."""
    if len(pairs) < settings.min_pairs:
        return None
    x = np.array([p.radar for p in pairs], dtype=float)
    y = np.array([p.optical for p in pairs], dtype=float)
    if np.ptp(x) == 0:
        return None
    slope, intercept = np.polyfit(x, y, 1)
    fitted = slope * x + intercept
    ss_res = float(np.sum((y - fitted) ** 2))
    ss_tot = float(np.sum((y - y.mean()) ** 2))
    r2 = 1.0 - ss_res / ss_tot if ss_tot > 0 else 0.0
    rmse = float(np.sqrt(ss_res / len(pairs)))
    return FusionCalibration(
        slope=round(float(slope), 6),
        intercept=round(float(intercept), 6),
        source_signal="RVI",
        sample_size=len(pairs),
        r_squared=round(r2, 4),
        rmse=round(rmse, 4),
    )


class CalibrationCache:
    """
    Per-parcel calibrations shared by concurrent pipeline runs.

    Usage:
        cache = CalibrationCache(FusionSettings())
        calibration = cache.get_or_fit("parcel-1", pairs)
    """

    def __init__(self, settings: FusionSettings = None):
        self.settings = settings or FusionSettings()
        self._calibrations: Dict[str, FusionCalibration] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()
        self.fit_count = 0

    def get(self, parcel_id: str) -> Optional[FusionCalibration]:
        """Current calibration snapshot (no locking)."""
        return self._calibrations.get(parcel_id)

    def invalidate(self, parcel_id: str):
        with self._lock_for(parcel_id):
            self._calibrations.pop(parcel_id, None)

    def _lock_for(self, parcel_id: str) -> threading.Lock:
        with self._guard:
            if parcel_id not in self._locks:
                self._locks[parcel_id] = threading.Lock()
            return self._locks[parcel_id]

    def needs_refit(self, current: Optional[FusionCalibration], pair_count: int) -> bool:
        if current is None:
            return pair_count >= self.settings.min_pairs
        if pair_count - current.sample_size >= self.settings.refit_min_new_pairs:
            return True
        return current.r_squared < self.settings.min_r2 and pair_count != current.sample_size

    def get_or_fit(self, parcel_id: str, pairs: List[CalibrationPair]) -> Optional[FusionCalibration]:
        current = self.get(parcel_id)
        if not self.needs_refit(current, len(pairs)):
            return current

        with self._lock_for(parcel_id):
            # Another writer may have refit while we waited
            current = self.get(parcel_id)
            if not self.needs_refit(current, len(pairs)):
                return current
            fitted = fit_calibration(pairs, self.settings)
            if fitted is None:
                return current
            self._calibrations[parcel_id] = fitted
            self.fit_count += 1
            log.info(
                f"Calibrated parcel {parcel_id}: NDVI = {fitted.slope:.3f} * RVI + {fitted.intercept:.3f} "
                f"(n={fitted.sample_size}, R²={fitted.r_squared:.2f})"
            )
            return fitted
