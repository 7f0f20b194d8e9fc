"""
Time-Series Normalizer - Cleans raw vegetation-index observations.

Turns an unordered bag of upstream observations into a strictly
date-ordered IndexPoint sequence ready for cycle detection.
"""

import logging
import math
from typing import Iterable, List, Optional

import pandas as pd

from phenology.config import NormalizerSettings
from phenology.errors import EmptySeriesError
from phenology.models import IndexPoint, RawObservation
from phenology.seasons import season_year

log = logging.getLogger(__name__)


def _clean(value) -> Optional[float]:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return max(0.0, min(1.0, number))


class SeriesNormalizer:
    """
    Usage:
        normalizer = SeriesNormalizer(NormalizerSettings())
        points = normalizer.normalize(observations)
    """

    def __init__(self, settings: NormalizerSettings = None):
        self.settings = settings or NormalizerSettings()

    def normalize(
        self,
        observations: Iterable[RawObservation],
        is_historical: bool = False,
    ) -> List[IndexPoint]:
        """
        Order, de-duplicate and clean observations.

        Duplicate dates keep the highest-quality observation; on equal
        quality the one that arrived last wins.

        Raises:
            EmptySeriesError: fewer than `min_points` points survive cleaning
        """
        rows = []
        dropped_cloud = 0
        for order, obs in enumerate(observations):
            raw = _clean(obs.raw)
            interpolated = _clean(obs.interpolated)
            smoothed = _clean(obs.smoothed)
            if raw is None and interpolated is None and smoothed is None:
                continue
            if obs.cloud_cover is not None and obs.cloud_cover > self.settings.max_cloud_cover:
                dropped_cloud += 1
                continue
            quality = obs.quality
            if quality is None:
                quality = 1.0 - (obs.cloud_cover or 0.0) / 100.0
            rows.append({
                "date": obs.date,
                "raw": raw,
                "interpolated": interpolated,
                "smoothed": smoothed,
                "quality": float(quality),
                "order": order,
            })

        if dropped_cloud:
            log.debug(f"Dropped {dropped_cloud} cloud-obscured observations")

        if len(rows) < self.settings.min_points:
            raise EmptySeriesError(len(rows), self.settings.min_points)

        df = pd.DataFrame(rows)
        df = (
            df.sort_values(["date", "quality", "order"])
            .drop_duplicates(subset="date", keep="last")
            .reset_index(drop=True)
        )

        if len(df) < self.settings.min_points:
            raise EmptySeriesError(len(df), self.settings.min_points)

        df = df.astype({"raw": "object", "interpolated": "object", "smoothed": "object"})
        df = df.where(pd.notna(df), None)

        if self.settings.smoothing_window > 1:
            base = df["interpolated"].where(df["interpolated"].notna(), df["raw"]).astype(float)
            rolling = base.rolling(self.settings.smoothing_window, center=True, min_periods=1).mean()
            df["smoothed"] = [
                existing if existing is not None else round(float(avg), 4)
                for existing, avg in zip(df["smoothed"], rolling)
            ]

        cutover = self.settings.season_cutover_month
        return [
            IndexPoint(
                date=row.date,
                raw=_clean(row.raw),
                interpolated=_clean(row.interpolated),
                smoothed=_clean(row.smoothed),
                is_historical=is_historical,
                season_year=season_year(row.date, cutover),
            )
            for row in df.itertuples(index=False)
        ]


def effective_values(points: List[IndexPoint]) -> List[float]:
    """Effective value of each point, in order."""
    return [p.effective for p in points]
