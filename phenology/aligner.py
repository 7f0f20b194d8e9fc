"""
Historical Season Aligner - Overlays prior seasons on the current calendar.

Seasons are shifted by whole years so that phenology lines up by calendar
date (day-of-year), not by elapsed days.
"""

import logging
from collections import Counter
from dataclasses import replace
from typing import Dict, List, Optional, Union

import numpy as np
import pandas as pd

from phenology.config import AlignerSettings
from phenology.crops import CropProfile, CropType, get_profile
from phenology.models import AlignmentResult, HistoricalSeason, IndexPoint
from phenology.seasons import season_year, shift_years

log = logging.getLogger(__name__)


def historical_cycle_length(points: List[IndexPoint], profile: CropProfile) -> Optional[int]:
    """SOS->EOS days of a completed season, None if either end is not visible."""
    if len(points) < 3:
        return None
    values = [p.effective for p in points]
    peak_idx = max(range(len(values)), key=values.__getitem__)
    if values[peak_idx] < profile.min_vigor:
        return None

    sos = next((points[i].date for i in range(peak_idx + 1) if values[i] >= profile.sos_ndvi), None)
    eos = next((points[i].date for i in range(peak_idx + 1, len(values)) if values[i] < profile.eos_ndvi), None)
    if sos is None or eos is None or sos == points[0].date:
        return None
    return (eos - sos).days


class SeasonAligner:
    """
    Usage:
        aligner = SeasonAligner(AlignerSettings())
        result = aligner.align(current_points, [season_2023, season_2024], crop="SOJA")
    """

    def __init__(self, settings: AlignerSettings = None):
        self.settings = settings or AlignerSettings()

    def season_year_of(self, points: List[IndexPoint]) -> int:
        """Season a series belongs to (most common season year among its points)."""
        counts = Counter(season_year(p.date, self.settings.season_cutover_month) for p in points)
        return max(counts.items(), key=lambda item: (item[1], item[0]))[0]

    def align_season(self, points: List[IndexPoint], current_season_year: int) -> HistoricalSeason:
        """Map one prior season onto the current season's calendar."""
        hist_year = self.season_year_of(points)
        offset = current_season_year - hist_year
        aligned = tuple(
            replace(p, date=shift_years(p.date, offset), is_historical=True, season_year=current_season_year)
            for p in points
        )
        return HistoricalSeason(season_year=hist_year, points=aligned, year_offset_to_current=offset)

    def align(
        self,
        current: List[IndexPoint],
        historical: List[List[IndexPoint]],
        crop: Union[str, CropType, None] = None,
    ) -> AlignmentResult:
        result = AlignmentResult()
        if not current:
            result.diagnostics.append("NO_CURRENT_SERIES: nothing to align against")
            return result

        current_year = self.season_year_of(current)
        profile = get_profile(crop) if crop is not None else None
        cycle_lengths = []

        for series in historical:
            valid = [p for p in series if p.effective is not None]
            if len(valid) < self.settings.min_points:
                result.diagnostics.append(
                    f"HISTORICAL_SKIPPED: season with {len(valid)} points (< {self.settings.min_points})"
                )
                continue
            season = self.align_season(valid, current_year)
            if season.year_offset_to_current <= 0:
                result.diagnostics.append(f"HISTORICAL_SKIPPED: season {season.season_year} is not a prior season")
                continue
            result.seasons.append(season)
            result.correlations[season.season_year] = self._correlate(current, season)
            if profile is not None:
                length = historical_cycle_length(valid, profile)
                if length is not None:
                    cycle_lengths.append(length)

        defined = [c for c in result.correlations.values() if c is not None]
        if defined:
            result.historical_correlation = round(float(np.mean(defined)), 4)
        elif result.seasons:
            result.diagnostics.append("HISTORICAL_CORRELATION_UNDEFINED: no overlapping days with current series")

        if cycle_lengths:
            result.expected_cycle_days = round(float(np.mean(cycle_lengths)), 1)

        result.envelope = self._envelope(current, result.seasons)
        log.debug(
            f"Aligned {len(result.seasons)} seasons to {current_year} "
            f"(correlation={result.historical_correlation})"
        )
        return result

    # ─────────────────────────────────────────────────────────────────────
    # HELPERS
    # ─────────────────────────────────────────────────────────────────────
    def _interpolate_at(self, current: List[IndexPoint], season: HistoricalSeason) -> np.ndarray:
        """Season values at the current dates, NaN outside the season's range."""
        x_cur = np.array([p.date.toordinal() for p in current], dtype=float)
        x_hist = np.array([p.date.toordinal() for p in season.points], dtype=float)
        y_hist = np.array([p.effective for p in season.points], dtype=float)
        inside = (x_cur >= x_hist.min()) & (x_cur <= x_hist.max())
        out = np.full(len(x_cur), np.nan)
        out[inside] = np.interp(x_cur[inside], x_hist, y_hist)
        return out

    def _correlate(self, current: List[IndexPoint], season: HistoricalSeason) -> Optional[float]:
        """Pearson correlation over overlapping calendar days; None when undefined."""
        hist = self._interpolate_at(current, season)
        cur = np.array([p.effective for p in current], dtype=float)
        mask = ~np.isnan(hist)
        if mask.sum() < self.settings.min_overlap_points:
            return None
        a, b = cur[mask], hist[mask]
        if np.std(a) == 0 or np.std(b) == 0:
            return None
        return round(float(np.corrcoef(a, b)[0, 1]), 4)

    def _envelope(self, current: List[IndexPoint], seasons: List[HistoricalSeason]) -> List[Dict]:
        if not seasons:
            return []
        frame = pd.DataFrame(
            {s.season_year: self._interpolate_at(current, s) for s in seasons},
            index=[p.date for p in current],
        )
        stats = pd.DataFrame({
            "min": frame.min(axis=1),
            "mean": frame.mean(axis=1),
            "max": frame.max(axis=1),
            "count": frame.count(axis=1),
        })
        stats = stats[stats["count"] > 0]
        return [
            {
                "date": day.isoformat(),
                "min": round(float(row["min"]), 4),
                "mean": round(float(row["mean"]), 4),
                "max": round(float(row["max"]), 4),
                "seasons": int(row["count"]),
            }
            for day, row in stats.iterrows()
        ]
