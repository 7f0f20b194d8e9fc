"""
Core data models for the crop-cycle pipeline.

Every result object serializes to a flat dict (dates as ISO strings,
enums as their values) so persistence stays an external concern.
"""

import math
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional


def iso(value: Optional[date]) -> Optional[str]:
    """ISO calendar string for a date, None passes through."""
    return value.isoformat() if value else None


def parse_date(value: Any) -> Optional[date]:
    """Accept date, datetime or ISO strings ('2025-10-05', '2025-10-05T00:00:00Z')."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip()[:10])


def finite_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


# ═══════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════
class PointSource(Enum):
    OPTICAL = "OPTICAL"
    RADAR = "RADAR"


class HealthLabel(Enum):
    GOOD = "GOOD"
    FAIR = "FAIR"
    POOR = "POOR"


class Regime(Enum):
    """Where 'today' falls in the crop cycle."""
    VEGETATIVE = "VEGETATIVE"
    REPRODUCTIVE = "REPRODUCTIVE"
    SENESCENCE = "SENESCENCE"


class EosMethod(Enum):
    OBSERVED = "OBSERVED"
    DECAY_EXTRAPOLATION = "DECAY_EXTRAPOLATION"
    TREND_CONTINUATION = "TREND_CONTINUATION"
    VEGETATIVE_PROJECTION = "VEGETATIVE_PROJECTION"


class PatternStatus(Enum):
    TYPICAL = "TYPICAL"
    ATYPICAL = "ATYPICAL"
    ANOMALOUS = "ANOMALOUS"
    NO_CROP = "NO_CROP"


class AdjustmentKind(Enum):
    THERMAL = "THERMAL"
    WATER = "WATER"
    PRECIPITATION = "PRECIPITATION"


class ConfidenceLabel(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class RunStatus:
    """Pipeline run lifecycle states."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    ERROR = "ERROR"


# ═══════════════════════════════════════════════════════════════════════════
# INPUT RECORDS
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class RawObservation:
    """One upstream vegetation-index observation, before cleaning."""
    date: date
    raw: Optional[float] = None
    interpolated: Optional[float] = None
    smoothed: Optional[float] = None
    cloud_cover: Optional[float] = None   # percent
    quality: Optional[float] = None       # 0-1, higher wins on duplicate dates
    source: str = "optical"

    @property
    def has_value(self) -> bool:
        return any(finite_float(v) is not None for v in (self.raw, self.interpolated, self.smoothed))


@dataclass
class RadarObservation:
    """Radar-derived vegetation index (RVI) for one acquisition."""
    date: date
    rvi: Optional[float] = None
    vv: Optional[float] = None
    vh: Optional[float] = None

    @property
    def value(self) -> Optional[float]:
        if self.rvi is not None:
            return self.rvi
        if self.vv is not None and self.vh is not None and (self.vv + self.vh) > 0:
            return 4 * self.vh / (self.vv + self.vh)
        return None


@dataclass
class DailyTemperature:
    date: date
    tmin: Optional[float] = None
    tmax: Optional[float] = None
    tavg: Optional[float] = None

    @property
    def tmean(self) -> Optional[float]:
        if self.tavg is not None:
            return self.tavg
        if self.tmin is not None and self.tmax is not None:
            return (self.tmin + self.tmax) / 2
        return None


@dataclass
class DailyWaterBalance:
    date: date
    etc: float           # crop evapotranspiration demand (mm)
    etr: float           # real evapotranspiration (mm)


@dataclass
class DailyPrecipitation:
    date: date
    mm: float


# ═══════════════════════════════════════════════════════════════════════════
# SERIES
# ═══════════════════════════════════════════════════════════════════════════
@dataclass(frozen=True)
class IndexPoint:
    """
    A cleaned point of a vegetation-index series.

    The effective value follows smoothed > interpolated > raw.
    """
    date: date
    raw: Optional[float] = None
    interpolated: Optional[float] = None
    smoothed: Optional[float] = None
    is_historical: bool = False
    season_year: Optional[int] = None
    source: PointSource = PointSource.OPTICAL

    @property
    def effective(self) -> Optional[float]:
        for value in (self.smoothed, self.interpolated, self.raw):
            if value is not None:
                return value
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": iso(self.date),
            "raw": self.raw,
            "interpolated": self.interpolated,
            "smoothed": self.smoothed,
            "effective": self.effective,
            "is_historical": self.is_historical,
            "season_year": self.season_year,
            "source": self.source.value,
        }


@dataclass(frozen=True)
class HistoricalSeason:
    """A prior season mapped onto the current season's calendar."""
    season_year: int
    points: tuple
    year_offset_to_current: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "season_year": self.season_year,
            "year_offset_to_current": self.year_offset_to_current,
            "points": [p.to_dict() for p in self.points],
        }


# ═══════════════════════════════════════════════════════════════════════════
# STAGE RESULTS
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class CycleResult:
    """Detected crop-cycle events for one season."""
    sos_date: Optional[date] = None
    peak_date: Optional[date] = None
    eos_date: Optional[date] = None
    peak_value: Optional[float] = None
    cycle_length_days: Optional[int] = None
    health_label: Optional[HealthLabel] = None
    regime: Optional[Regime] = None
    eos_method: Optional[EosMethod] = None
    planting_date: Optional[date] = None
    planting_from_input: bool = False
    sos_fallback: bool = False
    disqualified: bool = False
    replanting_detected: bool = False
    decline_rate: Optional[float] = None
    point_count: int = 0
    diagnostics: List[str] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return self.sos_date is not None and self.eos_date is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sos_date": iso(self.sos_date),
            "peak_date": iso(self.peak_date),
            "eos_date": iso(self.eos_date),
            "peak_value": self.peak_value,
            "cycle_length_days": self.cycle_length_days,
            "health_label": self.health_label.value if self.health_label else None,
            "regime": self.regime.value if self.regime else None,
            "eos_method": self.eos_method.value if self.eos_method else None,
            "planting_date": iso(self.planting_date),
            "planting_from_input": self.planting_from_input,
            "sos_fallback": self.sos_fallback,
            "disqualified": self.disqualified,
            "replanting_detected": self.replanting_detected,
            "decline_rate": self.decline_rate,
            "point_count": self.point_count,
            "diagnostics": list(self.diagnostics),
        }


@dataclass
class CropPattern:
    status: PatternStatus
    peak: float
    basal: float
    amplitude: float
    mean: float
    hypotheses: List[str] = field(default_factory=list)
    reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "peak": self.peak,
            "basal": self.basal,
            "amplitude": self.amplitude,
            "mean": self.mean,
            "hypotheses": list(self.hypotheses),
            "reasons": list(self.reasons),
        }


@dataclass
class AlignmentResult:
    seasons: List[HistoricalSeason] = field(default_factory=list)
    correlations: Dict[int, Optional[float]] = field(default_factory=dict)
    historical_correlation: Optional[float] = None
    envelope: List[Dict[str, Any]] = field(default_factory=list)
    expected_cycle_days: Optional[float] = None
    diagnostics: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "season_years": [s.season_year for s in self.seasons],
            "correlations": {str(k): v for k, v in self.correlations.items()},
            "historical_correlation": self.historical_correlation,
            "envelope": list(self.envelope),
            "expected_cycle_days": self.expected_cycle_days,
            "diagnostics": list(self.diagnostics),
        }


@dataclass
class FusionCalibration:
    """Per-parcel linear fit optical = slope * radar + intercept."""
    slope: float
    intercept: float
    source_signal: str
    sample_size: int
    r_squared: float
    rmse: float
    fitted_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def apply(self, radar_value: float) -> float:
        return self.slope * radar_value + self.intercept

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slope": self.slope,
            "intercept": self.intercept,
            "source_signal": self.source_signal,
            "sample_size": self.sample_size,
            "r_squared": self.r_squared,
            "rmse": self.rmse,
            "fitted_at": self.fitted_at,
        }


@dataclass
class FusionResult:
    points: List[IndexPoint] = field(default_factory=list)
    applied: bool = False
    gaps_found: int = 0
    gaps_filled: int = 0
    points_added: int = 0
    radar_contribution: float = 0.0
    continuity_score: float = 0.0
    calibration: Optional[FusionCalibration] = None
    diagnostics: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "applied": self.applied,
            "gaps_found": self.gaps_found,
            "gaps_filled": self.gaps_filled,
            "points_added": self.points_added,
            "radar_contribution": self.radar_contribution,
            "continuity_score": self.continuity_score,
            "calibration": self.calibration.to_dict() if self.calibration else None,
            "diagnostics": list(self.diagnostics),
        }


@dataclass
class EnvironmentalAdjustment:
    """One adjuster's opinion on the EOS date."""
    kind: AdjustmentKind
    days_shift: int = 0
    raw_days_shift: float = 0.0
    stress_level: str = "NONE"
    triggering_metric: str = ""
    flag_raised: bool = False
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def fired(self) -> bool:
        return self.days_shift != 0 or self.flag_raised

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "days_shift": self.days_shift,
            "raw_days_shift": self.raw_days_shift,
            "stress_level": self.stress_level,
            "triggering_metric": self.triggering_metric,
            "flag_raised": self.flag_raised,
            "details": dict(self.details),
        }


@dataclass
class CombinedAdjustment:
    adjustments: List[EnvironmentalAdjustment] = field(default_factory=list)
    total_shift_days: int = 0
    uncapped_total: int = 0
    clamped: bool = False

    @property
    def fired(self) -> List[str]:
        return [a.kind.value for a in self.adjustments if a.fired]

    def get(self, kind: AdjustmentKind) -> Optional[EnvironmentalAdjustment]:
        for adjustment in self.adjustments:
            if adjustment.kind == kind:
                return adjustment
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "adjustments": [a.to_dict() for a in self.adjustments],
            "total_shift_days": self.total_shift_days,
            "uncapped_total": self.uncapped_total,
            "clamped": self.clamped,
            "fired": self.fired,
        }


@dataclass
class Estimate:
    confidence: int
    confidence_label: ConfidenceLabel
    adjusted_eos_date: Optional[date] = None
    yield_kg_ha: Optional[float] = None
    volume_tonnes: Optional[float] = None
    factors: List[str] = field(default_factory=list)
    diagnostics: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "confidence": self.confidence,
            "confidence_label": self.confidence_label.value,
            "adjusted_eos_date": iso(self.adjusted_eos_date),
            "yield_kg_ha": self.yield_kg_ha,
            "volume_tonnes": self.volume_tonnes,
            "factors": list(self.factors),
            "diagnostics": list(self.diagnostics),
        }


# ═══════════════════════════════════════════════════════════════════════════
# PIPELINE
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class ParcelContext:
    """
    Everything known about a parcel before a run.

    Series and climate records may be pre-supplied; missing ones are fetched
    from the configured loaders.
    """
    parcel_id: str
    crop_type: str
    area_ha: float
    season_start: date
    season_end: Optional[date] = None
    geometry: Optional[Dict[str, Any]] = None
    planting_date: Optional[date] = None
    as_of: Optional[date] = None
    observations: Optional[List[RawObservation]] = None
    historical: Optional[List[List[RawObservation]]] = None
    radar: Optional[List[RadarObservation]] = None
    temperatures: Optional[List[DailyTemperature]] = None
    water_balance: Optional[List[DailyWaterBalance]] = None
    precipitation: Optional[List[DailyPrecipitation]] = None
    history_years: int = 3

    def to_dict(self) -> Dict[str, Any]:
        """The request part of the context (pre-supplied series are not kept)."""
        return {
            "parcel_id": self.parcel_id,
            "crop_type": self.crop_type,
            "area_ha": self.area_ha,
            "season_start": iso(self.season_start),
            "season_end": iso(self.season_end),
            "geometry": self.geometry,
            "planting_date": iso(self.planting_date),
            "as_of": iso(self.as_of),
            "history_years": self.history_years,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ParcelContext":
        return cls(
            parcel_id=str(data["parcel_id"]),
            crop_type=data["crop_type"],
            area_ha=float(data.get("area_ha") or 0.0),
            season_start=parse_date(data["season_start"]),
            season_end=parse_date(data.get("season_end")),
            geometry=data.get("geometry"),
            planting_date=parse_date(data.get("planting_date")),
            as_of=parse_date(data.get("as_of")),
            history_years=int(data.get("history_years", 3)),
        )


@dataclass
class ProcessingContext:
    """Mutable accumulator for one parcel run. Owned by the Pipeline only."""
    parcel: ParcelContext
    status: str = RunStatus.PENDING
    series: List[IndexPoint] = field(default_factory=list)
    cycle: Optional[CycleResult] = None
    pattern: Optional[CropPattern] = None
    alignment: Optional[AlignmentResult] = None
    fusion: Optional[FusionResult] = None
    adjustments: Optional[CombinedAdjustment] = None
    estimate: Optional[Estimate] = None
    short_circuited: bool = False
    hypotheses: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    diagnostics: List[str] = field(default_factory=list)
    error_message: Optional[str] = None
    timings_ms: Dict[str, int] = field(default_factory=dict)


@dataclass
class PipelineResult:
    """Final snapshot of a parcel run, handed to the caller."""
    parcel_id: str
    status: str
    short_circuited: bool = False
    hypotheses: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    diagnostics: List[str] = field(default_factory=list)
    cycle: Optional[CycleResult] = None
    pattern: Optional[CropPattern] = None
    alignment: Optional[AlignmentResult] = None
    fusion: Optional[FusionResult] = None
    adjustments: Optional[CombinedAdjustment] = None
    estimate: Optional[Estimate] = None
    error_message: Optional[str] = None
    processed_at: str = field(default_factory=lambda: datetime.now().isoformat())

    @classmethod
    def from_context(cls, ctx: ProcessingContext) -> "PipelineResult":
        return cls(
            parcel_id=ctx.parcel.parcel_id,
            status=ctx.status,
            short_circuited=ctx.short_circuited,
            hypotheses=list(ctx.hypotheses),
            warnings=list(ctx.warnings),
            diagnostics=list(ctx.diagnostics),
            cycle=ctx.cycle,
            pattern=ctx.pattern,
            alignment=ctx.alignment,
            fusion=ctx.fusion,
            adjustments=ctx.adjustments,
            estimate=ctx.estimate,
            error_message=ctx.error_message,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "parcel_id": self.parcel_id,
            "status": self.status,
            "short_circuited": self.short_circuited,
            "hypotheses": list(self.hypotheses),
            "warnings": list(self.warnings),
            "diagnostics": list(self.diagnostics),
            "cycle": self.cycle.to_dict() if self.cycle else None,
            "pattern": self.pattern.to_dict() if self.pattern else None,
            "alignment": self.alignment.to_dict() if self.alignment else None,
            "fusion": self.fusion.to_dict() if self.fusion else None,
            "adjustments": self.adjustments.to_dict() if self.adjustments else None,
            "estimate": self.estimate.to_dict() if self.estimate else None,
            "error_message": self.error_message,
            "processed_at": self.processed_at,
        }
