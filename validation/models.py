"""
Data models for AI visual validation.

The validation has its own lifecycle: it is built from a persisted pipeline
result and stored next to it, never inside it.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional

from phenology.models import (
    AdjustmentKind,
    IndexPoint,
    ParcelContext,
    PipelineResult,
    RadarObservation,
    parse_date,
)


class Agreement:
    CONFIRMED = "CONFIRMED"
    QUESTIONED = "QUESTIONED"
    REJECTED = "REJECTED"

    ALL = (CONFIRMED, QUESTIONED, REJECTED)


ALERT_CATEGORIES = ("CLIMATIC", "PHYTOSANITARY", "OPERATIONAL")


# ═══════════════════════════════════════════════════════════════════════════
# IMAGES
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class ImageEntry:
    """A rendered image handed to the agents."""
    date: str
    image_type: str
    collection: str
    base64: str
    cloud_cover: Optional[float] = None

    @property
    def key(self) -> str:
        return f"{self.date.strip().lower()}-{self.image_type.strip().lower()}"

    @property
    def label(self) -> str:
        cloud = f", cloud: {self.cloud_cover}%" if self.cloud_cover is not None else ""
        return f"[{self.date}] {self.image_type} (collection: {self.collection}{cloud})"


@dataclass
class ImageScore:
    date: str
    image_type: str
    score: float
    included: bool
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "type": self.image_type,
            "score": self.score,
            "included": self.included,
            "reason": self.reason,
        }


@dataclass
class CurationReport:
    scores: List[ImageScore] = field(default_factory=list)
    time_series_flags: List[Dict[str, Any]] = field(default_factory=list)
    context_summary: str = ""
    cleaning_summary: str = ""
    total_images: int = 0

    @property
    def included_count(self) -> int:
        return sum(1 for s in self.scores if s.included)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_images": self.total_images,
            "included_images": self.included_count,
            "scores": [s.to_dict() for s in self.scores],
            "time_series_flags": list(self.time_series_flags),
            "context_summary": self.context_summary,
            "cleaning_summary": self.cleaning_summary,
        }


# ═══════════════════════════════════════════════════════════════════════════
# INPUT
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class AIValidationInput:
    """What the agents see of a parcel and its algorithmic result."""
    parcel_id: str
    geometry: Dict[str, Any]
    crop_type: str
    area_ha: float
    season_start: date
    planting_date: Optional[date] = None
    planting_source: str = "DETECTED"
    sos_date: Optional[date] = None
    peak_date: Optional[date] = None
    peak_value: Optional[float] = None
    eos_date: Optional[date] = None
    eos_method: Optional[str] = None
    confidence: int = 0
    health: Optional[str] = None
    gdd: Optional[Dict[str, Any]] = None
    water: Optional[Dict[str, Any]] = None
    precipitation: Optional[Dict[str, Any]] = None
    fusion: Optional[Dict[str, Any]] = None
    series: List[IndexPoint] = field(default_factory=list)
    radar: List[RadarObservation] = field(default_factory=list)
    today: Optional[date] = None

    @property
    def key_dates(self) -> List[date]:
        """Moments worth looking at: planting, SOS, peak, EOS and today."""
        today = self.today or date.today()
        dates = [self.planting_date, self.sos_date, self.peak_date]
        if self.eos_date is not None and self.eos_date <= today:
            dates.append(self.eos_date)
        dates.append(today)
        return [d for d in dates if d is not None]

    @classmethod
    def from_result(cls, parcel: ParcelContext, result: PipelineResult) -> "AIValidationInput":
        cycle = result.cycle
        estimate = result.estimate
        adjustments = result.adjustments
        fusion = result.fusion

        def _details(kind: AdjustmentKind) -> Optional[Dict[str, Any]]:
            adjustment = adjustments.get(kind) if adjustments else None
            if adjustment is None or adjustment.stress_level in ("NO_DATA", "NOT_APPLICABLE"):
                return None
            return dict(adjustment.details, stress_level=adjustment.stress_level,
                        days_shift=adjustment.days_shift)

        return cls(
            parcel_id=parcel.parcel_id,
            geometry=parcel.geometry,
            crop_type=str(parcel.crop_type),
            area_ha=parcel.area_ha,
            season_start=parcel.season_start,
            planting_date=cycle.planting_date if cycle else parcel.planting_date,
            planting_source="INPUT" if (cycle and cycle.planting_from_input) else "DETECTED",
            sos_date=cycle.sos_date if cycle else None,
            peak_date=cycle.peak_date if cycle else None,
            peak_value=cycle.peak_value if cycle else None,
            eos_date=(estimate.adjusted_eos_date if estimate and estimate.adjusted_eos_date
                      else (cycle.eos_date if cycle else None)),
            eos_method=cycle.eos_method.value if cycle and cycle.eos_method else None,
            confidence=estimate.confidence if estimate else 0,
            health=cycle.health_label.value if cycle and cycle.health_label else None,
            gdd=_details(AdjustmentKind.THERMAL),
            water=_details(AdjustmentKind.WATER),
            precipitation=_details(AdjustmentKind.PRECIPITATION),
            fusion=fusion.to_dict() if fusion and fusion.applied else None,
            series=list(fusion.points) if fusion and fusion.applied else [],
            radar=[],
            today=parcel.as_of,
        )

    @classmethod
    def from_persisted(cls, request: Dict[str, Any], result: Dict[str, Any]) -> "AIValidationInput":
        """Build from the stored request and result dicts of an AnalysisStore."""
        parcel = ParcelContext.from_dict(request)
        cycle = result.get("cycle") or {}
        estimate = result.get("estimate") or {}
        fusion = result.get("fusion") or {}
        adjustments = {
            a.get("kind"): a for a in (result.get("adjustments") or {}).get("adjustments") or []
        }

        def _details(kind: AdjustmentKind) -> Optional[Dict[str, Any]]:
            adjustment = adjustments.get(kind.value)
            if not adjustment or adjustment.get("stress_level") in ("NO_DATA", "NOT_APPLICABLE"):
                return None
            return dict(adjustment.get("details") or {}, stress_level=adjustment.get("stress_level"),
                        days_shift=adjustment.get("days_shift", 0))

        return cls(
            parcel_id=parcel.parcel_id,
            geometry=parcel.geometry,
            crop_type=str(parcel.crop_type),
            area_ha=parcel.area_ha,
            season_start=parcel.season_start,
            planting_date=parse_date(cycle.get("planting_date")) or parcel.planting_date,
            planting_source="INPUT" if cycle.get("planting_from_input") else "DETECTED",
            sos_date=parse_date(cycle.get("sos_date")),
            peak_date=parse_date(cycle.get("peak_date")),
            peak_value=cycle.get("peak_value"),
            eos_date=parse_date(estimate.get("adjusted_eos_date") or cycle.get("eos_date")),
            eos_method=cycle.get("eos_method"),
            confidence=int(estimate.get("confidence") or 0),
            health=cycle.get("health_label"),
            gdd=_details(AdjustmentKind.THERMAL),
            water=_details(AdjustmentKind.WATER),
            precipitation=_details(AdjustmentKind.PRECIPITATION),
            fusion=fusion if fusion.get("applied") else None,
            today=parcel.as_of,
        )


# ═══════════════════════════════════════════════════════════════════════════
# RESULT
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class AIValidationResult:
    """
    The judge's second opinion. A degraded result carries no opinion
    (agreement None) and the reason it could not be produced.
    """
    parcel_id: str
    agreement: Optional[str] = None
    confidence: int = 0
    adjusted_eos_date: Optional[str] = None
    adjustment_reason: Optional[str] = None
    stage_agreement: bool = False
    stage_comment: str = ""
    visual_alerts: List[Dict[str, Any]] = field(default_factory=list)
    harvest_readiness: Dict[str, Any] = field(default_factory=dict)
    risk_assessment: Dict[str, Any] = field(default_factory=dict)
    recommendations: List[str] = field(default_factory=list)
    curation_report: Optional[CurationReport] = None
    cost_report: Optional[Any] = None
    evidence_images: List[Dict[str, str]] = field(default_factory=list)
    degraded: bool = False
    degraded_reason: Optional[str] = None
    validated_at: Optional[str] = None

    @classmethod
    def degraded_result(cls, parcel_id: str, reason: str, validated_at: str = None) -> "AIValidationResult":
        return cls(parcel_id=parcel_id, degraded=True, degraded_reason=reason, validated_at=validated_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "parcel_id": self.parcel_id,
            "agreement": self.agreement,
            "confidence": self.confidence,
            "adjusted_eos_date": self.adjusted_eos_date,
            "adjustment_reason": self.adjustment_reason,
            "stage_agreement": self.stage_agreement,
            "stage_comment": self.stage_comment,
            "visual_alerts": list(self.visual_alerts),
            "harvest_readiness": dict(self.harvest_readiness),
            "risk_assessment": dict(self.risk_assessment),
            "recommendations": list(self.recommendations),
            "curation_report": self.curation_report.to_dict() if self.curation_report else None,
            "cost_report": self.cost_report.to_dict() if self.cost_report else None,
            "evidence_images": list(self.evidence_images),
            "degraded": self.degraded,
            "degraded_reason": self.degraded_reason,
            "validated_at": self.validated_at,
        }
