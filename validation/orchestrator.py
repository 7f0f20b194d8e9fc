"""
AI Validation Orchestrator - Curator + judge second opinion on a parcel result.

Flow:
1. Build fetch plans (key dates + periodic windows) and fetch the missing
   images through the incremental ImageStore
2. Curator scores and filters the images
3. Judge compares the algorithmic projection with the curated images
4. Normalize the verdict, price the tokens, pick evidence thumbnails

The whole call is bounded by a timeout. Missing credentials, exhausted
retries, a timeout or no imagery all return a degraded result instead of
raising; the pipeline result is never touched.
"""

import logging
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from loaders.geometry import bbox_from_geojson
from loaders.image_store import ImageStore, build_fetch_plan, key_date_windows, periodic_windows
from loaders.imagery import ImageryLoader
from phenology.config import PipelineConfig
from phenology.errors import AIRequestError, AIServiceError, DataUnavailableError, InputError
from phenology.store import AnalysisStore
from validation.curator import Curator
from validation.judge import Judge
from validation.llm import ChatClient
from validation.models import ALERT_CATEGORIES, AIValidationInput, AIValidationResult, ImageEntry
from validation.pricing import build_cost_report, log_cost_report
from validation.prompts import format_index_table, format_radar_table

log = logging.getLogger(__name__)

EVIDENCE_IMAGES = 4
EVIDENCE_BASE64_CHARS = 500

RISK_LEVELS = {
    "BAIXO": "LOW", "LOW": "LOW",
    "MODERADO": "MEDIUM", "MEDIO": "MEDIUM", "MÉDIO": "MEDIUM", "MEDIUM": "MEDIUM",
    "ALTO": "HIGH", "HIGH": "HIGH",
    "CRITICO": "CRITICAL", "CRÍTICO": "CRITICAL", "CRITICAL": "CRITICAL",
}
LEGACY_RISK_FIELDS = (("climatic", "CLIMATIC"), ("phytosanitary", "PHYTOSANITARY"), ("operational", "OPERATIONAL"))

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_DATE_FORMATS = ("%Y-%m-%dT%H:%M:%S", "%Y/%m/%d", "%d/%m/%Y", "%d-%m-%Y")


# ═══════════════════════════════════════════════════════════════════════════
# NORMALIZATION
# ═══════════════════════════════════════════════════════════════════════════
def normalize_iso_date(value: Any) -> Optional[str]:
    """YYYY-MM-DD or None for anything that is not a recognizable date."""
    if not value:
        return None
    text = str(value).strip()
    if _ISO_DATE.match(text):
        try:
            return date.fromisoformat(text).isoformat()
        except ValueError:
            return None
    text = text.rstrip("Z")[:19]
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue
    return None


def _int_or(value: Any, default: int = 0) -> int:
    """Integer value of a model field, or the default when it is not numeric."""
    if isinstance(value, bool):
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return default


def _text(value: Any, default: str = "") -> str:
    if value is None or isinstance(value, (dict, list)):
        return default
    return str(value)


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def normalize_risk(raw: Dict[str, Any]) -> Dict[str, Any]:
    """English risk levels; old-schema per-category strings become factors."""
    raw = _as_dict(raw)
    overall = _text(raw.get("overallRisk") or raw.get("overall")).strip().upper()
    factors = [dict(f) for f in _as_list(raw.get("factors")) if isinstance(f, dict)]
    if not factors:
        for key, category in LEGACY_RISK_FIELDS:
            description = _text(raw.get(key))
            if description:
                factors.append({"category": category, "severity": "MEDIUM", "description": description})
    for factor in factors:
        severity = _text(factor.get("severity")).strip().upper()
        factor["severity"] = RISK_LEVELS.get(severity, "MEDIUM")
    return {"overall_risk": RISK_LEVELS.get(overall, "MEDIUM"), "factors": factors}


def normalize_harvest(raw: Dict[str, Any]) -> Dict[str, Any]:
    raw = _as_dict(raw)
    ready = raw.get("ready")
    if ready is None:
        ready = raw.get("isReady", False)
    return {
        "ready": ready is True or _text(ready).strip().lower() == "true",
        "estimated_date": normalize_iso_date(raw.get("estimatedDate")),
        "delay_risk": _text(raw.get("delayRisk")) or "NONE",
        "delay_days": _int_or(raw.get("delayDays"), 0),
        "notes": _text(raw.get("notes")),
    }


def normalize_alerts(findings: List[Any]) -> List[Dict[str, Any]]:
    alerts = []
    for finding in _as_list(findings):
        if not isinstance(finding, dict):
            continue
        label = _text(finding.get("type") or finding.get("category")).strip().upper()
        alerts.append({
            "category": label if label in ALERT_CATEGORIES else "OPERATIONAL",
            "label": _text(finding.get("type")) or None,
            "severity": RISK_LEVELS.get(_text(finding.get("severity")).strip().upper(), "MEDIUM"),
            "description": _text(finding.get("description")),
            "affected_area": _text(finding.get("affectedArea")) or None,
        })
    return alerts


def normalize_recommendations(raw: Any) -> List[str]:
    return [text for text in (_text(r).strip() for r in _as_list(raw)) if text]


# ═══════════════════════════════════════════════════════════════════════════
# VALIDATOR
# ═══════════════════════════════════════════════════════════════════════════
class AIValidator:
    """
    Usage:
        validator = AIValidator(PipelineConfig.from_env(), store=AnalysisStore())
        result = validator.validate(AIValidationInput.from_result(parcel, pipeline_result))
    """

    def __init__(
        self,
        config: PipelineConfig = None,
        image_store: ImageStore = None,
        imagery: ImageryLoader = None,
        client: ChatClient = None,
        store: AnalysisStore = None,
    ):
        self.config = config or PipelineConfig()
        self.settings = self.config.ai
        self.image_store = image_store
        self.imagery = imagery
        self.client = client
        self.store = store

    def _client(self) -> ChatClient:
        if self.client is None:
            self.client = ChatClient(
                api_key=self.settings.api_key,
                timeout=self.settings.request_timeout_seconds,
                max_attempts=self.settings.max_attempts,
                backoff_multiplier=self.settings.backoff_multiplier,
                backoff_max=self.settings.backoff_max_seconds,
            )
        return self.client

    def _image_sources(self):
        if self.image_store is None:
            from loaders.image_store import get_image_store
            self.image_store = get_image_store(self.config.image_db_path)
        if self.imagery is None:
            from loaders.imagery import get_imagery_loader
            self.imagery = get_imagery_loader(self.config)
        return self.image_store, self.imagery

    def validate(self, validation_input: AIValidationInput, cancel: threading.Event = None) -> AIValidationResult:
        """Never raises for service trouble; see AIValidationResult.degraded."""
        parcel_id = validation_input.parcel_id
        validated_at = datetime.now().isoformat()
        cancel = cancel or threading.Event()

        if self.client is None and not self.settings.api_key:
            log.warning(f"AI validation for {parcel_id} skipped: OPENAI_API_KEY not configured")
            return self._finish(AIValidationResult.degraded_result(parcel_id, "AI API key not configured", validated_at))

        executor = ThreadPoolExecutor(max_workers=1)
        future = executor.submit(self._validate, validation_input, cancel)
        try:
            result = future.result(timeout=self.settings.timeout_seconds)
        except FuturesTimeout:
            cancel.set()
            log.warning(f"AI validation for {parcel_id} timed out after {self.settings.timeout_seconds:.0f}s")
            result = AIValidationResult.degraded_result(parcel_id, "AI validation timed out", validated_at)
        except AIServiceError as e:
            log.warning(f"AI validation for {parcel_id} degraded: {e}")
            result = AIValidationResult.degraded_result(parcel_id, f"AI service unavailable: {e}", validated_at)
        except AIRequestError as e:
            log.warning(f"AI validation for {parcel_id} degraded: {e}")
            result = AIValidationResult.degraded_result(parcel_id, f"AI request rejected: {e}", validated_at)
        except (DataUnavailableError, InputError, ValueError) as e:
            log.warning(f"AI validation for {parcel_id} degraded: {e}")
            result = AIValidationResult.degraded_result(parcel_id, str(e), validated_at)
        except Exception as e:
            log.exception(f"AI validation for {parcel_id} failed")
            result = AIValidationResult.degraded_result(
                parcel_id, f"AI validation failed: {type(e).__name__}: {e}", validated_at
            )
        finally:
            executor.shutdown(wait=False)

        result.validated_at = result.validated_at or validated_at
        return self._finish(result)

    def _finish(self, result: AIValidationResult) -> AIValidationResult:
        if self.store is not None:
            try:
                self.store.save_validation(result.parcel_id, result.to_dict())
            except Exception:
                log.exception(f"Failed to persist AI validation for {result.parcel_id}")
        return result

    def _fetch_images(self, v: AIValidationInput, cancel: threading.Event) -> List[ImageEntry]:
        bbox = bbox_from_geojson(v.geometry)
        if bbox is None:
            raise InputError(f"Parcel {v.parcel_id} geometry has no bounding box")

        today = v.today or date.today()
        windows = sorted(set(key_date_windows(v.key_dates, today)) | set(periodic_windows(v.season_start, today)))
        plans = build_fetch_plan(windows, v.area_ha)
        image_store, imagery = self._image_sources()
        stored = image_store.fetch_missing(
            v.parcel_id, bbox, plans, imagery,
            batch_size=self.settings.image_batch_size,
            image_size=self.settings.image_size,
            cancel=cancel,
        )
        if not stored:
            raise DataUnavailableError("imagery", "no satellite images could be fetched")
        return [
            ImageEntry(date=img.image_date, image_type=img.image_type, collection=img.collection,
                       base64=img.base64, cloud_cover=img.cloud_cover)
            for img in stored
        ]

    def _validate(self, v: AIValidationInput, cancel: threading.Event) -> AIValidationResult:
        started = time.time()
        durations: Dict[str, int] = {}
        log.info(f"Starting AI validation for {v.parcel_id}")

        t0 = time.time()
        images = self._fetch_images(v, cancel)
        durations["fetch"] = int((time.time() - t0) * 1000)

        index_table = format_index_table(v.series)
        radar_table = format_radar_table(v.radar)
        client = self._client()

        t0 = time.time()
        curator = Curator(client, self.settings.curator_model, self.settings.curator_batch_size)
        curated = curator.run(images, index_table, radar_table, v.area_ha)
        durations["curator"] = int((time.time() - t0) * 1000)
        if cancel.is_set():
            raise AIServiceError("cancelled after curation")

        t0 = time.time()
        judge = Judge(client, self.settings.judge_model)
        verdict = judge.run(v, curated.curated_images, curated.report.context_summary, index_table, radar_table)
        durations["judge"] = int((time.time() - t0) * 1000)
        durations["total"] = int((time.time() - started) * 1000)

        cost_report = build_cost_report(curated.usage, verdict.usage, durations)
        log_cost_report(cost_report)

        by_key = {img.key: img for img in curated.curated_images}
        top = sorted((s for s in curated.report.scores if s.included), key=lambda s: s.score, reverse=True)
        evidence = []
        for score in top:
            img = by_key.get(f"{score.date.strip().lower()}-{score.image_type.strip().lower()}")
            if img is None:
                continue
            evidence.append({"date": img.date, "type": img.image_type,
                             "base64": img.base64[:EVIDENCE_BASE64_CHARS] + "..."})
            if len(evidence) == EVIDENCE_IMAGES:
                break

        analysis = verdict.analysis
        validation = analysis["algorithmicValidation"]
        return AIValidationResult(
            parcel_id=v.parcel_id,
            agreement=validation["eosAgreement"],
            confidence=max(0, min(100, _int_or(analysis.get("confidence"), 0))),
            adjusted_eos_date=normalize_iso_date(validation.get("eosAdjustedDate")),
            adjustment_reason=_text(validation.get("eosAdjustmentReason")) or None,
            stage_agreement=validation.get("stageAgreement", False),
            stage_comment=_text(validation.get("stageComment")),
            visual_alerts=normalize_alerts(analysis.get("visualFindings")),
            harvest_readiness=normalize_harvest(analysis.get("harvestReadiness")),
            risk_assessment=normalize_risk(analysis.get("riskAssessment")),
            recommendations=normalize_recommendations(analysis.get("recommendations")),
            curation_report=curated.report,
            cost_report=cost_report,
            evidence_images=evidence,
        )


def run_ai_validation(
    validation_input: AIValidationInput,
    config: PipelineConfig = None,
    store: AnalysisStore = None,
    **kwargs,
) -> AIValidationResult:
    """Validate one parcel result; degraded instead of raising on AI trouble."""
    return AIValidator(config, store=store, **kwargs).validate(validation_input)


def validate_persisted(parcel_id: str, store: AnalysisStore, config: PipelineConfig = None, **kwargs) -> Optional[AIValidationResult]:
    """Validate the stored result of a parcel. None when nothing is stored yet."""
    request = store.get_request(parcel_id)
    result = store.get_result(parcel_id)
    if not request or not result or not result.get("cycle"):
        log.info(f"No persisted result to validate for {parcel_id}")
        return None
    return run_ai_validation(AIValidationInput.from_persisted(request, result), config, store=store, **kwargs)
