"""
Pipeline Orchestrator - Runs every stage for one parcel.

Stages:
1. Load inputs (concurrent fetch of whatever was not pre-supplied)
2. Normalize current and historical series
3. Detect the crop cycle
4. Classify the crop pattern (short-circuit when there is no crop)
5. Align history, fuse sensors and run adjusters concurrently, then join
6. Estimate yield and confidence

A run never raises: failures become an ERROR result with a stored message.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout, as_completed
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from phenology.adjusters import PrecipitationAdjuster, ThermalAdjuster, WaterBalanceAdjuster, combine
from phenology.aligner import SeasonAligner, historical_cycle_length
from phenology.calibration import CalibrationCache
from phenology.config import PipelineConfig
from phenology.crops import get_profile
from phenology.cycle import CycleDetector
from phenology.errors import DataUnavailableError, EmptySeriesError, InputError
from phenology.estimator import YieldEstimator
from phenology.fusion import FusionEngine
from phenology.models import (
    IndexPoint,
    ParcelContext,
    PatternStatus,
    PipelineResult,
    ProcessingContext,
    RunStatus,
)
from phenology.normalizer import SeriesNormalizer
from phenology.pattern import classify
from phenology.store import AnalysisStore

log = logging.getLogger(__name__)


class Pipeline:
    """
    Usage:
        pipeline = Pipeline(PipelineConfig.from_env(), store=AnalysisStore())
        result = pipeline.run(parcel_context)
        result.to_dict()
    """

    def __init__(
        self,
        config: PipelineConfig = None,
        fetcher=None,
        store: Optional[AnalysisStore] = None,
        calibration_cache: Optional[CalibrationCache] = None,
    ):
        self.config = config or PipelineConfig()
        self.fetcher = fetcher
        self.store = store
        self.calibration_cache = calibration_cache or CalibrationCache(self.config.fusion)

        self.normalizer = SeriesNormalizer(self.config.normalizer)
        self.detector = CycleDetector(self.config.detector)
        self.aligner = SeasonAligner(self.config.aligner)
        self.fusion = FusionEngine(self.config.fusion, self.calibration_cache)
        self.thermal = ThermalAdjuster(self.config.adjusters)
        self.water = WaterBalanceAdjuster(self.config.adjusters)
        self.precipitation = PrecipitationAdjuster(self.config.adjusters)
        self.estimator = YieldEstimator(self.config.estimator)

    # ═══════════════════════════════════════════════════════════════════════
    # RUN
    # ═══════════════════════════════════════════════════════════════════════
    def run(self, parcel: ParcelContext) -> PipelineResult:
        ctx = ProcessingContext(parcel=parcel, status=RunStatus.PROCESSING)
        log.info(f"Pipeline started for parcel {parcel.parcel_id} ({parcel.crop_type}, {parcel.area_ha} ha)")
        if self.store is not None:
            self.store.mark_processing(parcel.parcel_id, parcel.to_dict())

        started = time.perf_counter()
        try:
            self._execute(ctx)
        except InputError as e:
            log.warning(f"Parcel {parcel.parcel_id} rejected: {e}")
            ctx.status = RunStatus.ERROR
            ctx.error_message = str(e)
        except DataUnavailableError as e:
            log.error(f"Parcel {parcel.parcel_id} could not run: {e}")
            ctx.status = RunStatus.ERROR
            ctx.error_message = str(e)
        except Exception as e:
            log.exception(f"Pipeline failed for parcel {parcel.parcel_id}")
            ctx.status = RunStatus.ERROR
            ctx.error_message = f"{type(e).__name__}: {e}"
        ctx.timings_ms["total"] = int((time.perf_counter() - started) * 1000)

        result = PipelineResult.from_context(ctx)
        if self.store is not None:
            try:
                self.store.save_result(result)
            except Exception:
                log.exception(f"Could not persist result for parcel {parcel.parcel_id}")
        log.info(f"Pipeline finished for parcel {parcel.parcel_id}: {result.status} in {ctx.timings_ms['total']} ms")
        return result

    def _execute(self, ctx: ProcessingContext):
        parcel = ctx.parcel
        profile = get_profile(parcel.crop_type)

        if parcel.area_ha > self.config.estimator.large_area_warning_ha:
            ctx.warnings.append(f"Large parcel ({parcel.area_ha:.0f} ha): estimates are less reliable")

        # 1. Inputs
        with self._timed(ctx, "load"):
            inputs = self._load_inputs(ctx)

        # 2. Normalize
        with self._timed(ctx, "normalize"):
            ctx.series = self.normalizer.normalize(inputs["current"])
            historical = self._normalize_historical(ctx, inputs.get("historical") or [])

        # 3. Detect
        expected_cycle = self._expected_cycle_days(historical, profile)
        with self._timed(ctx, "detect"):
            ctx.cycle = self.detector.detect(
                ctx.series,
                parcel.crop_type,
                planting_date=parcel.planting_date,
                as_of=parcel.as_of,
                expected_cycle_days=expected_cycle,
            )
        if any(d.startswith("EOS_IN_PAST") for d in ctx.cycle.diagnostics):
            ctx.warnings.append("Projected EOS is already in the past")

        # 4. Pattern and short-circuit
        ctx.pattern = classify(ctx.series, parcel.crop_type, ctx.cycle)
        if ctx.cycle.disqualified or ctx.pattern.status == PatternStatus.NO_CROP:
            ctx.short_circuited = True
            ctx.hypotheses = list(ctx.pattern.hypotheses)
            ctx.status = RunStatus.SUCCESS
            ctx.diagnostics.append("SHORT_CIRCUIT: no identifiable crop, downstream stages skipped")
            log.info(f"Parcel {parcel.parcel_id} short-circuited: {ctx.pattern.reasons}")
            return

        # 5. Enrichment (explicit join)
        with self._timed(ctx, "enrich"):
            self._enrich(ctx, inputs, historical)

        # 6. Estimate
        with self._timed(ctx, "estimate"):
            ctx.estimate = self.estimator.estimate(
                parcel, ctx.cycle, ctx.pattern, ctx.alignment, ctx.fusion, ctx.adjustments
            )
        ctx.diagnostics.extend(ctx.estimate.diagnostics)

        if not ctx.cycle.is_complete or ctx.estimate.confidence < self.config.estimator.partial_confidence_floor:
            ctx.status = RunStatus.PARTIAL
        else:
            ctx.status = RunStatus.SUCCESS

    # ─────────────────────────────────────────────────────────────────────
    # INPUTS
    # ─────────────────────────────────────────────────────────────────────
    def _wanted_sources(self) -> List[str]:
        flags = self.config.flags
        wanted = ["current", "historical"]
        if flags.enable_fusion:
            wanted.append("radar")
        if flags.enable_thermal:
            wanted.append("temperature")
        if flags.enable_water_balance:
            wanted.append("water_balance")
        if flags.enable_precipitation:
            wanted.append("precipitation")
        return wanted

    def _load_inputs(self, ctx: ProcessingContext) -> Dict[str, Any]:
        parcel = ctx.parcel
        supplied = {
            "current": parcel.observations,
            "historical": parcel.historical,
            "radar": parcel.radar,
            "temperature": parcel.temperatures,
            "water_balance": parcel.water_balance,
            "precipitation": parcel.precipitation,
        }
        wanted = self._wanted_sources()
        inputs = {name: supplied[name] for name in wanted if supplied[name] is not None}
        missing = [name for name in wanted if supplied[name] is None]
        if not missing:
            return inputs

        fetcher = self.fetcher
        if fetcher is None:
            from loaders.inputs import get_input_fetcher
            fetcher = get_input_fetcher(self.config)
        fetched = fetcher.fetch(parcel, missing)
        inputs.update(fetched.data)
        for source, error in fetched.errors.items():
            ctx.warnings.append(f"Optional source {source} unavailable")
            ctx.diagnostics.append(f"SOURCE_UNAVAILABLE: {source}: {error}")

        if not inputs.get("current"):
            raise DataUnavailableError("current", "no vegetation-index observations returned")
        return inputs

    def _normalize_historical(self, ctx: ProcessingContext, seasons) -> List[List[IndexPoint]]:
        normalized = []
        for observations in seasons:
            try:
                normalized.append(self.normalizer.normalize(observations, is_historical=True))
            except EmptySeriesError as e:
                ctx.diagnostics.append(f"HISTORICAL_SKIPPED: {e}")
        return normalized

    def _expected_cycle_days(self, historical: List[List[IndexPoint]], profile) -> Optional[float]:
        lengths = [historical_cycle_length(points, profile) for points in historical]
        lengths = [n for n in lengths if n is not None]
        return float(np.mean(lengths)) if lengths else None

    # ─────────────────────────────────────────────────────────────────────
    # ENRICHMENT
    # ─────────────────────────────────────────────────────────────────────
    def _enrich(self, ctx: ProcessingContext, inputs: Dict[str, Any], historical: List[List[IndexPoint]]):
        parcel = ctx.parcel
        cycle = ctx.cycle
        flags = self.config.flags
        profile = get_profile(parcel.crop_type)
        cloud_cover = {
            obs.date: obs.cloud_cover for obs in inputs["current"] if obs.cloud_cover is not None
        }

        tasks: Dict[str, Callable] = {
            "alignment": lambda: self.aligner.align(ctx.series, historical, parcel.crop_type),
        }
        if flags.enable_fusion:
            tasks["fusion"] = lambda: self.fusion.fuse(
                parcel.parcel_id, ctx.series, inputs.get("radar"), cloud_cover
            )
        if flags.enable_thermal and inputs.get("temperature") is not None:
            tasks["thermal"] = lambda: self.thermal.adjust(cycle, profile, inputs["temperature"])
        if flags.enable_water_balance and inputs.get("water_balance") is not None:
            tasks["water_balance"] = lambda: self.water.adjust(cycle, inputs["water_balance"])
        if flags.enable_precipitation and inputs.get("precipitation") is not None:
            tasks["precipitation"] = lambda: self.precipitation.adjust(cycle, inputs["precipitation"])

        outputs: Dict[str, Any] = {}
        timeout = self.config.fetch_timeout_seconds
        executor = ThreadPoolExecutor(max_workers=len(tasks))
        futures = {executor.submit(task): name for name, task in tasks.items()}
        try:
            for future in as_completed(futures, timeout=timeout):
                name = futures[future]
                try:
                    outputs[name] = future.result()
                except Exception as e:
                    log.exception(f"Stage {name} failed for parcel {parcel.parcel_id}")
                    ctx.warnings.append(f"Stage {name} failed and was skipped")
                    ctx.diagnostics.append(f"STAGE_FAILED: {name}: {e}")
        except FuturesTimeout:
            for future, name in futures.items():
                if not future.done():
                    future.cancel()
                    log.warning(f"Stage {name} timed out for parcel {parcel.parcel_id}")
                    ctx.warnings.append(f"Stage {name} timed out and was skipped")
                    ctx.diagnostics.append(f"STAGE_TIMEOUT: {name} after {timeout:g}s")
        finally:
            executor.shutdown(wait=False)

        ctx.alignment = outputs.get("alignment")
        ctx.fusion = outputs.get("fusion")
        if ctx.alignment is not None:
            ctx.diagnostics.extend(ctx.alignment.diagnostics)
        if ctx.fusion is not None:
            ctx.diagnostics.extend(ctx.fusion.diagnostics)
            if not ctx.fusion.applied and inputs.get("radar"):
                ctx.warnings.append("Sensor fusion skipped")

        adjustments = [outputs[k] for k in ("thermal", "water_balance", "precipitation") if k in outputs]
        ctx.adjustments = combine(adjustments, self.config.adjusters)
        if ctx.adjustments.clamped:
            ctx.warnings.append(
                f"Environmental adjustments clamped from {ctx.adjustments.uncapped_total:+d} "
                f"to {ctx.adjustments.total_shift_days:+d} days"
            )

    @contextmanager
    def _timed(self, ctx: ProcessingContext, stage: str):
        started = time.perf_counter()
        try:
            yield
        finally:
            ctx.timings_ms[stage] = int((time.perf_counter() - started) * 1000)


def run_pipeline(
    parcel_context: ParcelContext,
    config: PipelineConfig = None,
    store: Optional[AnalysisStore] = None,
    fetcher=None,
) -> PipelineResult:
    """Run the full pipeline for one parcel with a fresh Pipeline."""
    return Pipeline(config, fetcher=fetcher, store=store).run(parcel_context)
