"""
Phenology module for the crop-cycle engine.
Contains data models, cycle detection, fusion, adjusters, estimation and the pipeline.
"""

from phenology.errors import CropCycleError, InputError, EmptySeriesError, UnknownCropError, DataUnavailableError, AIServiceError, AIRequestError
from phenology.crops import CropType, CropProfile, PROFILES, get_profile
from phenology.config import PipelineConfig, FeatureFlags
from phenology.models import (
    RawObservation, RadarObservation, IndexPoint, CycleResult, ParcelContext, PipelineResult, RunStatus,
)
from phenology.normalizer import SeriesNormalizer
from phenology.cycle import CycleDetector
from phenology.aligner import SeasonAligner
from phenology.calibration import CalibrationCache
from phenology.fusion import FusionEngine
from phenology.adjusters import ThermalAdjuster, WaterBalanceAdjuster, PrecipitationAdjuster, combine
from phenology.estimator import YieldEstimator
from phenology.store import AnalysisStore
from phenology.pipeline import Pipeline, run_pipeline
from phenology.reprocess_queue import ReprocessQueue, ReprocessItem, ItemStatus

__all__ = [
    # Errors
    "CropCycleError",
    "InputError",
    "EmptySeriesError",
    "UnknownCropError",
    "DataUnavailableError",
    "AIServiceError",
    "AIRequestError",
    # Crops and config
    "CropType",
    "CropProfile",
    "PROFILES",
    "get_profile",
    "PipelineConfig",
    "FeatureFlags",
    # Models
    "RawObservation",
    "RadarObservation",
    "IndexPoint",
    "CycleResult",
    "ParcelContext",
    "PipelineResult",
    "RunStatus",
    # Stages
    "SeriesNormalizer",
    "CycleDetector",
    "SeasonAligner",
    "CalibrationCache",
    "FusionEngine",
    "ThermalAdjuster",
    "WaterBalanceAdjuster",
    "PrecipitationAdjuster",
    "combine",
    "YieldEstimator",
    # Orchestration
    "AnalysisStore",
    "Pipeline",
    "run_pipeline",
    "ReprocessQueue",
    "ReprocessItem",
    "ItemStatus",
]
