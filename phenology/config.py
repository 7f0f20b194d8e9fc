"""
Pipeline Configuration

Explicit settings objects handed to each stage constructor. Algorithmic code
never looks up flags or thresholds from the environment; only
PipelineConfig.from_env() does, at the process edge.
"""

import os
import logging
from dataclasses import dataclass, field, asdict, fields
from typing import Dict, Any, Optional, Tuple

from dotenv import load_dotenv

log = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        log.warning(f"Ignoring non-numeric value for {name}: {value!r}")
        return default


# ═══════════════════════════════════════════════════════════════════════════
# FEATURE FLAGS
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class FeatureFlags:
    """Per-workspace switches for optional stages."""
    enable_fusion: bool = True
    enable_thermal: bool = True
    enable_water_balance: bool = True
    enable_precipitation: bool = True
    enable_ai_validation: bool = False


# ═══════════════════════════════════════════════════════════════════════════
# STAGE SETTINGS
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class NormalizerSettings:
    min_points: int = 3
    max_cloud_cover: float = 50.0      # percent; above this a point is cloud-obscured
    smoothing_window: int = 1          # 1 = keep upstream smoothing only
    season_cutover_month: int = 8


@dataclass
class DetectorSettings:
    baseline_points: int = 3
    greenup_fraction: float = 0.2
    trend_window: int = 14
    slope_threshold: float = 0.005     # NDVI/day separating rising/flat/declining
    min_trend_r2: float = 0.5          # weaker trends read as plateau
    senescence_drop_ratio: float = 0.85
    min_decline_rate: float = 0.002    # NDVI/day used when the plateau is flat
    decay_floor: float = 0.18
    index_bounds: Tuple[float, float] = (0.18, 0.92)


@dataclass
class AlignerSettings:
    season_cutover_month: int = 8
    min_points: int = 5
    min_overlap_points: int = 3


@dataclass
class FusionSettings:
    min_pairs: int = 15
    min_r2: float = 0.5
    pair_tolerance_days: int = 1
    min_pair_quality: float = 0.5
    refit_min_new_pairs: int = 5
    gap_threshold_days: int = 10
    index_bounds: Tuple[float, float] = (0.0, 1.0)
    biological_bounds: Tuple[float, float] = (0.18, 0.92)
    clip_to_biological: bool = True


@dataclass
class AdjusterSettings:
    thermal_cap_days: int = 10
    water_cap_days: int = 12
    precipitation_cap_days: int = 5
    max_total_shift_days: int = 21
    water_stress_direction: int = 1    # +1 delays EOS, -1 anticipates it
    harvest_window_days: int = 10
    projection_window_days: int = 14


@dataclass
class EstimatorSettings:
    partial_confidence_floor: int = 30
    high_threshold: int = 75
    medium_threshold: int = 40
    planting_tolerance_days: int = 15
    large_area_warning_ha: float = 1000.0


@dataclass
class QueueSettings:
    max_attempts: int = 3
    initial_retry_delay_seconds: float = 5.0
    max_retry_delay_seconds: float = 30.0
    poll_interval_seconds: float = 2.0


@dataclass
class AIValidationSettings:
    curator_model: str = "gpt-4o-mini"
    judge_model: str = "gpt-4o"
    api_key: Optional[str] = None
    max_attempts: int = 2
    backoff_multiplier: float = 1.0
    backoff_max_seconds: float = 8.0
    timeout_seconds: float = 180.0
    request_timeout_seconds: float = 60.0
    curator_batch_size: int = 20
    image_batch_size: int = 5
    image_size: int = 512


# ═══════════════════════════════════════════════════════════════════════════
# AGGREGATE CONFIG
# ═══════════════════════════════════════════════════════════════════════════
_SECTIONS = {
    "flags": FeatureFlags,
    "normalizer": NormalizerSettings,
    "detector": DetectorSettings,
    "aligner": AlignerSettings,
    "fusion": FusionSettings,
    "adjusters": AdjusterSettings,
    "estimator": EstimatorSettings,
    "queue": QueueSettings,
    "ai": AIValidationSettings,
}


@dataclass
class PipelineConfig:
    """
    Everything a pipeline run needs to know, passed explicitly.

    Usage:
        config = PipelineConfig.from_env()
        pipeline = Pipeline(config)
    """
    flags: FeatureFlags = field(default_factory=FeatureFlags)
    normalizer: NormalizerSettings = field(default_factory=NormalizerSettings)
    detector: DetectorSettings = field(default_factory=DetectorSettings)
    aligner: AlignerSettings = field(default_factory=AlignerSettings)
    fusion: FusionSettings = field(default_factory=FusionSettings)
    adjusters: AdjusterSettings = field(default_factory=AdjusterSettings)
    estimator: EstimatorSettings = field(default_factory=EstimatorSettings)
    queue: QueueSettings = field(default_factory=QueueSettings)
    ai: AIValidationSettings = field(default_factory=AIValidationSettings)

    # Data source endpoints and stores
    index_api_url: str = "http://localhost:8000"
    climate_api_url: str = "http://localhost:8000"
    imagery_api_url: str = "https://sh.dataspace.copernicus.eu"
    imagery_token_url: str = "https://identity.dataspace.copernicus.eu/auth/realms/CDSE/protocol/openid-connect/token"
    imagery_client_id: Optional[str] = None
    imagery_client_secret: Optional[str] = None
    analysis_db_path: str = "analysis_store.db"
    queue_db_path: str = "reprocess_queue.db"
    image_db_path: str = "field_images.db"
    fetch_timeout_seconds: float = 60.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["ai"].pop("api_key", None)
        data.pop("imagery_client_secret", None)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineConfig":
        kwargs = {}
        for f in fields(cls):
            if f.name not in data:
                continue
            value = data[f.name]
            section_cls = _SECTIONS.get(f.name)
            if section_cls is not None and isinstance(value, dict):
                value = section_cls(**{
                    k: tuple(v) if isinstance(v, list) else v
                    for k, v in value.items()
                })
            kwargs[f.name] = value
        return cls(**kwargs)

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "PipelineConfig":
        """Build configuration from a .env file and process environment."""
        load_dotenv(dotenv_path)
        config = cls()

        flags = config.flags
        flags.enable_fusion = _env_bool("CROPCYCLE_ENABLE_FUSION", flags.enable_fusion)
        flags.enable_thermal = _env_bool("CROPCYCLE_ENABLE_THERMAL", flags.enable_thermal)
        flags.enable_water_balance = _env_bool("CROPCYCLE_ENABLE_WATER_BALANCE", flags.enable_water_balance)
        flags.enable_precipitation = _env_bool("CROPCYCLE_ENABLE_PRECIPITATION", flags.enable_precipitation)
        flags.enable_ai_validation = _env_bool("CROPCYCLE_ENABLE_AI_VALIDATION", flags.enable_ai_validation)

        config.index_api_url = os.getenv("CROPCYCLE_INDEX_API_URL", config.index_api_url)
        config.climate_api_url = os.getenv("CROPCYCLE_CLIMATE_API_URL", config.climate_api_url)
        config.imagery_api_url = os.getenv("CROPCYCLE_IMAGERY_API_URL", config.imagery_api_url)
        config.imagery_token_url = os.getenv("CROPCYCLE_IMAGERY_TOKEN_URL", config.imagery_token_url)
        config.imagery_client_id = os.getenv("CDSE_CLIENT_ID")
        config.imagery_client_secret = os.getenv("CDSE_CLIENT_SECRET")
        config.analysis_db_path = os.getenv("CROPCYCLE_ANALYSIS_DB", config.analysis_db_path)
        config.queue_db_path = os.getenv("CROPCYCLE_QUEUE_DB", config.queue_db_path)
        config.image_db_path = os.getenv("CROPCYCLE_IMAGE_DB", config.image_db_path)

        ai = config.ai
        ai.api_key = os.getenv("OPENAI_API_KEY")
        ai.curator_model = os.getenv("CROPCYCLE_CURATOR_MODEL", ai.curator_model)
        ai.judge_model = os.getenv("CROPCYCLE_JUDGE_MODEL", ai.judge_model)
        ai.timeout_seconds = _env_float("CROPCYCLE_AI_TIMEOUT", ai.timeout_seconds)

        log.info(f"Configuration loaded (flags: {asdict(flags)})")
        return config
