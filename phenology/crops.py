"""
Crop Profiles - Agronomic constants per supported crop.

Thresholds are NDVI-equivalent values (0-1). Cycle bounds are days between
SOS and EOS; yields are kg/ha for a healthy, well-developed crop.
"""

import logging
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Dict, Tuple, Union

from phenology.errors import UnknownCropError

log = logging.getLogger(__name__)

# Biological bounds of the vegetation index for projected/fused values
MIN_NDVI = 0.18
MAX_NDVI_PLATEAU = 0.92


# ═══════════════════════════════════════════════════════════════════════════
# CROP TYPES
# ═══════════════════════════════════════════════════════════════════════════
class CropType(Enum):
    """Supported crops."""
    SOJA = "SOJA"          # soybean
    MILHO = "MILHO"        # corn
    ALGODAO = "ALGODAO"    # cotton
    TRIGO = "TRIGO"        # wheat


_ALIASES = {
    "SOYBEAN": CropType.SOJA,
    "SOY": CropType.SOJA,
    "CORN": CropType.MILHO,
    "MAIZE": CropType.MILHO,
    "COTTON": CropType.ALGODAO,
    "WHEAT": CropType.TRIGO,
}


@dataclass(frozen=True)
class CropProfile:
    """Phenology, pattern and yield constants for one crop."""

    crop: CropType
    label: str

    # Phenology thresholds
    sos_ndvi: float               # green-up crossing in historical seasons
    eos_ndvi: float               # senescence crossing in historical seasons
    peak_min: float               # expected minimum peak for a healthy crop
    harvest_ndvi: float           # value at which the crop is harvest-ready
    emergence_days: int           # planting -> emergence
    cycle_days: int               # typical planting -> harvest
    cycle_min_days: int           # plausible SOS -> EOS bounds
    cycle_max_days: int
    peak_to_eos_days: int         # typical peak -> harvest

    # Crop pattern thresholds
    min_vigor: float              # below this peak there is no identifiable crop
    anomalous_peak: float
    no_crop_amplitude: float
    expected_amplitude: float

    # Post-peak decline rate (NDVI/day): normal and marginal bands
    decline_normal: Tuple[float, float]
    decline_marginal: Tuple[float, float]

    # Yield and thermal requirements
    base_yield_kg_ha: float
    gdd_base_temp: float
    gdd_required: float

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["crop"] = self.crop.value
        return data


# ═══════════════════════════════════════════════════════════════════════════
# PREDEFINED PROFILES
# ═══════════════════════════════════════════════════════════════════════════
PROFILES: Dict[CropType, CropProfile] = {
    CropType.SOJA: CropProfile(
        crop=CropType.SOJA,
        label="Soybean",
        sos_ndvi=0.35,
        eos_ndvi=0.38,
        peak_min=0.70,
        harvest_ndvi=0.25,
        emergence_days=8,
        cycle_days=120,
        cycle_min_days=90,
        cycle_max_days=150,
        peak_to_eos_days=55,
        min_vigor=0.45,
        anomalous_peak=0.55,
        no_crop_amplitude=0.15,
        expected_amplitude=0.35,
        decline_normal=(0.004, 0.020),
        decline_marginal=(0.002, 0.030),
        base_yield_kg_ha=3500,
        gdd_base_temp=10.0,
        gdd_required=1300,
    ),
    CropType.MILHO: CropProfile(
        crop=CropType.MILHO,
        label="Corn",
        sos_ndvi=0.30,
        eos_ndvi=0.35,
        peak_min=0.65,
        harvest_ndvi=0.25,
        emergence_days=7,
        cycle_days=140,
        cycle_min_days=100,
        cycle_max_days=160,
        peak_to_eos_days=65,
        min_vigor=0.40,
        anomalous_peak=0.50,
        no_crop_amplitude=0.15,
        expected_amplitude=0.30,
        decline_normal=(0.004, 0.020),
        decline_marginal=(0.002, 0.030),
        base_yield_kg_ha=9000,
        gdd_base_temp=10.0,
        gdd_required=1500,
    ),
    CropType.ALGODAO: CropProfile(
        crop=CropType.ALGODAO,
        label="Cotton",
        sos_ndvi=0.32,
        eos_ndvi=0.40,
        peak_min=0.60,
        harvest_ndvi=0.28,
        emergence_days=10,
        cycle_days=180,
        cycle_min_days=150,
        cycle_max_days=200,
        peak_to_eos_days=70,
        min_vigor=0.40,
        anomalous_peak=0.50,
        no_crop_amplitude=0.12,
        expected_amplitude=0.30,
        decline_normal=(0.003, 0.015),
        decline_marginal=(0.0015, 0.025),
        base_yield_kg_ha=4500,
        gdd_base_temp=12.0,
        gdd_required=1800,
    ),
    CropType.TRIGO: CropProfile(
        crop=CropType.TRIGO,
        label="Wheat",
        sos_ndvi=0.30,
        eos_ndvi=0.35,
        peak_min=0.65,
        harvest_ndvi=0.25,
        emergence_days=7,
        cycle_days=120,
        cycle_min_days=90,
        cycle_max_days=140,
        peak_to_eos_days=45,
        min_vigor=0.40,
        anomalous_peak=0.50,
        no_crop_amplitude=0.15,
        expected_amplitude=0.30,
        decline_normal=(0.004, 0.022),
        decline_marginal=(0.002, 0.032),
        base_yield_kg_ha=3000,
        gdd_base_temp=5.0,
        gdd_required=1100,
    ),
}


def resolve_crop(crop: Union[str, CropType]) -> CropType:
    """Map a crop name (Portuguese code or English alias) to a CropType."""
    if isinstance(crop, CropType):
        return crop
    key = str(crop or "").strip().upper()
    try:
        return CropType(key)
    except ValueError:
        pass
    if key in _ALIASES:
        return _ALIASES[key]
    raise UnknownCropError(f"Unknown crop type: {crop!r}. Supported: {[c.value for c in CropType]}")


def get_profile(crop: Union[str, CropType]) -> CropProfile:
    """Get the agronomic profile for a crop."""
    return PROFILES[resolve_crop(crop)]
