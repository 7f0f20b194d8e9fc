"""
Data loaders for the crop phenology pipeline.

Includes:
- Vegetation-index series (agronomic data API)
- Daily climate: temperature, water balance, precipitation
- Sentinel-1 radar backscatter (Copernicus Statistical API)
- Rendered satellite imagery (Copernicus Process API) and its local store
- Input fetcher (combines all sources)
"""

from loaders.index_series import IndexSeriesLoader, get_index_loader
from loaders.climate import ClimateLoader, get_climate_loader
from loaders.imagery import CopernicusAuth, ImageryLoader, ImageSpec, IMAGE_SPECS, get_imagery_loader
from loaders.radar import RadarLoader, get_radar_loader
from loaders.image_store import ImageStore, StoredImage, FetchPlan, build_fetch_plan, get_image_store
from loaders.inputs import InputFetcher, FetchedInputs, get_input_fetcher

__all__ = [
    # Series
    "IndexSeriesLoader",
    "get_index_loader",
    "RadarLoader",
    "get_radar_loader",
    # Climate
    "ClimateLoader",
    "get_climate_loader",
    # Imagery
    "CopernicusAuth",
    "ImageryLoader",
    "ImageSpec",
    "IMAGE_SPECS",
    "get_imagery_loader",
    "ImageStore",
    "StoredImage",
    "FetchPlan",
    "build_fetch_plan",
    "get_image_store",
    # Combined
    "InputFetcher",
    "FetchedInputs",
    "get_input_fetcher",
]
