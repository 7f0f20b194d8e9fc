"""
Input Fetcher - Gathers every pipeline input for a parcel from all sources.

Sources are fetched concurrently. The current index series is required and
its failure raises; every other source failure is collected and reported
back so the pipeline can degrade instead of failing.

Sources:
- current: vegetation-index series for the running season
- historical: the same window in prior seasons
- radar: Sentinel-1 backscatter series
- temperature, water_balance, precipitation: daily climate records
"""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout, as_completed
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, List, Optional

from loaders.climate import ClimateLoader
from loaders.index_series import IndexSeriesLoader
from loaders.radar import RadarLoader
from phenology.errors import DataUnavailableError, InputError
from phenology.models import ParcelContext

log = logging.getLogger(__name__)

REQUIRED_SOURCE = "current"


@dataclass
class FetchedInputs:
    """What came back, and why the rest did not."""
    data: Dict[str, Any] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return not self.errors


class InputFetcher:
    """
    Usage:
        fetcher = InputFetcher(index_loader, radar_loader, climate_loader)
        fetched = fetcher.fetch(parcel, ["current", "historical", "temperature"])
        observations = fetched.data["current"]
    """

    def __init__(
        self,
        index_loader: IndexSeriesLoader,
        radar_loader: Optional[RadarLoader],
        climate_loader: ClimateLoader,
        timeout: float = 60.0,
    ):
        self.index_loader = index_loader
        self.radar_loader = radar_loader
        self.climate_loader = climate_loader
        self.timeout = timeout

    def _tasks(self, parcel: ParcelContext) -> Dict[str, Callable[[], Any]]:
        if parcel.geometry is None:
            raise InputError(f"Parcel {parcel.parcel_id} has no geometry to fetch data for")

        geometry = parcel.geometry
        end = parcel.as_of or date.today()
        if parcel.season_end is not None:
            end = min(end, parcel.season_end)
        planting = parcel.planting_date or parcel.season_start
        crop = str(parcel.crop_type)

        tasks = {
            "current": lambda: self.index_loader.fetch_series(geometry, parcel.season_start, end),
            "historical": lambda: self.index_loader.fetch_historical(
                geometry, parcel.season_start, end, years=parcel.history_years
            ),
            "temperature": lambda: self.climate_loader.fetch_temperature(geometry, planting, end),
            "water_balance": lambda: self.climate_loader.fetch_water_balance(geometry, planting, crop),
            "precipitation": lambda: self.climate_loader.fetch_precipitation(geometry, planting, end),
        }
        if self.radar_loader is not None:
            tasks["radar"] = lambda: self.radar_loader.fetch_series(geometry, parcel.season_start, end)
        return tasks

    def fetch(self, parcel: ParcelContext, sources: List[str]) -> FetchedInputs:
        """
        Fetch the named sources concurrently.

        Raises:
            InputError: the parcel has no geometry
            DataUnavailableError: the current index series could not be fetched
        """
        tasks = self._tasks(parcel)
        result = FetchedInputs()
        for name in sources:
            if name not in tasks:
                result.errors[name] = "no loader configured"

        selected = {name: tasks[name] for name in sources if name in tasks}
        if not selected:
            return result

        with ThreadPoolExecutor(max_workers=len(selected)) as executor:
            futures = {executor.submit(fn): name for name, fn in selected.items()}
            try:
                for future in as_completed(futures, timeout=self.timeout):
                    name = futures[future]
                    try:
                        result.data[name] = future.result()
                    except Exception as e:
                        log.warning(f"Fetch {name} failed for {parcel.parcel_id}: {e}")
                        result.errors[name] = str(e)
            except FuturesTimeout:
                for future, name in futures.items():
                    if not future.done():
                        future.cancel()
                        result.errors[name] = f"timed out after {self.timeout:.0f}s"
                        log.warning(f"Fetch {name} timed out for {parcel.parcel_id}")

        if REQUIRED_SOURCE in selected and REQUIRED_SOURCE in result.errors:
            raise DataUnavailableError(REQUIRED_SOURCE, result.errors[REQUIRED_SOURCE])

        log.info(f"Fetched {len(result.data)}/{len(selected)} sources for {parcel.parcel_id}")
        return result


# Singleton
_fetcher: Optional[InputFetcher] = None

def get_input_fetcher(config=None) -> InputFetcher:
    """Get singleton input fetcher wired to the configured loaders."""
    global _fetcher
    if _fetcher is None:
        from phenology.config import PipelineConfig
        from loaders.climate import get_climate_loader
        from loaders.index_series import get_index_loader
        from loaders.radar import get_radar_loader

        config = config or PipelineConfig.from_env()
        radar = get_radar_loader(config) if config.imagery_client_id else None
        _fetcher = InputFetcher(
            get_index_loader(config.index_api_url),
            radar,
            get_climate_loader(config.climate_api_url),
            timeout=config.fetch_timeout_seconds,
        )
    return _fetcher
