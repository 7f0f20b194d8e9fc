"""
Radar Loader - Sentinel-1 VV/VH backscatter series for a parcel.

Daily mean linear backscatter comes from the Statistical API; RVI is derived
from it downstream (RVI = 4·VH / (VV + VH)).
"""

import logging
from datetime import date, datetime, time as dtime
from typing import Any, List, Optional

import requests

from loaders.geometry import GeoJSON, extract_polygon
from loaders.imagery import CRS_WGS84, ImageryLoader
from phenology.errors import DataUnavailableError
from phenology.models import RadarObservation, finite_float, parse_date

log = logging.getLogger(__name__)

EVALSCRIPT_BACKSCATTER = """//VERSION=3
function setup() {
  return {
    input: [{ bands: ["VV", "VH", "dataMask"], units: "LINEAR_POWER" }],
    output: [
      { id: "vv_linear", bands: 1, sampleType: "FLOAT32" },
      { id: "vh_linear", bands: 1, sampleType: "FLOAT32" },
      { id: "dataMask", bands: 1, sampleType: "UINT8" }
    ]
  };
}
function evaluatePixel(sample) {
  return { vv_linear: [sample.VV], vh_linear: [sample.VH], dataMask: [sample.dataMask] };
}"""


def _band_mean(outputs: dict, name: str) -> Optional[float]:
    stats = ((outputs.get(name) or {}).get("bands") or {}).get("B0", {}).get("stats") or {}
    return finite_float(stats.get("mean"))


def parse_statistics(payload: Any) -> List[RadarObservation]:
    """Radar observations from a Statistical API response (one interval per day)."""
    observations = []
    for interval in (payload or {}).get("data") or []:
        try:
            day = parse_date((interval.get("interval") or {}).get("from"))
        except ValueError:
            continue
        if day is None:
            continue
        outputs = interval.get("outputs") or {}
        vv = _band_mean(outputs, "vv_linear")
        vh = _band_mean(outputs, "vh_linear")
        if vv is None or vh is None or vv <= 0 or vh <= 0:
            continue
        observations.append(RadarObservation(date=day, vv=vv, vh=vh))
    return sorted(observations, key=lambda o: o.date)


class RadarLoader:
    """
    Usage:
        loader = RadarLoader(imagery_loader)
        radar = loader.fetch_series(geojson, date(2025, 9, 1), date(2026, 2, 10))
    """

    def __init__(self, imagery: ImageryLoader):
        self.imagery = imagery

    def fetch_series(self, geometry: GeoJSON, start: date, end: date) -> List[RadarObservation]:
        """
        Raises:
            DataUnavailableError: no polygon, no credentials, or the API failed
        """
        polygon = extract_polygon(geometry)
        if polygon is None:
            raise DataUnavailableError("radar", "parcel geometry has no polygon")

        time_range = {
            "from": datetime.combine(start, dtime.min).isoformat() + "Z",
            "to": datetime.combine(end, dtime.max.replace(microsecond=0)).isoformat() + "Z",
        }
        body = {
            "input": {
                "bounds": {"geometry": polygon, "properties": {"crs": CRS_WGS84}},
                "data": [{
                    "type": "sentinel-1-grd",
                    "dataFilter": {"timeRange": time_range, "mosaickingOrder": "mostRecent", "polarization": "DV"},
                    "processing": {"backCoeff": "GAMMA0_TERRAIN", "orthorectify": True},
                }],
            },
            "aggregation": {
                "timeRange": time_range,
                "aggregationInterval": {"of": "P1D"},
                "evalscript": EVALSCRIPT_BACKSCATTER,
                "width": 100,
                "height": 100,
            },
            "calculations": {"default": {}},
        }
        try:
            response = self.imagery.post("/api/v1/statistics", body, timeout=120)
            payload = response.json()
        except (requests.RequestException, ValueError) as e:
            log.warning(f"Radar statistics request failed: {e}")
            raise DataUnavailableError("radar", str(e)) from e

        observations = parse_statistics(payload)
        log.info(f"Fetched {len(observations)} radar acquisitions ({start} to {end})")
        return observations


# Singleton
_loader: Optional[RadarLoader] = None

def get_radar_loader(config=None) -> RadarLoader:
    """Get singleton radar loader (shares the imagery OAuth session)."""
    global _loader
    if _loader is None:
        from loaders.imagery import get_imagery_loader
        _loader = RadarLoader(get_imagery_loader(config))
    return _loader
