"""
Imagery Loader - Rendered satellite images from the Copernicus Data Space.

Uses the Sentinel Hub Process API with OAuth2 client credentials. Tokens
are cached until shortly before they expire.

Image types:
- truecolor: Sentinel-2 L2A RGB, clouds faded out
- ndvi: Sentinel-2 L2A NDVI color ramp
- radar: Sentinel-1 GRD VV/VH composite
- landsat-ndvi: Landsat 8/9 NDVI color ramp
- s3-ndvi: Sentinel-3 OLCI NDVI color ramp
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from phenology.errors import DataUnavailableError

log = logging.getLogger(__name__)

CRS_WGS84 = "http://www.opengis.net/def/crs/EPSG/0/4326"
TOKEN_EXPIRY_MARGIN_SECONDS = 300

BBox = Tuple[float, float, float, float]

_NDVI_RAMP = """
  var r, g, b;
  if (ndvi < -0.2) { r=0.05; g=0.05; b=0.5; }
  else if (ndvi < 0.0) { r=0.75; g=0.15; b=0.15; }
  else if (ndvi < 0.1) { r=0.9; g=0.3; b=0.1; }
  else if (ndvi < 0.2) { r=1.0; g=0.5; b=0.0; }
  else if (ndvi < 0.3) { r=1.0; g=0.8; b=0.0; }
  else if (ndvi < 0.4) { r=0.8; g=0.9; b=0.1; }
  else if (ndvi < 0.5) { r=0.5; g=0.8; b=0.1; }
  else if (ndvi < 0.6) { r=0.2; g=0.7; b=0.1; }
  else if (ndvi < 0.7) { r=0.1; g=0.6; b=0.05; }
  else { r=0.0; g=0.5; b=0.0; }
"""

EVALSCRIPT_TRUE_COLOR = """//VERSION=3
function setup() {
  return { input: ["B02", "B03", "B04", "SCL", "dataMask"], output: { bands: 4 } };
}
function evaluatePixel(sample) {
  var scl = sample.SCL;
  var isCloud = (scl === 3 || scl === 8 || scl === 9 || scl === 10 || scl === 11);
  var alpha = sample.dataMask * (isCloud ? 0.15 : 1.0);
  return [2.5 * sample.B04, 2.5 * sample.B03, 2.5 * sample.B02, alpha];
}"""

EVALSCRIPT_NDVI = """//VERSION=3
function setup() {
  return { input: ["B04", "B08", "SCL", "dataMask"], output: { bands: 4 } };
}
function evaluatePixel(sample) {
  var scl = sample.SCL;
  var isCloud = (scl === 3 || scl === 8 || scl === 9 || scl === 10 || scl === 11);
  var alpha = sample.dataMask * (isCloud ? 0.15 : 1.0);
  var ndvi = (sample.B08 - sample.B04) / (sample.B08 + sample.B04);
""" + _NDVI_RAMP + """
  return [r, g, b, alpha];
}"""

EVALSCRIPT_RADAR = """//VERSION=3
function setup() {
  return { input: ["VV", "VH"], output: { bands: 3 } };
}
function evaluatePixel(sample) {
  let vv = Math.sqrt(sample.VV);
  let vh = Math.sqrt(sample.VH);
  let ratio = sample.VH > 0 ? Math.sqrt(sample.VV / sample.VH) : 0;
  return [Math.min(1, vv * 3.0), Math.min(1, vh * 5.0), Math.min(1, ratio * 0.5)];
}"""

EVALSCRIPT_LANDSAT_NDVI = """//VERSION=3
function setup() {
  return { input: ["B04", "B05", "BQA", "dataMask"], output: { bands: 4 } };
}
function evaluatePixel(sample) {
  var bqa = sample.BQA;
  var isCloud = ((bqa >> 4) & 1) === 1 || ((bqa >> 5) & 1) === 1;
  var alpha = sample.dataMask * (isCloud ? 0.15 : 1.0);
  var ndvi = (sample.B05 - sample.B04) / (sample.B05 + sample.B04);
""" + _NDVI_RAMP + """
  return [r, g, b, alpha];
}"""

EVALSCRIPT_S3_NDVI = """//VERSION=3
function setup() {
  return { input: ["B08", "B17", "dataMask"], output: { bands: 4 } };
}
function evaluatePixel(sample) {
  var ndvi = (sample.B17 - sample.B08) / (sample.B17 + sample.B08);
""" + _NDVI_RAMP + """
  return [r, g, b, sample.dataMask];
}"""


@dataclass(frozen=True)
class ImageSpec:
    """How one image type is rendered."""
    image_type: str
    collection: str
    evalscript: str


IMAGE_SPECS: Dict[str, ImageSpec] = {
    "truecolor": ImageSpec("truecolor", "sentinel-2-l2a", EVALSCRIPT_TRUE_COLOR),
    "ndvi": ImageSpec("ndvi", "sentinel-2-l2a", EVALSCRIPT_NDVI),
    "radar": ImageSpec("radar", "sentinel-1-grd", EVALSCRIPT_RADAR),
    "landsat-ndvi": ImageSpec("landsat-ndvi", "landsat-ot-l1", EVALSCRIPT_LANDSAT_NDVI),
    "s3-ndvi": ImageSpec("s3-ndvi", "sentinel-3-olci", EVALSCRIPT_S3_NDVI),
}


# ═══════════════════════════════════════════════════════════════════════════
# AUTH
# ═══════════════════════════════════════════════════════════════════════════
class CopernicusAuth:
    """OAuth2 client-credentials token, cached and refreshed under a lock."""

    def __init__(self, token_url: str, client_id: Optional[str], client_secret: Optional[str],
                 session: requests.Session = None):
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.session = session or requests.Session()
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._lock = threading.Lock()

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def get_token(self) -> str:
        """
        Raises:
            DataUnavailableError: credentials missing or token request failed
        """
        if not self.configured:
            raise DataUnavailableError("imagery", "Copernicus credentials are not configured")
        with self._lock:
            if self._token and time.time() < self._expires_at:
                return self._token
            try:
                response = self.session.post(
                    self.token_url,
                    data={
                        "grant_type": "client_credentials",
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                    },
                    timeout=30,
                )
                response.raise_for_status()
                data = response.json()
            except (requests.RequestException, ValueError) as e:
                log.error(f"Copernicus token request failed: {e}")
                raise DataUnavailableError("imagery", f"token request failed: {e}") from e

            expires_in = data.get("expires_in") or TOKEN_EXPIRY_MARGIN_SECONDS
            self._token = data["access_token"]
            self._expires_at = time.time() + max(0, expires_in - TOKEN_EXPIRY_MARGIN_SECONDS)
            log.debug("Copernicus access token refreshed")
            return self._token


# ═══════════════════════════════════════════════════════════════════════════
# PROCESS API
# ═══════════════════════════════════════════════════════════════════════════
class ImageryLoader:
    """
    Usage:
        loader = ImageryLoader(auth)
        png = loader.render(bbox, "2025-12-01T00:00:00Z", "2025-12-06T23:59:59Z", IMAGE_SPECS["ndvi"])
    """

    def __init__(self, auth: CopernicusAuth, api_url: str = "https://sh.dataspace.copernicus.eu",
                 timeout: float = 60.0):
        self.auth = auth
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()

    @retry(
        retry=retry_if_exception_type(requests.RequestException),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        reraise=True,
    )
    def post(self, path: str, body: Dict, accept: str = "application/json", timeout: float = None):
        response = self.session.post(
            f"{self.api_url}{path}",
            json=body,
            headers={"Authorization": f"Bearer {self.auth.get_token()}", "Accept": accept},
            timeout=timeout or self.timeout,
        )
        response.raise_for_status()
        return response

    def render(self, bbox: BBox, date_from: str, date_to: str, spec: ImageSpec, size: int = 512) -> bytes:
        """
        PNG bytes of one image type over a time window (most recent mosaic).

        Raises:
            DataUnavailableError: the API failed after retries
        """
        data_filter = {"timeRange": {"from": date_from, "to": date_to}}
        if "sentinel-2" in spec.collection or "landsat" in spec.collection:
            data_filter["maxCloudCoverage"] = 100
        body = {
            "input": {
                "bounds": {"bbox": list(bbox), "properties": {"crs": CRS_WGS84}},
                "data": [{"type": spec.collection, "dataFilter": data_filter}],
            },
            "output": {
                "width": size,
                "height": size,
                "responses": [{"identifier": "default", "format": {"type": "image/png"}}],
            },
            "evalscript": spec.evalscript,
        }
        try:
            response = self.post("/api/v1/process", body, accept="image/png")
        except requests.RequestException as e:
            log.error(f"Render {spec.image_type} {date_from[:10]} failed: {e}")
            raise DataUnavailableError("imagery", str(e)) from e
        return response.content

    def cloud_cover(self, bbox: BBox, date_from: str, date_to: str, collection: str) -> Optional[float]:
        """Lowest scene cloud cover (%) in the window; None for radar or when unknown."""
        if "sentinel-1" in collection:
            return None
        body = {
            "bbox": list(bbox),
            "datetime": f"{date_from}/{date_to}",
            "collections": [collection],
            "limit": 5,
            "fields": {"include": ["properties.eo:cloud_cover", "properties.datetime"]},
        }
        try:
            data = self.post("/api/v1/catalog/1.0.0/search", body, timeout=15).json()
        except (requests.RequestException, ValueError, DataUnavailableError) as e:
            log.debug(f"Catalog search failed: {e}")
            return None
        values = [
            f.get("properties", {}).get("eo:cloud_cover")
            for f in data.get("features") or []
        ]
        values = [v for v in values if v is not None]
        return round(min(values), 1) if values else None


# Singleton
_loader: Optional[ImageryLoader] = None

def get_imagery_loader(config=None) -> ImageryLoader:
    """Get singleton imagery loader (built from a PipelineConfig on first use)."""
    global _loader
    if _loader is None:
        from phenology.config import PipelineConfig
        config = config or PipelineConfig.from_env()
        auth = CopernicusAuth(config.imagery_token_url, config.imagery_client_id, config.imagery_client_secret)
        _loader = ImageryLoader(auth, config.imagery_api_url, config.fetch_timeout_seconds)
    return _loader
