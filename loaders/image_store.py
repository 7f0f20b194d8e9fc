"""
Image Store - Incremental SQLite store of rendered satellite images.

Each parcel keeps one PNG per (date, image type, collection). A fetch only
renders the keys that are not stored yet; concurrent fetches for the same
parcel are serialized by a per-parcel lock, so two callers never render the
same image twice.
"""

import base64
import sqlite3
import threading
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Set, Tuple

from loaders.imagery import BBox, IMAGE_SPECS, ImageSpec, ImageryLoader
from phenology.errors import DataUnavailableError

log = logging.getLogger(__name__)

WINDOW_DAYS = 5
WINDOW_STEP_DAYS = 10
LANDSAT_MIN_AREA_HA = 200
S3_MIN_AREA_HA = 500
BATCH_SIZE = 5


# ═══════════════════════════════════════════════════════════════════════════
# FETCH PLANS
# ═══════════════════════════════════════════════════════════════════════════
@dataclass(frozen=True)
class FetchPlan:
    """One image to render: a type over a date window."""
    window_start: date
    window_end: date
    spec: ImageSpec

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.window_start.isoformat(), self.spec.image_type, self.spec.collection)

    @property
    def date_from(self) -> str:
        return f"{self.window_start.isoformat()}T00:00:00Z"

    @property
    def date_to(self) -> str:
        return f"{self.window_end.isoformat()}T23:59:59Z"


def periodic_windows(season_start: date, end: date) -> List[Tuple[date, date]]:
    """5-day windows starting every 10 days from season start, clipped to end."""
    windows = []
    current = season_start
    while current < end:
        windows.append((current, min(current + timedelta(days=WINDOW_DAYS), end)))
        current += timedelta(days=WINDOW_STEP_DAYS)
    return windows


def key_date_windows(dates: Iterable[Optional[date]], today: date) -> List[Tuple[date, date]]:
    """A 5-day window ending on each key date; future dates are skipped."""
    windows = set()
    for day in dates:
        if day is None or day > today:
            continue
        windows.add((day - timedelta(days=WINDOW_DAYS), day))
    return sorted(windows)


def build_fetch_plan(
    windows: List[Tuple[date, date]],
    area_ha: float,
    include_radar: bool = True,
) -> List[FetchPlan]:
    """
    Plans for every window. Larger fields add sparser coarse-resolution views:
    Landsat NDVI on every 2nd window above 200 ha, Sentinel-3 NDVI on every
    3rd window above 500 ha.
    """
    types = ["truecolor", "ndvi"] + (["radar"] if include_radar else [])
    plans = [
        FetchPlan(start, end, IMAGE_SPECS[image_type])
        for start, end in windows
        for image_type in types
    ]
    if area_ha > LANDSAT_MIN_AREA_HA:
        plans += [FetchPlan(start, end, IMAGE_SPECS["landsat-ndvi"]) for start, end in windows[::2]]
    if area_ha > S3_MIN_AREA_HA:
        plans += [FetchPlan(start, end, IMAGE_SPECS["s3-ndvi"]) for start, end in windows[::3]]

    unique: Dict[Tuple[str, str, str], FetchPlan] = {}
    for plan in plans:
        unique.setdefault(plan.key, plan)
    return list(unique.values())


# ═══════════════════════════════════════════════════════════════════════════
# STORED IMAGE
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class StoredImage:
    parcel_id: str
    image_date: str
    image_type: str
    collection: str
    png: bytes
    cloud_cover: Optional[float] = None
    created_at: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.image_date, self.image_type, self.collection)

    @property
    def base64(self) -> str:
        return base64.b64encode(self.png).decode("ascii")

    def to_dict(self) -> Dict:
        return {
            "parcel_id": self.parcel_id,
            "date": self.image_date,
            "type": self.image_type,
            "collection": self.collection,
            "cloud_cover": self.cloud_cover,
            "size_bytes": len(self.png),
            "created_at": self.created_at,
        }


# ═══════════════════════════════════════════════════════════════════════════
# IMAGE STORE
# ═══════════════════════════════════════════════════════════════════════════
class ImageStore:
    """
    Usage:
        store = ImageStore("field_images.db")
        plans = build_fetch_plan(periodic_windows(season_start, today), area_ha=350)
        images = store.fetch_missing("parcel-1", bbox, plans, imagery_loader)
    """

    DEFAULT_DB_PATH = "field_images.db"

    def __init__(self, db_path: str = None):
        self.db_path = db_path or self.DEFAULT_DB_PATH
        self._lock = threading.RLock()
        self._parcel_locks: Dict[str, threading.Lock] = {}
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        with self._lock:
            conn = self._get_connection()
            try:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS field_images (
                        parcel_id TEXT NOT NULL,
                        image_date TEXT NOT NULL,
                        image_type TEXT NOT NULL,
                        collection TEXT NOT NULL,
                        png BLOB NOT NULL,
                        cloud_cover REAL,
                        created_at TEXT NOT NULL,
                        PRIMARY KEY (parcel_id, image_date, image_type, collection)
                    )
                """)
                conn.commit()
            finally:
                conn.close()

    def _parcel_lock(self, parcel_id: str) -> threading.Lock:
        with self._lock:
            if parcel_id not in self._parcel_locks:
                self._parcel_locks[parcel_id] = threading.Lock()
            return self._parcel_locks[parcel_id]

    def _row_to_image(self, row: sqlite3.Row) -> StoredImage:
        return StoredImage(
            parcel_id=row["parcel_id"],
            image_date=row["image_date"],
            image_type=row["image_type"],
            collection=row["collection"],
            png=bytes(row["png"]),
            cloud_cover=row["cloud_cover"],
            created_at=row["created_at"],
        )

    def save(self, image: StoredImage):
        created_at = image.created_at or datetime.now().isoformat()
        with self._lock:
            conn = self._get_connection()
            try:
                conn.execute("""
                    INSERT OR REPLACE INTO field_images
                    (parcel_id, image_date, image_type, collection, png, cloud_cover, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """, (image.parcel_id, image.image_date, image.image_type, image.collection,
                      sqlite3.Binary(image.png), image.cloud_cover, created_at))
                conn.commit()
            finally:
                conn.close()

    def get_images(self, parcel_id: str) -> List[StoredImage]:
        """All stored images of a parcel, oldest first."""
        with self._lock:
            conn = self._get_connection()
            try:
                rows = conn.execute("""
                    SELECT * FROM field_images WHERE parcel_id = ?
                    ORDER BY image_date, image_type
                """, (parcel_id,)).fetchall()
                return [self._row_to_image(row) for row in rows]
            finally:
                conn.close()

    def existing_keys(self, parcel_id: str) -> Set[Tuple[str, str, str]]:
        with self._lock:
            conn = self._get_connection()
            try:
                rows = conn.execute("""
                    SELECT image_date, image_type, collection FROM field_images WHERE parcel_id = ?
                """, (parcel_id,)).fetchall()
                return {(r["image_date"], r["image_type"], r["collection"]) for r in rows}
            finally:
                conn.close()

    def fetch_missing(
        self,
        parcel_id: str,
        bbox: BBox,
        plans: List[FetchPlan],
        imagery: ImageryLoader,
        batch_size: int = BATCH_SIZE,
        image_size: int = 512,
        cancel: threading.Event = None,
    ) -> List[StoredImage]:
        """
        Render and store the planned images that are not stored yet.

        Returns the stored images covered by the plans (old and new).
        Individual render failures are logged and skipped; a set cancel event
        stops before the next batch.
        """
        wanted = {plan.key for plan in plans}
        with self._parcel_lock(parcel_id):
            existing = self.existing_keys(parcel_id)
            missing = [plan for plan in plans if plan.key not in existing]
            if missing:
                log.info(f"Fetching {len(missing)} new images for {parcel_id} "
                         f"({len(plans) - len(missing)} already stored)")
            fetched = 0
            for i in range(0, len(missing), batch_size):
                if cancel is not None and cancel.is_set():
                    log.info(f"Image fetch for {parcel_id} cancelled")
                    break
                batch = missing[i:i + batch_size]
                with ThreadPoolExecutor(max_workers=batch_size) as executor:
                    futures = {
                        executor.submit(self._render, parcel_id, bbox, plan, imagery, image_size): plan
                        for plan in batch
                    }
                    for future in as_completed(futures):
                        plan = futures[future]
                        try:
                            image = future.result()
                        except DataUnavailableError as e:
                            log.warning(f"Image {plan.spec.image_type} {plan.window_start} failed: {e}")
                            continue
                        if image is not None:
                            self.save(image)
                            fetched += 1
            if missing:
                log.info(f"Stored {fetched}/{len(missing)} new images for {parcel_id}")

        return [img for img in self.get_images(parcel_id) if img.key in wanted]

    def _render(
        self, parcel_id: str, bbox: BBox, plan: FetchPlan, imagery: ImageryLoader, image_size: int
    ) -> Optional[StoredImage]:
        png = imagery.render(bbox, plan.date_from, plan.date_to, plan.spec, size=image_size)
        if not png:
            return None
        return StoredImage(
            parcel_id=parcel_id,
            image_date=plan.window_start.isoformat(),
            image_type=plan.spec.image_type,
            collection=plan.spec.collection,
            png=png,
            cloud_cover=imagery.cloud_cover(bbox, plan.date_from, plan.date_to, plan.spec.collection),
        )


# Singleton
_store: Optional[ImageStore] = None

def get_image_store(db_path: str = None) -> ImageStore:
    """Get singleton image store."""
    global _store
    if _store is None:
        _store = ImageStore(db_path)
    return _store
