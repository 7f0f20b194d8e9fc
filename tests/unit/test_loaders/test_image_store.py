import pytest
import threading
from datetime import date
from unittest.mock import MagicMock

from loaders.image_store import (
    ImageStore,
    StoredImage,
    build_fetch_plan,
    key_date_windows,
    periodic_windows,
)
from phenology.errors import DataUnavailableError

BBOX = (-47.9, -15.8, -47.8, -15.7)


@pytest.fixture
def image_store(tmp_path):
    return ImageStore(db_path=str(tmp_path / "test_images.db"))


@pytest.fixture
def imagery():
    loader = MagicMock()
    loader.render.return_value = b"png-bytes"
    loader.cloud_cover.return_value = 12.0
    return loader


def test_periodic_windows():
    """Verify 5-day windows every 10 days, clipped to the end date."""
    windows = periodic_windows(date(2025, 9, 1), date(2025, 9, 23))
    assert windows == [
        (date(2025, 9, 1), date(2025, 9, 6)),
        (date(2025, 9, 11), date(2025, 9, 16)),
        (date(2025, 9, 21), date(2025, 9, 23)),
    ]


def test_key_date_windows_skip_future():
    windows = key_date_windows([date(2025, 10, 5), None, date(2025, 10, 5), date(2026, 3, 1)], date(2026, 1, 1))
    assert windows == [(date(2025, 9, 30), date(2025, 10, 5))]


def test_fetch_plan_by_area():
    """Verify coarse-resolution views are added only for large fields."""
    windows = periodic_windows(date(2025, 9, 1), date(2025, 11, 1))
    assert len(windows) == 7

    small = build_fetch_plan(windows, area_ha=100)
    assert {p.spec.image_type for p in small} == {"truecolor", "ndvi", "radar"}
    assert len(small) == 21

    large = build_fetch_plan(windows, area_ha=600)
    types = [p.spec.image_type for p in large]
    assert types.count("landsat-ndvi") == 4
    assert types.count("s3-ndvi") == 3


def test_fetch_plan_deduplicates():
    window = (date(2025, 9, 1), date(2025, 9, 6))
    plans = build_fetch_plan([window, window], area_ha=50, include_radar=False)
    assert len(plans) == 2


def test_save_and_get_images(image_store):
    image_store.save(StoredImage("p1", "2025-10-01", "ndvi", "sentinel-2-l2a", b"abc", 5.0))
    images = image_store.get_images("p1")
    assert len(images) == 1
    assert images[0].png == b"abc"
    assert images[0].base64 == "YWJj"
    assert images[0].created_at is not None


def test_second_fetch_only_requests_missing(image_store, imagery):
    """Verify images already stored are never rendered again."""
    windows = periodic_windows(date(2025, 9, 1), date(2025, 9, 20))
    plans = build_fetch_plan(windows, area_ha=100)

    first = image_store.fetch_missing("p1", BBOX, plans, imagery)
    assert len(first) == len(plans) == 6
    assert imagery.render.call_count == 6

    more = build_fetch_plan(periodic_windows(date(2025, 9, 1), date(2025, 10, 1)), area_ha=100)
    second = image_store.fetch_missing("p1", BBOX, more, imagery)
    assert len(second) == 9
    assert imagery.render.call_count == 9


def test_render_failures_are_skipped(image_store, imagery):
    windows = periodic_windows(date(2025, 9, 1), date(2025, 9, 10))
    plans = build_fetch_plan(windows, area_ha=100)

    def render(bbox, date_from, date_to, spec, size=512):
        if spec.image_type == "radar":
            raise DataUnavailableError("imagery", "no acquisition")
        return b"png"

    imagery.render.side_effect = render
    images = image_store.fetch_missing("p1", BBOX, plans, imagery)
    assert sorted(img.image_type for img in images) == ["ndvi", "truecolor"]


def test_cancel_stops_before_next_batch(image_store, imagery):
    plans = build_fetch_plan(periodic_windows(date(2025, 9, 1), date(2025, 10, 1)), area_ha=100)
    cancel = threading.Event()
    cancel.set()

    images = image_store.fetch_missing("p1", BBOX, plans, imagery, cancel=cancel)
    assert images == []
    imagery.render.assert_not_called()
