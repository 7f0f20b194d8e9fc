import pytest
import requests
from datetime import date
from unittest.mock import MagicMock, patch

from loaders.geometry import bbox_from_geojson, centroid, ensure_feature_collection, extract_records
from loaders.index_series import IndexSeriesLoader, parse_index_payload
from phenology.errors import DataUnavailableError

POLYGON = {
    "type": "Polygon",
    "coordinates": [[[-47.9, -15.8], [-47.8, -15.8], [-47.8, -15.7], [-47.9, -15.7], [-47.9, -15.8]]],
}


@pytest.fixture
def mock_loader():
    with patch('requests.Session') as mock_session:
        loader = IndexSeriesLoader(base_url="http://api.test")
        loader.session = mock_session.return_value
        yield loader


def test_parse_parcel_keyed_payload():
    """Verify records under a per-parcel key are parsed into observations."""
    payload = {"talhao_0": [
        {"data": "2025-10-01", "ndvi_raw": 0.31, "ndvi_interp": 0.32, "ndvi_smooth": 0.33},
        {"data": "2025-10-06T00:00:00Z", "ndvi_raw": 0.41},
        {"data": "not a date", "ndvi_raw": 0.5},
        {"data": "2025-10-11"},
    ]}
    observations = parse_index_payload(payload)
    assert [o.date for o in observations] == [date(2025, 10, 1), date(2025, 10, 6)]
    assert observations[0].smoothed == 0.33


def test_parse_flat_list_payload():
    payload = [{"date": "2025-10-01", "ndvi": 0.5, "cloud_cover": 12.0}]
    observations = parse_index_payload(payload)
    assert observations[0].raw == 0.5
    assert observations[0].cloud_cover == 12.0


def test_fetch_series_success(mock_loader):
    """Verify the parcel is uploaded as a GeoJSON file."""
    mock_response = MagicMock()
    mock_response.json.return_value = {"points": [{"date": "2025-10-01", "ndvi": 0.3}]}
    mock_loader.session.post.return_value = mock_response

    observations = mock_loader.fetch_series(POLYGON, date(2025, 9, 1), date(2025, 10, 31))

    assert len(observations) == 1
    args, kwargs = mock_loader.session.post.call_args
    assert args[0] == "http://api.test/consulta-ndvi"
    assert kwargs["data"] == {"start_date": "2025-09-01", "end_date": "2025-10-31"}
    assert "arquivo" in kwargs["files"]


def test_fetch_series_empty_is_unavailable(mock_loader):
    mock_response = MagicMock()
    mock_response.json.return_value = {"points": []}
    mock_loader.session.post.return_value = mock_response

    with pytest.raises(DataUnavailableError):
        mock_loader.fetch_series(POLYGON, date(2025, 9, 1), date(2025, 10, 31))


def test_fetch_series_retries_then_raises(mock_loader):
    """Verify connection errors are retried and then reported as unavailable."""
    mock_loader.session.post.side_effect = requests.ConnectionError("down")

    with patch("time.sleep"), pytest.raises(DataUnavailableError):
        mock_loader.fetch_series(POLYGON, date(2025, 9, 1), date(2025, 10, 31))
    assert mock_loader.session.post.call_count == 3


def test_fetch_historical_skips_failed_seasons(mock_loader):
    """Verify one missing prior season does not lose the others."""
    good = MagicMock()
    good.json.return_value = {"points": [{"date": "2024-10-01", "ndvi": 0.3}]}
    empty = MagicMock()
    empty.json.return_value = {"points": []}
    mock_loader.session.post.side_effect = [good, empty, good]

    seasons = mock_loader.fetch_historical(POLYGON, date(2025, 9, 1), date(2026, 1, 15), years=3)
    assert len(seasons) == 2
    first_fields = mock_loader.session.post.call_args_list[0][1]["data"]
    assert first_fields["start_date"] == "2024-09-01"


def test_geometry_helpers():
    collection = ensure_feature_collection(POLYGON)
    assert collection["type"] == "FeatureCollection"
    assert bbox_from_geojson(collection) == (-47.9, -15.8, -47.8, -15.7)
    lat, lon = centroid(POLYGON)
    assert lat == pytest.approx(-15.76)
    assert bbox_from_geojson({"type": "Point", "coordinates": [0, 0]}) is None
    assert extract_records({"balanco": [{"a": 1}]}) == [{"a": 1}]
