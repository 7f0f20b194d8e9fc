import json
from unittest.mock import MagicMock

from validation.curator import Curator
from validation.llm import ChatReply
from validation.models import ImageEntry
from validation.pricing import TokenUsage


def _images():
    return [
        ImageEntry("2025-12-01", "ndvi", "sentinel-2-l2a", "AAAA", 3.0),
        ImageEntry("2025-12-01", "truecolor", "sentinel-2-l2a", "BBBB", 3.0),
        ImageEntry("2025-12-11", "radar", "sentinel-1-grd", "CCCC"),
    ]


def _client(*texts):
    client = MagicMock()
    client.complete.side_effect = [
        ChatReply(text=text, usage=TokenUsage("gpt-4o-mini", 500, 100)) for text in texts
    ]
    return client


def test_scores_and_filters():
    """Verify low scores are excluded and unscored images kept at 50."""
    reply = json.dumps({
        "scores": [
            {"date": "2025-12-01", "type": "NDVI", "score": 90, "included": True, "reason": "clear"},
            {"date": "2025-12-01", "type": "truecolor", "score": 20, "reason": "cloudy"},
        ],
        "timeSeriesFlags": [{"date": "2025-11-20", "issue": "cloud dip"}],
        "contextSummary": "Healthy canopy",
    })
    output = Curator(_client(reply)).run(_images(), "table", "radar", area_ha=120.0)

    by_type = {s.image_type: s for s in output.report.scores}
    assert by_type["ndvi"].score == 90
    assert not by_type["truecolor"].included
    assert by_type["radar"].score == 50
    assert by_type["radar"].included
    assert [img.image_type for img in output.curated_images] == ["ndvi", "radar"]
    assert output.report.context_summary == "Healthy canopy"
    assert len(output.report.time_series_flags) == 1
    assert output.usage.input_tokens == 500


def test_unparsable_reply_keeps_batch():
    output = Curator(_client("I cannot help with that")).run(_images(), "table", "radar", area_ha=120.0)

    assert len(output.curated_images) == 3
    assert all(s.score == 50 and s.included for s in output.report.scores)


def test_batches_accumulate_usage():
    """Verify every batch is sent and token usage is summed."""
    client = _client('{"scores": []}', '{"scores": []}')
    output = Curator(client, batch_size=2).run(_images(), "table", "radar", area_ha=120.0)

    assert client.complete.call_count == 2
    assert output.usage.input_tokens == 1000
    assert output.report.total_images == 3
