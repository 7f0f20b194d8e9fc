"""
Curator Agent - Scores satellite images and keeps the useful ones.

Images go to the model in batches so every one of them gets a score. A batch
whose reply cannot be parsed is kept whole at score 50, and images the model
did not score are kept at score 50 too.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List

from validation.llm import ChatClient, parse_json_reply
from validation.models import CurationReport, ImageEntry, ImageScore
from validation.pricing import TokenUsage
from validation.prompts import build_curator_prompt

log = logging.getLogger(__name__)

DEFAULT_SCORE = 50
INCLUDE_THRESHOLD = 40


@dataclass
class CuratorOutput:
    report: CurationReport
    curated_images: List[ImageEntry]
    usage: TokenUsage


def _score_key(date: str, image_type: str) -> str:
    return f"{str(date).strip().lower()}-{str(image_type).strip().lower()}"


class Curator:
    """
    Usage:
        curator = Curator(ChatClient(api_key), model="gpt-4o-mini")
        output = curator.run(images, index_table, radar_table, area_ha=120.0)
    """

    def __init__(self, client: ChatClient, model: str = "gpt-4o-mini", batch_size: int = 20):
        self.client = client
        self.model = model
        self.batch_size = batch_size

    def _run_batch(self, batch: List[ImageEntry], index: int, total: int,
                   index_table: str, radar_table: str, area_ha: float):
        prompt = build_curator_prompt(
            area_ha,
            [img.label for img in batch],
            index_table,
            radar_table,
            batch_index=index,
            total_batches=total,
        )
        reply = self.client.complete(
            self.model, prompt, images=[(f"{img.date} - {img.image_type}", img.base64) for img in batch]
        )
        try:
            parsed = parse_json_reply(reply.text)
            if not isinstance(parsed, dict):
                raise ValueError("reply is not a JSON object")
        except ValueError:
            log.warning(f"Curator batch {index + 1}/{total}: unparsable reply, keeping all images")
            parsed = {
                "scores": [
                    {"date": img.date, "type": img.image_type, "score": DEFAULT_SCORE, "included": True,
                     "reason": "Curator reply could not be parsed, included by default"}
                    for img in batch
                ],
                "contextSummary": "Curator reply for this batch could not be parsed.",
            }
        scored = len(parsed.get("scores") or [])
        if scored < len(batch):
            log.warning(f"Curator batch {index + 1}/{total}: model scored {scored}/{len(batch)} images")
        return parsed, reply.usage

    def run(self, images: List[ImageEntry], index_table: str, radar_table: str, area_ha: float) -> CuratorOutput:
        """
        Raises:
            AIServiceError: the model stayed unavailable through every retry
        """
        batches = [images[i:i + self.batch_size] for i in range(0, len(images), self.batch_size)]
        usage = TokenUsage(model=self.model)
        raw_scores: Dict[str, dict] = {}
        flags: List[dict] = []
        summaries: List[str] = []
        cleaning: List[str] = []

        for index, batch in enumerate(batches):
            parsed, batch_usage = self._run_batch(batch, index, len(batches), index_table, radar_table, area_ha)
            usage = usage + batch_usage
            for entry in parsed.get("scores") or []:
                if isinstance(entry, dict) and entry.get("date") and entry.get("type"):
                    raw_scores[_score_key(entry["date"], entry["type"])] = entry
            flags.extend(f for f in parsed.get("timeSeriesFlags") or [] if isinstance(f, dict))
            if parsed.get("contextSummary"):
                summaries.append(str(parsed["contextSummary"]))
            if parsed.get("timeSeriesCleaningSummary"):
                cleaning.append(str(parsed["timeSeriesCleaningSummary"]))

        scores: List[ImageScore] = []
        curated: List[ImageEntry] = []
        for img in images:
            entry = raw_scores.get(img.key)
            if entry is None:
                score = ImageScore(img.date, img.image_type, DEFAULT_SCORE, True,
                                   "Not scored by the curator, included by default")
            else:
                value = float(entry.get("score", DEFAULT_SCORE) or 0)
                included = entry.get("included")
                if included is None:
                    included = value >= INCLUDE_THRESHOLD
                score = ImageScore(img.date, img.image_type, value, bool(included), str(entry.get("reason", "")))
            scores.append(score)
            if score.included:
                curated.append(img)

        report = CurationReport(
            scores=scores,
            time_series_flags=flags,
            context_summary=" ".join(summaries),
            cleaning_summary=" ".join(cleaning),
            total_images=len(images),
        )
        log.info(f"Curator kept {len(curated)}/{len(images)} images "
                 f"({usage.input_tokens} in / {usage.output_tokens} out tokens)")
        return CuratorOutput(report=report, curated_images=curated, usage=usage)
