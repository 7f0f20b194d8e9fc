"""
Judge Agent - Compares the algorithmic projection with the curated imagery.

An unparsable reply is not an error: it becomes a QUESTIONED verdict with
confidence 0 so the caller still gets a structured answer.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List

from validation.llm import ChatClient, parse_json_reply
from validation.models import Agreement, ImageEntry
from validation.pricing import TokenUsage
from validation.prompts import build_judge_prompt

log = logging.getLogger(__name__)


@dataclass
class JudgeOutput:
    analysis: Dict[str, Any]
    usage: TokenUsage


def fallback_analysis() -> Dict[str, Any]:
    return {
        "algorithmicValidation": {
            "eosAgreement": Agreement.QUESTIONED,
            "eosAdjustedDate": None,
            "eosAdjustmentReason": "Could not parse judge response",
            "stageAgreement": False,
            "stageComment": "Judge response parsing failed",
        },
        "visualFindings": [],
        "harvestReadiness": {"ready": False, "estimatedDate": None, "delayRisk": "NONE", "delayDays": 0, "notes": ""},
        "riskAssessment": {
            "overallRisk": "MEDIUM",
            "factors": [{"category": "OPERATIONAL", "severity": "MEDIUM",
                         "description": "Unable to assess, judge reply could not be parsed"}],
        },
        "recommendations": ["Rerun AI validation, the previous reply could not be parsed"],
        "confidence": 0,
    }


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


class Judge:
    """
    Usage:
        judge = Judge(ChatClient(api_key), model="gpt-4o")
        output = judge.run(validation_input, curated_images, curator_summary, index_table, radar_table)
    """

    def __init__(self, client: ChatClient, model: str = "gpt-4o"):
        self.client = client
        self.model = model

    def run(self, validation_input, curated_images: List[ImageEntry], curator_summary: str,
            index_table: str, radar_table: str) -> JudgeOutput:
        """
        Raises:
            AIServiceError: the model stayed unavailable through every retry
        """
        prompt = build_judge_prompt(
            validation_input, curator_summary, [img.label for img in curated_images], index_table, radar_table
        )
        log.info(f"Judge reviewing {len(curated_images)} curated images with {self.model}")
        reply = self.client.complete(
            self.model, prompt, images=[(f"{img.date} - {img.image_type}", img.base64) for img in curated_images]
        )

        try:
            parsed = parse_json_reply(reply.text)
            if not isinstance(parsed, dict):
                raise ValueError("reply is not a JSON object")
        except ValueError:
            log.warning("Judge reply could not be parsed, returning QUESTIONED fallback")
            return JudgeOutput(analysis=fallback_analysis(), usage=reply.usage)

        validation = _as_dict(parsed.get("algorithmicValidation"))
        agreement = str(validation.get("eosAgreement") or "").strip().upper()
        confidence = parsed.get("confidence")
        analysis = {
            "algorithmicValidation": {
                "eosAgreement": agreement if agreement in Agreement.ALL else Agreement.QUESTIONED,
                "eosAdjustedDate": validation.get("eosAdjustedDate"),
                "eosAdjustmentReason": validation.get("eosAdjustmentReason"),
                "stageAgreement": bool(validation.get("stageAgreement", False)),
                "stageComment": validation.get("stageComment") or "",
            },
            "visualFindings": _as_list(parsed.get("visualFindings")),
            "harvestReadiness": _as_dict(parsed.get("harvestReadiness")),
            "riskAssessment": _as_dict(parsed.get("riskAssessment")),
            "recommendations": [str(r) for r in _as_list(parsed.get("recommendations"))
                                if isinstance(r, (str, int, float))],
            "confidence": confidence if isinstance(confidence, (int, float)) else 0,
        }
        log.info(f"Judge verdict {analysis['algorithmicValidation']['eosAgreement']} "
                 f"(confidence {analysis['confidence']}%)")
        return JudgeOutput(analysis=analysis, usage=reply.usage)
