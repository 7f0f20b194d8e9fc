"""
Prompt builders for the curator and judge agents.
"""

from typing import Any, Dict, List, Optional

from phenology.models import IndexPoint, RadarObservation, iso


def format_index_table(points: List[IndexPoint]) -> str:
    if not points:
        return "No vegetation-index data available."
    rows = [
        f"{iso(p.date)} | {p.source.value:<7} | {p.effective:.3f}"
        for p in points
        if p.effective is not None
    ]
    return "Date       | Source  | NDVI\n---------- | ------- | -----\n" + "\n".join(rows)


def format_radar_table(observations: List[RadarObservation]) -> str:
    if not observations:
        return "No radar data available."
    rows = []
    for obs in observations:
        vv = f"{obs.vv:.6f}" if obs.vv is not None else "   -    "
        vh = f"{obs.vh:.6f}" if obs.vh is not None else "   -    "
        rvi = f"{obs.value:.3f}" if obs.value is not None else "  -  "
        rows.append(f"{iso(obs.date)} | {vv} | {vh} | {rvi}")
    return "Date       | VV       | VH       | RVI\n---------- | -------- | -------- | -----\n" + "\n".join(rows)


# ═══════════════════════════════════════════════════════════════════════════
# CURATOR
# ═══════════════════════════════════════════════════════════════════════════
def build_curator_prompt(
    area_ha: float,
    images: List[str],
    index_table: str,
    radar_table: str,
    batch_index: int = 0,
    total_batches: int = 1,
) -> str:
    count = len(images)
    image_list = "\n".join(f"- {label}" for label in images)
    batch_note = (
        f"This is batch {batch_index + 1} of {total_batches}. " if total_batches > 1 else ""
    )
    return f"""You are a senior remote sensing data engineer. Evaluate the quality of the
satellite images and time series of an agricultural field and keep only what is
useful for crop analysis. You do NOT perform agronomic analysis.

## FIELD
- Area: approximately {area_ha:.2f} hectares

## SCORING (0-100 per image)
- Visual quality (0-40): clouds, haze, black or empty tiles lower the score.
- Sensor fit (0-20): Sentinel-2 20, Sentinel-1 radar 18, Landsat 15.
  Sentinel-3 (300 m) scores 10 above 500 ha, 5 between 200 and 500 ha, 0 below.
- Temporal relevance (0-20): planting, rapid growth and senescence matter most;
  a stable plateau is redundant.
- Consistency (0-20): does the image agree with the time series below?
Include an image when its score is 40 or more.

## TIME SERIES CHECKS
Flag dates where NDVI moves more than 0.15 within 5 days, NDVI is below -0.1,
or radar backscatter jumps more than 50%.

## IMAGES ({count})
{image_list}

## VEGETATION INDEX SERIES
{index_table}

## RADAR SERIES
{radar_table}

## INSTRUCTIONS
{batch_note}Return exactly {count} entries in "scores", one per image above, using the
exact date and lowercase type from the image labels.

## RESPONSE FORMAT (JSON only)
{{
  "scores": [{{"date": "YYYY-MM-DD", "type": "ndvi", "score": 0, "included": true, "reason": "..."}}],
  "timeSeriesFlags": [{{"date": "YYYY-MM-DD", "source": "S2|Landsat|Radar", "issue": "...", "recommendation": "exclude|flag|keep"}}],
  "contextSummary": "2-3 sentences for the agronomist: data quality, key dates, limitations",
  "timeSeriesCleaningSummary": "..."
}}"""


# ═══════════════════════════════════════════════════════════════════════════
# JUDGE
# ═══════════════════════════════════════════════════════════════════════════
def _or_na(value: Any, missing: str = "N/A") -> str:
    return missing if value is None else str(value)


def _gdd_section(gdd: Optional[Dict[str, Any]]) -> str:
    if not gdd:
        return "## THERMAL SUM (GDD)\nNot available"
    return (
        "## THERMAL SUM (GDD)\n"
        f"- Accumulated: {gdd.get('accumulated')} / {gdd.get('required')} ({gdd.get('progress')}%)\n"
        f"- Days to maturity: {_or_na(gdd.get('days_to_maturity'))}\n"
        f"- GDD confidence: {gdd.get('confidence', gdd.get('stress_level'))}"
    )


def _water_section(water: Optional[Dict[str, Any]]) -> str:
    if not water:
        return "## WATER BALANCE\nNot available"
    return (
        "## WATER BALANCE\n"
        f"- Accumulated deficit: {water.get('deficit_mm')} mm over {water.get('stress_days')} stress days\n"
        f"- Stress level: {water.get('stress_level')}\n"
        f"- EOS shift from stress: {water.get('days_shift')} days"
    )


def _precipitation_section(precipitation: Optional[Dict[str, Any]]) -> str:
    if not precipitation:
        return "## PRECIPITATION\nNot available"
    return (
        "## PRECIPITATION\n"
        f"- Around harvest: {precipitation.get('total_mm')} mm over {precipitation.get('rainy_days')} rainy days\n"
        f"- Grain quality risk: {precipitation.get('quality_risk')}"
    )


def _fusion_section(fusion: Optional[Dict[str, Any]]) -> str:
    if not fusion:
        return "## SENSOR FUSION\nNo fusion applied"
    return (
        "## SENSOR FUSION (series quality)\n"
        f"- Gaps filled by radar: {fusion.get('gaps_filled')}\n"
        f"- Radar contribution: {fusion.get('radar_contribution')}%\n"
        f"- Continuity score: {fusion.get('continuity_score')}"
    )


def build_judge_prompt(validation_input, curator_summary: str, images: List[str],
                       index_table: str, radar_table: str) -> str:
    v = validation_input
    peak = f"{v.peak_value:.3f}" if v.peak_value is not None else "N/A"
    eos = _or_na(iso(v.eos_date), "not projected")
    image_list = "\n".join(f"- {label}" for label in images) or "No curated images."
    return f"""You are a senior agronomist. VALIDATE the algorithmic projections below
against the curated satellite images and all system data.

## ALGORITHMIC RESULTS
- Crop: {v.crop_type}
- Planting: {_or_na(iso(v.planting_date), 'not detected')} (source: {v.planting_source})
- SOS: {_or_na(iso(v.sos_date), 'not detected')}
- Projected EOS: {eos} (method: {_or_na(v.eos_method)}, confidence: {v.confidence}%)
- Peak NDVI: {peak} on {_or_na(iso(v.peak_date))}
- Phenological health: {_or_na(v.health)}

{_gdd_section(v.gdd)}

{_water_section(v.water)}

{_precipitation_section(v.precipitation)}

{_fusion_section(v.fusion)}

## CURATOR REPORT
{curator_summary or 'No curator summary.'}

## CURATED IMAGES
{image_list}

## VEGETATION INDEX SERIES
{index_table}

## RADAR SERIES
{radar_table}

## YOUR TASK
1. Is the projected EOS ({eos}) consistent with the images?
2. Does the detected phenological stage match what is visible?
3. Are there visual risks the algorithms missed?
4. Operational recommendations.

## DECISION RULES
- CONFIRMED: visual evidence agrees with the projected EOS within 7 days and the stage matches.
- QUESTIONED: divergence between 7 and 14 days, a partially divergent stage, or moderate visual risks.
- REJECTED: divergence above 14 days or a clear visual contradiction
  (green canopy when maturity is projected, dry canopy when vegetative).
If the crop has clearly matured, eosAdjustedDate is the date of the image showing it.

## RESPONSE FORMAT (JSON only)
{{
  "algorithmicValidation": {{
    "eosAgreement": "CONFIRMED | QUESTIONED | REJECTED",
    "eosAdjustedDate": "YYYY-MM-DD or null",
    "eosAdjustmentReason": "... or null",
    "stageAgreement": true,
    "stageComment": "..."
  }},
  "visualFindings": [{{"type": "CLIMATIC|PHYTOSANITARY|OPERATIONAL", "severity": "LOW|MEDIUM|HIGH", "description": "...", "affectedArea": "..."}}],
  "harvestReadiness": {{"ready": false, "estimatedDate": "YYYY-MM-DD or null", "delayRisk": "NONE|RAIN|MOISTURE|MATURITY", "delayDays": 0, "notes": "..."}},
  "riskAssessment": {{"overallRisk": "LOW|MEDIUM|HIGH|CRITICAL", "factors": [{{"category": "CLIMATIC|PHYTOSANITARY|OPERATIONAL", "severity": "LOW|MEDIUM|HIGH", "description": "..."}}]}},
  "recommendations": ["..."],
  "confidence": 0
}}"""
