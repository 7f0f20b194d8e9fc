"""
AI visual validation for crop-cycle results.

Includes:
- Curator agent (image scoring and selection)
- Judge agent (verdict against the algorithmic projection)
- Token pricing and cost reports
- Orchestrator with retries, timeout and degraded fallback
"""

from validation.models import AIValidationInput, AIValidationResult, Agreement, CurationReport, ImageEntry
from validation.pricing import MODEL_PRICING, CostReport, TokenUsage, calculate_cost
from validation.llm import ChatClient
from validation.orchestrator import AIValidator, run_ai_validation, validate_persisted

__all__ = [
    "AIValidationInput",
    "AIValidationResult",
    "Agreement",
    "CurationReport",
    "ImageEntry",
    "MODEL_PRICING",
    "CostReport",
    "TokenUsage",
    "calculate_cost",
    "ChatClient",
    "AIValidator",
    "run_ai_validation",
    "validate_persisted",
]
