"""
Error taxonomy for the crop-cycle pipeline.

Disqualified crops and degraded AI opinions are NOT errors; they are
returned as regular result values. Only failures that stop a stage live here.
"""


class CropCycleError(Exception):
    """Base class for all pipeline errors."""


class InputError(CropCycleError):
    """Malformed or insufficient input. Fixable by the caller, never retried."""


class EmptySeriesError(InputError):
    """Too few usable points remain after cleaning a series."""

    def __init__(self, remaining: int, required: int = 3):
        self.remaining = remaining
        self.required = required
        super().__init__(
            f"Series has {remaining} usable points after cleaning, need at least {required}"
        )


class UnknownCropError(InputError):
    """Crop type has no agronomic profile."""


class DataUnavailableError(CropCycleError):
    """An upstream data source is down or returned an unusable payload."""

    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(f"{source}: {message}")


class AIServiceError(CropCycleError):
    """Transient failure of the generative AI service (timeout, rate limit, 5xx)."""


class AIRequestError(CropCycleError):
    """The generative AI service rejected the request (bad key, bad request, unknown model). Not retried."""
