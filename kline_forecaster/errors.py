"""Error types raised across the forecasting pipeline."""

from __future__ import annotations


class ForecasterError(Exception):
    """Base class for all pipeline errors."""


class MalformedMessageError(ForecasterError, ValueError):
    """Inbound feed payload could not be normalised into a kline event.

    The connection stays open; the message is dropped.
    """


class InsufficientDataError(ForecasterError, ValueError):
    """Fewer bars than the model window requires.

    Attributes:
        required: Bars needed for one prediction.
        available: Bars supplied by the caller.
    """

    def __init__(self, required: int, available: int) -> None:
        super().__init__(f"Insufficient data: need at least {required} bars, got {available}")
        self.required = required
        self.available = available


class PredictionError(ForecasterError, RuntimeError):
    """The scoring function failed or returned an unusable output."""
