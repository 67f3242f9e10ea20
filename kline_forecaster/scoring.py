"""Scoring functions: (1, window, 13) feature tensor -> (bearish, bullish).

The predictor only depends on the call contract, so a trained model can be
plugged in with ``model.scorer: "my_pkg.my_module:my_scorer"``.
"""

from __future__ import annotations

import importlib
import math
from typing import Callable, Dict, Optional, Sequence

import numpy as np

Scorer = Callable[[np.ndarray], Sequence[float]]

# Column indices into a feature row (see features.FEATURE_NAMES).
_CLOSE = 3
_RSI = 5
_MACD = 6
_MACD_SIGNAL = 7
_BOLL_POS = 8
_SMA20 = 9


class ConstantScorer:
    """Always returns the same distribution. Useful for dry runs."""

    def __init__(self, bearish: float = 0.5, bullish: float = 0.5) -> None:
        self.probs = (float(bearish), float(bullish))

    def __call__(self, x: np.ndarray) -> Sequence[float]:
        return self.probs


class MomentumScorer:
    """Deterministic logistic baseline over the last row of the window.

    Positive window trend, close above SMA20 and MACD above its signal push
    towards bullish; overbought RSI and a close near the upper band push
    towards bearish.
    """

    DEFAULT_WEIGHTS: Dict[str, float] = {
        "trend": 0.8,
        "sma": 0.6,
        "macd": 40.0,
        "rsi": -2.0,
        "band": -1.0,
    }

    def __init__(self, weights: Optional[Dict[str, float]] = None, bias: float = 0.0) -> None:
        self.weights = dict(self.DEFAULT_WEIGHTS)
        self.weights.update(weights or {})
        self.bias = float(bias)

    def __call__(self, x: np.ndarray) -> Sequence[float]:
        rows = np.asarray(x, dtype=np.float64)[0]
        first, last = rows[0], rows[-1]

        trend = (last[_CLOSE] - first[_CLOSE]) / (abs(first[_CLOSE]) + 1e-12) * 100.0
        vs_sma = (last[_CLOSE] - last[_SMA20]) / (abs(last[_SMA20]) + 1e-12) * 100.0
        w = self.weights
        z = (
            self.bias
            + w["trend"] * trend
            + w["sma"] * vs_sma
            + w["macd"] * (last[_MACD] - last[_MACD_SIGNAL])
            + w["rsi"] * (last[_RSI] - 0.5)
            + w["band"] * (min(max(last[_BOLL_POS], -1.0), 2.0) - 0.5)
        )
        bullish = 1.0 / (1.0 + math.exp(-max(min(z, 50.0), -50.0)))
        return (1.0 - bullish, bullish)


BUILTIN_SCORERS: Dict[str, Callable[[], Scorer]] = {
    "momentum": MomentumScorer,
    "constant": ConstantScorer,
}


def load_scorer(ref: str) -> Scorer:
    """Resolve ``builtin:<name>`` or ``package.module:attribute``.

    Classes are instantiated without arguments; other callables are used as-is.
    """
    ref = (ref or "builtin:momentum").strip()
    module_name, sep, attr = ref.partition(":")
    if not sep or not attr:
        raise ValueError(f"Scorer reference must look like 'module:attr', got {ref!r}")

    if module_name == "builtin":
        factory = BUILTIN_SCORERS.get(attr)
        if factory is None:
            raise ValueError(f"Unknown builtin scorer {attr!r} (known: {sorted(BUILTIN_SCORERS)})")
        return factory()

    module = importlib.import_module(module_name)
    obj = getattr(module, attr)
    if isinstance(obj, type):
        return obj()
    if not callable(obj):
        raise TypeError(f"{ref} is not callable")
    return obj
