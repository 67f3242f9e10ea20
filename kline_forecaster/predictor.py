from __future__ import annotations

import logging
import time
from collections import deque
from datetime import timezone
from typing import Callable, Deque, List, Optional, Sequence, Tuple

import numpy as np

from .errors import InsufficientDataError, PredictionError
from .features import to_model_input, vectorize
from .indicators import compute_indicators, pct_change
from .models import Bar, Direction, IndicatorSet, ModelMetrics, Prediction
from .scoring import Scorer

log = logging.getLogger("predictor")

DEFAULT_WINDOW = 20
DEFAULT_HISTORY_CAPACITY = 100
DEFAULT_MODEL_VERSION = "1.0.0"
MOMENTUM_PCT = 0.1
FALLBACK_REASON = "Technical analysis pattern"

Rule = Callable[[Bar, Optional[Bar], IndicatorSet], bool]


def _change_pct(cur: Bar, prev: Optional[Bar]) -> float:
    if prev is None:
        return 0.0
    return pct_change(cur.close, prev.close) or 0.0


# (direction the clause supports, predicate, clause)
REASON_RULES: Tuple[Tuple[Direction, Rule, str], ...] = (
    (Direction.BULLISH, lambda cur, prev, ind: _change_pct(cur, prev) > MOMENTUM_PCT, "Recent price momentum"),
    (Direction.BULLISH, lambda cur, prev, ind: ind.rsi < 30, "Oversold conditions (RSI)"),
    (Direction.BULLISH, lambda cur, prev, ind: cur.close < ind.bollinger_lower, "Below Bollinger Band"),
    (Direction.BULLISH, lambda cur, prev, ind: ind.macd > ind.macd_signal, "MACD bullish crossover"),
    (Direction.BEARISH, lambda cur, prev, ind: _change_pct(cur, prev) < -MOMENTUM_PCT, "Recent price decline"),
    (Direction.BEARISH, lambda cur, prev, ind: ind.rsi > 70, "Overbought conditions (RSI)"),
    (Direction.BEARISH, lambda cur, prev, ind: cur.close > ind.bollinger_upper, "Above Bollinger Band"),
    (Direction.BEARISH, lambda cur, prev, ind: ind.macd < ind.macd_signal, "MACD bearish crossover"),
)


def build_reasoning(bars: Sequence[Bar], indicators: Sequence[IndicatorSet], direction: Direction) -> str:
    cur = bars[-1]
    prev = bars[-2] if len(bars) > 1 else None
    ind = indicators[-1]
    reasons = [text for d, rule, text in REASON_RULES if d == direction and rule(cur, prev, ind)]
    return ", ".join(reasons) if reasons else FALLBACK_REASON


def _now_ms() -> int:
    return int(time.time() * 1000)


class PredictionEngine:
    """Runs the scorer over the newest window and tracks outcomes.

    History is a FIFO of the last ``history_capacity`` predictions. Each entry
    is reconciled at most once against the realised direction of the bar
    that followed its window.
    """

    def __init__(
        self,
        scorer: Scorer,
        *,
        window_length: int = DEFAULT_WINDOW,
        history_capacity: int = DEFAULT_HISTORY_CAPACITY,
        model_version: str = DEFAULT_MODEL_VERSION,
        tz: timezone = timezone.utc,
        clock: Callable[[], int] = _now_ms,
    ):
        if window_length < 1:
            raise ValueError(f"window_length must be >= 1, got {window_length}")
        self.scorer = scorer
        self.window_length = int(window_length)
        self.model_version = model_version
        self.tz = tz
        self._clock = clock
        self._history: Deque[Prediction] = deque(maxlen=max(1, int(history_capacity)))

    def predict(self, bars: Sequence[Bar]) -> Prediction:
        return self.record(self.evaluate(bars))

    def evaluate(self, bars: Sequence[Bar]) -> Prediction:
        """Score the newest window without touching history; safe to run off the loop thread."""
        bars = list(bars)
        if len(bars) < self.window_length:
            raise InsufficientDataError(self.window_length, len(bars))

        # Indicators see the whole supplied history so long periods (SMA50,
        # MACD) are warm inside a short window.
        indicators = compute_indicators(bars)
        window = bars[-self.window_length:]
        window_ind = indicators[-self.window_length:]
        rows = vectorize(window, window_ind, window_length=self.window_length, tz=self.tz)

        try:
            raw = self.scorer(to_model_input(rows))
        except Exception as e:
            raise PredictionError(f"scorer failed: {e}") from e
        bearish, bullish = self._validate(raw)

        direction = Direction.BULLISH if bullish > bearish else Direction.BEARISH
        confidence = min(100.0, max(0.0, max(bearish, bullish) * 100.0))
        pred = Prediction(
            direction=direction,
            confidence=confidence,
            timestamp=self._clock(),
            model_version=self.model_version,
            reasoning=build_reasoning(window, window_ind, direction),
            bar_timestamp=window[-1].timestamp,
        )
        return pred

    def record(self, pred: Prediction) -> Prediction:
        self._history.append(pred)
        log.info(
            "prediction direction=%s confidence=%.1f bar_ts=%d reasoning=%s",
            pred.direction.value,
            pred.confidence,
            pred.bar_timestamp,
            pred.reasoning,
        )
        return pred

    @staticmethod
    def _validate(raw: Sequence[float]) -> Tuple[float, float]:
        try:
            probs = np.asarray(raw, dtype=np.float64).ravel()
        except (TypeError, ValueError) as e:
            raise PredictionError(f"scorer returned non-numeric output: {raw!r}") from e
        if probs.size != 2 or not np.all(np.isfinite(probs)):
            raise PredictionError(f"scorer must return two finite probabilities, got {raw!r}")
        return float(probs[0]), float(probs[1])

    # ---- outcomes ----

    def reconcile(self, index: int, actual: Direction) -> bool:
        """Attach the realised direction to ``history()[index]`` (oldest first).

        Returns False when that prediction was already reconciled.
        """
        if index < 0 or index >= len(self._history):
            raise IndexError(f"prediction index {index} out of range (0..{len(self._history) - 1})")
        pred = self._history[index]
        if pred.reconciled:
            return False
        actual = Direction(actual)
        pred.actual_result = actual
        pred.was_correct = pred.direction == actual
        return True

    def reconcile_bar(self, bar: Bar) -> int:
        """Reconcile every pending prediction made before ``bar`` closed."""
        done = 0
        for i, pred in enumerate(self._history):
            if not pred.reconciled and pred.bar_timestamp < bar.timestamp:
                self.reconcile(i, bar.direction)
                done += 1
        if done:
            log.info("reconciled count=%d bar_ts=%d actual=%s", done, bar.timestamp, bar.direction.value)
        return done

    def metrics(self) -> ModelMetrics:
        reconciled = [p for p in self._history if p.reconciled]
        correct = sum(1 for p in reconciled if p.was_correct)
        total = len(reconciled)
        return ModelMetrics(
            accuracy=(correct / total) * 100.0 if total else 0.0,
            total_predictions=total,
            correct_predictions=correct,
            pending_predictions=len(self._history) - total,
            last_updated=self._clock(),
            model_version=self.model_version,
        )

    def history(self, limit: Optional[int] = 10) -> List[Prediction]:
        items = list(self._history)
        if limit is None:
            return items
        return items[-limit:] if limit > 0 else []

    @property
    def latest(self) -> Optional[Prediction]:
        return self._history[-1] if self._history else None
