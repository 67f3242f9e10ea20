from __future__ import annotations

import html
from datetime import datetime, timezone
from typing import Optional

from .models import ConnectionState, ModelMetrics, Prediction, PriceSummary


def _fmt_ms(ts_ms: int, tz=timezone.utc) -> str:
    dt = datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc).astimezone(tz)
    return dt.strftime("%Y-%m-%d %H:%M")


def _bold(text: str) -> str:
    return f"<b>{html.escape(str(text), quote=False)}</b>"


def _fmt_price(val: Optional[float]) -> str:
    if val is None:
        return "-"
    return f"{val:,.2f}"


def format_prediction(
    symbol: str,
    interval: str,
    pred: Prediction,
    metrics: Optional[ModelMetrics] = None,
    price: Optional[PriceSummary] = None,
) -> str:
    """HTML message for one prediction."""
    arrow = "▲" if pred.direction.value == "bullish" else "▼"
    lines = [
        f"{_bold(symbol)}  |  {_bold(interval)}",
        f"{arrow} {_bold(pred.direction.value.upper())} • Confidence: {_bold(f'{pred.confidence:.1f}%')}",
        "",
        html.escape(f"Next bar after: {_fmt_ms(pred.bar_timestamp)} UTC", quote=False),
        html.escape(f"Why: {pred.reasoning}", quote=False),
    ]
    if price is not None:
        lines.append(html.escape(
            f"Price: {_fmt_price(price.price)} ({price.change_24h_pct:+.2f}% 24h)", quote=False
        ))
    if metrics is not None and metrics.total_predictions:
        lines.append(html.escape(
            f"Accuracy: {metrics.accuracy:.1f}% ({metrics.correct_predictions}/{metrics.total_predictions})",
            quote=False,
        ))
    lines.append(html.escape(f"Model v{pred.model_version}", quote=False))
    return "\n".join(lines)


def format_connection_failed(name: str, url: str, state: ConnectionState) -> str:
    return "\n".join([
        _bold(f"{name}: live feed stopped"),
        html.escape(f"Gave up after {state.attempts} reconnect attempts.", quote=False),
        html.escape(f"Stream: {url}", quote=False),
        html.escape(f"Last error: {state.last_error or '-'}", quote=False),
        "Restart the service or call connect() to resume.",
    ])
