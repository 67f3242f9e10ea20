import asyncio
import threading

import pytest

from kline_forecaster.config import Config, FeedConfig, ModelConfig, StoreConfig, TelegramConfig
from kline_forecaster.feed import FeedConnection
from kline_forecaster.formatters import format_connection_failed, format_prediction
from kline_forecaster.models import Bar, ConnectionPhase, ConnectionState, Direction, KlineEvent
from kline_forecaster.predictor import PredictionEngine
from kline_forecaster.runner import ForecastRunner
from kline_forecaster.scoring import ConstantScorer


def _bar(idx: int, o: float, c: float) -> Bar:
    return Bar(timestamp=idx * 60_000, open=o, high=max(o, c) + 1, low=min(o, c) - 1, close=c, volume=2.0)


def _evt(bar: Bar, closed: bool = True, symbol: str = "BTCUSDT") -> KlineEvent:
    return KlineEvent(symbol=symbol, interval="1m", event_time=bar.timestamp + 1, is_closed=closed, trades=1, bar=bar)


class FakeProvider:
    def __init__(self, rows=None, error=None):
        self.rows = rows or []
        self.error = error
        self.closed = False
        self.calls = 0

    async def fetch_klines(self, symbol, interval, limit):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.rows

    async def close(self):
        self.closed = True


class NeverConnect:
    async def __call__(self, url, **kwargs):
        await asyncio.sleep(3600)


def _cfg(**model) -> Config:
    model.setdefault("window_length", 20)
    model.setdefault("interval_s", 0)
    return Config(
        feed=FeedConfig(symbol="btcusdt", backfill_limit=50),
        store=StoreConfig(path=""),
        model=ModelConfig(**model),
        telegram=TelegramConfig(enabled=False),
    )


def _runner(provider=None, **model) -> ForecastRunner:
    return ForecastRunner(
        _cfg(**model),
        scorer=ConstantScorer(0.3, 0.7),
        provider=provider or FakeProvider(),
        feed=FeedConnection("wss://example.test", connector=NeverConnect()),
    )


async def _drain(runner: ForecastRunner) -> None:
    while runner._tasks:
        await asyncio.gather(*list(runner._tasks))


@pytest.mark.asyncio
async def test_closed_bar_triggers_prediction_and_reconciliation():
    runner = _runner()
    runner.store.extend(_bar(i, 100.0 + i, 100.5 + i) for i in range(19))

    runner._on_kline(_evt(_bar(19, 119.0, 119.5)))
    await _drain(runner)
    hist = runner.engine.history()
    assert len(hist) == 1
    assert hist[0].direction == Direction.BULLISH
    assert hist[0].bar_timestamp == 19 * 60_000

    # next bar closes up -> previous prediction was right
    runner._on_kline(_evt(_bar(20, 120.0, 121.0)))
    await _drain(runner)
    m = runner.engine.metrics()
    assert (m.total_predictions, m.correct_predictions, m.accuracy) == (1, 1, 100.0)
    assert len(runner.engine.history()) == 2


@pytest.mark.asyncio
async def test_open_bar_updates_store_without_predicting():
    runner = _runner()
    runner.store.extend(_bar(i, 100.0, 101.0) for i in range(25))
    runner._on_kline(_evt(_bar(25, 101.0, 102.0), closed=False))
    runner._on_kline(_evt(_bar(25, 101.0, 103.0), closed=False))
    await _drain(runner)
    assert len(runner.store) == 26
    assert runner.store.latest.close == 103.0
    assert runner.engine.history() == []


@pytest.mark.asyncio
async def test_requests_for_same_bar_state_are_coalesced():
    runner = _runner()
    runner.store.extend(_bar(i, 100.0, 101.0) for i in range(25))
    results = await asyncio.gather(*(runner.request_prediction() for _ in range(5)))
    assert sum(1 for r in results if r is not None) == 1
    assert len(runner.engine.history()) == 1

    runner.store.upsert(_bar(24, 100.0, 105.0))
    assert await runner.request_prediction() is not None


@pytest.mark.asyncio
async def test_scoring_runs_off_the_event_loop_thread():
    seen = []

    def scorer(x):
        seen.append(threading.get_ident())
        return [0.4, 0.6]

    runner = ForecastRunner(
        _cfg(),
        scorer=scorer,
        provider=FakeProvider(),
        feed=FeedConnection("wss://example.test", connector=NeverConnect()),
    )
    runner.store.extend(_bar(i, 100.0, 101.0) for i in range(25))
    pred = await runner.request_prediction()
    assert pred is not None
    assert seen and seen[0] != threading.get_ident()
    assert runner.engine.latest is pred


@pytest.mark.asyncio
async def test_insufficient_data_is_skipped():
    runner = _runner()
    runner.store.extend(_bar(i, 100.0, 101.0) for i in range(5))
    assert await runner.request_prediction() is None
    assert runner.engine.history() == []


@pytest.mark.asyncio
async def test_other_symbols_are_ignored():
    runner = _runner()
    runner._on_kline(_evt(_bar(0, 1.0, 2.0), symbol="ETHUSDT"))
    assert len(runner.store) == 0


@pytest.mark.asyncio
async def test_backfill_fills_store_from_rows():
    rows = [[i * 60_000, "100", "101", "99", "100.5", "3", i * 60_000 + 59_999] for i in range(30)]
    provider = FakeProvider(rows=rows)
    runner = _runner(provider)
    assert await runner.backfill() == 30
    assert len(runner.store) == 30
    # already enough history: no second fetch
    assert await runner.backfill() == 0
    assert provider.calls == 1


@pytest.mark.asyncio
async def test_backfill_failure_is_not_fatal():
    runner = _runner(FakeProvider(error=RuntimeError("rest down")))
    assert await runner.backfill() == 0
    assert len(runner.store) == 0


@pytest.mark.asyncio
async def test_start_and_stop():
    provider = FakeProvider()
    runner = _runner(provider, interval_s=0.01)
    runner.store.extend(_bar(i, 100.0, 101.0) for i in range(25))
    await runner.start()
    assert runner.feed.state.phase == ConnectionPhase.CONNECTING
    await asyncio.sleep(0.05)
    assert len(runner.engine.history()) == 1  # periodic ticks coalesce on an unchanged store
    await runner.stop()
    assert runner.feed.state.phase == ConnectionPhase.DISCONNECTED
    assert provider.closed


def test_formatters_render():
    runner_cfg = _cfg()
    eng = PredictionEngine(ConstantScorer(0.2, 0.8), window_length=runner_cfg.model.window_length)
    pred = eng.predict([_bar(i, 100.0, 101.0) for i in range(20)])
    text = format_prediction("BTCUSDT", "1m", pred, metrics=eng.metrics())
    assert "BULLISH" in text
    assert "80.0%" in text

    state = ConnectionState(phase=ConnectionPhase.FAILED, attempts=5, last_error="refused <x>")
    msg = format_connection_failed("Kline Forecaster", "wss://example.test", state)
    assert "5 reconnect attempts" in msg
    assert "&lt;x&gt;" in msg
