from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Optional, Set, Tuple

from .config import Config
from .errors import InsufficientDataError, PredictionError
from .features import parse_tz
from .feed import FeedConnection
from .formatters import format_connection_failed, format_prediction
from .models import ConnectionPhase, ConnectionState, KlineEvent, Prediction
from .notifier.telegram import TelegramNotifier
from .predictor import PredictionEngine
from .providers.binance import BinanceProvider, stream_url
from .scoring import Scorer, load_scorer
from .store import BarStore, JsonFileStore, bars_from_rows

log = logging.getLogger("runner")


class ForecastRunner:
    """Feed -> store -> predictor pipeline for one symbol/interval.

    Inference runs on every closed bar and on a fixed interval. Requests are
    serialised, and a request for a bar state that was already scored is
    dropped.
    """

    def __init__(
        self,
        cfg: Config,
        *,
        scorer: Optional[Scorer] = None,
        store: Optional[BarStore] = None,
        engine: Optional[PredictionEngine] = None,
        feed: Optional[FeedConnection] = None,
        provider: Optional[BinanceProvider] = None,
        notifier: Optional[TelegramNotifier] = None,
    ):
        self.cfg = cfg
        self.symbol = cfg.feed.symbol.upper()

        if store is None:
            persistence = JsonFileStore(cfg.store.path) if cfg.store.path else None
            store = BarStore(cfg.store.capacity, persistence=persistence, key=cfg.store.key)
        self.store = store

        if engine is None:
            engine = PredictionEngine(
                scorer or load_scorer(cfg.model.scorer),
                window_length=cfg.model.window_length,
                history_capacity=cfg.model.history_capacity,
                model_version=cfg.model.model_version,
                tz=parse_tz(cfg.model.timezone),
            )
        self.engine = engine

        self.provider = provider or BinanceProvider(
            market=cfg.feed.market,
            rest_timeout_s=cfg.feed.rest_timeout_s,
        )
        self.feed = feed or FeedConnection(
            stream_url(cfg.feed.market, self.symbol, cfg.feed.interval),
            base_delay_s=cfg.feed.base_reconnect_delay_s,
            max_attempts=cfg.feed.max_reconnect_attempts,
            heartbeat_s=cfg.feed.ws_heartbeat_s,
        )
        self.tg = notifier or TelegramNotifier(
            token=cfg.telegram.token,
            chat_ids=cfg.telegram.chat_ids,
            enabled=cfg.telegram.enabled,
            disable_web_page_preview=cfg.telegram.disable_web_page_preview,
        )

        self._lock = asyncio.Lock()
        self._last_scored: Optional[Tuple[int, float]] = None
        self._tasks: Set[asyncio.Task] = set()
        self._periodic: Optional[asyncio.Task] = None

        self.feed.on_bar(self._on_kline)
        self.feed.on_state(self._on_state)

    # ---- lifecycle ----

    async def backfill(self) -> int:
        """Fetch REST history when the store cannot fill one window yet."""
        if not self.cfg.feed.backfill_enabled or len(self.store) >= self.engine.window_length:
            return 0
        try:
            rows = await self.provider.fetch_klines(self.symbol, self.cfg.feed.interval, self.cfg.feed.backfill_limit)
        except Exception as e:
            log.warning("backfill_failed symbol=%s interval=%s err=%s", self.symbol, self.cfg.feed.interval, e)
            return 0
        bars = bars_from_rows(rows)
        self.store.extend(bars)
        log.info("backfill_done symbol=%s bars=%d stored=%d", self.symbol, len(bars), len(self.store))
        return len(bars)

    async def start(self) -> None:
        loaded = self.store.load()
        log.info("start symbol=%s interval=%s stored_bars=%d", self.symbol, self.cfg.feed.interval, loaded)
        await self.backfill()
        await self.feed.connect()
        if self.cfg.model.interval_s and self.cfg.model.interval_s > 0:
            self._periodic = asyncio.get_running_loop().create_task(self._periodic_loop())

    async def stop(self) -> None:
        pending = [t for t in self._tasks if not t.done()]
        if self._periodic is not None:
            pending.append(self._periodic)
            self._periodic = None
        for t in pending:
            t.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        await self.feed.disconnect()
        await self.provider.close()

    async def run_forever(self) -> None:
        await self.start()
        try:
            await asyncio.Event().wait()
        finally:
            await self.stop()

    async def _periodic_loop(self) -> None:
        while True:
            await asyncio.sleep(float(self.cfg.model.interval_s))
            await self.request_prediction()

    # ---- inference ----

    async def request_prediction(self) -> Optional[Prediction]:
        async with self._lock:
            bars = self.store.snapshot()
            if not bars:
                return None
            state_key = (bars[-1].timestamp, bars[-1].close)
            if state_key == self._last_scored:
                log.debug("prediction_coalesced bar_ts=%d", state_key[0])
                return None
            try:
                loop = asyncio.get_running_loop()
                pred = await loop.run_in_executor(None, self.engine.evaluate, bars)
            except InsufficientDataError as e:
                log.info("prediction_skipped reason=insufficient_data have=%d need=%d", e.available, e.required)
                return None
            except PredictionError as e:
                log.warning("prediction_failed err=%s", e)
                return None
            self.engine.record(pred)
            self._last_scored = state_key

        await self._notify_prediction(pred)
        return pred

    async def _notify_prediction(self, pred: Prediction) -> None:
        if not (self.tg.enabled() and self.cfg.telegram.notify_predictions):
            return
        msg = format_prediction(
            self.symbol,
            self.cfg.feed.interval,
            pred,
            metrics=self.engine.metrics(),
            price=self.store.price_summary(),
        )
        await self.tg.send(msg)

    # ---- feed callbacks ----

    def _on_kline(self, evt: KlineEvent) -> None:
        if evt.symbol and evt.symbol != self.symbol:
            log.debug("kline_ignored symbol=%s", evt.symbol)
            return
        self.store.upsert(evt.bar)
        if not evt.is_closed:
            return
        self.engine.reconcile_bar(evt.bar)
        self._spawn(self.request_prediction())

    def _on_state(self, state: ConnectionState) -> None:
        log.info("feed_state phase=%s attempts=%d", state.phase.value, state.attempts)
        if state.phase == ConnectionPhase.FAILED and self.tg.enabled():
            self._spawn(self.tg.send(format_connection_failed(self.cfg.app.name, self.feed.url, state)))

    def _spawn(self, coro: Awaitable) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
