from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from typing import Any, Callable, List, Optional

import websockets

from .errors import MalformedMessageError
from .models import ConnectionPhase, ConnectionState, KlineEvent
from .providers.binance import parse_kline_message

log = logging.getLogger("feed")

BarCallback = Callable[[KlineEvent], None]
StateCallback = Callable[[ConnectionState], None]
ErrorCallback = Callable[[Exception], None]

NORMAL_CLOSURE = 1000


def _now_ms() -> int:
    return int(time.time() * 1000)


class FeedConnection:
    """Lifecycle of one live kline websocket.

    disconnected -> connecting -> connected. Transport errors and abnormal
    closes move to reconnecting with exponential backoff
    (base * 2**(attempt-1)); once max_attempts retries are spent the next
    failure moves to failed, which only an explicit connect() leaves. Any
    successfully decoded message resets the attempt counter.

    All callbacks run on the event loop thread. Observers get copies of the
    state, never the live object.
    """

    def __init__(
        self,
        url: str,
        *,
        base_delay_s: float = 1.0,
        max_attempts: int = 5,
        heartbeat_s: int = 20,
        connector: Optional[Callable[..., Any]] = None,
        parser: Callable[[Any], Optional[KlineEvent]] = parse_kline_message,
    ):
        self.url = url
        self.base_delay_s = float(base_delay_s)
        self.max_attempts = max(0, int(max_attempts))
        self.heartbeat_s = heartbeat_s
        self._connector = connector or websockets.connect
        self._parser = parser

        self._state = ConnectionState()
        self._ws: Any = None
        self._task: Optional[asyncio.Task] = None
        self._retry: Optional[asyncio.TimerHandle] = None
        self._closing = False

        self._bar_callbacks: List[BarCallback] = []
        self._state_callbacks: List[StateCallback] = []
        self._error_callbacks: List[ErrorCallback] = []

    # ---- observers ----

    @property
    def state(self) -> ConnectionState:
        return replace(self._state)

    def on_bar(self, callback: BarCallback) -> None:
        self._bar_callbacks.append(callback)

    def on_state(self, callback: StateCallback) -> None:
        self._state_callbacks.append(callback)

    def on_error(self, callback: ErrorCallback) -> None:
        self._error_callbacks.append(callback)

    def backoff_delay(self, attempt: int) -> float:
        return self.base_delay_s * (2 ** (max(1, attempt) - 1))

    # ---- lifecycle ----

    async def connect(self) -> None:
        if self._state.phase in (ConnectionPhase.CONNECTED, ConnectionPhase.CONNECTING):
            return
        self._cancel_retry()
        self._closing = False
        self._state.attempts = 0
        self._state.next_retry_delay_s = None
        self._start()

    async def disconnect(self) -> None:
        self._closing = True
        self._cancel_retry()

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close(code=NORMAL_CLOSURE, reason="client disconnect")
            except Exception as e:
                log.debug("ws_close_error err=%s", e)

        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        self._state.attempts = 0
        self._state.next_retry_delay_s = None
        self._set_phase(ConnectionPhase.DISCONNECTED)
        log.info("ws_disconnected url=%s", self.url)

    def _start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._set_phase(ConnectionPhase.CONNECTING)
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        try:
            ws = await self._connector(
                self.url,
                ping_interval=self.heartbeat_s,
                ping_timeout=self.heartbeat_s,
                close_timeout=5,
                max_queue=5000,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._on_transport_error(e)
            return

        if self._closing:
            await ws.close(code=NORMAL_CLOSURE, reason="client disconnect")
            return

        self._ws = ws
        self._state.last_connected_at = _now_ms()
        self._state.last_error = None
        self._state.next_retry_delay_s = None
        self._set_phase(ConnectionPhase.CONNECTED)
        log.info("ws_connected url=%s", self.url)

        try:
            async for raw in ws:
                self._handle_raw(raw)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._ws = None
            if not self._closing:
                self._on_transport_error(e)
            return

        self._ws = None
        if self._closing:
            return
        code = getattr(ws, "close_code", None)
        if code == NORMAL_CLOSURE:
            log.info("ws_closed_by_server code=%s", code)
            self._set_phase(ConnectionPhase.DISCONNECTED)
            return
        self._on_transport_error(ConnectionError(f"connection closed code={code}"))

    def _on_transport_error(self, err: BaseException) -> None:
        self._state.last_error = str(err) or type(err).__name__
        if self._state.attempts >= self.max_attempts:
            self._state.next_retry_delay_s = None
            self._set_phase(ConnectionPhase.FAILED)
            log.error("ws_failed attempts=%d err=%s", self._state.attempts, self._state.last_error)
            return

        self._state.attempts += 1
        delay = self.backoff_delay(self._state.attempts)
        self._state.next_retry_delay_s = delay
        self._set_phase(ConnectionPhase.RECONNECTING)
        log.warning(
            "ws_reconnect_scheduled attempt=%d/%d delay=%.2fs err=%s",
            self._state.attempts,
            self.max_attempts,
            delay,
            self._state.last_error,
        )
        self._retry = asyncio.get_running_loop().call_later(delay, self._fire_retry)

    def _fire_retry(self) -> None:
        self._retry = None
        if self._closing:
            return
        if self._state.phase in (ConnectionPhase.CONNECTED, ConnectionPhase.CONNECTING):
            return
        self._start()

    def _cancel_retry(self) -> None:
        if self._retry is not None:
            self._retry.cancel()
            self._retry = None

    # ---- messages ----

    def _handle_raw(self, raw: Any) -> None:
        try:
            evt = self._parser(raw)
        except MalformedMessageError as e:
            self._state.last_error = str(e)
            log.warning("ws_malformed_message err=%s", e)
            for cb in list(self._error_callbacks):
                try:
                    cb(e)
                except Exception:
                    log.exception("error_callback_failed")
            return

        if self._state.attempts:
            self._state.attempts = 0
            self._notify_state()

        if evt is None:
            return
        for cb in list(self._bar_callbacks):
            try:
                cb(evt)
            except Exception:
                log.exception("bar_callback_failed symbol=%s ts=%s", evt.symbol, evt.bar.timestamp)

    def _set_phase(self, phase: ConnectionPhase) -> None:
        self._state.phase = phase
        self._notify_state()

    def _notify_state(self) -> None:
        snap = self.state
        for cb in list(self._state_callbacks):
            try:
                cb(snap)
            except Exception:
                log.exception("state_callback_failed phase=%s", snap.phase.value)
