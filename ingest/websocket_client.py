import asyncio
import json
import logging
import random
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional, Sequence

import websockets

from api.metrics import metrics
from config import config
from strategy.market_types import Bar

from .alpaca_rest import resolve_credential


logger = logging.getLogger(__name__)

BatchHandler = Callable[[List[Bar]], Awaitable[None]]
WindowCheck = Callable[[datetime], bool]


class AlpacaStreamError(Exception):
    def __init__(self, code: Optional[int], msg: Optional[str]):
        self.code = code
        self.msg = msg
        super().__init__(f"Alpaca stream error (code={code}, msg={msg})")


class AlpacaBarStream:
    """Minute-bar subscription over the Alpaca market data WebSocket.

    Handshake is connect, then auth once the server says ``connected``, then
    subscribe once it says ``authenticated``. Bar batches are handed to
    ``on_bars`` in the order received. The stream stops itself when the clock,
    or a bar timestamp, falls outside the trading window.
    """

    def __init__(self, symbols: Sequence[str], on_bars: BatchHandler, in_window: Optional[WindowCheck] = None,
                 url: Optional[str] = None, api_key: Optional[str] = None, api_secret: Optional[str] = None,
                 connect=None, clock: Optional[Callable[[], datetime]] = None):
        broker_cfg = config.section("broker")
        ws_cfg = config.section("websocket")
        self.symbols = list(symbols)
        self.on_bars = on_bars
        self.in_window = in_window
        self.url = url or broker_cfg.get("stream_url") or "wss://stream.data.alpaca.markets/v2/iex"
        self.api_key = resolve_credential(api_key or broker_cfg.get("api_key"))
        self.api_secret = resolve_credential(api_secret or broker_cfg.get("api_secret"))
        self.reconnect_backoff = list(ws_cfg.get("reconnect_backoff", [1, 2, 5, 10, 30]))
        self.max_reconnects = int(ws_cfg.get("max_reconnects_per_minute", 5))
        self.recv_timeout = float(ws_cfg.get("recv_timeout_s", 30))
        self._connect = connect or websockets.connect
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.running = False
        self.authenticated = False
        self.reconnect_count = 0
        self.last_reconnect_window = time.time()

    async def start(self):
        self.running = True
        backoff_index = 0
        while self.running:
            if not self._window_open(self._clock()):
                logger.info("Trading window closed; bar stream not connecting")
                break
            try:
                async with self._connect(self.url, ping_interval=20) as ws:
                    metrics.mark_stream(True)
                    await self._consume(ws)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Bar stream error: %s", e)
                if not self.running:
                    break
                await self._handle_reconnect(backoff_index)
                backoff_index = min(backoff_index + 1, len(self.reconnect_backoff) - 1)
            else:
                backoff_index = 0
            finally:
                metrics.mark_stream(False)
                self.authenticated = False
        self.running = False
        logger.info("Bar stream stopped")

    async def stop(self):
        self.running = False

    async def _consume(self, ws) -> None:
        while self.running:
            try:
                raw = await asyncio.wait_for(ws.recv(), timeout=self.recv_timeout)
            except asyncio.TimeoutError:
                # Quiet minutes still need the window check
                if not self._window_open(self._clock()):
                    logger.info("Trading window closed; closing bar stream")
                    self.running = False
                continue
            await self.handle_frame(ws, raw)

    async def handle_frame(self, ws, raw) -> None:
        messages = json.loads(raw)
        if isinstance(messages, dict):
            messages = [messages]

        bars: List[Bar] = []
        for message in messages:
            kind = message.get("T")
            if kind == "success":
                await self._on_success(ws, message.get("msg"))
            elif kind == "subscription":
                logger.info("Subscribed to bars for %s", ", ".join(message.get("bars") or []))
            elif kind == "error":
                raise AlpacaStreamError(message.get("code"), message.get("msg"))
            elif kind == "b":
                try:
                    bar = Bar.from_stream(message)
                except (KeyError, TypeError, ValueError) as exc:
                    logger.warning("Malformed bar message %s: %s", message, exc)
                    continue
                if not self._window_open(bar.timestamp):
                    logger.info(
                        "Bar %s %s outside trading window; closing bar stream",
                        bar.symbol,
                        bar.timestamp.isoformat(),
                    )
                    self.running = False
                    continue
                bars.append(bar)

        if bars:
            await self.on_bars(bars)

    async def _on_success(self, ws, msg: Optional[str]) -> None:
        if msg == "connected":
            if not self.api_key or not self.api_secret:
                raise RuntimeError("Alpaca API key/secret required for the bar stream")
            await ws.send(json.dumps({"action": "auth", "key": self.api_key, "secret": self.api_secret}))
        elif msg == "authenticated":
            self.authenticated = True
            await ws.send(json.dumps({"action": "subscribe", "bars": self.symbols}))
            logger.info("Bar stream authenticated")

    async def _handle_reconnect(self, backoff_index: int = 0):
        if backoff_index >= len(self.reconnect_backoff):
            backoff_index = len(self.reconnect_backoff) - 1

        now = time.time()
        if now - self.last_reconnect_window > 60:
            self.reconnect_count = 0
            self.last_reconnect_window = now

        self.reconnect_count += 1
        metrics.record_reconnect()

        if self.reconnect_count > self.max_reconnects:
            logger.warning(
                "%s reconnects in 60s; entering extended backoff",
                self.reconnect_count,
            )
            self.reconnect_count = 0
            self.last_reconnect_window = now
            delay = self.reconnect_backoff[-1] + random.uniform(0, 0.5)
        else:
            delay = self.reconnect_backoff[backoff_index] + random.uniform(0, 0.5)
        logger.info("Reconnecting bar stream in %.1fs (attempt %s)", delay, self.reconnect_count)
        await asyncio.sleep(delay)

    def _window_open(self, moment: datetime) -> bool:
        return self.in_window is None or self.in_window(moment)
