# portfolio_tracker/services/upstream/exchange/stream.py
"""
Push price channel over the exchange websocket.

A secondary, best-effort source of live prices: valuation never depends on
it. Consumers subscribe per symbol and receive PriceTick callbacks on the
stream's thread:

    stream = PriceStream()
    with stream.subscribe("BTC", on_tick):
        ...
    stream.close()

Each subscribed symbol owns one daemon thread reading
`{ws_url}/{symbol}usdt@ticker`. When the socket drops the thread
reconnects with exponential backoff (1s, 2s, 4s ... capped at 30s) and
gives up after `max_reconnect_attempts` consecutive failures. The thread
stops when the last subscription for its symbol is closed.
"""

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable

from pydantic import ValidationError as PydanticValidationError
from websockets.exceptions import WebSocketException
from websockets.sync.client import connect as ws_connect

from portfolio_tracker.config import settings
from portfolio_tracker.schemas.upstream import StreamTicker
from portfolio_tracker.services.upstream.exchange.prices import SETTLEMENT_SYMBOL

logger = logging.getLogger(__name__)

MAX_RECONNECT_ATTEMPTS = 5
RECONNECT_BASE_DELAY = 1.0
RECONNECT_MAX_DELAY = 30.0
OPEN_TIMEOUT = 10.0


@dataclass(frozen=True)
class PriceTick:
    symbol: str
    price: Decimal
    received_at: datetime


TickCallback = Callable[[PriceTick], None]


class Subscription:
    """Handle returned by PriceStream.subscribe(); close() releases it."""

    def __init__(self, stream: "PriceStream", symbol: str, callback: TickCallback) -> None:
        self.symbol = symbol
        self.callback = callback
        self._stream = stream
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._stream._unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type: type | None, exc_val: BaseException | None, exc_tb: Any) -> bool:
        self.close()
        return False


class _SymbolStream(threading.Thread):
    """Reader thread for one symbol, reconnecting with bounded backoff."""

    def __init__(
            self,
            url: str,
            symbol: str,
            on_tick: Callable[[str, Decimal], None],
            connect: Callable[..., Any],
            max_reconnect_attempts: int,
            base_delay: float,
            max_delay: float,
    ) -> None:
        super().__init__(name=f"price-stream-{symbol.lower()}", daemon=True)
        self.url = url
        self.symbol = symbol
        self._pair = f"{symbol}{SETTLEMENT_SYMBOL}"
        self._on_tick = on_tick
        self._connect = connect
        self._max_reconnect_attempts = max_reconnect_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._stop_event = threading.Event()
        self._socket: Any = None
        self.gave_up = False

    def stop(self) -> None:
        self._stop_event.set()
        socket = self._socket
        if socket is not None:
            try:
                socket.close()
            except (OSError, WebSocketException) as e:
                logger.debug(f"Error closing {self._pair} stream: {e}")

    def run(self) -> None:
        failures = 0
        while not self._stop_event.is_set():
            try:
                with self._connect(self.url, open_timeout=OPEN_TIMEOUT) as socket:
                    self._socket = socket
                    failures = 0
                    logger.info(f"Price stream connected: {self._pair}")
                    for message in socket:
                        if self._stop_event.is_set():
                            break
                        self._handle(message)
            except (OSError, WebSocketException) as e:
                logger.warning(f"Price stream {self._pair} disconnected: {e}")
            finally:
                self._socket = None

            if self._stop_event.is_set():
                break

            if failures >= self._max_reconnect_attempts:
                self.gave_up = True
                logger.error(
                    f"Price stream {self._pair} gave up after {failures} reconnect attempts"
                )
                break

            delay = min(self._base_delay * (2 ** failures), self._max_delay)
            failures += 1
            logger.info(f"Reconnecting {self._pair} stream in {delay:g}s (attempt {failures})")
            self._stop_event.wait(delay)

        logger.info(f"Price stream stopped: {self._pair}")

    def _handle(self, message: str | bytes) -> None:
        try:
            ticker = StreamTicker.model_validate(json.loads(message))
        except (ValueError, PydanticValidationError) as e:
            logger.debug(f"Ignoring unexpected {self._pair} message: {e}")
            return
        if ticker.symbol.upper() != self._pair:
            return
        self._on_tick(self.symbol, ticker.close)


class PriceStream:
    """
    Publish/subscribe channel for live USD prices.

    Args:
        ws_url: Base websocket URL (defaults to settings.exchange_ws_url)
        connect: websocket connect function, replaced in tests
        max_reconnect_attempts: Consecutive reconnects before giving up
        base_delay: First reconnect delay in seconds
        max_delay: Reconnect delay cap in seconds
    """

    def __init__(
            self,
            ws_url: str | None = None,
            connect: Callable[..., Any] = ws_connect,
            max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS,
            base_delay: float = RECONNECT_BASE_DELAY,
            max_delay: float = RECONNECT_MAX_DELAY,
    ) -> None:
        self._ws_url = (ws_url or settings.exchange_ws_url).rstrip("/")
        self._connect = connect
        self._max_reconnect_attempts = max_reconnect_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[Subscription]] = {}
        self._streams: dict[str, _SymbolStream] = {}
        self._latest: dict[str, Decimal] = {}

    @property
    def active_symbols(self) -> list[str]:
        with self._lock:
            return sorted(self._streams)

    def latest_price(self, symbol: str) -> Decimal | None:
        return self._latest.get(symbol.upper())

    def subscribe(self, symbol: str, callback: TickCallback) -> Subscription:
        """Register `callback` for `symbol`, starting its stream if needed."""
        symbol = symbol.upper()
        subscription = Subscription(self, symbol, callback)

        with self._lock:
            self._subscribers.setdefault(symbol, []).append(subscription)
            stream = self._streams.get(symbol)
            if stream is None or not stream.is_alive():
                stream = _SymbolStream(
                    url=f"{self._ws_url}/{symbol.lower()}{SETTLEMENT_SYMBOL.lower()}@ticker",
                    symbol=symbol,
                    on_tick=self._dispatch,
                    connect=self._connect,
                    max_reconnect_attempts=self._max_reconnect_attempts,
                    base_delay=self._base_delay,
                    max_delay=self._max_delay,
                )
                self._streams[symbol] = stream
                stream.start()

        logger.info(f"Subscribed to {symbol} price stream")
        return subscription

    def close(self) -> None:
        """Stop every stream and drop all subscriptions."""
        with self._lock:
            streams = list(self._streams.values())
            for subscriptions in self._subscribers.values():
                for subscription in subscriptions:
                    subscription._closed = True
            self._subscribers.clear()
            self._streams.clear()

        for stream in streams:
            stream.stop()
        for stream in streams:
            stream.join(timeout=OPEN_TIMEOUT)

    def _unsubscribe(self, subscription: Subscription) -> None:
        stream = None
        with self._lock:
            subscriptions = self._subscribers.get(subscription.symbol, [])
            if subscription in subscriptions:
                subscriptions.remove(subscription)
            if not subscriptions:
                self._subscribers.pop(subscription.symbol, None)
                stream = self._streams.pop(subscription.symbol, None)

        if stream is not None:
            stream.stop()
            logger.info(f"Last subscriber left, stopping {subscription.symbol} price stream")

    def _dispatch(self, symbol: str, price: Decimal) -> None:
        self._latest[symbol] = price
        tick = PriceTick(symbol=symbol, price=price, received_at=datetime.now(timezone.utc))

        with self._lock:
            subscriptions = list(self._subscribers.get(symbol, []))

        for subscription in subscriptions:
            try:
                subscription.callback(tick)
            except Exception:
                logger.exception(f"Price stream callback failed for {symbol}")
