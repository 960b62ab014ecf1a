"""Binance spot collaborators: point-in-time prices, live prices, order fills.

None of this is needed for accounting itself. These are the concrete
implementations of what the engine takes as injected collaborators:

    - BinanceClient.price() is a price lookup for recompute_all()
    - BinanceFeed is a live price feed pushing best-ask ticks
    - trade_record_from_order() turns an order response into a store record

Only public market data endpoints are used, so no API keys are needed.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import aiohttp
import arrow  # type: ignore
import orjson
import websockets
from cachetools import TTLCache
from loguru import logger
from websockets.exceptions import WebSocketException

from tradebook.fees import CommissionPolicy, ExecutionPricePolicy
from tradebook.trade import Side, decimalOrZero, parseTimestamp

ENDPOINT_REST = "https://api.binance.com"
ENDPOINT_REST_TESTNET = "https://testnet.binance.vision"

ENDPOINT_STREAM = "wss://stream.binance.com:9443/ws"
ENDPOINT_STREAM_TESTNET = "wss://stream.testnet.binance.vision/ws"


class BinanceError(Exception):
    """Binance returned an error (or no usable data) for a request."""


def streamName(symbol: str) -> str:
    # https://developers.binance.com/docs/binance-spot-api-docs/web-socket-streams#individual-symbol-book-ticker-streams
    return f"{symbol.lower()}@bookTicker"


def priceFromBookTicker(data: Mapping) -> Decimal | None:
    """Best ask from a bookTicker update, or the close field of a ticker update."""
    for key in ("a", "c"):
        if price := decimalOrZero(data.get(key)):
            return price

    return None


@dataclass
class BinanceClient:
    testnet: bool = False

    # price lookups within this many seconds of each other share one request
    cacheSeconds: float = 2.0

    session: aiohttp.ClientSession | None = field(default=None, init=False)

    def __post_init__(self):
        self.endpoint = ENDPOINT_REST_TESTNET if self.testnet else ENDPOINT_REST
        self.prices: TTLCache = TTLCache(maxsize=1024, ttl=self.cacheSeconds)

    async def setup(self):
        self.session = aiohttp.ClientSession()

    async def shutdown(self):
        if self.session:
            await self.session.close()

        self.session = None

    async def get(self, path: str, **params) -> Any:
        assert self.session, "Must call setup() before making requests!"

        url = f"{self.endpoint}{path}"
        async with self.session.get(url, params=params) as got:
            body = await got.read()

            try:
                result = orjson.loads(body)
            except orjson.JSONDecodeError:
                raise BinanceError(f"HTTP {got.status}: non-JSON response from {path}")

            if got.status >= 300:
                msg = result.get("msg") if isinstance(result, dict) else None
                raise BinanceError(msg or f"HTTP {got.status}: {got.reason}")

            return result

    # https://developers.binance.com/docs/binance-spot-api-docs/rest-api/market-data-endpoints#symbol-price-ticker
    async def price(self, symbol: str) -> Decimal:
        symbol = symbol.upper()
        if (cached := self.prices.get(symbol)) is not None:
            return cached

        got = await self.get("/api/v3/ticker/price", symbol=symbol)
        price = decimalOrZero(got.get("price") if isinstance(got, dict) else None)
        if not price:
            raise BinanceError(f"[{symbol}] No price in ticker response: {got}")

        self.prices[symbol] = price
        return price

    async def ticker24hr(self, symbol: str) -> dict[str, Any]:
        return await self.get("/api/v3/ticker/24hr", symbol=symbol.upper())

    async def record_for_order(
        self,
        order: Mapping,
        symbol: str,
        side: Side | str,
        quantity,
        policy: CommissionPolicy | None = None,
    ) -> dict[str, Any]:
        """Like trade_record_from_order() but falls back to the current market
        price when the order response has no usable execution price at all."""
        record = trade_record_from_order(order, symbol, side, quantity, policy)
        if decimalOrZero(record["price"]):
            return record

        logger.warning("[{}] No execution price in order response, using market price", symbol)
        try:
            fallback = await self.price(symbol)
        except (BinanceError, aiohttp.ClientError) as e:
            logger.error("[{}] Failed to fetch fallback price: {}", symbol, e)
            return record

        return trade_record_from_order(order, symbol, side, quantity, policy, fallback)


def trade_record_from_order(
    order: Mapping,
    symbol: str,
    side: Side | str,
    quantity,
    policy: CommissionPolicy | None = None,
    fallbackPrice=None,
) -> dict[str, Any]:
    """Convert a Binance order response into a trade store record.

    Execution price comes from, in order: the order price, the first fill's
    price, cumulative quote quantity / executed quantity, 'fallbackPrice'.
    Market orders report a price of "0.00000000", which counts as missing.
    """
    policy = policy or ExecutionPricePolicy()
    symbol = symbol.upper()
    side = side if isinstance(side, Side) else Side[str(side).strip().upper()]
    fills = order.get("fills") or []

    price = decimalOrZero(order.get("price"))

    if not price and fills:
        price = decimalOrZero(fills[0].get("price"))

    if not price:
        executed = decimalOrZero(order.get("executedQty"))
        quote = decimalOrZero(order.get("cummulativeQuoteQty"))
        if executed and quote:
            price = quote / executed

    if not price:
        price = decimalOrZero(fallbackPrice)

    # a partially filled order only holds what actually executed
    qty = decimalOrZero(order.get("executedQty")) or decimalOrZero(quantity)

    commission = sum((decimalOrZero(f.get("commission")) for f in fills), Decimal(0))
    asset = next((f["commissionAsset"] for f in fills if f.get("commissionAsset")), "")

    effective = policy.effective_price(
        symbol, side is Side.BUY, price, qty, commission, asset
    )

    when = parseTimestamp(order.get("transactTime")) or arrow.utcnow().datetime

    record = dict(
        timestamp=when.isoformat(),
        symbol=symbol,
        side=side.name,
        quantity=str(qty),
        price=str(price),
        effectivePrice=str(effective),
        commission=str(commission),
        commissionAsset=asset,
        orderId=order.get("orderId"),
        status=order.get("status"),
        success=True,
        rawResponse=orjson.dumps(dict(order), default=str).decode(),
    )

    if order.get("orderId") is not None:
        record["sourceId"] = f"binance-{order['orderId']}"

    return record


def failed_trade_record(symbol: str, side: Side | str, quantity, error: str) -> dict[str, Any]:
    """Store record for an order attempt which never executed."""
    return dict(
        timestamp=arrow.utcnow().isoformat(),
        symbol=symbol.upper(),
        side=side.name if isinstance(side, Side) else str(side).upper(),
        quantity=str(quantity),
        error=error,
        success=False,
    )


@dataclass
class BinanceFeed:
    """Live best-ask prices over one websocket connection.

    subscribe()/unsubscribe() are plain functions so they can be called from
    anywhere (including engine commits); requests made while disconnected are
    held and sent on the next connect. run() owns the connection and
    reconnects with a linear backoff until it runs out of attempts.

    Usage:
        feed = BinanceFeed()
        feed.subscribe("BTCUSDT", print)
        await feed.run()
    """

    testnet: bool = False
    maxReconnectAttempts: int = 5
    reconnectDelay: float = 5.0

    def __post_init__(self):
        self.endpoint = ENDPOINT_STREAM_TESTNET if self.testnet else ENDPOINT_STREAM

        # stream name -> price callback
        self.subscribers: dict[str, Callable[[Decimal], Any]] = {}

        # streams subscribed while disconnected
        self.pending: set[str] = set()

        self.outbox: asyncio.Queue[str] = asyncio.Queue()
        self.cxn = None
        self.attempts = 0
        self.requestId = 0
        self.closing = False

    @property
    def connected(self) -> bool:
        return self.cxn is not None

    def request(self, method: str, streams: list[str]) -> str:
        self.requestId += 1
        return orjson.dumps(
            dict(method=method, params=streams, id=self.requestId)
        ).decode()

    def subscribe(self, symbol: str, on_tick: Callable[[Decimal], Any]) -> bool:
        """Deliver live prices for 'symbol' to 'on_tick'.

        Returns False when the stream was already subscribed (the callback is
        replaced, but no second subscription is created)."""
        stream = streamName(symbol)
        existing = stream in self.subscribers
        self.subscribers[stream] = on_tick

        if existing:
            return False

        if self.connected:
            self.outbox.put_nowait(self.request("SUBSCRIBE", [stream]))
        else:
            self.pending.add(stream)

        logger.info("Subscribed to {}", stream)
        return True

    def unsubscribe(self, symbol: str) -> bool:
        stream = streamName(symbol)
        self.pending.discard(stream)

        if self.subscribers.pop(stream, None) is None:
            return False

        if self.connected:
            self.outbox.put_nowait(self.request("UNSUBSCRIBE", [stream]))

        logger.info("Unsubscribed from {}", stream)
        return True

    def dispatch(self, raw: str | bytes) -> bool:
        """Route one websocket message to its subscriber.

        Returns True if a price was delivered."""
        try:
            msg = orjson.loads(raw)
        except orjson.JSONDecodeError:
            logger.warning("Unparseable stream message: {}", raw)
            return False

        if not isinstance(msg, dict):
            return False

        if "stream" in msg and isinstance(msg.get("data"), dict):
            # combined stream wrapper
            stream, data = msg["stream"], msg["data"]
        elif "s" in msg:
            stream, data = streamName(msg["s"]), msg
        elif "result" in msg:
            logger.debug("Stream request {} confirmed: {}", msg.get("id"), msg["result"])
            return False
        else:
            logger.debug("Unhandled stream message: {}", msg)
            return False

        if not (callback := self.subscribers.get(stream)):
            return False

        if (price := priceFromBookTicker(data)) is None:
            return False

        callback(price)
        return True

    async def connect(self):
        return await websockets.connect(
            self.endpoint,
            compression=None,
            ping_interval=20,
            ping_timeout=30,
            close_timeout=1,
            max_queue=2**16,
        )

    async def reader(self, cxn) -> None:
        async for raw in cxn:
            self.dispatch(raw)

    async def writer(self, cxn) -> None:
        while True:
            req = await self.outbox.get()
            await cxn.send(req)

    def _onConnect(self) -> None:
        # anything queued while down is superseded by subscribing everything now
        while not self.outbox.empty():
            self.outbox.get_nowait()

        self.pending.clear()
        if self.subscribers:
            logger.info("Subscribing to {} streams", len(self.subscribers))
            self.outbox.put_nowait(self.request("SUBSCRIBE", sorted(self.subscribers)))

    async def run(self) -> None:
        """Hold the stream connection open until close() or reconnects run out."""
        while not self.closing:
            try:
                cxn = await self.connect()
            except (OSError, WebSocketException) as e:
                logger.warning("Stream connect failed: {}", e)
            else:
                self.cxn = cxn
                self.attempts = 0
                logger.info("Connected to {}", self.endpoint)
                self._onConnect()

                tasks = [
                    asyncio.create_task(self.reader(cxn)),
                    asyncio.create_task(self.writer(cxn)),
                ]

                try:
                    done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
                    for task in done:
                        if (err := task.exception()) is not None:
                            logger.warning("Stream connection lost: {}", err)
                finally:
                    for task in tasks:
                        task.cancel()

                    self.cxn = None
                    await cxn.close()

            if self.closing:
                break

            self.attempts += 1
            if self.attempts > self.maxReconnectAttempts:
                logger.error(
                    "Giving up on {} after {} reconnect attempts",
                    self.endpoint,
                    self.maxReconnectAttempts,
                )
                return

            delay = self.reconnectDelay * self.attempts
            logger.info(
                "Reconnecting in {} seconds ({}/{})",
                delay,
                self.attempts,
                self.maxReconnectAttempts,
            )
            await asyncio.sleep(delay)

    async def close(self) -> None:
        self.closing = True
        self.subscribers.clear()
        self.pending.clear()

        if self.cxn:
            await self.cxn.close()
