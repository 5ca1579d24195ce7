# txengine/price_engine.py
import asyncio
import json
import logging
from typing import AsyncIterator, Callable, Dict, List, Optional

import aiohttp

from .models import PriceEntry


class PriceCache:
    """
    Latest USD price per token mint. Every read and write goes through one lock,
    so readers never see a half-applied update.
    """
    def __init__(self):
        self._prices: Dict[str, float] = {}
        self._lock = asyncio.Lock()

    async def get(self, token_id: str) -> Optional[float]:
        async with self._lock:
            return self._prices.get(token_id)

    async def set(self, token_id: str, price: float):
        async with self._lock:
            self._prices[token_id] = price

    async def entries(self) -> List[PriceEntry]:
        async with self._lock:
            return [PriceEntry(token_id, price) for token_id, price in self._prices.items()]

    async def snapshot(self) -> Dict[str, float]:
        async with self._lock:
            return dict(self._prices)


class PriceEngineStream:
    """
    Push-price websocket for a single token.
    Yields one price per inbound message until the socket closes.
    """
    def __init__(self, ws_url: str, token_id: str, decimals: int, logger: logging.Logger):
        self.ws_url = ws_url
        self.token_id = token_id
        self.decimals = decimals
        self.logger = logger

    async def prices(self, session: aiohttp.ClientSession) -> AsyncIterator[float]:
        params = {"token": self.token_id, "token_decimal": str(self.decimals)}
        async with session.ws_connect(self.ws_url, params=params) as ws:
            self.logger.info(f"📡 Price Engine WebSocket connection opened for {self.token_id}")
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    price = self._parse(msg.data)
                    if price is not None:
                        yield price
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    self.logger.error(f"Price Engine WebSocket error for {self.token_id}: {ws.exception()}")
                    break

    def _parse(self, raw: str) -> Optional[float]:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            data = None
        if not isinstance(data, dict):
            self.logger.warning(f"Dropping malformed price frame for {self.token_id}: {raw[:80]!r}")
            return None
        try:
            return float(data.get("price") or 0.0)
        except (TypeError, ValueError):
            self.logger.warning(f"Dropping price frame with non-numeric price for {self.token_id}: {raw[:80]!r}")
            return None


StreamFactory = Callable[[str, int], PriceEngineStream]


class PriceSubscriptionManager:
    """
    Keeps one supervised stream task per token feeding the PriceCache.

    Streams reconnect after a fixed delay on error or close, forever.
    There is no unsubscribe; shutdown() stops everything at process exit.
    """
    def __init__(self, ws_url: str, cache: PriceCache, logger: logging.Logger,
                 reconnect_delay: float = 1.0, stream_factory: Optional[StreamFactory] = None):
        self.ws_url = ws_url
        self.cache = cache
        self.logger = logger
        self.reconnect_delay = reconnect_delay
        self.stream_factory = stream_factory or self._default_stream
        self.running = True
        self._session: Optional[aiohttp.ClientSession] = None
        self._tasks: Dict[str, asyncio.Task] = {}

    def _default_stream(self, token_id: str, decimals: int) -> PriceEngineStream:
        return PriceEngineStream(self.ws_url, token_id, decimals, self.logger)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def ensure_subscribed(self, token_id: str, decimals: int):
        # No await between the check and the registration, so concurrent
        # callers on one loop cannot open a second stream for the same token.
        task = self._tasks.get(token_id)
        if task is not None and not task.done():
            self.logger.debug(f"Already subscribed to price stream for mint: {token_id}")
            return
        self._tasks[token_id] = asyncio.create_task(self._run_stream_forever(token_id, decimals))

    def subscribed_tokens(self) -> List[str]:
        return [token for token, task in self._tasks.items() if not task.done()]

    async def _run_stream_forever(self, token_id: str, decimals: int):
        while self.running:
            stream = self.stream_factory(token_id, decimals)
            try:
                async for price in stream.prices(self._get_session()):
                    await self.cache.set(token_id, price)
                self.logger.info(f"Price Engine WebSocket connection closed for {token_id}")
            except Exception as e:
                self.logger.error(f"Price Engine WebSocket error for {token_id}: {e}")
            if self.running:
                await asyncio.sleep(self.reconnect_delay)

    async def shutdown(self):
        self.running = False
        for task in self._tasks.values():
            task.cancel()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        if self._session:
            await self._session.close()
