# txengine/price_oracle.py
import logging
from typing import Any, Dict, Optional

import aiohttp

from .fees import allocate_fee
from .gateway import TRANSIENT_ERRORS, SolanaGateway
from .models import (
    SOL_MINT, USDC_DECIMALS, USDC_MINT, RouteHop, TokenPair,
    convert_to_decimal, convert_to_unit,
)
from .price_engine import PriceCache


class PriceOracle:
    """
    On-demand prices for mints the live cache does not cover.

    Lookup order: live cache, then a 1-token quote against USDC from the
    quote API, then the plain price API. Decimals for unknown mints come from
    the mint account and are memoised.
    """
    def __init__(self, cache: PriceCache, gateway: SolanaGateway, logger: logging.Logger,
                 quote_api: str, price_api: str, max_retries: int = 5, timeout: float = 10.0):
        self.cache = cache
        self.gateway = gateway
        self.logger = logger
        self.quote_api = quote_api.rstrip("/")
        self.price_api = price_api
        self.max_retries = max_retries
        self.timeout = timeout
        self._decimals: Dict[str, int] = {}
        self._session: Optional[aiohttp.ClientSession] = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self._session

    async def _get_json(self, url: str, params: Dict[str, str]) -> Any:
        async with self._get_session().get(url, params=params) as resp:
            resp.raise_for_status()
            return await resp.json(content_type=None)

    async def token_decimals(self, mint: str) -> int:
        if mint in self._decimals:
            return self._decimals[mint]
        try:
            decimals = await self.gateway.get_token_decimals(mint)
        except TRANSIENT_ERRORS as e:
            self.logger.error(f"Decimals lookup failed for {mint}: {e}")
            return -1
        if decimals is None:
            self.logger.warning(f"Mint account for {mint} is not parsed token data")
            return -1
        self._decimals[mint] = decimals
        return decimals

    async def quote(self, input_mint: str, output_mint: str, amount: int, slippage_bps: int) -> Dict[str, Any]:
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "autoSlippage": "true",
            "maxAutoSlippageBps": str(slippage_bps),
            "onlyDirectRoutes": "false",
            "asLegacyTransaction": "false",
            "restrictIntermediateTokens": "true",
        }
        return await self._get_json(f"{self.quote_api}/quote", params)

    async def price_from_engine(self, mint: str, pair: Optional[TokenPair] = None) -> float:
        cached = await self.cache.get(mint)
        if cached is not None:
            self.logger.debug(f"Using cached price for {mint}: {cached}")
            return cached

        decimals = pair.decimals_of(mint) if pair else None
        if decimals is None:
            decimals = await self.token_decimals(mint)
        amount_in = convert_to_unit(1, decimals)

        for attempt in range(self.max_retries + 1):
            try:
                quote = await self.quote(mint, USDC_MINT, amount_in, 10)
                price = convert_to_decimal(float(quote["outAmount"]), USDC_DECIMALS)
                self.logger.info(f"Token price for {mint}: {price}")
                return price
            except (*TRANSIENT_ERRORS, KeyError, ValueError) as e:
                self.logger.error(f"Quote attempt {attempt + 1} failed for {mint}: {e}")

        self.logger.info("Falling back to price API")
        return await self.price_from_jupiter(mint)

    async def price_from_jupiter(self, mint: str, vs_token: Optional[str] = None) -> float:
        """USD price of mint, or its price in units of vs_token when given. 0.0 when unavailable."""
        params = {"ids": mint}
        if vs_token:
            params["vsToken"] = vs_token
        for attempt in range(self.max_retries + 1):
            try:
                data = await self._get_json(self.price_api, params)
                price = float(data["data"][mint]["price"])
                self.logger.info(f"Token price for {mint}: {price}")
                return price
            except (*TRANSIENT_ERRORS, KeyError, TypeError, ValueError) as e:
                self.logger.error(f"Price API attempt {attempt + 1} failed for {mint}: {e}")
        return 0.0

    async def native_token_price(self) -> float:
        cached = await self.cache.get(SOL_MINT)
        if cached is not None:
            return cached
        return await self.price_from_jupiter(SOL_MINT)

    async def estimate_swap_fee(self, input_mint: str, output_mint: str, amount: int, slippage_bps: int) -> float:
        """Route fee for swapping `amount` raw units, in raw input units."""
        quote = await self.quote(input_mint, output_mint, amount, slippage_bps)
        route = [RouteHop.from_route_plan(entry) for entry in quote.get("routePlan", [])]
        return allocate_fee(amount, route)

    async def shutdown(self):
        if self._session:
            await self._session.close()
