from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from txengine.models import SOL_MINT, USDC_MINT, TokenPair
from txengine.price_engine import PriceCache
from txengine.price_oracle import PriceOracle

MINT = "MintA"


def _oracle(logger, cache=None, gateway=None):
    return PriceOracle(
        cache or PriceCache(), gateway or MagicMock(), logger,
        quote_api="https://quote.example/v6/", price_api="https://price.example", max_retries=1,
    )


@pytest.mark.asyncio
async def test_cached_price_skips_network(logger):
    cache = PriceCache()
    await cache.set(MINT, 2.5)
    oracle = _oracle(logger, cache)
    oracle.quote = AsyncMock()

    assert await oracle.price_from_engine(MINT) == 2.5
    oracle.quote.assert_not_awaited()


@pytest.mark.asyncio
async def test_quotes_one_token_against_usdc(logger):
    oracle = _oracle(logger)
    oracle.quote = AsyncMock(return_value={"outAmount": "150250000"})

    price = await oracle.price_from_engine(MINT, TokenPair(MINT, 9, USDC_MINT, 6))

    assert price == pytest.approx(150.25)
    oracle.quote.assert_awaited_once_with(MINT, USDC_MINT, 1_000_000_000, 10)


@pytest.mark.asyncio
async def test_unknown_mint_decimals_are_looked_up_once(logger):
    gateway = MagicMock()
    gateway.get_token_decimals = AsyncMock(return_value=6)
    oracle = _oracle(logger, gateway=gateway)
    oracle.quote = AsyncMock(return_value={"outAmount": "1000000"})

    await oracle.price_from_engine(MINT)
    await oracle.price_from_engine(MINT)

    gateway.get_token_decimals.assert_awaited_once_with(MINT)
    assert oracle.quote.await_args.args[2] == 1_000_000


@pytest.mark.asyncio
async def test_missing_decimals_report_minus_one(logger):
    gateway = MagicMock()
    gateway.get_token_decimals = AsyncMock(return_value=None)
    oracle = _oracle(logger, gateway=gateway)

    assert await oracle.token_decimals(MINT) == -1


@pytest.mark.asyncio
async def test_falls_back_to_price_api_after_quote_failures(logger):
    oracle = _oracle(logger)
    oracle.quote = AsyncMock(side_effect=aiohttp.ClientError("503"))
    oracle.price_from_jupiter = AsyncMock(return_value=3.0)

    assert await oracle.price_from_engine(MINT, TokenPair(MINT, 9, USDC_MINT, 6)) == 3.0
    assert oracle.quote.await_count == 2


@pytest.mark.asyncio
async def test_price_api_response_and_exhaustion(logger):
    oracle = _oracle(logger)
    oracle._get_json = AsyncMock(return_value={"data": {MINT: {"id": MINT, "price": "1.5"}}})
    assert await oracle.price_from_jupiter(MINT) == 1.5
    oracle._get_json.assert_awaited_once_with("https://price.example", {"ids": MINT})

    oracle._get_json = AsyncMock(return_value={"data": {}})
    assert await oracle.price_from_jupiter(MINT) == 0.0
    assert oracle._get_json.await_count == 2


@pytest.mark.asyncio
async def test_price_api_quoted_in_another_token(logger):
    oracle = _oracle(logger)
    oracle._get_json = AsyncMock(return_value={"data": {MINT: {"id": MINT, "vsToken": SOL_MINT, "price": 0.02}}})

    assert await oracle.price_from_jupiter(MINT, SOL_MINT) == 0.02
    oracle._get_json.assert_awaited_once_with("https://price.example", {"ids": MINT, "vsToken": SOL_MINT})


@pytest.mark.asyncio
async def test_native_price_prefers_cache(logger):
    cache = PriceCache()
    await cache.set(SOL_MINT, 140.0)
    oracle = _oracle(logger, cache)
    oracle.price_from_jupiter = AsyncMock()

    assert await oracle.native_token_price() == 140.0
    oracle.price_from_jupiter.assert_not_awaited()


@pytest.mark.asyncio
async def test_estimate_swap_fee_from_route_plan(logger):
    oracle = _oracle(logger)
    oracle.quote = AsyncMock(return_value={"routePlan": [
        {"swapInfo": {"inputMint": "A", "outputMint": "B", "inAmount": "100",
                      "outAmount": "100", "feeAmount": "1", "feeMint": "A"}},
        {"swapInfo": {"inputMint": "B", "outputMint": "C", "inAmount": "100",
                      "outAmount": "100", "feeAmount": "1", "feeMint": "C"}},
    ]})

    assert await oracle.estimate_swap_fee("A", "C", 10_000, 50) == pytest.approx(199.0)
