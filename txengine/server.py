# txengine/server.py
import asyncio
import json
import logging

from aiohttp import web

from .errors import FeeMintMismatch, SimulationFailure
from .models import OutcomeStatus, TransactionEnvelope
from .pipeline import TransactionPipeline
from .price_engine import PriceCache
from .price_oracle import PriceOracle

PIPELINE_KEY = web.AppKey("pipeline", TransactionPipeline)
QUEUE_KEY = web.AppKey("queue", asyncio.Queue)
CACHE_KEY = web.AppKey("cache", PriceCache)
ORACLE_KEY = web.AppKey("oracle", PriceOracle)
LOGGER_KEY = web.AppKey("logger", logging.Logger)


async def submit_transaction(request: web.Request) -> web.Response:
    logger = request.app[LOGGER_KEY]
    try:
        body = await request.json()
        envelope = TransactionEnvelope.from_base64(body["transaction"])
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        return web.json_response({"error": f"Invalid transaction object: {e}"}, status=400)

    try:
        outcome = await request.app[PIPELINE_KEY].execute_transaction(envelope)
    except SimulationFailure as e:
        return web.json_response({"error": str(e), "logs": e.logs}, status=422)
    except Exception as e:
        logger.error(f"Error processing transaction: {e!r}")
        return web.json_response({"error": "Failed to process transaction"}, status=500)

    if outcome.status is OutcomeStatus.CONFIRMED:
        result = outcome.signature
    elif outcome.status is OutcomeStatus.EXPIRED:
        result = "expired"
    else:
        result = "failed"

    return web.json_response({
        "message": "Transaction received successfully",
        "signature": envelope.signature,
        "result": result,
        "landing_time_ms": outcome.landing_time_ms,
    })


async def enqueue_message(request: web.Request) -> web.Response:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        return web.json_response({"error": "Body must be JSON"}, status=400)
    if not isinstance(body, dict) or "txn" not in body:
        return web.json_response({"error": "Message must carry a 'txn' field"}, status=400)

    await request.app[QUEUE_KEY].put(body)
    return web.json_response({"queued": True}, status=202)


async def get_prices(request: web.Request) -> web.Response:
    return web.json_response({
        "prices": await request.app[CACHE_KEY].snapshot(),
        "subscribed": request.app[PIPELINE_KEY].subscriptions.subscribed_tokens(),
    })


async def get_token_price(request: web.Request) -> web.Response:
    mint = request.match_info["mint"]
    vs_token = request.query.get("vsToken")
    price = await request.app[ORACLE_KEY].price_from_jupiter(mint, vs_token)
    return web.json_response({"mint": mint, "vsToken": vs_token, "price": price})


async def estimate_fee(request: web.Request) -> web.Response:
    """Route fee for a prospective swap, in raw input units."""
    query = request.query
    try:
        input_mint = query["inputMint"]
        output_mint = query["outputMint"]
        amount = int(query["amount"])
        slippage_bps = int(query.get("slippageBps", 50))
    except (KeyError, ValueError) as e:
        return web.json_response({"error": f"Invalid fee query: {e}"}, status=400)

    try:
        fee = await request.app[ORACLE_KEY].estimate_swap_fee(input_mint, output_mint, amount, slippage_bps)
    except FeeMintMismatch as e:
        return web.json_response({"error": str(e)}, status=422)
    except Exception as e:
        request.app[LOGGER_KEY].error(f"Fee estimate failed: {e!r}")
        return web.json_response({"error": "Failed to estimate fee"}, status=502)

    return web.json_response({"inputMint": input_mint, "outputMint": output_mint, "amount": amount, "fee": fee})


def create_app(pipeline: TransactionPipeline, queue: asyncio.Queue, cache: PriceCache,
               oracle: PriceOracle, logger: logging.Logger) -> web.Application:
    app = web.Application()
    app[PIPELINE_KEY] = pipeline
    app[QUEUE_KEY] = queue
    app[CACHE_KEY] = cache
    app[ORACLE_KEY] = oracle
    app[LOGGER_KEY] = logger
    app.router.add_post("/transactions", submit_transaction)
    app.router.add_post("/messages", enqueue_message)
    app.router.add_get("/prices", get_prices)
    app.router.add_get("/prices/{mint}", get_token_price)
    app.router.add_get("/fees", estimate_fee)
    return app
