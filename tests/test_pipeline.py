import asyncio
import base64
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from txengine.errors import RpcError, SimulationFailure
from txengine.gateway import SimulationResult
from txengine.models import (
    NOT_PARSED, BlockhashLease, ConfirmationOutcome, SwapResult, TransactionEnvelope,
)
from txengine.pipeline import TransactionPipeline

PRIMARY_URL = "https://primary.example"
FAST_URL = "https://fast.example"

RESULT = SwapResult(
    amount_in=100.0,
    amount_out=2.0,
    amount_in_usd=100.0,
    amount_out_usd=102.0,
    fee=0.000005,
    fee_usd=0.0005,
    pnl=102.0 - 100.0005,
    total_spent=100.0005,
    base_token_price=51.0,
    quote_token_price=1.0,
)


def _gateway(sim_err=None):
    gateway = MagicMock()
    gateway.latest_blockhash_lease = AsyncMock(return_value=BlockhashLease("H", 1_000))
    gateway.simulate = AsyncMock(return_value=SimulationResult(sim_err, ["Program log: x"]))
    return gateway


def _pipeline(logger, gateways, outcome=None, parse_result=RESULT, fast_url=None):
    registry = MagicMock()
    registry.resolve = MagicMock(side_effect=lambda url: gateways[url])
    engine = MagicMock()
    engine.submit_and_confirm = AsyncMock(side_effect=lambda env, *_: outcome or ConfirmationOutcome.confirmed(
        env.signature, {"meta": {"err": None}}, 420.0))
    parser = MagicMock()
    parser.parse = AsyncMock(return_value=parse_result)
    subscriptions = MagicMock()
    subscriptions.ensure_subscribed = AsyncMock()
    sink = MagicMock()
    sink.store = AsyncMock()
    return TransactionPipeline(registry, engine, parser, subscriptions, sink, logger,
                               primary_url=PRIMARY_URL, fast_url=fast_url)


def _message(tx_bytes, **overrides):
    message = {
        "client": "client-1",
        "vault": "Vault1",
        "wallet": "Wallet1",
        "baseMint": "MintA",
        "quoteMint": "MintB",
        "swapFees": 0.003,
        "baseDecimal": 9,
        "quoteDecimal": 6,
        "txn": base64.b64encode(tx_bytes).decode(),
    }
    message.update(overrides)
    return message


@pytest.mark.asyncio
async def test_message_produces_metrics(logger, signed_tx_bytes):
    pipeline = _pipeline(logger, {PRIMARY_URL: _gateway()})
    signature = TransactionEnvelope.from_bytes(signed_tx_bytes).signature

    metrics = await pipeline.process_message(_message(signed_tx_bytes))

    assert metrics.signature == signature
    assert metrics.client == "client-1"
    assert metrics.swap_fee == pytest.approx(0.003 * RESULT.amount_in_usd)
    assert metrics.transaction_pnl == pytest.approx(RESULT.amount_out_usd - (RESULT.fee_usd + RESULT.amount_in_usd))
    assert metrics.amount_in == RESULT.amount_in_usd
    assert metrics.txn_fee == RESULT.fee
    assert metrics.transaction_landing_time == 420.0

    pipeline.subscriptions.ensure_subscribed.assert_any_await("MintA", 9)
    pipeline.subscriptions.ensure_subscribed.assert_any_await("MintB", 6)
    pipeline.engine.submit_and_confirm.assert_awaited_once()
    pipeline.parser.parse.assert_awaited_once_with(signature, "MintA", 9, "MintB", 6)
    pipeline.sink.store.assert_awaited_once_with(metrics)
    assert list(pipeline.recent) == [metrics]


@pytest.mark.asyncio
async def test_json_text_message_is_accepted(logger, signed_tx_bytes):
    pipeline = _pipeline(logger, {PRIMARY_URL: _gateway()})
    metrics = await pipeline.process_message(json.dumps(_message(signed_tx_bytes)).encode())

    assert metrics is not None


@pytest.mark.asyncio
async def test_simulation_error_sends_nothing(logger, signed_tx_bytes):
    pipeline = _pipeline(logger, {PRIMARY_URL: _gateway(sim_err={"InstructionError": [0, "Custom"]})})

    with pytest.raises(SimulationFailure) as exc:
        await pipeline.execute_transaction(TransactionEnvelope.from_bytes(signed_tx_bytes))

    assert exc.value.logs == ["Program log: x"]
    pipeline.engine.submit_and_confirm.assert_not_awaited()


@pytest.mark.asyncio
async def test_unconfirmed_transaction_has_no_metrics(logger, signed_tx_bytes):
    outcome = ConfirmationOutcome.expired("sig", 1_000.0)
    pipeline = _pipeline(logger, {PRIMARY_URL: _gateway()}, outcome=outcome)

    assert await pipeline.process_message(_message(signed_tx_bytes)) is None
    pipeline.parser.parse.assert_not_awaited()
    pipeline.sink.store.assert_not_awaited()


@pytest.mark.asyncio
async def test_unparsed_swap_has_no_metrics(logger, signed_tx_bytes):
    pipeline = _pipeline(logger, {PRIMARY_URL: _gateway()}, parse_result=NOT_PARSED)

    assert await pipeline.process_message(_message(signed_tx_bytes)) is None
    pipeline.sink.store.assert_not_awaited()
    assert not pipeline.recent


@pytest.mark.asyncio
async def test_fast_gateway_is_passed_to_engine(logger, signed_tx_bytes):
    primary, fast = _gateway(), _gateway()
    pipeline = _pipeline(logger, {PRIMARY_URL: primary, FAST_URL: fast}, fast_url=FAST_URL)
    envelope = TransactionEnvelope.from_bytes(signed_tx_bytes)

    await pipeline.execute_transaction(envelope)

    lease = primary.latest_blockhash_lease.return_value
    pipeline.engine.submit_and_confirm.assert_awaited_once_with(envelope, lease, primary, fast)
    fast.simulate.assert_not_awaited()


@pytest.mark.asyncio
async def test_batch_shares_one_lease(logger):
    gateway = _gateway()
    pipeline = _pipeline(logger, {PRIMARY_URL: gateway})
    ok = TransactionEnvelope(b"one", "sig-1")
    rejected = TransactionEnvelope(b"two", "sig-2")

    async def submit(envelope, *_):
        if envelope is rejected:
            raise RpcError(-32002, "Blockhash not found")
        return ConfirmationOutcome.confirmed(envelope.signature, {}, 10.0)

    pipeline.engine.submit_and_confirm = AsyncMock(side_effect=submit)

    results = await pipeline.execute_batch([ok, rejected])

    assert results[0].is_confirmed
    assert isinstance(results[1], RpcError)
    gateway.latest_blockhash_lease.assert_awaited_once()


@pytest.mark.asyncio
async def test_consumer_survives_failed_message(logger):
    pipeline = _pipeline(logger, {PRIMARY_URL: _gateway()})
    pipeline.process_message = AsyncMock(side_effect=[ValueError("bad txn"), None])
    queue = asyncio.Queue()
    await queue.put({"txn": "bad"})
    await queue.put({"txn": "good"})

    worker = asyncio.create_task(pipeline.consume(queue))
    try:
        await asyncio.wait_for(queue.join(), timeout=1)
    finally:
        worker.cancel()
        await asyncio.gather(worker, return_exceptions=True)

    assert pipeline.process_message.await_count == 2
