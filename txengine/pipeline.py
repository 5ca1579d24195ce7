# txengine/pipeline.py
import asyncio
import json
import logging
from collections import deque
from typing import Any, Deque, Dict, Optional, Sequence, Union

from .errors import SimulationFailure
from .gateway import GatewayRegistry, SolanaGateway
from .logger import MetricsAuditLogger
from .models import (
    ConfirmationOutcome, MessageContext, OutcomeStatus, SwapResult, TransactionEnvelope,
    TransactionMetrics, decode_message,
)
from .price_engine import PriceSubscriptionManager
from .sender import SubmissionEngine
from .swap_parser import SwapParser

EXPLORER_URL = "https://solscan.io/tx/{}"


def build_metrics(result: SwapResult, signature: str, landing_time: float, ctx: MessageContext) -> TransactionMetrics:
    return TransactionMetrics(
        client=ctx.client,
        vault_pubkey=ctx.vault,
        trade_pubkey=ctx.wallet,
        base_mint=ctx.base_mint,
        quote_mint=ctx.quote_mint,
        signature=signature,
        amount_in=result.amount_in_usd,
        amount_out=result.amount_out_usd,
        txn_fee=result.fee,
        swap_fee=ctx.swap_fees * result.amount_in_usd,
        transaction_pnl=result.pnl,
        transaction_landing_time=landing_time,
        base_token_price=result.base_token_price,
        quote_token_price=result.quote_token_price,
    )


class TransactionPipeline:
    """
    Ingestion-facing entry point: one message in, one submission, one parse,
    at most one metrics record out.
    """
    def __init__(self, registry: GatewayRegistry, engine: SubmissionEngine, parser: SwapParser,
                 subscriptions: PriceSubscriptionManager, sink: MetricsAuditLogger, logger: logging.Logger,
                 primary_url: str, fast_url: Optional[str] = None, history_size: int = 20):
        self.registry = registry
        self.engine = engine
        self.parser = parser
        self.subscriptions = subscriptions
        self.sink = sink
        self.logger = logger
        self.primary_url = primary_url
        self.fast_url = fast_url
        self.recent: Deque[TransactionMetrics] = deque(maxlen=history_size)

    def _gateways(self):
        primary = self.registry.resolve(self.primary_url)
        fast = self.registry.resolve(self.fast_url) if self.fast_url else None
        return primary, fast

    async def _simulate(self, gateway: SolanaGateway, envelope: TransactionEnvelope):
        result = await gateway.simulate(envelope.payload)
        if result.err:
            self.logger.error(f"Simulation Error: {json.dumps(result.err)}")
            raise SimulationFailure(result.err, result.logs)

    async def execute_transaction(self, envelope: TransactionEnvelope) -> ConfirmationOutcome:
        primary, fast = self._gateways()

        lease = await primary.latest_blockhash_lease()
        await self._simulate(primary, envelope)

        outcome = await self.engine.submit_and_confirm(envelope, lease, primary, fast)
        self._log_outcome(outcome)
        return outcome

    async def execute_batch(self, envelopes: Sequence[TransactionEnvelope]) -> list:
        """
        Submits several transactions that share one blockhash lease.
        Envelopes are not simulated; a rejected send surfaces as an exception in its slot.
        """
        primary, fast = self._gateways()
        lease = await primary.latest_blockhash_lease()

        results = await asyncio.gather(
            *(self.engine.submit_and_confirm(envelope, lease, primary, fast) for envelope in envelopes),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, ConfirmationOutcome):
                self._log_outcome(result)
            else:
                self.logger.error(f"Batch submission failed: {result!r}")
        self.logger.info(f"Batch Transactions: {len(results)} processed")
        return results

    def _log_outcome(self, outcome: ConfirmationOutcome):
        url = EXPLORER_URL.format(outcome.signature)
        if outcome.status is OutcomeStatus.CONFIRMED:
            self.logger.info(f"✅ LANDED: {url}")
        elif outcome.status is OutcomeStatus.EXPIRED:
            self.logger.error(f"Transaction not confirmed: {outcome.signature}")
        else:
            self.logger.error(f"Transaction Failed: {outcome.reason}")
            self.logger.error(url)

    async def process_message(self, message: Union[str, bytes, Dict[str, Any]]) -> Optional[TransactionMetrics]:
        data = decode_message(message)
        ctx = MessageContext.from_message(data)
        envelope = TransactionEnvelope.from_base64(data["txn"])

        await self.subscriptions.ensure_subscribed(ctx.base_mint, ctx.base_decimals)
        await self.subscriptions.ensure_subscribed(ctx.quote_mint, ctx.quote_decimals)

        outcome = await self.execute_transaction(envelope)
        if not outcome.is_confirmed:
            return None

        result = await self.parser.parse(
            envelope.signature, ctx.base_mint, ctx.base_decimals, ctx.quote_mint, ctx.quote_decimals,
        )
        if not result:
            self.logger.warning(f"Metrics unavailable for {envelope.signature}")
            return None

        metrics = build_metrics(result, envelope.signature, outcome.landing_time_ms, ctx)
        self.recent.append(metrics)
        await self.sink.store(metrics)
        return metrics

    async def consume(self, queue: asyncio.Queue):
        """
        Worker loop for queued messages. A failed message is logged and dropped;
        re-queueing is up to the producer.
        """
        while True:
            message = await queue.get()
            try:
                await self.process_message(message)
            except Exception as e:
                self.logger.error(f"Error processing message: {e!r}")
            finally:
                queue.task_done()
