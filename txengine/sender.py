# txengine/sender.py
import asyncio
import logging
import time
from typing import Any, Dict, Optional

from .errors import ExpiryFailure, RecordNotFound
from .gateway import TRANSIENT_ERRORS, SolanaGateway
from .models import BlockhashLease, ConfirmationOutcome, TransactionEnvelope

CONFIRMED_STATUSES = ("confirmed", "finalized")


class SubmissionEngine:
    """
    Lands one signed transaction before its blockhash expires.

    - Sends once, then keeps resending the same bytes on a timer.
    - Races a push notification against a status poll; first one wins.
    - Cancels every helper task on every exit path.
    - Fetches the settled record, retrying while the RPC catches up.

    Duplicate landings are harmless: every resend carries the same signature.
    """
    def __init__(self, logger: logging.Logger, resend_interval: float = 0.5, poll_interval: float = 0.5,
                 expiry_margin: int = 150, record_retries: int = 5, record_retry_delay: float = 0.5):
        self.logger = logger
        self.resend_interval = resend_interval
        self.poll_interval = poll_interval
        self.expiry_margin = expiry_margin
        self.record_retries = record_retries
        self.record_retry_delay = record_retry_delay

    async def submit_and_confirm(
        self,
        envelope: TransactionEnvelope,
        lease: BlockhashLease,
        primary: SolanaGateway,
        fast: Optional[SolanaGateway] = None,
    ) -> ConfirmationOutcome:
        """
        Returns a Confirmed, Expired or Failed outcome.

        Raises:
            RpcError: the first send was rejected outright.
            RecordNotFound: confirmed, but the record never became visible.
            Any unexpected error from the confirmation race.
        """
        started = time.perf_counter()
        sender = fast or primary
        signature = envelope.signature

        # 1. FIRST SEND (rejection here is fatal)
        await sender.send_raw(envelope.payload)

        # 2. BACKGROUND RESENDER + CONFIRMATION RACE
        effective_expiry = lease.effective_expiry(self.expiry_margin)
        resender = asyncio.create_task(self._resend_forever(sender, envelope))
        push = asyncio.create_task(sender.confirm_signal(signature, effective_expiry))
        poll = asyncio.create_task(self._poll_until_confirmed(sender, signature))

        try:
            done, _ = await asyncio.wait({push, poll}, return_when=asyncio.FIRST_COMPLETED)
            # Both may settle on the same tick; a success beats a failure.
            winner = next((t for t in (poll, push) if t in done and not t.exception()), None)
            if winner is None:
                winner = push if push in done else poll
            winner.result()
        except ExpiryFailure as e:
            self.logger.warning(f"⌛ EXPIRED: {signature} | {e}")
            return ConfirmationOutcome.expired(signature, self._elapsed_ms(started))
        finally:
            for task in (resender, push, poll):
                task.cancel()
            await asyncio.gather(resender, push, poll, return_exceptions=True)

        # 3. SETTLED RECORD
        record = await self._fetch_record(primary, signature)
        landing_time_ms = self._elapsed_ms(started)
        self.logger.info(f"submit_and_confirm() | {signature} | Time taken: {landing_time_ms:.0f} ms")

        err = (record.get("meta") or {}).get("err")
        if err:
            return ConfirmationOutcome.failed(signature, str(err), record=record, landing_time_ms=landing_time_ms)
        return ConfirmationOutcome.confirmed(signature, record, landing_time_ms)

    async def _resend_forever(self, gateway: SolanaGateway, envelope: TransactionEnvelope):
        while True:
            await asyncio.sleep(self.resend_interval)
            try:
                await gateway.send_raw(envelope.payload, skip_preflight=True)
            except TRANSIENT_ERRORS as e:
                self.logger.warning(f"Failed to resend transaction: {e}")

    async def _poll_until_confirmed(self, gateway: SolanaGateway, signature: str) -> Dict[str, Any]:
        # Covers a dead notification socket.
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                status = await gateway.poll_status(signature)
            except TRANSIENT_ERRORS as e:
                self.logger.warning(f"Signature status poll failed: {e}")
                continue
            if status and status.get("confirmationStatus") in CONFIRMED_STATUSES:
                return status

    async def _fetch_record(self, gateway: SolanaGateway, signature: str) -> Dict[str, Any]:
        attempts = self.record_retries + 1
        delay = self.record_retry_delay
        for attempt in range(attempts):
            try:
                record = await gateway.fetch_record(signature)
            except TRANSIENT_ERRORS as e:
                self.logger.warning(f"getTransaction attempt {attempt + 1} failed: {e}")
                record = None
            if record:
                return record
            if attempt < attempts - 1:
                await asyncio.sleep(delay)
                delay *= 2
        raise RecordNotFound(signature, attempts)

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return (time.perf_counter() - started) * 1000
