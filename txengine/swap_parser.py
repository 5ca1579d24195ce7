# txengine/swap_parser.py
import asyncio
import hashlib
import logging
import struct
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

import base58
from solders.pubkey import Pubkey

from .errors import ParseFailure, RecordNotFound
from .gateway import TRANSIENT_ERRORS, SolanaGateway
from .models import (
    LAMPORTS_PER_SOL, NOT_PARSED, SOL_DECIMALS, SOL_MINT, ParseOutcome, SwapEvent, SwapLeg,
    SwapResult, TokenPair, convert_to_decimal,
)
from .price_oracle import PriceOracle

JUPITER_V6_PROGRAM_ID = "JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4"

# Anchor self-CPI event: tag, event discriminator, then the borsh body
# (amm, input_mint, input_amount u64, output_mint, output_amount u64).
EVENT_IX_TAG = hashlib.sha256(b"anchor:event").digest()[:8]
SWAP_EVENT_DISCRIMINATOR = hashlib.sha256(b"event:SwapEvent").digest()[:8]
_SWAP_EVENT_PREFIX = EVENT_IX_TAG + SWAP_EVENT_DISCRIMINATOR
_SWAP_EVENT_BODY = struct.Struct("<32s32sQ32sQ")

DecimalsLookup = Callable[[str], Awaitable[int]]
PriceLookup = Callable[[str], Awaitable[float]]


class SwapExtractor(Protocol):
    async def extract(self, record: Dict[str, Any]) -> List[SwapLeg]:
        ...


def decode_swap_event(data: bytes) -> Optional[SwapEvent]:
    if not data.startswith(_SWAP_EVENT_PREFIX):
        return None
    if len(data) < len(_SWAP_EVENT_PREFIX) + _SWAP_EVENT_BODY.size:
        return None
    amm, input_mint, input_amount, output_mint, output_amount = _SWAP_EVENT_BODY.unpack_from(
        data, len(_SWAP_EVENT_PREFIX))
    return SwapEvent(
        amm=str(Pubkey.from_bytes(amm)),
        input_mint=str(Pubkey.from_bytes(input_mint)),
        input_amount=input_amount,
        output_mint=str(Pubkey.from_bytes(output_mint)),
        output_amount=output_amount,
    )


def _record_decimals(meta: Dict[str, Any]) -> Dict[str, int]:
    decimals = {SOL_MINT: SOL_DECIMALS}
    for key in ("preTokenBalances", "postTokenBalances"):
        for balance in meta.get(key) or []:
            decimals[balance["mint"]] = int(balance["uiTokenAmount"]["decimals"])
    return decimals


class SwapEventExtractor:
    """
    Reads the executed route from the aggregator's SwapEvent logs in
    meta.innerInstructions.

    The first hop's input mint and the last hop's output mint define the trade;
    split routes are summed per side. Mint decimals come from the record's token
    balances, then from decimals_lookup. When usd_price is given, legs carry a
    USD valuation. Records without events go to the fallback extractor.
    """
    def __init__(self, decimals_lookup: Optional[DecimalsLookup] = None, usd_price: Optional[PriceLookup] = None,
                 fallback: Optional[SwapExtractor] = None, program_id: str = JUPITER_V6_PROGRAM_ID):
        self.decimals_lookup = decimals_lookup
        self.usd_price = usd_price
        self.fallback = fallback
        self.program_id = program_id

    def swap_events(self, record: Dict[str, Any]) -> List[SwapEvent]:
        events = []
        for inner in (record.get("meta") or {}).get("innerInstructions") or []:
            for ix in inner.get("instructions") or []:
                if ix.get("programId") != self.program_id or "data" not in ix:
                    continue
                event = decode_swap_event(base58.b58decode(ix["data"]))
                if event is not None:
                    events.append(event)
        return events

    async def extract(self, record: Dict[str, Any]) -> List[SwapLeg]:
        events = self.swap_events(record)
        if not events:
            return await self.fallback.extract(record) if self.fallback else []

        in_mint = events[0].input_mint
        out_mint = events[-1].output_mint
        raw_in = sum(e.input_amount for e in events if e.input_mint == in_mint)
        raw_out = sum(e.output_amount for e in events if e.output_mint == out_mint)

        known = _record_decimals(record.get("meta") or {})
        in_amount = convert_to_decimal(raw_in, await self._decimals(in_mint, known))
        out_amount = convert_to_decimal(raw_out, await self._decimals(out_mint, known))

        return [SwapLeg(
            in_mint, in_amount, out_mint, out_amount,
            in_amount_usd=await self._usd(in_mint, in_amount),
            out_amount_usd=await self._usd(out_mint, out_amount),
        )]

    async def _decimals(self, mint: str, known: Dict[str, int]) -> int:
        if mint in known:
            return known[mint]
        decimals = await self.decimals_lookup(mint) if self.decimals_lookup else -1
        if decimals is None or decimals < 0:
            raise ParseFailure(f"unknown decimals for mint {mint}")
        return decimals

    async def _usd(self, mint: str, amount: float) -> float:
        if not self.usd_price:
            return 0.0
        return amount * await self.usd_price(mint)


class BalanceDeltaExtractor:
    """
    Reads the executed swap from the fee payer's balance changes in a
    jsonParsed record. Used for records that carry no aggregator events.

    Token legs come from pre/postTokenBalances owned by the payer. Native SOL
    (net of the transaction fee) only fills a side that no token account
    covers, since wrapped SOL is usually opened and closed inside the swap.
    No valuation is embedded, so USD fields stay 0.0.
    """

    async def extract(self, record: Dict[str, Any]) -> List[SwapLeg]:
        meta = record.get("meta") or {}
        owner = self._fee_payer(record)
        if owner is None:
            return []

        raw: Dict[str, int] = {}
        decimals: Dict[str, int] = {}
        for sign, key in ((-1, "preTokenBalances"), (1, "postTokenBalances")):
            for balance in meta.get(key) or []:
                if balance.get("owner") != owner:
                    continue
                mint = balance["mint"]
                ui = balance["uiTokenAmount"]
                raw[mint] = raw.get(mint, 0) + sign * int(ui["amount"])
                decimals[mint] = int(ui["decimals"])

        deltas = {mint: amount / 10 ** decimals[mint] for mint, amount in raw.items() if amount}
        spent = {m: d for m, d in deltas.items() if d < 0}
        received = {m: d for m, d in deltas.items() if d > 0}

        if not spent or not received:
            native = self._native_delta(meta)
            if native < 0 and not spent:
                spent[SOL_MINT] = native
            elif native > 0 and not received:
                received[SOL_MINT] = native

        if not spent or not received:
            return []

        in_mint = min(spent, key=spent.get)
        out_mint = max(received, key=received.get)
        return [SwapLeg(in_mint, -spent[in_mint], out_mint, received[out_mint])]

    @staticmethod
    def _fee_payer(record: Dict[str, Any]) -> Optional[str]:
        keys = (record.get("transaction") or {}).get("message", {}).get("accountKeys") or []
        if not keys:
            return None
        first = keys[0]
        return first["pubkey"] if isinstance(first, dict) else first

    @staticmethod
    def _native_delta(meta: Dict[str, Any]) -> float:
        pre = meta.get("preBalances") or []
        post = meta.get("postBalances") or []
        if not pre or not post:
            return 0.0
        lamports = post[0] - pre[0] + int(meta.get("fee") or 0)
        return lamports / LAMPORTS_PER_SOL


class SwapParser:
    """
    Turns a landed swap into amounts, USD values, fee and PnL.

    A record that never shows up raises RecordNotFound. Everything else that
    goes wrong yields NOT_PARSED: metrics are unavailable, the swap still landed.
    """
    def __init__(self, gateway: SolanaGateway, oracle: PriceOracle, logger: logging.Logger,
                 extractor: Optional[SwapExtractor] = None, max_attempts: int = 10, retry_delay: float = 1.0):
        self.gateway = gateway
        self.oracle = oracle
        self.logger = logger
        self.extractor = extractor or SwapEventExtractor(
            decimals_lookup=oracle.token_decimals,
            usd_price=oracle.price_from_jupiter,
            fallback=BalanceDeltaExtractor(),
        )
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

    async def parse(self, signature: str, base_mint: str, base_decimals: int,
                    quote_mint: str, quote_decimals: int) -> ParseOutcome:
        started = time.perf_counter()
        record = await self._await_record(signature)
        pair = TokenPair(base_mint, base_decimals, quote_mint, quote_decimals)

        try:
            legs = await self.extractor.extract(record)
            if not legs:
                raise ParseFailure(f"no swap legs found in {signature}")
            leg = legs[0]

            amount_in_usd = await self._usd_value(leg.in_mint, leg.in_amount, leg.in_amount_usd, pair)
            amount_out_usd = await self._usd_value(leg.out_mint, leg.out_amount, leg.out_amount_usd, pair)

            in_price = _unit_price(amount_in_usd, leg.in_amount)
            out_price = _unit_price(amount_out_usd, leg.out_amount)
            if leg.in_mint == base_mint:
                base_token_price, quote_token_price = in_price, out_price
            elif leg.out_mint == base_mint:
                base_token_price, quote_token_price = out_price, in_price
            else:
                self.logger.warning(
                    f"Base mint {base_mint} is neither leg of {signature} "
                    f"({leg.in_mint} -> {leg.out_mint}); treating the output as base"
                )
                base_token_price, quote_token_price = out_price, in_price

            fee = record["meta"]["fee"] / LAMPORTS_PER_SOL
            fee_usd = fee * await self.oracle.native_token_price()

            total_spent = fee_usd + amount_in_usd
            pnl = amount_out_usd - total_spent
        except Exception as e:
            self.logger.error(f"Failed to parse swap {signature}: {e!r}")
            return NOT_PARSED

        self.logger.info(f"parse() | {signature} | Time taken: {(time.perf_counter() - started) * 1000:.0f} ms")
        return SwapResult(
            amount_in=leg.in_amount,
            amount_out=leg.out_amount,
            amount_in_usd=amount_in_usd,
            amount_out_usd=amount_out_usd,
            fee=fee,
            fee_usd=fee_usd,
            pnl=pnl,
            total_spent=total_spent,
            base_token_price=base_token_price,
            quote_token_price=quote_token_price,
        )

    async def _await_record(self, signature: str) -> Dict[str, Any]:
        for attempt in range(self.max_attempts):
            await asyncio.sleep(self.retry_delay)
            try:
                record = await self.gateway.fetch_parsed_record(signature)
            except TRANSIENT_ERRORS as e:
                self.logger.warning(f"getParsedTransaction attempt {attempt + 1} failed: {e}")
                continue
            if record:
                return record
            self.logger.info("getParsedTransaction() response is null, retrying...")
        raise RecordNotFound(signature, self.max_attempts)

    async def _usd_value(self, mint: str, amount: float, embedded_usd: float, pair: TokenPair) -> float:
        if embedded_usd:
            return embedded_usd
        price = await self.oracle.price_from_engine(mint, pair)
        return amount * price


def _unit_price(usd: float, amount: float) -> float:
    return usd / amount if amount else 0.0
