# txengine/models.py
import base64
import binascii
import json
from dataclasses import dataclass, astuple
from enum import Enum
from typing import Any, Dict, Optional, Union

from solders.transaction import VersionedTransaction

SOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
SOL_DECIMALS = 9
USDC_DECIMALS = 6
LAMPORTS_PER_SOL = 1_000_000_000


def convert_to_unit(amount: float, decimals: int) -> int:
    return round(amount * 10 ** decimals)


def convert_to_decimal(amount: float, decimals: int) -> float:
    return amount / 10 ** decimals


class OutcomeStatus(Enum):
    """
    Terminal states of one submission attempt.
    """
    CONFIRMED = "CONFIRMED"
    EXPIRED = "EXPIRED"
    FAILED = "FAILED"


@dataclass(frozen=True, slots=True)
class TransactionEnvelope:
    """
    Signed, serialized transaction plus its primary signature.
    The signature is read once from the decoded payload and never recomputed.
    """
    payload: bytes
    signature: str

    @classmethod
    def from_bytes(cls, raw: bytes) -> "TransactionEnvelope":
        tx = VersionedTransaction.from_bytes(raw)
        return cls(payload=bytes(raw), signature=str(tx.signatures[0]))

    @classmethod
    def from_base64(cls, encoded: str) -> "TransactionEnvelope":
        try:
            raw = base64.b64decode(encoded, validate=True)
        except (binascii.Error, TypeError) as e:
            raise ValueError(f"transaction is not valid base64: {e}") from e
        return cls.from_bytes(raw)


@dataclass(frozen=True, slots=True)
class BlockhashLease:
    """
    A blockhash and the last block height at which it is still accepted.
    """
    blockhash: str
    last_valid_block_height: int

    def effective_expiry(self, margin: int) -> int:
        return self.last_valid_block_height - margin


@dataclass(frozen=True, slots=True)
class ConfirmationOutcome:
    status: OutcomeStatus
    signature: str
    record: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None
    landing_time_ms: float = 0.0

    @property
    def is_confirmed(self) -> bool:
        return self.status is OutcomeStatus.CONFIRMED

    @classmethod
    def confirmed(cls, signature: str, record: Dict[str, Any], landing_time_ms: float) -> "ConfirmationOutcome":
        return cls(OutcomeStatus.CONFIRMED, signature, record=record, landing_time_ms=landing_time_ms)

    @classmethod
    def expired(cls, signature: str, landing_time_ms: float) -> "ConfirmationOutcome":
        return cls(OutcomeStatus.EXPIRED, signature, landing_time_ms=landing_time_ms)

    @classmethod
    def failed(cls, signature: str, reason: str, record: Optional[Dict[str, Any]] = None,
               landing_time_ms: float = 0.0) -> "ConfirmationOutcome":
        return cls(OutcomeStatus.FAILED, signature, record=record, reason=reason, landing_time_ms=landing_time_ms)


@dataclass(slots=True)
class PriceEntry:
    token_id: str
    price: float


@dataclass(frozen=True, slots=True)
class RouteHop:
    """
    One leg of a quoted multi-hop route. Amounts are in raw token units.
    """
    input_token: str
    output_token: str
    in_amount: float
    out_amount: float
    fee_amount: float
    fee_token: str

    @classmethod
    def from_route_plan(cls, entry: Dict[str, Any]) -> "RouteHop":
        info = entry.get("swapInfo", entry)
        return cls(
            input_token=info["inputMint"],
            output_token=info["outputMint"],
            in_amount=float(info["inAmount"]),
            out_amount=float(info["outAmount"]),
            fee_amount=float(info["feeAmount"]),
            fee_token=info["feeMint"],
        )


@dataclass(frozen=True, slots=True)
class SwapEvent:
    """
    One hop of an aggregator route as logged by the program. Amounts are raw units.
    """
    amm: str
    input_mint: str
    input_amount: int
    output_mint: str
    output_amount: int


@dataclass(frozen=True, slots=True)
class SwapLeg:
    """
    Decimal-adjusted amounts of an executed swap.
    USD fields stay 0.0 when the record carries no valuation.
    """
    in_mint: str
    in_amount: float
    out_mint: str
    out_amount: float
    in_amount_usd: float = 0.0
    out_amount_usd: float = 0.0


@dataclass(frozen=True, slots=True)
class SwapResult:
    amount_in: float
    amount_out: float
    amount_in_usd: float
    amount_out_usd: float
    fee: float          # native units (SOL)
    fee_usd: float
    pnl: float
    total_spent: float
    base_token_price: float
    quote_token_price: float


class NotParsed:
    """Sentinel for 'metrics unavailable'. Falsy, single instance."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NOT_PARSED"


NOT_PARSED = NotParsed()

ParseOutcome = Union[SwapResult, NotParsed]


@dataclass(frozen=True, slots=True)
class TokenPair:
    base_mint: str
    base_decimals: int
    quote_mint: str
    quote_decimals: int

    def decimals_of(self, mint: str) -> Optional[int]:
        if mint == self.base_mint:
            return self.base_decimals
        if mint == self.quote_mint:
            return self.quote_decimals
        return None


@dataclass(frozen=True, slots=True)
class MessageContext:
    """
    Per-message identity and pair settings, built once and passed down the call chain.
    """
    client: str
    vault: str
    wallet: str
    base_mint: str
    quote_mint: str
    swap_fees: float
    base_decimals: int
    quote_decimals: int

    @classmethod
    def from_message(cls, data: Dict[str, Any]) -> "MessageContext":
        return cls(
            client=str(data["client"]),
            vault=str(data["vault"]),
            wallet=str(data["wallet"]),
            base_mint=data["baseMint"],
            quote_mint=data["quoteMint"],
            swap_fees=float(data.get("swapFees", 0.0)),
            base_decimals=int(data["baseDecimal"]),
            quote_decimals=int(data["quoteDecimal"]),
        )


def decode_message(message: Union[str, bytes, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(message, dict):
        return message
    return json.loads(message)


@dataclass(slots=True)
class TransactionMetrics:
    """
    Record handed to the persistence sink for each landed and parsed swap.
    amount_in / amount_out are USD values; txn_fee is in SOL.
    """
    client: str
    vault_pubkey: str
    trade_pubkey: str
    base_mint: str
    quote_mint: str
    signature: str
    amount_in: float
    amount_out: float
    txn_fee: float
    swap_fee: float
    transaction_pnl: float
    transaction_landing_time: float
    base_token_price: float
    quote_token_price: float

    HEADER = (
        "client_id", "vault_pubkey", "trade_pubkey", "base_mint", "quote_mint", "signature",
        "amount_in", "amount_out", "txn_fee", "swap_fee", "txn_pnl", "txn_land_time",
        "base_token_price", "quote_token_price",
    )

    def as_row(self) -> list:
        return list(astuple(self))
