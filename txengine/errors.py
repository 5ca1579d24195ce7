# txengine/errors.py
from typing import Any, List, Optional


class TxEngineError(Exception):
    """Base exception for the transaction engine."""
    pass


class RpcError(TxEngineError):
    """Raised when the RPC node answers with a JSON-RPC error object."""

    def __init__(self, code: int, message: str, data: Any = None):
        self.code = code
        self.data = data
        super().__init__(f"RPC error {code}: {message}")


class TransportFailure(TxEngineError):
    """Raised when a single network attempt fails (socket closed, bad response)."""
    pass


class SimulationFailure(TxEngineError):
    """Raised when the pre-send dry run reports an error. Nothing was sent."""

    def __init__(self, err: Any, logs: Optional[List[str]] = None):
        self.err = err
        self.logs = logs or []
        super().__init__(f"Transaction simulation failed: {err}")


class ExpiryFailure(TxEngineError):
    """Raised when the block height passes the lease before confirmation."""

    def __init__(self, signature: str, block_height: int, last_valid_block_height: int):
        self.signature = signature
        self.block_height = block_height
        self.last_valid_block_height = last_valid_block_height
        super().__init__(
            f"Signature {signature} has expired: block height {block_height} "
            f"exceeded {last_valid_block_height}"
        )


class RecordNotFound(TxEngineError):
    """Raised when a confirmed transaction record never becomes visible."""

    def __init__(self, signature: str, attempts: int):
        self.signature = signature
        self.attempts = attempts
        super().__init__(f"Transaction {signature} not found after {attempts} attempts")


class ParseFailure(TxEngineError):
    """Raised when no swap legs can be extracted from a settled record."""
    pass


class FeeMintMismatch(TxEngineError):
    """Raised when a route hop's fee token is neither its input nor its output token."""

    def __init__(self, hop: Any):
        self.hop = hop
        super().__init__(f"Unknown fee mint {getattr(hop, 'fee_token', '?')} for hop {hop}")
