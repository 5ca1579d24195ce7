# txengine/gateway.py
import asyncio
import base64
import itertools
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp

from .errors import ExpiryFailure, RpcError, TransportFailure
from .models import BlockhashLease

COMMITMENT = "confirmed"

# Failures of a single network attempt. Loops that retry on a timer catch these.
TRANSIENT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, RpcError, TransportFailure)


@dataclass(slots=True)
class SimulationResult:
    err: Any
    logs: List[str] = field(default_factory=list)


def http_to_ws(url: str) -> str:
    if url.startswith("https://"):
        return "wss://" + url[len("https://"):]
    if url.startswith("http://"):
        return "ws://" + url[len("http://"):]
    return url


class SolanaGateway:
    """
    Async JSON-RPC client for a single Solana endpoint.

    All HTTP calls share one keep-alive session with a bounded connector.
    Signature notifications open a websocket per confirmation wait.
    """
    def __init__(self, url: str, logger: logging.Logger, ws_url: Optional[str] = None,
                 max_connections: int = 10, timeout: float = 30.0, height_poll_interval: float = 0.5):
        self.url = url
        self.ws_url = ws_url or http_to_ws(url)
        self.logger = logger
        self.max_connections = max_connections
        self.timeout = timeout
        self.height_poll_interval = height_poll_interval
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws_session: Optional[aiohttp.ClientSession] = None
        self._ids = itertools.count(1)

    def _get_session(self) -> aiohttp.ClientSession:
        # Created lazily: aiohttp connectors need a running loop.
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=self.max_connections, keepalive_timeout=60)
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    def _get_ws_session(self) -> aiohttp.ClientSession:
        # Notification sockets hold a connection for the whole wait: kept off the bounded RPC pool.
        if self._ws_session is None or self._ws_session.closed:
            self._ws_session = aiohttp.ClientSession(connector=aiohttp.TCPConnector(limit=0))
        return self._ws_session

    async def _rpc(self, method: str, params: list) -> Any:
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        async with self._get_session().post(self.url, json=body) as resp:
            resp.raise_for_status()
            data = await resp.json(content_type=None)

        error = data.get("error")
        if error:
            raise RpcError(error.get("code", -1), error.get("message", ""), error.get("data"))
        return data.get("result")

    # ---------- requests ----------

    async def send_raw(self, payload: bytes, skip_preflight: bool = False) -> str:
        opts = {
            "encoding": "base64",
            "skipPreflight": skip_preflight,
            "preflightCommitment": COMMITMENT,
        }
        return await self._rpc("sendTransaction", [base64.b64encode(payload).decode("ascii"), opts])

    async def simulate(self, payload: bytes) -> SimulationResult:
        opts = {
            "encoding": "base64",
            "commitment": "processed",
            "replaceRecentBlockhash": True,
            "sigVerify": False,
        }
        result = await self._rpc("simulateTransaction", [base64.b64encode(payload).decode("ascii"), opts])
        value = result["value"]
        return SimulationResult(err=value.get("err"), logs=value.get("logs") or [])

    async def latest_blockhash_lease(self) -> BlockhashLease:
        result = await self._rpc("getLatestBlockhash", [{"commitment": COMMITMENT}])
        value = result["value"]
        return BlockhashLease(
            blockhash=value["blockhash"],
            last_valid_block_height=int(value["lastValidBlockHeight"]),
        )

    async def block_height(self) -> int:
        return int(await self._rpc("getBlockHeight", [{"commitment": COMMITMENT}]))

    async def poll_status(self, signature: str) -> Optional[Dict[str, Any]]:
        result = await self._rpc(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": False}],
        )
        statuses = result.get("value") or [None]
        return statuses[0]

    async def fetch_record(self, signature: str, encoding: str = "json") -> Optional[Dict[str, Any]]:
        opts = {
            "encoding": encoding,
            "commitment": COMMITMENT,
            "maxSupportedTransactionVersion": 0,
        }
        return await self._rpc("getTransaction", [signature, opts])

    async def fetch_parsed_record(self, signature: str) -> Optional[Dict[str, Any]]:
        return await self.fetch_record(signature, encoding="jsonParsed")

    async def get_token_decimals(self, mint: str) -> Optional[int]:
        result = await self._rpc("getAccountInfo", [mint, {"encoding": "jsonParsed"}])
        value = (result or {}).get("value")
        if not value or not isinstance(value.get("data"), dict):
            return None
        info = value["data"].get("parsed", {}).get("info", {})
        decimals = info.get("decimals")
        return int(decimals) if decimals is not None else None

    # ---------- confirmation ----------

    async def confirm_signal(self, signature: str, last_valid_block_height: int) -> Dict[str, Any]:
        """
        Wait for a 'confirmed' notification on the signature.

        Raises ExpiryFailure once the block height passes last_valid_block_height.
        If the notification socket drops, the wait continues on the height watcher
        alone; callers are expected to poll statuses in parallel.
        """
        notification = asyncio.create_task(self._await_signature_notification(signature))
        expiry = asyncio.create_task(self._await_block_height_exceeded(signature, last_valid_block_height))
        pending = {notification, expiry}
        try:
            while True:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                if notification in done:
                    try:
                        return notification.result()
                    except TRANSIENT_ERRORS as e:
                        self.logger.warning(f"Signature subscription lost for {signature}: {e}")
                if expiry in done:
                    expiry.result()
        finally:
            for task in (notification, expiry):
                task.cancel()
            await asyncio.gather(notification, expiry, return_exceptions=True)

    async def _await_signature_notification(self, signature: str) -> Dict[str, Any]:
        async with self._get_ws_session().ws_connect(self.ws_url) as ws:
            await ws.send_json({
                "jsonrpc": "2.0",
                "id": next(self._ids),
                "method": "signatureSubscribe",
                "params": [signature, {"commitment": COMMITMENT}],
            })
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    data = json.loads(msg.data)
                    if data.get("method") == "signatureNotification":
                        return data["params"]["result"]["value"]
                    error = data.get("error")
                    if error:
                        raise RpcError(error.get("code", -1), error.get("message", ""))
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    break
        raise TransportFailure(f"Signature subscription closed for {signature}")

    async def _await_block_height_exceeded(self, signature: str, last_valid_block_height: int) -> None:
        while True:
            try:
                height = await self.block_height()
            except TRANSIENT_ERRORS as e:
                self.logger.warning(f"Block height check failed: {e}")
            else:
                if height > last_valid_block_height:
                    raise ExpiryFailure(signature, height, last_valid_block_height)
            await asyncio.sleep(self.height_poll_interval)

    async def close(self):
        for session in (self._session, self._ws_session):
            if session and not session.closed:
                await session.close()


class GatewayRegistry:
    """
    Gateways keyed by endpoint URL. Built once at startup and passed to the
    components that need RPC access; repeated lookups share one connection pool.
    """
    def __init__(self, logger: logging.Logger, max_connections: int = 10, timeout: float = 30.0,
                 height_poll_interval: float = 0.5, ws_urls: Optional[Dict[str, str]] = None):
        self.logger = logger
        self.max_connections = max_connections
        self.timeout = timeout
        self.height_poll_interval = height_poll_interval
        self.ws_urls = ws_urls or {}
        self._gateways: Dict[str, SolanaGateway] = {}

    def resolve(self, url: str) -> SolanaGateway:
        key = (url or "").strip()
        if not key:
            raise ValueError("rpc url is required")

        gateway = self._gateways.get(key)
        if gateway is not None:
            return gateway

        gateway = SolanaGateway(
            key,
            self.logger,
            ws_url=self.ws_urls.get(key),
            max_connections=self.max_connections,
            timeout=self.timeout,
            height_poll_interval=self.height_poll_interval,
        )
        self._gateways[key] = gateway
        self.logger.info(f"🔌 New RPC gateway: {key}")
        return gateway

    def __len__(self) -> int:
        return len(self._gateways)

    async def shutdown(self):
        for gateway in self._gateways.values():
            await gateway.close()
