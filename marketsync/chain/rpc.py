"""JSON-RPC gateway to an Ethereum node over HTTP and WebSocket."""

import asyncio
import itertools
import json
from datetime import UTC, datetime
from types import TracebackType
from typing import Any, ClassVar

import aiohttp

from marketsync.core.logging import get_logger
from marketsync.shared.exceptions import RPCError, TransportError

logger = get_logger(__name__)


def _hex_block(block: int | str) -> str:
    return hex(block) if isinstance(block, int) else block


class LogSubscription:
    """One eth_subscribe('logs') session over a dedicated WebSocket.

    Use as an async context manager; iterate to receive raw log objects.
    Leaving the context unsubscribes and closes the socket.
    """

    SUBSCRIBE_TIMEOUT: ClassVar[float] = 15.0

    def __init__(
        self,
        session: aiohttp.ClientSession,
        ws_url: str,
        address: str,
        topic: str,
        heartbeat: float = 30.0,
    ) -> None:
        self._session = session
        self._ws_url = ws_url
        self._address = address
        self._topic = topic
        self._heartbeat = heartbeat
        self._ids = itertools.count(1)
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self.subscription_id: str | None = None

    async def __aenter__(self) -> "LogSubscription":
        """Open the socket and register the log filter.

        Raises:
            TransportError: If the socket cannot be opened or the node rejects the filter
        """
        try:
            self._ws = await self._session.ws_connect(self._ws_url, heartbeat=self._heartbeat)
            request_id = next(self._ids)
            await self._ws.send_json(
                {
                    "jsonrpc": "2.0",
                    "id": request_id,
                    "method": "eth_subscribe",
                    "params": ["logs", {"address": self._address, "topics": [self._topic]}],
                }
            )
            async with asyncio.timeout(self.SUBSCRIBE_TIMEOUT):
                while True:
                    message = await self._receive_json()
                    if message.get("id") != request_id:
                        continue
                    if "error" in message:
                        error = message["error"]
                        raise RPCError(error.get("code", 0), error.get("message", str(error)))
                    self.subscription_id = message["result"]
                    break
        except TransportError:
            await self._close_socket()
            raise
        except (aiohttp.ClientError, TimeoutError, OSError) as e:
            await self._close_socket()
            raise TransportError(f"Failed to subscribe to logs: {e}") from e

        logger.info(
            "rpc.subscription.opened",
            topic=self._topic,
            subscription_id=self.subscription_id,
        )
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    def __aiter__(self) -> "LogSubscription":
        return self

    async def __anext__(self) -> dict[str, Any]:
        """Return the next raw log delivered to this subscription.

        Raises:
            TransportError: If the socket closes or errors
        """
        while True:
            message = await self._receive_json()
            if message.get("method") != "eth_subscription":
                continue
            params = message.get("params") or {}
            if params.get("subscription") != self.subscription_id:
                continue
            result = params.get("result")
            if result:
                return result

    async def _receive_json(self) -> dict[str, Any]:
        if self._ws is None:
            raise TransportError("Subscription socket is not open")
        msg = await self._ws.receive()
        if msg.type == aiohttp.WSMsgType.TEXT:
            try:
                return json.loads(msg.data)
            except json.JSONDecodeError as e:
                raise TransportError(f"Invalid JSON from node: {e}") from e
        if msg.type == aiohttp.WSMsgType.ERROR:
            raise TransportError(f"WebSocket error: {self._ws.exception()}")
        raise TransportError(f"WebSocket closed ({msg.type.name})")

    async def close(self) -> None:
        """Unsubscribe and close the socket. Safe to call more than once."""
        if self._ws is None:
            return
        if self.subscription_id and not self._ws.closed:
            try:
                await self._ws.send_json(
                    {
                        "jsonrpc": "2.0",
                        "id": next(self._ids),
                        "method": "eth_unsubscribe",
                        "params": [self.subscription_id],
                    }
                )
            except (aiohttp.ClientError, ConnectionError) as e:
                logger.warning(
                    "rpc.subscription.unsubscribe_failed",
                    subscription_id=self.subscription_id,
                    error=str(e),
                )
        await self._close_socket()
        logger.info("rpc.subscription.closed", subscription_id=self.subscription_id)

    async def _close_socket(self) -> None:
        if self._ws is not None:
            await self._ws.close()
            self._ws = None


class ChainRPCGateway:
    """Async JSON-RPC client for the marketplace's chain node.

    HTTP is used for calls, block queries and historical logs; each log
    subscription gets its own WebSocket.

    Attributes:
        MAX_RETRIES: Attempts for idempotent HTTP requests on network failure
        RETRY_DELAYS: Backoff delays in seconds between attempts
        BLOCK_CACHE_SIZE: Number of block timestamps kept in memory
    """

    MAX_RETRIES: ClassVar[int] = 3
    RETRY_DELAYS: ClassVar[list[int]] = [1, 2, 4]
    BLOCK_CACHE_SIZE: ClassVar[int] = 1024

    def __init__(self, http_url: str, ws_url: str, request_timeout: float = 15.0) -> None:
        """Initialize gateway endpoints.

        Args:
            http_url: HTTP JSON-RPC endpoint
            ws_url: WebSocket JSON-RPC endpoint
            request_timeout: Total timeout per HTTP request in seconds
        """
        self.http_url = http_url
        self.ws_url = ws_url
        self.request_timeout = request_timeout
        self.session: aiohttp.ClientSession | None = None
        self._ids = itertools.count(1)
        self._block_ts_cache: dict[int, datetime] = {}

    async def __aenter__(self) -> "ChainRPCGateway":
        """Create the shared aiohttp session."""
        self.session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.request_timeout),
            headers={"Content-Type": "application/json"},
        )
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Close the aiohttp session."""
        if self.session:
            await self.session.close()
            self.session = None

    async def _request(self, method: str, params: list[Any]) -> Any:
        """Send one JSON-RPC request with retry on network failure.

        Args:
            method: JSON-RPC method name
            params: Positional parameters

        Returns:
            The `result` member of the response

        Raises:
            RPCError: If the node returns an error object
            TransportError: If the node is unreachable after all retries
        """
        if not self.session:
            raise TransportError("RPC session not initialized")

        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}

        for attempt in range(self.MAX_RETRIES):
            try:
                async with self.session.post(self.http_url, json=payload) as response:
                    if response.status != 200:
                        text = await response.text()
                        raise TransportError(
                            f"{method} returned HTTP {response.status}: {text[:200]}"
                        )
                    body = await response.json(content_type=None)
                if "error" in body and body["error"]:
                    error = body["error"]
                    raise RPCError(error.get("code", 0), error.get("message", str(error)))
                return body.get("result")
            except (aiohttp.ClientError, TimeoutError) as e:
                if attempt < self.MAX_RETRIES - 1:
                    logger.warning(
                        "rpc.request.retry", method=method, attempt=attempt + 1, error=str(e)
                    )
                    await asyncio.sleep(self.RETRY_DELAYS[attempt])
                else:
                    logger.error("rpc.request.failed", method=method, error=str(e))
                    raise TransportError(f"{method} failed: {e}") from e
        raise TransportError("Unreachable")

    async def call(self, contract_address: str, data: bytes, block: int | str = "latest") -> bytes:
        """Execute a read-only contract call (eth_call).

        Args:
            contract_address: Target contract
            data: ABI-encoded calldata
            block: Block tag or number

        Returns:
            Raw return data
        """
        result = await self._request(
            "eth_call",
            [{"to": contract_address, "data": "0x" + data.hex()}, _hex_block(block)],
        )
        text = str(result or "0x")
        return bytes.fromhex(text[2:] if text.startswith("0x") else text)

    async def current_block_number(self) -> int:
        """Latest block number known to the node."""
        result = await self._request("eth_blockNumber", [])
        return int(result, 16)

    async def get_logs(
        self,
        address: str,
        topics: list[str],
        from_block: int,
        to_block: int,
    ) -> list[dict[str, Any]]:
        """Fetch historical logs for a contract in an inclusive block range.

        Args:
            address: Contract address
            topics: topic0 values, OR-matched
            from_block: First block (inclusive)
            to_block: Last block (inclusive)

        Returns:
            Raw log objects
        """
        result = await self._request(
            "eth_getLogs",
            [
                {
                    "address": address,
                    "topics": [topics],
                    "fromBlock": hex(from_block),
                    "toBlock": hex(to_block),
                }
            ],
        )
        return list(result or [])

    async def get_block_timestamp(self, block_number: int) -> datetime:
        """Timestamp of a block, cached in memory.

        Raises:
            TransportError: If the block is unknown or the request fails
        """
        cached = self._block_ts_cache.get(block_number)
        if cached is not None:
            return cached

        block = await self._request("eth_getBlockByNumber", [hex(block_number), False])
        if not block:
            raise TransportError(f"Block {block_number} not found")
        timestamp = datetime.fromtimestamp(int(block["timestamp"], 16), tz=UTC)

        if len(self._block_ts_cache) >= self.BLOCK_CACHE_SIZE:
            self._block_ts_cache.pop(next(iter(self._block_ts_cache)))
        self._block_ts_cache[block_number] = timestamp
        return timestamp

    def subscribe_logs(self, address: str, topic: str) -> LogSubscription:
        """Create a log subscription for one contract and topic.

        A new subscription is created per call, which is how callers resubscribe
        after a transport failure.

        Raises:
            TransportError: If the gateway session is not initialized
        """
        if not self.session:
            raise TransportError("RPC session not initialized")
        return LogSubscription(self.session, self.ws_url, address, topic)
