"""Shared pytest fixtures for marketsync tests."""

import asyncio
from collections.abc import Callable, Generator
from datetime import UTC, date, datetime, timedelta
from typing import Any

import pytest
from eth_abi import decode, encode

from marketsync.chain.abi import EVENT_TOPICS, event_entries
from marketsync.chain.decoder import EventDecoder
from marketsync.shared.exceptions import DatabaseError, RPCError, TransportError
from marketsync.shared.models import (
    AnomalyRecord,
    ChainEvent,
    CollectionStats,
    DailyVolume,
    ListingRecord,
    ListingStatus,
    MarketStats,
    SyncState,
    SyncStatus,
    TransactionRecord,
    TransactionStats,
    TransactionStatus,
    TransactionType,
)

MARKETPLACE = "0x5fbdb2315678afecb367f032d93f642f64180aa3"
NFT_CONTRACT = "0xe7f1725e7734ce288f8367e1bb143e90bb3f0512"
SELLER = "0x70997970c51812dc3a010c7d01b50e0d17dc79c8"
BUYER = "0x3c44cdddb6a900fa2b585dd299e03d12fa4293bc"
ZERO = "0x0000000000000000000000000000000000000000"

_ONE_OF_PER_ITEM = {TransactionType.LIST, TransactionType.SALE, TransactionType.CANCEL}


class InMemoryProjection:
    """DatabaseClient stand-in with the same uniqueness and conditional-update rules."""

    def __init__(self) -> None:
        self.listings: dict[int, ListingRecord] = {}
        self.transactions: list[TransactionRecord] = []
        self.anomalies: list[AnomalyRecord] = []
        self.sync_states: dict[str, SyncState] = {}
        self.stats: dict[str, CollectionStats] = {}
        self.recompute_calls: list[str] = []
        self.fail_get_listing = 0

    def _tx_conflicts(self, tx: TransactionRecord) -> bool:
        for existing in self.transactions:
            if existing.tx_hash == tx.tx_hash and existing.log_index == tx.log_index:
                return True
            if (
                tx.tx_type in _ONE_OF_PER_ITEM
                and existing.tx_type == tx.tx_type
                and existing.item_id == tx.item_id
            ):
                return True
        return False

    def _append_tx(self, tx: TransactionRecord | None) -> bool:
        if tx is None or self._tx_conflicts(tx):
            return False
        self.transactions.append(tx)
        return True

    def transactions_of(self, tx_type: TransactionType, item_id: int) -> list[TransactionRecord]:
        return [t for t in self.transactions if t.tx_type == tx_type and t.item_id == item_id]

    async def get_listing(self, item_id: int) -> ListingRecord | None:
        if self.fail_get_listing:
            self.fail_get_listing -= 1
            raise DatabaseError("connection reset")
        listing = self.listings.get(item_id)
        return listing.model_copy() if listing else None

    async def insert_listing(
        self, listing: ListingRecord, transaction: TransactionRecord | None = None
    ) -> bool:
        if listing.item_id in self.listings:
            return False
        self.listings[listing.item_id] = listing.model_copy()
        self._append_tx(transaction)
        return True

    async def mark_listing_sold(
        self,
        item_id: int,
        buyer: str,
        sold_at: datetime,
        sale_tx_hash: str,
        transaction: TransactionRecord,
    ) -> bool:
        listing = self.listings.get(item_id)
        if listing is None or listing.status is not ListingStatus.ACTIVE:
            return False
        self.listings[item_id] = listing.model_copy(
            update={
                "status": ListingStatus.SOLD,
                "buyer": buyer,
                "sold_at": sold_at,
                "sale_tx_hash": sale_tx_hash,
            }
        )
        self._append_tx(transaction)
        return True

    async def mark_listing_cancelled(
        self,
        item_id: int,
        cancelled_at: datetime,
        transaction: TransactionRecord | None = None,
    ) -> bool:
        listing = self.listings.get(item_id)
        if listing is None or listing.status is not ListingStatus.ACTIVE:
            return False
        self.listings[item_id] = listing.model_copy(
            update={"status": ListingStatus.CANCELLED, "cancelled_at": cancelled_at}
        )
        self._append_tx(transaction)
        return True

    async def merge_chain_transaction(self, transaction: TransactionRecord) -> bool:
        merged = False
        for index, existing in enumerate(self.transactions):
            if (
                existing.item_id == transaction.item_id
                and existing.tx_type == transaction.tx_type
                and existing.log_index == -1
            ):
                self.transactions[index] = existing.model_copy(
                    update={
                        "tx_hash": transaction.tx_hash,
                        "log_index": transaction.log_index,
                        "block_number": transaction.block_number,
                        "block_timestamp": transaction.block_timestamp
                        or existing.block_timestamp,
                    }
                )
                merged = True
                break
        else:
            merged = self._append_tx(transaction)

        listing = self.listings.get(transaction.item_id or 0)
        if merged and listing is not None:
            if transaction.tx_type == TransactionType.LIST:
                self.listings[listing.item_id] = listing.model_copy(
                    update={"tx_hash": transaction.tx_hash}
                )
            elif transaction.tx_type == TransactionType.SALE and (
                listing.status is ListingStatus.SOLD
            ):
                self.listings[listing.item_id] = listing.model_copy(
                    update={"sale_tx_hash": transaction.tx_hash}
                )
        return merged

    async def record_anomaly(self, anomaly: AnomalyRecord) -> bool:
        for existing in self.anomalies:
            if (existing.transaction_hash, existing.log_index, existing.reason) == (
                anomaly.transaction_hash,
                anomaly.log_index,
                anomaly.reason,
            ):
                return False
        self.anomalies.append(anomaly)
        return True

    async def recompute_collection_stats(self, nft_contract: str) -> CollectionStats:
        self.recompute_calls.append(nft_contract)
        active = [
            int(item.price)
            for item in self.listings.values()
            if item.nft_contract == nft_contract and item.status is ListingStatus.ACTIVE
        ]
        sales = [
            t
            for t in self.transactions
            if t.nft_contract == nft_contract
            and t.tx_type == TransactionType.SALE
            and t.status == TransactionStatus.CONFIRMED
        ]
        stats = CollectionStats(
            nft_contract=nft_contract,
            floor_price=str(min(active)) if active else None,
            ceiling_price=str(max(active)) if active else None,
            average_price=str(sum(active) // len(active)) if active else None,
            active_listings=len(active),
            unique_sellers=len(
                {
                    item.seller
                    for item in self.listings.values()
                    if item.nft_contract == nft_contract and item.status is ListingStatus.ACTIVE
                }
            ),
            total_sales=len(sales),
            total_volume=str(sum(int(t.value) for t in sales)),
            unique_buyers=len({t.to_address for t in sales}),
            updated_at=datetime.now(UTC),
        )
        self.stats[nft_contract] = stats
        return stats

    async def get_collection_stats(self, nft_contract: str) -> CollectionStats | None:
        return self.stats.get(nft_contract)

    async def get_market_stats(self) -> MarketStats:
        listings = list(self.listings.values())
        active = [int(item.price) for item in listings if item.status is ListingStatus.ACTIVE]
        return MarketStats(
            active_listings=len(active),
            total_listings=len(listings),
            sold_listings=sum(1 for item in listings if item.status is ListingStatus.SOLD),
            cancelled_listings=sum(
                1 for item in listings if item.status is ListingStatus.CANCELLED
            ),
            total_volume=str(
                sum(int(item.price) for item in listings if item.status is ListingStatus.SOLD)
            ),
            floor_price=str(min(active)) if active else None,
            ceiling_price=str(max(active)) if active else None,
        )

    async def get_active_listings(self, limit: int, offset: int) -> tuple[list[ListingRecord], int]:
        active = sorted(
            (item for item in self.listings.values() if item.status is ListingStatus.ACTIVE),
            key=lambda item: item.item_id,
            reverse=True,
        )
        return active[offset : offset + limit], len(active)

    async def get_listings_by_seller(
        self, seller: str, limit: int, offset: int
    ) -> tuple[list[ListingRecord], int]:
        mine = [item for item in self.listings.values() if item.seller == seller.lower()]
        return mine[offset : offset + limit], len(mine)

    async def get_transactions_by_address(
        self, address: str, limit: int, offset: int
    ) -> tuple[list[TransactionRecord], int]:
        address = address.lower()
        mine = [t for t in self.transactions if address in (t.from_address, t.to_address)]
        return mine[offset : offset + limit], len(mine)

    async def search_listings(
        self,
        limit: int,
        offset: int,
        nft_contract: str | None = None,
        min_price: int | None = None,
        max_price: int | None = None,
    ) -> tuple[list[ListingRecord], int]:
        found = sorted(
            (
                item
                for item in self.listings.values()
                if item.status is ListingStatus.ACTIVE
                and (not nft_contract or item.nft_contract == nft_contract.lower())
                and (min_price is None or int(item.price) >= min_price)
                and (max_price is None or int(item.price) <= max_price)
            ),
            key=lambda item: item.item_id,
            reverse=True,
        )
        return found[offset : offset + limit], len(found)

    async def get_transactions_by_hash(self, tx_hash: str) -> list[TransactionRecord]:
        return sorted(
            (t for t in self.transactions if t.tx_hash == tx_hash.lower()),
            key=lambda t: t.log_index,
        )

    def _newest_first(self, records: list[TransactionRecord]) -> list[TransactionRecord]:
        oldest = datetime.min.replace(tzinfo=UTC)
        return sorted(records, key=lambda t: t.block_timestamp or oldest, reverse=True)

    async def get_transactions_by_nft(
        self, nft_contract: str, token_id: int, limit: int, offset: int
    ) -> tuple[list[TransactionRecord], int]:
        mine = self._newest_first(
            [
                t
                for t in self.transactions
                if t.nft_contract == nft_contract.lower() and t.token_id == token_id
            ]
        )
        return mine[offset : offset + limit], len(mine)

    async def get_recent_transactions(self, limit: int) -> list[TransactionRecord]:
        return self._newest_first(list(self.transactions))[:limit]

    def _confirmed(self, tx_type: TransactionType) -> list[TransactionRecord]:
        return [
            t
            for t in self.transactions
            if t.tx_type == tx_type and t.status == TransactionStatus.CONFIRMED
        ]

    async def get_transaction_stats(self) -> TransactionStats:
        listings = len(self._confirmed(TransactionType.LIST))
        sales = self._confirmed(TransactionType.SALE)
        cancellations = len(self._confirmed(TransactionType.CANCEL))
        return TransactionStats(
            total_listings=listings,
            total_sales=len(sales),
            total_cancellations=cancellations,
            total_transactions=listings + len(sales) + cancellations,
            total_volume=str(sum(int(t.value) for t in sales)),
        )

    async def get_daily_volume(self, days: int) -> list[DailyVolume]:
        since = datetime.now(UTC) - timedelta(days=days)
        per_day: dict[date, list[int]] = {}
        for sale in self._confirmed(TransactionType.SALE):
            if sale.block_timestamp is None or sale.block_timestamp < since:
                continue
            per_day.setdefault(sale.block_timestamp.date(), []).append(int(sale.value))
        return [
            DailyVolume(day=day, tx_count=len(values), volume=str(sum(values)))
            for day, values in sorted(per_day.items(), reverse=True)
        ]

    async def get_volume_by_contract(self, nft_contract: str) -> str:
        return str(
            sum(
                int(t.value)
                for t in self._confirmed(TransactionType.SALE)
                if t.nft_contract == nft_contract.lower()
            )
        )

    async def get_sync_state(self, contract_address: str) -> SyncState | None:
        return self.sync_states.get(contract_address.lower())

    async def init_sync_state(self, contract_address: str, block_number: int) -> SyncState:
        key = contract_address.lower()
        if key not in self.sync_states:
            self.sync_states[key] = SyncState(
                contract_address=key, last_synced_block=block_number
            )
        return self.sync_states[key]

    async def advance_sync_state(self, contract_address: str, block_number: int) -> bool:
        key = contract_address.lower()
        state = self.sync_states[key]
        if block_number <= state.last_synced_block:
            return False
        self.sync_states[key] = state.model_copy(
            update={
                "last_synced_block": block_number,
                "last_synced_at": datetime.now(UTC),
                "status": SyncStatus.ACTIVE,
                "error_message": None,
            }
        )
        return True

    async def set_sync_status(
        self, contract_address: str, status: SyncStatus, error_message: str | None = None
    ) -> None:
        key = contract_address.lower()
        self.sync_states[key] = self.sync_states[key].model_copy(
            update={"status": status, "error_message": error_message}
        )


class FakeSubscription:
    """Scripted log stream: yields `logs`, then raises `error` or stays open."""

    def __init__(
        self,
        logs: list[dict[str, Any]] | None = None,
        error: Exception | None = None,
        connect_error: Exception | None = None,
    ) -> None:
        self.logs = list(logs or [])
        self.error = error
        self.connect_error = connect_error
        self.entered = False
        self.closed = False

    async def __aenter__(self) -> "FakeSubscription":
        if self.connect_error is not None:
            raise self.connect_error
        self.entered = True
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.closed = True

    def __aiter__(self) -> Any:
        return self._stream()

    async def _stream(self) -> Any:
        for log in self.logs:
            yield log
        if self.error is not None:
            raise self.error
        await asyncio.Event().wait()


class FakeGateway:
    """ChainRPCGateway stand-in backed by in-memory logs and market items."""

    def __init__(self) -> None:
        self.head = 0
        self.logs: list[dict[str, Any]] = []
        self.items: dict[int, tuple[Any, ...]] = {}
        self.scripts: dict[str, list[FakeSubscription]] = {}
        self.opened: list[FakeSubscription] = []
        self.get_logs_calls: list[tuple[int, int]] = []
        self.max_range: int | None = None
        self.get_logs_error: Exception | None = None
        self.call_error: Exception | None = None
        self.call_delay = 0.0

    async def current_block_number(self) -> int:
        return self.head

    async def get_logs(
        self, address: str, topics: list[str], from_block: int, to_block: int
    ) -> list[dict[str, Any]]:
        self.get_logs_calls.append((from_block, to_block))
        if self.get_logs_error is not None:
            raise self.get_logs_error
        if self.max_range is not None and to_block - from_block + 1 > self.max_range:
            raise RPCError(-32005, "query returned more than 10000 results")
        return [
            log
            for log in self.logs
            if from_block <= int(log["blockNumber"], 16) <= to_block and log["topics"][0] in topics
        ]

    async def get_block_timestamp(self, block_number: int) -> datetime:
        return datetime.fromtimestamp(1_700_000_000 + block_number * 12, tz=UTC)

    def subscribe_logs(self, address: str, topic: str) -> FakeSubscription:
        queue = self.scripts.get(topic) or []
        subscription = queue.pop(0) if queue else FakeSubscription()
        self.opened.append(subscription)
        return subscription

    async def call(self, contract_address: str, data: bytes) -> bytes:
        if self.call_delay:
            await asyncio.sleep(self.call_delay)
        if self.call_error is not None:
            raise self.call_error
        (item_id,) = decode(["uint256"], data[4:])
        item = self.items.get(item_id, (0, ZERO, 0, ZERO, ZERO, 0, False, 0))
        return encode(["(uint256,address,uint256,address,address,uint256,bool,uint256)"], [item])


def build_raw_log(
    event: str,
    block: int = 100,
    log_index: int = 0,
    tx_hash: str | None = None,
    address: str = MARKETPLACE,
    **fields: Any,
) -> dict[str, Any]:
    entry = event_entries()[event]
    indexed = [inp for inp in entry["inputs"] if inp["indexed"]]
    non_indexed = [inp for inp in entry["inputs"] if not inp["indexed"]]
    topics = [EVENT_TOPICS[event]] + [
        "0x" + encode([inp["type"]], [fields[inp["name"]]]).hex() for inp in indexed
    ]
    data = "0x"
    if non_indexed:
        data += encode(
            [inp["type"] for inp in non_indexed], [fields[inp["name"]] for inp in non_indexed]
        ).hex()
    return {
        "address": address,
        "topics": topics,
        "data": data,
        "blockNumber": hex(block),
        "logIndex": hex(log_index),
        "transactionHash": tx_hash or f"0x{block:032x}{log_index:032x}",
        "removed": False,
    }


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Generator[None, None, None]:
    """Reset the global settings cache before and after each test."""
    import marketsync.core.config

    marketsync.core.config._settings = None
    yield
    marketsync.core.config._settings = None


@pytest.fixture
def settings_env(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set the required environment variables for Settings."""
    env = {
        "RPC_HTTP_URL": "http://localhost:8545",
        "RPC_WS_URL": "ws://localhost:8546",
        "MARKETPLACE_ADDRESS": "0x5FbDB2315678afecb367f032d93F642f64180aa3",
        "DB_PASSWORD": "test_password",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


@pytest.fixture
def projection() -> InMemoryProjection:
    return InMemoryProjection()


@pytest.fixture
def projection_factory() -> type[InMemoryProjection]:
    return InMemoryProjection


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def fake_subscription() -> type[FakeSubscription]:
    return FakeSubscription


@pytest.fixture
def make_log() -> Callable[..., dict[str, Any]]:
    """Factory for ABI-encoded raw logs, as a node would deliver them."""
    return build_raw_log


@pytest.fixture
def make_event() -> Callable[..., ChainEvent]:
    """Factory for decoded ChainEvents."""
    decoder = EventDecoder()

    def _make(event: str, **kwargs: Any) -> ChainEvent:
        return decoder.decode(build_raw_log(event, **kwargs))

    return _make


@pytest.fixture
def created(make_event: Callable[..., ChainEvent]) -> Callable[..., ChainEvent]:
    """MarketItemCreated factory with sensible defaults."""

    def _make(
        item_id: int = 7,
        price: int = 100,
        block: int = 100,
        log_index: int = 0,
        nft_contract: str = NFT_CONTRACT,
        token_id: int = 1,
        seller: str = SELLER,
    ) -> ChainEvent:
        return make_event(
            "MarketItemCreated",
            block=block,
            log_index=log_index,
            itemId=item_id,
            nftContract=nft_contract,
            tokenId=token_id,
            seller=seller,
            price=price,
        )

    return _make


@pytest.fixture
def sold(make_event: Callable[..., ChainEvent]) -> Callable[..., ChainEvent]:
    """MarketItemSold factory with sensible defaults."""

    def _make(
        item_id: int = 7,
        price: int = 100,
        buyer: str = BUYER,
        block: int = 101,
        log_index: int = 0,
    ) -> ChainEvent:
        return make_event(
            "MarketItemSold",
            block=block,
            log_index=log_index,
            itemId=item_id,
            buyer=buyer,
            price=price,
        )

    return _make


@pytest.fixture
def canceled(make_event: Callable[..., ChainEvent]) -> Callable[..., ChainEvent]:
    """MarketItemCanceled factory with sensible defaults."""

    def _make(item_id: int = 7, block: int = 102, log_index: int = 0) -> ChainEvent:
        return make_event("MarketItemCanceled", block=block, log_index=log_index, itemId=item_id)

    return _make
