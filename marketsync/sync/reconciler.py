"""Idempotent, order-tolerant application of marketplace events to the projection."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from marketsync.chain.abi import MARKET_ITEM_CANCELED, MARKET_ITEM_CREATED, MARKET_ITEM_SOLD
from marketsync.core.logging import get_logger
from marketsync.shared.exceptions import DatabaseError
from marketsync.shared.models import (
    AnomalyRecord,
    ChainEvent,
    ListingRecord,
    ListingStatus,
    TransactionRecord,
    TransactionType,
)

if TYPE_CHECKING:
    from marketsync.core.database import DatabaseClient

logger = get_logger(__name__)

# log_index used for activity records written from verified submissions
SYNTHETIC_LOG_INDEX = -1


class ReconcileOutcome(StrEnum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    NOOP = "noop"
    MISSING = "missing"
    TERMINAL = "terminal"
    DEFERRED = "deferred"
    ANOMALY = "anomaly"


class AnomalyReason(StrEnum):
    LISTING_NOT_FOUND = "listing_not_found"
    LISTING_TERMINAL = "listing_terminal"
    PERSISTENCE_FAILED = "persistence_failed"
    RETRY_QUEUE_FULL = "retry_queue_full"
    UNRESOLVED_AT_SHUTDOWN = "unresolved_at_shutdown"
    UNKNOWN_EVENT = "unknown_event"
    APPLY_FAILED = "apply_failed"


@dataclass
class PendingEvent:
    """An event waiting for the listing state it depends on."""

    event: ChainEvent
    reason: AnomalyReason
    attempts: int = 0
    first_seen: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class _LockEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


def calculate_platform_fee(price: int, fee_bps: int) -> int:
    """Platform fee in wei for a sale price, in basis points (250 = 2.5%)."""
    return price * fee_bps // 10000


class StateReconciler:
    """Applies ChainEvents to the projection with first-writer-wins semantics.

    Writes for one item_id are serialized by an in-process lock and by the
    conditional SQL in DatabaseClient. Sales and cancellations that arrive
    before their listing are parked in a bounded retry queue; anything that
    cannot be resolved is persisted as an anomaly rather than dropped.

    The `upsert_listing`, `record_sale` and `record_cancel` entry points are
    shared with the verified submission path so both produce identical rows.
    """

    def __init__(
        self,
        db: "DatabaseClient",
        platform_fee_bps: int = 250,
        max_retry_attempts: int = 5,
        retry_interval_seconds: float = 2.0,
        max_pending: int = 10000,
    ) -> None:
        """Initialize the reconciler.

        Args:
            db: Projection store
            platform_fee_bps: Marketplace fee in basis points
            max_retry_attempts: Retries before an unresolved event becomes an anomaly
            retry_interval_seconds: Delay between retry sweeps
            max_pending: Maximum number of parked events
        """
        self.db = db
        self.platform_fee_bps = platform_fee_bps
        self.max_retry_attempts = max_retry_attempts
        self.retry_interval_seconds = retry_interval_seconds
        self.max_pending = max_pending

        self._pending: dict[tuple[str, int], PendingEvent] = {}
        self._locks: dict[int, _LockEntry] = {}
        self._running = False
        self._retry_task: asyncio.Task[None] | None = None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def pending_events(self) -> list[PendingEvent]:
        """Snapshot of parked events, oldest first."""
        return list(self._pending.values())

    async def start(self) -> None:
        """Start the background retry sweeper."""
        if self._running:
            return
        self._running = True
        self._retry_task = asyncio.create_task(self._retry_loop())
        logger.info(
            "reconciler.retry.started",
            interval_seconds=self.retry_interval_seconds,
            max_attempts=self.max_retry_attempts,
        )

    async def stop(self) -> None:
        """Stop the sweeper, make a last retry pass and persist what is left."""
        self._running = False

        if self._retry_task:
            self._retry_task.cancel()
            try:
                await self._retry_task
            except asyncio.CancelledError:
                pass
            self._retry_task = None

        if self._pending:
            await self.retry_pending()
        for key in list(self._pending):
            entry = self._pending.pop(key)
            await self._record_anomaly(
                entry.event, AnomalyReason.UNRESOLVED_AT_SHUTDOWN, entry.attempts
            )

        logger.info("reconciler.retry.stopped")

    async def _retry_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.retry_interval_seconds)
            if not self._pending:
                continue
            try:
                await self.retry_pending()
            except Exception as e:
                logger.error("reconciler.retry.error", error=str(e), exc_info=True)

    @asynccontextmanager
    async def _item_lock(self, item_id: int) -> AsyncIterator[None]:
        entry = self._locks.get(item_id)
        if entry is None:
            entry = self._locks[item_id] = _LockEntry()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                del self._locks[item_id]

    # ------------------------------------------------------------------
    # Event path
    # ------------------------------------------------------------------

    async def apply(self, event: ChainEvent) -> ReconcileOutcome:
        """Apply one decoded event to the projection.

        Never raises for per-event problems: missing listings and persistence
        failures defer the event, unresolvable state records an anomaly. Any
        other error, such as field values the projection rejects, is recorded
        as an anomaly at once because retrying cannot change the outcome.

        Args:
            event: Decoded ChainEvent

        Returns:
            What happened to the event
        """
        try:
            outcome = await self._apply_once(event)
        except DatabaseError as e:
            logger.warning(
                "reconciler.event.persistence_failed",
                topic=event.topic_name,
                event_key=event.event_key,
                error=str(e),
            )
            return await self._defer(event, AnomalyReason.PERSISTENCE_FAILED)
        except Exception as e:
            logger.error(
                "reconciler.event.failed",
                topic=event.topic_name,
                event_key=event.event_key,
                error=str(e),
                exc_info=True,
            )
            await self._record_anomaly(event, AnomalyReason.APPLY_FAILED, attempts=1)
            return ReconcileOutcome.ANOMALY

        if outcome is ReconcileOutcome.MISSING:
            return await self._defer(event, AnomalyReason.LISTING_NOT_FOUND)
        if outcome is ReconcileOutcome.TERMINAL:
            return await self._defer(event, AnomalyReason.LISTING_TERMINAL)

        logger.debug(
            "reconciler.event.reconciled",
            topic=event.topic_name,
            item_id=event.fields.get("itemId"),
            event_key=event.event_key,
            outcome=outcome.value,
        )
        return outcome

    async def _apply_once(self, event: ChainEvent) -> ReconcileOutcome:
        fields = event.fields

        if event.topic_name == MARKET_ITEM_CREATED:
            listing = ListingRecord.from_event(event)
            transaction = TransactionRecord(
                tx_hash=event.transaction_hash,
                log_index=event.log_index,
                tx_type=TransactionType.LIST,
                item_id=listing.item_id,
                block_number=event.block_number,
                block_timestamp=event.block_timestamp,
                nft_contract=listing.nft_contract,
                token_id=listing.token_id,
                from_address=listing.seller,
                to_address=event.contract_address,
                value=listing.price,
            )
            _, created = await self.upsert_listing(listing, transaction)
            if created:
                return ReconcileOutcome.APPLIED
            await self._attach_chain_record(transaction)
            return ReconcileOutcome.DUPLICATE

        if event.topic_name == MARKET_ITEM_SOLD:
            return await self.record_sale(
                item_id=int(fields["itemId"]),
                buyer=fields["buyer"],
                price=int(fields["price"]),
                tx_hash=event.transaction_hash,
                log_index=event.log_index,
                block_number=event.block_number,
                block_timestamp=event.block_timestamp,
            )

        if event.topic_name == MARKET_ITEM_CANCELED:
            return await self.record_cancel(
                item_id=int(fields["itemId"]),
                tx_hash=event.transaction_hash,
                log_index=event.log_index,
                block_number=event.block_number,
                block_timestamp=event.block_timestamp,
                marketplace_address=event.contract_address,
            )

        logger.warning("reconciler.event.unknown_topic", topic=event.topic_name)
        await self._record_anomaly(event, AnomalyReason.UNKNOWN_EVENT, attempts=0)
        return ReconcileOutcome.ANOMALY

    # ------------------------------------------------------------------
    # Shared write entry points
    # ------------------------------------------------------------------

    async def upsert_listing(
        self, listing: ListingRecord, transaction: TransactionRecord | None = None
    ) -> tuple[ListingRecord, bool]:
        """Insert a listing if absent; an existing record is left untouched.

        Args:
            listing: Listing to insert (status active)
            transaction: Matching `list` activity record

        Returns:
            (stored listing, whether this call created it)

        Raises:
            DatabaseError: If persistence fails
        """
        async with self._item_lock(listing.item_id):
            created = await self.db.insert_listing(listing, transaction)
            stored = await self.db.get_listing(listing.item_id)

        if stored is None:
            raise DatabaseError(f"Listing {listing.item_id} missing after upsert")

        if created:
            logger.info(
                "reconciler.listing.created",
                item_id=listing.item_id,
                nft_contract=listing.nft_contract,
                price=listing.price,
            )
            await self._refresh_stats(stored.nft_contract)
            await self._retry_item(listing.item_id)

        return stored, created

    async def record_sale(
        self,
        item_id: int,
        buyer: str,
        price: int,
        tx_hash: str,
        log_index: int = SYNTHETIC_LOG_INDEX,
        block_number: int | None = None,
        block_timestamp: datetime | None = None,
    ) -> ReconcileOutcome:
        """Move an active listing to sold and append its `sale` record.

        A listing already sold to the same buyer at the same price is the same
        sale seen through the other path. When this call carries the chain
        coordinates, they replace those of the submitted record.

        Returns:
            APPLIED on transition, DUPLICATE if already sold by this sale,
            MISSING if the listing is unknown, TERMINAL if it closed otherwise

        Raises:
            DatabaseError: If persistence fails
        """
        buyer = buyer.lower()
        tx_hash = tx_hash.lower()
        sold_at = block_timestamp or datetime.now(UTC)

        async with self._item_lock(item_id):
            listing = await self.db.get_listing(item_id)
            if listing is None:
                return ReconcileOutcome.MISSING

            transaction = TransactionRecord(
                tx_hash=tx_hash,
                log_index=log_index,
                tx_type=TransactionType.SALE,
                item_id=item_id,
                block_number=block_number,
                block_timestamp=sold_at,
                nft_contract=listing.nft_contract,
                token_id=listing.token_id,
                from_address=listing.seller,
                to_address=buyer,
                value=price,
                platform_fee=calculate_platform_fee(price, self.platform_fee_bps),
            )
            outcome = self._classify_sale(listing, buyer, price, tx_hash)
            if outcome is None:
                if await self.db.mark_listing_sold(item_id, buyer, sold_at, tx_hash, transaction):
                    outcome = ReconcileOutcome.APPLIED
                else:
                    # Another process closed it between our read and write
                    latest = await self.db.get_listing(item_id)
                    if latest is None:
                        return ReconcileOutcome.MISSING
                    outcome = (
                        self._classify_sale(latest, buyer, price, tx_hash)
                        or ReconcileOutcome.TERMINAL
                    )
            if outcome is ReconcileOutcome.DUPLICATE:
                await self._attach_chain_record(transaction)

        if outcome is not ReconcileOutcome.APPLIED:
            return outcome

        logger.info(
            "reconciler.listing.sold",
            item_id=item_id,
            buyer=buyer,
            price=str(price),
            tx_hash=tx_hash,
        )
        await self._refresh_stats(listing.nft_contract)
        return ReconcileOutcome.APPLIED

    @staticmethod
    def _classify_sale(
        listing: ListingRecord, buyer: str, price: int, tx_hash: str
    ) -> ReconcileOutcome | None:
        if listing.is_active:
            return None
        if listing.status is ListingStatus.SOLD and (
            listing.sale_tx_hash == tx_hash
            or (listing.buyer == buyer and int(listing.price) == price)
        ):
            return ReconcileOutcome.DUPLICATE
        return ReconcileOutcome.TERMINAL

    async def record_cancel(
        self,
        item_id: int,
        tx_hash: str | None = None,
        log_index: int = SYNTHETIC_LOG_INDEX,
        block_number: int | None = None,
        block_timestamp: datetime | None = None,
        marketplace_address: str | None = None,
    ) -> ReconcileOutcome:
        """Move an active listing to cancelled.

        A chain event for a listing already cancelled through the submission
        path still leaves its `cancel` record behind.

        Returns:
            APPLIED on transition, NOOP if already closed, MISSING if unknown

        Raises:
            DatabaseError: If persistence fails
        """
        cancelled_at = block_timestamp or datetime.now(UTC)

        async with self._item_lock(item_id):
            listing = await self.db.get_listing(item_id)
            if listing is None:
                return ReconcileOutcome.MISSING

            transaction = None
            if tx_hash:
                transaction = TransactionRecord(
                    tx_hash=tx_hash,
                    log_index=log_index,
                    tx_type=TransactionType.CANCEL,
                    item_id=item_id,
                    block_number=block_number,
                    block_timestamp=cancelled_at,
                    nft_contract=listing.nft_contract,
                    token_id=listing.token_id,
                    from_address=marketplace_address,
                    to_address=listing.seller,
                )

            if not listing.is_active:
                if listing.status is ListingStatus.CANCELLED and transaction is not None:
                    await self._attach_chain_record(transaction)
                return ReconcileOutcome.NOOP

            updated = await self.db.mark_listing_cancelled(item_id, cancelled_at, transaction)
            if not updated:
                return ReconcileOutcome.NOOP

        logger.info("reconciler.listing.cancelled", item_id=item_id, tx_hash=tx_hash)
        await self._refresh_stats(listing.nft_contract)
        return ReconcileOutcome.APPLIED

    async def _attach_chain_record(self, transaction: TransactionRecord) -> None:
        """Give a submitted record its chain coordinates, or add the missing record."""
        if transaction.log_index == SYNTHETIC_LOG_INDEX:
            return
        if await self.db.merge_chain_transaction(transaction):
            logger.info(
                "reconciler.record.confirmed",
                item_id=transaction.item_id,
                tx_type=transaction.tx_type.value,
                tx_hash=transaction.tx_hash,
                log_index=transaction.log_index,
            )

    async def _refresh_stats(self, nft_contract: str) -> None:
        try:
            await self.db.recompute_collection_stats(nft_contract)
        except DatabaseError as e:
            # Stats are derived; the next reconciliation for this contract recomputes them
            logger.error(
                "reconciler.stats.refresh_failed", nft_contract=nft_contract, error=str(e)
            )

    # ------------------------------------------------------------------
    # Retry queue
    # ------------------------------------------------------------------

    async def _defer(self, event: ChainEvent, reason: AnomalyReason) -> ReconcileOutcome:
        if event.key in self._pending:
            return ReconcileOutcome.DEFERRED
        if len(self._pending) >= self.max_pending:
            await self._record_anomaly(event, AnomalyReason.RETRY_QUEUE_FULL, attempts=0)
            return ReconcileOutcome.ANOMALY

        self._pending[event.key] = PendingEvent(event=event, reason=reason)
        logger.info(
            "reconciler.event.deferred",
            topic=event.topic_name,
            item_id=event.fields.get("itemId"),
            event_key=event.event_key,
            reason=reason.value,
            pending=len(self._pending),
        )
        return ReconcileOutcome.DEFERRED

    async def retry_pending(self) -> int:
        """Retry every parked event once.

        Returns:
            Number of events resolved in this pass
        """
        entries = sorted(
            self._pending.values(), key=lambda p: (p.event.block_number, p.event.log_index)
        )
        resolved = 0
        for entry in entries:
            if await self._retry_entry(entry):
                resolved += 1
        return resolved

    async def _retry_item(self, item_id: int) -> None:
        """Retry parked events for one item right after its listing appears."""
        entries = sorted(
            (p for p in self._pending.values() if p.event.item_id == item_id),
            key=lambda p: (p.event.block_number, p.event.log_index),
        )
        for entry in entries:
            await self._retry_entry(entry)

    async def _retry_entry(self, entry: PendingEvent) -> bool:
        key = entry.event.key
        if key not in self._pending:
            return False

        entry.attempts += 1
        try:
            outcome = await self._apply_once(entry.event)
        except DatabaseError as e:
            logger.warning(
                "reconciler.retry.persistence_failed", event_key=entry.event.event_key, error=str(e)
            )
            entry.reason = AnomalyReason.PERSISTENCE_FAILED
            outcome = ReconcileOutcome.MISSING
        except Exception as e:
            logger.error(
                "reconciler.retry.failed",
                event_key=entry.event.event_key,
                error=str(e),
                exc_info=True,
            )
            self._pending.pop(key, None)
            await self._record_anomaly(entry.event, AnomalyReason.APPLY_FAILED, entry.attempts)
            return False

        if outcome is ReconcileOutcome.TERMINAL:
            entry.reason = AnomalyReason.LISTING_TERMINAL
        if outcome in (ReconcileOutcome.MISSING, ReconcileOutcome.TERMINAL):
            if entry.attempts >= self.max_retry_attempts:
                self._pending.pop(key, None)
                await self._record_anomaly(entry.event, entry.reason, entry.attempts)
            return False

        self._pending.pop(key, None)
        logger.info(
            "reconciler.retry.resolved",
            topic=entry.event.topic_name,
            event_key=entry.event.event_key,
            attempts=entry.attempts,
            outcome=outcome.value,
        )
        return True

    async def _record_anomaly(
        self, event: ChainEvent, reason: AnomalyReason, attempts: int
    ) -> None:
        payload: dict[str, Any] = {
            "fields": {k: str(v) for k, v in event.fields.items()},
            "block_number": event.block_number,
            "contract_address": event.contract_address,
        }
        anomaly = AnomalyRecord(
            topic_name=event.topic_name,
            transaction_hash=event.transaction_hash,
            log_index=event.log_index,
            item_id=int(event.fields["itemId"]) if "itemId" in event.fields else None,
            reason=reason.value,
            attempts=attempts,
            payload=payload,
        )
        logger.error(
            "reconciler.anomaly.recorded",
            topic=event.topic_name,
            event_key=event.event_key,
            item_id=anomaly.item_id,
            reason=reason.value,
            attempts=attempts,
        )
        try:
            await self.db.record_anomaly(anomaly)
        except DatabaseError as e:
            logger.error(
                "reconciler.anomaly.persist_failed",
                event_key=event.event_key,
                error=str(e),
                exc_info=True,
            )
