"""PostgreSQL projection store with connection pooling."""

import asyncio
import json
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from types import TracebackType
from typing import Any, ClassVar

import asyncpg

from marketsync.core.config import get_settings
from marketsync.core.logging import get_logger
from marketsync.shared.exceptions import DatabaseError
from marketsync.shared.models import (
    AnomalyRecord,
    CollectionStats,
    DailyVolume,
    ListingRecord,
    MarketStats,
    SyncState,
    SyncStatus,
    TransactionRecord,
    TransactionStats,
    TransactionType,
)

logger = get_logger(__name__)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

_LISTING_COLUMNS = """
    item_id, nft_contract, token_id, seller, buyer, price, status,
    listed_at, sold_at, cancelled_at, tx_hash, sale_tx_hash
"""

_TRANSACTION_COLUMNS = """
    tx_hash, log_index, tx_type, item_id, block_number, block_timestamp,
    nft_contract, token_id, from_address, to_address, value, platform_fee, status
"""

_INSERT_TRANSACTION = """
    INSERT INTO transactions (
        tx_hash, log_index, tx_type, item_id, block_number, block_timestamp,
        nft_contract, token_id, from_address, to_address, value, value_numeric,
        platform_fee, platform_fee_numeric, status
    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15)
    ON CONFLICT DO NOTHING
    RETURNING id
"""

# Listing column that mirrors the hash of each activity type's record
_LISTING_HASH_UPDATES = {
    TransactionType.LIST: """
        UPDATE listings SET tx_hash = $2, updated_at = NOW() WHERE item_id = $1
    """,
    TransactionType.SALE: """
        UPDATE listings SET sale_tx_hash = $2, updated_at = NOW()
        WHERE item_id = $1 AND status = 'sold'
    """,
}


def _to_naive_utc(dt: datetime | None) -> datetime | None:
    """Convert timezone-aware datetime to naive UTC datetime.

    PostgreSQL TIMESTAMP columns (without timezone) expect naive datetimes.

    Args:
        dt: Datetime object (timezone-aware or naive), or None

    Returns:
        Naive datetime in UTC, or None
    """
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(UTC).replace(tzinfo=None)


def _wei_or_none(value: Decimal | None) -> str | None:
    return None if value is None else str(int(value))


def _row_to_listing(row: Any) -> ListingRecord:
    return ListingRecord(
        item_id=row["item_id"],
        nft_contract=row["nft_contract"],
        token_id=int(row["token_id"]),
        seller=row["seller"],
        buyer=row["buyer"],
        price=row["price"],
        status=row["status"],
        listed_at=row["listed_at"],
        sold_at=row["sold_at"],
        cancelled_at=row["cancelled_at"],
        tx_hash=row["tx_hash"],
        sale_tx_hash=row["sale_tx_hash"],
    )


def _row_to_transaction(row: Any) -> TransactionRecord:
    return TransactionRecord(
        tx_hash=row["tx_hash"],
        log_index=row["log_index"],
        tx_type=row["tx_type"],
        item_id=row["item_id"],
        block_number=row["block_number"],
        block_timestamp=row["block_timestamp"],
        nft_contract=row["nft_contract"],
        token_id=None if row["token_id"] is None else int(row["token_id"]),
        from_address=row["from_address"],
        to_address=row["to_address"],
        value=row["value"],
        platform_fee=row["platform_fee"],
        status=row["status"],
    )


def _row_to_sync_state(row: Any) -> SyncState:
    return SyncState(
        contract_address=row["contract_address"],
        last_synced_block=row["last_synced_block"],
        last_synced_at=row["last_synced_at"],
        status=row["sync_status"],
        error_message=row["error_message"],
    )


def _transaction_args(tx: TransactionRecord) -> tuple[Any, ...]:
    return (
        tx.tx_hash,
        tx.log_index,
        tx.tx_type.value,
        tx.item_id,
        tx.block_number,
        _to_naive_utc(tx.block_timestamp),
        tx.nft_contract,
        None if tx.token_id is None else Decimal(tx.token_id),
        tx.from_address,
        tx.to_address,
        tx.value,
        Decimal(tx.value),
        tx.platform_fee,
        Decimal(tx.platform_fee),
        tx.status.value,
    )


class DatabaseClient:
    """Async PostgreSQL client backing the marketplace projection.

    Listing status changes are conditional updates (`WHERE status = 'active'`)
    executed in the same database transaction as the matching activity
    record, so concurrent writers for one item cannot lose updates.
    """

    MAX_RETRIES: ClassVar[int] = 3
    RETRY_DELAYS: ClassVar[list[int]] = [2, 4, 8]

    def __init__(self) -> None:
        self.pool: asyncpg.Pool | None = None

    async def __aenter__(self) -> "DatabaseClient":
        """Create connection pool with retry logic."""
        settings = get_settings()

        for attempt in range(self.MAX_RETRIES):
            try:
                self.pool = await asyncpg.create_pool(
                    host=settings.db_host,
                    port=settings.db_port,
                    database=settings.db_name,
                    user=settings.db_user,
                    password=settings.db_password,
                    min_size=settings.db_pool_min_size,
                    max_size=settings.db_pool_max_size,
                    timeout=60.0,
                )
                logger.info(
                    "database.pool.created",
                    database=settings.dsn_summary,
                    min_size=settings.db_pool_min_size,
                    max_size=settings.db_pool_max_size,
                )
                return self
            except (asyncpg.PostgresError, OSError) as e:
                if attempt < self.MAX_RETRIES - 1:
                    logger.warning("database.pool.retry", attempt=attempt + 1, error=str(e))
                    await asyncio.sleep(self.RETRY_DELAYS[attempt])
                else:
                    logger.error("database.pool.failed", error=str(e), exc_info=True)
                    raise DatabaseError(f"Failed to create pool: {e}") from e
        raise DatabaseError("Unreachable")

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Close connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("database.pool.closed")

    async def ensure_schema(self) -> None:
        """Apply schema.sql (idempotent CREATE ... IF NOT EXISTS statements).

        Raises:
            DatabaseError: If connection pool is not initialized or DDL fails
        """
        if not self.pool:
            raise DatabaseError("Connection pool not initialized")

        ddl = SCHEMA_PATH.read_text(encoding="utf-8")

        try:
            async with self.pool.acquire() as conn:
                await conn.execute(ddl)
                logger.info("database.schema.applied")
        except asyncpg.PostgresError as e:
            logger.error("database.ensure_schema.failed", error=str(e), exc_info=True)
            raise DatabaseError(f"Failed to apply schema: {e}") from e

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    async def get_listing(self, item_id: int) -> ListingRecord | None:
        """Fetch a listing by marketplace item ID.

        Args:
            item_id: Chain-assigned item ID

        Returns:
            ListingRecord, or None if unknown

        Raises:
            DatabaseError: If connection pool is not initialized or query fails
        """
        if not self.pool:
            raise DatabaseError("Connection pool not initialized")

        query = f"SELECT {_LISTING_COLUMNS} FROM listings WHERE item_id = $1"

        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(query, item_id)
                return _row_to_listing(row) if row else None
        except asyncpg.PostgresError as e:
            logger.error(
                "database.get_listing.failed", item_id=item_id, error=str(e), exc_info=True
            )
            raise DatabaseError(f"Failed to get listing: {e}") from e

    async def insert_listing(
        self, listing: ListingRecord, transaction: TransactionRecord | None = None
    ) -> bool:
        """Insert an active listing and its `list` activity record.

        Both rows are written in one database transaction. An existing listing
        with the same item_id makes this a no-op.

        Args:
            listing: Listing to insert
            transaction: Optional `list` activity record

        Returns:
            True if the listing was inserted, False if it already existed

        Raises:
            DatabaseError: If connection pool is not initialized or query fails
        """
        if not self.pool:
            raise DatabaseError("Connection pool not initialized")

        query = """
            INSERT INTO listings (
                item_id, nft_contract, token_id, seller, price, price_numeric,
                status, listed_at, tx_hash
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, COALESCE($8, NOW()), $9)
            ON CONFLICT (item_id) DO NOTHING
            RETURNING id
        """

        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        query,
                        listing.item_id,
                        listing.nft_contract,
                        Decimal(listing.token_id),
                        listing.seller,
                        listing.price,
                        Decimal(listing.price),
                        listing.status.value,
                        _to_naive_utc(listing.listed_at),
                        listing.tx_hash,
                    )
                    if row is not None and transaction is not None:
                        await conn.fetchrow(_INSERT_TRANSACTION, *_transaction_args(transaction))
                    return row is not None
        except asyncpg.PostgresError as e:
            logger.error(
                "database.insert_listing.failed",
                item_id=listing.item_id,
                error=str(e),
                exc_info=True,
            )
            raise DatabaseError(f"Failed to insert listing: {e}") from e

    async def mark_listing_sold(
        self,
        item_id: int,
        buyer: str,
        sold_at: datetime,
        sale_tx_hash: str,
        transaction: TransactionRecord,
    ) -> bool:
        """Transition an active listing to sold and append its sale record.

        Args:
            item_id: Chain-assigned item ID
            buyer: Purchaser address
            sold_at: Sale timestamp
            sale_tx_hash: Sale transaction hash
            transaction: `sale` activity record

        Returns:
            True if the listing moved from active to sold, False otherwise

        Raises:
            DatabaseError: If connection pool is not initialized or query fails
        """
        if not self.pool:
            raise DatabaseError("Connection pool not initialized")

        query = """
            UPDATE listings
            SET status = 'sold', buyer = $2, sold_at = $3, sale_tx_hash = $4, updated_at = NOW()
            WHERE item_id = $1 AND status = 'active'
            RETURNING id
        """

        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        query, item_id, buyer, _to_naive_utc(sold_at), sale_tx_hash
                    )
                    if row is None:
                        return False
                    await conn.fetchrow(_INSERT_TRANSACTION, *_transaction_args(transaction))
                    return True
        except asyncpg.PostgresError as e:
            logger.error(
                "database.mark_listing_sold.failed", item_id=item_id, error=str(e), exc_info=True
            )
            raise DatabaseError(f"Failed to mark listing sold: {e}") from e

    async def mark_listing_cancelled(
        self,
        item_id: int,
        cancelled_at: datetime,
        transaction: TransactionRecord | None = None,
    ) -> bool:
        """Transition an active listing to cancelled.

        Args:
            item_id: Chain-assigned item ID
            cancelled_at: Cancellation timestamp
            transaction: Optional `cancel` activity record

        Returns:
            True if the listing moved from active to cancelled, False otherwise

        Raises:
            DatabaseError: If connection pool is not initialized or query fails
        """
        if not self.pool:
            raise DatabaseError("Connection pool not initialized")

        query = """
            UPDATE listings
            SET status = 'cancelled', cancelled_at = $2, updated_at = NOW()
            WHERE item_id = $1 AND status = 'active'
            RETURNING id
        """

        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(query, item_id, _to_naive_utc(cancelled_at))
                    if row is None:
                        return False
                    if transaction is not None:
                        await conn.fetchrow(_INSERT_TRANSACTION, *_transaction_args(transaction))
                    return True
        except asyncpg.PostgresError as e:
            logger.error(
                "database.mark_listing_cancelled.failed",
                item_id=item_id,
                error=str(e),
                exc_info=True,
            )
            raise DatabaseError(f"Failed to mark listing cancelled: {e}") from e

    async def merge_chain_transaction(self, transaction: TransactionRecord) -> bool:
        """Attach chain coordinates to the item's submitted record of the same type.

        The `log_index = -1` record written from a verified submission takes
        over the event's tx_hash, log_index and block. If the item has no
        record of this type yet, the event's record is inserted. For `list`
        and `sale` records the listing's transaction hash follows.

        Args:
            transaction: Chain-sourced activity record

        Returns:
            True if a record was updated or inserted, False if the chain
            record was already present

        Raises:
            DatabaseError: If connection pool is not initialized or query fails
        """
        if not self.pool:
            raise DatabaseError("Connection pool not initialized")

        update = """
            UPDATE transactions
            SET tx_hash = $3, log_index = $4, block_number = $5,
                block_timestamp = COALESCE($6, block_timestamp)
            WHERE item_id = $1 AND tx_type = $2 AND log_index = -1
            RETURNING id
        """
        listing_update = _LISTING_HASH_UPDATES.get(transaction.tx_type)

        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        update,
                        transaction.item_id,
                        transaction.tx_type.value,
                        transaction.tx_hash,
                        transaction.log_index,
                        transaction.block_number,
                        _to_naive_utc(transaction.block_timestamp),
                    )
                    if row is None:
                        row = await conn.fetchrow(
                            _INSERT_TRANSACTION, *_transaction_args(transaction)
                        )
                    if row is None:
                        return False
                    if listing_update is not None:
                        await conn.execute(
                            listing_update, transaction.item_id, transaction.tx_hash
                        )
                    return True
        except asyncpg.PostgresError as e:
            logger.error(
                "database.merge_chain_transaction.failed",
                item_id=transaction.item_id,
                tx_type=transaction.tx_type.value,
                error=str(e),
                exc_info=True,
            )
            raise DatabaseError(f"Failed to merge chain transaction: {e}") from e

    async def get_active_listings(
        self, limit: int, offset: int
    ) -> tuple[list[ListingRecord], int]:
        """Page through active listings, newest first.

        Returns:
            (listings, total active count)

        Raises:
            DatabaseError: If connection pool is not initialized or query fails
        """
        if not self.pool:
            raise DatabaseError("Connection pool not initialized")

        query = f"""
            SELECT {_LISTING_COLUMNS} FROM listings
            WHERE status = 'active'
            ORDER BY listed_at DESC, item_id DESC
            LIMIT $1 OFFSET $2
        """

        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(query, limit, offset)
                total = await conn.fetchval("SELECT COUNT(*) FROM listings WHERE status = 'active'")
                return [_row_to_listing(row) for row in rows], int(total)
        except asyncpg.PostgresError as e:
            logger.error("database.get_active_listings.failed", error=str(e), exc_info=True)
            raise DatabaseError(f"Failed to get active listings: {e}") from e

    async def get_listings_by_seller(
        self, seller: str, limit: int, offset: int
    ) -> tuple[list[ListingRecord], int]:
        """Page through every listing created by a seller.

        Returns:
            (listings, total count for the seller)

        Raises:
            DatabaseError: If connection pool is not initialized or query fails
        """
        if not self.pool:
            raise DatabaseError("Connection pool not initialized")

        query = f"""
            SELECT {_LISTING_COLUMNS} FROM listings
            WHERE seller = $1
            ORDER BY listed_at DESC, item_id DESC
            LIMIT $2 OFFSET $3
        """

        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(query, seller.lower(), limit, offset)
                total = await conn.fetchval(
                    "SELECT COUNT(*) FROM listings WHERE seller = $1", seller.lower()
                )
                return [_row_to_listing(row) for row in rows], int(total)
        except asyncpg.PostgresError as e:
            logger.error("database.get_listings_by_seller.failed", error=str(e), exc_info=True)
            raise DatabaseError(f"Failed to get seller listings: {e}") from e

    async def search_listings(
        self,
        limit: int,
        offset: int,
        nft_contract: str | None = None,
        min_price: int | None = None,
        max_price: int | None = None,
    ) -> tuple[list[ListingRecord], int]:
        """Page through active listings filtered by collection and price range.

        Args:
            limit: Page size
            offset: Rows to skip
            nft_contract: Only listings of this collection
            min_price: Inclusive lower bound in wei
            max_price: Inclusive upper bound in wei

        Returns:
            (listings, total matching count)

        Raises:
            DatabaseError: If connection pool is not initialized or query fails
        """
        if not self.pool:
            raise DatabaseError("Connection pool not initialized")

        conditions = ["status = 'active'"]
        args: list[Any] = []
        if nft_contract:
            args.append(nft_contract.lower())
            conditions.append(f"nft_contract = ${len(args)}")
        if min_price is not None:
            args.append(Decimal(min_price))
            conditions.append(f"price_numeric >= ${len(args)}")
        if max_price is not None:
            args.append(Decimal(max_price))
            conditions.append(f"price_numeric <= ${len(args)}")
        where = " AND ".join(conditions)

        query = f"""
            SELECT {_LISTING_COLUMNS} FROM listings
            WHERE {where}
            ORDER BY listed_at DESC, item_id DESC
            LIMIT ${len(args) + 1} OFFSET ${len(args) + 2}
        """

        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(query, *args, limit, offset)
                total = await conn.fetchval(f"SELECT COUNT(*) FROM listings WHERE {where}", *args)
                return [_row_to_listing(row) for row in rows], int(total)
        except asyncpg.PostgresError as e:
            logger.error("database.search_listings.failed", error=str(e), exc_info=True)
            raise DatabaseError(f"Failed to search listings: {e}") from e

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def get_transactions_by_address(
        self, address: str, limit: int, offset: int
    ) -> tuple[list[TransactionRecord], int]:
        """Page through activity where the address is sender or receiver.

        Returns:
            (transactions, total count for the address)

        Raises:
            DatabaseError: If connection pool is not initialized or query fails
        """
        if not self.pool:
            raise DatabaseError("Connection pool not initialized")

        query = f"""
            SELECT {_TRANSACTION_COLUMNS} FROM transactions
            WHERE from_address = $1 OR to_address = $1
            ORDER BY block_number DESC NULLS LAST, created_at DESC
            LIMIT $2 OFFSET $3
        """

        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(query, address.lower(), limit, offset)
                total = await conn.fetchval(
                    "SELECT COUNT(*) FROM transactions WHERE from_address = $1 OR to_address = $1",
                    address.lower(),
                )
                return [_row_to_transaction(row) for row in rows], int(total)
        except asyncpg.PostgresError as e:
            logger.error("database.get_transactions_by_address.failed", error=str(e), exc_info=True)
            raise DatabaseError(f"Failed to get transactions: {e}") from e

    async def get_transactions_by_hash(self, tx_hash: str) -> list[TransactionRecord]:
        """Every activity record written for one transaction, in log order.

        Raises:
            DatabaseError: If connection pool is not initialized or query fails
        """
        if not self.pool:
            raise DatabaseError("Connection pool not initialized")

        query = f"""
            SELECT {_TRANSACTION_COLUMNS} FROM transactions
            WHERE tx_hash = $1
            ORDER BY log_index
        """

        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(query, tx_hash.lower())
                return [_row_to_transaction(row) for row in rows]
        except asyncpg.PostgresError as e:
            logger.error(
                "database.get_transactions_by_hash.failed",
                tx_hash=tx_hash,
                error=str(e),
                exc_info=True,
            )
            raise DatabaseError(f"Failed to get transaction: {e}") from e

    async def get_transactions_by_nft(
        self, nft_contract: str, token_id: int, limit: int, offset: int
    ) -> tuple[list[TransactionRecord], int]:
        """Page through the history of one token, newest first.

        Returns:
            (transactions, total count for the token)

        Raises:
            DatabaseError: If connection pool is not initialized or query fails
        """
        if not self.pool:
            raise DatabaseError("Connection pool not initialized")

        query = f"""
            SELECT {_TRANSACTION_COLUMNS} FROM transactions
            WHERE nft_contract = $1 AND token_id = $2
            ORDER BY block_timestamp DESC NULLS LAST, created_at DESC
            LIMIT $3 OFFSET $4
        """

        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    query, nft_contract.lower(), Decimal(token_id), limit, offset
                )
                total = await conn.fetchval(
                    "SELECT COUNT(*) FROM transactions WHERE nft_contract = $1 AND token_id = $2",
                    nft_contract.lower(),
                    Decimal(token_id),
                )
                return [_row_to_transaction(row) for row in rows], int(total)
        except asyncpg.PostgresError as e:
            logger.error("database.get_transactions_by_nft.failed", error=str(e), exc_info=True)
            raise DatabaseError(f"Failed to get token transactions: {e}") from e

    async def get_recent_transactions(self, limit: int) -> list[TransactionRecord]:
        """Latest activity across the marketplace.

        Raises:
            DatabaseError: If connection pool is not initialized or query fails
        """
        if not self.pool:
            raise DatabaseError("Connection pool not initialized")

        query = f"""
            SELECT {_TRANSACTION_COLUMNS} FROM transactions
            ORDER BY block_timestamp DESC NULLS LAST, created_at DESC
            LIMIT $1
        """

        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(query, limit)
                return [_row_to_transaction(row) for row in rows]
        except asyncpg.PostgresError as e:
            logger.error("database.get_recent_transactions.failed", error=str(e), exc_info=True)
            raise DatabaseError(f"Failed to get recent transactions: {e}") from e

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    async def recompute_collection_stats(self, nft_contract: str) -> CollectionStats:
        """Recompute a collection's aggregates from active listings and confirmed sales.

        Args:
            nft_contract: NFT contract address

        Returns:
            Freshly computed CollectionStats

        Raises:
            DatabaseError: If connection pool is not initialized or query fails
        """
        if not self.pool:
            raise DatabaseError("Connection pool not initialized")

        query = """
            INSERT INTO collection_stats (
                nft_contract, floor_price, ceiling_price, average_price, active_listings,
                unique_sellers, total_sales, total_volume, unique_buyers, updated_at
            )
            SELECT $1, a.floor_price, a.ceiling_price, a.average_price, a.active_listings,
                   a.unique_sellers, s.total_sales, s.total_volume, s.unique_buyers, NOW()
            FROM (
                SELECT MIN(price_numeric) AS floor_price,
                       MAX(price_numeric) AS ceiling_price,
                       TRUNC(AVG(price_numeric)) AS average_price,
                       COUNT(*) AS active_listings,
                       COUNT(DISTINCT seller) AS unique_sellers
                FROM listings
                WHERE nft_contract = $1 AND status = 'active'
            ) a, (
                SELECT COUNT(*) AS total_sales,
                       COALESCE(SUM(value_numeric), 0) AS total_volume,
                       COUNT(DISTINCT to_address) AS unique_buyers
                FROM transactions
                WHERE nft_contract = $1 AND tx_type = 'sale' AND status = 'confirmed'
            ) s
            ON CONFLICT (nft_contract) DO UPDATE SET
                floor_price = EXCLUDED.floor_price,
                ceiling_price = EXCLUDED.ceiling_price,
                average_price = EXCLUDED.average_price,
                active_listings = EXCLUDED.active_listings,
                unique_sellers = EXCLUDED.unique_sellers,
                total_sales = EXCLUDED.total_sales,
                total_volume = EXCLUDED.total_volume,
                unique_buyers = EXCLUDED.unique_buyers,
                updated_at = EXCLUDED.updated_at
            RETURNING *
        """

        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(query, nft_contract.lower())
                stats = self._row_to_collection_stats(row)
                logger.debug(
                    "database.collection_stats.recomputed",
                    nft_contract=stats.nft_contract,
                    floor_price=stats.floor_price,
                    active_listings=stats.active_listings,
                )
                return stats
        except asyncpg.PostgresError as e:
            logger.error(
                "database.recompute_collection_stats.failed",
                nft_contract=nft_contract,
                error=str(e),
                exc_info=True,
            )
            raise DatabaseError(f"Failed to recompute collection stats: {e}") from e

    async def get_collection_stats(self, nft_contract: str) -> CollectionStats | None:
        """Read the last computed aggregates for a collection.

        Raises:
            DatabaseError: If connection pool is not initialized or query fails
        """
        if not self.pool:
            raise DatabaseError("Connection pool not initialized")

        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    "SELECT * FROM collection_stats WHERE nft_contract = $1", nft_contract.lower()
                )
                return self._row_to_collection_stats(row) if row else None
        except asyncpg.PostgresError as e:
            logger.error("database.get_collection_stats.failed", error=str(e), exc_info=True)
            raise DatabaseError(f"Failed to get collection stats: {e}") from e

    async def get_market_stats(self) -> MarketStats:
        """Marketplace-wide listing counts and price summary.

        Raises:
            DatabaseError: If connection pool is not initialized or query fails
        """
        if not self.pool:
            raise DatabaseError("Connection pool not initialized")

        query = """
            SELECT COUNT(*) FILTER (WHERE status = 'active') AS active_listings,
                   COUNT(*) AS total_listings,
                   COUNT(*) FILTER (WHERE status = 'sold') AS sold_listings,
                   COUNT(*) FILTER (WHERE status = 'cancelled') AS cancelled_listings,
                   COALESCE(SUM(price_numeric) FILTER (WHERE status = 'sold'), 0) AS total_volume,
                   TRUNC(AVG(price_numeric) FILTER (WHERE status = 'active')) AS average_price,
                   MIN(price_numeric) FILTER (WHERE status = 'active') AS floor_price,
                   MAX(price_numeric) FILTER (WHERE status = 'active') AS ceiling_price
            FROM listings
        """

        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(query)
                return MarketStats(
                    active_listings=row["active_listings"],
                    total_listings=row["total_listings"],
                    sold_listings=row["sold_listings"],
                    cancelled_listings=row["cancelled_listings"],
                    total_volume=str(int(row["total_volume"])),
                    average_price=_wei_or_none(row["average_price"]),
                    floor_price=_wei_or_none(row["floor_price"]),
                    ceiling_price=_wei_or_none(row["ceiling_price"]),
                )
        except asyncpg.PostgresError as e:
            logger.error("database.get_market_stats.failed", error=str(e), exc_info=True)
            raise DatabaseError(f"Failed to get market stats: {e}") from e

    async def get_transaction_stats(self) -> TransactionStats:
        """Counts per activity type and total sale volume over confirmed records.

        Raises:
            DatabaseError: If connection pool is not initialized or query fails
        """
        if not self.pool:
            raise DatabaseError("Connection pool not initialized")

        query = """
            SELECT COUNT(*) FILTER (WHERE tx_type = 'list') AS total_listings,
                   COUNT(*) FILTER (WHERE tx_type = 'sale') AS total_sales,
                   COUNT(*) FILTER (WHERE tx_type = 'cancel') AS total_cancellations,
                   COALESCE(SUM(value_numeric) FILTER (WHERE tx_type = 'sale'), 0)
                       AS total_volume
            FROM transactions
            WHERE status = 'confirmed'
        """

        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(query)
                return TransactionStats(
                    total_listings=row["total_listings"],
                    total_sales=row["total_sales"],
                    total_cancellations=row["total_cancellations"],
                    total_transactions=(
                        row["total_listings"] + row["total_sales"] + row["total_cancellations"]
                    ),
                    total_volume=str(int(row["total_volume"])),
                )
        except asyncpg.PostgresError as e:
            logger.error("database.get_transaction_stats.failed", error=str(e), exc_info=True)
            raise DatabaseError(f"Failed to get transaction stats: {e}") from e

    async def get_daily_volume(self, days: int) -> list[DailyVolume]:
        """Confirmed sale count and volume per UTC day, most recent day first.

        Args:
            days: Number of days to look back from now

        Raises:
            DatabaseError: If connection pool is not initialized or query fails
        """
        if not self.pool:
            raise DatabaseError("Connection pool not initialized")

        query = """
            SELECT DATE(block_timestamp) AS day,
                   COUNT(*) AS tx_count,
                   COALESCE(SUM(value_numeric), 0) AS volume
            FROM transactions
            WHERE tx_type = 'sale' AND status = 'confirmed'
              AND block_timestamp >= (NOW() AT TIME ZONE 'UTC') - make_interval(days => $1)
            GROUP BY DATE(block_timestamp)
            ORDER BY day DESC
        """

        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(query, days)
                return [
                    DailyVolume(
                        day=row["day"], tx_count=row["tx_count"], volume=str(int(row["volume"]))
                    )
                    for row in rows
                ]
        except asyncpg.PostgresError as e:
            logger.error("database.get_daily_volume.failed", error=str(e), exc_info=True)
            raise DatabaseError(f"Failed to get daily volume: {e}") from e

    async def get_volume_by_contract(self, nft_contract: str) -> str:
        """Total confirmed sale volume of one collection, in wei.

        Raises:
            DatabaseError: If connection pool is not initialized or query fails
        """
        if not self.pool:
            raise DatabaseError("Connection pool not initialized")

        query = """
            SELECT COALESCE(SUM(value_numeric), 0) FROM transactions
            WHERE nft_contract = $1 AND tx_type = 'sale' AND status = 'confirmed'
        """

        try:
            async with self.pool.acquire() as conn:
                volume = await conn.fetchval(query, nft_contract.lower())
                return str(int(volume))
        except asyncpg.PostgresError as e:
            logger.error("database.get_volume_by_contract.failed", error=str(e), exc_info=True)
            raise DatabaseError(f"Failed to get contract volume: {e}") from e

    @staticmethod
    def _row_to_collection_stats(row: Any) -> CollectionStats:
        return CollectionStats(
            nft_contract=row["nft_contract"],
            floor_price=_wei_or_none(row["floor_price"]),
            ceiling_price=_wei_or_none(row["ceiling_price"]),
            average_price=_wei_or_none(row["average_price"]),
            active_listings=row["active_listings"],
            unique_sellers=row["unique_sellers"],
            total_sales=row["total_sales"],
            total_volume=str(int(row["total_volume"])),
            unique_buyers=row["unique_buyers"],
            updated_at=row["updated_at"],
        )

    # ------------------------------------------------------------------
    # Anomalies
    # ------------------------------------------------------------------

    async def record_anomaly(self, anomaly: AnomalyRecord) -> bool:
        """Persist an unresolved event for operator inspection.

        Returns:
            True if recorded, False if the same anomaly was already recorded

        Raises:
            DatabaseError: If connection pool is not initialized or query fails
        """
        if not self.pool:
            raise DatabaseError("Connection pool not initialized")

        query = """
            INSERT INTO reconciliation_anomalies (
                topic_name, transaction_hash, log_index, item_id, reason, attempts, payload
            ) VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb)
            ON CONFLICT (transaction_hash, log_index, reason) DO NOTHING
            RETURNING id
        """

        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    query,
                    anomaly.topic_name,
                    anomaly.transaction_hash,
                    anomaly.log_index,
                    anomaly.item_id,
                    anomaly.reason,
                    anomaly.attempts,
                    json.dumps(anomaly.payload, default=str),
                )
                return row is not None
        except asyncpg.PostgresError as e:
            logger.error("database.record_anomaly.failed", error=str(e), exc_info=True)
            raise DatabaseError(f"Failed to record anomaly: {e}") from e

    # ------------------------------------------------------------------
    # Sync state
    # ------------------------------------------------------------------

    async def get_sync_state(self, contract_address: str) -> SyncState | None:
        """Fetch the catch-up checkpoint for a contract.

        Raises:
            DatabaseError: If connection pool is not initialized or query fails
        """
        if not self.pool:
            raise DatabaseError("Connection pool not initialized")

        query = """
            SELECT contract_address, last_synced_block, last_synced_at, sync_status, error_message
            FROM sync_state WHERE contract_address = $1
        """

        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(query, contract_address.lower())
                return _row_to_sync_state(row) if row else None
        except asyncpg.PostgresError as e:
            logger.error("database.get_sync_state.failed", error=str(e), exc_info=True)
            raise DatabaseError(f"Failed to get sync state: {e}") from e

    async def init_sync_state(self, contract_address: str, block_number: int) -> SyncState:
        """Create the checkpoint row if missing and return the stored state.

        Args:
            contract_address: Watched contract
            block_number: Initial last_synced_block for a new row

        Raises:
            DatabaseError: If connection pool is not initialized or query fails
        """
        if not self.pool:
            raise DatabaseError("Connection pool not initialized")

        insert = """
            INSERT INTO sync_state (contract_address, last_synced_block, sync_status)
            VALUES ($1, $2, 'active')
            ON CONFLICT (contract_address) DO NOTHING
        """
        select = """
            SELECT contract_address, last_synced_block, last_synced_at, sync_status, error_message
            FROM sync_state WHERE contract_address = $1
        """

        try:
            async with self.pool.acquire() as conn:
                await conn.execute(insert, contract_address.lower(), block_number)
                row = await conn.fetchrow(select, contract_address.lower())
                return _row_to_sync_state(row)
        except asyncpg.PostgresError as e:
            logger.error("database.init_sync_state.failed", error=str(e), exc_info=True)
            raise DatabaseError(f"Failed to initialize sync state: {e}") from e

    async def advance_sync_state(self, contract_address: str, block_number: int) -> bool:
        """Move the checkpoint forward. Never moves it backward.

        A successful advance also clears any previous error status.

        Returns:
            True if the checkpoint moved, False if block_number was not ahead

        Raises:
            DatabaseError: If connection pool is not initialized or query fails
        """
        if not self.pool:
            raise DatabaseError("Connection pool not initialized")

        query = """
            UPDATE sync_state
            SET last_synced_block = $2, last_synced_at = NOW(), sync_status = 'active',
                error_message = NULL, updated_at = NOW()
            WHERE contract_address = $1 AND last_synced_block < $2
            RETURNING id
        """

        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(query, contract_address.lower(), block_number)
                return row is not None
        except asyncpg.PostgresError as e:
            logger.error("database.advance_sync_state.failed", error=str(e), exc_info=True)
            raise DatabaseError(f"Failed to advance sync state: {e}") from e

    async def set_sync_status(
        self, contract_address: str, status: SyncStatus, error_message: str | None = None
    ) -> None:
        """Record sync health without touching the checkpoint.

        Raises:
            DatabaseError: If connection pool is not initialized or query fails
        """
        if not self.pool:
            raise DatabaseError("Connection pool not initialized")

        query = """
            UPDATE sync_state
            SET sync_status = $2, error_message = $3, updated_at = NOW()
            WHERE contract_address = $1
        """

        try:
            async with self.pool.acquire() as conn:
                await conn.execute(query, contract_address.lower(), status.value, error_message)
        except asyncpg.PostgresError as e:
            logger.error("database.set_sync_status.failed", error=str(e), exc_info=True)
            raise DatabaseError(f"Failed to set sync status: {e}") from e

    async def reset_sync_state(self, contract_address: str, block_number: int) -> None:
        """Operator rewind of the checkpoint. The only way to move it backward.

        Raises:
            DatabaseError: If connection pool is not initialized or query fails
        """
        if not self.pool:
            raise DatabaseError("Connection pool not initialized")

        query = """
            UPDATE sync_state
            SET last_synced_block = $2, last_synced_at = NOW(), sync_status = 'active',
                error_message = NULL, updated_at = NOW()
            WHERE contract_address = $1
        """

        try:
            async with self.pool.acquire() as conn:
                await conn.execute(query, contract_address.lower(), block_number)
                logger.warning(
                    "database.sync_state.reset",
                    contract_address=contract_address,
                    block_number=block_number,
                )
        except asyncpg.PostgresError as e:
            logger.error("database.reset_sync_state.failed", error=str(e), exc_info=True)
            raise DatabaseError(f"Failed to reset sync state: {e}") from e
