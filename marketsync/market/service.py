"""Verified write path and paginated reads over the marketplace projection."""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, TypeVar

from marketsync.core.logging import get_logger
from marketsync.shared.exceptions import (
    InvalidListingStateError,
    ListingNotFoundError,
    ReconciliationAnomaly,
    TransactionNotFoundError,
    UnauthorizedError,
    VerificationMismatch,
    VerificationUnavailable,
)
from marketsync.shared.models import (
    CancelClaim,
    CollectionStats,
    DailyVolume,
    ListingClaim,
    ListingRecord,
    MarketStats,
    OnChainItem,
    SaleClaim,
    TransactionRecord,
    TransactionStats,
    TransactionType,
    VerificationResult,
    VerificationStatus,
)
from marketsync.sync.reconciler import SYNTHETIC_LOG_INDEX, ReconcileOutcome

if TYPE_CHECKING:
    from marketsync.core.database import DatabaseClient
    from marketsync.sync.reconciler import StateReconciler
    from marketsync.sync.verifier import OnChainVerifier

logger = get_logger(__name__)

ClaimT = TypeVar("ClaimT", ListingClaim, SaleClaim, CancelClaim)

# Longest look-back accepted by get_daily_volume
MAX_VOLUME_DAYS = 365


class MarketService:
    """Entry points called by the HTTP layer.

    Writes are accepted only after the on-chain verifier reports a match and
    then go through the same reconciler upserts as chain events, so a
    submission and its event converge on the same rows.
    """

    def __init__(
        self,
        db: "DatabaseClient",
        reconciler: "StateReconciler",
        verifier: "OnChainVerifier",
        verification_retry_attempts: int = 2,
        verification_retry_delay: float = 1.0,
        default_page_size: int = 20,
        max_page_size: int = 100,
    ) -> None:
        """Initialize the service.

        Args:
            db: Projection store used for reads
            reconciler: Shared write entry points
            verifier: On-chain verifier
            verification_retry_attempts: Extra attempts when verification is unavailable
            verification_retry_delay: Seconds between verification attempts
            default_page_size: Page size when the caller gives none
            max_page_size: Upper bound for page size
        """
        self.db = db
        self.reconciler = reconciler
        self.verifier = verifier
        self.verification_retry_attempts = verification_retry_attempts
        self.verification_retry_delay = verification_retry_delay
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    async def _verify(
        self,
        verify: Callable[[ClaimT], Awaitable[VerificationResult]],
        claim: ClaimT,
    ) -> OnChainItem:
        """Run a verification, retrying while the chain is unreachable.

        Returns:
            The on-chain item that matched the claim

        Raises:
            VerificationMismatch: If the claim contradicts on-chain state
            VerificationUnavailable: If the chain could not be read after all attempts
        """
        result = VerificationResult.unavailable("not attempted")
        for attempt in range(self.verification_retry_attempts + 1):
            result = await verify(claim)
            if result.status is VerificationStatus.MATCH and result.item is not None:
                return result.item
            if result.status is VerificationStatus.MISMATCH:
                logger.warning(
                    "market.claim.rejected",
                    item_id=claim.item_id,
                    field=result.field,
                    on_chain=str(result.expected),
                    claimed=str(result.actual),
                )
                raise VerificationMismatch(result)

            logger.warning(
                "market.verification.unavailable",
                item_id=claim.item_id,
                attempt=attempt + 1,
                error=result.error,
            )
            if attempt < self.verification_retry_attempts:
                await asyncio.sleep(self.verification_retry_delay)

        raise VerificationUnavailable(
            f"Could not verify item {claim.item_id} on-chain: {result.error}"
        )

    async def create_listing(self, claim: ListingClaim) -> ListingRecord:
        """Accept a listing submission once the contract confirms it.

        Args:
            claim: Submitted listing details

        Returns:
            The stored listing (the existing one if it was already projected)

        Raises:
            VerificationMismatch: If the claim contradicts on-chain state
            VerificationUnavailable: If the chain could not be read
            DatabaseError: If persistence fails
        """
        item = await self._verify(self.verifier.verify_listing, claim)

        listing = ListingRecord(
            item_id=claim.item_id,
            nft_contract=claim.nft_contract,
            token_id=claim.token_id,
            seller=claim.seller,
            price=claim.price,
            listed_at=_listed_at(item),
            tx_hash=claim.tx_hash,
        )
        transaction = TransactionRecord(
            tx_hash=claim.tx_hash,
            log_index=SYNTHETIC_LOG_INDEX,
            tx_type=TransactionType.LIST,
            item_id=claim.item_id,
            block_timestamp=listing.listed_at,
            nft_contract=claim.nft_contract,
            token_id=claim.token_id,
            from_address=claim.seller,
            to_address=self.verifier.marketplace_address,
            value=claim.price,
        )
        stored, created = await self.reconciler.upsert_listing(listing, transaction)
        logger.info("market.listing.accepted", item_id=claim.item_id, created=created)
        return stored

    async def record_sale(self, claim: SaleClaim) -> ListingRecord:
        """Accept a sale submission once the contract confirms it.

        If the listing never reached the projection, it is first created from
        the verified on-chain item.

        Raises:
            VerificationMismatch: If the claim contradicts on-chain state
            VerificationUnavailable: If the chain could not be read
            ReconciliationAnomaly: If the local listing was closed some other way
            DatabaseError: If persistence fails
        """
        item = await self._verify(self.verifier.verify_sale, claim)

        outcome = await self._apply_sale(claim)
        if outcome is ReconcileOutcome.MISSING:
            listing = ListingRecord(
                item_id=item.item_id,
                nft_contract=item.nft_contract,
                token_id=item.token_id,
                seller=item.seller,
                price=item.price,
                listed_at=_listed_at(item),
            )
            await self.reconciler.upsert_listing(listing)
            outcome = await self._apply_sale(claim)

        if outcome not in (ReconcileOutcome.APPLIED, ReconcileOutcome.DUPLICATE):
            raise ReconciliationAnomaly(
                f"Item {claim.item_id} sold on-chain but local listing could not transition "
                f"({outcome.value})"
            )

        stored = await self.db.get_listing(claim.item_id)
        if stored is None:
            raise ListingNotFoundError(f"Listing {claim.item_id} not found")
        logger.info("market.sale.accepted", item_id=claim.item_id, outcome=outcome.value)
        return stored

    async def _apply_sale(self, claim: SaleClaim) -> ReconcileOutcome:
        return await self.reconciler.record_sale(
            item_id=claim.item_id,
            buyer=claim.buyer,
            price=claim.price,
            tx_hash=claim.tx_hash,
            block_number=claim.block_number,
        )

    async def cancel_listing(
        self, item_id: int, seller: str, tx_hash: str | None = None
    ) -> ListingRecord:
        """Cancel a listing on behalf of its seller after on-chain confirmation.

        Args:
            item_id: Marketplace item ID
            seller: Caller's address; must own the listing
            tx_hash: Cancellation transaction, recorded when given

        Raises:
            ListingNotFoundError: If the listing is unknown
            UnauthorizedError: If the caller is not the seller
            InvalidListingStateError: If the listing is not active
            VerificationMismatch: If the contract does not show the cancellation
            VerificationUnavailable: If the chain could not be read
        """
        listing = await self.db.get_listing(item_id)
        if listing is None:
            raise ListingNotFoundError(f"Listing {item_id} not found")
        if listing.seller != seller.lower():
            raise UnauthorizedError("Not the seller of this listing")
        if not listing.is_active:
            raise InvalidListingStateError(f"Listing {item_id} is {listing.status.value}")

        claim = CancelClaim(item_id=item_id, seller=seller, tx_hash=tx_hash)
        await self._verify(self.verifier.verify_cancel, claim)

        outcome = await self.reconciler.record_cancel(
            item_id=item_id,
            tx_hash=claim.tx_hash,
            marketplace_address=self.verifier.marketplace_address,
        )
        logger.info("market.cancel.accepted", item_id=item_id, outcome=outcome.value)

        stored = await self.db.get_listing(item_id)
        if stored is None:
            raise ListingNotFoundError(f"Listing {item_id} not found")
        return stored

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _page_bounds(self, page: int, page_size: int | None) -> tuple[int, int]:
        """Clamp pagination input to (limit, offset)."""
        size = self.default_page_size if not page_size or page_size < 1 else page_size
        size = min(size, self.max_page_size)
        page = max(page, 1)
        return size, (page - 1) * size

    async def get_listing(self, item_id: int) -> ListingRecord:
        """Fetch one listing.

        Raises:
            ListingNotFoundError: If the listing is unknown
        """
        listing = await self.db.get_listing(item_id)
        if listing is None:
            raise ListingNotFoundError(f"Listing {item_id} not found")
        return listing

    async def get_active_listings(
        self, page: int = 1, page_size: int | None = None
    ) -> tuple[list[ListingRecord], int]:
        limit, offset = self._page_bounds(page, page_size)
        return await self.db.get_active_listings(limit, offset)

    async def get_user_listings(
        self, address: str, page: int = 1, page_size: int | None = None
    ) -> tuple[list[ListingRecord], int]:
        limit, offset = self._page_bounds(page, page_size)
        return await self.db.get_listings_by_seller(address, limit, offset)

    async def get_user_transactions(
        self, address: str, page: int = 1, page_size: int | None = None
    ) -> tuple[list[TransactionRecord], int]:
        limit, offset = self._page_bounds(page, page_size)
        return await self.db.get_transactions_by_address(address, limit, offset)

    async def get_collection_stats(self, nft_contract: str) -> CollectionStats:
        """Stored aggregates for a collection, computed on first request."""
        stats = await self.db.get_collection_stats(nft_contract)
        if stats is None:
            stats = await self.db.recompute_collection_stats(nft_contract)
        return stats

    async def get_market_stats(self) -> MarketStats:
        return await self.db.get_market_stats()

    async def search_listings(
        self,
        nft_contract: str | None = None,
        min_price: int | None = None,
        max_price: int | None = None,
        page: int = 1,
        page_size: int | None = None,
    ) -> tuple[list[ListingRecord], int]:
        """Active listings filtered by collection and an inclusive wei price range.

        Args:
            nft_contract: Only listings of this collection
            min_price: Lower price bound, ignored when None
            max_price: Upper price bound, ignored when None
            page: 1-based page number
            page_size: Listings per page

        Returns:
            (listings, total matching count)
        """
        limit, offset = self._page_bounds(page, page_size)
        return await self.db.search_listings(
            limit,
            offset,
            nft_contract=nft_contract,
            min_price=min_price,
            max_price=max_price,
        )

    async def get_transaction(self, tx_hash: str) -> list[TransactionRecord]:
        """Activity records written for one transaction hash.

        Raises:
            TransactionNotFoundError: If nothing was recorded for the hash
        """
        records = await self.db.get_transactions_by_hash(tx_hash)
        if not records:
            raise TransactionNotFoundError(f"Transaction {tx_hash} not found")
        return records

    async def get_nft_transactions(
        self, nft_contract: str, token_id: int, page: int = 1, page_size: int | None = None
    ) -> tuple[list[TransactionRecord], int]:
        limit, offset = self._page_bounds(page, page_size)
        return await self.db.get_transactions_by_nft(nft_contract, token_id, limit, offset)

    async def get_recent_transactions(self, limit: int | None = None) -> list[TransactionRecord]:
        """Latest marketplace activity, bounded like a page."""
        size, _ = self._page_bounds(1, limit)
        return await self.db.get_recent_transactions(size)

    async def get_transaction_stats(self) -> TransactionStats:
        return await self.db.get_transaction_stats()

    async def get_daily_volume(self, days: int = 7) -> list[DailyVolume]:
        """Per-day sale volume for the last `days` days, clamped to 1..MAX_VOLUME_DAYS."""
        days = min(max(days, 1), MAX_VOLUME_DAYS)
        return await self.db.get_daily_volume(days)

    async def get_volume_by_contract(self, nft_contract: str) -> str:
        return await self.db.get_volume_by_contract(nft_contract)


def _listed_at(item: OnChainItem) -> datetime:
    if item.listed_at:
        return datetime.fromtimestamp(item.listed_at, tz=UTC)
    return datetime.now(UTC)
