"""Data models for the marketplace projection and chain events."""

from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def _format_address(address: str) -> str:
    """Normalize address to lowercase hex.

    Args:
        address: Ethereum address (checksummed or not)

    Returns:
        Lowercase address
    """
    return address.lower()


def _ensure_utc(v: datetime | str | None) -> datetime | None:
    """Parse and attach UTC to naive or ISO string timestamps."""
    if v is None:
        return None
    if isinstance(v, str):
        v = datetime.fromisoformat(v.replace("Z", "+00:00"))
    if v.tzinfo is None:
        return v.replace(tzinfo=UTC)
    return v


def _wei_string(v: int | str) -> str:
    """Coerce a wei amount to its exact decimal string form."""
    if isinstance(v, bool):
        raise ValueError("Amount must be an integer, not a bool")
    if isinstance(v, int):
        if v < 0:
            raise ValueError(f"Amount must be non-negative, got {v}")
        return str(v)
    text = str(v).strip()
    if not text.isdigit():
        raise ValueError(f"Amount must be a non-negative integer string, got {v!r}")
    return str(int(text))


class ListingStatus(StrEnum):
    """Lifecycle of a listing. Transitions only leave ACTIVE."""

    ACTIVE = "active"
    SOLD = "sold"
    CANCELLED = "cancelled"


class TransactionType(StrEnum):
    # mint and transfer are accepted by the store; the marketplace contract emits neither
    MINT = "mint"
    LIST = "list"
    SALE = "sale"
    CANCEL = "cancel"
    TRANSFER = "transfer"


class TransactionStatus(StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class SyncStatus(StrEnum):
    ACTIVE = "active"
    PAUSED = "paused"
    ERROR = "error"


class VerificationStatus(StrEnum):
    MATCH = "match"
    MISMATCH = "mismatch"
    UNAVAILABLE = "unavailable"


class ChainEvent(BaseModel):
    """Decoded marketplace contract event.

    Attributes:
        topic_name: Event name (e.g., 'MarketItemCreated')
        contract_address: Emitting contract address
        block_number: Block containing the log
        log_index: Position of the log within the block
        transaction_hash: Hash of the emitting transaction
        fields: Decoded event arguments keyed by ABI input name
        block_timestamp: Block time, when known
    """

    model_config = ConfigDict(frozen=True)

    topic_name: str = Field(..., description="Event name")
    contract_address: str = Field(..., description="Emitting contract address")
    block_number: int = Field(..., ge=0, description="Block number")
    log_index: int = Field(..., ge=0, description="Log index within the block")
    transaction_hash: str = Field(..., description="Transaction hash")
    fields: dict[str, Any] = Field(default_factory=dict, description="Decoded arguments")
    block_timestamp: datetime | None = Field(None, description="Block timestamp")

    @field_validator("contract_address", "transaction_hash", mode="before")
    @classmethod
    def normalize_hex(cls, v: str) -> str:
        """Normalize hex strings to lowercase."""
        return _format_address(v)

    @field_validator("block_timestamp", mode="before")
    @classmethod
    def ensure_timezone(cls, v: datetime | str | None) -> datetime | None:
        """Ensure timestamp is timezone-aware."""
        return _ensure_utc(v)

    @property
    def key(self) -> tuple[str, int]:
        """Natural key of the event: (transaction_hash, log_index)."""
        return (self.transaction_hash, self.log_index)

    @property
    def event_key(self) -> str:
        """Printable natural key for logs and correlation IDs."""
        return f"{self.transaction_hash}:{self.log_index}"

    @property
    def item_id(self) -> int:
        """Marketplace item ID carried by every recognised event."""
        return int(self.fields["itemId"])


class ListingRecord(BaseModel):
    """Off-chain projection of one marketplace item.

    Attributes:
        item_id: Chain-assigned marketplace item ID
        nft_contract: NFT collection contract
        token_id: Token ID within the collection
        seller: Listing owner
        buyer: Purchaser once sold
        price: Price in wei as an exact decimal string
        status: Listing lifecycle status
        listed_at: When the listing was created
        sold_at: When the listing sold
        cancelled_at: When the listing was cancelled
        tx_hash: Creating transaction hash
        sale_tx_hash: Sale transaction hash
    """

    item_id: int = Field(..., gt=0, description="Marketplace item ID")
    nft_contract: str = Field(..., description="NFT contract address")
    token_id: int = Field(..., ge=0, description="Token ID")
    seller: str = Field(..., description="Seller address")
    buyer: str | None = Field(None, description="Buyer address")
    price: str = Field(..., description="Price in wei (exact decimal string)")
    status: ListingStatus = Field(default=ListingStatus.ACTIVE, description="Listing status")
    listed_at: datetime | None = Field(None, description="Listing timestamp")
    sold_at: datetime | None = Field(None, description="Sale timestamp")
    cancelled_at: datetime | None = Field(None, description="Cancellation timestamp")
    tx_hash: str | None = Field(None, description="Listing transaction hash")
    sale_tx_hash: str | None = Field(None, description="Sale transaction hash")

    @field_validator("nft_contract", "seller", "buyer", "tx_hash", "sale_tx_hash", mode="before")
    @classmethod
    def normalize_hex(cls, v: str | None) -> str | None:
        """Normalize addresses and hashes to lowercase."""
        return _format_address(v) if v else v

    @field_validator("price", mode="before")
    @classmethod
    def normalize_price(cls, v: int | str) -> str:
        """Store the price as its exact decimal string."""
        return _wei_string(v)

    @field_validator("listed_at", "sold_at", "cancelled_at", mode="before")
    @classmethod
    def ensure_timezone(cls, v: datetime | str | None) -> datetime | None:
        """Ensure timestamps are timezone-aware."""
        return _ensure_utc(v)

    @property
    def price_wei(self) -> int:
        """Price as an integer for arithmetic and comparison."""
        return int(self.price)

    @property
    def is_active(self) -> bool:
        return self.status is ListingStatus.ACTIVE

    @classmethod
    def from_event(cls, event: ChainEvent) -> "ListingRecord":
        """Build an active listing from a MarketItemCreated event.

        Args:
            event: Decoded MarketItemCreated event

        Returns:
            ListingRecord instance
        """
        fields = event.fields
        return cls(
            item_id=fields["itemId"],
            nft_contract=fields["nftContract"],
            token_id=fields["tokenId"],
            seller=fields["seller"],
            price=fields["price"],
            status=ListingStatus.ACTIVE,
            listed_at=event.block_timestamp or datetime.now(UTC),
            tx_hash=event.transaction_hash,
        )


class TransactionRecord(BaseModel):
    """Append-only marketplace activity record.

    Chain-sourced records are keyed by (tx_hash, log_index). Records written
    from verified submissions carry log_index -1.
    """

    tx_hash: str = Field(..., description="Transaction hash")
    log_index: int = Field(..., ge=-1, description="Log index, -1 when synthesized")
    tx_type: TransactionType = Field(..., description="Activity type")
    item_id: int | None = Field(None, description="Marketplace item ID")
    block_number: int | None = Field(None, description="Block number")
    block_timestamp: datetime | None = Field(None, description="Block timestamp")
    nft_contract: str | None = Field(None, description="NFT contract address")
    token_id: int | None = Field(None, description="Token ID")
    from_address: str | None = Field(None, description="Sender / seller")
    to_address: str | None = Field(None, description="Receiver / buyer")
    value: str = Field(default="0", description="Value in wei")
    platform_fee: str = Field(default="0", description="Platform fee in wei")
    status: TransactionStatus = Field(
        default=TransactionStatus.CONFIRMED, description="Transaction status"
    )

    @field_validator("tx_hash", "nft_contract", "from_address", "to_address", mode="before")
    @classmethod
    def normalize_hex(cls, v: str | None) -> str | None:
        """Normalize addresses and hashes to lowercase."""
        return _format_address(v) if v else v

    @field_validator("value", "platform_fee", mode="before")
    @classmethod
    def normalize_amount(cls, v: int | str) -> str:
        """Store amounts as exact decimal strings."""
        return _wei_string(v)

    @field_validator("block_timestamp", mode="before")
    @classmethod
    def ensure_timezone(cls, v: datetime | str | None) -> datetime | None:
        """Ensure timestamp is timezone-aware."""
        return _ensure_utc(v)


class SyncState(BaseModel):
    """Persisted catch-up checkpoint for one watched contract."""

    contract_address: str = Field(..., description="Watched contract address")
    last_synced_block: int = Field(..., ge=0, description="Highest fully reconciled block")
    last_synced_at: datetime | None = Field(None, description="When the checkpoint moved")
    status: SyncStatus = Field(default=SyncStatus.ACTIVE, description="Sync status")
    error_message: str | None = Field(None, description="Last catch-up failure")

    @field_validator("contract_address", mode="before")
    @classmethod
    def normalize_address(cls, v: str) -> str:
        """Normalize address to lowercase."""
        return _format_address(v)

    @field_validator("last_synced_at", mode="before")
    @classmethod
    def ensure_timezone(cls, v: datetime | str | None) -> datetime | None:
        """Ensure timestamp is timezone-aware."""
        return _ensure_utc(v)


class CollectionStats(BaseModel):
    """Aggregates for one NFT contract, recomputed from the projection."""

    nft_contract: str
    floor_price: str | None = None
    ceiling_price: str | None = None
    average_price: str | None = None
    active_listings: int = 0
    unique_sellers: int = 0
    total_sales: int = 0
    total_volume: str = "0"
    unique_buyers: int = 0
    updated_at: datetime | None = None


class MarketStats(BaseModel):
    """Marketplace-wide listing and volume summary."""

    active_listings: int = 0
    total_listings: int = 0
    sold_listings: int = 0
    cancelled_listings: int = 0
    total_volume: str = "0"
    average_price: str | None = None
    floor_price: str | None = None
    ceiling_price: str | None = None


class TransactionStats(BaseModel):
    """Counts and sale volume over confirmed activity records."""

    total_listings: int = 0
    total_sales: int = 0
    total_cancellations: int = 0
    total_transactions: int = 0
    total_volume: str = "0"


class DailyVolume(BaseModel):
    """Confirmed sales for one UTC day."""

    day: date
    tx_count: int = 0
    volume: str = "0"


class AnomalyRecord(BaseModel):
    """Event that could not be reconciled, kept for operator inspection."""

    topic_name: str
    transaction_hash: str
    log_index: int
    item_id: int | None = None
    reason: str
    attempts: int = 0
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


class OnChainItem(BaseModel):
    """Result of the marketplace contract's getMarketItem view.

    The contract returns a zeroed struct for unknown item IDs and sets
    `sold` on both purchase and cancellation.
    """

    item_id: int
    nft_contract: str
    token_id: int
    seller: str
    owner: str
    price: int
    sold: bool
    listed_at: int

    @field_validator("nft_contract", "seller", "owner", mode="before")
    @classmethod
    def normalize_address(cls, v: str) -> str:
        """Normalize address to lowercase."""
        return _format_address(v)

    @property
    def exists(self) -> bool:
        return self.item_id != 0


class ListingClaim(BaseModel):
    """Externally submitted listing that must be verified before persisting."""

    item_id: int = Field(..., gt=0)
    nft_contract: str
    token_id: int = Field(..., ge=0)
    seller: str
    price: int = Field(..., ge=0)
    tx_hash: str

    @field_validator("nft_contract", "seller", "tx_hash", mode="before")
    @classmethod
    def normalize_hex(cls, v: str) -> str:
        """Normalize addresses and hashes to lowercase."""
        return _format_address(v)


class SaleClaim(BaseModel):
    """Externally submitted sale that must be verified before persisting."""

    item_id: int = Field(..., gt=0)
    buyer: str
    price: int = Field(..., ge=0)
    tx_hash: str
    block_number: int | None = None

    @field_validator("buyer", "tx_hash", mode="before")
    @classmethod
    def normalize_hex(cls, v: str) -> str:
        """Normalize addresses and hashes to lowercase."""
        return _format_address(v)


class CancelClaim(BaseModel):
    """Externally submitted cancellation that must be verified before persisting."""

    item_id: int = Field(..., gt=0)
    seller: str
    tx_hash: str | None = None

    @field_validator("seller", "tx_hash", mode="before")
    @classmethod
    def normalize_hex(cls, v: str | None) -> str | None:
        """Normalize addresses and hashes to lowercase."""
        return _format_address(v) if v else v


class VerificationResult(BaseModel):
    """Outcome of comparing a claim against on-chain state.

    For mismatches, `expected` holds the on-chain value and `actual` the
    claimed value.
    """

    status: VerificationStatus
    field: str | None = None
    expected: Any = None
    actual: Any = None
    error: str | None = None
    item: OnChainItem | None = None

    @classmethod
    def match(cls, item: OnChainItem) -> "VerificationResult":
        return cls(status=VerificationStatus.MATCH, item=item)

    @classmethod
    def mismatch(
        cls, field: str, expected: Any, actual: Any, item: OnChainItem | None = None
    ) -> "VerificationResult":
        return cls(
            status=VerificationStatus.MISMATCH,
            field=field,
            expected=expected,
            actual=actual,
            item=item,
        )

    @classmethod
    def unavailable(cls, error: str) -> "VerificationResult":
        return cls(status=VerificationStatus.UNAVAILABLE, error=error)

    @property
    def is_match(self) -> bool:
        return self.status is VerificationStatus.MATCH
