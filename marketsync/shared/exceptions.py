"""Custom exception hierarchy for the marketplace sync engine."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from marketsync.shared.models import VerificationResult


class MarketSyncError(Exception):
    """Base exception for all sync engine errors."""

    pass


class ConfigError(MarketSyncError):
    """Raised when configuration validation fails."""

    pass


class DatabaseError(MarketSyncError):
    """Raised when database operations fail."""

    pass


class DecodeError(MarketSyncError):
    """Raised when a raw log cannot be decoded into a ChainEvent."""

    pass


class TransportError(MarketSyncError):
    """Raised when an RPC call or log subscription fails."""

    pass


class RPCError(TransportError):
    """Raised when the node answers a JSON-RPC request with an error object."""

    def __init__(self, code: int, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(f"RPC error {code}: {message}")


class VerificationMismatch(MarketSyncError):
    """Raised when a submitted claim contradicts on-chain state."""

    def __init__(self, result: "VerificationResult") -> None:
        self.result = result
        super().__init__(
            f"Verification mismatch on {result.field}: "
            f"on-chain={result.expected!r} claimed={result.actual!r}"
        )


class VerificationUnavailable(MarketSyncError):
    """Raised when on-chain verification could not be performed."""

    pass


class ReconciliationAnomaly(MarketSyncError):
    """Raised when an event references listing state that cannot be resolved."""

    pass


class ListingNotFoundError(MarketSyncError):
    """Raised when a listing does not exist in the projection."""

    pass


class UnauthorizedError(MarketSyncError):
    """Raised when a caller acts on a listing they do not own."""

    pass


class InvalidListingStateError(MarketSyncError):
    """Raised when a listing is not in the state an operation requires."""

    pass


class TransactionNotFoundError(MarketSyncError):
    """Raised when no activity record exists for a transaction hash."""

    pass
