"""Verify externally submitted marketplace facts against the contract."""

import asyncio
from typing import TYPE_CHECKING, Any

from eth_abi.exceptions import DecodingError

from marketsync.chain.abi import decode_get_market_item, encode_get_market_item
from marketsync.core.logging import get_logger
from marketsync.shared.exceptions import TransportError
from marketsync.shared.models import (
    CancelClaim,
    ListingClaim,
    OnChainItem,
    SaleClaim,
    VerificationResult,
)

if TYPE_CHECKING:
    from marketsync.chain.rpc import ChainRPCGateway

logger = get_logger(__name__)


def _first_mismatch(
    item: OnChainItem, checks: list[tuple[str, Any, Any]]
) -> VerificationResult:
    """Return a mismatch for the first differing (field, on-chain, claimed) triple."""
    for field, on_chain, claimed in checks:
        if on_chain != claimed:
            return VerificationResult.mismatch(field, on_chain, claimed, item)
    return VerificationResult.match(item)


def _missing(item_id: int) -> VerificationResult:
    """Unknown items come back as a zeroed struct."""
    return VerificationResult.mismatch("item_id", 0, item_id)


class OnChainVerifier:
    """Compares claims with the result of `getMarketItem(itemId)`.

    Each verification performs one eth_call bounded by `timeout_seconds`.
    RPC failures and timeouts yield an UNAVAILABLE result; the caller decides
    whether to retry.
    """

    def __init__(
        self,
        gateway: "ChainRPCGateway",
        marketplace_address: str,
        timeout_seconds: float = 10.0,
    ) -> None:
        """Initialize verifier.

        Args:
            gateway: RPC gateway used for eth_call
            marketplace_address: Marketplace contract address
            timeout_seconds: Upper bound for one verification call
        """
        self.gateway = gateway
        self.marketplace_address = marketplace_address.lower()
        self.timeout_seconds = timeout_seconds

    async def fetch_item(self, item_id: int) -> OnChainItem | VerificationResult:
        """Read one market item from the contract.

        Args:
            item_id: Marketplace item ID

        Returns:
            OnChainItem, or an UNAVAILABLE VerificationResult if the read failed
        """
        try:
            raw = await asyncio.wait_for(
                self.gateway.call(self.marketplace_address, encode_get_market_item(item_id)),
                timeout=self.timeout_seconds,
            )
            return OnChainItem(**decode_get_market_item(raw))
        except TimeoutError:
            logger.warning("verifier.call.timeout", item_id=item_id, timeout=self.timeout_seconds)
            return VerificationResult.unavailable(
                f"getMarketItem({item_id}) timed out after {self.timeout_seconds}s"
            )
        except TransportError as e:
            logger.warning("verifier.call.failed", item_id=item_id, error=str(e))
            return VerificationResult.unavailable(str(e))
        except DecodingError as e:
            logger.warning("verifier.call.undecodable", item_id=item_id, error=str(e))
            return VerificationResult.unavailable(f"Undecodable getMarketItem result: {e}")

    async def verify_listing(self, claim: ListingClaim) -> VerificationResult:
        """Check that the item exists, is still open and matches the claim."""
        item = await self.fetch_item(claim.item_id)
        if isinstance(item, VerificationResult):
            return item
        if not item.exists:
            return self._log(claim.item_id, _missing(claim.item_id))

        result = _first_mismatch(
            item,
            [
                ("sold", item.sold, False),
                ("nft_contract", item.nft_contract, claim.nft_contract),
                ("token_id", item.token_id, claim.token_id),
                ("seller", item.seller, claim.seller),
                ("price", item.price, claim.price),
            ],
        )
        return self._log(claim.item_id, result)

    async def verify_sale(self, claim: SaleClaim) -> VerificationResult:
        """Check that the item sold to the claimed buyer at the claimed price.

        The contract sets `sold` on cancellation as well and hands the token
        back to the seller, and it rejects a seller buying their own item. An
        item whose owner is its seller was therefore cancelled, not sold.
        """
        item = await self.fetch_item(claim.item_id)
        if isinstance(item, VerificationResult):
            return item
        if not item.exists:
            return self._log(claim.item_id, _missing(claim.item_id))

        result = _first_mismatch(
            item,
            [
                ("sold", item.sold, True),
                ("cancelled", item.owner == item.seller, False),
                ("owner", item.owner, claim.buyer),
                ("price", item.price, claim.price),
            ],
        )
        return self._log(claim.item_id, result)

    async def verify_cancel(self, claim: CancelClaim) -> VerificationResult:
        """Check that the item is closed and the token went back to the seller."""
        item = await self.fetch_item(claim.item_id)
        if isinstance(item, VerificationResult):
            return item
        if not item.exists:
            return self._log(claim.item_id, _missing(claim.item_id))

        result = _first_mismatch(
            item,
            [
                ("seller", item.seller, claim.seller),
                ("sold", item.sold, True),
                ("owner", item.owner, claim.seller),
            ],
        )
        return self._log(claim.item_id, result)

    @staticmethod
    def _log(item_id: int, result: VerificationResult) -> VerificationResult:
        if result.is_match:
            logger.debug("verifier.claim.matched", item_id=item_id)
        else:
            logger.warning(
                "verifier.claim.mismatch",
                item_id=item_id,
                field=result.field,
                on_chain=str(result.expected),
                claimed=str(result.actual),
            )
        return result
