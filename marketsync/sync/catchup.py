"""Gap-filling reconciliation from historical logs."""

from typing import TYPE_CHECKING, Any, ClassVar

from marketsync.core.logging import correlation_scope, get_logger
from marketsync.shared.exceptions import DecodeError, RPCError, TransportError
from marketsync.shared.models import ChainEvent, SyncState, SyncStatus

if TYPE_CHECKING:
    from marketsync.chain.decoder import EventDecoder
    from marketsync.chain.rpc import ChainRPCGateway
    from marketsync.core.database import DatabaseClient
    from marketsync.sync.reconciler import StateReconciler

logger = get_logger(__name__)


async def with_block_timestamp(event: ChainEvent, gateway: "ChainRPCGateway") -> ChainEvent:
    """Attach the block timestamp if the log did not carry one.

    A failed lookup leaves the timestamp empty; the reconciler then stamps
    records with the processing time.
    """
    if event.block_timestamp is not None:
        return event
    try:
        timestamp = await gateway.get_block_timestamp(event.block_number)
    except TransportError as e:
        logger.warning(
            "catchup.block_timestamp.unavailable", block_number=event.block_number, error=str(e)
        )
        return event
    return event.model_copy(update={"block_timestamp": timestamp})


class CatchUpJob:
    """Re-derives missed events for one contract from eth_getLogs.

    Scans `[last_synced_block + 1, head - confirmations]` in batches. The
    checkpoint advances only after every log in a batch has been reconciled,
    so a crash mid-batch replays that batch, which the reconciler absorbs.

    Attributes:
        TOO_LARGE_MARKERS: Node error fragments meaning the range must shrink
    """

    TOO_LARGE_MARKERS: ClassVar[tuple[str, ...]] = (
        "query returned more than",
        "too many",
        "limit exceeded",
        "block range",
        "response size",
    )

    def __init__(
        self,
        gateway: "ChainRPCGateway",
        decoder: "EventDecoder",
        reconciler: "StateReconciler",
        db: "DatabaseClient",
        contract_address: str,
        start_block: int = 0,
        confirmations: int = 12,
        batch_size: int = 1000,
    ) -> None:
        self.gateway = gateway
        self.decoder = decoder
        self.reconciler = reconciler
        self.db = db
        self.contract_address = contract_address.lower()
        self.start_block = start_block
        self.confirmations = confirmations
        self.batch_size = batch_size

    @property
    def topics(self) -> list[str]:
        return list(self.decoder.topics.values())

    async def ensure_state(self) -> SyncState:
        """Create the checkpoint row on first run, positioned just before start_block.

        Warns while a checkpoint that never advanced would scan from genesis.
        """
        state = await self.db.init_sync_state(self.contract_address, max(self.start_block - 1, 0))
        if state.last_synced_block == 0 and state.last_synced_at is None:
            logger.warning(
                "catchup.start_block.genesis",
                contract_address=self.contract_address,
                batch_size=self.batch_size,
            )
        return state

    async def run_once(self) -> int:
        """Run one catch-up pass up to the confirmed head.

        Transport failures mark the checkpoint as errored and end the pass;
        the next scheduled pass retries from the last checkpoint.

        Returns:
            Number of events reconciled

        Raises:
            DatabaseError: If the checkpoint cannot be read or written
        """
        state = await self.db.get_sync_state(self.contract_address)
        if state is None:
            state = await self.ensure_state()

        if state.status is SyncStatus.PAUSED:
            logger.info("catchup.run.paused", contract_address=self.contract_address)
            return 0

        try:
            head = await self.gateway.current_block_number()
            target = head - self.confirmations
            from_block = state.last_synced_block + 1
            if from_block > target:
                logger.debug(
                    "catchup.run.up_to_date",
                    last_synced_block=state.last_synced_block,
                    target=target,
                )
                return 0
            return await self.sync_range(from_block, target)
        except TransportError as e:
            logger.error(
                "catchup.run.failed",
                contract_address=self.contract_address,
                last_synced_block=state.last_synced_block,
                error=str(e),
            )
            await self.db.set_sync_status(self.contract_address, SyncStatus.ERROR, str(e))
            return 0

    async def sync_range(self, from_block: int, to_block: int) -> int:
        """Fetch, decode and reconcile every log in an inclusive block range.

        Args:
            from_block: First block to scan
            to_block: Last block to scan

        Returns:
            Number of events reconciled

        Raises:
            TransportError: If logs cannot be fetched even at batch size 1
        """
        logger.info("catchup.range.started", from_block=from_block, to_block=to_block)

        current = from_block
        batch_size = self.batch_size
        reconciled = 0

        while current <= to_block:
            batch_to = min(current + batch_size - 1, to_block)
            try:
                logs = await self.gateway.get_logs(
                    self.contract_address, self.topics, current, batch_to
                )
            except RPCError as e:
                if batch_size > 1 and self._is_too_large(e):
                    batch_size = max(batch_size // 2, 1)
                    logger.warning(
                        "catchup.batch.shrunk",
                        from_block=current,
                        to_block=batch_to,
                        batch_size=batch_size,
                    )
                    continue
                raise

            logs.sort(
                key=lambda log: (_quantity(log.get("blockNumber")), _quantity(log.get("logIndex")))
            )
            for raw_log in logs:
                if await self._reconcile_log(raw_log):
                    reconciled += 1

            await self.db.advance_sync_state(self.contract_address, batch_to)
            logger.info(
                "catchup.batch.completed",
                from_block=current,
                to_block=batch_to,
                logs=len(logs),
            )
            current = batch_to + 1

        logger.info("catchup.range.completed", to_block=to_block, reconciled=reconciled)
        return reconciled

    async def _reconcile_log(self, raw_log: dict[str, Any]) -> bool:
        try:
            event = self.decoder.decode(raw_log)
        except DecodeError as e:
            logger.warning(
                "catchup.log.decode_failed",
                tx_hash=raw_log.get("transactionHash"),
                log_index=raw_log.get("logIndex"),
                error=str(e),
            )
            return False

        with correlation_scope(event.event_key):
            try:
                event = await with_block_timestamp(event, self.gateway)
                await self.reconciler.apply(event)
            except Exception as e:
                logger.error(
                    "catchup.log.failed",
                    topic=event.topic_name,
                    event_key=event.event_key,
                    error=str(e),
                    exc_info=True,
                )
                return False
        return True

    def _is_too_large(self, error: RPCError) -> bool:
        message = error.message.lower()
        return any(marker in message for marker in self.TOO_LARGE_MARKERS)


def _quantity(value: object) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value:
        return int(value, 16) if value.startswith("0x") else int(value)
    return 0
