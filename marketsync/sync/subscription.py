"""Per-topic live log subscriptions with reconnect and cooperative shutdown."""

import asyncio
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from marketsync.chain.abi import WATCHED_EVENTS
from marketsync.chain.decoder import EventDecoder
from marketsync.core.logging import correlation_scope, get_logger
from marketsync.shared.exceptions import DecodeError, TransportError
from marketsync.sync.catchup import CatchUpJob, with_block_timestamp

if TYPE_CHECKING:
    from marketsync.chain.rpc import ChainRPCGateway
    from marketsync.core.database import DatabaseClient
    from marketsync.sync.reconciler import StateReconciler

logger = get_logger(__name__)


class SubscriptionState(StrEnum):
    DISCONNECTED = "disconnected"
    SUBSCRIBING = "subscribing"
    STREAMING = "streaming"
    ERROR = "error"
    STOPPED = "stopped"


class TopicSubscription:
    """Long-lived subscription to one event topic.

    A reader task moves raw logs from the socket into a bounded queue; a
    single consumer task decodes and reconciles them in receipt order. A full
    queue blocks the reader, so a slow database throttles the subscription.

    On transport failure the worker goes Error -> Disconnected, waits
    `reconnect_delay` seconds and subscribes again, forever. Missed blocks are
    not replayed here; the catch-up job fills them.
    """

    def __init__(
        self,
        topic_name: str,
        topic: str,
        contract_address: str,
        gateway: "ChainRPCGateway",
        decoder: EventDecoder,
        reconciler: "StateReconciler",
        reconnect_delay: float = 5.0,
        queue_max_size: int = 1000,
        drain_timeout: float = 30.0,
    ) -> None:
        """Initialize a topic worker.

        Args:
            topic_name: Event name, used in logs
            topic: topic0 hash filtered on
            contract_address: Marketplace contract
            gateway: RPC gateway providing subscriptions
            decoder: Event decoder
            reconciler: Destination for decoded events
            reconnect_delay: Fixed backoff between subscription attempts
            queue_max_size: Maximum buffered raw logs
            drain_timeout: Upper bound for finishing queued work on stop
        """
        self.topic_name = topic_name
        self.topic = topic
        self.contract_address = contract_address.lower()
        self.gateway = gateway
        self.decoder = decoder
        self.reconciler = reconciler
        self.reconnect_delay = reconnect_delay
        self.queue_max_size = queue_max_size
        self.drain_timeout = drain_timeout

        self.state = SubscriptionState.DISCONNECTED
        self.sessions = 0
        self.processed = 0
        self._stopping = False
        self._queue: asyncio.Queue[dict[str, Any]] | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._consumer_task: asyncio.Task[None] | None = None

    def _set_state(self, state: SubscriptionState) -> None:
        if state is not self.state:
            logger.debug(
                "subscription.state.changed",
                topic=self.topic_name,
                previous=self.state.value,
                current=state.value,
            )
            self.state = state

    async def start(self) -> None:
        """Start the reader and consumer tasks."""
        if self._reader_task is not None:
            return
        self._stopping = False
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self.queue_max_size)
        self._queue = queue
        self._consumer_task = asyncio.create_task(self._consume(queue))
        self._reader_task = asyncio.create_task(self._run(queue))
        logger.info("subscription.worker.started", topic=self.topic_name)

    async def stop(self) -> None:
        """Stop receiving, release the subscription, then finish queued work."""
        self._stopping = True

        if self._reader_task:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None

        if self._queue is not None and self._consumer_task is not None:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=self.drain_timeout)
            except TimeoutError:
                logger.warning(
                    "subscription.drain.timeout",
                    topic=self.topic_name,
                    remaining=self._queue.qsize(),
                )

        if self._consumer_task:
            self._consumer_task.cancel()
            try:
                await self._consumer_task
            except asyncio.CancelledError:
                pass
            self._consumer_task = None

        self._set_state(SubscriptionState.STOPPED)
        logger.info("subscription.worker.stopped", topic=self.topic_name, processed=self.processed)

    async def _run(self, queue: asyncio.Queue[dict[str, Any]]) -> None:
        """Subscribe, stream into the queue, and reconnect on failure."""
        while not self._stopping:
            self._set_state(SubscriptionState.SUBSCRIBING)
            try:
                async with self.gateway.subscribe_logs(self.contract_address, self.topic) as sub:
                    self._set_state(SubscriptionState.STREAMING)
                    self.sessions += 1
                    logger.info(
                        "subscription.stream.started", topic=self.topic_name, session=self.sessions
                    )
                    async for raw_log in sub:
                        await queue.put(raw_log)
            except TransportError as e:
                self._set_state(SubscriptionState.ERROR)
                logger.warning(
                    "subscription.stream.failed",
                    topic=self.topic_name,
                    error=str(e),
                    retry_in=self.reconnect_delay,
                )
            except Exception as e:
                self._set_state(SubscriptionState.ERROR)
                logger.error(
                    "subscription.stream.error", topic=self.topic_name, error=str(e), exc_info=True
                )

            self._set_state(SubscriptionState.DISCONNECTED)
            if self._stopping:
                break
            await asyncio.sleep(self.reconnect_delay)

    async def _consume(self, queue: asyncio.Queue[dict[str, Any]]) -> None:
        while True:
            raw_log = await queue.get()
            try:
                await self._process(raw_log)
            except Exception as e:
                logger.error(
                    "subscription.event.failed",
                    topic=self.topic_name,
                    tx_hash=raw_log.get("transactionHash"),
                    error=str(e),
                    exc_info=True,
                )
            finally:
                queue.task_done()

    async def _process(self, raw_log: dict[str, Any]) -> None:
        try:
            event = self.decoder.decode(raw_log)
        except DecodeError as e:
            logger.warning(
                "subscription.event.decode_failed",
                topic=self.topic_name,
                tx_hash=raw_log.get("transactionHash"),
                log_index=raw_log.get("logIndex"),
                error=str(e),
            )
            return

        with correlation_scope(event.event_key):
            event = await with_block_timestamp(event, self.gateway)
            await self.reconciler.apply(event)
        self.processed += 1


class SubscriptionManager:
    """Owns one TopicSubscription per watched event plus the catch-up loop.

    The manager is the only writer of the contract's SyncState; live streams
    never move it, only completed catch-up batches do.
    """

    def __init__(
        self,
        gateway: "ChainRPCGateway",
        db: "DatabaseClient",
        reconciler: "StateReconciler",
        contract_address: str,
        decoder: EventDecoder | None = None,
        start_block: int = 0,
        confirmations: int = 12,
        batch_size: int = 1000,
        catchup_interval_seconds: float = 60.0,
        reconnect_delay: float = 5.0,
        queue_max_size: int = 1000,
    ) -> None:
        self.gateway = gateway
        self.db = db
        self.reconciler = reconciler
        self.contract_address = contract_address.lower()
        self.decoder = decoder or EventDecoder()
        self.catchup_interval_seconds = catchup_interval_seconds
        self.reconnect_delay = reconnect_delay
        self.queue_max_size = queue_max_size

        self.catchup = CatchUpJob(
            gateway=gateway,
            decoder=self.decoder,
            reconciler=reconciler,
            db=db,
            contract_address=self.contract_address,
            start_block=start_block,
            confirmations=confirmations,
            batch_size=batch_size,
        )
        self.workers: dict[str, TopicSubscription] = {}
        self._running = False
        self._catchup_task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        """Initialize SyncState, start topic workers and the catch-up loop."""
        if self._running:
            return

        state = await self.catchup.ensure_state()
        logger.info(
            "subscription.manager.starting",
            contract_address=self.contract_address,
            last_synced_block=state.last_synced_block,
            sync_status=state.status.value,
        )

        topics = self.decoder.topics
        for name in WATCHED_EVENTS:
            worker = TopicSubscription(
                topic_name=name,
                topic=topics[name],
                contract_address=self.contract_address,
                gateway=self.gateway,
                decoder=self.decoder,
                reconciler=self.reconciler,
                reconnect_delay=self.reconnect_delay,
                queue_max_size=self.queue_max_size,
            )
            await worker.start()
            self.workers[name] = worker

        self._running = True
        self._catchup_task = asyncio.create_task(self._catchup_loop())
        logger.info(
            "subscription.manager.started",
            topics=list(self.workers),
            catchup_interval_seconds=self.catchup_interval_seconds,
        )

    async def stop(self) -> None:
        """Stop catch-up and every topic worker, finishing in-flight work."""
        self._running = False

        if self._catchup_task:
            self._catchup_task.cancel()
            try:
                await self._catchup_task
            except asyncio.CancelledError:
                pass
            self._catchup_task = None

        await asyncio.gather(*(worker.stop() for worker in self.workers.values()))
        self.workers.clear()
        logger.info("subscription.manager.stopped")

    def status(self) -> dict[str, SubscriptionState]:
        """Current state per watched topic."""
        return {name: worker.state for name, worker in self.workers.items()}

    async def _catchup_loop(self) -> None:
        """Run catch-up immediately, then every catchup_interval_seconds."""
        while self._running:
            try:
                await self.catchup.run_once()
            except Exception as e:
                logger.error("catchup.loop.error", error=str(e), exc_info=True)

            await asyncio.sleep(self.catchup_interval_seconds)
