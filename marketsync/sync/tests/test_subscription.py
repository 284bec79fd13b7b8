"""Tests for live topic subscriptions and the subscription manager."""

import asyncio
from collections.abc import Callable

import pytest

from marketsync.chain.abi import MARKET_ITEM_CANCELED, MARKET_ITEM_CREATED, MARKET_ITEM_SOLD
from marketsync.chain.decoder import EventDecoder
from marketsync.shared.exceptions import TransportError
from marketsync.shared.models import ListingStatus, TransactionType
from marketsync.sync.reconciler import StateReconciler
from marketsync.sync.subscription import (
    SubscriptionManager,
    SubscriptionState,
    TopicSubscription,
)

MARKETPLACE = "0x5fbdb2315678afecb367f032d93f642f64180aa3"
NFT_CONTRACT = "0xe7f1725e7734ce288f8367e1bb143e90bb3f0512"
SELLER = "0x70997970c51812dc3a010c7d01b50e0d17dc79c8"
BUYER = "0x3c44cdddb6a900fa2b585dd299e03d12fa4293bc"

TOPICS = EventDecoder().topics


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate() is true or fail the test."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


@pytest.fixture
def reconciler(projection) -> StateReconciler:
    return StateReconciler(projection)


@pytest.fixture
def create_log(make_log):
    def _make(item_id: int = 1, block: int = 100, price: int = 100) -> dict:
        return make_log(
            MARKET_ITEM_CREATED,
            block=block,
            itemId=item_id,
            nftContract=NFT_CONTRACT,
            tokenId=item_id,
            seller=SELLER,
            price=price,
        )

    return _make


def make_worker(name: str, gateway, reconciler, **kwargs) -> TopicSubscription:
    return TopicSubscription(
        topic_name=name,
        topic=TOPICS[name],
        contract_address=MARKETPLACE,
        gateway=gateway,
        decoder=EventDecoder(),
        reconciler=reconciler,
        reconnect_delay=kwargs.pop("reconnect_delay", 0.01),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_worker_streams_logs_into_reconciler(
    gateway, reconciler, projection, fake_subscription, create_log
):
    """Test received logs are decoded and reconciled in order."""
    session = fake_subscription([create_log(1), create_log(2, price=200)])
    gateway.scripts[TOPICS[MARKET_ITEM_CREATED]] = [session]
    worker = make_worker(MARKET_ITEM_CREATED, gateway, reconciler)

    await worker.start()
    await wait_until(lambda: worker.processed == 2)

    assert worker.state is SubscriptionState.STREAMING
    assert projection.listings[1].price == "100"
    assert projection.listings[2].price == "200"

    await worker.stop()

    assert worker.state is SubscriptionState.STOPPED
    assert session.closed


@pytest.mark.asyncio
async def test_worker_reconnects_after_stream_failure(
    gateway, reconciler, projection, fake_subscription, create_log
):
    """Test a dropped stream is resubscribed and delivery resumes."""
    gateway.scripts[TOPICS[MARKET_ITEM_CREATED]] = [
        fake_subscription([create_log(1)], error=TransportError("socket closed")),
        fake_subscription([create_log(2)]),
    ]
    worker = make_worker(MARKET_ITEM_CREATED, gateway, reconciler)

    await worker.start()
    await wait_until(lambda: worker.processed == 2)
    await worker.stop()

    assert worker.sessions == 2
    assert set(projection.listings) == {1, 2}


@pytest.mark.asyncio
async def test_worker_retries_failed_subscribe(
    gateway, reconciler, projection, fake_subscription, create_log
):
    """Test a rejected eth_subscribe is retried after the reconnect delay."""
    gateway.scripts[TOPICS[MARKET_ITEM_CREATED]] = [
        fake_subscription(connect_error=TransportError("connection refused")),
        fake_subscription(connect_error=TransportError("connection refused")),
        fake_subscription([create_log(1)]),
    ]
    worker = make_worker(MARKET_ITEM_CREATED, gateway, reconciler)

    await worker.start()
    await wait_until(lambda: worker.processed == 1)
    await worker.stop()

    assert worker.sessions == 1
    assert len(gateway.opened) == 3
    assert projection.listings[1].is_active


@pytest.mark.asyncio
async def test_worker_skips_undecodable_logs(
    gateway, reconciler, projection, fake_subscription, create_log
):
    """Test a bad log is dropped without stopping the stream."""
    removed = create_log(1)
    removed["removed"] = True
    gateway.scripts[TOPICS[MARKET_ITEM_CREATED]] = [
        fake_subscription([removed, create_log(2)])
    ]
    worker = make_worker(MARKET_ITEM_CREATED, gateway, reconciler)

    await worker.start()
    await wait_until(lambda: worker.processed == 1)
    await worker.stop()

    assert set(projection.listings) == {2}


@pytest.mark.asyncio
async def test_worker_stop_drains_queue(
    gateway, reconciler, projection, fake_subscription, create_log
):
    """Test events already received are reconciled before stop returns."""
    logs = [create_log(i, block=100 + i) for i in range(1, 21)]
    gateway.scripts[TOPICS[MARKET_ITEM_CREATED]] = [fake_subscription(logs)]
    worker = make_worker(MARKET_ITEM_CREATED, gateway, reconciler, queue_max_size=50)

    await worker.start()
    await wait_until(lambda: worker._queue is not None and worker.sessions == 1)
    await worker.stop()

    assert worker.processed == len(projection.listings)
    assert worker.state is SubscriptionState.STOPPED


@pytest.mark.asyncio
async def test_manager_starts_worker_per_topic(gateway, projection, reconciler):
    """Test one worker per watched event plus an initialized checkpoint."""
    gateway.head = 50
    manager = SubscriptionManager(
        gateway=gateway,
        db=projection,
        reconciler=reconciler,
        contract_address=MARKETPLACE,
        start_block=10,
        catchup_interval_seconds=60,
        reconnect_delay=0.01,
    )

    await manager.start()
    await wait_until(
        lambda: all(s is SubscriptionState.STREAMING for s in manager.status().values())
    )

    assert set(manager.status()) == {MARKET_ITEM_CREATED, MARKET_ITEM_SOLD, MARKET_ITEM_CANCELED}
    assert {s.entered for s in gateway.opened} == {True}
    assert projection.sync_states[MARKETPLACE].last_synced_block >= 9

    await manager.stop()

    assert manager.status() == {}
    assert all(s.closed for s in gateway.opened)


@pytest.mark.asyncio
async def test_catchup_fills_sale_missed_during_disconnect(
    gateway, projection, reconciler, fake_subscription, make_log, create_log
):
    """Test a sale missed while the live stream was down is recovered exactly once."""
    created = create_log(7, block=100, price=100)
    sale = make_log(MARKET_ITEM_SOLD, block=101, itemId=7, buyer=BUYER, price=100)
    gateway.logs = [created]
    gateway.head = 100
    gateway.scripts[TOPICS[MARKET_ITEM_CREATED]] = [fake_subscription([created])]
    gateway.scripts[TOPICS[MARKET_ITEM_SOLD]] = [
        fake_subscription(error=TransportError("socket closed")),
    ]

    manager = SubscriptionManager(
        gateway=gateway,
        db=projection,
        reconciler=reconciler,
        contract_address=MARKETPLACE,
        start_block=100,
        confirmations=0,
        catchup_interval_seconds=60,
        reconnect_delay=0.01,
    )
    await manager.start()
    await wait_until(lambda: 7 in projection.listings)
    await wait_until(lambda: manager.workers[MARKET_ITEM_SOLD].sessions >= 2)

    # The sale happened while the sold stream was reconnecting
    gateway.logs.append(sale)
    gateway.head = 101
    await manager.catchup.run_once()
    await manager.stop()

    assert projection.listings[7].status is ListingStatus.SOLD
    sales = projection.transactions_of(TransactionType.SALE, 7)
    assert len(sales) == 1
    assert sales[0].value == "100"
    assert len(projection.transactions_of(TransactionType.LIST, 7)) == 1
    assert projection.sync_states[MARKETPLACE].last_synced_block == 101


@pytest.mark.asyncio
async def test_live_and_catchup_delivery_converge(
    gateway, projection, reconciler, fake_subscription, make_log, create_log
):
    """Test the same event from both paths produces a single record."""
    sale = make_log(MARKET_ITEM_SOLD, block=101, itemId=7, buyer=BUYER, price=100)
    gateway.logs = [create_log(7, block=100), sale]
    gateway.head = 101
    gateway.scripts[TOPICS[MARKET_ITEM_SOLD]] = [fake_subscription([sale])]

    manager = SubscriptionManager(
        gateway=gateway,
        db=projection,
        reconciler=reconciler,
        contract_address=MARKETPLACE,
        start_block=100,
        confirmations=0,
        catchup_interval_seconds=60,
        reconnect_delay=0.01,
    )
    await manager.start()
    await wait_until(lambda: projection.sync_states[MARKETPLACE].last_synced_block == 101)
    await wait_until(lambda: manager.workers[MARKET_ITEM_SOLD].processed == 1)
    await reconciler.retry_pending()
    await manager.stop()

    assert projection.listings[7].status is ListingStatus.SOLD
    assert len(projection.transactions_of(TransactionType.SALE, 7)) == 1
    assert reconciler.pending_count == 0
