"""Marketplace sync engine entry point."""

import asyncio
import signal
import sys

from marketsync.chain.decoder import EventDecoder
from marketsync.chain.rpc import ChainRPCGateway
from marketsync.core.config import get_settings
from marketsync.core.database import DatabaseClient
from marketsync.core.logging import get_logger, setup_logging
from marketsync.market.service import MarketService
from marketsync.shared.exceptions import ConfigError
from marketsync.sync.reconciler import StateReconciler
from marketsync.sync.subscription import SubscriptionManager
from marketsync.sync.verifier import OnChainVerifier

logger = get_logger(__name__)

# Module-level variables for lifecycle management
database_client: DatabaseClient | None = None
rpc_gateway: ChainRPCGateway | None = None
reconciler: StateReconciler | None = None
subscription_manager: SubscriptionManager | None = None
market_service: MarketService | None = None


async def startup() -> None:
    """Initialize the sync pipeline on startup."""
    global database_client, rpc_gateway, reconciler, subscription_manager, market_service

    settings = get_settings()

    logger.info(
        "application.lifecycle.started",
        version=settings.app_version,
        environment=settings.environment,
    )

    logger.info(
        "application.config.loaded",
        log_level=settings.log_level,
        chain_id=settings.chain_id,
        marketplace_address=settings.marketplace_address,
        start_block=settings.start_block,
        block_confirmations=settings.block_confirmations,
    )

    # Projection store
    database_client = DatabaseClient()
    await database_client.__aenter__()
    await database_client.ensure_schema()
    logger.info("database.client.initialized")

    # Chain access
    rpc_gateway = ChainRPCGateway(
        http_url=settings.rpc_http_url,
        ws_url=settings.rpc_ws_url,
        request_timeout=settings.rpc_request_timeout_seconds,
    )
    await rpc_gateway.__aenter__()
    head = await rpc_gateway.current_block_number()
    logger.info("rpc.gateway.initialized", head_block=head)

    reconciler = StateReconciler(
        db=database_client,
        platform_fee_bps=settings.platform_fee_bps,
        max_retry_attempts=settings.max_retry_attempts,
        retry_interval_seconds=settings.retry_interval_seconds,
    )
    await reconciler.start()

    verifier = OnChainVerifier(
        gateway=rpc_gateway,
        marketplace_address=settings.marketplace_address,
        timeout_seconds=settings.verification_timeout_seconds,
    )
    market_service = MarketService(
        db=database_client,
        reconciler=reconciler,
        verifier=verifier,
        verification_retry_attempts=settings.verification_retry_attempts,
        default_page_size=settings.default_page_size,
        max_page_size=settings.max_page_size,
    )

    subscription_manager = SubscriptionManager(
        gateway=rpc_gateway,
        db=database_client,
        reconciler=reconciler,
        contract_address=settings.marketplace_address,
        decoder=EventDecoder(),
        start_block=settings.start_block,
        confirmations=settings.block_confirmations,
        batch_size=settings.sync_batch_size,
        catchup_interval_seconds=settings.catchup_interval_seconds,
        reconnect_delay=settings.reconnect_delay_seconds,
        queue_max_size=settings.queue_max_size,
    )
    await subscription_manager.start()

    logger.info("application.startup.completed")


async def shutdown() -> None:
    """Stop subscriptions first, then retry queue, then connections."""
    logger.info("application.shutdown.started")

    # Stop live streams and catch-up, finishing in-flight reconciliation
    if subscription_manager:
        await subscription_manager.stop()

    # Flush the retry queue; anything unresolved is persisted as an anomaly
    if reconciler:
        await reconciler.stop()

    if rpc_gateway:
        await rpc_gateway.__aexit__(None, None, None)

    if database_client:
        await database_client.__aexit__(None, None, None)

    logger.info("application.shutdown.completed")


async def main() -> None:
    """Main application loop."""
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def signal_handler(sig: int) -> None:
        logger.info("application.signal.received", signal=signal.Signals(sig).name)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):

        def make_handler(s: int = sig) -> None:
            signal_handler(s)

        loop.add_signal_handler(sig, make_handler)

    try:
        await startup()
        await stop_event.wait()
    except Exception as e:
        logger.error("application.error.fatal", error=str(e), exc_info=True)
        raise
    finally:
        await shutdown()


def run() -> None:
    """Entry point for running the sync engine."""
    try:
        # Load settings first to validate configuration
        settings = get_settings()

        setup_logging(
            log_level=settings.log_level,
            json_output=settings.environment != "development",
        )

        asyncio.run(main())

    except ConfigError as e:
        # Configuration errors should exit immediately with clear message
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        pass
    except Exception as e:
        print(f"Fatal error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    run()
