"""Main entry point for remediator."""

import asyncio
import signal

import asyncpg  # type: ignore[import-not-found,import-untyped]

from remediator.config import get_settings
from remediator.healing.applier import PatchQueue
from remediator.healing.coordinator import HealingSources, SelfHealingCoordinator
from remediator.healing.sources import SystemMetricSource
from remediator.healing.storage import HealingStorage, JsonPatternStore
from remediator.logging import get_logger, setup_logging


async def main() -> None:
    """Main application entry point."""
    setup_logging()
    log = get_logger("remediator.main")

    settings = get_settings()
    log.info(
        "starting_remediator",
        environment=settings.environment,
        data_dir=settings.data_dir,
        postgres=settings.postgres_dsn is not None,
    )

    sources = HealingSources(patch_applier=PatchQueue(settings.patch_queue_dir))

    # PostgreSQL holds patterns and mirrors the audit trail when configured
    pool: asyncpg.Pool | None = None
    if settings.postgres_dsn is not None:
        pool = await asyncpg.create_pool(
            dsn=settings.postgres_dsn.get_secret_value(), min_size=1, max_size=5
        )
        storage = HealingStorage()
        await storage.initialize(pool)
        sources.pattern_store = storage
        sources.event_storage = storage
    else:
        sources.pattern_store = JsonPatternStore(settings.pattern_store_path)
    log.info("pattern_store_initialized", store=type(sources.pattern_store).__name__)

    coordinator = SelfHealingCoordinator.from_settings(
        settings, source=SystemMetricSource(), sources=sources
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    try:
        await coordinator.start()
        await stop_event.wait()
        log.info("shutdown_requested")
    finally:
        await coordinator.stop()
        if pool is not None:
            await pool.close()
        log.info(
            "remediator_stopped",
            stats=coordinator.get_healing_stats().to_dict(),
        )


def run() -> None:
    """Run the application."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
