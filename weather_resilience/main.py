"""Main entry point for the weather resilience service."""

import asyncio
import logging
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from weather_resilience.config.config_loader import Config, ConfigError
from weather_resilience.context import ApplicationContext, create_application_context
from weather_resilience.health.status_server import StatusServer
from weather_resilience.version import __version__


logger = logging.getLogger(__name__)


def setup_logging(config: Config):
    """Set up console and rotating file logging."""
    log_config = config.logging_config
    log_level = getattr(logging, str(log_config.get('level', 'INFO')).upper())

    log_dir = Path(log_config.get('log_dir', 'logs'))
    log_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    max_bytes = log_config.get('max_file_size_mb', 10) * 1024 * 1024
    backup_count = log_config.get('backup_count', 5)

    file_handler = RotatingFileHandler(
        log_dir / 'weather_resilience.log',
        maxBytes=max_bytes,
        backupCount=backup_count
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    logging.info("Logging initialized")


async def report_cache_periodically(context: ApplicationContext, interval_seconds: float, stop_event: asyncio.Event):
    """Push cache bucket stats to observers until stop_event is set."""
    while not stop_event.is_set():
        try:
            await context.cache_engine.report_cache_performance()
        except Exception as e:
            logger.error(f"Cache performance reporting failed: {type(e).__name__}: {e}")
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue


async def warm_cache(context: ApplicationContext):
    """Install, activate and preload the cache, logging instead of failing."""
    engine = context.cache_engine
    await engine.install()
    engine.activate()
    await engine.preload_popular_cities(
        context.config.cache.get('preload_cities') or [],
        user_agent=context.config.network.get('user_agent')
    )


async def run_service(context: ApplicationContext, stop_event: asyncio.Event):
    """
    Run background work until stop_event is set.

    Args:
        context: Application context
        stop_event: Event set on shutdown
    """
    config = context.config
    status_server = None

    if config.health_server.get('enabled', True):
        status_server = StatusServer(
            schedulers=context.schedulers,
            sync_queue=context.sync_queue,
            cache_engine=context.cache_engine,
            host=config.health_server['host'],
            port=config.health_server['port']
        )
        await status_server.start()

    await warm_cache(context)

    if context.connectivity.is_online():
        result = await context.sync_queue.process_pending()
        logger.info(f"Startup sync: {result.to_dict()}")
    await context.sync_queue.register_background_sync()

    tasks = [
        asyncio.ensure_future(context.connectivity.run(
            config.connectivity['check_interval_seconds'], stop_event
        )),
        asyncio.ensure_future(report_cache_periodically(
            context, config.cache['report_interval_seconds'], stop_event
        )),
    ]

    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down...")
        for scheduler in context.schedulers.values():
            scheduler.clear()
        await asyncio.gather(*tasks, return_exceptions=True)
        await context.cache_engine.wait_for_background()
        if status_server is not None:
            await status_server.stop()
        logger.info("Shutdown complete")


async def main():
    """Main entry point for the application."""
    try:
        config = Config()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)
    logger.info("=" * 60)
    logger.info(f"Weather Resilience Layer v{__version__}")
    logger.info("=" * 60)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, _request_shutdown, signum, stop_event)
        except NotImplementedError:
            signal.signal(signum, lambda s, f: _request_shutdown(s, stop_event))

    try:
        context = create_application_context(config)
        await run_service(context, stop_event)
    except Exception as e:
        logging.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


def _request_shutdown(signum, stop_event: asyncio.Event):
    logging.info(f"Received signal {signum}, initiating graceful shutdown...")
    stop_event.set()


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
