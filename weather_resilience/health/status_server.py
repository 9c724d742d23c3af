"""HTTP server exposing scheduler, sync queue and cache status."""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from aiohttp import web

from weather_resilience.version import __version__


logger = logging.getLogger(__name__)


class StatusServer:
    """HTTP server providing health and status endpoints."""

    def __init__(
        self,
        schedulers: Optional[Dict[str, Any]] = None,
        sync_queue=None,
        cache_engine=None,
        host: str = '0.0.0.0',
        port: int = 4330
    ):
        """
        Initialize status server.

        Args:
            schedulers: RequestScheduler instances keyed by name
            sync_queue: OfflineSyncQueue instance
            cache_engine: CacheStrategyEngine instance; the server subscribes to its reports
            host: Host to bind to (default: 0.0.0.0)
            port: Port to bind to (default: 4330)
        """
        self.schedulers = schedulers or {}
        self.sync_queue = sync_queue
        self.cache_engine = cache_engine
        self.host = host
        self.port = port
        self.app = web.Application()
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None
        self.cache_stats: Dict[str, Any] = {}
        self.cache_stats_received_at: Optional[datetime] = None

        if cache_engine is not None:
            cache_engine.add_observer(self.on_cache_stats)

        self.app.router.add_get('/health', self.handle_health)
        self.app.router.add_get('/health/scheduler', self.handle_scheduler)
        self.app.router.add_get('/health/sync', self.handle_sync)
        self.app.router.add_get('/health/cache', self.handle_cache)

        logger.info(f"Status server initialized on {host}:{port}")

    def on_cache_stats(self, stats: Dict[str, Any]) -> None:
        """Observer callback receiving cache performance stats."""
        self.cache_stats = dict(stats)
        self.cache_stats_received_at = datetime.now()
        logger.debug(f"Received cache stats for {len(stats)} bucket(s)")

    async def handle_health(self, request: web.Request) -> web.Response:
        """
        Basic application health endpoint.

        Args:
            request: HTTP request

        Returns:
            JSON response with health status
        """
        response_data = {
            'status': 'ok',
            'timestamp': datetime.now().isoformat(),
            'service': 'weather_resilience',
            'version': __version__,
        }
        logger.debug("Health check request: /health -> OK")
        return web.json_response(response_data, status=200)

    async def handle_scheduler(self, request: web.Request) -> web.Response:
        """Queue length and active requests per scheduler."""
        try:
            stats = {name: scheduler.get_stats().to_dict() for name, scheduler in self.schedulers.items()}
            return web.json_response({
                'status': 'ok',
                'timestamp': datetime.now().isoformat(),
                'schedulers': stats,
            })
        except Exception as e:
            logger.error(f"Error in scheduler status endpoint: {e}")
            return web.json_response({'status': 'error', 'message': str(e)}, status=500)

    async def handle_sync(self, request: web.Request) -> web.Response:
        """Pending offline mutations."""
        if self.sync_queue is None:
            return web.json_response({'status': 'disabled', 'timestamp': datetime.now().isoformat()})

        try:
            return web.json_response({
                'status': 'ok',
                'timestamp': datetime.now().isoformat(),
                'sync': self.sync_queue.get_sync_stats(),
            })
        except Exception as e:
            logger.error(f"Error in sync status endpoint: {e}")
            return web.json_response({'status': 'error', 'message': str(e)}, status=500)

    async def handle_cache(self, request: web.Request) -> web.Response:
        """Last bucket statistics pushed by the cache engine, plus its current status."""
        if self.cache_engine is None:
            return web.json_response({'status': 'disabled', 'timestamp': datetime.now().isoformat()})

        received_at = self.cache_stats_received_at
        return web.json_response({
            'status': 'ok',
            'timestamp': datetime.now().isoformat(),
            'cache': self.cache_engine.get_cache_status(),
            'buckets': self.cache_stats,
            'stats_received_at': received_at.isoformat() if received_at else None,
        })

    async def start(self):
        """Start the status server."""
        try:
            self.runner = web.AppRunner(self.app)
            await self.runner.setup()
            self.site = web.TCPSite(self.runner, self.host, self.port)
            await self.site.start()
            logger.info(f"Status server started on http://{self.host}:{self.port}")
            logger.info(f"  - Basic health: http://{self.host}:{self.port}/health")
            logger.info(f"  - Schedulers: http://{self.host}:{self.port}/health/scheduler")
            logger.info(f"  - Offline sync: http://{self.host}:{self.port}/health/sync")
            logger.info(f"  - Cache: http://{self.host}:{self.port}/health/cache")
        except Exception as e:
            logger.error(f"Failed to start status server: {e}")
            raise

    async def stop(self):
        """Stop the status server."""
        try:
            if self.site:
                await self.site.stop()
            if self.runner:
                await self.runner.cleanup()
            logger.info("Status server stopped")
        except Exception as e:
            logger.error(f"Error stopping status server: {e}")
