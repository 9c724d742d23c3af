#!/usr/bin/env python3
"""
Test status HTTP server endpoints.
"""

import asyncio
import json
import unittest
from unittest.mock import Mock

from weather_resilience.cache import CacheStrategyEngine
from weather_resilience.health import StatusServer
from weather_resilience.network import NetworkFetchHelper
from weather_resilience.scheduler import create_forecast_scheduler, create_geocoding_scheduler
from weather_resilience.sync import MemoryStore, MutationHandlerRegistry, OfflineSyncQueue
from weather_resilience.version import __version__


def body_of(response):
    return json.loads(response.body)


class TestStatusServerEndpoints(unittest.TestCase):
    """Test status server handlers against real components."""

    def setUp(self):
        """Set up test environment."""
        self.schedulers = {
            'geocoding': create_geocoding_scheduler(),
            'forecast': create_forecast_scheduler(),
        }
        self.sync_queue = OfflineSyncQueue(MemoryStore(), MutationHandlerRegistry())
        self.cache_engine = CacheStrategyEngine(NetworkFetchHelper(transport=Mock()))
        self.server = StatusServer(
            schedulers=self.schedulers,
            sync_queue=self.sync_queue,
            cache_engine=self.cache_engine,
            host='127.0.0.1',
            port=8888
        )

    def test_status_server_initialization(self):
        self.assertEqual(self.server.host, '127.0.0.1')
        self.assertEqual(self.server.port, 8888)
        paths = {resource.canonical for resource in self.server.app.router.resources()}
        self.assertEqual(paths, {'/health', '/health/scheduler', '/health/sync', '/health/cache'})

    def test_handle_health_basic(self):
        response = asyncio.run(self.server.handle_health(Mock()))

        self.assertEqual(response.status, 200)
        data = body_of(response)
        self.assertEqual(data['status'], 'ok')
        self.assertEqual(data['version'], __version__)

    def test_handle_scheduler(self):
        response = asyncio.run(self.server.handle_scheduler(Mock()))

        data = body_of(response)
        self.assertEqual(data['schedulers']['geocoding'], {
            'queue_length': 0, 'active_requests': 0, 'max_concurrent': 1,
        })
        self.assertEqual(data['schedulers']['forecast']['max_concurrent'], 5)

    def test_handle_scheduler_error(self):
        broken = Mock()
        broken.get_stats.side_effect = RuntimeError('stats unavailable')
        self.server.schedulers = {'broken': broken}

        response = asyncio.run(self.server.handle_scheduler(Mock()))

        self.assertEqual(response.status, 500)
        self.assertIn(b'stats unavailable', response.body)

    def test_handle_sync_reports_pending(self):
        self.sync_queue.queue_mutation('weather-update', {'city_name': 'Oslo'}, 'low')
        self.sync_queue.queue_mutation('city-search', {'query': 'Oslo'}, 'high')

        response = asyncio.run(self.server.handle_sync(Mock()))

        sync = body_of(response)['sync']
        self.assertEqual(sync['pending'], 2)
        self.assertEqual(sync['by_priority'], {'high': 1, 'medium': 0, 'low': 1})
        self.assertFalse(sync['is_processing'])

    def test_handle_sync_disabled(self):
        server = StatusServer(schedulers=self.schedulers)

        response = asyncio.run(server.handle_sync(Mock()))

        self.assertEqual(body_of(response)['status'], 'disabled')

    def test_handle_cache_includes_pushed_stats(self):
        self.cache_engine.cache_search_results('Oslo', [], 'offline')

        async def run_test():
            await self.cache_engine.report_cache_performance()
            return await self.server.handle_cache(Mock())

        data = body_of(asyncio.run(run_test()))

        self.assertEqual(data['cache']['version'], 'v2.0.0')
        self.assertIn('weather-search-v2.0.0', data['cache']['caches'])
        self.assertEqual(data['buckets']['weather-search-v2.0.0']['entry_count'], 1)
        self.assertIsNotNone(data['stats_received_at'])

    def test_start_and_stop(self):
        server = StatusServer(schedulers=self.schedulers, host='127.0.0.1', port=0)

        async def run_test():
            await server.start()
            started = server.site is not None
            await server.stop()
            return started

        self.assertTrue(asyncio.run(run_test()))


if __name__ == '__main__':
    unittest.main()
