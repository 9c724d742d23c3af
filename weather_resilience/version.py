"""Version information for the weather resilience layer."""

__version__ = "1.0.0"
__version_info__ = (1, 0, 0)

# Release notes for this version
RELEASE_NOTES = """
Weather Resilience Layer v1.0.0

Client-side resilience for weather applications talking to rate-limited,
unreliable upstream APIs.

Key Features:
- Priority request scheduler with concurrency cap, rate limiting and batching
- Durable offline mutation queue with bounded retry and single-flight replay
- Cache strategy engine (cache-first, stale-while-revalidate, network-first)
- HTTP status endpoints for scheduler, sync queue and cache buckets
- Configuration via YAML and environment variables
"""
