"""Cache strategy engine for intercepted resource requests."""

import asyncio
import inspect
import json
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

from weather_resilience.cache.rules import (
    ASSET_RULES,
    BUCKET_API,
    BUCKET_IMAGES,
    BUCKET_SEARCH,
    BUCKET_STATIC,
    CacheRule,
    CacheStrategy,
    bucket_names,
    build_api_rules,
    classify,
    is_image,
    is_static_asset,
)
from weather_resilience.cache.storage import CacheBucket, CacheStorage
from weather_resilience.network.fetch_helper import FetchError, FetchRequest, FetchResponse, NetworkFetchHelper
from weather_resilience.weather.endpoints import GEOCODING_SEARCH_URL, build_search_url


logger = logging.getLogger(__name__)


DEFAULT_CACHE_VERSION = 'v2.0.0'
DEFAULT_STATIC_URLS = ('/', '/index.html', '/manifest.json')


class CacheUnavailableError(Exception):
    """Neither the network nor the cache can serve a request. Turned into a 503 response."""

    def __init__(self, message: str, api: bool = False):
        super().__init__(message)
        self.api = api


class CacheStrategyEngine:
    """
    Serves resource requests from versioned cache buckets or the network.

    Requests are classified by path against a static rule table (first match
    wins) and served with CacheFirst, StaleWhileRevalidate or NetworkFirst.
    Requests no rule covers go through the API, static asset, image or
    navigation paths. handle_request() never raises: when neither network nor
    cache can answer, a synthetic 503 response is returned.
    """

    def __init__(
        self,
        fetch_helper: NetworkFetchHelper,
        storage: Optional[CacheStorage] = None,
        version: str = DEFAULT_CACHE_VERSION,
        origin: str = 'http://localhost',
        static_urls: Sequence[str] = DEFAULT_STATIC_URLS,
        rules: Sequence[CacheRule] = ASSET_RULES,
        api_rules: Optional[Sequence[CacheRule]] = None,
        intercept_api: bool = True,
        stale_timeout_ms: int = 1000,
        geocoding_search_url: str = GEOCODING_SEARCH_URL,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize cache strategy engine.

        Args:
            fetch_helper: Shared fetch helper
            storage: Bucket storage (in-memory if None)
            version: Cache version embedded in bucket names
            origin: Base URL used to resolve relative request URLs
            static_urls: URLs precached by install()
            rules: Ordered asset rule table
            api_rules: Rules recognising upstream API URLs (defaults to the public endpoints)
            intercept_api: Serve upstream API requests through the API path
            stale_timeout_ms: Time allowed for the network before StaleWhileRevalidate gives up
            geocoding_search_url: Endpoint used by preload_popular_cities()
            clock: Source of epoch seconds used for expiry
        """
        self.fetch_helper = fetch_helper
        self.storage = storage or CacheStorage(clock=clock)
        self.version = version
        self.origin = origin
        self.static_urls = list(static_urls)
        self.rules = tuple(rules)
        self.api_rules = tuple(api_rules) if api_rules is not None else build_api_rules()
        self.intercept_api = intercept_api
        self.stale_timeout_ms = stale_timeout_ms
        self.geocoding_search_url = geocoding_search_url
        self.clock = clock
        self.bucket_names = bucket_names(version)

        self._strategies = {
            CacheStrategy.CACHE_FIRST: self.cache_first,
            CacheStrategy.STALE_WHILE_REVALIDATE: self.stale_while_revalidate,
            CacheStrategy.NETWORK_FIRST: self.network_first,
        }
        self._observers: List[Callable[[Dict[str, Any]], Any]] = []
        self._tasks: Set[asyncio.Task] = set()

        logger.info(f"Cache engine initialized (version: {version}, buckets: {len(self.bucket_names)})")

    def bucket(self, bucket_type: str) -> CacheBucket:
        """Open the current-version bucket of a type."""
        return self.storage.open(self.bucket_names[bucket_type])

    def resolve_url(self, url: str) -> str:
        return urljoin(self.origin + '/', url) if not urlsplit(url).scheme else url

    def is_expired(self, response: FetchResponse, max_age_ms: int) -> bool:
        """A response is expired once its age exceeds max_age_ms."""
        age_ms = (self.clock() - response.timestamp) * 1000
        return age_ms > max_age_ms

    async def handle_request(self, request: FetchRequest) -> FetchResponse:
        """
        Serve an intercepted request.

        Args:
            request: Outgoing request; relative URLs resolve against the origin

        Returns:
            Response from cache or network, or a synthetic 503 response
        """
        url = request.url
        try:
            url = self.resolve_url(request.url)
            if url != request.url:
                request = FetchRequest(url, request.method, dict(request.headers), request.body)
            parts = urlsplit(url)

            if parts.scheme not in ('http', 'https'):
                return await self._pass_through(request)

            rule = classify(parts.path, self.rules)
            if rule is not None:
                return await self.execute_strategy(request, rule)
            if self.intercept_api and classify(url, self.api_rules) is not None:
                return await self._handle_api(request)
            if is_static_asset(parts.path):
                return await self._handle_static_asset(request)
            if is_image(parts.path):
                return await self._handle_image(request)
            return await self._handle_navigation(request)
        except CacheUnavailableError as e:
            logger.info(f"Serving 503 for {url}: {e}")
            return self._unavailable_response(e)
        except Exception as e:
            logger.error(f"Unexpected error handling {url}: {type(e).__name__}: {e}", exc_info=True)
            return self._unavailable_response(CacheUnavailableError("Service unavailable"))

    async def execute_strategy(self, request: FetchRequest, rule: CacheRule) -> FetchResponse:
        """
        Apply a rule's strategy to a request.

        Raises:
            CacheUnavailableError: If neither network nor cache can answer
        """
        logger.debug(f"{request.url} matched rule {rule.name} ({rule.strategy.value})")
        return await self._strategies[rule.strategy](request, self.bucket(rule.bucket), rule.max_age_ms)

    async def cache_first(self, request: FetchRequest, bucket: CacheBucket, max_age_ms: int) -> FetchResponse:
        """
        Serve a fresh cache hit without touching the network, otherwise fetch and store.

        Falls back to an expired entry when the network fails.
        """
        cached = bucket.match(request.url)
        if cached is not None and not self.is_expired(cached, max_age_ms):
            logger.debug(f"Cache hit for {request.url} in {bucket.name}")
            return cached

        try:
            response = await self.fetch_helper.fetch_with_timeout(request)
        except FetchError as e:
            logger.warning(f"CacheFirst fetch failed for {request.url}: {e}")
            if cached is not None:
                return cached
            raise CacheUnavailableError("Asset not available")

        bucket.put(request.url, response)
        return response

    async def stale_while_revalidate(
        self,
        request: FetchRequest,
        bucket: CacheBucket,
        max_age_ms: int
    ) -> FetchResponse:
        """
        Always refresh in the background; serve a fresh cache hit immediately.

        Without a fresh entry, wait up to stale_timeout_ms for the network and
        fall back to the stale entry.
        """
        cached = bucket.match(request.url)
        self._revalidate_in_background(request, bucket)

        if cached is not None and not self.is_expired(cached, max_age_ms):
            return cached

        try:
            response = await asyncio.wait_for(
                self.fetch_helper.fetch_with_timeout(request, timeout_ms=self.stale_timeout_ms),
                timeout=self.stale_timeout_ms / 1000
            )
        except (FetchError, asyncio.TimeoutError) as e:
            logger.warning(f"Network request failed for {request.url}, using stale cache: {e or 'stale timeout'}")
            if cached is not None:
                return cached
            raise CacheUnavailableError("Service unavailable")

        bucket.put(request.url, response)
        return response

    async def network_first(
        self,
        request: FetchRequest,
        bucket: CacheBucket,
        max_age_ms: Optional[int] = None,
        cache_key: Optional[str] = None
    ) -> FetchResponse:
        """
        Fetch with the helper's timeout and retries, falling back to the cache.

        max_age_ms is accepted for a uniform strategy signature; cached
        entries are served regardless of age when the network fails.
        """
        cache_key = cache_key or request.url
        try:
            response = await self.fetch_helper.fetch_with_timeout(request)
        except FetchError as e:
            logger.warning(f"Network first failed for {request.url}, falling back to cache: {e}")
            cached = bucket.match(cache_key)
            if cached is not None:
                return cached
            raise CacheUnavailableError("Network and cache unavailable")

        bucket.put(cache_key, response)
        return response

    def _revalidate_in_background(self, request: FetchRequest, bucket: CacheBucket) -> None:
        task = asyncio.ensure_future(self._revalidate(request, bucket))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _revalidate(self, request: FetchRequest, bucket: CacheBucket) -> None:
        try:
            response = await self.fetch_helper.fetch(request)
        except FetchError as e:
            logger.warning(f"Background cache update failed for {request.url}: {e}")
            return
        except Exception as e:
            logger.error(
                f"Background cache update for {request.url} raised {type(e).__name__}: {e}",
                exc_info=True
            )
            return

        if response.ok:
            bucket.put(request.url, response)
        else:
            logger.debug(f"Background update for {request.url} returned HTTP {response.status}, keeping cache")

    async def wait_for_background(self) -> None:
        """Wait for every pending background revalidation."""
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def _pass_through(self, request: FetchRequest) -> FetchResponse:
        try:
            return await self.fetch_helper.fetch(request)
        except FetchError as e:
            raise CacheUnavailableError(f"Request failed: {e}")

    async def _handle_static_asset(self, request: FetchRequest) -> FetchResponse:
        bucket = self.bucket(BUCKET_STATIC)
        cached = bucket.match(request.url)
        if cached is not None:
            logger.debug(f"Serving from cache: {request.url}")
            self._revalidate_in_background(request, bucket)
            return cached

        try:
            response = await self.fetch_helper.fetch_with_timeout(request)
        except FetchError as e:
            if e.response is not None:
                return e.response
            logger.error(f"Failed to fetch static asset {request.url}: {e}")
            raise CacheUnavailableError("Static asset unavailable offline")

        bucket.put(request.url, response)
        return response

    def normalize_api_key(self, url: str) -> str:
        """API cache key with query parameters sorted by name."""
        parts = urlsplit(url)
        query = urlencode(sorted(parse_qsl(parts.query, keep_blank_values=True), key=lambda item: item[0]))
        return urlunsplit((parts.scheme, parts.netloc, parts.path, query, ''))

    def _annotate(self, response: FetchResponse, meta: Dict[str, Any], status: Optional[int] = None,
                  status_text: Optional[str] = None) -> FetchResponse:
        try:
            data = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return response
        if not isinstance(data, dict):
            return response

        data['_meta'] = meta
        headers = dict(response.headers)
        headers.pop('Content-Length', None)
        headers.pop('content-length', None)
        return FetchResponse(
            status=status if status is not None else response.status,
            headers=headers,
            body=json.dumps(data).encode('utf-8'),
            url=response.url,
            timestamp=response.timestamp,
            status_text=status_text if status_text is not None else response.status_text,
        )

    async def _handle_api(self, request: FetchRequest) -> FetchResponse:
        cache_key = self.normalize_api_key(request.url)
        bucket = self.bucket(BUCKET_API)
        now_ms = int(self.clock() * 1000)

        try:
            response = await self.fetch_helper.fetch_with_timeout(request)
        except FetchError as e:
            logger.warning(f"Network failed for {request.url}, trying cache: {e}")
            cached = bucket.match(cache_key)
            if cached is None:
                raise CacheUnavailableError("No internet connection. Showing cached data.", api=True)
            logger.info(f"Serving cached API response: {urlsplit(request.url).path}")
            meta = {'cached': True, 'timestamp': now_ms, 'source': 'cache', 'offline': True}
            return self._annotate(cached, meta, status=200, status_text='OK (Cached)')

        bucket.put(cache_key, response)
        return self._annotate(response, {'cached': False, 'timestamp': now_ms, 'source': 'network'})

    async def _handle_image(self, request: FetchRequest) -> FetchResponse:
        bucket = self.bucket(BUCKET_IMAGES)
        cached = bucket.match(request.url)
        if cached is not None:
            return cached

        try:
            response = await self.fetch_helper.fetch_with_timeout(request)
        except FetchError as e:
            if e.response is not None:
                return e.response
            logger.warning(f"Failed to fetch image {request.url}: {e}")
            raise CacheUnavailableError("Image unavailable offline")

        bucket.put(request.url, response)
        return response

    async def _handle_navigation(self, request: FetchRequest) -> FetchResponse:
        bucket = self.bucket(BUCKET_STATIC)
        try:
            response = await self.fetch_helper.fetch_with_timeout(request)
        except FetchError as e:
            logger.info(f"Navigation to {request.url} failed, falling back to cache: {e}")
            for key in (request.url, self.resolve_url('/'), self.resolve_url('/index.html')):
                cached = bucket.match(key)
                if cached is not None:
                    return cached
            raise CacheUnavailableError("Page unavailable offline")

        bucket.put(request.url, response)
        return response

    def _unavailable_response(self, error: CacheUnavailableError) -> FetchResponse:
        now = self.clock()
        if error.api:
            now_ms = int(now * 1000)
            body = json.dumps({
                'error': 'offline',
                'message': str(error),
                'timestamp': now_ms,
                'data': None,
                '_meta': {'cached': False, 'offline': True, 'timestamp': now_ms, 'source': 'fallback'},
            }).encode('utf-8')
            content_type = 'application/json'
        else:
            body = str(error).encode('utf-8')
            content_type = 'text/plain'

        return FetchResponse(
            status=503,
            headers={'Content-Type': content_type},
            body=body,
            timestamp=now,
            status_text='Service Unavailable',
        )

    async def install(self) -> int:
        """
        Precache the static URL list into the static bucket.

        Failures are logged, not raised.

        Returns:
            Number of URLs cached
        """
        bucket = self.bucket(BUCKET_STATIC)

        async def precache(url: str) -> bool:
            resolved = self.resolve_url(url)
            try:
                response = await self.fetch_helper.fetch_with_timeout(FetchRequest(resolved))
            except FetchError as e:
                logger.warning(f"Failed to cache {url}: {e}")
                return False
            bucket.put(resolved, response)
            logger.debug(f"Cached static asset: {url}")
            return True

        results = await asyncio.gather(*(precache(url) for url in self.static_urls))
        cached = sum(1 for result in results if result)
        logger.info(f"Static assets cached ({cached}/{len(self.static_urls)})")
        return cached

    def activate(self) -> List[str]:
        """
        Delete buckets that do not belong to the current cache version.

        Returns:
            Names of deleted buckets
        """
        current = set(self.bucket_names.values())
        deleted = [name for name in self.storage.keys() if name not in current]
        for name in deleted:
            logger.info(f"Deleting old cache: {name}")
            self.storage.delete(name)
        return deleted

    def clear_cache(self, bucket_type: Optional[str] = None) -> List[str]:
        """
        Delete one bucket type, or every bucket when bucket_type is None.

        Args:
            bucket_type: One of the bucket types, e.g. 'api'

        Returns:
            Names of deleted buckets

        Raises:
            ValueError: If bucket_type is not a known bucket type
        """
        if bucket_type is None:
            names = self.storage.keys()
        elif bucket_type in self.bucket_names:
            names = [self.bucket_names[bucket_type]]
        else:
            raise ValueError(f"Unknown cache type: {bucket_type!r}")

        deleted = [name for name in names if self.storage.delete(name)]
        logger.info(f"Cleared cache(s): {', '.join(deleted) or 'none'}")
        return deleted

    def get_cache_status(self) -> Dict[str, Any]:
        return {
            'caches': self.storage.keys(),
            'version': self.version,
            'timestamp': int(self.clock() * 1000),
        }

    def cache_search_results(self, query: str, results: List[Any], source: str) -> None:
        """
        Store search results under a normalised query key.

        Args:
            query: Search query as typed
            results: Result objects
            source: Where the results came from, e.g. 'api' or 'offline'
        """
        body = json.dumps({
            'query': query,
            'results': results,
            'source': source,
            'timestamp': int(self.clock() * 1000),
        }).encode('utf-8')
        response = FetchResponse(
            status=200,
            headers={'Content-Type': 'application/json'},
            body=body,
            timestamp=self.clock(),
        )
        self.bucket(BUCKET_SEARCH).put(f"search:{query.lower()}", response)
        logger.info(f"Cached search results: {query}")

    def get_cached_search(self, query: str) -> Optional[Dict[str, Any]]:
        """Get previously cached search results for a query, or None."""
        cached = self.bucket(BUCKET_SEARCH).match(f"search:{query.lower()}")
        return cached.json() if cached is not None else None

    async def preload_popular_cities(self, cities: Iterable[str], user_agent: Optional[str] = None) -> int:
        """
        Geocode popular cities ahead of time into the search bucket.

        Args:
            cities: City queries such as 'London, GB'
            user_agent: User-Agent for the geocoding service

        Returns:
            Number of cities preloaded
        """
        bucket = self.bucket(BUCKET_SEARCH)
        headers = {'User-Agent': user_agent} if user_agent else {}

        async def preload(city: str) -> bool:
            request = FetchRequest(build_search_url(city, 1, self.geocoding_search_url), headers=headers)
            try:
                response = await self.fetch_helper.fetch(request)
            except FetchError as e:
                logger.warning(f"Failed to preload city {city}: {e}")
                return False
            if not response.ok:
                logger.warning(f"Failed to preload city {city}: HTTP {response.status}")
                return False
            bucket.put(f"preload:{city}", response)
            logger.debug(f"Preloaded city: {city}")
            return True

        results = await asyncio.gather(*(preload(city) for city in cities or []))
        preloaded = sum(1 for result in results if result)
        logger.info(f"Popular cities preloading completed ({preloaded}/{len(results)})")
        return preloaded

    def add_observer(self, callback: Callable[[Dict[str, Any]], Any]) -> None:
        """Register a callback receiving cache performance stats."""
        self._observers.append(callback)

    async def report_cache_performance(self) -> Dict[str, Dict[str, Any]]:
        """
        Collect per-bucket statistics and push them to every observer.

        Returns:
            Mapping of bucket name to {entry_count, last_updated}
        """
        stats = {}
        for name in self.storage.keys():
            bucket = self.storage.open(name)
            last_updated = bucket.last_updated
            stats[name] = {
                'entry_count': len(bucket),
                'last_updated': datetime.fromtimestamp(last_updated).isoformat() if last_updated else None,
            }

        for observer in list(self._observers):
            try:
                result = observer(stats)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Cache performance observer {observer!r} failed: {type(e).__name__}: {e}")

        return stats
