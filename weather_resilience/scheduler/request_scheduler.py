"""Priority request scheduler with concurrency cap, rate limiting and batching."""

import asyncio
import logging
import time
from dataclasses import dataclass, field, fields
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from weather_resilience.scheduler.priority import Priority


logger = logging.getLogger(__name__)


Executor = Callable[[], Awaitable[Any]]


class QueueFullError(Exception):
    """Request rejected because the scheduler queue is at capacity."""
    pass


class QueueClearedError(Exception):
    """Queued request cancelled by RequestScheduler.clear()."""
    pass


@dataclass(frozen=True)
class QueueConfig:
    """Immutable scheduler settings."""
    max_concurrent: int = 3
    min_delay_ms: int = 1200
    batch_window_ms: int = 500
    max_queue_size: int = 50

    def __post_init__(self):
        if self.max_concurrent < 1:
            raise ValueError(f"max_concurrent must be at least 1, got: {self.max_concurrent}")
        if self.max_queue_size < 1:
            raise ValueError(f"max_queue_size must be at least 1, got: {self.max_queue_size}")
        if self.min_delay_ms < 0 or self.batch_window_ms < 0:
            raise ValueError("min_delay_ms and batch_window_ms must be non-negative")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]] = None, **defaults) -> 'QueueConfig':
        """
        Create from a configuration dictionary.

        Args:
            data: Mapping with any of the QueueConfig field names
            **defaults: Values used for keys missing from data

        Returns:
            QueueConfig instance
        """
        values = dict(defaults)
        known = {f.name for f in fields(cls)}
        for key, value in (data or {}).items():
            if key in known and value is not None:
                values[key] = int(value)
        return cls(**values)


@dataclass
class QueuedRequest:
    """A request waiting for dispatch. Lives until its future settles."""
    id: str
    priority: Priority
    executor: Executor
    future: asyncio.Future
    enqueued_at: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class SchedulerStats:
    """Read-only snapshot of scheduler state."""
    queue_length: int
    active_requests: int
    max_concurrent: int

    def to_dict(self) -> Dict[str, int]:
        return {
            'queue_length': self.queue_length,
            'active_requests': self.active_requests,
            'max_concurrent': self.max_concurrent,
        }


class RequestScheduler:
    """
    Schedules calls to a rate-limited upstream API.

    Requests are ordered by priority class, FIFO within a class. At most
    ``max_concurrent`` executors run at once and successive dispatch starts
    are at least ``min_delay_ms`` apart. Draining is driven by enqueue and
    settlement events plus a single timer for the rate-limit wait, never by
    polling.

    Instances are bound to the event loop they are used from and are not
    thread-safe.
    """

    def __init__(
        self,
        config: Optional[QueueConfig] = None,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize request scheduler.

        Args:
            config: Scheduler settings (defaults to QueueConfig())
            name: Name used in log messages
            clock: Monotonic clock in seconds
        """
        self.config = config or QueueConfig()
        self.name = name
        self._clock = clock
        self._queue: List[QueuedRequest] = []
        self._active = 0
        self._last_dispatch_at: Optional[float] = None
        self._delay_handle: Optional[asyncio.TimerHandle] = None
        self._batch_flush: Optional[asyncio.Future] = None
        self._batch_handle: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()

        logger.debug(
            f"Scheduler '{name}' initialized: max_concurrent={self.config.max_concurrent}, "
            f"min_delay_ms={self.config.min_delay_ms}, batch_window_ms={self.config.batch_window_ms}, "
            f"max_queue_size={self.config.max_queue_size}"
        )

    def enqueue(
        self,
        request_id: str,
        executor: Executor,
        priority: Union[Priority, str] = Priority.MEDIUM
    ) -> asyncio.Future:
        """
        Add a request to the queue.

        Must be called from the running event loop. The request is inserted
        before returning, so the order of enqueue calls decides the order of
        same-priority requests.

        Args:
            request_id: Identifier used in logs
            executor: Zero-argument coroutine function performing the call
            priority: Priority class

        Returns:
            Future settling with the executor's result or exception, or
            already failed with QueueFullError when the queue is at capacity
        """
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        priority = Priority.parse(priority)

        if len(self._queue) >= self.config.max_queue_size:
            logger.warning(
                f"Scheduler '{self.name}' queue is full ({self.config.max_queue_size}), "
                f"rejecting request {request_id}"
            )
            future.set_exception(QueueFullError(
                f"Request queue '{self.name}' is full ({self.config.max_queue_size} pending)"
            ))
            return future

        request = QueuedRequest(
            id=request_id,
            priority=priority,
            executor=executor,
            future=future,
            enqueued_at=self._clock()
        )

        # First strictly-lower priority item; equal priorities keep insertion order
        insert_index = len(self._queue)
        for index, queued in enumerate(self._queue):
            if queued.priority.rank > priority.rank:
                insert_index = index
                break
        self._queue.insert(insert_index, request)
        future.add_done_callback(lambda _: self._discard_cancelled(request))
        logger.debug(
            f"Scheduler '{self.name}' queued {request_id} ({priority.value}) at position "
            f"{insert_index}, queue length {len(self._queue)}"
        )

        self._process_queue()
        return future

    def _process_queue(self) -> None:
        """Dispatch as many requests as concurrency and rate limit allow right now."""
        while True:
            if self._active >= self.config.max_concurrent:
                return

            # Callers may have cancelled their futures while waiting
            while self._queue and self._queue[0].future.done():
                dropped = self._queue.pop(0)
                logger.debug(f"Scheduler '{self.name}' dropped cancelled request {dropped.id}")

            if not self._queue:
                return

            now = self._clock()
            if self._last_dispatch_at is not None:
                elapsed_ms = (now - self._last_dispatch_at) * 1000
                if elapsed_ms < self.config.min_delay_ms:
                    if self._delay_handle is None:
                        delay = (self.config.min_delay_ms - elapsed_ms) / 1000
                        self._delay_handle = asyncio.get_running_loop().call_later(delay, self._on_delay_elapsed)
                    return

            request = self._queue.pop(0)
            self._active += 1
            self._last_dispatch_at = now
            logger.debug(
                f"Scheduler '{self.name}' dispatching {request.id} ({request.priority.value}), "
                f"active={self._active}, waited {(now - request.enqueued_at) * 1000:.0f}ms"
            )

            task = asyncio.ensure_future(self._execute(request))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def _discard_cancelled(self, request: QueuedRequest) -> None:
        """Drop a request whose caller cancelled it before dispatch."""
        if not request.future.cancelled():
            return
        for index, queued in enumerate(self._queue):
            if queued is request:
                del self._queue[index]
                logger.debug(f"Scheduler '{self.name}' dropped cancelled request {request.id}")
                return

    def _on_delay_elapsed(self) -> None:
        self._delay_handle = None
        self._process_queue()

    async def _execute(self, request: QueuedRequest) -> None:
        """Run one executor and settle its future with the exact outcome."""
        try:
            result = await request.executor()
        except asyncio.CancelledError:
            if not request.future.done():
                request.future.cancel()
            raise
        except Exception as e:
            logger.debug(f"Scheduler '{self.name}' request {request.id} failed: {type(e).__name__}: {e}")
            if not request.future.done():
                request.future.set_exception(e)
        else:
            if not request.future.done():
                request.future.set_result(result)
        finally:
            self._active -= 1
            self._process_queue()

    async def batch(
        self,
        requests: Iterable[Tuple[str, Executor]],
        priority: Union[Priority, str] = Priority.MEDIUM
    ) -> List[Any]:
        """
        Enqueue several requests and collect their outcomes after the batch window.

        Every request is enqueued immediately and individually rate limited.
        The aggregate result is produced once the shared batching window
        closes; concurrent batch() calls re-arm and share that window.

        Args:
            requests: (request_id, executor) pairs
            priority: Priority class for every request

        Returns:
            One entry per request, in order: the result, or the exception
            instance for a request that failed (including QueueFullError)
        """
        futures = [self.enqueue(request_id, executor, priority) for request_id, executor in requests]
        await asyncio.shield(self._arm_batch_window())
        return await asyncio.gather(*futures, return_exceptions=True)

    def _arm_batch_window(self) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        if self._batch_flush is None or self._batch_flush.done():
            self._batch_flush = loop.create_future()
        if self._batch_handle is not None:
            self._batch_handle.cancel()
        self._batch_handle = loop.call_later(self.config.batch_window_ms / 1000, self._flush_batch)
        return self._batch_flush

    def _flush_batch(self) -> None:
        self._batch_handle = None
        flush, self._batch_flush = self._batch_flush, None
        if flush is not None and not flush.done():
            flush.set_result(None)

    def clear(self) -> int:
        """
        Reject every request that has not been dispatched yet.

        Dispatched requests are unaffected and settle normally.

        Returns:
            Number of requests rejected
        """
        pending, self._queue = self._queue, []
        if self._delay_handle is not None:
            self._delay_handle.cancel()
            self._delay_handle = None

        rejected = 0
        for request in pending:
            if not request.future.done():
                request.future.set_exception(QueueClearedError(f"Queue '{self.name}' cleared"))
                rejected += 1

        if rejected:
            logger.info(f"Scheduler '{self.name}' cleared {rejected} pending request(s)")
        return rejected

    def get_stats(self) -> SchedulerStats:
        """Get a snapshot of queue length and active executions."""
        return SchedulerStats(
            queue_length=len(self._queue),
            active_requests=self._active,
            max_concurrent=self.config.max_concurrent
        )


GEOCODING_DEFAULTS = dict(max_concurrent=1, min_delay_ms=1200, batch_window_ms=500, max_queue_size=20)
FORECAST_DEFAULTS = dict(max_concurrent=5, min_delay_ms=100, batch_window_ms=200, max_queue_size=50)


def create_geocoding_scheduler(overrides: Optional[Dict[str, Any]] = None) -> RequestScheduler:
    """
    Create the scheduler used for geocoding (Nominatim requires about one request per second).

    Args:
        overrides: Optional QueueConfig values from configuration

    Returns:
        RequestScheduler named 'geocoding'
    """
    return RequestScheduler(QueueConfig.from_dict(overrides, **GEOCODING_DEFAULTS), name="geocoding")


def create_forecast_scheduler(overrides: Optional[Dict[str, Any]] = None) -> RequestScheduler:
    """
    Create the scheduler used for forecast requests (Open-Meteo is more lenient).

    Args:
        overrides: Optional QueueConfig values from configuration

    Returns:
        RequestScheduler named 'forecast'
    """
    return RequestScheduler(QueueConfig.from_dict(overrides, **FORECAST_DEFAULTS), name="forecast")
