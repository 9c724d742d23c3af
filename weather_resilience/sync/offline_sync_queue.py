"""Durable offline mutation queue with bounded retry and single-flight processing."""

import asyncio
import inspect
import json
import logging
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Set, Union

from weather_resilience.network.connectivity import ConnectivityMonitor
from weather_resilience.scheduler.priority import Priority
from weather_resilience.sync.handlers import MutationHandlerRegistry
from weather_resilience.sync.storage import KeyValueStore
from weather_resilience.sync.sync_types import (
    MutationType,
    PendingMutation,
    SyncExhaustedError,
    SyncHandlerFailure,
    SyncResult,
)


logger = logging.getLogger(__name__)


MAX_RETRY_COUNT = 3
RETRY_DELAY_MS = 5000  # informational, passes are driven by process_pending() calls
STORAGE_KEY = "weather-pending-sync"
BACKGROUND_SYNC_TAG = "weather-background-sync"
SYNC_BUSY_MESSAGE = "Sync already in progress or offline"

ORDER_OLDEST_FIRST = "oldest_first"
ORDER_NEWEST_FIRST = "newest_first"


class OfflineSyncQueue:
    """
    Persists mutations made while offline and replays them later.

    The pending list lives under a single key of a KeyValueStore and is
    always rewritten wholesale. Only one processing pass runs at a time.
    A mutation whose handler keeps failing is dropped once its retry count
    reaches max_retry_count and reported in SyncResult.errors.
    """

    def __init__(
        self,
        store: KeyValueStore,
        registry: MutationHandlerRegistry,
        connectivity: Optional[ConnectivityMonitor] = None,
        max_retry_count: int = MAX_RETRY_COUNT,
        storage_key: str = STORAGE_KEY,
        order_within_priority: str = ORDER_OLDEST_FIRST,
        background_sync: Optional[Callable[[str], Any]] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize offline sync queue.

        Args:
            store: Backing key/value store
            registry: Handlers keyed by mutation type
            connectivity: Connectivity monitor (always online if None)
            max_retry_count: Failed attempts after which a mutation is dropped
            storage_key: Key holding the JSON list of pending mutations
            order_within_priority: 'oldest_first' or 'newest_first'
            background_sync: Optional platform hook called with the sync tag
            clock: Source of epoch seconds
        """
        if max_retry_count < 1:
            raise ValueError(f"max_retry_count must be at least 1, got: {max_retry_count}")
        if order_within_priority not in (ORDER_OLDEST_FIRST, ORDER_NEWEST_FIRST):
            raise ValueError(f"Invalid order_within_priority: {order_within_priority!r}")

        self.store = store
        self.registry = registry
        self.connectivity = connectivity
        self.max_retry_count = max_retry_count
        self.storage_key = storage_key
        self.order_within_priority = order_within_priority
        self.background_sync = background_sync
        self.clock = clock

        self._lock = threading.Lock()
        self._is_processing = False
        self._cleared_during_pass = False
        self._tasks: Set[asyncio.Task] = set()

        if connectivity is not None:
            connectivity.add_listener(self._on_connectivity_change)

        logger.info(
            f"Offline sync queue initialized (key: {storage_key}, max retries: {max_retry_count}, "
            f"order: {order_within_priority})"
        )

    @property
    def is_processing(self) -> bool:
        return self._is_processing

    def _is_online(self) -> bool:
        return self.connectivity is None or self.connectivity.is_online()

    def _load_pending(self) -> List[PendingMutation]:
        """Read the persisted list. Absent or corrupt data reads as empty."""
        raw = self.store.get(self.storage_key)
        if raw is None:
            return []

        try:
            entries = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            logger.error(f"Corrupt pending sync data under '{self.storage_key}': {e}, treating as empty")
            return []

        if not isinstance(entries, list):
            logger.error(f"Pending sync data under '{self.storage_key}' is not a list, treating as empty")
            return []

        mutations = []
        for entry in entries:
            try:
                mutations.append(PendingMutation.from_dict(entry))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                logger.warning(f"Discarding malformed pending mutation {entry!r}: {e}")
        return mutations

    def _save_pending(self, mutations: List[PendingMutation]) -> None:
        self.store.set(self.storage_key, json.dumps([m.to_dict() for m in mutations]))

    def get_pending(self) -> List[PendingMutation]:
        """Get the persisted pending mutations in storage order."""
        return self._load_pending()

    def _sorted(self, mutations: List[PendingMutation]) -> List[PendingMutation]:
        direction = 1 if self.order_within_priority == ORDER_OLDEST_FIRST else -1
        return sorted(mutations, key=lambda m: (m.priority.rank, direction * m.timestamp))

    def queue_mutation(
        self,
        mutation_type: Union[MutationType, str],
        payload: Dict[str, Any],
        priority: Union[Priority, str] = Priority.MEDIUM
    ) -> PendingMutation:
        """
        Persist a new mutation and trigger a pass if online.

        Args:
            mutation_type: One of the MutationType members or its tag
            payload: Type-specific payload
            priority: Priority class

        Returns:
            The persisted PendingMutation

        Raises:
            ValueError: If the type or priority is unknown
        """
        resolved_type = MutationType.parse(mutation_type)
        if not isinstance(resolved_type, MutationType):
            raise ValueError(f"Unknown mutation type: {mutation_type!r}")

        now_ms = int(self.clock() * 1000)
        mutation = PendingMutation(
            id=f"sync_{now_ms}_{uuid.uuid4().hex[:9]}",
            type=resolved_type,
            payload=dict(payload or {}),
            timestamp=now_ms,
            priority=Priority.parse(priority),
        )

        with self._lock:
            pending = self._load_pending()
            pending.append(mutation)
            self._save_pending(pending)

        logger.info(
            f"Queued {mutation.type_tag} mutation {mutation.id} "
            f"(priority: {mutation.priority.value}, pending: {len(pending)})"
        )

        if self._is_online():
            self._schedule_processing()

        return mutation

    def _schedule_processing(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, deferring sync pass")
            return

        task = loop.create_task(self.process_pending())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_connectivity_change(self, online: bool) -> None:
        if online:
            logger.info("Connectivity regained, processing pending mutations")
            self._schedule_processing()

    async def _dispatch(self, mutation: PendingMutation) -> bool:
        handler = self.registry.get(mutation.type)
        if handler is None:
            logger.warning(f"No handler registered for mutation type '{mutation.type_tag}' ({mutation.id})")
            return False
        return bool(await handler(mutation.payload))

    async def process_pending(self) -> SyncResult:
        """
        Replay every pending mutation once.

        Returns:
            SyncResult for the pass. If a pass is already running or the
            network is offline, an unsuccessful result is returned and
            storage is left untouched.
        """
        if self._is_processing or not self._is_online():
            return SyncResult(success=False, processed=0, failed=0, errors=[SYNC_BUSY_MESSAGE])

        self._is_processing = True
        self._cleared_during_pass = False
        try:
            pending = self._load_pending()
            if not pending:
                return SyncResult(success=True)

            logger.info(f"Processing {len(pending)} pending mutation(s)")
            pass_ids = {m.id for m in pending}
            survivors: List[PendingMutation] = []
            processed = 0
            failed = 0
            retried = 0
            errors: List[str] = []

            for mutation in self._sorted(pending):
                try:
                    succeeded = await self._dispatch(mutation)
                except SyncHandlerFailure as e:
                    logger.warning(f"Sync of {mutation.type_tag} mutation {mutation.id} failed: {e}")
                    succeeded = False
                except Exception as e:
                    logger.warning(
                        f"Sync of {mutation.type_tag} mutation {mutation.id} raised "
                        f"{type(e).__name__}: {e}"
                    )
                    succeeded = False

                if succeeded:
                    processed += 1
                    logger.debug(f"Synced {mutation.type_tag} mutation {mutation.id}")
                    continue

                mutation.retry_count += 1
                if mutation.retry_count < self.max_retry_count:
                    retried += 1
                    survivors.append(mutation)
                    logger.info(
                        f"Mutation {mutation.id} will be retried "
                        f"(attempt {mutation.retry_count}/{self.max_retry_count})"
                    )
                else:
                    error = SyncExhaustedError(
                        f"Failed to sync {mutation.type_tag} mutation {mutation.id} "
                        f"after {mutation.retry_count} attempts"
                    )
                    logger.error(str(error))
                    failed += 1
                    errors.append(str(error))

            with self._lock:
                if self._cleared_during_pass:
                    survivors = []
                queued_during_pass = [m for m in self._load_pending() if m.id not in pass_ids]
                self._save_pending(survivors + queued_during_pass)

            logger.info(
                f"Sync pass complete: {processed} processed, {failed} dropped, "
                f"{retried} to retry, {len(survivors) + len(queued_during_pass)} pending"
            )
            return SyncResult(success=not errors, processed=processed, failed=failed, errors=errors)
        finally:
            self._is_processing = False

    async def register_background_sync(self) -> bool:
        """
        Ask the platform to run a sync when connectivity returns.

        Returns:
            True if a background sync hook is present and accepted the tag
        """
        if self.background_sync is None:
            logger.debug("Background sync not available")
            return False

        try:
            result = self.background_sync(BACKGROUND_SYNC_TAG)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Background sync registration failed: {type(e).__name__}: {e}")
            return False

        logger.info(f"Background sync registered ({BACKGROUND_SYNC_TAG})")
        return True

    def get_sync_stats(self) -> Dict[str, Any]:
        """
        Get pending queue statistics.

        Returns:
            Dictionary with pending count, per-priority counts, processing
            flag and the oldest pending timestamp (epoch ms, or None)
        """
        pending = self._load_pending()
        by_priority = {priority.value: 0 for priority in Priority}
        for mutation in pending:
            by_priority[mutation.priority.value] += 1

        return {
            'pending': len(pending),
            'by_priority': by_priority,
            'is_processing': self._is_processing,
            'oldest_timestamp': min((m.timestamp for m in pending), default=None),
            'online': self._is_online(),
        }

    def clear_pending(self) -> int:
        """
        Drop every pending mutation.

        Returns:
            Number of mutations removed
        """
        with self._lock:
            count = len(self._load_pending())
            self._save_pending([])
            if self._is_processing:
                self._cleared_during_pass = True
        logger.info(f"Cleared {count} pending mutation(s)")
        return count
