"""
ControlLoop daemon driving the reconcilers.

This module implements the long-running loop that:
- Periodically resyncs every cluster and group key from the store
- Reconciles different keys concurrently, bounded by a semaphore
- Runs at most one reconciliation per key in this process at a time;
  a trigger that arrives while the key is running re-runs it afterwards
- Honors each pass's requeue hint
- Backs off exponentially per key on failures
- Handles graceful shutdown on SIGINT/SIGTERM

Daemon pattern:
- Uses asyncio.Event for shutdown coordination
- Registers signal handlers inside run() with get_running_loop()
- Uses wait_for with timeout for interruptible sleep

Overlapping passes for the same key from other processes are still safe;
compare-and-set writes in the store reject the loser.
"""

import asyncio
import functools
import logging
import signal
import time
from collections.abc import Callable
from dataclasses import dataclass

from orchestrator_core.errors import ConflictError, TransientError
from orchestrator_core.reconciler import ClusterReconciler, GroupReconciler, ReconcileResult
from orchestrator_core.store.base import DesiredStateStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileKey:
    """
    A unit of reconciliation.

    ``group`` is None for the cluster-level status rollup.
    """

    cluster: str
    group: str | None = None

    def __str__(self) -> str:
        return self.cluster if self.group is None else f"{self.cluster}/{self.group}"


class ControlLoop:
    """
    Long-running daemon that keeps every key converging.

    Example:
        loop = ControlLoop(
            store=store,
            groups=GroupReconciler(store, runtime, coordinator),
            clusters=ClusterReconciler(store),
            resync_interval_s=30.0,
        )
        await loop.run()  # Runs until SIGINT/SIGTERM
    """

    def __init__(
        self,
        store: DesiredStateStore,
        groups: GroupReconciler,
        clusters: ClusterReconciler,
        resync_interval_s: float = 30.0,
        max_concurrent: int = 8,
        backoff_base_s: float = 1.0,
        backoff_max_s: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the control loop.

        Args:
            store: DesiredStateStore to list keys from
            groups: Reconciler for group keys
            clusters: Reconciler for cluster keys
            resync_interval_s: Seconds between full resyncs
            max_concurrent: Reconciliations allowed in flight at once
            backoff_base_s: First retry delay after a failed pass
            backoff_max_s: Upper bound on the retry delay
            clock: Monotonic clock, injectable for tests
        """
        self.store = store
        self.groups = groups
        self.clusters = clusters
        self.resync_interval = resync_interval_s
        self.backoff_base = backoff_base_s
        self.backoff_max = backoff_max_s
        self._clock = clock
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._shutdown = asyncio.Event()
        self._wake = asyncio.Event()

        self._deadlines: dict[ReconcileKey, float] = {}
        self._running: set[ReconcileKey] = set()
        self._dirty: set[ReconcileKey] = set()
        self._failures: dict[ReconcileKey, int] = {}
        self._tasks: set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    def trigger(self, key: ReconcileKey, delay: float = 0.0) -> None:
        """
        Schedule ``key`` to reconcile after ``delay`` seconds.

        An earlier existing schedule wins. If the key is running, it runs
        again once the current pass finishes.
        """
        if key in self._running and delay <= 0:
            self._dirty.add(key)
            return
        due = self._clock() + max(delay, 0.0)
        current = self._deadlines.get(key)
        if current is None or due < current:
            self._deadlines[key] = due
        self._wake.set()

    def scheduled_in(self, key: ReconcileKey) -> float | None:
        """Seconds until ``key`` is due, or None if not scheduled."""
        due = self._deadlines.get(key)
        return None if due is None else max(due - self._clock(), 0.0)

    def backoff_for(self, failures: int) -> float:
        """Delay before retrying a key that failed ``failures`` times in a row."""
        return min(self.backoff_base * (2 ** max(failures - 1, 0)), self.backoff_max)

    async def resync(self) -> list[ReconcileKey]:
        """Trigger every key in the store."""
        keys: list[ReconcileKey] = []
        for cluster in await self.store.list_clusters():
            keys.append(ReconcileKey(cluster.name))
        for group in await self.store.list_groups():
            keys.append(ReconcileKey(group.cluster, group.name))
        for key in keys:
            self.trigger(key)
        logger.debug("Resync queued %d keys", len(keys))
        return keys

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    async def reconcile_key(self, key: ReconcileKey) -> ReconcileResult | None:
        """
        Reconcile one key and schedule its follow-up.

        Returns:
            The pass result, or None if the pass failed
        """
        self._running.add(key)
        try:
            async with self._semaphore:
                if key.group is None:
                    result = await self.clusters.reconcile(key.cluster)
                else:
                    result = await self.groups.reconcile(key.cluster, key.group)
        except (TransientError, ConflictError) as e:
            self._record_failure(key, e, level=logging.WARNING)
            return None
        except Exception as e:
            self._record_failure(key, e, level=logging.ERROR)
            return None
        finally:
            self._running.discard(key)
            if key in self._dirty:
                self._dirty.discard(key)
                self.trigger(key)

        self._failures.pop(key, None)
        if result.requeue_after is not None:
            self.trigger(key, result.requeue_after)
        if key.group is not None:
            # Roll the group's new status up into its cluster.
            self.trigger(ReconcileKey(key.cluster))
        return result

    def _record_failure(self, key: ReconcileKey, error: Exception, level: int) -> None:
        failures = self._failures.get(key, 0) + 1
        self._failures[key] = failures
        delay = self.backoff_for(failures)
        logger.log(
            level,
            "Reconcile %s failed (%d in a row), retrying in %.1fs: %s",
            key,
            failures,
            delay,
            error,
            exc_info=level >= logging.ERROR,
        )
        self.trigger(key, delay)

    async def run_once(self) -> dict[ReconcileKey, ReconcileResult | None]:
        """
        Reconcile every key once: groups concurrently, then clusters.

        Used by ``orchestrator run --once`` and tests.
        """
        clusters = [ReconcileKey(c.name) for c in await self.store.list_clusters()]
        groups = [ReconcileKey(g.cluster, g.name) for g in await self.store.list_groups()]

        results: dict[ReconcileKey, ReconcileResult | None] = {}
        group_results = await asyncio.gather(*(self.reconcile_key(k) for k in groups))
        results.update(zip(groups, group_results))
        for key in clusters:
            results[key] = await self.reconcile_key(key)
        return results

    def _dispatch(self) -> None:
        """Start tasks for keys that are due and not already running."""
        now = self._clock()
        for key, due in list(self._deadlines.items()):
            if due > now or key in self._running:
                continue
            del self._deadlines[key]
            self._running.add(key)
            task = asyncio.create_task(self.reconcile_key(key))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def _next_timeout(self, next_resync: float) -> float:
        pending = [d for k, d in self._deadlines.items() if k not in self._running]
        soonest = min([next_resync, *pending])
        return max(soonest - self._clock(), 0.0)

    # -------------------------------------------------------------------------
    # Daemon
    # -------------------------------------------------------------------------

    async def run(self, install_signal_handlers: bool = True) -> None:
        """
        Run until a shutdown signal or stop().

        In-flight reconciliations are allowed to finish before returning.
        """
        if install_signal_handlers:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(
                    sig,
                    functools.partial(self._handle_signal, sig),
                )

        logger.info("Control loop starting (resync every %.0fs)", self.resync_interval)
        next_resync = self._clock()
        while not self._shutdown.is_set():
            if self._clock() >= next_resync:
                try:
                    await self.resync()
                except Exception as e:
                    logger.error("Resync failed: %s", e)
                next_resync = self._clock() + self.resync_interval

            self._wake.clear()
            self._dispatch()

            try:
                await asyncio.wait_for(
                    self._wake.wait(),
                    timeout=self._next_timeout(next_resync),
                )
            except asyncio.TimeoutError:
                pass  # Something is due

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("Control loop stopped")

    def stop(self) -> None:
        """Request shutdown."""
        self._shutdown.set()
        self._wake.set()

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle shutdown signal by setting shutdown event."""
        logger.info("Received %s, shutting down...", sig.name)
        self.stop()
