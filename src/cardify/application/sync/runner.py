"""Background driver that runs sync cycles periodically and on demand."""

import asyncio
import contextlib
import logging

from cardify.domain.constants import SYNC_INTERVAL_SECONDS
from cardify.domain.interfaces import ConnectivitySignal

from .reconciler import SyncReconciler, SyncReport

logger = logging.getLogger(__name__)


class SyncRunner:
    """
    Owns the sync loop task.

    Cycles never overlap: a trigger that arrives while a cycle is running
    schedules exactly one follow-up cycle, however many triggers arrive.
    Must be started and triggered from the event loop thread.
    """

    def __init__(
        self,
        reconciler: SyncReconciler,
        interval_seconds: float = SYNC_INTERVAL_SECONDS,
        connectivity: ConnectivitySignal | None = None,
    ):
        self.reconciler = reconciler
        self.interval_seconds = interval_seconds
        self.connectivity = connectivity
        self._wake: asyncio.Event | None = None
        self._stopping = False
        self._task: asyncio.Task | None = None
        self.cycles_run = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def last_report(self) -> SyncReport | None:
        return self.reconciler.last_report

    async def start(self) -> None:
        if self.running:
            return
        self._wake = asyncio.Event()
        self._stopping = False
        if self.connectivity is not None:
            self.connectivity.add_listener(self._on_connectivity)
        self._task = asyncio.create_task(self._loop(), name="cardify-sync")
        logger.info(f"[sync] runner started (interval={self.interval_seconds}s)")

    def trigger(self) -> None:
        """Request a cycle soon. Returns immediately."""
        if self._wake is not None:
            self._wake.set()

    def _on_connectivity(self, online: bool) -> None:
        if online:
            logger.info("[sync] connectivity regained; triggering a cycle")
            self.trigger()

    async def run_once(self) -> SyncReport:
        return await self.reconciler.run_cycle()

    async def _loop(self) -> None:
        assert self._wake is not None
        # First cycle runs immediately on start.
        self._wake.set()
        while not self._stopping:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._wake.wait(), timeout=self.interval_seconds)
            if self._stopping:
                break
            self._wake.clear()
            try:
                await self.reconciler.run_cycle()
            except Exception as e:
                logger.error(f"[sync] cycle crashed: {e}", exc_info=True)
            self.cycles_run += 1

    async def stop(self) -> None:
        """Stop the loop, letting an in-progress cycle finish its writes."""
        if self._task is None:
            return
        if self.connectivity is not None:
            self.connectivity.remove_listener(self._on_connectivity)
        self._stopping = True
        self.trigger()
        try:
            await self._task
        finally:
            self._task = None
            logger.info("[sync] runner stopped")
