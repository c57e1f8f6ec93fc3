"""
core/poller.py -- The scheduling core: periodic SNMP polls of every monitored device.

One asyncio task drives the ticks. Each tick starts a cycle as its own task,
so the timer is never blocked by a slow cycle and ticks stay aligned to the
wall clock (loop.time()), not to cycle completion.

Overlap policy: skip-if-running. A tick that finds the previous cycle still
in progress is skipped and counted in cycles_skipped. Manual run_cycle()
calls are refused the same way.

Inside a cycle every device is polled as an independent unit under a
semaphore (max_concurrency). A failure for one device is translated to
"offline" for that device only; nothing propagates to sibling polls or to
the tick loop.

Cancellation: stop() bumps a generation counter, cancels the tick loop and
the running cycle, and closes every SNMP session. A poll that belongs to an
older generation drops its result instead of writing it, so nothing that
resolves after stop() can change device state.

State machine: Idle --start()--> Running --stop()--> Idle.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from sqlalchemy.exc import SQLAlchemyError

from core.classifier import classify, snapshot_from_values
from core.errors import DeviceUnreachable, SchedulerFatal
from core.models import OFFLINE, STATUSES

if TYPE_CHECKING:
    from core.reconciler import StateReconciler
    from core.snmp import SessionPool
    from inventory.models import Device
    from inventory.store import DeviceStore

logger = logging.getLogger("netpulse.poller")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _empty_counts() -> dict[str, int]:
    return {status: 0 for status in STATUSES}


@dataclass
class CycleReport:
    """Outcome of one poll cycle.

    counts   -- devices per resulting status
    discarded -- results dropped (stale generation, device removed, write failed)
    failed   -- polls that raised something other than DeviceUnreachable
    """

    started_at: str
    finished_at: str = ""
    polled: int = 0
    counts: dict[str, int] = field(default_factory=_empty_counts)
    discarded: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class Poller:
    def __init__(
        self,
        registry: DeviceStore,
        pool: SessionPool,
        reconciler: StateReconciler,
        interval: float = 30.0,
        max_concurrency: int = 10,
        include_disk: bool = False,
    ) -> None:
        self.registry = registry
        self.pool = pool
        self.reconciler = reconciler
        self.interval = interval
        self.max_concurrency = max_concurrency
        self.include_disk = include_disk
        self.last_report: Optional[CycleReport] = None
        self.cycles_skipped = 0
        self._generation = 0
        self._task: Optional[asyncio.Task] = None
        self._cycle_task: Optional[asyncio.Task] = None
        self._in_cycle = False
        self._device_locks: dict[int, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def cycle_in_progress(self) -> bool:
        return self._in_cycle

    @property
    def generation(self) -> int:
        return self._generation

    def start(self) -> bool:
        """Start the tick loop; the first cycle runs immediately.

        Returns False (and changes nothing) if the poller is already running.
        Must be called from a running event loop.
        """
        if self.running:
            logger.debug("start() ignored: poller already running")
            return False
        self._generation += 1
        self._task = asyncio.create_task(self._run(self._generation), name="netpulse-poller")
        logger.info("Monitoring started (interval %.1fs, max %d concurrent polls)", self.interval, self.max_concurrency)
        return True

    async def stop(self) -> None:
        """Cancel the schedule and the running cycle, then close all sessions.

        Safe to call when the poller was never started.
        """
        was_running = self.running
        self._generation += 1
        tasks = [t for t in (self._task, self._cycle_task) if t is not None]
        self._task = None
        self._cycle_task = None
        for task in tasks:
            if not task.done():
                task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        # A cycle cancelled before its first step never reaches its own cleanup.
        self._in_cycle = False
        await self.pool.close_all()
        if was_running:
            logger.info("Monitoring stopped")

    async def _run(self, generation: int) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while generation == self._generation:
            if self._in_cycle:
                self.cycles_skipped += 1
                logger.warning("Previous poll cycle still running; skipping this tick")
            else:
                # Claimed before the task runs so run_cycle() cannot slip in between.
                self._in_cycle = True
                self._cycle_task = asyncio.create_task(self._scheduled_cycle(generation))
            next_tick = max(next_tick + self.interval, loop.time())
            await asyncio.sleep(next_tick - loop.time())

    async def _scheduled_cycle(self, generation: int) -> None:
        try:
            await self._cycle(generation)
        except SchedulerFatal as exc:
            logger.error("Poll cycle aborted: %s (retrying next interval)", exc)
        except Exception:
            logger.exception("Unexpected error in poll cycle (retrying next interval)")

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    async def run_cycle(self) -> Optional[CycleReport]:
        """Run one cycle now. Returns None if a cycle is already in progress.

        Raises SchedulerFatal if the device registry cannot be read.
        """
        if self._in_cycle:
            return None
        self._in_cycle = True
        return await self._cycle(self._generation)

    async def _cycle(self, generation: int) -> CycleReport:
        """Callers set _in_cycle; it is cleared here when the cycle ends."""
        report = CycleReport(started_at=_now_iso())
        try:
            try:
                devices = self.registry.list_monitored()
            except SQLAlchemyError as exc:
                raise SchedulerFatal(f"device registry unavailable: {exc}") from exc
            self._prune_locks({d.id for d in devices})

            semaphore = asyncio.Semaphore(self.max_concurrency)

            async def _bounded(device: Device) -> Optional[str]:
                async with semaphore:
                    return await self.poll_device(device, generation)

            results = await asyncio.gather(*(_bounded(d) for d in devices), return_exceptions=True)
        finally:
            self._in_cycle = False

        report.polled = len(devices)
        for device, result in zip(devices, results):
            if isinstance(result, BaseException):
                report.failed += 1
                logger.error("Poll of %s failed: %s", device.name, result, exc_info=result)
            elif result is None:
                report.discarded += 1
            else:
                report.counts[result] += 1
        report.finished_at = _now_iso()
        self.last_report = report
        logger.info(
            "Poll cycle: %d device(s), %d online, %d warning, %d critical, %d offline",
            report.polled,
            report.counts["online"],
            report.counts["warning"],
            report.counts["critical"],
            report.counts["offline"],
        )
        return report

    async def poll_device(self, device: Device, generation: Optional[int] = None) -> Optional[str]:
        """Query, classify and reconcile one device.

        Returns the status that was persisted, or None if the result was
        discarded. Polls of the same device are serialized.
        """
        if generation is None:
            generation = self._generation
        lock = self._device_locks.setdefault(device.id, asyncio.Lock())
        async with lock:
            try:
                values = await self.pool.query(device)
            except DeviceUnreachable as exc:
                if generation != self._generation:
                    return None
                logger.warning("Device %s (%s) unreachable: %s", device.name, device.ip_address, exc.reason)
                return OFFLINE if self.reconciler.reconcile_unreachable(device, exc.reason) else None

            if generation != self._generation:
                logger.debug("Discarding late result for %s", device.name)
                return None
            snapshot = snapshot_from_values(values, _now_iso())
            status = classify(snapshot, device.thresholds, include_disk=self.include_disk)
            return status if self.reconciler.reconcile(device, status, snapshot) else None

    async def forget_device(self, device_id: int) -> None:
        """Drop a removed or reconfigured device's session and its poll lock."""
        lock = self._device_locks.get(device_id)
        if lock is not None and not lock.locked():
            del self._device_locks[device_id]
        await self.pool.discard(device_id)

    def _prune_locks(self, monitored_ids: set[int]) -> None:
        stale = [i for i, lock in self._device_locks.items() if i not in monitored_ids and not lock.locked()]
        for device_id in stale:
            del self._device_locks[device_id]

    def status(self) -> dict:
        return {
            "running": self.running,
            "interval_seconds": self.interval,
            "max_concurrency": self.max_concurrency,
            "cycle_in_progress": self._in_cycle,
            "cycles_skipped": self.cycles_skipped,
            "sessions": len(self.pool),
            "last_cycle": self.last_report.to_dict() if self.last_report else None,
        }


def create_poller(settings, registry: DeviceStore, tickets, hub) -> Poller:
    """Wire a Poller with its session pool, reconciler and incident ticketer from Settings."""
    from core.incidents import IncidentTicketer
    from core.reconciler import StateReconciler
    from core.snmp import SessionPool

    pool = SessionPool(port=settings.snmp_port, timeout=settings.snmp_timeout, retries=settings.snmp_retries)
    incidents = IncidentTicketer(
        tickets,
        hub,
        requester=settings.system_requester,
        dedup_seconds=settings.incident_dedup_seconds,
    )
    reconciler = StateReconciler(registry, hub, incidents)
    return Poller(
        registry,
        pool,
        reconciler,
        interval=settings.poll_interval_seconds,
        max_concurrency=settings.max_concurrent_polls,
        include_disk=settings.classify_disk,
    )
