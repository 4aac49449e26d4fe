"""Background maintenance scheduling.

Users whose memories changed are marked dirty; a periodic ticker runs the
forgetting pass for each of them, and consolidation every few ticks. Runs for
one user never overlap: a request that finds the user's lock held is skipped.
Different users are maintained in parallel.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from .config import SchedulerConfig
from .consolidation import MemoryConsolidator
from .ephemeral import ConversationBuffer
from .forgetting import DecayEngine
from .interfaces import Clock, MemoryStore, SystemClock
from .models import ConsolidationReport, MaintenanceReport

T = TypeVar("T")


class MaintenanceScheduler:
    """Runs memory maintenance out of band with a per-user lock."""

    def __init__(
        self,
        engine: DecayEngine,
        consolidator: MemoryConsolidator | None = None,
        store: MemoryStore | None = None,
        buffer: ConversationBuffer | None = None,
        config: SchedulerConfig | None = None,
        clock: Clock | None = None,
    ):
        self._engine = engine
        self._consolidator = consolidator
        self._store = store
        self._buffer = buffer
        self._config = config or SchedulerConfig()
        self._clock = clock or SystemClock()
        self._locks: dict[str, asyncio.Lock] = {}
        self._dirty: set[str] = set()
        self._ticks = 0
        self._task: asyncio.Task | None = None

    def _get_lock(self, user_id: str) -> asyncio.Lock:
        if user_id not in self._locks:
            self._locks[user_id] = asyncio.Lock()
        return self._locks[user_id]

    def is_running(self, user_id: str) -> bool:
        lock = self._locks.get(user_id)
        return lock is not None and lock.locked()

    def mark_dirty(self, user_id: str) -> None:
        self._dirty.add(user_id)

    @property
    def pending(self) -> set[str]:
        return set(self._dirty)

    async def _exclusive(
        self, user_id: str, job: Callable[[], Awaitable[T]]
    ) -> T | None:
        """Run ``job`` under the user's lock; None if the lock is held."""
        lock = self._get_lock(user_id)
        if lock.locked():
            logger.debug(f"Maintenance for {user_id} already running, skipped")
            return None
        try:
            async with lock:
                return await job()
        finally:
            # Nobody waits on these locks, so a released one can go
            if self._locks.get(user_id) is lock and not lock.locked():
                del self._locks[user_id]

    async def run_now(
        self, user_id: str, consolidate: bool = False
    ) -> MaintenanceReport | None:
        """Maintain ``user_id`` immediately.

        Returns None without doing anything if a run for this user is
        already in progress.
        """

        async def job() -> MaintenanceReport:
            self._dirty.discard(user_id)
            report = await self._engine.run(user_id)
            if consolidate and self._consolidator is not None:
                await self._consolidator.consolidate(user_id)
            return report

        return await self._exclusive(user_id, job)

    async def consolidate_now(self, user_id: str) -> ConsolidationReport | None:
        if self._consolidator is None:
            return None
        return await self._exclusive(
            user_id, lambda: self._consolidator.consolidate(user_id)
        )

    async def _all_owners(self) -> set[str]:
        if self._store is None:
            return set()
        try:
            return set(await self._store.list_owners())
        except Exception as e:
            logger.error(f"Failed to list memory owners: {e}")
            return set()

    async def tick(self) -> dict[str, Any]:
        """One scheduler cycle over all dirty users.

        Every ``sweep_every`` ticks idle owners are maintained too, so
        time-driven decay reaches users who stopped chatting.
        """
        self._ticks += 1
        consolidate = self._ticks % max(1, self._config.consolidation_every) == 0
        sweep = (
            self._config.sweep_every > 0
            and self._ticks % self._config.sweep_every == 0
        )
        candidates = set(self._dirty)
        if sweep:
            candidates |= await self._all_owners()
        users = sorted(candidates)

        results = await asyncio.gather(
            *(self.run_now(user_id, consolidate=consolidate) for user_id in users),
            return_exceptions=True,
        )
        failed = 0
        for user_id, result in zip(users, results):
            if isinstance(result, Exception):
                failed += 1
                logger.error(f"Maintenance for {user_id} failed: {result}")

        expired = self._buffer.sweep() if self._buffer is not None else 0
        purged = 0
        if self._store is not None:
            try:
                purged = await self._store.purge_expired(self._clock.now())
            except Exception as e:
                logger.error(f"Expired memory purge failed: {e}")

        summary = {
            "tick": self._ticks,
            "users": len(users),
            "failed": failed,
            "consolidated": consolidate,
            "swept": sweep,
            "expired_conversations": expired,
            "purged": purged,
        }
        if users:
            logger.info(f"Maintenance tick: {summary}")
        return summary

    def start(self) -> None:
        if not self._config.enabled:
            logger.info("Maintenance scheduler disabled")
            return
        if self._task is not None and not self._task.done():
            logger.warning("Maintenance scheduler is already running")
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(
            f"Maintenance scheduler started (interval: {self._config.interval_seconds}s)"
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Maintenance scheduler stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._config.interval_seconds)
                await self.tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Maintenance scheduler error: {e}")
