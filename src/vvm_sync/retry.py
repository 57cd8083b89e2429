# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Deferred retries for accounts whose in-process retry budget ran out.

Each account owns a retry interval. A scheduled retry fires after the
current interval, and scheduling doubles the interval for the next time.
A fully successful attempt resets it to the account's base value.

Example:
    scheduler = RetryScheduler(persistence, service.retry_sync)

    await scheduler.schedule(account, SyncAction.FULL)      # fires in 5s
    await scheduler.schedule(account, SyncAction.FULL)      # supersedes, fires in 10s
    await scheduler.on_success(account)                     # back to 5s
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import TYPE_CHECKING

from .models import Account, SyncAction

if TYPE_CHECKING:
    from .prometheus import SyncMetrics
    from .store import AccountRegistry

DEFAULT_NETWORK_RETRY_COUNT = 6

RetryCallback = Callable[[SyncAction, str], Awaitable[object]]

# A FULL retry supersedes retries of either direction
_SUPERSEDED_BY = {
    SyncAction.FULL: (SyncAction.FULL, SyncAction.UPLOAD_ONLY, SyncAction.DOWNLOAD_ONLY),
}

logger = logging.getLogger(__name__)


def calculate_delay(failures: int, base_ms: int) -> int:
    """Delay in ms of the retry scheduled after ``failures`` consecutive failures."""
    if failures <= 0:
        return 0
    return base_ms * 2 ** (failures - 1)


class RetryScheduler:
    """Schedule backoff-delayed re-invocations of the orchestrator.

    Pending retries are keyed by (account_id, action): scheduling again for
    the same key replaces the pending timer instead of stacking a second one.
    """

    def __init__(
        self,
        registry: AccountRegistry,
        callback: RetryCallback,
        *,
        metrics: SyncMetrics | None = None,
    ):
        self._registry = registry
        self._callback = callback
        self._metrics = metrics
        self._timers: dict[tuple[str, SyncAction], asyncio.TimerHandle] = {}
        self._running: set[asyncio.Task] = set()

    async def schedule(self, account: Account, action: SyncAction) -> float:
        """Schedule ``action`` for ``account`` and grow the account interval.

        Returns:
            The delay in seconds before the retry fires.
        """
        self.cancel(account.id, action)

        interval_ms = account.get_retry_interval()
        delay = interval_ms / 1000.0
        key = (account.id, action)
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(delay, self._fire, key)

        account.set_retry_interval(interval_ms * 2)
        await self._registry.save_retry_interval(account)

        logger.info(
            "Retry of %s for %s scheduled in %.1fs (next interval %dms)",
            action.value, account.id, delay, account.get_retry_interval(),
        )
        if self._metrics:
            self._metrics.inc_retry_scheduled(account.id)
        self._update_gauge()
        return delay

    def _fire(self, key: tuple[str, SyncAction]) -> None:
        self._timers.pop(key, None)
        self._update_gauge()
        account_id, action = key
        logger.debug("Firing deferred %s for %s", action.value, account_id)
        task = asyncio.ensure_future(self._run(action, account_id))
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def _run(self, action: SyncAction, account_id: str) -> None:
        try:
            await self._callback(action, account_id)
        except Exception:
            logger.exception("Deferred %s for %s failed", action.value, account_id)

    async def on_success(self, account: Account) -> None:
        """Reset the account interval after a fully successful attempt."""
        if account.get_retry_interval() == account.base_retry_interval:
            return
        account.reset_retry_interval()
        await self._registry.save_retry_interval(account)

    async def reset_for_first_attempt(self, accounts: Iterable[Account]) -> None:
        """An explicit request starts the backoff sequence over."""
        for account in accounts:
            await self.on_success(account)

    def cancel(self, account_id: str, action: SyncAction | None = None) -> int:
        """Cancel pending retries of ``account_id``.

        Cancelling FULL also cancels pending upload-only and download-only
        retries; ``action=None`` cancels every pending retry of the account.

        Returns:
            Number of timers cancelled.
        """
        if action is None:
            actions: tuple[SyncAction, ...] = tuple(SyncAction)
        else:
            actions = _SUPERSEDED_BY.get(action, (action,))

        cancelled = 0
        for candidate in actions:
            timer = self._timers.pop((account_id, candidate), None)
            if timer is not None:
                timer.cancel()
                cancelled += 1
        if cancelled:
            logger.debug("Cancelled %d pending retries for %s", cancelled, account_id)
            self._update_gauge()
        return cancelled

    def cancel_all_retries(self, account_id: str) -> int:
        return self.cancel(account_id)

    def pending(self) -> list[tuple[str, SyncAction]]:
        """Pending (account_id, action) pairs."""
        return sorted(self._timers, key=lambda key: (key[0], key[1].value))

    def is_pending(self, account_id: str, action: SyncAction) -> bool:
        return (account_id, action) in self._timers

    async def close(self) -> None:
        """Cancel every timer and wait for retries already running."""
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._update_gauge()
        if self._running:
            for task in list(self._running):
                task.cancel()
            await asyncio.gather(*self._running, return_exceptions=True)
            self._running.clear()

    def _update_gauge(self) -> None:
        if self._metrics:
            self._metrics.set_pending_retries(len(self._timers))


__all__ = ["DEFAULT_NETWORK_RETRY_COUNT", "RetryScheduler", "calculate_delay"]
