# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Scheduling surface of the sync engine.

:class:`VoicemailSyncService` wires persistence, network acquisition,
carrier configuration, the retry scheduler and the orchestrator together.
Its single entry point is :meth:`VoicemailSyncService.request_sync`, which
takes an action, an optional account (None targets every account) and an
optional message.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from .carrier import CarrierConfigProvider
from .config_loader import SyncConfig
from .logger import get_logger
from .models import ConfigurationState, SyncAction, SyncRequest, SyncResult, Voicemail
from .network import DirectNetworkProvider, NetworkAcquirer, NetworkProvider
from .orchestrator import MailboxFactory, SyncOrchestrator
from .persistence import Persistence
from .prometheus import SyncMetrics
from .retry import RetryScheduler
from .schemas import AccountCreate


class VoicemailSyncService:
    """Accept sync requests and run them through the orchestrator."""

    def __init__(
        self,
        *,
        config: SyncConfig | None = None,
        db_path: str | None = None,
        network_provider: NetworkProvider | None = None,
        carrier_configs: CarrierConfigProvider | None = None,
        activation_handler: Callable[[str], Awaitable[None]] | None = None,
        mailbox_factory: MailboxFactory | None = None,
        metrics: SyncMetrics | None = None,
        logger=None,
    ):
        """Prepare the runtime collaborators.

        Args:
            config: Engine settings; defaults apply when omitted.
            db_path: Overrides ``config.db_path``.
            network_provider: Platform network reservation; the default
                route is used when omitted.
            carrier_configs: Carrier settings per account.
            activation_handler: Sends the activation request for an account
                (the SMS side of provisioning).
            mailbox_factory: Builds mailbox sessions; used by tests.
            metrics: Prometheus metrics wrapper.
            logger: Logger to use instead of the package logger.
        """
        self.config = config or SyncConfig()
        self.logger = logger or get_logger()
        self.persistence = Persistence(db_path or self.config.db_path)
        self.metrics = metrics or SyncMetrics()
        self.carrier_configs = carrier_configs or CarrierConfigProvider()
        self.acquirer = NetworkAcquirer(network_provider or DirectNetworkProvider(), self.metrics)
        self.scheduler = RetryScheduler(self.persistence, self._retry_sync, metrics=self.metrics)
        self.orchestrator = SyncOrchestrator(
            self.persistence,
            self.persistence,
            self.acquirer,
            self.carrier_configs,
            self.scheduler,
            activate=self.activate,
            metrics=self.metrics,
            network_timeout=self.config.network_timeout_seconds,
            network_retry_count=self.config.network_retry_count,
            folder=self.config.imap_folder,
            mailbox_factory=mailbox_factory,
        )
        self._activation_handler = activation_handler
        self._tasks: set[asyncio.Task] = set()
        self._started = False

    # ----------------------------------------------------------------- lifecycle
    async def init(self) -> None:
        """Initialise persistence."""
        await self.persistence.init_db()

    async def start(self) -> None:
        self.logger.debug("Starting VoicemailSyncService...")
        await self.init()
        self._started = True

    async def stop(self) -> None:
        """Cancel deferred retries and wait for submitted syncs to finish."""
        self._started = False
        await self.scheduler.close()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks.clear()

    async def __aenter__(self) -> VoicemailSyncService:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # ----------------------------------------------------------------- requests
    async def request_sync(
        self,
        action: SyncAction,
        account_id: str | None = None,
        message: Voicemail | None = None,
        first_attempt: bool = True,
    ) -> list[SyncResult]:
        """Run a sync and return one result per target account.

        An explicit request (``first_attempt``) supersedes pending deferred
        retries of the same action for the target accounts and restarts
        their backoff from the base interval.
        """
        action = SyncAction(action)
        if first_attempt:
            if account_id is None:
                accounts = await self.persistence.list_accounts()
            else:
                account = await self.persistence.get_account(account_id)
                accounts = [account] if account else []
            for account in accounts:
                self.scheduler.cancel(account.id, action)
            await self.scheduler.reset_for_first_attempt(accounts)

        self.logger.debug("Sync requested: %s for %s", action.value, account_id or "all accounts")
        results = await self.orchestrator.sync(SyncRequest(action, account_id, message))
        for result in results:
            self.logger.info(
                "Sync %s for %s: %s after %d attempt(s)",
                action.value, result.account_id, result.status.value, result.attempts,
            )
        return results

    def submit_sync(
        self,
        action: SyncAction,
        account_id: str | None = None,
        message: Voicemail | None = None,
    ) -> asyncio.Task:
        """Run :meth:`request_sync` in the background."""
        task = asyncio.create_task(
            self.request_sync(action, account_id, message),
            name=f"vvm-sync-{SyncAction(action).value}-{account_id or 'all'}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _retry_sync(self, action: SyncAction, account_id: str) -> None:
        await self.request_sync(action, account_id, first_attempt=False)

    def cancel_all_retries(self, account_id: str) -> int:
        return self.scheduler.cancel_all_retries(account_id)

    async def activate(self, account_id: str) -> None:
        """Ask the provisioning side to activate ``account_id``."""
        account = await self.persistence.get_account(account_id)
        if account is not None:
            await self.persistence.set_status(account_id, configuration=ConfigurationState.CONFIGURING)
        if self._activation_handler is None:
            self.logger.warning("No activation handler configured, %s stays unactivated", account_id)
            return
        await self._activation_handler(account_id)

    # --------------------------------------------------------------- accounts
    async def add_account(self, payload: dict[str, Any]) -> AccountCreate:
        """Validate and register an account. Raises pydantic ValidationError."""
        account = AccountCreate.model_validate(payload)
        data = account.model_dump(exclude_none=True)
        data.setdefault("base_retry_interval", self.config.base_retry_interval_ms)
        await self.persistence.add_account(data)
        return account

    async def list_accounts(self) -> list[dict[str, Any]]:
        accounts = await self.persistence.list_accounts()
        return [
            {
                "id": account.id,
                "subscription_id": account.subscription_id,
                "mailbox_type": account.mailbox_type,
                "enabled": account.enabled,
                "activated": account.activated,
                "server_address": account.server_address,
                "retry_interval": account.retry_interval,
                "last_full_sync": account.last_full_sync,
                "configuration_state": account.configuration_state.value,
                "data_channel_state": account.data_channel_state.value,
                "notification_channel_state": account.notification_channel_state.value,
                "quota_occupied": account.quota_occupied,
                "quota_total": account.quota_total,
            }
            for account in accounts
        ]


__all__ = ["VoicemailSyncService"]
