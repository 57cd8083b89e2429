# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Upload/download reconciliation between the local store and the mailbox.

One call to :meth:`SyncOrchestrator.sync` handles one sync request:

1. Resolve the target accounts (one, or every registered account).
2. For each account, under that account's lock: skip disabled accounts,
   hand unactivated ones to the activation call-out.
3. Acquire the network, open the mailbox, run the requested direction(s).
4. On failure, retry in-process with the action narrowed to the direction
   that failed; when the budget is spent, defer to the RetryScheduler.

Upload runs before download within an attempt, so a tombstone is removed
remotely before the download could mistake it for an orphan.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .errors import AccountDisabledError, CarrierConfigError, MailboxConnectionError, MailboxCredentialsError
from .imap import MailboxClient
from .logger import get_logger
from .models import Account, DataChannelState, SyncAction, SyncRequest, SyncResult, SyncStatus, Voicemail
from .network import NetworkAcquirer, NetworkFailure, NetworkHandle
from .retry import DEFAULT_NETWORK_RETRY_COUNT

if TYPE_CHECKING:
    from .carrier import CarrierConfig, CarrierConfigProvider
    from .prometheus import SyncMetrics
    from .retry import RetryScheduler
    from .store import AccountRegistry, LocalStore

DEFAULT_NETWORK_TIMEOUT_SECONDS = 60.0

Activator = Callable[[str], Awaitable[None]]
MailboxFactory = Callable[[Account, NetworkHandle, "CarrierConfig | None"], MailboxClient]

logger = get_logger("orchestrator")


@dataclass
class _AttemptOutcome:
    upload_ok: bool | None = None
    download_ok: bool | None = None

    @property
    def ok(self) -> bool:
        return self.upload_ok is not False and self.download_ok is not False


def _narrow(action: SyncAction, outcome: _AttemptOutcome) -> SyncAction:
    """Action to retry with: only the direction that failed."""
    if action is SyncAction.FULL:
        if outcome.upload_ok and outcome.download_ok is False:
            return SyncAction.DOWNLOAD_ONLY
        if outcome.download_ok and outcome.upload_ok is False:
            return SyncAction.UPLOAD_ONLY
    return action


def _deferred_action(action: SyncAction) -> SyncAction:
    # A deferred retry carries no message; a download covers it
    if action is SyncAction.DOWNLOAD_ONE_TRANSCRIPTION:
        return SyncAction.DOWNLOAD_ONLY
    return action


class SyncOrchestrator:
    """Compose network, mailbox session and local store for one sync request.

    Args:
        store: Local voicemail store.
        accounts: Account registry.
        acquirer: Network acquirer for the mailbox path.
        carrier_configs: Per-account carrier settings; None disables
            prefetch and demands cellular transport.
        scheduler: Deferred retry scheduler.
        activate: Activation call-out for accounts without credentials.
        metrics: Optional Prometheus metrics.
        network_timeout: Seconds to wait for each network request.
        network_retry_count: In-process attempts per account and request.
        folder: Mailbox folder holding voicemails.
        mailbox_factory: Builds the session for an account; defaults to
            :class:`MailboxClient`.
        clock: Returns the current epoch time in seconds.
    """

    def __init__(
        self,
        store: LocalStore,
        accounts: AccountRegistry,
        acquirer: NetworkAcquirer,
        carrier_configs: CarrierConfigProvider | None,
        scheduler: RetryScheduler,
        *,
        activate: Activator | None = None,
        metrics: SyncMetrics | None = None,
        network_timeout: float = DEFAULT_NETWORK_TIMEOUT_SECONDS,
        network_retry_count: int = DEFAULT_NETWORK_RETRY_COUNT,
        folder: str = "INBOX",
        mailbox_factory: MailboxFactory | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._accounts = accounts
        self._acquirer = acquirer
        self._carrier_configs = carrier_configs
        self._scheduler = scheduler
        self._activate = activate
        self._metrics = metrics
        self._network_timeout = network_timeout
        self._network_retry_count = max(1, network_retry_count)
        self._folder = folder
        self._mailbox_factory = mailbox_factory or self._default_mailbox
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._sessions: dict[str, Any] = {}

    def _default_mailbox(
        self, account: Account, handle: NetworkHandle, carrier_config: CarrierConfig | None
    ) -> MailboxClient:
        return MailboxClient(account, handle, folder=self._folder, carrier_config=carrier_config)

    # ----------------------------------------------------------------- sessions
    def open_sessions(self) -> list[str]:
        """Accounts with a mailbox session currently open."""
        return list(self._sessions)

    def _register_session(self, account_id: str, session: Any) -> None:
        if account_id in self._sessions:
            raise RuntimeError(f"Mailbox session already open for account {account_id}")
        self._sessions[account_id] = session

    def _unregister_session(self, account_id: str, session: Any) -> None:
        if self._sessions.get(account_id) is session:
            del self._sessions[account_id]

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = self._locks[account_id] = asyncio.Lock()
        return lock

    # --------------------------------------------------------------------- sync
    async def sync(self, request: SyncRequest) -> list[SyncResult]:
        """Run ``request`` for each target account, one account at a time.

        Never raises: failures are reported in the returned results.
        """
        try:
            if request.all_accounts:
                account_ids = [account.id for account in await self._accounts.list_accounts()]
            else:
                account_ids = [request.account_id]
        except Exception as e:
            logger.exception("Cannot resolve accounts for %s", request.action.value)
            return [SyncResult(request.account_id or "*", request.action, SyncStatus.FAILED, error=str(e))]

        results = []
        for account_id in account_ids:
            try:
                results.append(await self._sync_account(account_id, request))
            except Exception as e:
                logger.exception("Unexpected error syncing %s", account_id)
                if self._metrics:
                    self._metrics.inc_failure(account_id, "unexpected")
                results.append(SyncResult(account_id, request.action, SyncStatus.FAILED, error=str(e)))
        return results

    async def _sync_account(self, account_id: str, request: SyncRequest) -> SyncResult:
        async with self._lock_for(account_id):
            account = await self._accounts.get_account(account_id)
            if account is None or not account.activated:
                if account is not None and not account.enabled:
                    return self._skipped(account_id, request)
                await self._request_activation(account_id)
                return SyncResult(account_id, request.action, SyncStatus.ACTIVATION_REQUESTED)
            if not account.enabled:
                return self._skipped(account_id, request)

            if request.action is SyncAction.DOWNLOAD_ONE_TRANSCRIPTION and (
                request.message is None or not request.message.source_id
            ):
                logger.error("Single message sync for %s without a message", account_id)
                return SyncResult(account_id, request.action, SyncStatus.FAILED, error="no message given")

            return await self._run_attempts(account, request)

    def _skipped(self, account_id: str, request: SyncRequest) -> SyncResult:
        logger.info("Account %s is disabled, skipping %s", account_id, request.action.value)
        return SyncResult(account_id, request.action, SyncStatus.SKIPPED)

    async def _request_activation(self, account_id: str) -> None:
        if self._activate is None:
            logger.warning("Account %s is not activated and no activation handler is set", account_id)
            return
        logger.info("Account %s is not activated, requesting activation", account_id)
        try:
            await self._activate(account_id)
        except Exception:
            logger.exception("Activation request for %s failed", account_id)

    def _carrier_config(self, account: Account) -> CarrierConfig | None:
        if self._carrier_configs is None:
            return None
        try:
            return self._carrier_configs.get(account)
        except CarrierConfigError as e:
            logger.warning("Ignoring carrier config for %s: %s", account.id, e)
            return None

    async def _run_attempts(self, account: Account, request: SyncRequest) -> SyncResult:
        result = SyncResult(account.id, request.action, SyncStatus.FAILED)
        action = request.action
        carrier_config = self._carrier_config(account)
        constraints = NetworkAcquirer.constraints_for(account, carrier_config)

        for _ in range(self._network_retry_count):
            result.attempts += 1
            if self._metrics:
                self._metrics.inc_attempt(account.id, action.value)

            acquired = await self._acquirer.acquire(account, constraints, self._network_timeout)
            if isinstance(acquired, NetworkFailure):
                result.error = f"network {acquired.reason.value}"
                self._count_failure(account, "network")
                await self._set_data_channel(account, DataChannelState.NO_CONNECTION)
                continue

            async with acquired as handle:
                try:
                    outcome = await self._attempt(account, action, request, handle, carrier_config)
                except MailboxCredentialsError as e:
                    logger.error("%s", e)
                    result.error = str(e)
                    result.status = SyncStatus.CONFIG_ERROR
                    self._count_failure(account, "credentials")
                    await self._set_data_channel(account, DataChannelState.BAD_CONFIGURATION)
                    await self._scheduler.schedule(account, _deferred_action(action))
                    return result
                except MailboxConnectionError as e:
                    logger.warning("Mailbox connection failed for %s: %s", account.id, e)
                    result.error = str(e)
                    self._count_failure(account, "connection")
                    await self._set_data_channel(account, DataChannelState.COMMUNICATION_ERROR)
                    continue
                except AccountDisabledError as e:
                    logger.info("%s, stopping", e)
                    result.status = SyncStatus.CANCELLED
                    result.error = str(e)
                    return result

            if outcome.upload_ok is not None:
                result.upload_ok = outcome.upload_ok
            if outcome.download_ok is not None:
                result.download_ok = outcome.download_ok

            if outcome.ok:
                result.status = SyncStatus.SUCCESS
                result.error = None
                await self._set_data_channel(account, DataChannelState.OK)
                await self._scheduler.on_success(account)
                if request.action is SyncAction.FULL:
                    await self._accounts.set_last_full_sync(account.id, int(self._clock()))
                logger.info("Sync %s for %s completed", request.action.value, account.id)
                return result

            result.error = "sync operation failed"
            self._count_failure(account, "protocol")
            await self._set_data_channel(account, DataChannelState.COMMUNICATION_ERROR)
            narrowed = _narrow(action, outcome)
            if narrowed is not action:
                logger.info("Retrying %s only for %s", narrowed.value, account.id)
            action = narrowed

        if not await self._accounts.is_enabled(account.id):
            result.status = SyncStatus.CANCELLED
            return result

        action = _deferred_action(action)
        logger.warning(
            "Sync of %s failed after %d attempts, scheduling %s", account.id, result.attempts, action.value
        )
        await self._scheduler.schedule(account, action)
        result.status = SyncStatus.RETRY_SCHEDULED
        result.details["retry_action"] = action
        return result

    async def _attempt(
        self,
        account: Account,
        action: SyncAction,
        request: SyncRequest,
        handle: NetworkHandle,
        carrier_config: CarrierConfig | None,
    ) -> _AttemptOutcome:
        outcome = _AttemptOutcome()
        prefetch = bool(carrier_config and carrier_config.prefetch_enabled) and not handle.roaming

        session = self._mailbox_factory(account, handle, carrier_config)
        self._register_session(account.id, session)
        try:
            async with session as client:
                if action.uploads:
                    outcome.upload_ok = await self._upload(account, client)
                if action.downloads:
                    outcome.download_ok = await self._download(account, client, prefetch)
                if action is SyncAction.DOWNLOAD_ONE_TRANSCRIPTION:
                    outcome.download_ok = await self._download_one(account, client, request.message, prefetch)
                await self._record_quota(account, client)
        finally:
            self._unregister_session(account.id, session)
        return outcome

    # ------------------------------------------------------------------ helpers
    async def _ensure_enabled(self, account_id: str) -> None:
        if not await self._accounts.is_enabled(account_id):
            raise AccountDisabledError(account_id)

    def _count_failure(self, account: Account, reason: str) -> None:
        if self._metrics:
            self._metrics.inc_failure(account.id, reason)

    def _count_mutation(self, account: Account, kind: str, amount: int = 1) -> None:
        if self._metrics:
            self._metrics.inc_mutation(account.id, kind, amount)

    async def _set_data_channel(self, account: Account, state: DataChannelState) -> None:
        if account.data_channel_state == state:
            return
        account.data_channel_state = state
        try:
            await self._accounts.set_status(account.id, data_channel=state)
        except Exception as e:
            logger.warning("Cannot record status %s for %s: %s", state.value, account.id, e)

    async def _record_quota(self, account: Account, client: MailboxClient) -> None:
        quota = await client.query_quota()
        if quota is None:
            return
        try:
            await self._accounts.record_quota(account.id, quota)
        except Exception as e:
            logger.warning("Cannot record quota for %s: %s", account.id, e)

    # ------------------------------------------------------------------- upload
    async def _upload(self, account: Account, client: MailboxClient) -> bool:
        """Push local tombstones and read state to the server."""
        success = True

        deleted = await self._store.get_deleted_messages(account.id)
        if deleted:
            if await client.mark_messages_as_deleted(deleted):
                for message in deleted:
                    await self._ensure_enabled(account.id)
                    await self._store.delete_message(message.id)
                self._count_mutation(account, "deleted", len(deleted))
            else:
                success = False

        read = await self._store.get_read_messages(account.id)
        if read:
            if await client.mark_messages_as_read(read):
                for message in read:
                    await self._ensure_enabled(account.id)
                    await self._store.mark_read(message.id, True)
                self._count_mutation(account, "updated", len(read))
            else:
                success = False

        return success

    # ----------------------------------------------------------------- download
    async def _download(self, account: Account, client: MailboxClient, prefetch: bool) -> bool:
        """Converge the local store to the server's voicemail set."""
        remote = await client.fetch_all_voicemails()
        if remote is None:
            return False

        local = await self._store.get_all_messages(account.id)
        remote_map = {message.source_id: message for message in remote}
        success = True

        for message in local:
            remote_message = remote_map.pop(message.source_id, None)
            if remote_message is None:
                await self._ensure_enabled(account.id)
                await self._store.delete_message(message.id)
                self._count_mutation(account, "deleted")
                continue

            if remote_message.is_read != message.is_read:
                await self._ensure_enabled(account.id)
                await self._store.mark_read(message.id, remote_message.is_read)
                self._count_mutation(account, "updated")

            if remote_message.has_transcription and not message.transcription:
                if not await self._store_transcription(account, client, remote_message, message.id):
                    success = False

        for remote_message in remote_map.values():
            await self._ensure_enabled(account.id)
            await self._store.insert_message(account.id, remote_message)
            self._count_mutation(account, "inserted")
            if prefetch:
                await self._prefetch(account, client, remote_message)
            if remote_message.has_transcription:
                if not await self._store_transcription(account, client, remote_message, remote_message.id):
                    success = False

        return success

    async def _download_one(
        self, account: Account, client: MailboxClient, message: Voicemail | None, prefetch: bool
    ) -> bool:
        """Fetch content for a single message announced by the notification channel."""
        try:
            structured = await client.lookup_voicemail(message)
        except MailboxConnectionError as e:
            logger.warning("Fetching message %s failed for %s: %s", message.source_id, account.id, e)
            return False
        if structured is None:
            logger.info("Message %s is not a voicemail on the server for %s", message.source_id, account.id)
            return True

        local = await self._store.get_message_by_source_id(account.id, structured.source_id)
        if local is None:
            await self._ensure_enabled(account.id)
            await self._store.insert_message(account.id, structured)
            self._count_mutation(account, "inserted")
            local = structured

        if prefetch and not local.has_content:
            structured.id = local.id
            await self._prefetch(account, client, structured)

        if structured.has_transcription and not local.transcription:
            return await self._store_transcription(account, client, structured, local.id)
        return True

    async def _prefetch(self, account: Account, client: MailboxClient, message: Voicemail) -> None:
        payload = await client.fetch_payload(message)
        if payload is None:
            logger.warning("Prefetch of %s failed for %s", message.source_id, account.id)
            return
        await self._ensure_enabled(account.id)
        await self._store.store_payload(message.id, payload)

    async def _store_transcription(
        self, account: Account, client: MailboxClient, remote_message: Voicemail, message_id: int | None
    ) -> bool:
        text = await client.fetch_transcription(remote_message)
        if text is None:
            logger.warning("Transcription fetch of %s failed for %s", remote_message.source_id, account.id)
            return False
        if text:
            await self._ensure_enabled(account.id)
            await self._store.update_transcription(message_id, text)
            self._count_mutation(account, "updated")
        return True


__all__ = ["DEFAULT_NETWORK_TIMEOUT_SECONDS", "SyncOrchestrator"]
