# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Turn external events into sync requests.

The notification side channel (SMS), service state changes and carrier
configuration changes arrive here already parsed. Each handler updates
account state and, where needed, submits a background sync through
:class:`~vvm_sync.service.VoicemailSyncService`.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from enum import Enum
from typing import Any

from pydantic import ValidationError

from .errors import CarrierConfigError
from .logger import get_logger
from .models import (
    ConfigurationState,
    DataChannelState,
    NotificationChannelState,
    SyncAction,
    Voicemail,
)
from .schemas import MailboxCredentials
from .service import VoicemailSyncService

logger = get_logger("triggers")


class MailboxEvent(str, Enum):
    """Sync trigger events carried by the notification channel."""

    NEW_MESSAGE = "NM"
    MAILBOX_UPDATE = "MBU"
    GREETINGS_UPDATE = "GU"


class SyncTriggers:
    """Handlers for the events that start a sync."""

    def __init__(
        self,
        service: VoicemailSyncService,
        *,
        is_package_installed: Callable[[str], bool] | None = None,
    ):
        self.service = service
        self._is_package_installed = is_package_installed or (lambda name: False)

    @property
    def _persistence(self):
        return self.service.persistence

    async def on_service_state_changed(self, account_id: str, in_service: bool) -> asyncio.Task | None:
        """Record connectivity; run a full sync when the service comes back."""
        account = await self._persistence.get_account(account_id)
        if account is None:
            logger.debug("Service state change for unknown account %s", account_id)
            return None

        if not in_service:
            await self._persistence.set_status(
                account_id,
                configuration=ConfigurationState.OK,
                data_channel=DataChannelState.NO_CONNECTION,
                notification_channel=NotificationChannelState.NO_CONNECTION,
            )
            return None

        if account.notification_channel_state == NotificationChannelState.OK:
            return None

        await self._persistence.set_status(
            account_id,
            configuration=ConfigurationState.OK,
            data_channel=DataChannelState.OK,
            notification_channel=NotificationChannelState.OK,
        )
        # Something may have been missed while the signal was down
        return self.service.submit_sync(SyncAction.FULL, account_id)

    async def on_mailbox_event(self, account_id: str, event: MailboxEvent | str, **data: Any) -> asyncio.Task | None:
        """Handle a sync message from the notification channel.

        For ``NEW_MESSAGE`` the keyword data describes the voicemail:
        ``source_id``, ``timestamp`` (ms), ``sender``, ``duration`` and
        ``content_ready`` (fetch transcription and payload right away).
        """
        if not await self._persistence.is_enabled(account_id):
            logger.debug("Received mailbox event for disabled account %s", account_id)
            return None

        try:
            event = MailboxEvent(event)
        except ValueError:
            logger.error("Unrecognized sync trigger event: %s", event)
            return None

        match event:
            case MailboxEvent.NEW_MESSAGE:
                source_id = str(data.get("source_id") or "")
                if not source_id:
                    logger.error("New message event without id for %s", account_id)
                    return None
                voicemail = Voicemail(
                    source_id=source_id,
                    timestamp=int(data.get("timestamp") or 0),
                    sender=data.get("sender"),
                    duration=int(data.get("duration") or 0),
                )
                uri = await self._persistence.insert_if_unique(account_id, voicemail)
                if uri:
                    logger.info("Inserted new voicemail %s for %s", source_id, account_id)
                if data.get("content_ready"):
                    return self.service.submit_sync(
                        SyncAction.DOWNLOAD_ONE_TRANSCRIPTION, account_id, Voicemail(source_id=source_id)
                    )
                return None
            case MailboxEvent.MAILBOX_UPDATE:
                return self.service.submit_sync(SyncAction.DOWNLOAD_ONLY, account_id)
            case MailboxEvent.GREETINGS_UPDATE:
                logger.debug("Greetings update for %s ignored", account_id)
                return None

    async def on_status_update(self, account_id: str, credentials: Mapping[str, Any]) -> asyncio.Task | None:
        """Store provisioned credentials and start the first full sync."""
        account = await self._persistence.get_account(account_id)
        if account is None:
            logger.warning("Status message for unknown account %s", account_id)
            return None
        try:
            parsed = MailboxCredentials.model_validate(dict(credentials))
        except ValidationError as e:
            logger.error("Invalid status message for %s: %s", account_id, e)
            return None

        await self._persistence.set_status(
            account_id,
            configuration=ConfigurationState.OK,
            data_channel=DataChannelState.OK,
            notification_channel=NotificationChannelState.OK,
        )
        await self._persistence.set_credentials(account_id, **parsed.model_dump())
        await self._persistence.set_activated(account_id, True)
        return self.service.submit_sync(SyncAction.FULL, account_id)

    async def on_carrier_config_changed(
        self, account_id: str, bundle: Mapping[str, Any] | None = None
    ) -> bool:
        """Re-evaluate an account after its carrier configuration changed.

        Returns:
            True when activation was requested.
        """
        configs = self.service.carrier_configs
        if bundle is not None:
            configs.set_bundle(account_id, bundle)

        account = await self._persistence.get_account(account_id)
        try:
            if account is not None:
                config = configs.get(account)
            else:
                config = configs.resolve(account_id)
        except CarrierConfigError as e:
            logger.debug("Carrier config for %s is invalid: %s", account_id, e)
            return False

        if not config.is_valid:
            logger.debug("Visual voicemail not supported by carrier for %s", account_id)
            return False

        if account is None:
            enabled = config.is_enabled_by_default(self._is_package_installed)
            await self._persistence.add_account(
                {
                    "id": account_id,
                    "mailbox_type": config.vvm_type,
                    "destination_number": config.destination_number,
                    "enabled": enabled,
                    "base_retry_interval": self.service.config.base_retry_interval_ms,
                }
            )
        else:
            enabled = account.enabled

        if not enabled:
            cancelled = self.service.cancel_all_retries(account_id)
            logger.info("Carrier config changed for disabled account %s (%d retries cancelled)", account_id, cancelled)
            return False

        logger.info("Carrier config changed: requesting activation for %s", account_id)
        await self.service.activate(account_id)
        return True


__all__ = ["MailboxEvent", "SyncTriggers"]
