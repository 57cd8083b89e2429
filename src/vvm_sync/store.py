# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Interfaces the orchestrator consumes for local state.

The orchestrator only reads from the local store and issues mutation
commands to it; the store owns the voicemail lifecycle. The SQLite
implementation lives in :mod:`vvm_sync.persistence`.
"""

from __future__ import annotations

from typing import Protocol

from .models import (
    Account,
    ConfigurationState,
    DataChannelState,
    NotificationChannelState,
    Quota,
    Voicemail,
)


class LocalStore(Protocol):
    """Local voicemail store, scoped by account."""

    async def get_read_messages(self, account_id: str) -> list[Voicemail]:
        """Voicemails read locally whose read state is not yet uploaded."""
        ...

    async def get_deleted_messages(self, account_id: str) -> list[Voicemail]:
        """Voicemails tombstoned locally, awaiting remote deletion."""
        ...

    async def get_all_messages(self, account_id: str) -> list[Voicemail]:
        ...

    async def get_message_by_source_id(self, account_id: str, source_id: str) -> Voicemail | None:
        ...

    async def delete_message(self, message_id: int) -> None:
        ...

    async def mark_read(self, message_id: int, read: bool = True) -> None:
        """Set the read state and mark it as in sync with the server."""
        ...

    async def insert_message(self, account_id: str, message: Voicemail) -> str:
        """Insert ``message`` and return its storage URI."""
        ...

    async def insert_if_unique(self, account_id: str, message: Voicemail) -> str | None:
        ...

    async def update_transcription(self, message_id: int, text: str) -> None:
        ...

    async def store_payload(self, message_id: int, content: bytes) -> None:
        ...


class AccountRegistry(Protocol):
    """Registered voicemail sources and their persisted sync state."""

    async def list_accounts(self) -> list[Account]:
        ...

    async def get_account(self, account_id: str) -> Account | None:
        ...

    async def is_enabled(self, account_id: str) -> bool:
        ...

    async def save_retry_interval(self, account: Account) -> None:
        ...

    async def set_last_full_sync(self, account_id: str, timestamp: int) -> None:
        ...

    async def set_status(
        self,
        account_id: str,
        *,
        configuration: ConfigurationState | None = None,
        data_channel: DataChannelState | None = None,
        notification_channel: NotificationChannelState | None = None,
    ) -> None:
        ...

    async def record_quota(self, account_id: str, quota: Quota) -> None:
        ...


__all__ = ["AccountRegistry", "LocalStore"]
