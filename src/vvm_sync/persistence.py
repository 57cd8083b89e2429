# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite backed persistence used by the sync engine.

One :class:`Persistence` instance implements both the local voicemail store
and the account registry consumed by the orchestrator.

Example:
    db = Persistence("/data/vvm_sync.db")
    await db.init_db()

    await db.add_account({"id": "sub-1", "subscription_id": 1, "activated": True})
    uri = await db.insert_message("sub-1", Voicemail(source_id="42"))
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import asdict
from typing import Any

import aiosqlite

from .models import (
    DEFAULT_BASE_RETRY_INTERVAL_MS,
    Account,
    ConfigurationState,
    DataChannelState,
    NotificationChannelState,
    Quota,
    Voicemail,
)

VOICEMAIL_URI_PREFIX = "voicemail://"

_VOICEMAIL_COLUMNS = (
    "id, account_id, source_id, timestamp, sender, duration, is_read, is_deleted, "
    "dirty, transcription, has_content, uri"
)

_ACCOUNT_COLUMNS = (
    "id",
    "subscription_id",
    "mailbox_type",
    "destination_number",
    "enabled",
    "activated",
    "imap_user",
    "imap_password",
    "server_address",
    "imap_port",
    "retry_interval",
    "base_retry_interval",
    "last_full_sync",
    "configuration_state",
    "data_channel_state",
    "notification_channel_state",
    "quota_occupied",
    "quota_total",
)


def _row_to_voicemail(row: Mapping[str, Any]) -> Voicemail:
    return Voicemail(
        id=row["id"],
        account_id=row["account_id"],
        source_id=row["source_id"],
        timestamp=row["timestamp"] or 0,
        sender=row["sender"],
        duration=row["duration"] or 0,
        is_read=bool(row["is_read"]),
        is_deleted=bool(row["is_deleted"]),
        dirty=bool(row["dirty"]),
        transcription=row["transcription"],
        has_content=bool(row["has_content"]),
        uri=row["uri"],
    )


def _row_to_account(row: Mapping[str, Any]) -> Account:
    data = dict(row)
    data["enabled"] = bool(data["enabled"])
    data["activated"] = bool(data["activated"])
    data["configuration_state"] = ConfigurationState(data["configuration_state"] or ConfigurationState.NOT_CONFIGURED)
    data["data_channel_state"] = DataChannelState(data["data_channel_state"] or DataChannelState.OK)
    data["notification_channel_state"] = NotificationChannelState(
        data["notification_channel_state"] or NotificationChannelState.OK
    )
    if data["base_retry_interval"] is None:
        data["base_retry_interval"] = DEFAULT_BASE_RETRY_INTERVAL_MS
    if data["retry_interval"] is None:
        data["retry_interval"] = data["base_retry_interval"]
    return Account(**data)


class Persistence:
    """Helper class responsible for reading and writing engine state."""

    def __init__(self, db_path: str = "/data/vvm_sync.db"):
        """Persist data to the given database path."""
        self.db_path = db_path or ":memory:"

    async def init_db(self) -> None:
        """Create the database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                    id TEXT PRIMARY KEY,
                    subscription_id INTEGER,
                    mailbox_type TEXT,
                    destination_number TEXT,
                    enabled INTEGER DEFAULT 1,
                    activated INTEGER DEFAULT 0,
                    imap_user TEXT,
                    imap_password TEXT,
                    server_address TEXT,
                    imap_port TEXT,
                    retry_interval INTEGER,
                    base_retry_interval INTEGER,
                    last_full_sync INTEGER,
                    configuration_state TEXT,
                    data_channel_state TEXT,
                    notification_channel_state TEXT,
                    quota_occupied INTEGER,
                    quota_total INTEGER,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS voicemails (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id TEXT NOT NULL,
                    source_id TEXT NOT NULL,
                    timestamp INTEGER,
                    sender TEXT,
                    duration INTEGER DEFAULT 0,
                    is_read INTEGER DEFAULT 0,
                    is_deleted INTEGER DEFAULT 0,
                    dirty INTEGER DEFAULT 0,
                    transcription TEXT,
                    has_content INTEGER DEFAULT 0,
                    content BLOB,
                    uri TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE (account_id, source_id)
                )
                """
            )

            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_voicemails_account ON voicemails(account_id)"
            )

            await db.commit()

    # Accounts -----------------------------------------------------------------
    async def add_account(self, acc: Mapping[str, Any] | Account) -> None:
        """Insert or overwrite an account definition."""
        data = asdict(acc) if isinstance(acc, Account) else dict(acc)
        base = int(data.get("base_retry_interval") or DEFAULT_BASE_RETRY_INTERVAL_MS)
        values = {
            "id": data["id"],
            "subscription_id": data.get("subscription_id"),
            "mailbox_type": data.get("mailbox_type"),
            "destination_number": data.get("destination_number"),
            "enabled": 0 if data.get("enabled") is False else 1,
            "activated": 1 if data.get("activated") else 0,
            "imap_user": data.get("imap_user"),
            "imap_password": data.get("imap_password"),
            "server_address": data.get("server_address"),
            "imap_port": None if data.get("imap_port") is None else str(data["imap_port"]),
            "retry_interval": int(data.get("retry_interval") or base),
            "base_retry_interval": base,
            "last_full_sync": data.get("last_full_sync"),
            "configuration_state": _enum_value(data.get("configuration_state")),
            "data_channel_state": _enum_value(data.get("data_channel_state")),
            "notification_channel_state": _enum_value(data.get("notification_channel_state")),
            "quota_occupied": data.get("quota_occupied"),
            "quota_total": data.get("quota_total"),
        }
        placeholders = ", ".join("?" for _ in _ACCOUNT_COLUMNS)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                f"INSERT OR REPLACE INTO accounts ({', '.join(_ACCOUNT_COLUMNS)}) VALUES ({placeholders})",
                tuple(values[c] for c in _ACCOUNT_COLUMNS),
            )
            await db.commit()

    async def list_accounts(self) -> list[Account]:
        """Return all registered accounts."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"SELECT {', '.join(_ACCOUNT_COLUMNS)} FROM accounts ORDER BY id"
            ) as cur:
                rows = await cur.fetchall()
        return [_row_to_account(row) for row in rows]

    async def get_account(self, account_id: str) -> Account | None:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"SELECT {', '.join(_ACCOUNT_COLUMNS)} FROM accounts WHERE id = ?", (account_id,)
            ) as cur:
                row = await cur.fetchone()
        return _row_to_account(row) if row else None

    async def delete_account(self, account_id: str) -> None:
        """Remove an account together with its voicemails."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM voicemails WHERE account_id = ?", (account_id,))
            await db.execute("DELETE FROM accounts WHERE id = ?", (account_id,))
            await db.commit()

    async def is_enabled(self, account_id: str) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT enabled FROM accounts WHERE id = ?", (account_id,)) as cur:
                row = await cur.fetchone()
        return bool(row and row[0])

    async def _update_account(self, account_id: str, values: Mapping[str, Any]) -> None:
        if not values:
            return
        assignments = ", ".join(f"{column} = ?" for column in values)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                f"UPDATE accounts SET {assignments} WHERE id = ?",
                (*values.values(), account_id),
            )
            await db.commit()

    async def set_enabled(self, account_id: str, enabled: bool) -> None:
        await self._update_account(account_id, {"enabled": 1 if enabled else 0})

    async def set_activated(self, account_id: str, activated: bool) -> None:
        await self._update_account(account_id, {"activated": 1 if activated else 0})

    async def set_credentials(
        self,
        account_id: str,
        *,
        imap_user: str | None,
        imap_password: str | None,
        server_address: str | None,
        imap_port: Any,
    ) -> None:
        """Store the mailbox credentials delivered by the activation status message."""
        await self._update_account(
            account_id,
            {
                "imap_user": imap_user,
                "imap_password": imap_password,
                "server_address": server_address,
                "imap_port": None if imap_port is None else str(imap_port),
            },
        )

    async def save_retry_interval(self, account: Account) -> None:
        await self._update_account(
            account.id,
            {"retry_interval": account.retry_interval, "base_retry_interval": account.base_retry_interval},
        )

    async def set_last_full_sync(self, account_id: str, timestamp: int) -> None:
        await self._update_account(account_id, {"last_full_sync": int(timestamp)})

    async def set_status(
        self,
        account_id: str,
        *,
        configuration: ConfigurationState | None = None,
        data_channel: DataChannelState | None = None,
        notification_channel: NotificationChannelState | None = None,
    ) -> None:
        values: dict[str, Any] = {}
        if configuration is not None:
            values["configuration_state"] = configuration.value
        if data_channel is not None:
            values["data_channel_state"] = data_channel.value
        if notification_channel is not None:
            values["notification_channel_state"] = notification_channel.value
        await self._update_account(account_id, values)

    async def record_quota(self, account_id: str, quota: Quota) -> None:
        await self._update_account(account_id, {"quota_occupied": quota.occupied, "quota_total": quota.total})

    # Voicemails ---------------------------------------------------------------
    async def _select_voicemails(self, where: str, params: tuple[Any, ...]) -> list[Voicemail]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"SELECT {_VOICEMAIL_COLUMNS} FROM voicemails WHERE {where} ORDER BY timestamp, id", params
            ) as cur:
                rows = await cur.fetchall()
        return [_row_to_voicemail(row) for row in rows]

    async def get_read_messages(self, account_id: str) -> list[Voicemail]:
        return await self._select_voicemails(
            "account_id = ? AND is_read = 1 AND dirty = 1 AND is_deleted = 0", (account_id,)
        )

    async def get_deleted_messages(self, account_id: str) -> list[Voicemail]:
        return await self._select_voicemails("account_id = ? AND is_deleted = 1", (account_id,))

    async def get_all_messages(self, account_id: str) -> list[Voicemail]:
        return await self._select_voicemails("account_id = ?", (account_id,))

    async def get_message_by_source_id(self, account_id: str, source_id: str) -> Voicemail | None:
        rows = await self._select_voicemails("account_id = ? AND source_id = ?", (account_id, source_id))
        return rows[0] if rows else None

    async def get_payload(self, message_id: int) -> bytes | None:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT content FROM voicemails WHERE id = ?", (message_id,)) as cur:
                row = await cur.fetchone()
        return row[0] if row else None

    async def delete_message(self, message_id: int) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM voicemails WHERE id = ?", (message_id,))
            await db.commit()

    async def _update_voicemail(self, message_id: int, values: Mapping[str, Any]) -> None:
        assignments = ", ".join(f"{column} = ?" for column in values)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                f"UPDATE voicemails SET {assignments} WHERE id = ?",
                (*values.values(), message_id),
            )
            await db.commit()

    async def mark_read(self, message_id: int, read: bool = True) -> None:
        await self._update_voicemail(message_id, {"is_read": 1 if read else 0, "dirty": 0})

    async def update_transcription(self, message_id: int, text: str) -> None:
        await self._update_voicemail(message_id, {"transcription": text})

    async def store_payload(self, message_id: int, content: bytes) -> None:
        await self._update_voicemail(message_id, {"content": content, "has_content": 1})

    async def record_user_read(self, message_id: int) -> None:
        """The user listened to a voicemail; the read state awaits upload."""
        await self._update_voicemail(message_id, {"is_read": 1, "dirty": 1})

    async def record_user_delete(self, message_id: int) -> None:
        """The user deleted a voicemail; the tombstone awaits upload."""
        await self._update_voicemail(message_id, {"is_deleted": 1, "dirty": 1})

    async def insert_message(self, account_id: str, message: Voicemail) -> str:
        """Insert ``message`` for ``account_id`` and return its URI.

        ``message`` is updated in place with its row id and URI.
        """
        if not message.source_id:
            raise ValueError("Cannot insert a voicemail without source_id")
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO voicemails
                (account_id, source_id, timestamp, sender, duration, is_read, is_deleted, dirty, transcription)
                VALUES (?, ?, ?, ?, ?, ?, 0, 0, ?)
                """,
                (
                    account_id,
                    message.source_id,
                    int(message.timestamp or time.time() * 1000),
                    message.sender,
                    int(message.duration or 0),
                    1 if message.is_read else 0,
                    message.transcription,
                ),
            )
            row_id = cursor.lastrowid
            uri = f"{VOICEMAIL_URI_PREFIX}{account_id}/{row_id}"
            await db.execute("UPDATE voicemails SET uri = ? WHERE id = ?", (uri, row_id))
            await db.commit()

        message.id = row_id
        message.account_id = account_id
        message.uri = uri
        return uri

    async def insert_if_unique(self, account_id: str, message: Voicemail) -> str | None:
        """Insert unless a voicemail with the same source_id already exists."""
        if await self.get_message_by_source_id(account_id, message.source_id) is not None:
            return None
        try:
            return await self.insert_message(account_id, message)
        except aiosqlite.IntegrityError:
            return None


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


__all__ = ["Persistence", "VOICEMAIL_URI_PREFIX"]
