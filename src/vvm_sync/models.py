# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Domain objects shared by the sync engine components.

Voicemails are correlated between the local store and the remote mailbox
only through ``source_id`` (the IMAP UID assigned by the provider). Local
rows additionally carry the store's row key in ``id``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

DEFAULT_BASE_RETRY_INTERVAL_MS = 5000

VVM_TYPE_OMTP = "vvm_type_omtp"
VVM_TYPE_CVVM = "vvm_type_cvvm"


class SyncAction(str, Enum):
    """What a sync request asks the orchestrator to do.

    Attributes:
        FULL: Upload local changes, then download remote state.
        UPLOAD_ONLY: Push local read/deleted state to the server.
        DOWNLOAD_ONLY: Reconcile the local store against the server.
        DOWNLOAD_ONE_TRANSCRIPTION: Fetch content for a single message.
    """

    FULL = "full_sync"
    UPLOAD_ONLY = "upload_only"
    DOWNLOAD_ONLY = "download_only"
    DOWNLOAD_ONE_TRANSCRIPTION = "download_one_transcription"

    @property
    def uploads(self) -> bool:
        return self in (SyncAction.FULL, SyncAction.UPLOAD_ONLY)

    @property
    def downloads(self) -> bool:
        return self in (SyncAction.FULL, SyncAction.DOWNLOAD_ONLY)


class SyncStatus(str, Enum):
    """Outcome of one account's sync attempt."""

    SUCCESS = "success"
    FAILED = "failed"
    RETRY_SCHEDULED = "retry_scheduled"
    CONFIG_ERROR = "config_error"
    SKIPPED = "skipped"
    ACTIVATION_REQUESTED = "activation_requested"
    CANCELLED = "cancelled"


class ConfigurationState(str, Enum):
    OK = "ok"
    NOT_CONFIGURED = "not_configured"
    CONFIGURING = "configuring"
    FAILED = "failed"


class DataChannelState(str, Enum):
    OK = "ok"
    NO_CONNECTION = "no_connection"
    NO_CONNECTION_CELLULAR_REQUIRED = "no_connection_cellular_required"
    BAD_CONFIGURATION = "bad_configuration"
    COMMUNICATION_ERROR = "communication_error"


class NotificationChannelState(str, Enum):
    OK = "ok"
    NO_CONNECTION = "no_connection"
    MESSAGE_WAITING = "message_waiting"


@dataclass
class Voicemail:
    """A voicemail, either a local row or a remote summary.

    Attributes:
        source_id: Provider-assigned identifier (IMAP UID).
        timestamp: Sent date in milliseconds since the epoch.
        sender: Caller number, domain part stripped.
        duration: Length in seconds, when known.
        is_read: Whether the message has been listened to.
        is_deleted: Local tombstone awaiting upload.
        transcription: Transcription text, if any.
        uri: Local storage URI, set once the row is inserted.
        has_content: True once the audio payload has been stored locally.
        id: Local row key.
        account_id: Owning account for local rows.
        dirty: Local read state not yet uploaded.
    """

    source_id: str
    timestamp: int = 0
    sender: str | None = None
    duration: int = 0
    is_read: bool = False
    is_deleted: bool = False
    transcription: str | None = None
    uri: str | None = None
    has_content: bool = False
    id: int | None = None
    account_id: str | None = None
    dirty: bool = False
    # Remote structure, filled by MailboxClient.fetch_structure()
    audio_part: str | None = None
    audio_encoding: str | None = None
    transcription_part: str | None = None
    transcription_encoding: str | None = None

    @property
    def has_transcription(self) -> bool:
        """Return True when the remote message carries a transcription part."""
        return self.transcription_part is not None


@dataclass
class Quota:
    """Mailbox occupancy reported by the server, in messages."""

    occupied: int
    total: int


@dataclass
class Account:
    """A visual voicemail source bound to one subscription.

    The retry interval is owned by the account and persisted through the
    account registry; use the accessor methods rather than touching the
    field directly so the base value is respected.
    """

    id: str
    subscription_id: int | None = None
    mailbox_type: str = VVM_TYPE_OMTP
    destination_number: str | None = None
    enabled: bool = True
    activated: bool = False
    imap_user: str | None = None
    imap_password: str | None = None
    server_address: str | None = None
    imap_port: Any = None
    retry_interval: int = DEFAULT_BASE_RETRY_INTERVAL_MS
    base_retry_interval: int = DEFAULT_BASE_RETRY_INTERVAL_MS
    last_full_sync: int | None = None
    configuration_state: ConfigurationState = ConfigurationState.NOT_CONFIGURED
    data_channel_state: DataChannelState = DataChannelState.OK
    notification_channel_state: NotificationChannelState = NotificationChannelState.OK
    quota_occupied: int | None = None
    quota_total: int | None = None

    def get_retry_interval(self) -> int:
        """Return the delay, in milliseconds, for the next deferred retry."""
        return self.retry_interval

    def set_retry_interval(self, interval_ms: int) -> None:
        self.retry_interval = max(self.base_retry_interval, int(interval_ms))

    def reset_retry_interval(self) -> None:
        self.retry_interval = self.base_retry_interval


@dataclass
class SyncRequest:
    """A single sync trigger. Never persisted."""

    action: SyncAction
    account_id: str | None = None
    message: Voicemail | None = None

    @property
    def all_accounts(self) -> bool:
        return self.account_id is None


@dataclass
class SyncResult:
    """What happened to one account during ``SyncOrchestrator.sync()``."""

    account_id: str
    action: SyncAction
    status: SyncStatus
    upload_ok: bool | None = None
    download_ok: bool | None = None
    attempts: int = 0
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == SyncStatus.SUCCESS


__all__ = [
    "Account",
    "ConfigurationState",
    "DataChannelState",
    "DEFAULT_BASE_RETRY_INTERVAL_MS",
    "NotificationChannelState",
    "Quota",
    "SyncAction",
    "SyncRequest",
    "SyncResult",
    "SyncStatus",
    "VVM_TYPE_CVVM",
    "VVM_TYPE_OMTP",
    "Voicemail",
]
