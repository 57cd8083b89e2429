# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exception hierarchy for the voicemail sync engine.

Only the mailbox session opening and the configuration loaders raise these
to their callers. Everything below ``SyncOrchestrator.sync()`` converts them
into typed results before they reach the scheduling surface.
"""

from __future__ import annotations


class VvmSyncError(Exception):
    """Base class for all sync engine errors."""

    code = "vvm_sync_error"


class MailboxCredentialsError(VvmSyncError):
    """Raised when mailbox credentials are missing or malformed.

    Fatal for the current attempt: retrying in-process cannot help until the
    account is reconfigured.
    """

    code = "bad_configuration"

    def __init__(self, account_id: str, missing: list[str] | None = None, detail: str | None = None):
        self.account_id = account_id
        self.missing = missing or []
        if detail is None:
            detail = f"missing {', '.join(self.missing)}" if self.missing else "invalid credentials"
        super().__init__(f"Cannot open mailbox for account {account_id}: {detail}")


class MailboxConnectionError(VvmSyncError):
    """Raised when the IMAP server cannot be reached or rejects the login."""

    code = "connection_failed"


class AccountDisabledError(VvmSyncError):
    """Raised internally when an account is disabled in the middle of a sync."""

    code = "account_disabled"

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account {account_id} was disabled during sync")


class CarrierConfigError(VvmSyncError, ValueError):
    """Raised when a carrier configuration bundle holds invalid values."""

    code = "invalid_carrier_config"


__all__ = [
    "AccountDisabledError",
    "CarrierConfigError",
    "MailboxConnectionError",
    "MailboxCredentialsError",
    "VvmSyncError",
]
