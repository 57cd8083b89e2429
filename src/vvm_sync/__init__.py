# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Visual voicemail mailbox synchronization engine.

Reconciles a local voicemail store with an IMAP mailbox that is reachable
only over an on-demand, carrier-specific network:

- Network acquisition collapsed into one awaited, typed outcome
- Upload of local read/deleted state, download of the remote voicemail set
- Bounded in-process retries, then exponential backoff per account
- SQLite persistence for voicemails and accounts
- Prometheus metrics for monitoring

Example:
    Syncing every registered account::

        from vvm_sync import SyncAction, VoicemailSyncService

        async with VoicemailSyncService(db_path="/data/vvm_sync.db") as service:
            results = await service.request_sync(SyncAction.FULL)
"""

from .models import Account, SyncAction, SyncRequest, SyncResult, SyncStatus, Voicemail
from .service import VoicemailSyncService

__all__ = [
    "Account",
    "SyncAction",
    "SyncRequest",
    "SyncResult",
    "SyncStatus",
    "Voicemail",
    "VoicemailSyncService",
]
