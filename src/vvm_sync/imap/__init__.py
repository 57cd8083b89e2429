# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""IMAP access to the visual voicemail mailbox."""

from .client import FLAG_DELETED, FLAG_SEEN, MailboxClient

__all__ = ["FLAG_DELETED", "FLAG_SEEN", "MailboxClient"]
