# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
import pytest
from pydantic import ValidationError

from vvm_sync.schemas import AccountCreate, MailboxCredentials


def test_account_create_defaults():
    account = AccountCreate(id="sub-1")

    assert account.mailbox_type == "vvm_type_omtp"
    assert account.enabled is True
    assert account.activated is False
    assert account.model_dump(exclude_none=True) == {
        "id": "sub-1",
        "mailbox_type": "vvm_type_omtp",
        "enabled": True,
        "activated": False,
    }


@pytest.mark.parametrize(
    "payload",
    [
        {"id": ""},
        {"id": "a/b"},
        {"id": "x" * 65},
        {"id": "ok", "subscription_id": -1},
        {"id": "ok", "imap_port": 70000},
        {"id": "ok", "base_retry_interval": 0},
        {"id": "ok", "mailbox_type": "vvm_type_vvm3"},
        {"id": "ok", "password": "typo"},
    ],
)
def test_account_create_rejects(payload):
    with pytest.raises(ValidationError):
        AccountCreate.model_validate(payload)


def test_credentials_keep_port_as_text():
    creds = MailboxCredentials.model_validate(
        {"imap_user": 15551234567, "imap_password": "p", "server_address": "h", "imap_port": 993, "tui": "x"}
    )

    assert creds.imap_user == "15551234567"
    assert creds.imap_port == "993"
    assert creds.model_dump() == {
        "imap_user": "15551234567",
        "imap_password": "p",
        "server_address": "h",
        "imap_port": "993",
    }


def test_credentials_malformed_port_passes_through():
    assert MailboxCredentials(imap_port="abc").imap_port == "abc"
