# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic schemas for payloads entering the engine from outside."""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

from .models import VVM_TYPE_CVVM, VVM_TYPE_OMTP


class AccountCreate(BaseModel):
    """Payload for registering a voicemail account.

    Attributes:
        id: Unique account identifier (the phone account handle).
        subscription_id: Subscription the network request is bound to.
        mailbox_type: Visual voicemail protocol flavour.
        destination_number: Number activation requests are sent to.
        enabled: Whether visual voicemail is turned on for the account.
        activated: True once mailbox credentials have been provisioned.
        imap_user: Mailbox user name.
        imap_password: Mailbox password.
        server_address: Mailbox host.
        imap_port: Mailbox TLS port.
        base_retry_interval: First deferred retry delay in milliseconds.
    """

    model_config = ConfigDict(extra="forbid")

    id: Annotated[
        str,
        Field(min_length=1, max_length=64, pattern=r"^[a-zA-Z0-9_.-]+$",
              description="Unique account identifier")
    ]
    subscription_id: Annotated[
        int | None,
        Field(default=None, ge=0, description="Subscription id for network binding")
    ]
    mailbox_type: Annotated[
        Literal["vvm_type_omtp", "vvm_type_cvvm"],
        Field(default=VVM_TYPE_OMTP, description=f"{VVM_TYPE_OMTP} or {VVM_TYPE_CVVM}")
    ]
    destination_number: Annotated[
        str | None,
        Field(default=None, max_length=32, description="Activation destination number")
    ]
    enabled: Annotated[
        bool,
        Field(default=True, description="Visual voicemail enabled")
    ]
    activated: Annotated[
        bool,
        Field(default=False, description="Mailbox credentials provisioned")
    ]
    imap_user: Annotated[
        str | None,
        Field(default=None, max_length=255, description="IMAP username")
    ]
    imap_password: Annotated[
        str | None,
        Field(default=None, max_length=255, description="IMAP password")
    ]
    server_address: Annotated[
        str | None,
        Field(default=None, max_length=255, description="IMAP server hostname")
    ]
    imap_port: Annotated[
        int | None,
        Field(default=None, ge=1, le=65535, description="IMAP server port")
    ]
    base_retry_interval: Annotated[
        int | None,
        Field(default=None, ge=1, description="Base deferred retry interval in ms")
    ]


class MailboxCredentials(BaseModel):
    """Credentials delivered by the activation status message.

    Ports are kept as text: a malformed value must reach the mailbox
    session, which reports it as a configuration error.
    """

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    imap_user: str | None = None
    imap_password: str | None = None
    server_address: str | None = None
    imap_port: str | None = None


__all__ = ["AccountCreate", "MailboxCredentials"]
