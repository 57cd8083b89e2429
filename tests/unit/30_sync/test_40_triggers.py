# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for SyncTriggers: notification events, service state and carrier changes."""

import pytest

from fakes import ACCOUNT_ID, TEST_BASE_RETRY_MS, account_payload
from vvm_sync.carrier import CarrierConfigProvider
from vvm_sync.models import (
    ConfigurationState,
    DataChannelState,
    NotificationChannelState,
    SyncAction,
    SyncStatus,
)
from vvm_sync.triggers import MailboxEvent, SyncTriggers


@pytest.fixture
def triggers(service):
    return SyncTriggers(service)


async def stored(service, account_id=ACCOUNT_ID):
    return await service.persistence.get_account(account_id)


class TestServiceState:
    """Signal loss and recovery."""

    @pytest.mark.asyncio
    async def test_unknown_account_ignored(self, triggers):
        assert await triggers.on_service_state_changed("ghost", True) is None

    @pytest.mark.asyncio
    async def test_out_of_service_marks_no_connection(self, service, triggers):
        await service.persistence.add_account(account_payload())

        assert await triggers.on_service_state_changed(ACCOUNT_ID, False) is None

        account = await stored(service)
        assert account.configuration_state == ConfigurationState.OK
        assert account.data_channel_state == DataChannelState.NO_CONNECTION
        assert account.notification_channel_state == NotificationChannelState.NO_CONNECTION

    @pytest.mark.asyncio
    async def test_back_in_service_runs_full_sync(self, service, triggers, imap_server):
        await service.persistence.add_account(account_payload())
        imap_server.add_voicemail(1)
        await triggers.on_service_state_changed(ACCOUNT_ID, False)

        task = await triggers.on_service_state_changed(ACCOUNT_ID, True)

        results = await task
        assert results[0].action is SyncAction.FULL
        assert results[0].status == SyncStatus.SUCCESS
        account = await stored(service)
        assert account.notification_channel_state == NotificationChannelState.OK
        assert len(await service.persistence.get_all_messages(ACCOUNT_ID)) == 1

    @pytest.mark.asyncio
    async def test_already_in_service_does_nothing(self, service, triggers, network):
        await service.persistence.add_account(account_payload())

        assert await triggers.on_service_state_changed(ACCOUNT_ID, True) is None
        assert network.requests == []


class TestMailboxEvents:
    """Sync messages from the notification channel."""

    @pytest.mark.asyncio
    async def test_new_message_inserted_once(self, service, triggers, network):
        await service.persistence.add_account(account_payload())
        data = {"source_id": "12", "timestamp": 1736157600000, "sender": "5551234", "duration": 7}

        assert await triggers.on_mailbox_event(ACCOUNT_ID, MailboxEvent.NEW_MESSAGE, **data) is None
        assert await triggers.on_mailbox_event(ACCOUNT_ID, "NM", **data) is None

        messages = await service.persistence.get_all_messages(ACCOUNT_ID)
        assert len(messages) == 1
        assert (messages[0].source_id, messages[0].sender, messages[0].duration) == ("12", "5551234", 7)
        assert network.requests == []

    @pytest.mark.asyncio
    async def test_new_message_with_content_fetches_transcription(self, service, triggers, imap_server):
        await service.persistence.add_account(account_payload())
        imap_server.add_voicemail(12, transcription="Call me")

        task = await triggers.on_mailbox_event(ACCOUNT_ID, "NM", source_id="12", content_ready=True)

        results = await task
        assert results[0].action is SyncAction.DOWNLOAD_ONE_TRANSCRIPTION
        message = await service.persistence.get_message_by_source_id(ACCOUNT_ID, "12")
        assert message.transcription == "Call me"

    @pytest.mark.asyncio
    async def test_new_message_without_id_ignored(self, service, triggers):
        await service.persistence.add_account(account_payload())

        assert await triggers.on_mailbox_event(ACCOUNT_ID, "NM", content_ready=True) is None
        assert await service.persistence.get_all_messages(ACCOUNT_ID) == []

    @pytest.mark.asyncio
    async def test_mailbox_update_downloads(self, service, triggers, imap_server):
        await service.persistence.add_account(account_payload())
        imap_server.add_voicemail(3)

        task = await triggers.on_mailbox_event(ACCOUNT_ID, "MBU")

        results = await task
        assert results[0].action is SyncAction.DOWNLOAD_ONLY
        assert len(await service.persistence.get_all_messages(ACCOUNT_ID)) == 1

    @pytest.mark.asyncio
    async def test_greetings_update_ignored(self, service, triggers, network):
        await service.persistence.add_account(account_payload())

        assert await triggers.on_mailbox_event(ACCOUNT_ID, "GU") is None
        assert network.requests == []

    @pytest.mark.asyncio
    async def test_unknown_event_ignored(self, service, triggers):
        await service.persistence.add_account(account_payload())

        assert await triggers.on_mailbox_event(ACCOUNT_ID, "XYZ") is None

    @pytest.mark.asyncio
    async def test_disabled_account_ignored(self, service, triggers):
        await service.persistence.add_account(account_payload(enabled=False))

        assert await triggers.on_mailbox_event(ACCOUNT_ID, "NM", source_id="1") is None
        assert await service.persistence.get_all_messages(ACCOUNT_ID) == []


class TestStatusUpdate:
    """Provisioned credentials from the activation status message."""

    @pytest.mark.asyncio
    async def test_credentials_stored_and_full_sync_started(self, service, triggers, imap_server):
        await service.persistence.add_account(
            account_payload(activated=False, imap_user=None, imap_password=None, imap_port=None)
        )
        imap_server.add_voicemail(1)

        task = await triggers.on_status_update(
            ACCOUNT_ID,
            {
                "imap_user": "15551234567",
                "imap_password": "fresh",
                "server_address": "imap.vvm.example.com",
                "imap_port": 993,
                "sms_port": 5499,
            },
        )

        results = await task
        assert results[0].status == SyncStatus.SUCCESS
        account = await stored(service)
        assert account.activated
        assert (account.imap_password, account.imap_port) == ("fresh", "993")
        assert account.configuration_state == ConfigurationState.OK
        assert len(await service.persistence.get_all_messages(ACCOUNT_ID)) == 1

    @pytest.mark.asyncio
    async def test_unknown_account_ignored(self, triggers):
        assert await triggers.on_status_update("ghost", {"imap_user": "u"}) is None

    @pytest.mark.asyncio
    async def test_invalid_payload_ignored(self, service, triggers):
        await service.persistence.add_account(account_payload(activated=False))

        assert await triggers.on_status_update(ACCOUNT_ID, {"imap_user": ["not", "text"]}) is None
        assert not (await stored(service)).activated


class TestCarrierConfigChanged:
    """Carrier configuration changes re-evaluate activation."""

    @pytest.mark.asyncio
    async def test_unknown_account_registered_and_activated(self, service, triggers, activation_handler):
        activated = await triggers.on_carrier_config_changed(
            "sub-7", {"vvm_type": "vvm_type_cvvm", "destination_number": "94183567"}
        )

        assert activated is True
        activation_handler.assert_awaited_once_with("sub-7")
        account = await stored(service, "sub-7")
        assert account.mailbox_type == "vvm_type_cvvm"
        assert account.destination_number == "94183567"
        assert account.enabled
        assert account.configuration_state == ConfigurationState.CONFIGURING

    @pytest.mark.asyncio
    async def test_registered_account_uses_configured_retry_interval(self, service, triggers, monkeypatch):
        monkeypatch.setattr(service.config, "base_retry_interval_ms", TEST_BASE_RETRY_MS)

        await triggers.on_carrier_config_changed("sub-7", {"vvm_type": "vvm_type_omtp"})

        account = await stored(service, "sub-7")
        assert account.base_retry_interval == TEST_BASE_RETRY_MS
        assert account.get_retry_interval() == TEST_BASE_RETRY_MS

    @pytest.mark.asyncio
    async def test_carrier_app_installed_disables_new_account(self, service, activation_handler):
        triggers = SyncTriggers(service, is_package_installed=lambda name: name == "com.carrier.voicemail")

        activated = await triggers.on_carrier_config_changed(
            "sub-7", {"carrier_package_names": "com.other.app, com.carrier.voicemail"}
        )

        assert activated is False
        assert not (await stored(service, "sub-7")).enabled
        activation_handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_disabled_account_cancels_retries(self, service, triggers, activation_handler):
        await service.persistence.add_account(account_payload(enabled=False))
        account = await stored(service)
        await service.scheduler.schedule(account, SyncAction.UPLOAD_ONLY)

        assert await triggers.on_carrier_config_changed(ACCOUNT_ID) is False

        assert service.scheduler.pending() == []
        activation_handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_bundle_rejected(self, service, triggers, activation_handler):
        await service.persistence.add_account(account_payload())

        assert await triggers.on_carrier_config_changed(ACCOUNT_ID, {"ssl_port": "not-a-port"}) is False
        activation_handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unsupported_carrier_rejected(self, service, triggers, monkeypatch):
        monkeypatch.setattr(service, "carrier_configs", CarrierConfigProvider())

        assert await triggers.on_carrier_config_changed("sub-7", {"destination_number": "123"}) is False
        assert await stored(service, "sub-7") is None
