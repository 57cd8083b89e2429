# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for MailboxClient against an in-memory IMAP server."""

from types import SimpleNamespace

import pytest

from fakes import Response
from vvm_sync.carrier import CarrierConfig
from vvm_sync.errors import MailboxConnectionError, MailboxCredentialsError
from vvm_sync.imap import FLAG_DELETED, FLAG_SEEN, MailboxClient
from vvm_sync.models import Account, Quota, Voicemail


def make_account(**overrides):
    values = {
        "id": "sub-1",
        "imap_user": "15551234567",
        "imap_password": "secret",
        "server_address": "imap.vvm.example.com",
        "imap_port": "993",
    }
    values.update(overrides)
    return Account(**values)


def make_client(imap_server, network=None, **kwargs):
    return MailboxClient(
        kwargs.pop("account", None) or make_account(),
        network,
        client_factory=imap_server.client_factory,
        **kwargs,
    )


class TestOpen:
    """Session opening and its two failure kinds."""

    @pytest.mark.asyncio
    async def test_missing_credentials_fail_before_connecting(self, imap_server):
        client = make_client(imap_server, account=make_account(imap_password=None, server_address=""))

        with pytest.raises(MailboxCredentialsError) as exc_info:
            await client.open()

        assert exc_info.value.missing == ["imap_password", "server_address"]
        assert imap_server.commands == []

    @pytest.mark.asyncio
    async def test_unparseable_port(self, imap_server):
        client = make_client(imap_server, account=make_account(imap_port="imap"))

        with pytest.raises(MailboxCredentialsError, match="port"):
            await client.open()

    @pytest.mark.asyncio
    async def test_port_out_of_range(self, imap_server):
        client = make_client(imap_server, account=make_account(imap_port=70000))

        with pytest.raises(MailboxCredentialsError):
            await client.open()

    @pytest.mark.asyncio
    async def test_carrier_ssl_port_wins(self, imap_server):
        client = make_client(imap_server, carrier_config=CarrierConfig(ssl_port=995))

        async with client:
            pass

        assert imap_server.commands[0] == ("hello", "imap.vvm.example.com", 995)

    @pytest.mark.asyncio
    async def test_login_rejected(self, imap_server):
        imap_server.login_ok = False
        client = make_client(imap_server)

        with pytest.raises(MailboxConnectionError):
            await client.open()

        assert not client.is_open
        assert imap_server.sessions_closed == 1

    @pytest.mark.asyncio
    async def test_unreachable_server(self, imap_server):
        imap_server.connect_error = OSError("connection refused")
        client = make_client(imap_server)

        with pytest.raises(MailboxConnectionError, match="connection refused"):
            await client.open()

    @pytest.mark.asyncio
    async def test_select_failure(self, imap_server):
        imap_server.failing.add("select")
        with pytest.raises(MailboxConnectionError):
            await make_client(imap_server).open()

    @pytest.mark.asyncio
    async def test_context_manager_closes_folder_and_logs_out(self, imap_server):
        async with make_client(imap_server) as client:
            assert client.is_open

        assert not client.is_open
        assert imap_server.commands_named("close")
        assert imap_server.sessions_closed == 1


class TestListing:
    """Listing and voicemail structure."""

    @pytest.mark.asyncio
    async def test_list_messages_reports_read_state(self, imap_server):
        imap_server.add_voicemail(1, seen=True)
        imap_server.add_voicemail(2)

        async with make_client(imap_server) as client:
            summaries = await client.list_messages()

        assert [(s.source_id, s.is_read) for s in summaries] == [("1", True), ("2", False)]

    @pytest.mark.asyncio
    async def test_list_skips_messages_awaiting_expunge(self, imap_server):
        imap_server.add_voicemail(1).flags.add(FLAG_DELETED)
        imap_server.add_voicemail(2)

        async with make_client(imap_server) as client:
            summaries = await client.list_messages()

        assert [s.source_id for s in summaries] == ["2"]

    @pytest.mark.asyncio
    async def test_empty_mailbox_sends_no_fetch(self, imap_server):
        async with make_client(imap_server) as client:
            assert await client.list_messages() == []

        assert imap_server.commands_named("fetch") == []

    @pytest.mark.asyncio
    async def test_list_failure_returns_none(self, imap_server):
        imap_server.add_voicemail(1)
        imap_server.failing.add("fetch")

        async with make_client(imap_server) as client:
            assert await client.list_messages() is None

    @pytest.mark.asyncio
    async def test_fetch_all_voicemails_filters_non_voicemail(self, imap_server):
        imap_server.add_voicemail(1, transcription="Call me back")
        imap_server.add_plain_message(2)
        imap_server.add_voicemail(3, audio=None)
        imap_server.add_voicemail(4, seen=True)

        async with make_client(imap_server) as client:
            voicemails = await client.fetch_all_voicemails()

        assert [v.source_id for v in voicemails] == ["1", "4"]
        first, second = voicemails
        assert first.sender == "5551234"
        assert first.timestamp == 1736157600000
        assert first.transcription_part == "1"
        assert first.audio_part == "2"
        assert first.audio_encoding == "base64"
        assert not first.is_read
        assert second.is_read
        assert second.transcription_part is None

    @pytest.mark.asyncio
    async def test_fetch_all_fails_when_one_structure_fetch_fails(self, imap_server):
        imap_server.add_voicemail(1)
        imap_server.add_voicemail(2)

        async with make_client(imap_server) as client:
            original_uid = client._client.uid

            async def uid(command, *args):
                if command == "fetch" and args[0] == "2" and "BODYSTRUCTURE" in args[1]:
                    return Response("NO", [b"FETCH failed"])
                return await original_uid(command, *args)

            client._client.uid = uid
            assert await client.fetch_all_voicemails() is None

    @pytest.mark.asyncio
    async def test_fetch_structure_of_expunged_message(self, imap_server):
        async with make_client(imap_server) as client:
            assert await client.fetch_structure(Voicemail(source_id="9")) is None

    @pytest.mark.asyncio
    async def test_fetch_structure_ignores_other_uid(self, imap_server):
        imap_server.add_voicemail(1)

        async with make_client(imap_server) as client:
            original_uid = client._client.uid

            async def uid(command, *args):
                if command == "fetch" and args[0] == "2":
                    return await original_uid(command, "1", *args[1:])
                return await original_uid(command, *args)

            client._client.uid = uid
            assert await client.fetch_structure(Voicemail(source_id="2")) is None

    @pytest.mark.asyncio
    async def test_lookup_voicemail(self, imap_server):
        imap_server.add_voicemail(1)
        imap_server.add_plain_message(2)

        async with make_client(imap_server) as client:
            found = await client.lookup_voicemail(Voicemail(source_id="1"))
            assert found.source_id == "1"
            assert found.audio_part == "2"
            assert await client.lookup_voicemail(Voicemail(source_id="2")) is None
            assert await client.lookup_voicemail(Voicemail(source_id="9")) is None

    @pytest.mark.asyncio
    async def test_lookup_voicemail_raises_on_rejected_fetch(self, imap_server):
        imap_server.add_voicemail(1)

        async with make_client(imap_server) as client:
            imap_server.failing.add("fetch")
            with pytest.raises(MailboxConnectionError):
                await client.lookup_voicemail(Voicemail(source_id="1"))

    @pytest.mark.asyncio
    async def test_lookup_voicemail_raises_on_closed_session(self, imap_server):
        with pytest.raises(MailboxConnectionError):
            await make_client(imap_server).lookup_voicemail(Voicemail(source_id="1"))


class TestFlags:
    """Read and deleted flag upload."""

    @pytest.mark.asyncio
    async def test_mark_as_read(self, imap_server):
        imap_server.add_voicemail(1)
        imap_server.add_voicemail(2)

        async with make_client(imap_server) as client:
            assert await client.mark_messages_as_read([Voicemail(source_id="1"), Voicemail(source_id="2")])

        assert imap_server.is_seen(1) and imap_server.is_seen(2)
        assert imap_server.commands_named("store") == [("store", "1,2", "+FLAGS.SILENT", f"({FLAG_SEEN})")]

    @pytest.mark.asyncio
    async def test_mark_as_deleted_expunges(self, imap_server):
        imap_server.add_voicemail(1)
        imap_server.add_voicemail(2)

        async with make_client(imap_server) as client:
            assert await client.mark_messages_as_deleted([Voicemail(source_id="1")])
            remaining = await client.list_messages()

        assert imap_server.commands_named("expunge")
        assert [s.source_id for s in remaining] == ["2"]
        assert imap_server.uids() == [2]

    @pytest.mark.asyncio
    async def test_clear_flag(self, imap_server):
        imap_server.add_voicemail(1, seen=True)

        async with make_client(imap_server) as client:
            assert await client.set_flags([Voicemail(source_id="1")], FLAG_SEEN, False)

        assert not imap_server.is_seen(1)

    @pytest.mark.asyncio
    async def test_empty_set_sends_nothing(self, imap_server):
        async with make_client(imap_server) as client:
            assert await client.mark_messages_as_read([]) is True

        assert imap_server.commands_named("store") == []

    @pytest.mark.asyncio
    async def test_rejected_store(self, imap_server):
        imap_server.add_voicemail(1)
        imap_server.failing.add("store")

        async with make_client(imap_server) as client:
            assert await client.mark_messages_as_deleted([Voicemail(source_id="1")]) is False

        assert imap_server.commands_named("expunge") == []


class TestContent:
    """Audio, transcription and quota."""

    @pytest.mark.asyncio
    async def test_fetch_payload_decodes_audio(self, imap_server):
        imap_server.add_voicemail(1, audio=b"\x00AMR\xff", transcription="hello")

        async with make_client(imap_server) as client:
            assert await client.fetch_payload(Voicemail(source_id="1")) == b"\x00AMR\xff"

    @pytest.mark.asyncio
    async def test_fetch_transcription(self, imap_server):
        imap_server.add_voicemail(1, transcription="  Call me back  ")

        async with make_client(imap_server) as client:
            assert await client.fetch_transcription(Voicemail(source_id="1")) == "Call me back"

    @pytest.mark.asyncio
    async def test_fetch_transcription_absent(self, imap_server):
        imap_server.add_voicemail(1)

        async with make_client(imap_server) as client:
            assert await client.fetch_transcription(Voicemail(source_id="1")) is None

    @pytest.mark.asyncio
    async def test_known_structure_skips_structure_fetch(self, imap_server):
        imap_server.add_voicemail(1)
        message = Voicemail(source_id="1", audio_part="1", audio_encoding="base64")

        async with make_client(imap_server) as client:
            assert await client.fetch_payload(message) == b"AMR-AUDIO"

        fetches = imap_server.commands_named("fetch")
        assert len(fetches) == 1
        assert "BODY.PEEK[1]" in fetches[0][2]

    @pytest.mark.asyncio
    async def test_query_quota_prefers_message_resource(self, imap_server):
        async with make_client(imap_server) as client:
            assert await client.query_quota() == Quota(occupied=2, total=100)

    @pytest.mark.asyncio
    async def test_quota_unsupported(self, imap_server):
        imap_server.quota = None

        async with make_client(imap_server) as client:
            assert await client.query_quota() is None


class TestUnusableSession:
    """Operations on a closed session or a lost network."""

    @pytest.mark.asyncio
    async def test_closed_session(self, imap_server):
        client = make_client(imap_server)

        assert await client.list_messages() is None
        assert await client.mark_messages_as_read([Voicemail(source_id="1")]) is False
        assert await client.query_quota() is None

    @pytest.mark.asyncio
    async def test_lost_network(self, imap_server):
        imap_server.add_voicemail(1)
        network = SimpleNamespace(lost=False)

        async with make_client(imap_server, network) as client:
            network.lost = True
            assert await client.fetch_all_voicemails() is None
            assert await client.fetch_payload(Voicemail(source_id="1")) is None

        assert imap_server.commands_named("fetch") == []
