# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Async IMAP session against a visual voicemail mailbox."""

from __future__ import annotations

import logging
import re
import ssl
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any

from ..errors import MailboxConnectionError, MailboxCredentialsError
from ..models import Account, Quota, Voicemail
from .parser import (
    ImapParseError,
    decode_part,
    envelope_from,
    envelope_timestamp,
    is_multipart,
    parse_fetch_response,
    parse_quota_response,
    walk_parts,
)

if TYPE_CHECKING:
    from logging import Logger

    from ..carrier import CarrierConfig
    from ..network import NetworkHandle

FLAG_SEEN = "\\Seen"
FLAG_DELETED = "\\Deleted"

DEFAULT_FOLDER = "INBOX"
DEFAULT_TIMEOUT = 30.0

_EXISTS_RE = re.compile(r"^(?:\*\s+)?(\d+)\s+EXISTS", re.IGNORECASE)

ClientFactory = Callable[[str, int], Any]


def _default_client_factory(host: str, port: int) -> Any:
    import aioimaplib

    ssl_context = ssl.create_default_context()
    return aioimaplib.IMAP4_SSL(host=host, port=port, ssl_context=ssl_context, timeout=DEFAULT_TIMEOUT)


def sender_number(addresses: Sequence[Any], logger: Logger | None = None) -> str | None:
    """Caller number from the ``from`` addresses, domain part stripped."""
    if not addresses:
        return None
    if len(addresses) != 1 and logger:
        logger.warning("More than one from address found, using the first one")
    sender = addresses[0].address
    if sender is None:
        return None
    return sender.split("@", 1)[0]


class MailboxClient:
    """One IMAP session for one account.

    Opening fails fast with :class:`MailboxCredentialsError` when the
    account's credentials are absent or malformed. Every other operation
    converts protocol errors into ``None``/``False`` so callers can decide
    per sub-operation. :meth:`lookup_voicemail` is the exception and raises
    :class:`MailboxConnectionError`.

    Use as an async context manager so the session is closed on every exit
    path::

        async with MailboxClient(account, handle) as client:
            voicemails = await client.fetch_all_voicemails()
    """

    def __init__(
        self,
        account: Account,
        network: NetworkHandle | None = None,
        *,
        folder: str = DEFAULT_FOLDER,
        carrier_config: CarrierConfig | None = None,
        client_factory: ClientFactory | None = None,
        logger: Logger | None = None,
    ):
        self.account = account
        self._network = network
        self._folder = folder
        self._carrier_config = carrier_config
        self._client_factory = client_factory or _default_client_factory
        self._logger = logger or logging.getLogger(__name__)
        self._client: Any = None
        self._selected = False
        self._exists: int | None = None

    @property
    def is_open(self) -> bool:
        return self._client is not None

    @property
    def disabled_capabilities(self) -> list[str]:
        if self._carrier_config is None:
            return []
        return list(self._carrier_config.disabled_capabilities)

    def _resolve_endpoint(self) -> tuple[str, int]:
        account = self.account
        port: Any = account.imap_port
        if self._carrier_config is not None and self._carrier_config.ssl_port:
            port = self._carrier_config.ssl_port

        missing = [
            name
            for name, value in (
                ("imap_user", account.imap_user),
                ("imap_password", account.imap_password),
                ("server_address", account.server_address),
                ("imap_port", port),
            )
            if value in (None, "")
        ]
        if missing:
            raise MailboxCredentialsError(account.id, missing)

        try:
            port_number = int(port)
        except (TypeError, ValueError):
            raise MailboxCredentialsError(account.id, detail=f"could not parse port number {port!r}")
        if not 0 < port_number < 65536:
            raise MailboxCredentialsError(account.id, detail=f"port out of range: {port_number}")
        return account.server_address, port_number

    async def open(self) -> None:
        """Connect, authenticate and select the voicemail folder."""
        host, port = self._resolve_endpoint()

        if self.disabled_capabilities:
            self._logger.debug(
                "Capabilities disabled by carrier for %s: %s", self.account.id, self.disabled_capabilities
            )

        try:
            self._client = self._client_factory(host, port)
            await self._client.wait_hello_from_server()

            response = await self._client.login(self.account.imap_user, self.account.imap_password)
            if response.result != "OK":
                raise MailboxConnectionError(f"IMAP login failed: {response.lines}")

            response = await self._client.select(self._folder)
            if response.result != "OK":
                raise MailboxConnectionError(f"Failed to select folder {self._folder}: {response.lines}")
        except MailboxConnectionError:
            await self.close()
            raise
        except Exception as e:
            await self.close()
            raise MailboxConnectionError(f"IMAP connection to {host}:{port} failed: {e}") from e

        self._selected = True
        self._exists = None
        for line in response.lines:
            if isinstance(line, (bytes, bytearray)):
                line = line.decode("utf-8", errors="replace")
            match = _EXISTS_RE.match(str(line))
            if match:
                self._exists = int(match.group(1))
                break

        self._logger.debug("IMAP connected to %s:%d for %s", host, port, self.account.id)

    def _usable(self, operation: str) -> bool:
        if not self._client:
            self._logger.error("%s on closed mailbox session for %s", operation, self.account.id)
            return False
        if self._network is not None and self._network.lost:
            self._logger.warning("%s skipped, network lost for %s", operation, self.account.id)
            return False
        return True

    async def _uid_fetch(self, uid_set: str, items: str) -> list[dict[str, Any]] | None:
        response = await self._client.uid("fetch", uid_set, items)
        if response.result != "OK":
            self._logger.warning("IMAP fetch %s %s failed: %s", uid_set, items, response.lines)
            return None
        return parse_fetch_response(response.lines)

    # ------------------------------------------------------------------ listing
    async def list_messages(self) -> list[Voicemail] | None:
        """Lightweight summaries: UID and flags only."""
        if not self._usable("list_messages"):
            return None
        if self._exists == 0:
            return []
        try:
            records = await self._uid_fetch("1:*", "(UID FLAGS)")
        except Exception as e:
            self._logger.error("Listing messages failed for %s: %s", self.account.id, e)
            return None
        if records is None:
            return None

        summaries = []
        for record in records:
            uid = record.get("UID")
            if uid is None:
                continue
            flags = [str(f).lower() for f in record.get("FLAGS") or []]
            if FLAG_DELETED.lower() in flags:
                # Awaiting expunge
                continue
            summaries.append(Voicemail(source_id=str(uid), is_read=FLAG_SEEN.lower() in flags))
        return summaries

    async def _fetch_structure(self, message: Voicemail) -> Voicemail | None:
        """Like :meth:`fetch_structure` but raises on protocol failure."""
        self._logger.debug("Fetching message structure for %s", message.source_id)
        records = await self._uid_fetch(message.source_id, "(UID FLAGS ENVELOPE BODYSTRUCTURE)")
        if records is None:
            raise MailboxConnectionError(f"Structure fetch of {message.source_id} rejected")
        record = next((r for r in records if str(r.get("UID")) == message.source_id), None)
        if record is None:
            # Expunged since it was listed
            return None
        structure = record.get("BODYSTRUCTURE")
        if not is_multipart(structure):
            self._logger.debug("Ignored non multi-part message %s", message.source_id)
            return None

        parts = walk_parts(structure)
        audio = next((p for p in parts if p.mime_type.startswith("audio/")), None)
        if audio is None:
            self._logger.debug("Message %s does not have an audio attachment", message.source_id)
            return None
        text = next((p for p in parts if p.mime_type == "text/plain"), None)

        envelope = record.get("ENVELOPE")
        flags = [str(f).lower() for f in record.get("FLAGS") or []]
        return Voicemail(
            source_id=message.source_id,
            timestamp=envelope_timestamp(envelope),
            sender=sender_number(envelope_from(envelope), self._logger),
            is_read=FLAG_SEEN.lower() in flags,
            audio_part=audio.number,
            audio_encoding=audio.encoding,
            transcription_part=text.number if text else None,
            transcription_encoding=text.encoding if text else None,
        )

    async def fetch_structure(self, message: Voicemail) -> Voicemail | None:
        """Fetch envelope and structure; None if not a voicemail or on failure.

        A message is a voicemail only if its body is multipart with at
        least one ``audio/*`` part.
        """
        if not self._usable("fetch_structure"):
            return None
        try:
            return await self._fetch_structure(message)
        except Exception as e:
            self._logger.error("Fetching structure of %s failed: %s", message.source_id, e)
            return None

    async def lookup_voicemail(self, message: Voicemail) -> Voicemail | None:
        """Like :meth:`fetch_structure`, but a failed query raises.

        None then only means the message is gone or is not a voicemail.

        Raises:
            MailboxConnectionError: The session is unusable or the server
                rejected the fetch.
        """
        if not self._usable("lookup_voicemail"):
            raise MailboxConnectionError(f"Mailbox session unusable for {self.account.id}")
        try:
            return await self._fetch_structure(message)
        except MailboxConnectionError:
            raise
        except Exception as e:
            raise MailboxConnectionError(f"Structure fetch of {message.source_id} failed: {e}") from e

    async def fetch_all_voicemails(self) -> list[Voicemail] | None:
        """All voicemails on the server; None means the query failed.

        A single failed structure fetch fails the whole listing: a partial
        list would make callers treat the missing messages as deleted.
        """
        summaries = await self.list_messages()
        if summaries is None:
            return None

        result = []
        for summary in summaries:
            if not self._usable("fetch_all_voicemails"):
                return None
            try:
                voicemail = await self._fetch_structure(summary)
            except Exception as e:
                self._logger.error("Fetching structure of %s failed: %s", summary.source_id, e)
                return None
            if voicemail is not None:
                result.append(voicemail)
        return result

    # -------------------------------------------------------------------- flags
    async def set_flags(self, messages: Sequence[Voicemail], flag: str, value: bool = True) -> bool:
        """Set or clear ``flag`` on ``messages``. Returns True on success."""
        if not messages:
            return True
        if not self._usable("set_flags"):
            return False
        uid_set = ",".join(m.source_id for m in messages)
        operation = "+FLAGS.SILENT" if value else "-FLAGS.SILENT"
        try:
            response = await self._client.uid("store", uid_set, operation, f"({flag})")
        except Exception as e:
            self._logger.error("Setting %s on %s failed: %s", flag, uid_set, e)
            return False
        if response.result != "OK":
            self._logger.warning("IMAP store %s %s failed: %s", uid_set, flag, response.lines)
            return False
        if flag == FLAG_DELETED and value:
            await self._expunge()
        return True

    async def _expunge(self) -> None:
        try:
            response = await self._client.expunge()
        except Exception as e:
            self._logger.warning("IMAP expunge failed for %s: %s", self.account.id, e)
            return
        if response.result != "OK":
            self._logger.warning("IMAP expunge failed for %s: %s", self.account.id, response.lines)

    async def mark_messages_as_read(self, messages: Sequence[Voicemail]) -> bool:
        return await self.set_flags(messages, FLAG_SEEN)

    async def mark_messages_as_deleted(self, messages: Sequence[Voicemail]) -> bool:
        return await self.set_flags(messages, FLAG_DELETED)

    # ------------------------------------------------------------------ content
    async def _fetch_part(self, message: Voicemail, part: str, encoding: str | None) -> bytes | None:
        try:
            records = await self._uid_fetch(message.source_id, f"(UID BODY.PEEK[{part}])")
        except Exception as e:
            self._logger.error("Fetching part %s of %s failed: %s", part, message.source_id, e)
            return None
        if not records:
            return None
        for record in records:
            data = record.get(f"BODY[{part}]")
            if data is not None:
                try:
                    return decode_part(data, encoding)
                except ImapParseError as e:
                    self._logger.error("Decoding part %s of %s failed: %s", part, message.source_id, e)
                    return None
        return None

    async def _with_structure(self, message: Voicemail) -> Voicemail | None:
        if message.audio_part is not None:
            return message
        return await self.fetch_structure(message)

    async def fetch_payload(self, message: Voicemail) -> bytes | None:
        """Audio content of ``message``."""
        if not self._usable("fetch_payload"):
            return None
        structured = await self._with_structure(message)
        if structured is None or structured.audio_part is None:
            return None
        return await self._fetch_part(structured, structured.audio_part, structured.audio_encoding)

    async def fetch_transcription(self, message: Voicemail) -> str | None:
        """Transcription text of ``message``, None when absent or on failure."""
        if not self._usable("fetch_transcription"):
            return None
        structured = await self._with_structure(message)
        if structured is None or structured.transcription_part is None:
            return None
        data = await self._fetch_part(structured, structured.transcription_part, structured.transcription_encoding)
        if data is None:
            return None
        return data.decode("utf-8", errors="replace").strip()

    async def query_quota(self) -> Quota | None:
        """Mailbox occupancy, preferring the MESSAGE resource."""
        if not self._usable("query_quota"):
            return None
        try:
            response = await self._client.getquotaroot(self._folder)
        except Exception as e:
            self._logger.warning("Quota query failed for %s: %s", self.account.id, e)
            return None
        if response.result != "OK":
            self._logger.debug("Quota not available for %s: %s", self.account.id, response.lines)
            return None
        resources = parse_quota_response(response.lines)
        usage = resources.get("MESSAGE") or resources.get("STORAGE")
        if usage is None:
            return None
        return Quota(occupied=usage[0], total=usage[1])

    # ------------------------------------------------------------------ session
    async def close(self) -> None:
        """Close the folder (expunging deleted messages) and log out."""
        if self._client:
            client = self._client
            self._client = None
            if self._selected:
                try:
                    await client.close()
                except Exception as e:
                    self._logger.debug("IMAP close failed: %s", e)
            try:
                await client.logout()
            except Exception as e:
                self._logger.debug("IMAP logout failed: %s", e)
            self._selected = False
            self._logger.debug("IMAP connection closed for %s", self.account.id)

    async def __aenter__(self) -> MailboxClient:
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


__all__ = ["FLAG_DELETED", "FLAG_SEEN", "MailboxClient", "sender_number"]
