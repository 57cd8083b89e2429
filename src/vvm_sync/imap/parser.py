# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Parsing of IMAP FETCH and QUOTA responses.

aioimaplib returns untagged response data as a flat list of lines: text
lines as ``bytes`` and literal payloads as ``bytearray`` following a text
line ending in ``{size}``. This module regroups them into per-message
records and turns parenthesized IMAP data into nested Python lists.

Token mapping:
    - ``( ... )`` -> list
    - ``"quoted"`` -> str
    - ``NIL`` -> None
    - literal -> bytes
    - any other atom -> str (``BODY[1]`` and friends kept whole)
"""

from __future__ import annotations

import base64
import binascii
import quopri
import re
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from typing import Any

_FETCH_RE = re.compile(r"^(?:\*\s+)?(\d+)\s+FETCH\s+(.*)$", re.IGNORECASE | re.DOTALL)
_LITERAL_RE = re.compile(r"\{(\d+)\}\s*$")
_QUOTA_RE = re.compile(r"^(?:\*\s+)?QUOTA\s+(\"[^\"]*\"|\S+)\s+\((.*)\)\s*$", re.IGNORECASE)


class ImapParseError(ValueError):
    """Raised on malformed response data."""


@dataclass
class BodyPart:
    """A leaf part of a BODYSTRUCTURE.

    Attributes:
        number: IMAP part specifier ("1", "2.1", ...).
        mime_type: Lower-case ``type/subtype``.
        encoding: Lower-case content transfer encoding.
        params: Lower-case parameter names mapped to values.
    """

    number: str
    mime_type: str
    encoding: str | None = None
    params: dict[str, str] = field(default_factory=dict)

    @property
    def charset(self) -> str:
        return self.params.get("charset", "utf-8")


class _Literal(bytes):
    """Marker for literal payloads inside a piece list."""


def _as_text(item: Any) -> str:
    if isinstance(item, (bytes, bytearray)):
        return bytes(item).decode("utf-8", errors="replace")
    return str(item)


def group_fetch_lines(lines: list[Any]) -> list[list[Any]]:
    """Group raw response lines into one piece list per FETCH record."""
    records: list[list[Any]] = []
    current: list[Any] | None = None
    expect_literal = False

    for item in lines:
        if expect_literal or isinstance(item, bytearray):
            expect_literal = False
            if current is not None:
                current.append(_Literal(bytes(item) if not isinstance(item, str) else item.encode()))
            continue

        text = _as_text(item)
        if current is not None and current and isinstance(current[-1], _Literal):
            # Remainder of a line interrupted by a literal
            current.append(text)
        elif _FETCH_RE.match(text):
            if current:
                records.append(current)
            current = [text]
        else:
            if current:
                records.append(current)
            current = None
            continue

        expect_literal = _LITERAL_RE.search(text) is not None

    if current:
        records.append(current)
    return records


def tokenize(pieces: list[Any]) -> list[Any]:
    """Turn text pieces and literals into a flat token list."""
    tokens: list[Any] = []
    literals = iter([p for p in pieces if isinstance(p, _Literal)])

    for piece in pieces:
        if isinstance(piece, _Literal):
            continue
        text = piece
        i = 0
        n = len(text)
        while i < n:
            ch = text[i]
            if ch.isspace():
                i += 1
            elif ch in "()":
                tokens.append(ch)
                i += 1
            elif ch == '"':
                i += 1
                buf = []
                while i < n and text[i] != '"':
                    if text[i] == "\\" and i + 1 < n:
                        i += 1
                    buf.append(text[i])
                    i += 1
                i += 1
                tokens.append(("str", "".join(buf)))
            elif ch == "{":
                end = text.find("}", i)
                if end == -1:
                    raise ImapParseError(f"Unterminated literal marker in {text!r}")
                literal = next(literals, None)
                if literal is None:
                    raise ImapParseError("Literal marker without literal data")
                tokens.append(bytes(literal))
                i = end + 1
            else:
                start = i
                depth = 0
                while i < n:
                    c = text[i]
                    if c == "[":
                        depth += 1
                    elif c == "]":
                        depth = max(0, depth - 1)
                    elif depth == 0 and (c.isspace() or c in "()"):
                        break
                    i += 1
                atom = text[start:i]
                tokens.append(None if atom.upper() == "NIL" else ("atom", atom))
    return tokens


def _build(tokens: list[Any], pos: int) -> tuple[Any, int]:
    token = tokens[pos]
    if token == "(":
        items = []
        pos += 1
        while pos < len(tokens) and tokens[pos] != ")":
            value, pos = _build(tokens, pos)
            items.append(value)
        if pos >= len(tokens):
            raise ImapParseError("Unbalanced parenthesis")
        return items, pos + 1
    if token == ")":
        raise ImapParseError("Unexpected closing parenthesis")
    if isinstance(token, tuple):
        return token[1], pos + 1
    return token, pos + 1


def parse_list(pieces: list[Any] | str) -> list[Any]:
    """Parse a sequence of IMAP values into Python objects."""
    if isinstance(pieces, str):
        pieces = [pieces]
    tokens = tokenize(pieces)
    values = []
    pos = 0
    while pos < len(tokens):
        value, pos = _build(tokens, pos)
        values.append(value)
    return values


def parse_fetch_response(lines: list[Any]) -> list[dict[str, Any]]:
    """Parse FETCH response lines into one dict per message.

    Keys are upper-cased data item names (``UID``, ``FLAGS``, ``ENVELOPE``,
    ``BODYSTRUCTURE``, ``BODY[2]``); ``SEQ`` holds the sequence number.
    Records without a parenthesized item list are skipped.
    """
    messages: list[dict[str, Any]] = []
    for record in group_fetch_lines(lines):
        match = _FETCH_RE.match(record[0])
        if match is None:
            continue
        pieces = [match.group(2)] + record[1:]
        values = parse_list(pieces)
        if not values or not isinstance(values[0], list):
            continue
        items = values[0]
        data: dict[str, Any] = {"SEQ": int(match.group(1))}
        for i in range(0, len(items) - 1, 2):
            key = items[i]
            if not isinstance(key, str):
                continue
            # BODY[2]<0> style origin suffixes are irrelevant here
            data[re.sub(r"<\d+>$", "", key.upper())] = items[i + 1]
        messages.append(data)
    return messages


def parse_quota_response(lines: list[Any]) -> dict[str, tuple[int, int]]:
    """Return resource name -> (usage, limit) from QUOTA response lines."""
    resources: dict[str, tuple[int, int]] = {}
    for item in lines:
        match = _QUOTA_RE.match(_as_text(item).strip())
        if match is None:
            continue
        parts = match.group(2).split()
        for i in range(0, len(parts) - 2, 3):
            try:
                resources[parts[i].upper()] = (int(parts[i + 1]), int(parts[i + 2]))
            except ValueError:
                continue
    return resources


# ---------------------------------------------------------------------------
# BODYSTRUCTURE / ENVELOPE helpers
# ---------------------------------------------------------------------------


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


def _params(value: Any) -> dict[str, str]:
    if not isinstance(value, list):
        return {}
    result = {}
    for i in range(0, len(value) - 1, 2):
        key = _text(value[i])
        if key is not None:
            result[key.lower()] = _text(value[i + 1]) or ""
    return result


def is_multipart(structure: Any) -> bool:
    return isinstance(structure, list) and bool(structure) and isinstance(structure[0], list)


def structure_mime_type(structure: Any) -> str:
    """Top-level MIME type of a BODYSTRUCTURE."""
    if is_multipart(structure):
        subtype = next((s for s in structure if not isinstance(s, list)), None)
        return f"multipart/{(_text(subtype) or 'mixed').lower()}"
    if isinstance(structure, list) and len(structure) >= 2:
        return f"{(_text(structure[0]) or 'text').lower()}/{(_text(structure[1]) or 'plain').lower()}"
    return "text/plain"


def walk_parts(structure: Any, prefix: str = "") -> list[BodyPart]:
    """Return the leaf parts of a BODYSTRUCTURE with their part numbers."""
    if not isinstance(structure, list) or not structure:
        return []

    if is_multipart(structure):
        parts: list[BodyPart] = []
        index = 0
        for child in structure:
            if not isinstance(child, list):
                break
            index += 1
            number = f"{prefix}.{index}" if prefix else str(index)
            parts.extend(walk_parts(child, number))
        return parts

    encoding = _text(structure[5]) if len(structure) > 5 else None
    return [
        BodyPart(
            number=prefix or "1",
            mime_type=structure_mime_type(structure),
            encoding=encoding.lower() if encoding else None,
            params=_params(structure[2]) if len(structure) > 2 else {},
        )
    ]


@dataclass
class EnvelopeAddress:
    name: str | None
    mailbox: str | None
    host: str | None

    @property
    def address(self) -> str | None:
        if self.mailbox is None:
            return None
        if self.host:
            return f"{self.mailbox}@{self.host}"
        return self.mailbox


def envelope_from(envelope: Any) -> list[EnvelopeAddress]:
    """Addresses of the ENVELOPE ``from`` field."""
    if not isinstance(envelope, list) or len(envelope) < 3 or not isinstance(envelope[2], list):
        return []
    result = []
    for addr in envelope[2]:
        if isinstance(addr, list) and len(addr) >= 4:
            result.append(EnvelopeAddress(name=_text(addr[0]), mailbox=_text(addr[2]), host=_text(addr[3])))
    return result


def envelope_timestamp(envelope: Any) -> int:
    """ENVELOPE date in milliseconds since the epoch, 0 when unparseable."""
    if not isinstance(envelope, list) or not envelope:
        return 0
    raw = _text(envelope[0])
    if not raw:
        return 0
    try:
        return int(parsedate_to_datetime(raw).timestamp() * 1000)
    except (TypeError, ValueError, IndexError):
        return 0


def decode_part(data: Any, encoding: str | None) -> bytes:
    """Undo the content transfer encoding of a fetched body part."""
    if data is None:
        return b""
    raw = bytes(data) if isinstance(data, (bytes, bytearray)) else str(data).encode("latin-1", errors="replace")
    match (encoding or "").lower():
        case "base64":
            try:
                return base64.b64decode(raw)
            except (binascii.Error, ValueError) as e:
                raise ImapParseError(f"Invalid base64 body part: {e}") from e
        case "quoted-printable":
            return quopri.decodestring(raw)
        case _:
            return raw


__all__ = [
    "BodyPart",
    "EnvelopeAddress",
    "ImapParseError",
    "decode_part",
    "envelope_from",
    "envelope_timestamp",
    "group_fetch_lines",
    "is_multipart",
    "parse_fetch_response",
    "parse_list",
    "parse_quota_response",
    "structure_mime_type",
    "tokenize",
    "walk_parts",
]
