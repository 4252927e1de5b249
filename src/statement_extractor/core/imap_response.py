"""Parsing of imaplib FETCH/SEARCH responses: ENVELOPE, BODYSTRUCTURE and BODY[] payloads."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Iterator
from email.utils import collapse_rfc2231_value, decode_rfc2231
from typing import Any
from urllib.parse import unquote

from statement_extractor.core.models import MimePart
from statement_extractor.core.parser import decode_header_value, parse_date

logger = logging.getLogger(__name__)

_LITERAL_MARKER = re.compile(rb"\{(\d+)\}$")
_SEQ_PREFIX = re.compile(rb"^\s*(\d+)\s+\(")
_UID_FIELD = re.compile(rb"UID\s+(\d+)")

_DISPOSITIONS = {"attachment", "inline"}


class _Literal(str):
    """A string token that arrived as an IMAP literal rather than a quoted string."""


_OPEN = object()
_CLOSE = object()


def _flatten(data: Iterable[object]) -> Iterator[bytes | _Literal]:
    """Turn imaplib's mix of bytes and (prefix, literal) tuples into one chunk stream."""
    for item in data:
        if isinstance(item, tuple) and len(item) >= 2:
            prefix, literal = item[0], item[1]
            if isinstance(prefix, bytes):
                yield _LITERAL_MARKER.sub(b"", prefix.rstrip())
            if isinstance(literal, bytes):
                yield _Literal(literal.decode("utf-8", errors="replace"))
        elif isinstance(item, bytes):
            yield item


def _tokenize(chunk: bytes) -> Iterator[object]:
    """Split a response chunk into list markers, atoms, quoted strings and None."""
    text = chunk.decode("utf-8", errors="replace")
    i = 0
    length = len(text)
    while i < length:
        ch = text[i]
        if ch.isspace():
            i += 1
        elif ch == "(":
            yield _OPEN
            i += 1
        elif ch == ")":
            yield _CLOSE
            i += 1
        elif ch == '"':
            i += 1
            buf: list[str] = []
            while i < length and text[i] != '"':
                if text[i] == "\\" and i + 1 < length:
                    i += 1
                buf.append(text[i])
                i += 1
            i += 1
            yield "".join(buf)
        else:
            start = i
            depth = 0
            while i < length:
                c = text[i]
                if c == "[":
                    depth += 1
                elif c == "]":
                    depth -= 1
                elif depth <= 0 and (c.isspace() or c in '()"'):
                    break
                i += 1
            atom = text[start:i]
            yield None if atom.upper() == "NIL" else atom


def parse_tokens(data: Iterable[object]) -> list[Any]:
    """Parse a raw imaplib response into nested Python lists.

    Parenthesised lists become ``list``; NIL becomes ``None``; everything else is ``str``.
    """
    root: list[Any] = []
    stack: list[list[Any]] = [root]

    for chunk in _flatten(data):
        if isinstance(chunk, _Literal):
            stack[-1].append(str(chunk))
            continue
        for token in _tokenize(chunk):
            if token is _OPEN:
                new: list[Any] = []
                stack[-1].append(new)
                stack.append(new)
            elif token is _CLOSE:
                if len(stack) > 1:
                    stack.pop()
            else:
                stack[-1].append(token)

    return root


def parse_fetch_response(data: Iterable[object]) -> list[tuple[int, dict[str, Any]]]:
    """Parse a FETCH response into ``(sequence_id, {ITEM: value})`` pairs."""
    tokens = parse_tokens(data)
    results: list[tuple[int, dict[str, Any]]] = []

    i = 0
    while i < len(tokens) - 1:
        head, body = tokens[i], tokens[i + 1]
        if isinstance(head, str) and head.isdigit() and isinstance(body, list):
            attrs: dict[str, Any] = {}
            for j in range(0, len(body) - 1, 2):
                key = body[j]
                if isinstance(key, str):
                    attrs[key.upper()] = body[j + 1]
            results.append((int(head), attrs))
            i += 2
        else:
            i += 1

    return results


def parse_search_response(data: object) -> list[int]:
    """Parse ``SEARCH`` / ``UID SEARCH`` response data into ascending ids."""
    if not isinstance(data, list) or not data:
        return []
    ids: list[int] = []
    for raw in data:
        if isinstance(raw, bytes):
            raw = raw.decode("ascii", errors="ignore")
        if not isinstance(raw, str):
            continue
        ids.extend(int(tok) for tok in raw.split() if tok.isdigit())
    return sorted(set(ids))


def parse_body_response(data: Iterable[object]) -> list[tuple[int, int | None, bytes]]:
    """Extract ``(sequence_id, uid, raw_bytes)`` from a ``BODY[]`` FETCH response.

    Servers may put ``UID n`` before or after the literal, so both sides are checked.
    """
    items = list(data)
    results: list[tuple[int, int | None, bytes]] = []

    for idx, item in enumerate(items):
        if not isinstance(item, tuple) or len(item) < 2:
            continue
        meta, payload = item[0], item[1]
        if not isinstance(meta, bytes) or not isinstance(payload, bytes):
            logger.warning("Unexpected BODY[] payload type: %s", type(payload))
            continue

        seq_match = _SEQ_PREFIX.match(meta)
        if not seq_match:
            continue

        uid_match = _UID_FIELD.search(meta)
        if not uid_match and idx + 1 < len(items) and isinstance(items[idx + 1], bytes):
            uid_match = _UID_FIELD.search(items[idx + 1])

        uid = int(uid_match.group(1)) if uid_match else None
        results.append((int(seq_match.group(1)), uid, payload))

    return results


# ---------- ENVELOPE ----------


def _address_list(value: Any) -> list[tuple[str, str]]:
    """Convert an ENVELOPE address list into ``(personal_name, email)`` pairs."""
    if not isinstance(value, list):
        return []
    addresses: list[tuple[str, str]] = []
    for addr in value:
        if not isinstance(addr, list) or len(addr) < 4:
            continue
        name, _adl, mailbox, host = addr[:4]
        if not mailbox:
            # Group syntax marker
            continue
        email_addr = f"{mailbox}@{host}" if host else str(mailbox)
        addresses.append((decode_header_value(name or ""), email_addr))
    return addresses


def parse_envelope(envelope: Any) -> dict[str, Any]:
    """Pick the fields we need out of an ENVELOPE list."""
    if not isinstance(envelope, list) or len(envelope) < 10:
        return {"date": parse_date(""), "subject": "", "from": [], "message_id": ""}

    return {
        "date": parse_date(envelope[0] or ""),
        "subject": decode_header_value(envelope[1] or ""),
        "from": _address_list(envelope[2]),
        "message_id": envelope[9] or "",
    }


# ---------- BODYSTRUCTURE ----------


def _param_pairs(value: Any) -> dict[str, str]:
    if not isinstance(value, list):
        return {}
    return {
        str(value[i]).lower(): str(value[i + 1])
        for i in range(0, len(value) - 1, 2)
        if value[i] is not None and value[i + 1] is not None
    }


def _filename_from_params(params: dict[str, str]) -> str:
    for key in ("filename", "name"):
        if params.get(key):
            return decode_header_value(params[key])
        extended = params.get(f"{key}*")
        if extended:
            charset, language, text = decode_rfc2231(extended)
            return collapse_rfc2231_value((charset, language, unquote(text, encoding="latin-1")))
    return ""


def _find_disposition(extension: list[Any]) -> dict[str, str]:
    """Locate the disposition ``("attachment" (params))`` among extension fields."""
    for field in extension:
        if (
            isinstance(field, list)
            and len(field) >= 2
            and isinstance(field[0], str)
            and field[0].lower() in _DISPOSITIONS
        ):
            return _param_pairs(field[1])
    return {}


def parse_bodystructure(node: Any) -> MimePart:
    """Build a MimePart tree from a BODYSTRUCTURE list."""
    if not isinstance(node, list) or not node:
        return MimePart(media_type="application/octet-stream")

    if isinstance(node[0], list):
        children: list[MimePart] = []
        idx = 0
        while idx < len(node) and isinstance(node[idx], list):
            children.append(parse_bodystructure(node[idx]))
            idx += 1
        subtype = node[idx] if idx < len(node) and isinstance(node[idx], str) else "mixed"
        return MimePart(media_type=f"multipart/{subtype.lower()}", children=tuple(children))

    main_type = str(node[0] or "application").lower()
    subtype = str(node[1] or "octet-stream").lower() if len(node) > 1 else "octet-stream"
    media_type = f"{main_type}/{subtype}"
    params = _param_pairs(node[2]) if len(node) > 2 else {}
    encoding = str(node[5] or "").lower() if len(node) > 5 else ""
    try:
        size = int(node[6]) if len(node) > 6 and node[6] is not None else 0
    except (TypeError, ValueError):
        size = 0

    filename = _filename_from_params(_find_disposition(node[7:])) or _filename_from_params(
        params
    )

    children_tuple: tuple[MimePart, ...] = ()
    if media_type == "message/rfc822" and len(node) > 8 and isinstance(node[8], list):
        inner = parse_bodystructure(node[8])
        children_tuple = inner.children if inner.is_multipart else (inner,)

    return MimePart(
        media_type=media_type,
        filename=filename,
        size=size,
        encoding=encoding,
        children=children_tuple,
    )
