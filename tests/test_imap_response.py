"""Tests for IMAP response parsing: SEARCH, FETCH, ENVELOPE and BODYSTRUCTURE."""

from __future__ import annotations

from datetime import UTC, datetime

from statement_extractor.core.attachments import find_pdf_parts
from statement_extractor.core.imap_response import (
    parse_body_response,
    parse_bodystructure,
    parse_envelope,
    parse_fetch_response,
    parse_search_response,
    parse_tokens,
)

ENVELOPE_BODYSTRUCTURE = (
    b'12 (UID 1017 ENVELOPE ("Fri, 01 Mar 2024 09:00:00 +0000" "Your monthly statement" '
    b'(("Example Bank" NIL "Billing" "Bank.Example")) NIL NIL (("Me" NIL "me" "example.com")) '
    b'NIL NIL NIL "<statement-1@bank.example>") '
    b'BODYSTRUCTURE (("text" "plain" ("charset" "utf-8") NIL NIL "7bit" 27 1 NIL NIL NIL NIL)'
    b'("application" "pdf" ("name" "statement.pdf") NIL NIL "base64" 4096 NIL '
    b'("attachment" ("filename" "statement.pdf")) NIL NIL) "mixed" ("boundary" "xyz") NIL NIL NIL))'
)


class TestParseSearchResponse:
    def test_sorted_unique_ids(self) -> None:
        assert parse_search_response([b"42 7 7 19"]) == [7, 19, 42]

    def test_empty_result(self) -> None:
        assert parse_search_response([b""]) == []

    def test_none_data(self) -> None:
        assert parse_search_response([None]) == []
        assert parse_search_response(None) == []


class TestParseTokens:
    def test_nested_lists_and_nil(self) -> None:
        assert parse_tokens([b'(a (b NIL) "c d")']) == [["a", ["b", None], "c d"]]

    def test_quoted_parenthesis_is_a_string(self) -> None:
        assert parse_tokens([b'("(" ")")']) == [["(", ")"]]

    def test_escaped_quote(self) -> None:
        assert parse_tokens([b'("say \\"hi\\"")']) == [['say "hi"']]

    def test_literal_is_spliced_in(self) -> None:
        data = [(b'1 (ENVELOPE (NIL {5}', b"Hello"), b" NIL))"]
        assert parse_tokens(data) == ["1", ["ENVELOPE", [None, "Hello", None]]]


class TestParseFetchResponse:
    def test_envelope_and_structure(self) -> None:
        results = parse_fetch_response([ENVELOPE_BODYSTRUCTURE])

        assert len(results) == 1
        seq, attrs = results[0]
        assert seq == 12
        assert attrs["UID"] == "1017"
        assert isinstance(attrs["ENVELOPE"], list)
        assert isinstance(attrs["BODYSTRUCTURE"], list)

    def test_multiple_messages(self) -> None:
        data = [b"1 (UID 10 FLAGS (\\Seen))", b"2 (UID 11 FLAGS ())"]
        results = parse_fetch_response(data)
        assert [(seq, attrs["UID"]) for seq, attrs in results] == [(1, "10"), (2, "11")]


class TestParseEnvelope:
    def test_fields(self) -> None:
        _, attrs = parse_fetch_response([ENVELOPE_BODYSTRUCTURE])[0]
        envelope = parse_envelope(attrs["ENVELOPE"])

        assert envelope["subject"] == "Your monthly statement"
        assert envelope["from"] == [("Example Bank", "Billing@Bank.Example")]
        assert envelope["date"] == datetime(2024, 3, 1, 9, 0, tzinfo=UTC)
        assert envelope["message_id"] == "<statement-1@bank.example>"

    def test_encoded_subject(self) -> None:
        raw = [None, "=?utf-8?q?Kontoauszug_M=C3=A4rz?=", None, None, None, None, None, None, None, None]
        assert parse_envelope(raw)["subject"] == "Kontoauszug März"

    def test_malformed(self) -> None:
        envelope = parse_envelope(None)
        assert envelope["subject"] == ""
        assert envelope["from"] == []


class TestParseBodystructure:
    def test_multipart_with_pdf(self) -> None:
        _, attrs = parse_fetch_response([ENVELOPE_BODYSTRUCTURE])[0]
        root = parse_bodystructure(attrs["BODYSTRUCTURE"])

        assert root.media_type == "multipart/mixed"
        assert [c.media_type for c in root.children] == ["text/plain", "application/pdf"]
        pdf = root.children[1]
        assert pdf.filename == "statement.pdf"
        assert pdf.size == 4096
        assert pdf.encoding == "base64"

    def test_pdf_part_path(self) -> None:
        _, attrs = parse_fetch_response([ENVELOPE_BODYSTRUCTURE])[0]
        attachments = find_pdf_parts(parse_bodystructure(attrs["BODYSTRUCTURE"]))

        assert len(attachments) == 1
        assert attachments[0].part_path == "2"
        assert attachments[0].size_bytes == 4096

    def test_octet_stream_with_pdf_name(self) -> None:
        node = parse_tokens(
            [b'("application" "octet-stream" ("name" "March.PDF") NIL NIL "base64" 100)']
        )[0]
        part = parse_bodystructure(node)

        assert part.media_type == "application/octet-stream"
        assert part.filename == "March.PDF"
        assert len(find_pdf_parts(part)) == 1

    def test_rfc2231_filename(self) -> None:
        node = parse_tokens(
            [b'("application" "pdf" NIL NIL NIL "base64" 10 NIL '
             b'("attachment" ("filename*" "utf-8\'\'Kontoauszug%20M%C3%A4rz.pdf")) NIL NIL)']
        )[0]
        assert parse_bodystructure(node).filename == "Kontoauszug März.pdf"

    def test_nested_multipart_paths(self) -> None:
        node = parse_tokens(
            [b'((("text" "plain" NIL NIL NIL "7bit" 5 1)("text" "html" NIL NIL NIL "7bit" 9 1) '
             b'"alternative")("application" "pdf" ("name" "a.pdf") NIL NIL "base64" 20) "mixed")']
        )[0]
        attachments = find_pdf_parts(parse_bodystructure(node))
        assert [a.part_path for a in attachments] == ["2"]

    def test_single_part_pdf_is_part_one(self) -> None:
        node = parse_tokens([b'("application" "pdf" ("name" "only.pdf") NIL NIL "base64" 20)'])[0]
        attachments = find_pdf_parts(parse_bodystructure(node))
        assert [a.part_path for a in attachments] == ["1"]

    def test_garbage(self) -> None:
        assert parse_bodystructure(None).media_type == "application/octet-stream"


class TestParseBodyResponse:
    def test_uid_before_literal(self) -> None:
        data = [(b"5 (UID 1017 BODY[] {11}", b"raw message"), b")"]
        assert parse_body_response(data) == [(5, 1017, b"raw message")]

    def test_uid_after_literal(self) -> None:
        data = [(b"5 (BODY[] {11}", b"raw message"), b" UID 1017)"]
        assert parse_body_response(data) == [(5, 1017, b"raw message")]

    def test_missing_message(self) -> None:
        assert parse_body_response([None]) == []
