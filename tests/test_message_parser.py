"""Tests for plaintext extraction from provider message payloads."""

import base64

from subscan.ingest.message_parser import (
    decode_body_data,
    extract_plaintext,
    get_header,
    html_to_text,
    parse_message,
)


def _data(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


HTML_BODY = """
<html>
  <head><title>Receipt</title><style>p { color: red; }</style></head>
  <body>
    <h1>Your   Spotify   Premium</h1>
    <script>trackOpen();</script>
    <p>Total:&nbsp;$9.99<br>Renews monthly</p>
  </body>
</html>
"""


def test_html_only_multipart_is_deterministic():
    payload = {
        "mimeType": "multipart/alternative",
        "parts": [
            {"mimeType": "text/html", "body": {"data": _data(HTML_BODY)}},
        ],
    }

    first = extract_plaintext(payload)
    second = extract_plaintext(payload)

    assert first == second
    assert "Spotify Premium" in first
    assert "$9.99" in first
    assert "trackOpen" not in first
    assert "color: red" not in first
    assert "  " not in first
    assert "<" not in first


def test_plain_part_preferred_over_html_in_nested_parts():
    payload = {
        "mimeType": "multipart/mixed",
        "parts": [
            {
                "mimeType": "multipart/alternative",
                "parts": [
                    {"mimeType": "text/html", "body": {"data": _data("<p>html version</p>")}},
                    {"mimeType": "text/plain", "body": {"data": _data("plain version")}},
                ],
            },
            {"mimeType": "application/pdf", "body": {"attachmentId": "att-1"}},
        ],
    }

    assert extract_plaintext(payload) == "plain version"


def test_direct_body_wins():
    payload = {"mimeType": "text/plain", "body": {"data": _data("  Invoice #42  ")}}
    assert extract_plaintext(payload) == "Invoice #42"


def test_direct_html_body_is_stripped():
    payload = {"mimeType": "text/html", "body": {"data": _data("<b>Hello</b>\n\n<i>there</i>")}}
    assert extract_plaintext(payload) == "Hello there"


def test_empty_payload_yields_empty_text():
    assert extract_plaintext(None) == ""
    assert extract_plaintext({"mimeType": "multipart/mixed", "parts": []}) == ""


def test_decode_tolerates_missing_padding():
    assert decode_body_data(_data("ab")) == "ab"
    assert decode_body_data("") == ""


def test_html_to_text_handles_fragments():
    assert html_to_text("<div>one<span>two</span></div>") in ("one two", "onetwo")
    assert html_to_text("") == ""


def test_header_lookup_is_case_insensitive():
    headers = [{"name": "subject", "value": "Hi"}, {"name": "FROM", "value": "a@b.c"}]
    assert get_header(headers, "Subject") == "Hi"
    assert get_header(headers, "From") == "a@b.c"
    assert get_header(headers, "Date") == ""


def test_parse_message_fills_defaults():
    message = {
        "id": "m1",
        "snippet": "Your   trial ends soon",
        "payload": {"mimeType": "multipart/mixed", "headers": [], "parts": []},
    }

    parsed = parse_message(message)

    assert parsed.provider_message_id == "m1"
    assert parsed.subject == "No Subject"
    assert parsed.sender == "Unknown Sender"
    assert parsed.date is None
    assert parsed.content == ""
    assert parsed.content_preview == "Your trial ends soon"


def test_html_to_text_drops_non_content_tags():
    text = html_to_text(HTML_BODY + "<noscript>Enable JavaScript</noscript>")

    assert "Your Spotify Premium" in text
    assert "Renews monthly" in text
    assert "Receipt" not in text
    assert "trackOpen" not in text
    assert "Enable JavaScript" not in text
