"""Plaintext extraction from mailbox provider message payloads."""

from __future__ import annotations

import base64
import binascii
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

from selectolax.lexbor import LexborHTMLParser

logger = logging.getLogger(__name__)

MAX_CONTENT_CHARS = 50_000
PREVIEW_CHARS = 200

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass
class ParsedMessage:
    """Fields persisted for one message."""

    provider_message_id: str
    subject: str
    sender: str
    date: Optional[str]
    content: str
    content_preview: str


def decode_body_data(data: str) -> str:
    """Decode base64url body data, tolerating missing padding."""
    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError) as e:
        logger.warning(f"Could not decode message body ({len(data)} chars): {e}")
        return ""


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


def html_to_text(html: str) -> str:
    """
    Strip tags from an HTML body and collapse whitespace.

    Script, style and head content is dropped. The same input always
    yields the same output.
    """
    if not html:
        return ""
    tree = LexborHTMLParser(html)
    tree.strip_tags(["script", "style", "head", "noscript"])
    root = tree.body or tree.root
    if root is None:
        return ""
    return collapse_whitespace(root.text(separator=" "))


def _find_part(part: dict[str, Any], mime_type: str) -> Optional[dict[str, Any]]:
    """Depth-first search for the first part of ``mime_type`` carrying data."""
    if part.get("mimeType") == mime_type and part.get("body", {}).get("data"):
        return part
    for child in part.get("parts") or []:
        found = _find_part(child, mime_type)
        if found is not None:
            return found
    return None


def extract_plaintext(payload: Optional[dict[str, Any]]) -> str:
    """
    Extract readable text from a message payload.

    Order of preference:
    1. A body attached directly to the payload (HTML bodies are stripped)
    2. The first ``text/plain`` part anywhere in the multipart tree
    3. The first ``text/html`` part, stripped to text
    """
    if not payload:
        return ""

    direct = payload.get("body", {}).get("data")
    if direct:
        text = decode_body_data(direct)
        if payload.get("mimeType") == "text/html":
            return html_to_text(text)
        return text.strip()

    plain = _find_part(payload, "text/plain")
    if plain is not None:
        return decode_body_data(plain["body"]["data"]).strip()

    html = _find_part(payload, "text/html")
    if html is not None:
        return html_to_text(decode_body_data(html["body"]["data"]))

    return ""


def get_header(headers: list[dict[str, str]], name: str) -> str:
    """Case-insensitive header lookup."""
    lowered = name.lower()
    for header in headers or []:
        if header.get("name", "").lower() == lowered:
            return header.get("value", "")
    return ""


def parse_message(message: dict[str, Any]) -> ParsedMessage:
    """Turn a full-format provider message into the fields we store."""
    payload = message.get("payload") or {}
    headers = payload.get("headers") or []

    content = extract_plaintext(payload)[:MAX_CONTENT_CHARS]
    preview_source = content or message.get("snippet", "")

    return ParsedMessage(
        provider_message_id=message["id"],
        subject=get_header(headers, "Subject") or "No Subject",
        sender=get_header(headers, "From") or "Unknown Sender",
        date=get_header(headers, "Date") or None,
        content=content,
        content_preview=collapse_whitespace(preview_source)[:PREVIEW_CHARS],
    )
