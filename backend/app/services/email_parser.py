"""Normalization of Gmail API message resources."""

import base64
import binascii
import re
from dataclasses import dataclass
from datetime import datetime, timezone

from app.db.models import utcnow

_ANGLE_ADDRESS = re.compile(r"<(.+)>")


@dataclass
class ParsedEmail:
    """A Gmail message reduced to the fields the sync engine stores."""

    message_id: str
    thread_id: str
    sender_email: str
    sender_name: str
    to_address: str
    subject: str
    body_text: str
    sent_at: datetime
    received_at: datetime


def parse_address(header_value: str) -> tuple[str, str]:
    """
    Split an address header into (display_name, address).

    "Jane Doe <jane@example.com>" -> ("Jane Doe", "jane@example.com").
    Without an angle-bracket part the whole value is the address.
    """
    value = (header_value or "").strip()
    match = _ANGLE_ADDRESS.search(value)
    if not match:
        return "", value
    name = _ANGLE_ADDRESS.sub("", value).strip().strip('"').strip()
    return name, match.group(1).strip()


def get_header(message: dict, name: str) -> str:
    """Case-insensitive header lookup; empty string when absent."""
    headers = message.get("payload", {}).get("headers", [])
    for header in headers:
        if header.get("name", "").lower() == name.lower():
            return header.get("value", "")
    return ""


def decode_body(data: str | None) -> str:
    """Decode Gmail's base64url body data."""
    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return ""


def _find_plain_text(parts: list[dict]) -> str:
    # Depth-first so multipart/alternative nested in multipart/mixed is covered
    for part in parts:
        if part.get("mimeType") == "text/plain":
            text = decode_body(part.get("body", {}).get("data"))
            if text:
                return text
        nested = part.get("parts")
        if nested:
            text = _find_plain_text(nested)
            if text:
                return text
    return ""


def extract_body_text(message: dict) -> str:
    """Top-level body, else the first text/plain part, else the snippet."""
    payload = message.get("payload", {})
    text = decode_body(payload.get("body", {}).get("data"))
    if not text and payload.get("parts"):
        text = _find_plain_text(payload["parts"])
    return text or message.get("snippet", "")


def parse_internal_date(message: dict) -> datetime | None:
    """Convert Gmail's internalDate (epoch milliseconds as a string) to a UTC datetime."""
    raw = message.get("internalDate")
    if raw is None:
        return None
    try:
        return datetime.fromtimestamp(int(raw) / 1000, tz=timezone.utc)
    except (TypeError, ValueError):
        return None


def parse_gmail_message(message: dict, received_at: datetime | None = None) -> ParsedEmail:
    """
    Normalize a Gmail API message resource.

    Args:
        message: Message resource as returned by users.messages.get
        received_at: Processing time (defaults to now)
    """
    received_at = received_at or utcnow()
    sender_name, sender_email = parse_address(get_header(message, "From"))
    _, to_address = parse_address(get_header(message, "To"))

    return ParsedEmail(
        message_id=message["id"],
        thread_id=message.get("threadId") or message["id"],
        sender_email=sender_email,
        sender_name=sender_name,
        to_address=to_address,
        subject=get_header(message, "Subject"),
        body_text=extract_body_text(message),
        sent_at=parse_internal_date(message) or received_at,
        received_at=received_at,
    )
