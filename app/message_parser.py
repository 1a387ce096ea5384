"""
Turns raw RFC822 bytes fetched from the mailbox into IncomingMessage objects
"""
import email
import logging
from email.header import decode_header
from email.message import Message
from email.utils import getaddresses
from typing import Optional, Tuple

from bs4 import BeautifulSoup
from pydantic import ValidationError

from .exceptions import MessageParseError
from .models import IncomingMessage

logger = logging.getLogger(__name__)


def parse_message(uid: str, raw: bytes) -> IncomingMessage:
    """
    Parse a fetched message

    Args:
        uid: Mailbox sequence identifier the bytes were fetched under
        raw: Full RFC822 message

    Returns:
        Parsed IncomingMessage

    Raises:
        MessageParseError: If the bytes are empty or cannot be parsed
    """
    if not raw:
        raise MessageParseError(f"Message {uid} has no content")

    try:
        email_message = email.message_from_bytes(bytes(raw))

        # Only the first From address counts as the sender
        from_header = decode_header_value(email_message.get("From", ""))
        addresses = [addr for _, addr in getaddresses([from_header]) if addr]
        sender = addresses[0] if addresses else ""

        body_text, body_html = extract_body(email_message)
        if not body_text and body_html:
            body_text = html_to_text(body_html)

        return IncomingMessage(
            uid=uid,
            message_id=(email_message.get("Message-ID") or "").strip() or None,
            sender=sender,
            subject=decode_header_value(email_message.get("Subject", "")) or "No subject",
            body_text=body_text or "",
            body_html=body_html or "",
            in_reply_to=email_message.get("In-Reply-To"),
            references=email_message.get("References"),
        )
    except (ValidationError, LookupError, TypeError, ValueError) as e:
        raise MessageParseError(f"Could not parse message {uid}: {e}") from e


def decode_header_value(header: str) -> str:
    """Decode email header that might be encoded"""
    if not header:
        return ""

    decoded_parts = []
    for part, encoding in decode_header(str(header)):
        if isinstance(part, bytes):
            decoded_parts.append(
                part.decode(encoding or "utf-8", errors="replace")
            )
        else:
            decoded_parts.append(part)

    return "".join(decoded_parts)


def extract_body(email_message: Message) -> Tuple[Optional[str], Optional[str]]:
    """
    Extract text and HTML body from email

    Returns:
        Tuple of (text_body, html_body)
    """
    body_text = None
    body_html = None

    parts = email_message.walk() if email_message.is_multipart() else [email_message]
    for part in parts:
        content_type = part.get_content_type()

        # Skip attachments
        if "attachment" in str(part.get("Content-Disposition", "")):
            continue
        if content_type not in ("text/plain", "text/html"):
            continue

        payload = part.get_payload(decode=True)
        if not payload:
            continue

        charset = part.get_content_charset() or "utf-8"
        try:
            decoded_payload = payload.decode(charset, errors="replace")
        except LookupError:
            logger.warning(f"Unknown charset {charset}, decoding as utf-8")
            decoded_payload = payload.decode("utf-8", errors="replace")

        if content_type == "text/plain" and body_text is None:
            body_text = decoded_payload
        elif content_type == "text/html" and body_html is None:
            body_html = decoded_payload

    return body_text, body_html


def html_to_text(body_html: str) -> str:
    """Plain text of an HTML body, one line per block"""
    soup = BeautifulSoup(body_html, "html.parser")
    for element in soup(["script", "style"]):
        element.decompose()
    return soup.get_text("\n", strip=True)
