"""
Precision Search - Mail Message Parsing

Helpers over the mailbox API's full-format message payload
(headers, multipart body tree, base64url-encoded parts).
"""

import base64
import binascii
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

DOCUMENT_MIME_TYPES = {
    "application/pdf",
    "image/jpeg",
    "image/png",
    "image/webp",
    "image/gif",
}

EXTENSION_MIME_TYPES = {
    ".pdf": "application/pdf",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
    ".gif": "image/gif",
}

_ANGLE_EMAIL = re.compile(r"<([^>]+)>")
_BARE_EMAIL = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+")


@dataclass
class MailAttachment:
    """Attachment reference found in a message's part tree."""
    attachment_id: str
    filename: str
    mime_type: str
    size: int = 0

    @property
    def is_pdf(self) -> bool:
        return self.mime_type == "application/pdf"

    @property
    def is_likely_receipt(self) -> bool:
        return self.mime_type in DOCUMENT_MIME_TYPES


def decode_base64url(data: str) -> bytes:
    """Decode base64url data, tolerating missing padding."""
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded)


def normalize_mime_type(filename: str, mime_type: Optional[str]) -> str:
    """Use the extension when the declared type is missing or generic."""
    mime_type = (mime_type or "").lower()
    if mime_type and mime_type != "application/octet-stream":
        return mime_type
    lower = (filename or "").lower()
    for extension, resolved in EXTENSION_MIME_TYPES.items():
        if lower.endswith(extension):
            return resolved
    return mime_type or "application/octet-stream"


def extract_header(message: Dict[str, Any], name: str) -> Optional[str]:
    headers = (message.get("payload") or {}).get("headers") or []
    wanted = name.lower()
    for header in headers:
        if (header.get("name") or "").lower() == wanted:
            return header.get("value")
    return None


def parse_sender(from_header: Optional[str]) -> Tuple[Optional[str], Optional[str], Optional[str]]:
    """
    Split a From header into (email, domain, display name).

    "ACME Billing <billing@acme.com>" -> ("billing@acme.com", "acme.com", "ACME Billing")
    """
    if not from_header:
        return None, None, None

    match = _ANGLE_EMAIL.search(from_header)
    if match:
        email = match.group(1).strip()
    else:
        bare = _BARE_EMAIL.search(from_header)
        email = bare.group(0) if bare else from_header.strip()
    email = email.lower()

    domain = email.rsplit("@", 1)[1] if "@" in email else None

    name = None
    if match:
        name = _ANGLE_EMAIL.sub("", from_header).replace('"', "").replace("'", "").strip() or None
    return email, domain, name


def message_date(message: Dict[str, Any]) -> Optional[datetime]:
    """internalDate is epoch milliseconds as a string."""
    raw = message.get("internalDate")
    if raw in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(raw) / 1000, tz=timezone.utc)
    except (TypeError, ValueError):
        logger.warning(f"Unparseable internalDate on message {message.get('id')}: {raw!r}")
        return None


def extract_attachments(message: Dict[str, Any]) -> List[MailAttachment]:
    """Walk the part tree and collect parts carrying a filename and attachment id."""
    found: List[MailAttachment] = []

    def walk(part: Dict[str, Any]):
        body = part.get("body") or {}
        filename = part.get("filename") or ""
        attachment_id = body.get("attachmentId")
        if filename and attachment_id:
            found.append(MailAttachment(
                attachment_id=attachment_id,
                filename=filename,
                mime_type=normalize_mime_type(filename, part.get("mimeType")),
                size=int(body.get("size") or 0),
            ))
        for child in part.get("parts") or []:
            walk(child)

    walk(message.get("payload") or {})
    return found


def extract_body(message: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    """Return (html, text) bodies; the first part of each type wins."""
    html: Optional[str] = None
    text: Optional[str] = None

    def walk(part: Dict[str, Any]):
        nonlocal html, text
        mime_type = (part.get("mimeType") or "").lower()
        data = (part.get("body") or {}).get("data")
        if data and not part.get("filename"):
            try:
                decoded = decode_base64url(data).decode("utf-8", errors="replace")
            except (binascii.Error, ValueError):
                decoded = None
            if decoded is not None:
                if mime_type == "text/html" and html is None:
                    html = decoded
                elif mime_type == "text/plain" and text is None:
                    text = decoded
        for child in part.get("parts") or []:
            walk(child)

    walk(message.get("payload") or {})
    return html, text
