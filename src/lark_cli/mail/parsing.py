"""Message body and filename helpers for show/fetch."""

import re
from datetime import datetime, timezone
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser

SUBJECT_FILENAME_MAX = 60

_UNSAFE_CHARS = {
    "/": "-",
    "\\": "-",
    ":": "-",
    "*": "",
    "?": "",
    '"': "",
    "<": "",
    ">": "",
    "|": "",
    "\n": " ",
    "\r": "",
}


def _text_content(part: EmailMessage) -> str:
    try:
        content = part.get_content()
    except (LookupError, UnicodeDecodeError, ValueError):
        payload = part.get_payload(decode=True) or b""
        return payload.decode("utf-8", errors="replace")
    return content if isinstance(content, str) else ""


def _strip_html(html: str) -> str:
    text = re.sub(r"(?is)<(script|style).*?</\1>", "", html)
    text = re.sub(r"(?i)<br\s*/?>|</p>", "\n", text)
    text = re.sub(r"<[^>]+>", "", text)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def extract_body_text(raw: bytes) -> str:
    """Extract a readable text body from raw message bytes.

    Prefers the first text/plain part, falls back to tag-stripped text/html.
    Returns an empty string when the message has neither.
    """
    msg = BytesParser(policy=policy.default).parsebytes(raw)

    plain = ""
    html = ""
    for part in msg.walk():
        if part.is_multipart() or part.get_content_disposition() == "attachment":
            continue
        ct = part.get_content_type()
        if ct == "text/plain" and not plain:
            plain = _text_content(part)
        elif ct == "text/html" and not html:
            html = _text_content(part)

    if plain:
        return plain
    return _strip_html(html) if html else ""


def sanitize_filename(s: str) -> str:
    """Replace or drop characters that are unsafe in file names."""
    for char, replacement in _UNSAFE_CHARS.items():
        s = s.replace(char, replacement)
    return s.strip()


def message_filename(date: int, subject: str, now: datetime | None = None) -> str:
    """Build '<YYYY-MM-DD> <subject>.eml' for a downloaded message.

    Unknown dates (0) use today's date; empty subjects become 'email'.
    """
    if date:
        day = datetime.fromtimestamp(date, tz=timezone.utc)
    else:
        day = now or datetime.now(timezone.utc)
    name = sanitize_filename(subject)[:SUBJECT_FILENAME_MAX].strip() if subject else ""
    return f"{day:%Y-%m-%d} {name or 'email'}.eml"
