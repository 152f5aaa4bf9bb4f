import base64
import binascii
import html
import re
from datetime import timezone
from email.utils import parsedate_to_datetime

from tidemail.constants import BYTES_PER_KB, BYTES_PER_MB, STARRED_LABEL_ID, UNREAD_LABEL_ID

DISPLAY_NAME_RE = re.compile(r"^[\"' ]*(.*?)[\"' ]*(<.*>)$")


def is_valid_message(meta):
    return (
        isinstance(meta, dict)
        and isinstance(meta.get("id"), str)
        and bool(meta.get("id"))
        and isinstance(meta.get("threadId"), str)
        and isinstance(meta.get("snippet"), str)
        and isinstance(meta.get("labelIds"), list)
    )


def normalize_message(meta):
    """Keep the fields the list view needs; ``None`` for records missing required fields."""
    if not is_valid_message(meta):
        return None
    return {
        "id": meta["id"],
        "threadId": meta["threadId"],
        "snippet": meta["snippet"],
        "labelIds": list(meta["labelIds"]),
        "payload": meta.get("payload"),
    }


def _header(message, name):
    payload = (message or {}).get("payload") or {}
    wanted = name.lower()
    for header in payload.get("headers") or []:
        if (header.get("name") or "").lower() == wanted:
            return header.get("value") or ""
    return ""


def get_subject(message):
    return _header(message, "Subject")


def get_from(message):
    """Display name of the sender, or the bare address when there is none."""
    value = _header(message, "From")
    if not value:
        return ""
    match = DISPLAY_NAME_RE.match(value)
    if match and match.group(1):
        return match.group(1).strip()
    return value.strip()


def get_to(message):
    value = _header(message, "To")
    if not value:
        return []
    return [addr.strip() for addr in value.split(",") if addr.strip()]


def get_date(message):
    value = _header(message, "Date")
    if not value:
        return ""
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return ""
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()


def is_read(message):
    if not message:
        return True
    return UNREAD_LABEL_ID not in (message.get("labelIds") or [])


def is_starred(message):
    return STARRED_LABEL_ID in ((message or {}).get("labelIds") or [])


def apply_label_patch(message, add_label_ids=None, remove_label_ids=None):
    """Return a copy of ``message`` with labels added/removed, preserving existing order."""
    remove = set(remove_label_ids or [])
    label_ids = [label_id for label_id in message.get("labelIds") or [] if label_id not in remove]
    for label_id in add_label_ids or []:
        if label_id not in label_ids and label_id not in remove:
            label_ids.append(label_id)
    return {**message, "labelIds": label_ids}


def decode_base64(data):
    """Decode a url-safe base64 body to text; non UTF-8 payloads fall back to latin-1."""
    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError):
        return ""
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        text = raw.decode("latin-1")
    return text.lstrip("\ufeff")


def _plain_to_html(text):
    return html.escape(text).replace("\r\n", "\n").replace("\r", "\n").replace("\n", "<br/>")


def _body_data(part):
    return ((part or {}).get("body") or {}).get("data")


def extract_html_content(part):
    """HTML body of a message payload.

    A single-part body is used as is; otherwise the first ``text/html`` part
    wins, then ``text/plain`` (escaped, line breaks kept), then nested parts.
    """
    if not part:
        return ""
    data = _body_data(part)
    if data:
        text = decode_base64(data)
        return _plain_to_html(text) if part.get("mimeType") == "text/plain" else text

    parts = part.get("parts") or []
    for mime_type in ("text/html", "text/plain"):
        for child in parts:
            if child.get("mimeType") == mime_type and _body_data(child):
                return extract_html_content(child)
    for child in parts:
        if child.get("parts"):
            nested = extract_html_content(child)
            if nested:
                return nested
    return ""


def _is_inline_image(part):
    disposition = ""
    for header in part.get("headers") or []:
        if (header.get("name") or "").lower() == "content-disposition":
            disposition = (header.get("value") or "").lower()
    return "inline" in disposition and (part.get("mimeType") or "").startswith("image/")


def extract_attachments(payload):
    """Every named part of ``payload``, depth first, with its attachment id or inline data."""
    attachments = []

    def _walk(part, part_path=""):
        if not part:
            return
        if part.get("filename"):
            body = part.get("body") or {}
            attachment = {
                "id": part_path or part.get("partId") or f"attachment-{len(attachments) + 1}",
                "filename": part["filename"],
                "mimeType": part.get("mimeType") or "application/octet-stream",
                "size": body.get("size") or 0,
                "attachmentId": body.get("attachmentId"),
                "inline": _is_inline_image(part),
            }
            if body.get("data"):
                attachment["data"] = body["data"]
            attachments.append(attachment)
        for index, child in enumerate(part.get("parts") or [], start=1):
            _walk(child, f"{part_path}.{index}" if part_path else str(index))

    _walk(payload)
    return attachments


def format_size(size_bytes):
    """Format file size for display."""
    if not size_bytes:
        return ""
    if size_bytes < BYTES_PER_KB:
        return f"{size_bytes} B"
    if size_bytes < BYTES_PER_MB:
        return f"{size_bytes / BYTES_PER_KB:.1f} KB"
    return f"{size_bytes / BYTES_PER_MB:.1f} MB"
