"""Hand-rolled multipart/mixed helpers for the Gmail batch endpoint.

The batch endpoint answers with one part per sub-request. Each part holds an
``application/http`` envelope: an HTTP status line, response headers, then a
JSON body. The parts are scanned rather than parsed as MIME because a part can
carry more than one JSON object.
"""

import json
import logging
import re
from urllib.parse import quote

from tidemail.errors import RateLimitError

logger = logging.getLogger(__name__)

STATUS_LINE_RE = re.compile(r"HTTP/\d(?:\.\d)? (\d{3})")


def build_batch_body(request_paths, boundary):
    """Assemble a multipart/mixed body with one ``GET`` sub-request per path."""
    chunks = []
    for path in request_paths:
        chunks.append(
            "\r\n".join(
                [
                    f"--{boundary}",
                    "Content-Type: application/http",
                    "",
                    f"GET {path}",
                    "",
                ]
            )
        )
    return "".join(chunks) + f"\r\n--{boundary}--"


def message_metadata_path(base_path, message_id, fields, metadata_headers):
    query = ["format=metadata"]
    query.extend(f"metadataHeaders={quote(name)}" for name in metadata_headers)
    query.append(f"fields={quote(fields, safe=',()')}")
    return f"{base_path}/messages/{quote(message_id, safe='')}?{'&'.join(query)}"


def split_batch_parts(text, boundary):
    return (text or "").split(f"--{boundary}")


def part_status_codes(part):
    return [int(code) for code in STATUS_LINE_RE.findall(part or "")]


def find_json_spans(text):
    """Yield ``(start, end)`` index pairs of balanced top-level ``{...}`` spans.

    Braces inside JSON string literals (including escaped quotes) do not count
    toward nesting. An unterminated trailing object ends the scan.
    """
    length = len(text)
    idx = 0
    while idx < length:
        start = text.find("{", idx)
        if start == -1:
            return
        depth = 0
        in_string = False
        escaped = False
        end = -1
        for pos in range(start, length):
            ch = text[pos]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    end = pos
                    break
        if end == -1:
            return
        yield start, end + 1
        idx = end + 1


def extract_json_objects(text):
    """Parse every balanced JSON object in ``text``; malformed spans are logged and skipped."""
    objects = []
    for start, end in find_json_spans(text or ""):
        fragment = text[start:end]
        try:
            objects.append(json.loads(fragment))
        except ValueError as exc:
            logger.warning("Skipping malformed JSON fragment in batch part: %s (%.80s)", exc, fragment)
    return objects


def parse_batch_response(text, boundary):
    """Return all JSON objects in a batch response, failing fast on any 429 part."""
    results = []
    for part in split_batch_parts(text, boundary):
        if 429 in part_status_codes(part):
            raise RateLimitError("Gmail API rate limit (429) encountered. Stopping batch fetch.")
        results.extend(extract_json_objects(part))
    return results
