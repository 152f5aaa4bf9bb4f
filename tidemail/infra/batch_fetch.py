import logging
import time
import uuid

from tidemail.constants import (
    BATCH_DELAY_SEC,
    BATCH_MESSAGE_FIELDS,
    BATCH_METADATA_HEADERS,
    BATCH_SIZE,
    GMAIL_BATCH_PATH,
)
from tidemail.domain.multipart import build_batch_body, message_metadata_path, parse_batch_response

logger = logging.getLogger(__name__)


def new_boundary():
    return f"batch_boundary_{uuid.uuid4().hex}"


class BatchDetailFetcher:
    """Fetches message metadata for many ids through the multiplexed batch endpoint.

    Ids go out in chunks of ``batch_size``; the fetcher sleeps ``delay_sec``
    between chunks. Result order follows the response, not the input, so
    callers key results by their ``id`` field.
    """

    def __init__(
        self,
        client,
        batch_size=BATCH_SIZE,
        delay_sec=BATCH_DELAY_SEC,
        fields=BATCH_MESSAGE_FIELDS,
        metadata_headers=BATCH_METADATA_HEADERS,
        sleep=time.sleep,
        boundary_factory=new_boundary,
    ):
        self.client = client
        self.batch_size = max(1, int(batch_size or 1))
        self.delay_sec = max(0.0, float(delay_sec or 0.0))
        self.fields = fields
        self.metadata_headers = tuple(metadata_headers)
        self.sleep = sleep
        self.boundary_factory = boundary_factory

    def _chunks(self, ids):
        for start in range(0, len(ids), self.batch_size):
            yield ids[start : start + self.batch_size]

    def fetch_details(self, ids):
        ids = [message_id for message_id in ids or [] if message_id]
        results = []
        chunks = list(self._chunks(ids))
        for index, chunk in enumerate(chunks):
            boundary = self.boundary_factory()
            paths = [
                message_metadata_path(GMAIL_BATCH_PATH, message_id, self.fields, self.metadata_headers)
                for message_id in chunk
            ]
            text = self.client.post_batch(build_batch_body(paths, boundary), boundary)
            parsed = parse_batch_response(text, boundary)
            logger.debug("Batch %d/%d returned %d objects for %d ids", index + 1, len(chunks), len(parsed), len(chunk))
            results.extend(parsed)
            if index < len(chunks) - 1:
                self.sleep(self.delay_sec)
        return results
