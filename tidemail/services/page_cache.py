import logging
import threading

from tidemail.constants import DEFAULT_LABEL_ID
from tidemail.domain.messages import normalize_message

logger = logging.getLogger(__name__)


class PaginatedMessageCache:
    """Sparse, absolute-index cache of one label's message list.

    ``_buffer[k]`` holds the message at position ``k`` of the remote ordering,
    or ``None`` if never fetched. ``_cursors[i]`` is the page token for page
    ``i``; the chain only grows forward because the API exposes no offsets.

    Fetch errors never propagate: the cache resets to empty and records the
    error in ``last_error`` for the caller that started the fetch.
    """

    def __init__(self, client, fetcher, label_id=DEFAULT_LABEL_ID):
        self.client = client
        self.fetcher = fetcher
        self._lock = threading.RLock()
        self.label_id = label_id
        self.loading = False
        self.last_error = None
        self._generation = 0
        self._reset_state()

    def _reset_state(self):
        self._buffer = []
        self._cursors = [None]
        self._total = 0
        self._cursor_page_size = None
        self.current_page = 0

    @property
    def total_count(self):
        return self._total

    @property
    def cursor_chain(self):
        with self._lock:
            return list(self._cursors)

    @property
    def messages(self):
        """Every cached message, in buffer order, skipping empty slots."""
        with self._lock:
            return [m for m in self._buffer if m is not None]

    def set_scope(self, label_id):
        """Switch label scope; buffer, cursors and count are dropped together."""
        with self._lock:
            self.label_id = label_id
            self.reset()

    def reset(self):
        with self._lock:
            self._generation += 1
            self._reset_state()

    def is_cache_hit(self, page, page_size):
        start = page * page_size
        end = start + page_size
        with self._lock:
            window = self._buffer[start:end]
            return len(window) == page_size and all(m is not None for m in window) and end <= self._total

    def fetch_page(self, page, page_size):
        if page < 0 or page_size <= 0:
            return
        if self.is_cache_hit(page, page_size):
            self.loading = False
            self.last_error = None
            return

        with self._lock:
            # Cursors are only valid for the page size that produced them.
            if page_size != self._cursor_page_size:
                self._cursors = [None]
                self._cursor_page_size = page_size
            generation = self._generation
            label_id = self.label_id
        self.loading = True
        try:
            self._fetch_missing(page, page_size, label_id, generation)
            self.last_error = None
        except Exception as exc:
            logger.warning("Fetching page %s of %s failed: %s", page, label_id, exc)
            with self._lock:
                if generation == self._generation:
                    self._buffer = []
                    self._total = 0
            self.last_error = exc
        finally:
            self.loading = False

    def _backfill_cursors(self, page, page_size, label_id, generation):
        """Walk the cursor chain forward until it holds a token for ``page``.

        Returns ``False`` when the collection ends before ``page``.
        """
        while True:
            with self._lock:
                if generation != self._generation:
                    return False
                if len(self._cursors) > page:
                    # A missing cursor past page 0 means the previous page was the last one.
                    return page == 0 or self._cursors[page] is not None
                prev_token = self._cursors[-1]
                if prev_token is None and len(self._cursors) > 1:
                    return False
            result = self.client.list_messages(label_id, page_size, prev_token)
            with self._lock:
                if generation != self._generation:
                    return False
                self._cursors.append(result.next_page_token)
                self._total = result.total

    def _fetch_missing(self, page, page_size, label_id, generation):
        if not self._backfill_cursors(page, page_size, label_id, generation):
            logger.debug("Page %s of %s is past the end of the collection", page, label_id)
            return

        with self._lock:
            if generation != self._generation or len(self._cursors) <= page:
                return
            token = self._cursors[page]
        if page > 0 and token is None:
            return
        result = self.client.list_messages(label_id, page_size, token)

        ids = [stub["id"] for stub in result.stubs]
        details = self.fetcher.fetch_details(ids) if ids else []
        by_id = {}
        for meta in details:
            message = normalize_message(meta)
            if message is not None:
                by_id[message["id"]] = message
        # Missing records leave their slot empty so later positions stay aligned.
        hydrated = [by_id.get(message_id) for message_id in ids]

        start = page * page_size
        with self._lock:
            if generation != self._generation:
                logger.debug("Discarding page %s of %s fetched for a previous scope", page, label_id)
                return
            self._total = result.total
            if len(self._cursors) == page + 1:
                self._cursors.append(result.next_page_token)
            if len(self._buffer) < start + len(hydrated):
                self._buffer.extend([None] * (start + len(hydrated) - len(self._buffer)))
            for offset, message in enumerate(hydrated):
                self._buffer[start + offset] = message
            self.current_page = page

    def get_page_slice(self, page, page_size):
        if page < 0 or page_size <= 0:
            return []
        start = page * page_size
        with self._lock:
            return [m for m in self._buffer[start : start + page_size] if m is not None]

    def get_cached(self, message_id):
        with self._lock:
            for message in self._buffer:
                if message is not None and message.get("id") == message_id:
                    return message
        return None

    def update_item(self, message):
        """Replace a cached message in place; its position is left untouched."""
        message_id = (message or {}).get("id")
        if not message_id:
            return False
        updated = False
        with self._lock:
            for index, existing in enumerate(self._buffer):
                if existing is not None and existing.get("id") == message_id:
                    self._buffer[index] = {**existing, **message}
                    updated = True
        return updated
