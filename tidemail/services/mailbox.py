import base64
import logging
from collections import Counter

from tidemail.constants import BATCH_DELAY_SEC, BATCH_SIZE, DEFAULT_LABEL_ID, DEFAULT_PAGE_SIZE, UNREAD_LABEL_ID
from tidemail.domain.messages import apply_label_patch, is_read
from tidemail.infra.auth import CredentialManager
from tidemail.infra.batch_fetch import BatchDetailFetcher
from tidemail.infra.config_store import Config
from tidemail.infra.gmail_client import GmailClient
from tidemail.infra.session_store import SessionStore
from tidemail.services.label_store import LabelStore
from tidemail.services.page_cache import PaginatedMessageCache

logger = logging.getLogger(__name__)


class MailboxService:
    """Read model and mutation entry points handed to the UI.

    Owns the user-visible error state: the page cache swallows its own fetch
    errors, and this service surfaces them through ``last_error``.
    """

    def __init__(self, credentials, client, fetcher, store, page_size=DEFAULT_PAGE_SIZE, label_id=DEFAULT_LABEL_ID):
        self.credentials = credentials
        self.client = client
        self.fetcher = fetcher
        self.store = store
        self.labels = LabelStore(client, store)
        self.cache = PaginatedMessageCache(client, fetcher, label_id=label_id)
        self.page_size = page_size
        self.current_page = 0
        self.load_attempted = False
        self.last_error = None
        self._details = {}

    @property
    def selected_label_id(self):
        return self.cache.label_id

    @property
    def loading(self):
        return self.cache.loading

    @property
    def total_count(self):
        return self.cache.total_count

    @property
    def auth_failed(self):
        return self.credentials.auth_failed

    @property
    def needs_retry(self):
        """True when a load was attempted but produced nothing to show."""
        return self.load_attempted and not self.cache.loading and self.cache.total_count == 0

    def _record_error(self, exc):
        self.last_error = str(exc) or type(exc).__name__

    def load_labels(self):
        try:
            return self.labels.load()
        except Exception as exc:
            self._record_error(exc)
            raise

    def select_label(self, label_id):
        if label_id == self.cache.label_id:
            return self.page_messages()
        self.cache.set_scope(label_id)
        self.current_page = 0
        self.load_attempted = False
        return self.load_current_page()

    def set_page(self, page):
        self.current_page = max(0, int(page))
        return self.load_current_page()

    def set_page_size(self, page_size):
        page_size = int(page_size)
        if page_size <= 0 or page_size == self.page_size:
            return self.page_messages()
        # Absolute positions survive a page size change, so keep the first visible row in view.
        first_row = self.current_page * self.page_size
        self.page_size = page_size
        self.current_page = first_row // page_size
        return self.load_current_page()

    def load_current_page(self):
        self.load_attempted = True
        self.cache.fetch_page(self.current_page, self.page_size)
        error = self.cache.last_error
        if error is not None:
            self._record_error(error)
        else:
            self.last_error = None
        return self.page_messages()

    def refresh(self):
        self.cache.reset()
        self.current_page = 0
        self._details.clear()
        return self.load_current_page()

    def page_messages(self):
        return self.cache.get_page_slice(self.current_page, self.page_size)

    def patch_message_labels(self, message, add_label_ids=None, remove_label_ids=None):
        """Apply a label change locally first, then on the server; roll back if the server refuses."""
        updated = apply_label_patch(message, add_label_ids, remove_label_ids)
        self.cache.update_item(updated)
        try:
            self.client.modify_message_labels(message["id"], add_label_ids, remove_label_ids)
        except Exception as exc:
            self.cache.update_item(message)
            self._record_error(exc)
            raise
        if message["id"] in self._details:
            self._details[message["id"]] = apply_label_patch(
                self._details[message["id"]], add_label_ids, remove_label_ids
            )
        return updated

    def mark_read(self, messages, as_read=True):
        originals = [m for m in messages or [] if m and m.get("id")]
        if not originals:
            return []
        add, remove = ([], [UNREAD_LABEL_ID]) if as_read else ([UNREAD_LABEL_ID], [])
        updated = [apply_label_patch(m, add, remove) for m in originals]
        for message in updated:
            self.cache.update_item(message)
        try:
            self.client.mark_read([m["id"] for m in originals], as_read=as_read)
        except Exception as exc:
            for message in originals:
                self.cache.update_item(message)
            self._record_error(exc)
            raise
        return updated

    def set_label_visibility(self, label, visible):
        try:
            return self.labels.set_visibility(label, visible)
        except Exception as exc:
            self._record_error(exc)
            raise

    def open_message(self, message_id):
        cached = self._details.get(message_id)
        if cached is not None:
            return cached
        try:
            message = self.client.get_message(message_id)
        except Exception as exc:
            self._record_error(exc)
            raise
        self._details[message_id] = message
        return message

    def open_thread(self, thread_id):
        try:
            return self.client.get_thread_messages(thread_id)
        except Exception as exc:
            self._record_error(exc)
            raise

    def download_attachment(self, message_id, attachment):
        """Return ``(bytes, filename)``; small attachments already carry their data inline."""
        encoded = attachment.get("data")
        if encoded:
            content = base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4))
        else:
            try:
                encoded = self.client.get_attachment_data(message_id, attachment.get("attachmentId"))
            except Exception as exc:
                self._record_error(exc)
                raise
            content = base64.b64decode(encoded + "=" * (-len(encoded) % 4))
        return content, attachment.get("filename") or "attachment.bin"

    def unread_counts(self):
        counts = Counter()
        for message in self.cache.messages:
            if is_read(message):
                continue
            for label_id in message.get("labelIds") or []:
                counts[label_id] += 1
        return dict(counts)

    def sign_out(self):
        self.credentials.sign_out()
        self.cache.reset()
        self.labels.clear()
        self._details.clear()
        self.load_attempted = False
        self.last_error = None

    def close(self):
        self.client.close()
        self.credentials.close()


def open_mailbox(config=None, store=None, identity=None):
    """Construct the per-session object graph from configuration."""
    config = config if config is not None else Config()
    if config.load_error:
        logger.warning("Config could not be loaded, using defaults: %s", config.load_error)
    store = store if store is not None else SessionStore()
    credentials = CredentialManager(config=config, store=store, identity=identity)
    client = GmailClient(credentials, request_timeout=config.get_float("http_timeout_sec", None))
    fetcher = BatchDetailFetcher(
        client,
        batch_size=config.get_int("batch_size", BATCH_SIZE),
        delay_sec=config.get_float("batch_delay_sec", BATCH_DELAY_SEC),
    )
    return MailboxService(
        credentials,
        client,
        fetcher,
        store,
        page_size=config.get_int("page_size", DEFAULT_PAGE_SIZE),
        label_id=(config.get("initial_label_id") or DEFAULT_LABEL_ID),
    )
