import logging
import threading

from tidemail.constants import SESSION_KEY_LABEL_VISIBILITY
from tidemail.domain.collection import SortedFilteredCollection, Versioned
from tidemail.domain.labels import LabelOrigin, build_label, is_label_visible, label_sort_key

logger = logging.getLogger(__name__)


class LabelStore:
    """Mailbox labels, sorted for the sidebar and filtered to the visible ones.

    Every mutation replaces ``state`` with a bumped ``Versioned`` wrapper, so a
    consumer only needs to compare ``version`` to notice a change.
    """

    def __init__(self, client, store):
        self.client = client
        self.store = store
        self._lock = threading.Lock()
        self.state = Versioned(
            SortedFilteredCollection("id", label_sort_key, filter_fn=is_label_visible, filter_enabled=True)
        )

    @property
    def collection(self):
        return self.state.data

    @property
    def version(self):
        return self.state.version

    @property
    def sorted_filtered(self):
        return self.state.data.sorted_filtered

    def by_id(self, label_id):
        return self.state.data.get(label_id)

    def _overrides(self):
        overrides = self.store.get(SESSION_KEY_LABEL_VISIBILITY) or {}
        return overrides if isinstance(overrides, dict) else {}

    def load(self):
        raw_labels = self.client.list_labels()
        overrides = self._overrides()
        labels = [build_label(raw, overrides) for raw in raw_labels if isinstance(raw, dict) and raw.get("id")]
        with self._lock:
            self.state.data.set_entries([(label.id, label) for label in labels])
            self.state = self.state.bump()
        logger.info("Loaded %d labels", len(labels))
        return self.sorted_filtered

    def patch(self, label, changes):
        with self._lock:
            updated = self.state.data.patch(label, changes)
            self.state = self.state.bump()
        return updated

    def set_show_hidden(self, show_hidden):
        """Show every label (settings edit mode) or only the visible ones."""
        with self._lock:
            changed = self.state.data.set_filter_enabled(not show_hidden)
            if changed:
                self.state = self.state.bump()
        return changed

    def set_visibility(self, label, visible):
        """Persist a visibility toggle where it is authoritative, then patch locally."""
        visible = bool(visible)
        match label.origin:
            case LabelOrigin.SYSTEM:
                overrides = dict(self._overrides())
                overrides[label.id] = visible
                self.store.set(SESSION_KEY_LABEL_VISIBILITY, overrides)
            case LabelOrigin.USER:
                self.client.patch_label_visibility(label.id, visible)
        return self.patch(label, {"visible": visible})

    def clear(self):
        with self._lock:
            self.state.data.set_entries([])
            self.state = self.state.bump()
