"""Keyed collection with a sorted, optionally filtered, materialized view.

Values are looked up by id in O(1). A ``SortedDict`` keyed by
``(sort_key, id)`` keeps the ordering, so equal sort keys never collide.
``sorted_filtered`` is rebuilt eagerly after every mutation; collections here
hold mailbox labels, so an O(n) rebuild is cheap.
"""

from dataclasses import dataclass, is_dataclass, replace

from sortedcontainers import SortedDict


def _attribute_getter(key):
    if callable(key):
        return key

    def _get(value):
        if isinstance(value, dict):
            return value[key]
        return getattr(value, key)

    return _get


def _merge(existing, patch):
    if is_dataclass(existing):
        return replace(existing, **patch)
    if isinstance(existing, dict):
        return {**existing, **patch}
    raise TypeError(f"Cannot patch value of type {type(existing).__name__}")


class SortedFilteredCollection:
    def __init__(self, id_key, sort_key, entries=(), filter_fn=None, filter_enabled=None):
        self._id_of = _attribute_getter(id_key)
        self._sort_key = _attribute_getter(sort_key)
        self._by_id = {}
        self._by_sort = SortedDict()
        self._filter = filter_fn
        self._filter_enabled = bool(filter_fn) if filter_enabled is None else bool(filter_enabled)
        self.sorted_filtered = []
        self.set_entries(entries)

    def _rebuild(self):
        active = self._filter if self._filter_enabled else None
        self.sorted_filtered = [v for v in self._by_sort.values() if active is None or active(v)]

    def __len__(self):
        return len(self._by_id)

    def __contains__(self, item_id):
        return item_id in self._by_id

    @property
    def count(self):
        return len(self.sorted_filtered)

    @property
    def filter_enabled(self):
        return self._filter_enabled

    def values(self):
        """All values in sort order, ignoring the filter."""
        return list(self._by_sort.values())

    def get(self, item_id):
        if item_id is None:
            return None
        return self._by_id.get(item_id)

    def set_entries(self, entries):
        self._by_id = {}
        self._by_sort = SortedDict()
        for item_id, value in entries:
            self._remove_sorted(item_id)
            self._by_id[item_id] = value
            self._by_sort[(self._sort_key(value), item_id)] = value
        self._rebuild()

    def _remove_sorted(self, item_id):
        previous = self._by_id.get(item_id)
        if previous is not None:
            self._by_sort.pop((self._sort_key(previous), item_id), None)

    def insert(self, item_id, value):
        """Insert or replace ``value`` under ``item_id``."""
        self._remove_sorted(item_id)
        self._by_id[item_id] = value
        self._by_sort[(self._sort_key(value), item_id)] = value
        self._rebuild()

    def delete(self, item_id, postpone_rebuild=False):
        if item_id not in self._by_id:
            return
        self._remove_sorted(item_id)
        del self._by_id[item_id]
        if not postpone_rebuild:
            self._rebuild()

    def patch(self, existing, patch):
        if existing is None:
            return None
        item_id = self._id_of(existing)
        updated = _merge(existing, patch)
        self.delete(item_id, postpone_rebuild=True)
        self.insert(item_id, updated)
        return updated

    def set_filter_enabled(self, enabled):
        """Toggle the predicate; returns ``True`` only when the view was rebuilt."""
        enabled = bool(enabled)
        if self._filter is None or self._filter_enabled == enabled:
            return False
        self._filter_enabled = enabled
        self._rebuild()
        return True


@dataclass(frozen=True)
class Versioned:
    """Shares ``data`` across bumps; consumers compare ``version`` to detect change."""

    data: object
    version: int = 0

    def bump(self):
        return Versioned(self.data, self.version + 1)
