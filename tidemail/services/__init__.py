"""Service layer coordinating the Gmail client and in-memory caches."""

from . import label_store, mailbox, page_cache

__all__ = ["label_store", "mailbox", "page_cache"]
