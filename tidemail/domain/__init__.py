"""Pure data helpers for Tidemail."""

from . import collection, labels, messages, multipart

__all__ = ["collection", "labels", "messages", "multipart"]
