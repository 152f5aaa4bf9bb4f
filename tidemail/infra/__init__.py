"""Infrastructure modules for Tidemail."""

from . import auth, batch_fetch, config_store, gmail_client, identity, session_store

__all__ = ["auth", "batch_fetch", "config_store", "gmail_client", "identity", "session_store"]
