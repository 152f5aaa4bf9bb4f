import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import asdict, dataclass, fields
from datetime import timezone

try:
    import requests
except ImportError:
    requests = None

from tidemail.constants import (
    DEFAULT_TOKEN_LIFETIME_SEC,
    SESSION_KEY_CREDENTIAL,
    SESSION_KEY_HINT,
    TOKEN_EXPIRY_MARGIN_SEC,
    TOKEN_RENEWAL_LEAD_SEC,
    USERINFO_URL,
)
from tidemail.errors import ExternalServiceError
from tidemail.infra.identity import GoogleIdentity
from tidemail.infra.session_store import SessionStore

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ("name", "given_name", "family_name", "email", "picture")


@dataclass(frozen=True)
class Credential:
    """Bearer token plus the signed-in user's profile."""

    access_token: str = ""
    expires_at: float = 0.0
    failure: bool = False
    name: str = ""
    given_name: str = ""
    family_name: str = ""
    email: str = ""
    picture: str = ""

    @property
    def initials(self):
        return (self.given_name[:1] + self.family_name[:1]).upper()

    def is_usable(self, now, margin=TOKEN_EXPIRY_MARGIN_SEC):
        return bool(self.access_token) and not self.failure and self.expires_at - margin > now

    def to_snapshot(self):
        return asdict(self)

    @classmethod
    def from_snapshot(cls, payload):
        if not isinstance(payload, dict):
            return None
        known = {f.name for f in fields(cls)}
        try:
            return cls(**{k: v for k, v in payload.items() if k in known})
        except TypeError:
            return None

    @classmethod
    def failed(cls):
        return cls(failure=True)


def _grant_expiry(grant, now):
    expiry = getattr(grant, "expiry", None)
    if expiry is None:
        return now + DEFAULT_TOKEN_LIFETIME_SEC
    if expiry.tzinfo is None:
        # google-auth reports naive UTC datetimes.
        expiry = expiry.replace(tzinfo=timezone.utc)
    return expiry.timestamp()


class CredentialManager:
    """Acquires, caches and silently renews the bearer credential.

    One instance is created per signed-in session and handed to every component
    that talks to the API. ``sign_out`` is its teardown.

    ``get_credential`` either returns a usable credential or raises; concurrent
    callers during an acquisition share that single acquisition's outcome.
    """

    def __init__(
        self,
        config=None,
        store=None,
        identity=None,
        session=None,
        clock=time.time,
        timer_factory=threading.Timer,
    ):
        if session is None and requests is None:
            raise RuntimeError("Missing required dependencies for CredentialManager: requests")
        self.store = store if store is not None else SessionStore()
        self.identity = identity if identity is not None else GoogleIdentity(config)
        self.session = session if session is not None else requests.Session()
        self.clock = clock
        self.timer_factory = timer_factory
        self._credential = None
        self._lock = threading.Lock()
        self._identity_lock = threading.Lock()
        self._inflight = None
        self._renewal_flight = None
        self._renewal_timer = None
        self._session_generation = 0

    @property
    def credential(self):
        """Last known credential, including a failed one; never triggers acquisition."""
        return self._credential

    @property
    def auth_failed(self):
        credential = self._credential
        return bool(credential and credential.failure)

    def get_credential(self, force_refresh=False):
        while True:
            with self._lock:
                future = self._inflight
                owner = future is None
                if owner:
                    if force_refresh:
                        # The rejected token must not be served from the store either.
                        self._credential = None
                        self.store.remove(SESSION_KEY_CREDENTIAL)
                    else:
                        cached = self._cached_credential()
                        if cached is not None:
                            return cached
                    future = self._inflight = Future()
                generation = self._session_generation
                silent_only = future is self._renewal_flight

            if owner:
                return self._run_acquisition(future, allow_interactive=True, generation=generation)
            try:
                return self._await_inflight(future)
            except Exception as exc:
                if not silent_only:
                    raise
                # A failed background renewal never prompted; start a full acquisition.
                logger.info("Background renewal failed, retrying with consent prompt: %s", exc)
                force_refresh = False

    def _cached_credential(self):
        now = self.clock()
        if self._credential is not None and self._credential.is_usable(now):
            return self._credential
        stored = Credential.from_snapshot(self.store.get(SESSION_KEY_CREDENTIAL))
        if stored is not None and stored.is_usable(now):
            self._credential = stored
            self._schedule_renewal(stored.expires_at)
            return stored
        return None

    def _await_inflight(self, future):
        return future.result()

    def _release_flight(self, future):
        if self._inflight is future:
            self._inflight = None
        if self._renewal_flight is future:
            self._renewal_flight = None

    def _run_acquisition(self, future, allow_interactive, generation):
        try:
            credential = self._acquire(allow_interactive=allow_interactive, generation=generation)
        except Exception as exc:
            with self._lock:
                if generation == self._session_generation:
                    self._set_credential(Credential.failed())
                self._release_flight(future)
            future.set_exception(exc)
            raise
        finally:
            with self._lock:
                self._release_flight(future)
        future.set_result(credential)
        return credential

    def _ensure_identity_loaded(self):
        with self._identity_lock:
            if not self.identity.loaded:
                logger.debug("Loading identity provider")
                self.identity.load()

    def _acquire(self, allow_interactive=True, generation=None):
        self._ensure_identity_loaded()

        grant = None
        hint = self.store.get(SESSION_KEY_HINT) or {}
        refresh_token = hint.get("refresh_token") if isinstance(hint, dict) else None
        if refresh_token:
            try:
                grant = self.identity.silent(refresh_token)
            except Exception as exc:
                if not allow_interactive:
                    raise
                logger.info("Silent sign-in failed, falling back to consent prompt: %s", exc)
                grant = None
        elif not allow_interactive:
            raise ExternalServiceError("No prior session to renew silently.")

        if grant is None:
            grant = self.identity.interactive()

        token = getattr(grant, "token", None)
        if not token:
            raise ExternalServiceError("Identity provider returned no access token.")

        profile = self._fetch_profile(token)
        credential = Credential(
            access_token=token,
            expires_at=_grant_expiry(grant, self.clock()),
            failure=False,
            **{key: str(profile.get(key) or "") for key in PROFILE_FIELDS},
        )
        with self._lock:
            if generation is not None and generation != self._session_generation:
                raise ExternalServiceError("Signed out while the credential was being acquired.")
            self._set_credential(credential)
            self._save_session_hint(getattr(grant, "refresh_token", None) or refresh_token, credential.email)
            self._schedule_renewal(credential.expires_at)
        logger.info("Signed in as %s", credential.email or "<unknown>")
        return credential

    def _fetch_profile(self, token):
        resp = self.session.get(USERINFO_URL, headers={"Authorization": f"Bearer {token}"})
        if resp.status_code >= 400:
            raise ExternalServiceError(f"Failed to fetch user profile (HTTP {resp.status_code}).")
        try:
            payload = resp.json()
        except ValueError as exc:
            raise ExternalServiceError("Invalid JSON response from userinfo endpoint.") from exc
        if not isinstance(payload, dict):
            raise ExternalServiceError("Unexpected JSON shape from userinfo endpoint.")
        return payload

    def _set_credential(self, credential):
        self._credential = credential
        if credential is None or credential.failure:
            # A failed state is never persisted so the next start always retries.
            self.store.remove(SESSION_KEY_CREDENTIAL)
            return
        self.store.set(SESSION_KEY_CREDENTIAL, credential.to_snapshot())

    def _save_session_hint(self, refresh_token, email):
        if refresh_token:
            self.store.set(SESSION_KEY_HINT, {"refresh_token": refresh_token, "email": email})

    def _schedule_renewal(self, expires_at):
        self._cancel_renewal()
        delay = max(0.0, expires_at - TOKEN_RENEWAL_LEAD_SEC - self.clock())
        timer = self.timer_factory(delay, self._renew_silently)
        timer.daemon = True
        self._renewal_timer = timer
        timer.start()

    def _cancel_renewal(self):
        timer = self._renewal_timer
        self._renewal_timer = None
        if timer is not None:
            timer.cancel()

    def _renew_silently(self):
        with self._lock:
            if self._inflight is not None:
                return
            future = self._inflight = self._renewal_flight = Future()
            generation = self._session_generation
        try:
            self._run_acquisition(future, allow_interactive=False, generation=generation)
        except Exception as exc:
            logger.warning("Silent credential renewal failed: %s", exc)

    def sign_out(self):
        with self._lock:
            self._session_generation += 1
            self._cancel_renewal()
            self._credential = None
            # Dropping the hint forces the next sign-in through the consent prompt.
            self.store.clear()
        logger.info("Signed out")

    def close(self):
        self._cancel_renewal()
        session = getattr(self, "session", None)
        if session is not None and hasattr(session, "close"):
            session.close()
