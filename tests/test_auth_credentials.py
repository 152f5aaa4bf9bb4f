import threading
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from tidemail.constants import SESSION_KEY_CREDENTIAL, SESSION_KEY_HINT
from tidemail.errors import ExternalServiceError
from tidemail.infra.auth import Credential, CredentialManager
from tidemail.infra.session_store import SessionStore

NOW = 1_700_000_000.0


class _Clock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


class _FakeTimer:
    created = []

    def __init__(self, delay, fn):
        self.delay = delay
        self.fn = fn
        self.daemon = False
        self.started = False
        self.cancelled = False
        _FakeTimer.created.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True


class _FakeIdentity:
    def __init__(self, lifetime=3600, silent_error=None, interactive_error=None):
        self.loaded = False
        self.load_calls = 0
        self.silent_calls = []
        self.interactive_calls = 0
        self.lifetime = lifetime
        self.silent_error = silent_error
        self.interactive_error = interactive_error
        self.interactive_gate = None
        self.silent_gate = None
        self.silent_started = threading.Event()

    def load(self):
        self.load_calls += 1
        self.loaded = True

    def _grant(self, token):
        expiry = datetime.fromtimestamp(NOW + self.lifetime, tz=timezone.utc).replace(tzinfo=None)
        return SimpleNamespace(token=token, expiry=expiry, refresh_token="refresh-1")

    def silent(self, refresh_token):
        self.silent_calls.append(refresh_token)
        self.silent_started.set()
        if self.silent_gate is not None:
            self.silent_gate()
        if self.silent_error is not None:
            raise self.silent_error
        return self._grant("silent-token")

    def interactive(self):
        self.interactive_calls += 1
        if self.interactive_gate is not None:
            self.interactive_gate()
        if self.interactive_error is not None:
            raise self.interactive_error
        return self._grant(f"interactive-token-{self.interactive_calls}")


class _ProfileResponse:
    status_code = 200

    @staticmethod
    def json():
        return {
            "name": "Ada Lovelace",
            "given_name": "Ada",
            "family_name": "Lovelace",
            "email": "ada@example.com",
            "picture": "https://example.invalid/ada.png",
        }


class _ProfileSession:
    def __init__(self):
        self.calls = []

    def get(self, url, headers=None):
        self.calls.append((url, headers))
        return _ProfileResponse()


@pytest.fixture(autouse=True)
def _reset_timers():
    _FakeTimer.created = []


def _manager(tmp_path, identity=None, clock=None):
    store = SessionStore(path=str(tmp_path / "session.json"))
    manager = CredentialManager(
        store=store,
        identity=identity or _FakeIdentity(),
        session=_ProfileSession(),
        clock=clock or _Clock(),
        timer_factory=_FakeTimer,
    )
    return manager, store


def test_interactive_sign_in_merges_profile_and_persists(tmp_path):
    manager, store = _manager(tmp_path)

    credential = manager.get_credential()

    assert credential.access_token == "interactive-token-1"
    assert credential.email == "ada@example.com"
    assert credential.initials == "AL"
    assert credential.expires_at == pytest.approx(NOW + 3600)
    assert store.get(SESSION_KEY_CREDENTIAL)["access_token"] == "interactive-token-1"
    assert store.get(SESSION_KEY_HINT)["refresh_token"] == "refresh-1"
    assert manager.session.calls[0][1] == {"Authorization": "Bearer interactive-token-1"}


def test_cached_credential_is_reused_until_expiry_margin(tmp_path):
    clock = _Clock()
    identity = _FakeIdentity()
    manager, _ = _manager(tmp_path, identity=identity, clock=clock)

    first = manager.get_credential()
    clock.now = NOW + 3600 - 6
    assert manager.get_credential() is first
    assert identity.interactive_calls == 1

    clock.now = NOW + 3600 - 5
    manager.get_credential()
    assert identity.silent_calls == ["refresh-1"]


def test_force_refresh_reacquires_even_when_cached(tmp_path):
    identity = _FakeIdentity()
    manager, _ = _manager(tmp_path, identity=identity)

    manager.get_credential()
    refreshed = manager.get_credential(force_refresh=True)

    assert refreshed.access_token == "silent-token"
    assert identity.load_calls == 1


def test_silent_failure_falls_back_to_interactive(tmp_path):
    identity = _FakeIdentity(silent_error=RuntimeError("invalid_grant"))
    manager, store = _manager(tmp_path, identity=identity)
    store.set(SESSION_KEY_HINT, {"refresh_token": "old-refresh", "email": "ada@example.com"})

    credential = manager.get_credential()

    assert identity.silent_calls == ["old-refresh"]
    assert identity.interactive_calls == 1
    assert credential.access_token == "interactive-token-1"


def test_failure_sets_failed_state_rethrows_and_is_not_persisted(tmp_path):
    identity = _FakeIdentity(interactive_error=RuntimeError("popup_closed"))
    manager, store = _manager(tmp_path, identity=identity)

    with pytest.raises(RuntimeError, match="popup_closed"):
        manager.get_credential()

    assert manager.auth_failed
    assert manager.credential.access_token == ""
    assert store.get(SESSION_KEY_CREDENTIAL) is None


def test_stored_snapshot_is_used_after_restart(tmp_path):
    manager, store = _manager(tmp_path)
    first = manager.get_credential()

    identity = _FakeIdentity()
    restarted = CredentialManager(
        store=SessionStore(path=store.path),
        identity=identity,
        session=_ProfileSession(),
        clock=_Clock(),
        timer_factory=_FakeTimer,
    )

    assert restarted.get_credential() == first
    assert identity.interactive_calls == 0
    assert identity.silent_calls == []


def test_renewal_is_scheduled_ten_seconds_before_expiry_and_rescheduled(tmp_path):
    manager, _ = _manager(tmp_path)

    manager.get_credential()
    first_timer = _FakeTimer.created[-1]
    assert first_timer.started and first_timer.daemon
    assert first_timer.delay == pytest.approx(3600 - 10)

    first_timer.fn()

    second_timer = _FakeTimer.created[-1]
    assert second_timer is not first_timer
    assert first_timer.cancelled
    assert manager.credential.access_token == "silent-token"


def test_renewal_never_prompts_interactively(tmp_path):
    identity = _FakeIdentity(silent_error=RuntimeError("revoked"))
    manager, _ = _manager(tmp_path, identity=identity)
    manager.get_credential()

    _FakeTimer.created[-1].fn()

    assert identity.interactive_calls == 1
    assert manager.auth_failed


def test_sign_out_cancels_renewal_and_clears_session(tmp_path):
    identity = _FakeIdentity()
    manager, store = _manager(tmp_path, identity=identity)
    manager.get_credential()
    timer = _FakeTimer.created[-1]

    manager.sign_out()

    assert timer.cancelled
    assert manager.credential is None
    assert store.get(SESSION_KEY_CREDENTIAL) is None
    assert store.get(SESSION_KEY_HINT) is None

    manager.get_credential()
    assert identity.silent_calls == []
    assert identity.interactive_calls == 2


def test_missing_access_token_is_a_failure(tmp_path):
    identity = _FakeIdentity()
    identity.interactive = lambda: SimpleNamespace(token="", expiry=None, refresh_token=None)
    manager, _ = _manager(tmp_path, identity=identity)

    with pytest.raises(ExternalServiceError):
        manager.get_credential()
    assert manager.auth_failed


class _JoinTrackingManager(CredentialManager):
    def __init__(self, *args, expected_joiners, **kwargs):
        super().__init__(*args, **kwargs)
        self.expected_joiners = expected_joiners
        self.joined = 0
        self.all_joined = threading.Event()
        self._join_lock = threading.Lock()

    def _await_inflight(self, future):
        with self._join_lock:
            self.joined += 1
            if self.joined == self.expected_joiners:
                self.all_joined.set()
        return super()._await_inflight(future)


def _run_concurrently(tmp_path, identity, callers=5):
    manager = _JoinTrackingManager(
        store=SessionStore(path=str(tmp_path / "session.json")),
        identity=identity,
        session=_ProfileSession(),
        clock=_Clock(),
        timer_factory=_FakeTimer,
        expected_joiners=callers - 1,
    )
    identity.interactive_gate = lambda: manager.all_joined.wait(timeout=5)
    outcomes = [None] * callers

    def _call(index):
        try:
            outcomes[index] = manager.get_credential()
        except Exception as exc:
            outcomes[index] = exc

    threads = [threading.Thread(target=_call, args=(i,)) for i in range(callers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)
    return manager, outcomes


def test_concurrent_callers_share_one_successful_acquisition(tmp_path):
    identity = _FakeIdentity()

    manager, outcomes = _run_concurrently(tmp_path, identity)

    assert manager.all_joined.is_set()
    assert identity.interactive_calls == 1
    assert all(isinstance(o, Credential) for o in outcomes)
    assert len({o.access_token for o in outcomes}) == 1


def test_concurrent_callers_share_one_failed_acquisition(tmp_path):
    identity = _FakeIdentity(interactive_error=RuntimeError("popup_closed"))

    manager, outcomes = _run_concurrently(tmp_path, identity)

    assert manager.all_joined.is_set()
    assert identity.interactive_calls == 1
    assert all(isinstance(o, RuntimeError) and str(o) == "popup_closed" for o in outcomes)
    assert manager.auth_failed


def _joining_manager(tmp_path, identity, expected_joiners=1):
    store = SessionStore(path=str(tmp_path / "session.json"))
    manager = _JoinTrackingManager(
        store=store,
        identity=identity,
        session=_ProfileSession(),
        clock=_Clock(),
        timer_factory=_FakeTimer,
        expected_joiners=expected_joiners,
    )
    return manager, store


def test_forced_refresh_is_joined_instead_of_serving_the_rejected_token(tmp_path):
    identity = _FakeIdentity()
    manager, store = _joining_manager(tmp_path, identity)
    manager.get_credential()
    stored_during_refresh = []

    def _hold_silent():
        stored_during_refresh.append(store.get(SESSION_KEY_CREDENTIAL))
        manager.all_joined.wait(timeout=5)

    identity.silent_gate = _hold_silent
    outcomes = {}
    refresher = threading.Thread(target=lambda: outcomes.update(forced=manager.get_credential(force_refresh=True)))
    refresher.start()
    assert identity.silent_started.wait(timeout=5)

    outcomes["plain"] = manager.get_credential()
    refresher.join(timeout=10)

    assert stored_during_refresh == [None]
    assert outcomes["forced"].access_token == "silent-token"
    assert outcomes["plain"].access_token == "silent-token"
    assert store.get(SESSION_KEY_CREDENTIAL)["access_token"] == "silent-token"


def test_caller_joining_a_failed_renewal_falls_back_to_consent_prompt(tmp_path):
    identity = _FakeIdentity(silent_error=RuntimeError("revoked"))
    manager, _ = _joining_manager(tmp_path, identity)
    manager.get_credential()
    renewal = threading.Thread(target=_FakeTimer.created[-1].fn)
    identity.silent_gate = lambda: manager.all_joined.wait(timeout=5)
    renewal.start()
    assert identity.silent_started.wait(timeout=5)

    credential = manager.get_credential(force_refresh=True)
    renewal.join(timeout=10)

    assert manager.joined == 1
    assert credential.access_token == "interactive-token-2"
    assert identity.interactive_calls == 2
    assert not manager.auth_failed


def test_renewal_finishing_after_sign_out_is_discarded(tmp_path):
    identity = _FakeIdentity()
    manager, store = _manager(tmp_path, identity=identity)
    manager.get_credential()
    release = threading.Event()
    identity.silent_gate = lambda: release.wait(timeout=5)
    renewal = threading.Thread(target=_FakeTimer.created[-1].fn)
    renewal.start()
    assert identity.silent_started.wait(timeout=5)

    manager.sign_out()
    release.set()
    renewal.join(timeout=10)

    assert manager.credential is None
    assert not manager.auth_failed
    assert store.get(SESSION_KEY_CREDENTIAL) is None
    assert store.get(SESSION_KEY_HINT) is None
