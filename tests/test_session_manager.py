from __future__ import annotations

import re
import threading

import pytest

from mdsm.core.crypto import CookieCodec, generate_cookie_key_bytes
from mdsm.core.errors import DuplicateSessionError, SessionNotFoundError, ValidationError
from mdsm.core.manager import SessionManager
from mdsm.core.session import CookiePayload, SessionState


def test_create_session_defaults(manager):
    s = manager.create_session()
    assert re.fullmatch(r"[0-9a-f]{64}", s.session_id)
    assert s.session_data is None
    assert s.session_id in manager
    assert len(manager) == 1


def test_create_session_with_explicit_id(manager):
    s = manager.create_session(session_id="custom", time_to_live_ms=1000, session_data={"x": 1})
    assert s.session_id == "custom"
    assert s.session_data == {"x": 1}
    with pytest.raises(DuplicateSessionError):
        manager.create_session(session_id="custom", time_to_live_ms=1000)


def test_negative_ttl_rejected(manager):
    with pytest.raises(ValidationError):
        manager.create_session(time_to_live_ms=-1)


def test_session_ids_never_collide(manager):
    ids = {manager.create_session(time_to_live_ms=60_000).session_id for _ in range(10_000)}
    assert len(ids) == 10_000


def test_add_client_and_find_session_round_trip(manager, codec):
    s = manager.create_session(time_to_live_ms=10_000)
    cookie = manager.add_client(s, "class_A", {"foo": "bar"})
    assert cookie is not None
    payload = CookiePayload.from_json(codec.decrypt(cookie))
    assert payload.session_id == s.session_id

    match = manager.find_session(cookie)
    assert match is not None
    assert match.session is s
    assert match.payload == payload
    assert s.find_client(payload.client_id).client_data == {"foo": "bar"}


def test_add_client_by_id(manager):
    s = manager.create_session(time_to_live_ms=10_000)
    cookie = manager.add_client_by_id(s.session_id, "class_B", None)
    assert manager.find_session(cookie).session is s
    assert manager.add_client_by_id("missing", "class_B", None) is None


def test_add_client_to_dead_session_returns_none(manager):
    s = manager.create_session(time_to_live_ms=10_000)
    manager.destroy_session(s.session_id)
    assert manager.add_client(s, "class_A") is None


@pytest.mark.parametrize("cookie", [None, "", "garbage", "AAAA" * 20])
def test_find_session_never_raises_on_bad_input(manager, cookie):
    assert manager.find_session(cookie) is None


def test_find_session_tampered_cookie(manager, events):
    s = manager.create_session(time_to_live_ms=10_000)
    cookie = manager.add_client(s, "class_A")
    tampered = cookie[:-2] + ("A" if cookie[-2] != "A" else "B") + cookie[-1]
    assert manager.find_session(tampered) is None
    assert "cookie.rejected" in events.names()


def test_find_session_cookie_from_other_process(manager, registry, scheduler, clock):
    other = SessionManager(registry, codec=CookieCodec(generate_cookie_key_bytes()), scheduler=scheduler, clock=clock.time)
    s = other.create_session(session_id="shared", time_to_live_ms=10_000)
    manager.create_session(session_id="shared", time_to_live_ms=10_000)
    cookie = other.add_client(s, "class_A")
    assert manager.find_session(cookie) is None


def test_find_session_wellformed_payload_but_unknown_session(manager, codec):
    cookie = codec.encrypt(CookiePayload(session_id="nope", client_id="x").to_json())
    assert manager.find_session(cookie) is None


def test_find_session_decrypts_to_non_payload(manager, codec):
    assert manager.find_session(codec.encrypt('{"hello":"world"}')) is None
    assert manager.find_session(codec.encrypt("not json at all")) is None


def test_zero_ttl_session_unreachable_after_check(manager, scheduler):
    s = manager.create_session(time_to_live_ms=0)
    cookie = manager.add_client(s, "class_A")
    assert scheduler.run_due() == 1
    assert s.session_id not in manager
    assert manager.find_session(cookie) is None
    assert s.state() == SessionState.DESTROYED


def test_expired_session_not_usable_before_timer_fires(manager, scheduler, clock):
    s = manager.create_session(time_to_live_ms=1000)
    cookie = manager.add_client(s, "class_A")
    clock.advance_ms(1001)
    # timer has not run yet; lookup itself must refuse and destroy
    assert manager.find_session(cookie) is None
    assert s.session_id not in manager
    assert scheduler.pending() == 0


def test_renewal_before_check_keeps_session_alive(manager, scheduler, clock, events):
    s = manager.create_session(time_to_live_ms=1000)
    cookie = manager.add_client(s, "class_A")
    clock.advance_ms(500)
    manager.renew_session(s.session_id, 2000)

    clock.advance_ms(500)  # original deadline
    scheduler.run_due()
    assert manager.find_session(cookie) is not None
    assert "session.expiry_rescheduled" in events.names()
    assert scheduler.pending() == 1

    clock.advance_ms(1999)
    scheduler.run_due()
    assert manager.find_session(cookie) is not None

    clock.advance_ms(1)  # new deadline
    scheduler.run_due()
    assert s.session_id not in manager
    assert manager.find_session(cookie) is None
    assert "session.expired" in events.names()


def test_at_most_one_outstanding_recheck_per_session(manager, scheduler, clock):
    s = manager.create_session(time_to_live_ms=100)
    for _ in range(5):
        manager.renew_session(s.session_id, 100)
    assert scheduler.pending() == 1
    clock.advance_ms(100)
    scheduler.run_due()
    assert scheduler.pending() == 1
    assert s.session_id in manager


def test_renew_missing_or_expired_session(manager, clock):
    with pytest.raises(SessionNotFoundError):
        manager.renew_session("missing", 1000)
    s = manager.create_session(time_to_live_ms=10)
    clock.advance_ms(11)
    with pytest.raises(SessionNotFoundError):
        manager.renew_session(s.session_id, 1000)
    assert s.session_id not in manager


def test_remove_client(manager):
    s = manager.create_session(time_to_live_ms=10_000)
    cookie = manager.add_client(s, "class_A")
    payload = manager.find_session(cookie).payload
    assert manager.remove_client(s.session_id, payload.client_id) is True
    assert manager.remove_client(s.session_id, payload.client_id) is False
    assert manager.remove_client("missing", payload.client_id) is False
    assert s.find_client(payload.client_id) is None


def test_destroy_session_cancels_recheck(manager, scheduler):
    s = manager.create_session(time_to_live_ms=10_000)
    assert manager.destroy_session(s.session_id) is True
    assert manager.destroy_session(s.session_id) is False
    assert scheduler.pending() == 0
    assert s.state() == SessionState.DESTROYED


def test_stale_timer_does_not_remove_replacement_session(manager, scheduler, clock):
    first = manager.create_session(session_id="same", time_to_live_ms=0)
    manager.destroy_session("same")
    second = manager.create_session(session_id="same", time_to_live_ms=10_000)
    first_timer = scheduler.timers[0]
    first_timer.cancelled = False  # simulate a timer that fired before cancellation took effect
    scheduler.run_due()
    assert manager.get_session("same") is second
    assert first.state() == SessionState.DESTROYED


def test_sweep_expired(manager, clock):
    gone = manager.create_session(time_to_live_ms=10)
    keep = manager.create_session(time_to_live_ms=1000)
    clock.advance_ms(10)
    # exactly at the deadline: left for its recheck
    assert manager.sweep_expired() == 0
    clock.advance_ms(1)
    assert manager.sweep_expired() == 1
    assert manager.session_ids() == [keep.session_id]
    assert gone.state() == SessionState.DESTROYED


def test_shutdown_drops_everything(manager, scheduler):
    s = manager.create_session(time_to_live_ms=10_000)
    manager.shutdown()
    assert len(manager) == 0
    assert scheduler.pending() == 0
    assert s.state() == SessionState.DESTROYED
    with pytest.raises(RuntimeError):
        manager.create_session()


def test_cookie_dispatches_until_ttl_elapses(manager, scheduler, clock, handler_a):
    s = manager.create_session(time_to_live_ms=10_000, session_data={"bar": "baz"})
    cookie = manager.add_client(s, "class_A", {"foo": "bar"})

    clock.advance_ms(9_999)
    scheduler.run_due()
    match = manager.find_session(cookie)
    assert match is not None and match.session is s
    assert match.payload.session_id == s.session_id

    match.session.process_request("/api/doSomething1/", match.payload)
    assert handler_a.calls[0]["session_data"] == {"bar": "baz"}
    assert handler_a.calls[0]["client_data"] == {"foo": "bar"}

    clock.advance_ms(1)
    scheduler.run_due()
    assert manager.find_session(cookie) is None


def test_zero_ttl_session_usable_until_its_recheck(manager, scheduler, events):
    s = manager.create_session(time_to_live_ms=0, session_data={"x": 1})
    cookie = manager.add_client(s, "class_A")
    assert cookie is not None
    assert manager.find_session(cookie).session is s
    assert manager.renew_session(s.session_id, 0) == s.expiry_date
    assert scheduler.run_due() == 1
    assert manager.find_session(cookie) is None
    assert "session.expired" in events.names()


def test_session_reachable_at_exact_deadline_until_recheck(manager, scheduler, clock):
    s = manager.create_session(time_to_live_ms=1000)
    cookie = manager.add_client(s, "class_A")
    clock.advance_ms(1000)
    assert manager.find_session(cookie) is not None
    scheduler.run_due()
    assert manager.find_session(cookie) is None


def test_explicit_id_reusable_once_old_session_is_past_deadline(manager, scheduler, clock, events):
    old = manager.create_session(session_id="same", time_to_live_ms=10)
    clock.advance_ms(20)
    new = manager.create_session(session_id="same", time_to_live_ms=1000)
    assert new is not old
    assert manager.get_session("same") is new
    assert old.state() == SessionState.DESTROYED
    scheduler.run_due()
    assert manager.get_session("same") is new
    reasons = [e["details"]["reason"] for e in events.events if e["event"] == "session.destroyed"]
    assert reasons == ["expired_on_access"]


def test_explicit_id_still_taken_at_exact_deadline(manager, clock):
    manager.create_session(session_id="same", time_to_live_ms=10)
    clock.advance_ms(10)
    with pytest.raises(DuplicateSessionError):
        manager.create_session(session_id="same", time_to_live_ms=10)


class LockCheckingEventLogger:
    """Records, per event, whether another thread could take the manager lock while it was written."""

    def __init__(self):
        self.lock = None
        self.seen = []

    def _lock_free(self) -> bool:
        got = []

        def attempt() -> None:
            ok = self.lock.acquire(blocking=False)
            if ok:
                self.lock.release()
            got.append(ok)

        t = threading.Thread(target=attempt)
        t.start()
        t.join()
        return got[0]

    def log(self, trace_id, event_type, details=None):  # noqa: ANN001
        self.seen.append((event_type, self._lock_free()))


def test_events_written_outside_manager_lock(registry, codec, scheduler, clock):
    ev = LockCheckingEventLogger()
    m = SessionManager(registry, codec=codec, scheduler=scheduler, clock=clock.time, event_logger=ev)
    ev.lock = m._lock

    a = m.create_session(time_to_live_ms=10)
    cookie = m.add_client(a, "class_A")
    m.remove_client(a.session_id, m.find_session(cookie).payload.client_id)
    m.renew_session(a.session_id, 5)
    m.destroy_session(a.session_id)

    b = m.create_session(session_id="b", time_to_live_ms=10)
    m.create_session(session_id="c", time_to_live_ms=10)
    m.create_session(session_id="d", time_to_live_ms=10)
    m.create_session(session_id="e", time_to_live_ms=10)
    clock.advance_ms(11)
    assert m.get_session(b.session_id) is None
    with pytest.raises(SessionNotFoundError):
        m.renew_session("c", 100)
    m.create_session(session_id="d", time_to_live_ms=10)
    assert m.sweep_expired() == 1
    clock.advance_ms(10)
    scheduler.run_due()
    m.shutdown()

    names = [name for name, _ in ev.seen]
    assert names.count("session.destroyed") == 5
    assert "session.expired" in names
    assert all(free for _, free in ev.seen), ev.seen
