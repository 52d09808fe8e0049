from __future__ import annotations

from deployfix.engine.queue import EventQueue, Idempotency
from deployfix.store.database import Database


class _Clock:
    def __init__(self, t: float = 1000.0) -> None:
        self.t = t

    def __call__(self) -> float:
        return self.t


def _queue(tmp_path, clock: _Clock) -> EventQueue:
    return EventQueue(Database(db_path=str(tmp_path / "q.sqlite3")), clock=clock)


def test_live_idempotency_key_deduplicates(tmp_path) -> None:
    q = _queue(tmp_path, _Clock())
    first = q.send("x/evt", {"n": 1}, idempotency=Idempotency("k1", 60))
    second = q.send("x/evt", {"n": 2}, idempotency=Idempotency("k1", 60))
    assert not first.duplicate
    assert second.duplicate
    assert second.event_id == first.event_id
    assert len(q.list_events("x/evt")) == 1


def test_expired_key_is_replaced(tmp_path) -> None:
    clock = _Clock()
    q = _queue(tmp_path, clock)
    first = q.send("x/evt", {}, idempotency=Idempotency("k1", 60))
    clock.t += 61
    again = q.send("x/evt", {}, idempotency=Idempotency("k1", 60))
    assert not again.duplicate
    assert again.event_id != first.event_id
    assert len(q.list_events("x/evt")) == 2


def test_send_without_key_always_enqueues(tmp_path) -> None:
    q = _queue(tmp_path, _Clock())
    q.send("x/evt", {})
    q.send("x/evt", {})
    assert len(q.list_events()) == 2


def test_claim_leases_and_expired_lease_is_reclaimable(tmp_path) -> None:
    clock = _Clock()
    q = _queue(tmp_path, clock)
    sent = q.send("x/evt", {"a": 1})

    claimed = q.claim("x/evt", limit=5, lease_s=30)
    assert [e.id for e in claimed] == [sent.event_id]
    assert claimed[0].data == {"a": 1}
    assert claimed[0].attempts == 1
    # Lease held: nothing to claim.
    assert q.claim("x/evt", limit=5, lease_s=30) == []

    clock.t += 31
    again = q.claim("x/evt", limit=5, lease_s=30)
    assert [e.id for e in again] == [sent.event_id]
    assert again[0].attempts == 2


def test_complete_and_fail_are_terminal(tmp_path) -> None:
    clock = _Clock()
    q = _queue(tmp_path, clock)
    a = q.send("x/evt", {})
    b = q.send("x/evt", {})
    q.claim("x/evt", limit=5, lease_s=30)
    q.complete(a.event_id, {"ok": True})
    q.fail(b.event_id, "boom")
    clock.t += 1000
    assert q.claim("x/evt", limit=5, lease_s=30) == []
    assert q.get(a.event_id)["result"] == {"ok": True}
    assert q.get(b.event_id)["error"] == "boom"


def test_send_joins_enclosing_transaction(tmp_path) -> None:
    db = Database(db_path=str(tmp_path / "q.sqlite3"))
    q = EventQueue(db)
    try:
        with db.transaction() as con:
            q.send("x/evt", {}, idempotency=Idempotency("k1", 60), con=con)
            raise RuntimeError("abort")
    except RuntimeError:
        pass
    assert q.list_events() == []
    # The key was rolled back with the event.
    assert not q.send("x/evt", {}, idempotency=Idempotency("k1", 60)).duplicate


def test_has_live_event(tmp_path) -> None:
    q = _queue(tmp_path, _Clock())
    sent = q.send("x/evt", {"fix_id": "f1"})
    assert q.has_live_event("x/evt", field_name="fix_id", value="f1")
    assert not q.has_live_event("x/evt", field_name="fix_id", value="f2")
    q.complete(sent.event_id)
    assert not q.has_live_event("x/evt", field_name="fix_id", value="f1")
