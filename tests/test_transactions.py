import asyncio

import pytest

from workerbus.errors import DuplicateTransaction
from workerbus.transactions import TransactionTracker, defer, once


def test_ids_are_never_reused():
    tracker = TransactionTracker()
    seen = set()
    for _ in range(1000):
        txid = tracker.next_id()
        assert txid not in seen
        seen.add(txid)
        tracker.register(txid, lambda error, value: None)
    assert len(tracker) == 1000


def test_ids_skip_outstanding_foreign_ids():
    tracker = TransactionTracker(prefix="x")
    tracker.register("x-1", lambda error, value: None)
    assert tracker.next_id() == "x-2"


def test_trackers_do_not_share_ids():
    assert TransactionTracker().next_id() != TransactionTracker().next_id()


def test_duplicate_registration_is_refused():
    tracker = TransactionTracker()
    tracker.register("t1", lambda error, value: None)
    with pytest.raises(DuplicateTransaction):
        tracker.register("t1", lambda error, value: None)


def test_resolve_calls_handler_once_and_removes_it():
    tracker = TransactionTracker()
    results = []
    tracker.register("t1", lambda error, value: results.append((error, value)))
    assert tracker.resolve("t1", None, 5)
    assert not tracker.resolve("t1", None, 6)
    assert results == [(None, 5)]
    assert "t1" not in tracker


def test_stale_reply_is_logged_not_raised(caplog):
    tracker = TransactionTracker()
    assert not tracker.resolve("never-registered", None, None)
    assert "STALE_TRANSACTION_REPLY" in caplog.text


def test_discard_owner_drops_only_that_owner():
    tracker = TransactionTracker()
    tracker.register("a1", lambda error, value: None, owner=101)
    tracker.register("a2", lambda error, value: None, owner=101)
    tracker.register("b1", lambda error, value: None, owner=202)
    assert tracker.discard_owner(101) == 2
    assert "b1" in tracker
    assert tracker.owner_of("b1") == 202
    assert tracker.owner_of("a1") is None


def test_once_only_lets_the_first_call_through():
    calls = []
    wrapped = once(lambda *args: calls.append(args))
    wrapped(None, 1)
    wrapped(None, 2)
    wrapped(ValueError())
    assert calls == [(None, 1)]


def test_deferred_calls_run_on_a_later_turn():
    async def main():
        loop = asyncio.get_running_loop()
        calls = []
        reply = once(defer(loop, lambda *args: calls.append(args)))
        reply(None, "value")
        reply(None, "again")
        assert calls == []
        await asyncio.sleep(0)
        return calls

    assert asyncio.run(main()) == [(None, "value")]
