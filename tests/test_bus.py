"""Primary-side command dispatch, without spawning worker processes."""

from __future__ import annotations

import asyncio
from typing import Any, List

from workerbus.commands import build_registry
from workerbus.config import Config
from workerbus.environment import Environment
from workerbus.plugins import PluginHost
from workerbus.process import Event, Invoke, Online, Reply, Supervisor, WorkerHandle, WorkerState
from workerbus.process.utils import split_exitcode


def run(coro):
    return asyncio.run(coro)


class FakeHandle(WorkerHandle):
    """Worker handle whose outgoing messages are recorded instead of sent."""

    def __init__(self, name: str, pid: int) -> None:
        super().__init__(name=name, pid=pid)
        self.sent: List[Any] = []

    def post(self, message: Any) -> None:
        self.sent.append(message)


class Commands:
    def __init__(self) -> None:
        self.later: List[Any] = []

    def add_main_commands(self, env):
        return {
            "TWICE": self.twice,
            "SYNC_FAIL": self.sync_fail,
            "ASYNC_FAIL": self.async_fail,
            "LATER": self.later_reply,
        }

    def twice(self, msg, reply):
        reply(None, "first")
        reply(None, "second")
        reply(RuntimeError("third"))

    def sync_fail(self, msg, reply):
        raise KeyError("missing")

    async def async_fail(self, msg, reply):
        await asyncio.sleep(0)
        raise ValueError("async failure")

    def later_reply(self, msg, reply):
        self.later.append(reply)


def make_supervisor(**kwargs) -> tuple[Supervisor, Commands]:
    env = Environment(Config(http_unsafe_origin="http://localhost:3000"))
    env.add_bytes_written(777)
    commands = Commands()
    plugins = PluginHost({"commands": commands})
    registry = build_registry(env, plugins)
    return Supervisor(registry, env, plugins, **kwargs), commands


def attach(supervisor: Supervisor, handle: FakeHandle) -> FakeHandle:
    supervisor._handles[handle.name] = handle
    return handle


async def settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


def test_profiling_reply_goes_to_the_requesting_worker_only():
    run(_test_profiling_reply())


async def _test_profiling_reply() -> None:
    supervisor, _ = make_supervisor()
    worker_a = attach(supervisor, FakeHandle("a", 101))
    worker_b = attach(supervisor, FakeHandle("b", 202))
    supervisor._handle_message(
        worker_a, Invoke(command="GET_PROFILING_DATA", txid="t1", payload={}, pid=101)
    )
    # replies are never delivered on the same turn
    assert worker_a.sent == []
    await settle()
    assert worker_a.sent == [Reply(txid="t1", error=None, value=777, pid=101)]
    assert worker_b.sent == []
    assert len(supervisor.transactions) == 0


def test_double_reply_sends_one_message():
    run(_test_double_reply())


async def _test_double_reply() -> None:
    supervisor, _ = make_supervisor()
    worker = attach(supervisor, FakeHandle("a", 101))
    supervisor._handle_message(
        worker, Invoke(command="TWICE", txid="t2", payload={}, pid=101)
    )
    await settle()
    assert worker.sent == [Reply(txid="t2", error=None, value="first", pid=101)]


def test_missing_payload_is_ignored():
    run(_test_missing_payload())


async def _test_missing_payload() -> None:
    supervisor, _ = make_supervisor()
    worker = attach(supervisor, FakeHandle("a", 101))
    supervisor._handle_message(
        worker, Invoke(command="GET_PROFILING_DATA", txid="t3", payload=None, pid=101)
    )
    await settle()
    assert worker.sent == []
    assert len(supervisor.transactions) == 0


def test_unknown_command_gets_error_reply(caplog):
    run(_test_unknown_command(caplog))


async def _test_unknown_command(caplog) -> None:
    supervisor, _ = make_supervisor()
    worker = attach(supervisor, FakeHandle("a", 101))
    supervisor._handle_message(
        worker, Invoke(command="NOPE", txid="t4", payload={}, pid=101)
    )
    await settle()
    assert len(worker.sent) == 1
    reply = worker.sent[0]
    assert reply.txid == "t4" and reply.pid == 101
    assert reply.error["code"] == "EUNKNOWNCOMMAND"
    assert "UNHANDLED_HTTP_WORKER_COMMAND" in caplog.text


def test_unknown_command_can_be_dropped_silently():
    run(_test_unknown_command_dropped())


async def _test_unknown_command_dropped() -> None:
    supervisor, _ = make_supervisor(reply_to_unknown_commands=False)
    worker = attach(supervisor, FakeHandle("a", 101))
    supervisor._handle_message(
        worker, Invoke(command="NOPE", txid="t5", payload={}, pid=101)
    )
    await settle()
    assert worker.sent == []


def test_failing_handlers_reply_with_serialized_errors():
    run(_test_failing_handlers())


async def _test_failing_handlers() -> None:
    supervisor, _ = make_supervisor()
    worker = attach(supervisor, FakeHandle("a", 101))
    supervisor._handle_message(
        worker, Invoke(command="SYNC_FAIL", txid="s1", payload={}, pid=101)
    )
    supervisor._handle_message(
        worker, Invoke(command="ASYNC_FAIL", txid="s2", payload={}, pid=101)
    )
    await settle()
    errors = {reply.txid: reply.error for reply in worker.sent}
    assert errors["s1"]["name"] == "KeyError"
    assert errors["s2"]["name"] == "ValueError"
    assert errors["s2"]["message"] == "async failure"


def test_concurrent_transactions_are_matched_by_id():
    run(_test_concurrent_transactions())


async def _test_concurrent_transactions() -> None:
    supervisor, commands = make_supervisor()
    worker_a = attach(supervisor, FakeHandle("a", 101))
    worker_b = attach(supervisor, FakeHandle("b", 202))
    supervisor._handle_message(
        worker_a, Invoke(command="LATER", txid="a-1", payload={}, pid=101)
    )
    supervisor._handle_message(
        worker_b, Invoke(command="LATER", txid="b-1", payload={}, pid=202)
    )
    assert "a-1" in supervisor.transactions and "b-1" in supervisor.transactions
    reply_a, reply_b = commands.later
    reply_b(None, "for b")
    reply_a(None, "for a")
    await settle()
    assert worker_a.sent == [Reply(txid="a-1", value="for a", pid=101)]
    assert worker_b.sent == [Reply(txid="b-1", value="for b", pid=202)]


def test_duplicate_outstanding_txid_is_rejected():
    run(_test_duplicate_txid())


async def _test_duplicate_txid() -> None:
    supervisor, commands = make_supervisor()
    worker = attach(supervisor, FakeHandle("a", 101))
    supervisor._handle_message(
        worker, Invoke(command="LATER", txid="dup", payload={}, pid=101)
    )
    supervisor._handle_message(
        worker, Invoke(command="LATER", txid="dup", payload={}, pid=101)
    )
    assert len(commands.later) == 1


def test_broadcast_reaches_online_workers_with_fresh_ids():
    run(_test_broadcast())


async def _test_broadcast() -> None:
    supervisor, _ = make_supervisor()
    worker_a = attach(supervisor, FakeHandle("a", 101))
    worker_b = attach(supervisor, FakeHandle("b", 202))
    launching = attach(supervisor, FakeHandle("c", 303))
    worker_a.state = worker_b.state = WorkerState.ONLINE

    addressed = supervisor.broadcast("FLUSH_CACHE", "key-1")
    assert addressed == [worker_a, worker_b]
    assert launching.sent == []
    event_a, = worker_a.sent
    event_b, = worker_b.sent
    assert isinstance(event_a, Event) and event_a.command == "FLUSH_CACHE"
    assert event_a.payload == event_b.payload == "key-1"
    assert event_a.txid != event_b.txid
    assert len(supervisor.transactions) == 0


def test_online_message_runs_continuation_once():
    run(_test_online())


async def _test_online() -> None:
    supervisor, _ = make_supervisor()
    calls = []
    worker = attach(supervisor, FakeHandle("a", 101))
    worker.on_online = lambda: calls.append(worker.state)
    supervisor._handle_message(worker, Online(pid=101))
    supervisor._handle_message(worker, Online(pid=101))
    assert calls == [WorkerState.ONLINE]
    assert worker.online_event.is_set()


def test_exit_of_worker_abandons_its_transactions():
    run(_test_exit_abandons())


async def _test_exit_abandons() -> None:
    closed = []

    class Watcher:
        def on_worker_closed(self, kind, pid):
            closed.append((kind, pid))

    supervisor, commands = make_supervisor()
    supervisor.plugins = PluginHost({"watcher": Watcher()})
    worker = attach(supervisor, FakeHandle("a", 101))
    supervisor._handle_message(
        worker, Invoke(command="LATER", txid="x-1", payload={}, pid=101)
    )
    supervisor._on_worker_exit(worker, 0, None)
    assert worker.state is WorkerState.EXITED_CLEAN
    assert supervisor.handles == []
    assert "x-1" not in supervisor.transactions
    assert closed == [("http-worker", 101)]
    assert supervisor.relaunches == 0

    commands.later[0](None, "too late")
    await settle()
    assert worker.sent == []


def test_split_exitcode():
    assert split_exitcode(0) == (0, None)
    assert split_exitcode(3) == (3, None)
    assert split_exitcode(-9) == (None, "SIGKILL")
    assert split_exitcode(None) == (None, None)


def test_worker_count(monkeypatch):
    monkeypatch.setattr("os.cpu_count", lambda: 4)
    assert Supervisor.worker_count(None) == 4
    assert Supervisor.worker_count(0) == 4
    assert Supervisor.worker_count(2) == 2
    assert Supervisor.worker_count(16) == 4
