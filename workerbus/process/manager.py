"""Primary-side worker pool supervisor and command dispatch."""

from __future__ import annotations

import asyncio
import copy
import inspect
import itertools
import multiprocessing as mp
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Set

from ..errors import DuplicateTransaction, ProcessError, UnknownCommand, serialize_error
from ..log import get_event_log
from ..plugins import PluginHost
from ..transactions import TransactionTracker, defer, once
from .channel import Channel
from .child import WorkerEntry, worker_bootstrap
from .protocol import Event, Invoke, Message, Online, Reply, Shutdown
from .utils import split_exitcode

if TYPE_CHECKING:
    from ..commands import CommandRegistry
    from ..environment import Environment


def _select_context() -> mp.context.BaseContext:
    """Select the process start method (always spawn)."""

    return mp.get_context("spawn")


_CTX = _select_context()

WORKER_KIND = "http-worker"


class WorkerState(str, Enum):
    LAUNCHING = "launching"
    ONLINE = "online"
    EXITED_CLEAN = "exited_clean"
    EXITED_CRASHED = "exited_crashed"


ExitCallback = Callable[["WorkerHandle", Optional[int], Optional[str]], Any]


@dataclass(eq=False)
class WorkerHandle:
    name: str
    kind: str = WORKER_KIND
    process: Optional[mp.process.BaseProcess] = None
    channel: Optional[Channel] = None
    pid: Optional[int] = None
    state: WorkerState = WorkerState.LAUNCHING
    exit_callback: Optional[ExitCallback] = None
    on_online: Optional[Callable[[], Any]] = None
    exit_code: Optional[int] = None
    exit_signal: Optional[str] = None
    monitor_task: Optional[asyncio.Task[Any]] = None
    online_event: asyncio.Event = field(default_factory=asyncio.Event)
    exited_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def online(self) -> bool:
        return self.state is WorkerState.ONLINE

    async def wait_until_online(self) -> None:
        await self.online_event.wait()

    async def wait_exited(self) -> None:
        await self.exited_event.wait()

    def post(self, message: Message) -> None:
        if self.channel is None or self.channel.is_closed():
            raise ProcessError(f"Worker {self.name} has no open channel")
        self.channel.post(message)

    def is_alive(self) -> bool:
        return bool(self.process and self.process.is_alive())


class Supervisor:
    """Launches workers, relaunches crashed ones and serves their commands."""

    def __init__(
        self,
        registry: "CommandRegistry",
        env: "Environment",
        plugins: Optional[PluginHost] = None,
        *,
        entry: Optional[WorkerEntry] = None,
        kind: str = WORKER_KIND,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        reply_to_unknown_commands: bool = True,
        relaunch_delay: float = 0.0,
        exit_poll_interval: float = 0.05,
    ) -> None:
        self.loop = loop or asyncio.get_event_loop()
        self.registry = registry
        self.env = env
        self.plugins = plugins or PluginHost()
        self.entry = entry
        self.kind = kind
        self.reply_to_unknown_commands = reply_to_unknown_commands
        self.relaunch_delay = relaunch_delay
        self.exit_poll_interval = exit_poll_interval
        self.transactions = TransactionTracker()
        self.relaunches = 0
        self._handles: Dict[str, WorkerHandle] = {}
        self._names = itertools.count(1)
        self._spawn_state: Dict[str, Any] = env.snapshot()
        self._handler_tasks: Set[asyncio.Task[Any]] = set()
        self._log = get_event_log(__name__)
        self._closing = False

    @property
    def handles(self) -> List[WorkerHandle]:
        return list(self._handles.values())

    def online_handles(self) -> List[WorkerHandle]:
        return [handle for handle in self._handles.values() if handle.online]

    @property
    def spawn_state(self) -> Dict[str, Any]:
        return copy.deepcopy(self._spawn_state)

    def refresh_spawn_state(self) -> Dict[str, Any]:
        self._spawn_state = self.env.snapshot()
        return self.spawn_state

    @staticmethod
    def worker_count(limit: Optional[int] = None) -> int:
        """``min(cpu count, limit)``; a zero or missing limit means all CPUs."""

        available = os.cpu_count() or 1
        if limit:
            return max(1, min(available, int(limit)))
        return available

    async def start(self, limit: Optional[int] = None) -> List[WorkerHandle]:
        """Launch the initial pool; returns once every worker is online."""

        self.refresh_spawn_state()
        handles = [self.launch_worker() for _ in range(self.worker_count(limit))]
        await asyncio.gather(*(handle.wait_until_online() for handle in handles))
        return handles

    def launch_worker(self, online: Optional[Callable[[], Any]] = None) -> WorkerHandle:
        if self._closing:
            raise ProcessError("Supervisor is closing")
        handle = WorkerHandle(
            name=f"{self.kind}-{next(self._names)}",
            kind=self.kind,
            exit_callback=self._on_worker_exit,
            on_online=online,
        )
        parent_conn, child_conn = _CTX.Pipe()
        process = _CTX.Process(
            target=worker_bootstrap,
            args=(child_conn, self.entry, self._spawn_state, self.kind),
            name=handle.name,
            daemon=True,
        )
        process.start()
        child_conn.close()
        handle.process = process
        handle.pid = process.pid
        handle.channel = Channel(
            parent_conn,
            lambda message, _handle=handle: self._handle_message(_handle, message),
            loop=self.loop,
            name=f"primary[{handle.name}]",
        )
        self._handles[handle.name] = handle
        handle.monitor_task = self.loop.create_task(self._watch_process(handle))
        return handle

    def broadcast(self, command: str, payload: Any = None) -> List[WorkerHandle]:
        """Send an ``Event`` to every online worker; nobody replies."""

        targets = self.online_handles()
        for handle in targets:
            event = Event(
                txid=self.transactions.next_id(),
                command=command,
                payload=copy.deepcopy(payload),
            )
            try:
                handle.post(event)
            except ProcessError:
                self._log.debug("BROADCAST_SKIPPED", {"worker": handle.name})
        return targets

    def _handle_message(self, handle: WorkerHandle, message: Message) -> None:
        if isinstance(message, Online):
            self._handle_online(handle, message)
        elif isinstance(message, Invoke):
            self._handle_invoke(handle, message)
        elif isinstance(message, (Reply, Event, Shutdown)):
            self._log.warn("UNEXPECTED_WORKER_MESSAGE", {"worker": handle.name})
        else:  # pragma: no cover - Channel filters unknown types
            self._log.warn("UNKNOWN_MESSAGE", {"worker": handle.name})

    def _handle_online(self, handle: WorkerHandle, message: Online) -> None:
        if handle.state is not WorkerState.LAUNCHING:
            return
        if message.pid != handle.pid:
            self._log.warn(
                "WORKER_PID_MISMATCH",
                {"worker": handle.name, "reported": message.pid, "tracked": handle.pid},
            )
            handle.pid = message.pid
        handle.state = WorkerState.ONLINE
        handle.online_event.set()
        if handle.on_online is not None:
            try:
                handle.on_online()
            except Exception:
                self._log.logger.exception("Online continuation of %s failed", handle.name)

    def _handle_invoke(self, handle: WorkerHandle, message: Invoke) -> None:
        if message.payload is None:
            self._log.debug("MALFORMED_WORKER_COMMAND", {"worker": handle.name})
            return
        command = self.registry.lookup(message.command)
        if command is None:
            self._log.error(
                "UNHANDLED_HTTP_WORKER_COMMAND",
                {"command": message.command, "txid": message.txid, "pid": message.pid},
            )
            if self.reply_to_unknown_commands:
                self._send_reply(handle, message, UnknownCommand(message.command), None)
            return
        try:
            self.transactions.register(
                message.txid,
                lambda error, value: self._send_reply(handle, message, error, value),
                owner=handle.pid,
            )
        except DuplicateTransaction:
            self._log.error(
                "DUPLICATE_TRANSACTION", {"txid": message.txid, "pid": message.pid}
            )
            return

        def finish(error: Any = None, value: Any = None) -> None:
            if message.txid not in self.transactions:
                self._log.debug("REPLY_DROPPED", {"txid": message.txid})
                return
            self.transactions.resolve(message.txid, error, value)

        reply = once(defer(self.loop, finish))
        try:
            result = command(message.payload, reply)
        except Exception as exc:
            self._log.error(
                "HTTP_WORKER_COMMAND_ERR", {"command": message.command, "error": repr(exc)}
            )
            reply(exc)
            return
        if inspect.isawaitable(result):
            task = self.loop.create_task(
                self._await_handler(message.command, result, reply)
            )
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_tasks.discard)

    async def _await_handler(self, command: str, awaitable: Any, reply: Callable[..., None]) -> None:
        try:
            await awaitable
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._log.error(
                "HTTP_WORKER_COMMAND_ERR", {"command": command, "error": repr(exc)}
            )
            reply(exc)

    def _send_reply(
        self, handle: WorkerHandle, message: Invoke, error: Any, value: Any
    ) -> None:
        reply = Reply(
            txid=message.txid,
            error=serialize_error(error),
            value=value,
            pid=message.pid,
        )
        try:
            handle.post(reply)
        except ProcessError:
            self._log.debug("REPLY_DROPPED", {"txid": message.txid, "worker": handle.name})

    async def _watch_process(self, handle: WorkerHandle) -> None:
        channel = handle.channel
        process = handle.process
        if channel is None or process is None:
            return
        await channel.wait_closed()
        while process.exitcode is None:
            await asyncio.sleep(self.exit_poll_interval)
        code, sig = split_exitcode(process.exitcode)
        if handle.exit_callback is not None:
            handle.exit_callback(handle, code, sig)

    def _on_worker_exit(
        self, handle: WorkerHandle, code: Optional[int], sig: Optional[str]
    ) -> None:
        crashed = sig is not None or code != 0
        handle.exit_code = code
        handle.exit_signal = sig
        handle.state = WorkerState.EXITED_CRASHED if crashed else WorkerState.EXITED_CLEAN
        self._handles.pop(handle.name, None)
        if handle.channel is not None:
            handle.channel.close()
        self.transactions.discard_owner(handle.pid)
        handle.exited_event.set()
        self.plugins.on_worker_closed(handle.kind, handle.pid)

        if not crashed or self._closing:
            return
        self._log.error("HTTP_WORKER_EXIT", {"signal": sig, "code": code})
        # relaunch with the latest state rather than the startup snapshot
        self.refresh_spawn_state()
        self.relaunches += 1
        if self.relaunch_delay > 0:
            self.loop.call_later(self.relaunch_delay, self._relaunch)
        else:
            self._relaunch()

    def _relaunch(self) -> None:
        if self._closing:
            return
        try:
            self.launch_worker(lambda: self._log.info("HTTP_WORKER_RELAUNCH", {}))
        except Exception as exc:
            self._log.error("HTTP_WORKER_RELAUNCH_ERR", {"error": repr(exc)})

    async def aclose(self, timeout: float = 5.0) -> None:
        """Stop every worker; deliberate exits are clean and never relaunched."""

        if self._closing:
            return
        self._closing = True
        for task in list(self._handler_tasks):
            task.cancel()
        handles = list(self._handles.values())
        if handles:
            await asyncio.gather(
                *(self._stop_handle(handle, timeout) for handle in handles),
                return_exceptions=True,
            )
        self._handles.clear()

    async def _stop_handle(self, handle: WorkerHandle, timeout: float) -> None:
        deadline = self.loop.time() + timeout
        channel = handle.channel
        if channel is not None and not channel.is_closed():
            channel.post(Shutdown())
            await channel.drain()
            # the worker exits and releases its end of the pipe
            try:
                await asyncio.wait_for(channel.wait_closed(), timeout)
            except asyncio.TimeoutError:
                self._log.warn("HTTP_WORKER_STOP_TIMEOUT", {"worker": handle.name})
        process = handle.process
        if process is not None:
            while process.exitcode is None and self.loop.time() < deadline:
                await asyncio.sleep(self.exit_poll_interval)
            if process.exitcode is None:
                process.terminate()
                process.join(timeout=1.0)
                if process.exitcode is None:
                    process.kill()
                    process.join(timeout=1.0)
        if channel is not None:
            channel.close()
        if handle.monitor_task is not None and not handle.monitor_task.done():
            try:
                await asyncio.wait_for(handle.monitor_task, timeout)
            except asyncio.TimeoutError:
                handle.monitor_task.cancel()
