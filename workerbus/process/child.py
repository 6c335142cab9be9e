"""Worker-side half of the command bus."""

from __future__ import annotations

import asyncio
import copy
import logging
import os
from multiprocessing.connection import Connection
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from ..errors import CommandError
from ..transactions import TransactionTracker
from .channel import Channel, ConnectionClosed
from .protocol import Event, Invoke, Message, Online, Reply, Shutdown
from .utils import run_handler

WorkerEntry = Callable[["WorkerChannel"], Any]
EventHandler = Callable[[Any], Any]


class WorkerChannel:
    """What a worker entry point sees of the primary.

    ``environment`` is the snapshot the worker was spawned with; it is replaced
    (never merged) when an ``ENV_UPDATE`` event arrives.
    """

    def __init__(
        self,
        conn: Connection,
        environment: Mapping[str, Any],
        *,
        kind: str = "http-worker",
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self.loop = loop or asyncio.get_event_loop()
        self.kind = kind
        self.pid = os.getpid()
        self._environment: Dict[str, Any] = copy.deepcopy(dict(environment))
        self._tracker = TransactionTracker(prefix=f"{self.pid:x}")
        self._waiters: Dict[str, asyncio.Future[Any]] = {}
        self._event_handlers: Dict[str, List[EventHandler]] = {}
        self._event_tasks: Set[asyncio.Task[Any]] = set()
        self._online = False
        self._shutdown_requested = False
        self._logger = logging.getLogger(__name__)
        self._channel = Channel(
            conn, self._dispatch, loop=self.loop, name=f"worker[{self.pid}]"
        )
        self._closer = self.loop.create_task(self._fail_waiters_on_close())

    async def _fail_waiters_on_close(self) -> None:
        await self._channel.wait_closed()
        for future in self._waiters.values():
            if not future.done():
                future.set_exception(ConnectionClosed("primary went away"))

    @property
    def environment(self) -> Dict[str, Any]:
        return copy.deepcopy(self._environment)

    @property
    def online(self) -> bool:
        return self._online

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_requested

    @property
    def closed(self) -> bool:
        return self._channel.is_closed()

    async def notify_online(self) -> None:
        if self._online:
            return
        await self._channel.send(Online(pid=self.pid))
        self._online = True

    async def invoke(
        self, command: str, payload: Any = None, *, timeout: Optional[float] = None
    ) -> Any:
        """Run ``command`` on the primary and return its value.

        The primary ignores requests without a payload, so ``None`` is sent as
        an empty mapping.
        """

        if payload is None:
            payload = {}
        txid = self._tracker.next_id()
        future: asyncio.Future[Any] = self.loop.create_future()
        self._waiters[txid] = future

        def settle(error: Any, value: Any) -> None:
            if future.done():
                return
            if error is not None:
                future.set_exception(CommandError.from_serialized(error))
            else:
                future.set_result(value)

        self._tracker.register(txid, settle)
        try:
            await self._channel.send(
                Invoke(command=command, txid=txid, payload=payload, pid=self.pid)
            )
            if timeout is None:
                return await future
            return await asyncio.wait_for(future, timeout)
        finally:
            self._waiters.pop(txid, None)
            self._tracker.forget(txid)

    def on_event(self, command: str, handler: EventHandler) -> None:
        self._event_handlers.setdefault(command, []).append(handler)

    async def _dispatch(self, message: Message) -> None:
        if isinstance(message, Reply):
            if message.txid not in self._tracker:
                self._logger.debug("Dropping reply for unknown txid %s", message.txid)
                return
            self._tracker.resolve(message.txid, message.error, message.value)
        elif isinstance(message, Event):
            await self._handle_event(message)
        elif isinstance(message, Shutdown):
            self._logger.debug("Worker %s shutting down: %s", self.pid, message.reason)
            self._shutdown_requested = True
            self.close()
        elif isinstance(message, (Online, Invoke)):
            self._logger.warning("Worker received primary-bound message %r", message)
        else:  # pragma: no cover - Channel filters unknown types
            self._logger.warning("Worker received unknown message %r", message)

    async def _handle_event(self, event: Event) -> None:
        if event.command == "ENV_UPDATE" and isinstance(event.payload, Mapping):
            self._environment = copy.deepcopy(dict(event.payload))
        # handlers may invoke commands, so they must not block the reader
        for handler in list(self._event_handlers.get(event.command, ())):
            task = self.loop.create_task(self._run_event_handler(handler, event))
            self._event_tasks.add(task)
            task.add_done_callback(self._event_tasks.discard)

    async def _run_event_handler(self, handler: EventHandler, event: Event) -> None:
        try:
            await run_handler(handler, event.payload)
        except ConnectionClosed:
            if not self.closed:
                raise
            self._logger.debug("Event handler for %s cut short by close", event.command)
        except Exception:
            self._logger.exception("Event handler for %s failed", event.command)

    def close(self) -> None:
        self._channel.close()

    async def wait_closed(self) -> None:
        await self._channel.wait_closed()
        await self._closer


def worker_bootstrap(
    conn: Connection,
    entry: Optional[WorkerEntry],
    environment: Mapping[str, Any],
    kind: str,
) -> None:
    """``multiprocessing`` target of every worker process."""

    asyncio.run(_child_main(conn, entry, environment, kind))


async def _child_main(
    conn: Connection,
    entry: Optional[WorkerEntry],
    environment: Mapping[str, Any],
    kind: str,
) -> None:
    loop = asyncio.get_running_loop()
    channel = WorkerChannel(conn, environment, kind=kind, loop=loop)
    if entry is not None:
        try:
            await run_handler(entry, channel)
        except ConnectionClosed:
            # shutdown or a vanished primary interrupted the entry
            if not (channel.shutdown_requested or channel.closed):
                raise
        except Exception:  # pragma: no cover - child side logging
            logging.getLogger(__name__).exception(
                "Worker entry failed in PID %s", os.getpid()
            )
            channel.close()
            raise
    if not channel.online:
        try:
            await channel.notify_online()
        except ConnectionClosed:
            return
    await channel.wait_closed()
