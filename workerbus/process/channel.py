"""Async message channel on top of a multiprocessing pipe."""

from __future__ import annotations

import asyncio
import logging
import threading
from multiprocessing.connection import Connection
from typing import Any, Callable, Optional, Set

from .protocol import MESSAGE_TYPES, Message
from .utils import run_handler


class ConnectionClosed(RuntimeError):
    """Raised when a peer connection is closed."""


MessageHandler = Callable[[Message], Any]

_EOF = object()


class Channel:
    """Bidirectional, FIFO message channel to one peer process.

    A daemon thread blocks on the pipe and hands messages to the loop;
    ``on_message`` sees them in arrival order, each handler finishing (including
    awaiting it) before the next message is delivered. Outgoing messages are
    serialized through one send lock.

    Closing the local end does not wake a thread blocked on the pipe, so the
    channel only reports closed-by-peer once the peer process lets go of its end.
    """

    def __init__(
        self,
        conn: Connection,
        on_message: MessageHandler,
        *,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        name: Optional[str] = None,
    ) -> None:
        self._conn = conn
        self._on_message = on_message
        self._loop = loop or asyncio.get_event_loop()
        self._logger = logging.getLogger(__name__)
        self._name = name or f"channel-{id(self):x}"
        self._send_lock = asyncio.Lock()
        self._inbox: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self._closed_event = asyncio.Event()
        self._send_tasks: Set[asyncio.Task[Any]] = set()
        self._reader_thread = threading.Thread(
            target=self._read_forever, name=f"{self._name}-reader", daemon=True
        )
        self._reader_thread.start()
        self._reader_task = self._loop.create_task(self._reader_loop())

    @property
    def name(self) -> str:
        return self._name

    async def send(self, message: Message) -> None:
        if self._closed:
            raise ConnectionClosed(f"{self._name} is closed")
        async with self._send_lock:
            try:
                await self._loop.run_in_executor(None, self._conn.send, message)
            except (BrokenPipeError, EOFError, OSError) as exc:
                raise ConnectionClosed(f"{self._name} send failed") from exc

    def post(self, message: Message) -> asyncio.Task[Any]:
        """Schedule ``message`` for sending without waiting for it.

        Messages posted from the same loop keep their order.
        """

        task = self._loop.create_task(self._post(message))
        self._send_tasks.add(task)
        task.add_done_callback(self._send_tasks.discard)
        return task

    async def _post(self, message: Message) -> None:
        try:
            await self.send(message)
        except ConnectionClosed:
            self._logger.debug("%s dropped %r: peer gone", self._name, message)

    async def drain(self) -> None:
        """Wait until every posted message has been handed to the pipe."""

        if self._send_tasks:
            await asyncio.gather(*list(self._send_tasks), return_exceptions=True)

    def _read_forever(self) -> None:
        while True:
            try:
                message = self._conn.recv()
            except (EOFError, OSError):
                break
            except Exception:
                self._logger.exception("%s received an unreadable message", self._name)
                continue
            if not self._deliver(message):
                return
        self._deliver(_EOF)

    def _deliver(self, item: Any) -> bool:
        try:
            self._loop.call_soon_threadsafe(self._inbox.put_nowait, item)
        except RuntimeError:
            # loop already closed
            return False
        return True

    async def _reader_loop(self) -> None:
        try:
            while True:
                message = await self._inbox.get()
                if message is _EOF:
                    break
                if not isinstance(message, MESSAGE_TYPES):
                    self._logger.warning(
                        "UNKNOWN_MESSAGE %s received %r", self._name, message
                    )
                    continue
                try:
                    await run_handler(self._on_message, message)
                except Exception:
                    self._logger.exception(
                        "%s failed to handle %r", self._name, message
                    )
        except asyncio.CancelledError:
            pass
        finally:
            self._closed = True
            try:
                self._conn.close()
            except OSError:
                pass
            self._closed_event.set()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._conn.close()
        except OSError:
            pass
        self._reader_task.cancel()

    async def aclose(self) -> None:
        self.close()
        await self._closed_event.wait()

    def is_closed(self) -> bool:
        return self._closed

    async def wait_closed(self) -> None:
        await self._closed_event.wait()
