"""Channel behaviour over an in-process pipe."""

from __future__ import annotations

import asyncio
import logging
import multiprocessing as mp

import pytest

from workerbus.process import Channel, ConnectionClosed, Event


def run(coro):
    return asyncio.run(coro)


def test_messages_arrive_in_order():
    run(_test_messages_arrive_in_order())


async def _test_messages_arrive_in_order() -> None:
    left, right = mp.Pipe()
    received = []
    done = asyncio.Event()

    async def on_message(message) -> None:
        # the next message waits for this handler to finish
        await asyncio.sleep(0.01)
        received.append(message.txid)
        if len(received) == 5:
            done.set()

    sender = Channel(left, lambda message: None, name="sender")
    receiver = Channel(right, on_message, name="receiver")
    try:
        for index in range(5):
            sender.post(Event(txid=str(index), command="TICK"))
        await sender.drain()
        await asyncio.wait_for(done.wait(), 5)
        assert received == ["0", "1", "2", "3", "4"]
    finally:
        sender.close()
        receiver.close()


def test_foreign_objects_are_skipped(caplog):
    run(_test_foreign_objects_are_skipped(caplog))


async def _test_foreign_objects_are_skipped(caplog) -> None:
    left, right = mp.Pipe()
    received = []
    channel = Channel(right, received.append, name="receiver")
    try:
        with caplog.at_level(logging.WARNING):
            left.send({"not": "a message"})
            left.send(Event(txid="1", command="TICK"))
            for _ in range(100):
                if received:
                    break
                await asyncio.sleep(0.01)
        assert received == [Event(txid="1", command="TICK")]
        assert "UNKNOWN_MESSAGE" in caplog.text
    finally:
        channel.close()
        left.close()


def test_peer_close_is_observed():
    run(_test_peer_close_is_observed())


async def _test_peer_close_is_observed() -> None:
    left, right = mp.Pipe()
    channel = Channel(right, lambda message: None, name="receiver")
    left.close()
    await asyncio.wait_for(channel.wait_closed(), 5)
    assert channel.is_closed()
    with pytest.raises(ConnectionClosed):
        await channel.send(Event(txid="1", command="TICK"))
