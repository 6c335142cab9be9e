"""Transaction ids and single-shot reply bookkeeping."""

from __future__ import annotations

import asyncio
import functools
import itertools
import logging
import uuid
from typing import Any, Callable, Dict, Optional, Tuple

from .errors import DuplicateTransaction

ReplyHandler = Callable[[Any, Any], Any]


class TransactionTracker:
    """Pairs each outstanding transaction id with exactly one reply handler."""

    def __init__(self, prefix: Optional[str] = None) -> None:
        self._prefix = prefix if prefix is not None else uuid.uuid4().hex[:8]
        self._counter = itertools.count(1)
        self._pending: Dict[Any, Tuple[ReplyHandler, Any]] = {}
        self._logger = logging.getLogger(__name__)

    def next_id(self) -> str:
        while True:
            txid = f"{self._prefix}-{next(self._counter):x}"
            if txid not in self._pending:
                return txid

    def register(self, txid: Any, handler: ReplyHandler, owner: Any = None) -> None:
        if txid in self._pending:
            raise DuplicateTransaction(f"Transaction {txid!r} is already pending")
        self._pending[txid] = (handler, owner)

    def resolve(self, txid: Any, error: Any = None, value: Any = None) -> bool:
        entry = self._pending.pop(txid, None)
        if entry is None:
            self._logger.warning("STALE_TRANSACTION_REPLY %s", txid)
            return False
        handler, _owner = entry
        handler(error, value)
        return True

    def forget(self, txid: Any) -> bool:
        return self._pending.pop(txid, None) is not None

    def discard_owner(self, owner: Any) -> int:
        """Forget every transaction of ``owner``; their replies will never be sent."""

        doomed = [txid for txid, (_, who) in self._pending.items() if who == owner]
        for txid in doomed:
            self._pending.pop(txid, None)
        return len(doomed)

    def owner_of(self, txid: Any) -> Any:
        entry = self._pending.get(txid)
        return entry[1] if entry else None

    def __contains__(self, txid: object) -> bool:
        return txid in self._pending

    def __len__(self) -> int:
        return len(self._pending)


def once(func: Callable[..., Any]) -> Callable[..., Any]:
    """Wrap ``func`` so that only the first call goes through."""

    called = False

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        nonlocal called
        if called:
            return None
        called = True
        return func(*args, **kwargs)

    return wrapper


def defer(loop: asyncio.AbstractEventLoop, func: Callable[..., Any]) -> Callable[..., None]:
    """Wrap ``func`` so each call runs on a later turn of ``loop``."""

    @functools.wraps(func)
    def wrapper(*args: Any) -> None:
        loop.call_soon(func, *args)

    return wrapper
