"""Ledger event subscription.

`EventSubscription` is an async iterator over typed `LedgerEvent`s. It polls
`client.events_since(cursor)` and keeps the cursor, so a new subscription can
resume from `sub.cursor` of an old one. Without a cursor it starts where
`client.initial_cursor()` says. `stop()` ends iteration after the
current event; events already yielded are unaffected.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import AsyncIterator, Deque, Optional

from liquidai.ledger.client import LedgerClient
from liquidai.ledger.schemas import LedgerEvent


class EventSubscription:
    def __init__(self, client: LedgerClient, *, cursor: Optional[int] = None, poll_interval_s: float = 5.0):
        self.client = client
        self._next_cursor: Optional[int] = int(cursor) if cursor is not None else None
        self.poll_interval_s = float(poll_interval_s)
        self._buffer: Deque[LedgerEvent] = deque()
        self._stop = asyncio.Event()

    @property
    def cursor(self) -> Optional[int]:
        """Resume point: the first event not yet yielded (None before the first poll)."""
        if self._buffer:
            return self._buffer[0].cursor
        return self._next_cursor

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        self._stop.set()

    async def poll(self) -> int:
        """Fetch new events into the buffer; returns how many arrived."""
        if self._next_cursor is None:
            self._next_cursor = await self.client.initial_cursor()
        events, next_cursor = await self.client.events_since(self._next_cursor)
        self._buffer.extend(events)
        self._next_cursor = next_cursor
        return len(events)

    def __aiter__(self) -> AsyncIterator[LedgerEvent]:
        return self

    async def __anext__(self) -> LedgerEvent:
        while not self._buffer:
            if self._stop.is_set():
                raise StopAsyncIteration
            if await self.poll():
                break
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval_s)
            except asyncio.TimeoutError:
                pass
        if self._stop.is_set():
            raise StopAsyncIteration
        return self._buffer.popleft()

    async def next_event(self, timeout_s: Optional[float] = None) -> Optional[LedgerEvent]:
        try:
            return await asyncio.wait_for(self.__anext__(), timeout=timeout_s)
        except (StopAsyncIteration, asyncio.TimeoutError):
            return None


__all__ = ["EventSubscription"]
