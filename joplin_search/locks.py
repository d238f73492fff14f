from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class RWLock:
    """Reader/writer lock for coroutines sharing one vector index.

    Any number of searches may hold the read side together. A delta insert
    takes the write side; once a writer is waiting, new readers queue behind
    it so a steady stream of searches cannot starve the insert.
    """

    def __init__(self) -> None:
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0
        self._cond = asyncio.Condition()

    @property
    def readers(self) -> int:
        return self._readers

    @property
    def writer_active(self) -> bool:
        return self._writer

    async def acquire_read(self) -> None:
        async with self._cond:
            while self._writer or self._writers_waiting > 0:
                await self._cond.wait()
            self._readers += 1

    async def release_read(self) -> None:
        async with self._cond:
            self._readers = max(0, self._readers - 1)
            if self._readers == 0:
                self._cond.notify_all()

    async def acquire_write(self) -> None:
        # Register intent before waiting on the condition so readers that
        # arrive in the meantime block.
        self._writers_waiting += 1
        try:
            async with self._cond:
                while self._writer or self._readers > 0:
                    await self._cond.wait()
                self._writer = True
        finally:
            self._writers_waiting -= 1
            if not self._writer:
                # Cancelled while waiting; wake readers parked behind us.
                async with self._cond:
                    self._cond.notify_all()

    async def release_write(self) -> None:
        async with self._cond:
            self._writer = False
            self._cond.notify_all()

    @asynccontextmanager
    async def read_lock(self) -> AsyncIterator[None]:
        await self.acquire_read()
        try:
            yield
        finally:
            await self.release_read()

    @asynccontextmanager
    async def write_lock(self) -> AsyncIterator[None]:
        await self.acquire_write()
        try:
            yield
        finally:
            await self.release_write()
