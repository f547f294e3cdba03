"""
Global write gate for the collection store.

Every record mutation holds the gate in shared mode; a full restore or
bulk import holds it in exclusive mode. This lets restore exclude all
writers without serializing ordinary mutations across collections.

Invariants:
    - While an exclusive holder is active, no shared holder is active
    - A waiting exclusive request blocks new shared acquisitions
      (writer-preferring), so a restore is never starved by mutations
    - Readers never touch the gate
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class WriteGate:
    """Shared/exclusive gate built on an asyncio.Condition.

    Example:
        >>> gate = WriteGate()
        >>> async with gate.shared():
        ...     ...  # one record mutation
        >>> async with gate.exclusive():
        ...     ...  # wholesale replace
    """

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._active = 0
        self._exclusive = False
        self._waiting_exclusive = 0

    @property
    def active_shared(self) -> int:
        return self._active

    @property
    def is_exclusive(self) -> bool:
        return self._exclusive

    @asynccontextmanager
    async def shared(self) -> AsyncIterator[None]:
        """Hold the gate alongside other mutations."""
        async with self._cond:
            await self._cond.wait_for(
                lambda: not self._exclusive and self._waiting_exclusive == 0
            )
            self._active += 1
        try:
            yield
        finally:
            async with self._cond:
                self._active -= 1
                if self._active == 0:
                    self._cond.notify_all()

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[None]:
        """Hold the gate alone, after in-flight mutations drain."""
        async with self._cond:
            self._waiting_exclusive += 1
            try:
                await self._cond.wait_for(lambda: not self._exclusive and self._active == 0)
            finally:
                self._waiting_exclusive -= 1
            self._exclusive = True
        try:
            yield
        finally:
            async with self._cond:
                self._exclusive = False
                self._cond.notify_all()
