"""
Execution Permit: single-slot token gating strategy execution.

The orchestrator tries to check a permit out for every wake. A wake that
finds the slot taken is skipped, never queued. Whoever holds the permit
releases it once the submitted batch's outcome is known.
"""

from __future__ import annotations

from typing import Optional


class Permit:
    """A checked-out slot. Releasing more than once is a no-op."""

    def __init__(self, slot: "PermitSlot") -> None:
        self._slot = slot
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._slot._return()

    def __enter__(self) -> "Permit":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    async def __aenter__(self) -> "Permit":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


class PermitSlot:
    def __init__(self, capacity: int = 1) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._in_flight = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def available(self) -> bool:
        return self._in_flight < self.capacity

    def try_acquire(self) -> Optional[Permit]:
        """Check out a permit, or return None if every slot is taken."""
        if self._in_flight >= self.capacity:
            return None
        self._in_flight += 1
        return Permit(self)

    def _return(self) -> None:
        self._in_flight -= 1
