"""Shared types for tunnel capability."""
from __future__ import annotations

from enum import Enum
from typing import Protocol, runtime_checkable


class TunnelState(Enum):
    """Lifecycle of one tunnel process.

    Forward-only, in declaration order; STOPPED is reachable from anywhere.
    """

    NOT_STARTED = "not_started"
    CHECKING_BINARY = "checking_binary"
    SPAWNING = "spawning"
    AWAITING_URL = "awaiting_url"
    READY = "ready"
    FAILED = "failed"
    STOPPED = "stopped"


_ORDER = {state: i for i, state in enumerate(TunnelState)}


def can_transition(current: TunnelState, new: TunnelState) -> bool:
    """Return True if *current* -> *new* is a legal tunnel transition."""
    if new is TunnelState.STOPPED:
        return True
    if current is TunnelState.STOPPED:
        return False
    # READY and FAILED are both terminal until STOPPED
    if current in (TunnelState.READY, TunnelState.FAILED):
        return False
    return _ORDER[new] > _ORDER[current]


@runtime_checkable
class TunnelProcessProtocol(Protocol):
    """Common interface for tunnel process implementations."""

    @property
    def state(self) -> TunnelState: ...

    @property
    def public_url(self) -> str | None: ...

    @property
    def failure_reason(self) -> str | None: ...

    @property
    def is_alive(self) -> bool: ...

    async def start(self, port: int) -> str: ...

    async def stop(self) -> None: ...
