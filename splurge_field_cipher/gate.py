"""Maintenance gate coordinating protected writes with rotation sweeps."""

import logging
import threading
from contextlib import contextmanager
from enum import Enum
from typing import Callable, Iterator, Optional, TypeVar

from splurge_field_cipher.exceptions import (
    DrainTimeoutError,
    MaintenanceGateError,
    MaintenanceInProgressError,
    RotationAlreadyInProgressError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_DEFAULT = object()


class GateState(str, Enum):
    """Gate lifecycle states."""

    OPEN = "open"
    DRAINING = "draining"
    CLOSED = "closed"


class ConflictPolicy(str, Enum):
    """What a second concurrent maintenance request does."""

    REJECT = "reject"
    BLOCK = "block"


class MaintenanceGate:
    """Process-wide gate between protected writes and exclusive maintenance.

    State machine::

        OPEN --exclusive()--> DRAINING --in-flight == 0--> CLOSED --body exits--> OPEN

    New protected operations wait (or are rejected) as soon as the gate
    leaves OPEN. Operations already running when maintenance is requested
    finish normally before the gate closes.
    """

    def __init__(
        self,
        *,
        block_timeout: Optional[float] = None,
        drain_timeout: Optional[float] = None,
        conflict_policy: ConflictPolicy = ConflictPolicy.REJECT
    ) -> None:
        """Initialize the gate in the OPEN state.

        Args:
            block_timeout: Default seconds a protected operation waits for the gate
                to reopen (None waits indefinitely)
            drain_timeout: Seconds maintenance waits for in-flight operations
                (None waits indefinitely)
            conflict_policy: REJECT or BLOCK a second concurrent maintenance request
        """
        self._cond = threading.Condition()
        self._state = GateState.OPEN
        self._in_flight = 0
        self._owner: Optional[int] = None
        self._local = threading.local()
        self._block_timeout = block_timeout
        self._drain_timeout = drain_timeout
        self._conflict_policy = ConflictPolicy(conflict_policy)

    @property
    def state(self) -> GateState:
        """Current gate state."""
        return self._state

    @property
    def in_flight(self) -> int:
        """Number of protected operations currently running."""
        return self._in_flight

    @property
    def conflict_policy(self) -> ConflictPolicy:
        return self._conflict_policy

    def is_maintenance_active(self) -> bool:
        """Whether maintenance is draining or running."""
        return self._state != GateState.OPEN

    def _depth(self) -> int:
        return getattr(self._local, "depth", 0)

    @contextmanager
    def protected(
        self,
        *,
        blocking: bool = True,
        timeout: Optional[float] = _DEFAULT
    ) -> Iterator[None]:
        """Run the enclosed block as a protected operation.

        Args:
            blocking: Wait for the gate to reopen instead of failing immediately
            timeout: Seconds to wait; defaults to the gate's block timeout

        Raises:
            MaintenanceInProgressError: If the gate is not OPEN and the caller
                does not or can no longer wait
        """
        depth = self._depth()
        if depth:
            # Already counted as in flight on this thread
            self._local.depth = depth + 1
            try:
                yield
            finally:
                self._local.depth = depth
            return

        if timeout is _DEFAULT:
            timeout = self._block_timeout

        with self._cond:
            if self._owner == threading.get_ident():
                raise MaintenanceInProgressError(
                    "Protected operation requested from the thread running maintenance"
                )

            if self._state != GateState.OPEN:
                if not blocking:
                    raise MaintenanceInProgressError("Maintenance in progress; retry later")
                logger.debug("Protected operation waiting for maintenance", extra={
                    "state": self._state.value,
                    "event": "gate_wait"
                })
                if not self._cond.wait_for(lambda: self._state == GateState.OPEN, timeout):
                    raise MaintenanceInProgressError(
                        f"Maintenance still in progress after {timeout} seconds"
                    )

            self._in_flight += 1

        self._local.depth = 1
        try:
            yield
        finally:
            self._local.depth = 0
            with self._cond:
                self._in_flight -= 1
                if self._in_flight == 0:
                    self._cond.notify_all()

    def run_protected(
        self,
        op: Callable[[], T],
        *,
        blocking: bool = True,
        timeout: Optional[float] = _DEFAULT
    ) -> T:
        """Execute op as a protected operation and return its result."""
        with self.protected(blocking=blocking, timeout=timeout):
            return op()

    def _acquire_maintenance(self) -> None:
        """Move OPEN -> DRAINING. Caller holds ``_cond``."""
        me = threading.get_ident()
        while self._state != GateState.OPEN:
            if self._owner == me:
                raise RotationAlreadyInProgressError("Maintenance already held by this thread")
            if self._conflict_policy == ConflictPolicy.REJECT:
                raise RotationAlreadyInProgressError("Another maintenance operation is in progress")
            self._cond.wait()

        self._state = GateState.DRAINING
        self._owner = me
        self._cond.notify_all()

    def _reopen(self) -> None:
        with self._cond:
            self._state = GateState.OPEN
            self._owner = None
            self._cond.notify_all()

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        """Hold exclusive maintenance for the enclosed block.

        The gate always returns to OPEN when the block exits, whether it
        returns or raises.

        Raises:
            RotationAlreadyInProgressError: If maintenance is already running and
                the policy is REJECT, or if this thread already holds it
            MaintenanceGateError: If called from inside a protected operation
            DrainTimeoutError: If in-flight operations do not finish in time
        """
        if self._depth():
            raise MaintenanceGateError("Cannot start maintenance from inside a protected operation")

        with self._cond:
            self._acquire_maintenance()

        try:
            logger.info("Maintenance requested, draining protected operations", extra={
                "in_flight": self._in_flight,
                "event": "gate_draining"
            })
            with self._cond:
                if not self._cond.wait_for(lambda: self._in_flight == 0, self._drain_timeout):
                    raise DrainTimeoutError(
                        f"{self._in_flight} protected operation(s) still running after "
                        f"{self._drain_timeout} seconds"
                    )
                self._state = GateState.CLOSED

            logger.info("Maintenance gate closed", extra={"event": "gate_closed"})
            yield
        finally:
            self._reopen()
            logger.info("Maintenance gate opened", extra={"event": "gate_opened"})

    def with_exclusive_maintenance(self, op: Callable[[], T]) -> T:
        """Execute op under exclusive maintenance and return its result."""
        with self.exclusive():
            return op()
