"""Cooperative suspension and cancellation signal."""

from enum import Enum
from typing import Optional

from loguru import logger


class SuspendState(str, Enum):
    """Signal states of a :class:`SuspendController`."""

    ACTIVE = "active"
    SUSPEND_REQUESTED = "suspend-requested"
    CANCEL_REQUESTED = "cancel-requested"


class CancellationToken:
    """Read-only view of a controller handed to steps and sub-workflows."""

    def __init__(self, controller: "SuspendController") -> None:
        self._controller = controller

    @property
    def is_cancel_requested(self) -> bool:
        return self._controller.is_cancel_requested

    @property
    def is_suspend_requested(self) -> bool:
        return self._controller.is_suspend_requested

    @property
    def should_stop(self) -> bool:
        """True once either a suspension or a cancellation was requested."""
        return self._controller.state != SuspendState.ACTIVE

    @property
    def reason(self) -> Optional[str]:
        return self._controller.reason


class SuspendController:
    """Signal shared between a caller and a running execution.

    Callers request ``suspend`` or ``cancel``; the chain executor polls the
    state at step boundaries. Cancellation wins over a pending suspension
    and is never downgraded back to a suspension.
    """

    def __init__(self) -> None:
        self._state = SuspendState.ACTIVE
        self._reason: Optional[str] = None
        self.token = CancellationToken(self)

    @property
    def state(self) -> SuspendState:
        return self._state

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    @property
    def is_suspend_requested(self) -> bool:
        return self._state == SuspendState.SUSPEND_REQUESTED

    @property
    def is_cancel_requested(self) -> bool:
        return self._state == SuspendState.CANCEL_REQUESTED

    def suspend(self, reason: Optional[str] = None) -> None:
        """Ask the execution to pause at the next step boundary."""
        if self.is_cancel_requested:
            logger.debug("Ignoring suspend request: cancellation already requested")
            return
        self._state = SuspendState.SUSPEND_REQUESTED
        self._reason = reason
        logger.info(f"Suspension requested: {reason or 'no reason given'}")

    def cancel(self, reason: Optional[str] = None) -> None:
        """Ask the execution to stop for good at the next step boundary."""
        self._state = SuspendState.CANCEL_REQUESTED
        self._reason = reason
        logger.info(f"Cancellation requested: {reason or 'no reason given'}")

    def reset(self) -> None:
        """Clear a pending suspension so a resumed run can continue.

        A cancellation request is kept.
        """
        if self._state == SuspendState.SUSPEND_REQUESTED:
            self._state = SuspendState.ACTIVE
            self._reason = None
