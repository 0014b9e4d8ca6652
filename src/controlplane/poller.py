"""Bounded polling of asynchronous provisioning operations.

Provisioning APIs accept a request and complete it later. The poller submits
the request once, then observes it at a fixed interval until a terminal state
is reached or the attempt budget runs out. An exhausted budget is always an
error, never a silent success.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from .config import DEFAULT_MAX_POLL_ATTEMPTS, DEFAULT_POLL_INTERVAL_SECONDS
from .errors import ExternalFailure, OperationTimeoutError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ObservedState:
    """A single observation of a remote operation."""

    tag: str
    reason: str | None = None
    external_id: str | None = None


@dataclass(frozen=True)
class PollResult:
    """Terminal success of a polled operation."""

    state: ObservedState
    attempts: int
    handle: Any = None


class OperationPoller:
    """Drives a submitted operation to a terminal state.

    Stateless between calls; one instance is shared by all provisioners.
    """

    def __init__(
        self,
        interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_attempts: int = DEFAULT_MAX_POLL_ATTEMPTS,
    ) -> None:
        if interval < 0:
            raise ValueError("interval must not be negative")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._interval = interval
        self._max_attempts = max_attempts

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    async def run(
        self,
        submit: Callable[[], Awaitable[Any]],
        describe: Callable[[Any], Awaitable[ObservedState]],
        is_terminal_success: Callable[[str], bool],
        is_terminal_failure: Callable[[str], bool],
        interval: float | None = None,
        max_attempts: int | None = None,
        *,
        operation: str = "",
        key: str = "",
    ) -> PollResult:
        """Submit an operation once and poll it to a terminal state.

        Args:
            submit: Issues the request and returns a handle for describe.
            describe: Observes the operation identified by the handle.
            is_terminal_success: True for state tags that mean done.
            is_terminal_failure: True for state tags that mean failed.
            interval: Seconds to sleep before each describe.
            max_attempts: Number of describes before giving up.
            operation: Operation name for errors and logs.
            key: Sub-resource key for errors and logs.

        Returns:
            The terminal observation and the number of attempts used.

        Raises:
            ExternalFailure: If the operation reached a failure state.
            OperationTimeoutError: If no terminal state was observed in budget.
        """
        interval = self._interval if interval is None else interval
        max_attempts = self._max_attempts if max_attempts is None else max_attempts

        handle = await submit()

        state: ObservedState | None = None
        for attempt in range(1, max_attempts + 1):
            await asyncio.sleep(interval)
            state = await describe(handle)

            if is_terminal_success(state.tag):
                logger.debug(
                    "Operation reached terminal success",
                    extra={"operation": operation, "key": key, "state": state.tag, "attempt": attempt},
                )
                return PollResult(state=state, attempts=attempt, handle=handle)

            if is_terminal_failure(state.tag):
                logger.warning(
                    "Operation reached terminal failure",
                    extra={"operation": operation, "key": key, "state": state.tag, "reason": state.reason},
                )
                raise ExternalFailure(
                    f"{operation or 'operation'} failed with state {state.tag}: "
                    f"{state.reason or 'no reason reported'}",
                    operation=operation,
                    key=key,
                    code=state.tag,
                )

        last = state.tag if state else "unknown"
        logger.error(
            "Operation timed out",
            extra={"operation": operation, "key": key, "attempts": max_attempts, "last_state": last},
        )
        raise OperationTimeoutError(
            f"{operation or 'operation'} did not reach a terminal state after "
            f"{max_attempts} attempts (last state: {last})",
            operation=operation,
            key=key,
            attempts=max_attempts,
        )
