"""Tests for bounded operation polling."""

from __future__ import annotations

import pytest

from controlplane.errors import ExternalFailure, OperationTimeoutError
from controlplane.poller import ObservedState, OperationPoller


def scripted(*tags: str):
    """Describe callable returning the given tags in order, repeating the last."""
    seen: list[str] = []

    async def describe(handle: str) -> ObservedState:
        tag = tags[min(len(seen), len(tags) - 1)]
        seen.append(handle)
        return ObservedState(tag, reason=f"reason for {tag}")

    describe.seen = seen  # type: ignore[attr-defined]
    return describe


class TestOperationPollerConstruction:
    """Tests for poller parameter bounds."""

    def test_negative_interval_rejected(self) -> None:
        """A negative interval is a programming error."""
        with pytest.raises(ValueError, match="interval"):
            OperationPoller(interval=-1)

    def test_zero_attempts_rejected(self) -> None:
        """At least one describe is required."""
        with pytest.raises(ValueError, match="max_attempts"):
            OperationPoller(max_attempts=0)


class TestOperationPollerRun:
    """Tests for OperationPoller.run."""

    @pytest.mark.asyncio
    async def test_submits_once_and_returns_handle(self) -> None:
        """Submit runs once; the handle is passed to every describe."""
        submits: list[int] = []

        async def submit() -> str:
            submits.append(1)
            return "stmt-1"

        describe = scripted("STARTED", "STARTED", "FINISHED")
        result = await OperationPoller(interval=0, max_attempts=5).run(
            submit, describe, lambda t: t == "FINISHED", lambda t: t == "FAILED"
        )

        assert submits == [1]
        assert result.handle == "stmt-1"
        assert result.attempts == 3
        assert result.state.tag == "FINISHED"
        assert describe.seen == ["stmt-1"] * 3

    @pytest.mark.asyncio
    async def test_terminal_failure_raises_external_failure(self) -> None:
        """A failure state stops polling and carries the reason."""

        async def submit() -> str:
            return "h"

        with pytest.raises(ExternalFailure) as exc_info:
            await OperationPoller(interval=0, max_attempts=5).run(
                submit,
                scripted("RUNNING", "FAILED"),
                lambda t: t == "DONE",
                lambda t: t == "FAILED",
                operation="create thing",
                key="thing/a",
            )

        error = exc_info.value
        assert error.code == "FAILED"
        assert error.key == "thing/a"
        assert "reason for FAILED" in str(error)

    @pytest.mark.asyncio
    async def test_budget_exhaustion_is_timeout(self) -> None:
        """Never reaching a terminal state is an error, not success."""

        async def submit() -> str:
            return "h"

        describe = scripted("RUNNING")
        with pytest.raises(OperationTimeoutError) as exc_info:
            await OperationPoller(interval=0, max_attempts=3).run(
                submit, describe, lambda t: t == "DONE", lambda t: False, key="thing/b"
            )

        assert exc_info.value.attempts == 3
        assert len(describe.seen) == 3
        assert "RUNNING" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_per_call_budget_overrides_default(self) -> None:
        """interval and max_attempts can be overridden per call."""

        async def submit() -> None:
            return None

        describe = scripted("RUNNING")
        with pytest.raises(OperationTimeoutError):
            await OperationPoller(interval=30, max_attempts=100).run(
                submit, describe, lambda t: False, lambda t: False, interval=0, max_attempts=2
            )

        assert len(describe.seen) == 2

    @pytest.mark.asyncio
    async def test_submit_error_propagates_without_polling(self) -> None:
        """A failing submit is not retried or polled."""

        async def submit() -> str:
            raise ExternalFailure("rejected", operation="create")

        describe = scripted("DONE")
        with pytest.raises(ExternalFailure, match="rejected"):
            await OperationPoller(interval=0, max_attempts=3).run(
                submit, describe, lambda t: t == "DONE", lambda t: False
            )

        assert describe.seen == []
