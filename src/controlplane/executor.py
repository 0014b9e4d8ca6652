"""Tiered execution of a change-set through the kind provisioners.

Execution runs in two phases:
1. Delete phase: deletions (including the delete half of replacements) in
   descending dependency tier
2. Write phase: creations and updates in ascending dependency tier

Changes within one tier run concurrently, grouped by kind so that a
provisioner can batch them. Tiers are joined before the next one starts.
Execution stops after the first tier that contains a failure; changes that
already succeeded are kept, there is no rollback.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field

from .diff import Change, ChangeSet, DiffEngine
from .errors import ControlPlaneError
from .models import Outcome, ResourceKind
from .provisioner import ChangeOutcome, ResourceProvisioner

logger = logging.getLogger(__name__)

DELETE_PHASE = "delete"
WRITE_PHASE = "write"


@dataclass
class ExecutionReport:
    """What happened to each change of a change-set."""

    delete_outcomes: list[ChangeOutcome] = field(default_factory=list)
    write_outcomes: list[ChangeOutcome] = field(default_factory=list)
    # Changes not attempted because of a failure or the deadline
    pending: list[Change] = field(default_factory=list)
    deadline_exceeded: bool = False

    @property
    def outcomes(self) -> list[ChangeOutcome]:
        return [*self.delete_outcomes, *self.write_outcomes]

    @property
    def failures(self) -> list[ChangeOutcome]:
        return [o for o in self.outcomes if o.outcome == Outcome.FAILED]

    @property
    def first_failure(self) -> ChangeOutcome | None:
        failures = self.failures
        return failures[0] if failures else None

    def outcome_values(self) -> list[Outcome]:
        """Outcomes to fold into the deployment status.

        Changes left unexecuted by the deadline count as in progress.
        """
        values = [o.outcome for o in self.outcomes]
        if self.deadline_exceeded:
            values.extend(Outcome.IN_PROGRESS for _ in self.pending)
        return values


class ChangeSetExecutor:
    """Drives a change-set through provisioners in dependency order."""

    def __init__(
        self,
        provisioners: Mapping[ResourceKind, ResourceProvisioner],
        diff_engine: DiffEngine,
        deadline_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the executor.

        Args:
            provisioners: One provisioner per resource kind.
            diff_engine: Supplies the dependency tier of each kind.
            deadline_seconds: Wall-clock budget of one execution; None is unbounded.
            clock: Monotonic time source.
        """
        self._provisioners = provisioners
        self._diff_engine = diff_engine
        self._deadline_seconds = deadline_seconds
        self._clock = clock

    async def execute(self, change_set: ChangeSet) -> ExecutionReport:
        """Execute a change-set.

        The deadline is checked before each tier. Once it has passed no new
        operation is issued; operations already in flight are awaited.

        Returns:
            The execution report.
        """
        report = ExecutionReport()
        started = self._clock()

        steps = [
            (True, tier, changes)
            for tier, changes in self._tiers(change_set.to_delete, descending=True)
        ] + [
            (False, tier, changes)
            for tier, changes in self._tiers([*change_set.to_create, *change_set.to_update], descending=False)
        ]

        for index, (deleting, tier, changes) in enumerate(steps):
            phase = DELETE_PHASE if deleting else WRITE_PHASE
            not_started = [c for _, _, rest in steps[index:] for c in rest]

            if self._deadline_seconds is not None and self._clock() - started >= self._deadline_seconds:
                report.deadline_exceeded = True
                report.pending.extend(not_started)
                logger.warning(
                    "Request deadline exceeded, leaving changes unexecuted",
                    extra={"pending": len(report.pending), "deadline_seconds": self._deadline_seconds},
                )
                return report

            logger.info("Executing tier", extra={"phase": phase, "tier": tier, "changes": len(changes)})
            outcomes = await self._run_tier(changes, deleting)
            (report.delete_outcomes if deleting else report.write_outcomes).extend(outcomes)

            failed = [o.change.key for o in outcomes if o.outcome == Outcome.FAILED]
            if failed:
                report.pending.extend(not_started[len(changes) :])
                logger.error(
                    "Tier failed, stopping execution",
                    extra={
                        "phase": phase,
                        "tier": tier,
                        "failed": failed,
                        "not_attempted": len(report.pending),
                    },
                )
                return report

        return report

    def _tiers(self, changes: Iterable[Change], descending: bool) -> list[tuple[int, list[Change]]]:
        tier_of = self._diff_engine.tier_for
        ordered = sorted(changes, key=lambda c: (-tier_of(c.kind) if descending else tier_of(c.kind), c.key))
        return [
            (tier, list(group))
            for tier, group in itertools.groupby(ordered, key=lambda c: tier_of(c.kind))
        ]

    async def _run_tier(self, changes: list[Change], deleting: bool) -> list[ChangeOutcome]:
        by_kind: dict[ResourceKind, list[Change]] = {}
        for change in changes:
            by_kind.setdefault(change.kind, []).append(change)

        results = await asyncio.gather(
            *(self._apply_kind(kind, members, deleting) for kind, members in by_kind.items())
        )
        return [outcome for outcomes in results for outcome in outcomes]

    async def _apply_kind(
        self, kind: ResourceKind, changes: list[Change], deleting: bool
    ) -> list[ChangeOutcome]:
        provisioner = self._provisioners.get(kind)
        if provisioner is None:
            error = ControlPlaneError(f"No provisioner registered for kind {kind.value}")
            return [ChangeOutcome(c, Outcome.FAILED, error=error) for c in changes]

        try:
            return await provisioner.apply(changes, deleting)
        except Exception as e:
            logger.exception(
                "Provisioner raised unexpectedly",
                extra={"kind": kind.value, "keys": [c.key for c in changes]},
            )
            return [ChangeOutcome(c, Outcome.FAILED, error=e) for c in changes]
