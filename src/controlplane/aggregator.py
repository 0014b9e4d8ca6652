"""Folding of sub-resource outcomes into one deployment status."""

from __future__ import annotations

from collections.abc import Iterable

from .models import DeploymentStatus, LifecycleOperation, Outcome

IN_PROGRESS_STATUS: dict[LifecycleOperation, DeploymentStatus] = {
    LifecycleOperation.CREATE: DeploymentStatus.CREATING,
    LifecycleOperation.UPDATE: DeploymentStatus.UPDATING,
    LifecycleOperation.DELETE: DeploymentStatus.DELETING,
}

COMPLETED_STATUS: dict[LifecycleOperation, DeploymentStatus] = {
    LifecycleOperation.CREATE: DeploymentStatus.ACTIVE,
    LifecycleOperation.UPDATE: DeploymentStatus.ACTIVE,
    LifecycleOperation.DELETE: DeploymentStatus.DELETED,
}


def aggregate_status(outcomes: Iterable[Outcome], operation: LifecycleOperation) -> DeploymentStatus:
    """Fold sub-resource outcomes into a deployment status.

    Any failure wins; otherwise any unfinished operation keeps the deployment
    in the operation's in-progress status; otherwise the operation completed.
    Adding outcomes can only move the result towards FAILED, never back.

    Args:
        outcomes: Outcomes of every sub-resource operation and stack.
        operation: The lifecycle request the outcomes belong to.

    Returns:
        The aggregated deployment status.
    """
    seen = set(outcomes)
    if Outcome.FAILED in seen:
        return DeploymentStatus.FAILED
    if Outcome.IN_PROGRESS in seen:
        return IN_PROGRESS_STATUS[operation]
    return COMPLETED_STATUS[operation]


def outcome_of(status: DeploymentStatus) -> Outcome:
    """Map a deployment status back to the outcome it represents."""
    match status:
        case DeploymentStatus.FAILED:
            return Outcome.FAILED
        case DeploymentStatus.ACTIVE | DeploymentStatus.DELETED:
            return Outcome.SUCCEEDED
        case _:
            return Outcome.IN_PROGRESS
