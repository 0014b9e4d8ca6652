"""Templating-layer stack status.

Parts of a deployment (ingestion, processing, modeling, reporting) are
provisioned by a declarative templating layer as one stack each. The control
plane never writes those stacks; it reads their status and folds it into the
deployment status when a deployment is refreshed.

Stack names are deterministic per deployment: "<prefix>-<type>-<deployment id>".
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Iterable
from typing import Any, Protocol

from botocore.exceptions import ClientError

from .models import Outcome

logger = logging.getLogger(__name__)

# Maximum length for stack names
MAX_STACK_NAME_LENGTH = 128

# Stack types provisioned per deployment
STACK_TYPES: tuple[str, ...] = (
    "Ingestion",
    "KafkaConnector",
    "DataProcessing",
    "DataModelingRedshift",
    "Reporting",
    "Metrics",
)

# Terminal stack states that still mean the last change did not land
FAILED_STACK_STATES = frozenset({
    "ROLLBACK_COMPLETE",
    "UPDATE_ROLLBACK_COMPLETE",
    "IMPORT_ROLLBACK_COMPLETE",
})


def generate_stack_name(stack_prefix: str, stack_type: str, deployment_id: str) -> str:
    """Generate the deterministic name of one templating stack.

    Args:
        stack_prefix: Prefix shared by all stacks of the control plane.
        stack_type: Stack type, e.g. "Ingestion".
        deployment_id: Owning deployment.

    Returns:
        A valid stack name: letters, digits and hyphens, starting with a
        letter, at most 128 characters.
    """
    name = f"{stack_prefix}-{stack_type}-{deployment_id}"
    name = "".join(c if c.isalnum() or c == "-" else "-" for c in name)
    if not name[:1].isalpha():
        name = f"s-{name}"
    return name[:MAX_STACK_NAME_LENGTH]


def stack_outcome(status: str) -> Outcome:
    """Map a stack status to an outcome."""
    if status in FAILED_STACK_STATES or status.endswith("_FAILED"):
        return Outcome.FAILED
    if status.endswith("_IN_PROGRESS"):
        return Outcome.IN_PROGRESS
    if status.endswith("_COMPLETE"):
        return Outcome.SUCCEEDED
    logger.warning("Unrecognised stack status", extra={"stack_status": status})
    return Outcome.IN_PROGRESS


class StackStatusSource(Protocol):
    """Reads the status of the templating stacks of a deployment."""

    async def describe_stack_status(self, deployment_id: str) -> dict[str, str]:
        """Return stack name to status for every existing stack."""
        ...


class CloudFormationStackStatusSource:
    """Stack status read from CloudFormation."""

    def __init__(
        self,
        client: Any,
        stack_prefix: str = "Clickstream",
        stack_types: Iterable[str] = STACK_TYPES,
    ) -> None:
        self._client = client
        self._stack_prefix = stack_prefix
        self._stack_types = tuple(stack_types)

    async def _describe(self, stack_name: str) -> str | None:
        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(
                None, functools.partial(self._client.describe_stacks, StackName=stack_name)
            )
        except ClientError as e:
            # CloudFormation reports a missing stack as a ValidationError
            if "does not exist" in e.response.get("Error", {}).get("Message", ""):
                return None
            raise
        stacks = response.get("Stacks", [])
        return stacks[0]["StackStatus"] if stacks else None

    async def describe_stack_status(self, deployment_id: str) -> dict[str, str]:
        names = [generate_stack_name(self._stack_prefix, t, deployment_id) for t in self._stack_types]
        statuses = await asyncio.gather(*(self._describe(name) for name in names))
        result = {name: status for name, status in zip(names, statuses) if status is not None}
        logger.debug(
            "Read templating stack status",
            extra={"deployment_id": deployment_id, "stacks": result},
        )
        return result
