"""Base provisioner interface for externally hosted sub-resources.

Each sub-resource kind has one provisioner that knows how to create, update
and delete objects of that kind through the provider SDK. Provisioners:
- absorb benign races through the idempotency classifier
- confirm every mutation by polling to a terminal state
- own the external identifiers of the objects they manage

SDK clients are blocking; calls run in the default executor so that changes
within one dependency tier proceed concurrently.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from botocore.exceptions import ClientError

from .classifier import Disposition, OperationKind, classify, error_code, error_message, is_not_found
from .diff import Change, ChangeAction, changed_fields
from .errors import ControlPlaneError, ExternalFailure, RequiresReplaceError
from .models import Outcome, ResourceKind
from .poller import ObservedState, OperationPoller

logger = logging.getLogger(__name__)

# Observation tags shared by all provisioners
ABSENT = "ABSENT"
UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class ProvisionContext:
    """Deployment-level settings shared by the provisioners of one request."""

    deployment_id: str
    project_id: str
    resource_prefix: str = "clickstream"
    stack_prefix: str = "Clickstream"
    account_id: str = ""
    region: str = ""
    partition: str = "aws"
    drop_warehouse_on_delete: bool = False


@dataclass
class ChangeOutcome:
    """Result of applying one change."""

    change: Change
    outcome: Outcome
    external_id: str | None = None
    error: Exception | None = None


class ResourceProvisioner(ABC):
    """Create/update/delete operations for one sub-resource kind."""

    kind: ResourceKind
    # Spec fields that force delete-then-create; "*" marks every field
    immutable_fields: frozenset[str] = frozenset()
    # Adopting an object that already exists is not allowed
    strict_create: bool = False
    # Unchanged keys are re-applied whenever another key of the kind changes
    reapply_unchanged: bool = False

    def __init__(self, context: ProvisionContext, poller: OperationPoller) -> None:
        self._context = context
        self._poller = poller

    @property
    def context(self) -> ProvisionContext:
        return self._context

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    @abstractmethod
    async def create(self, key: str, spec: dict[str, Any]) -> str | None:
        """Create the object and wait until it is usable.

        Returns:
            The external identifier of the object.
        """

    async def update(self, key: str, old_spec: dict[str, Any], new_spec: dict[str, Any]) -> str | None:
        """Bring the object to the new spec in place.

        Raises:
            RequiresReplaceError: If an immutable field differs.
        """
        self.check_replace(key, old_spec, new_spec)
        return await self._update(key, old_spec, new_spec)

    async def _update(self, key: str, old_spec: dict[str, Any], new_spec: dict[str, Any]) -> str | None:
        return await self.create(key, new_spec)

    @abstractmethod
    async def delete(self, key: str, spec: dict[str, Any]) -> None:
        """Delete the object and wait until it is gone. Absent is success."""

    @abstractmethod
    async def current_external_id(self, key: str, spec: dict[str, Any]) -> str | None:
        """Look up the external identifier of an existing object."""

    def check_replace(self, key: str, old_spec: dict[str, Any], new_spec: dict[str, Any]) -> None:
        if "*" in self.immutable_fields:
            fields = changed_fields(old_spec, new_spec)
        else:
            fields = [f for f in changed_fields(old_spec, new_spec) if f in self.immutable_fields]
        if fields:
            raise RequiresReplaceError(key, fields)

    # -------------------------------------------------------------------------
    # Change application
    # -------------------------------------------------------------------------

    async def apply(self, changes: list[Change], deleting: bool) -> list[ChangeOutcome]:
        """Apply the changes of this kind within one dependency tier.

        Args:
            changes: Changes of this provisioner's kind.
            deleting: True in the delete phase, False in the create/update phase.

        Returns:
            One outcome per change, in input order.
        """
        return list(await asyncio.gather(*(self._apply_one(c, deleting) for c in changes)))

    async def _apply_one(self, change: Change, deleting: bool) -> ChangeOutcome:
        try:
            external_id = await self._dispatch(change, deleting)
        except (ControlPlaneError, ClientError) as e:
            error = e if isinstance(e, ControlPlaneError) else self._failure(change.action.value, change.key, e)
            if isinstance(error, ExternalFailure):
                error.kind = error.kind or self.kind.value
                error.key = error.key or change.key
            logger.error(
                "Sub-resource change failed",
                extra={
                    "key": change.key,
                    "kind": self.kind.value,
                    "action": change.action.value,
                    "error": str(error),
                    "error_type": type(error).__name__,
                },
            )
            return ChangeOutcome(change, Outcome.FAILED, error=error)

        logger.info(
            "Sub-resource change applied",
            extra={
                "key": change.key,
                "kind": self.kind.value,
                "action": change.action.value,
                "phase": "delete" if deleting else "write",
                "external_id": external_id,
            },
        )
        return ChangeOutcome(change, Outcome.SUCCEEDED, external_id=external_id)

    async def _dispatch(self, change: Change, deleting: bool) -> str | None:
        if deleting:
            await self.delete(change.key, change.old_spec or {})
            return None

        match change.action:
            case ChangeAction.CREATE | ChangeAction.REPLACE:
                return await self.create(change.key, change.new_spec or {})
            case ChangeAction.UPDATE:
                try:
                    return await self.update(change.key, change.old_spec or {}, change.new_spec or {})
                except RequiresReplaceError as e:
                    logger.info(
                        "Update requires replacement",
                        extra={"key": change.key, "kind": self.kind.value, "fields": e.fields},
                    )
                    await self.delete(change.key, change.old_spec or {})
                    return await self.create(change.key, change.new_spec or {})
            case _:
                raise ValueError(f"Unsupported action in write phase: {change.action}")

    # -------------------------------------------------------------------------
    # SDK helpers
    # -------------------------------------------------------------------------

    async def _call(self, fn: Callable[..., Any], **kwargs: Any) -> Any:
        """Run a blocking SDK call in the default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, **kwargs))

    async def _mutate(self, operation: OperationKind, key: str, fn: Callable[..., Any], **kwargs: Any) -> Any:
        """Issue a mutating call, absorbing benign races.

        Returns:
            The SDK response, or None when the error was ignorable.

        Raises:
            ExternalFailure: If the error is fatal.
        """
        try:
            return await self._call(fn, **kwargs)
        except ClientError as e:
            if classify(operation, e, strict=self.strict_create) == Disposition.IGNORABLE:
                logger.info(
                    "Ignoring benign race",
                    extra={
                        "key": key,
                        "kind": self.kind.value,
                        "operation": operation.value,
                        "code": error_code(e),
                    },
                )
                return None
            raise self._failure(operation.value, key, e) from e

    def _observe_error(self, operation: OperationKind, key: str, error: ClientError) -> ObservedState:
        """Translate a describe error into an observation.

        Raises:
            ExternalFailure: If the error is fatal.
        """
        if classify(operation, error) == Disposition.FATAL:
            raise self._failure(operation.value, key, error) from error
        if is_not_found(error):
            return ObservedState(ABSENT)
        return ObservedState(UNKNOWN, reason=error_message(error))

    def _failure(self, operation: str, key: str, error: BaseException) -> ExternalFailure:
        return ExternalFailure(
            f"{self.kind.value} {operation} failed for {key}: {error_message(error)}",
            operation=operation,
            kind=self.kind.value,
            key=key,
            code=error_code(error),
        )

    async def _no_handle(self) -> None:
        return None


def is_absent(tag: str) -> bool:
    return tag == ABSENT


def never(tag: str) -> bool:
    return False
