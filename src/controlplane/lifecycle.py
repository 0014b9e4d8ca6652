"""Deployment lifecycle controller.

Owns the deployment entity. Each lifecycle request:
1. Loads the deployment from the metadata store
2. Writes the in-progress status at the next version
3. Diffs the applied sub-resources against the desired ones
4. Drives the change-set through the provisioners tier by tier
5. Folds the outcomes into a status and writes it back at the next version

The diff always starts from the sub-resources recorded as applied on the
deployment, so a retry or a follow-up update only redoes what did not
complete. A request that runs out of time fails with the remaining changes
unexecuted. A database rename is a global replacement trigger: every BI asset
is deleted and recreated under the new database.

Requests for the same deployment are serialized in process; requests for
different deployments run concurrently. Every store write is optimistic, so
a concurrent writer in another process surfaces as ConflictError.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .aggregator import IN_PROGRESS_STATUS, aggregate_status, outcome_of
from .diff import ChangeSet, DiffEngine
from .errors import (
    ConflictError,
    ControlPlaneError,
    DeploymentNotFoundError,
    OperationTimeoutError,
    SpecValidationError,
)
from .executor import ChangeSetExecutor, ExecutionReport
from .models import (
    BI_ASSET_KINDS,
    Deployment,
    DeploymentSpec,
    DeploymentStatus,
    DesiredResource,
    FailureDetail,
    LifecycleOperation,
    Outcome,
    ResourceKind,
    ResourceRecord,
    spec_hash,
)
from .provenance import ChangeProvenanceSummary, get_provenance_logger
from .provisioner import ProvisionContext, ResourceProvisioner
from .spec_loader import parse_spec
from .stacks import StackStatusSource, stack_outcome
from .store import DEFAULT_PAGE_SIZE, DeploymentFilter, MetadataStore, Page

logger = logging.getLogger(__name__)

ProvisionerFactory = Callable[[ProvisionContext], Mapping[ResourceKind, ResourceProvisioner]]

# Statuses from which an Update is accepted
UPDATABLE_STATUSES = frozenset({DeploymentStatus.ACTIVE, DeploymentStatus.FAILED})


@dataclass
class LifecycleResult:
    """Outcome of one lifecycle request."""

    deployment_id: str
    status: DeploymentStatus
    version: int
    failure: FailureDetail | None = None
    summary: dict[str, int] = field(default_factory=dict)
    replaced_kinds: list[ResourceKind] = field(default_factory=list)
    deadline_exceeded: bool = False

    @property
    def success(self) -> bool:
        return self.status != DeploymentStatus.FAILED

    @classmethod
    def from_deployment(
        cls,
        deployment: Deployment,
        summary: dict[str, int] | None = None,
        deadline_exceeded: bool = False,
    ) -> LifecycleResult:
        return cls(
            deployment_id=deployment.id,
            status=deployment.status,
            version=deployment.version,
            failure=deployment.failure,
            summary=summary or {},
            replaced_kinds=list(deployment.replaced_kinds),
            deadline_exceeded=deadline_exceeded,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "deployment_id": self.deployment_id,
            "status": self.status.value,
            "version": self.version,
            "failure": self.failure.model_dump() if self.failure else None,
            "summary": self.summary,
            "replaced_kinds": [k.value for k in self.replaced_kinds],
            "deadline_exceeded": self.deadline_exceeded,
        }


def replacement_trigger(previous: DeploymentSpec | None, desired: DeploymentSpec) -> frozenset[ResourceKind]:
    """Kinds to rebuild from scratch when moving from previous to desired."""
    if previous is not None and previous.warehouse.database_name != desired.warehouse.database_name:
        return BI_ASSET_KINDS
    return frozenset()


class LifecycleController:
    """Executes lifecycle requests against one metadata store."""

    def __init__(
        self,
        store: MetadataStore,
        provisioner_factory: ProvisionerFactory,
        context: ProvisionContext | None = None,
        stack_source: StackStatusSource | None = None,
        deadline_seconds: float | None = None,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        """Initialize the controller.

        Args:
            store: Versioned metadata store.
            provisioner_factory: Builds the per-kind provisioners for a deployment.
            context: Settings shared by all deployments; deployment and
                project ids are filled in per request.
            stack_source: Templating stack status, folded in on refresh.
            deadline_seconds: Default deadline of one request.
            id_factory: Generates deployment ids.
        """
        self._store = store
        self._provisioner_factory = provisioner_factory
        self._context = context or ProvisionContext(deployment_id="", project_id="")
        self._stack_source = stack_source
        self._deadline_seconds = deadline_seconds
        self._id_factory = id_factory
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    async def _load(self, deployment_id: str) -> Deployment:
        deployment = await self._store.get(deployment_id)
        if deployment is None:
            raise DeploymentNotFoundError(f"Deployment {deployment_id} not found")
        return deployment

    @staticmethod
    def _coerce(spec: DeploymentSpec | dict[str, Any]) -> DeploymentSpec:
        return spec if isinstance(spec, DeploymentSpec) else parse_spec(spec)

    # -------------------------------------------------------------------------
    # Lifecycle requests
    # -------------------------------------------------------------------------

    async def create(
        self,
        spec: DeploymentSpec | dict[str, Any],
        operator: str = "",
        deadline_seconds: float | None = None,
    ) -> LifecycleResult:
        """Create a deployment and provision its sub-resources.

        Raises:
            SpecValidationError: If the spec is invalid.
            ConflictError: If the project already has a deployment.
        """
        spec = self._coerce(spec)

        async def request() -> LifecycleResult:
            async with self._lock_for(f"project:{spec.project_id}"):
                existing = await self._store.list(DeploymentFilter(project_id=spec.project_id), page_size=1)
                if existing.total_count:
                    raise ConflictError(
                        f"Project {spec.project_id} already has deployment {existing.items[0].id}"
                    )
                deployment = Deployment(
                    id=self._id_factory(),
                    project_id=spec.project_id,
                    status=DeploymentStatus.CREATING,
                    spec=spec,
                    last_operation=LifecycleOperation.CREATE,
                    operator=operator,
                )
                await self._store.put(deployment)
                staged = await self._load(deployment.id)
                async with self._lock_for(staged.id):
                    return await self._run(staged, LifecycleOperation.CREATE, frozenset(), deadline_seconds)

        return await self._track(LifecycleOperation.CREATE, "", spec.project_id, operator, request)

    async def update(
        self,
        deployment_id: str,
        spec: DeploymentSpec | dict[str, Any],
        operator: str = "",
        deadline_seconds: float | None = None,
    ) -> LifecycleResult:
        """Bring a deployment to a new desired configuration.

        Raises:
            SpecValidationError: If the spec is invalid or names another project.
            ConflictError: If the deployment is not ACTIVE or FAILED.
            DeploymentNotFoundError: If the deployment does not exist.
        """
        spec = self._coerce(spec)

        async def request() -> LifecycleResult:
            async with self._lock_for(deployment_id):
                current = await self._load(deployment_id)
                if current.deleted or current.status not in UPDATABLE_STATUSES:
                    raise ConflictError(
                        f"Deployment {deployment_id} cannot be updated in status {current.status.value}"
                    )
                if spec.project_id != current.project_id:
                    raise SpecValidationError(
                        f"projectId {spec.project_id} does not match deployment project {current.project_id}"
                    )

                replace_kinds = replacement_trigger(current.spec, spec)
                staged = current.model_copy(
                    update={
                        "status": DeploymentStatus.UPDATING,
                        "spec": spec,
                        "previous_spec": current.spec,
                        "last_operation": LifecycleOperation.UPDATE,
                        "operator": operator,
                        "failure": None,
                        "replaced_kinds": [],
                    }
                )
                staged = await self._store.update_at_version(staged, current.version)
                return await self._run(staged, LifecycleOperation.UPDATE, replace_kinds, deadline_seconds)

        return await self._track(LifecycleOperation.UPDATE, deployment_id, spec.project_id, operator, request)

    async def delete(
        self,
        deployment_id: str,
        operator: str = "",
        deadline_seconds: float | None = None,
    ) -> LifecycleResult:
        """Delete every sub-resource of a deployment, then soft-delete it.

        Deleting a deleted deployment is a no-op.

        Raises:
            ConflictError: If the deployment is already being deleted.
            DeploymentNotFoundError: If the deployment does not exist.
        """

        async def request() -> LifecycleResult:
            async with self._lock_for(deployment_id):
                current = await self._load(deployment_id)
                if current.deleted or current.status == DeploymentStatus.DELETED:
                    logger.info("Deployment already deleted", extra={"deployment_id": deployment_id})
                    return LifecycleResult.from_deployment(current)
                if current.status == DeploymentStatus.DELETING:
                    raise ConflictError(f"Deployment {deployment_id} is already being deleted")

                staged = current.model_copy(
                    update={
                        "status": DeploymentStatus.DELETING,
                        "last_operation": LifecycleOperation.DELETE,
                        "operator": operator,
                        "failure": None,
                    }
                )
                staged = await self._store.update_at_version(staged, current.version)
                return await self._run(staged, LifecycleOperation.DELETE, frozenset(), deadline_seconds)

        return await self._track(LifecycleOperation.DELETE, deployment_id, "", operator, request)

    async def retry(
        self,
        deployment_id: str,
        operator: str = "",
        deadline_seconds: float | None = None,
    ) -> LifecycleResult:
        """Replay the last operation of a failed deployment.

        Sub-resources that completed in the failed attempt are recorded as
        applied and are not touched again.

        Raises:
            ConflictError: If the deployment is not FAILED.
            DeploymentNotFoundError: If the deployment does not exist.
        """

        async def request() -> LifecycleResult:
            async with self._lock_for(deployment_id):
                current = await self._load(deployment_id)
                if current.status != DeploymentStatus.FAILED:
                    raise ConflictError(
                        f"Retry requires status FAILED, deployment {deployment_id} is {current.status.value}"
                    )
                operation = current.last_operation
                staged = current.model_copy(
                    update={
                        "status": IN_PROGRESS_STATUS[operation],
                        "operator": operator or current.operator,
                        "failure": None,
                    }
                )
                staged = await self._store.update_at_version(staged, current.version)
                return await self._run(staged, operation, frozenset(), deadline_seconds)

        return await self._track("retry", deployment_id, "", operator, request)

    async def get(self, deployment_id: str, refresh: bool = False) -> Deployment:
        """Return a deployment, optionally refreshing its status.

        A refresh folds the templating stack outcomes into the stored status
        and writes the result back when it changed.

        Raises:
            DeploymentNotFoundError: If the deployment does not exist.
        """
        current = await self._load(deployment_id)
        if not refresh or self._stack_source is None or current.deleted:
            return current

        async with self._lock_for(deployment_id):
            current = await self._load(deployment_id)
            stacks = await self._stack_source.describe_stack_status(deployment_id)
            outcomes = [stack_outcome(status) for status in stacks.values()]
            outcomes.append(outcome_of(current.status))
            status = aggregate_status(outcomes, current.last_operation)
            if status == current.status:
                return current

            logger.info(
                "Deployment status refreshed",
                extra={
                    "deployment_id": deployment_id,
                    "from_status": current.status.value,
                    "to_status": status.value,
                    "stacks": stacks,
                },
            )
            return await self._store.update_at_version(
                current.model_copy(update={"status": status}), current.version
            )

    async def list(
        self,
        filter: DeploymentFilter | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        page_number: int = 1,
    ) -> Page:
        """List deployments, newest first."""
        return await self._store.list(filter, page_size, page_number)

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def plan(
        self,
        deployment: Deployment,
        operation: LifecycleOperation,
        replace_kinds: frozenset[ResourceKind] = frozenset(),
    ) -> ChangeSet:
        """Compute the change-set an operation would execute, without executing it."""
        provisioners = self._provisioner_factory(self._context_for(deployment))
        previous, desired = self._resource_maps(deployment, operation)
        return self._diff_engine(provisioners).diff(previous, desired, replace_kinds)

    def _context_for(self, deployment: Deployment) -> ProvisionContext:
        return dataclasses.replace(
            self._context, deployment_id=deployment.id, project_id=deployment.project_id
        )

    @staticmethod
    def _diff_engine(provisioners: Mapping[ResourceKind, ResourceProvisioner]) -> DiffEngine:
        return DiffEngine(
            immutable_fields={kind: p.immutable_fields for kind, p in provisioners.items()},
            reapply_kinds=[kind for kind, p in provisioners.items() if p.reapply_unchanged],
        )

    @staticmethod
    def _resource_maps(
        deployment: Deployment, operation: LifecycleOperation
    ) -> tuple[dict[str, DesiredResource], dict[str, DesiredResource]]:
        applied = {key: record.to_desired(key) for key, record in deployment.resources.items()}
        desired = deployment.spec.to_resource_map()
        if operation == LifecycleOperation.DELETE:
            # Keys that never completed may still exist remotely; absent is success
            return {**desired, **applied}, {}
        return applied, desired

    async def _run(
        self,
        deployment: Deployment,
        operation: LifecycleOperation,
        replace_kinds: frozenset[ResourceKind],
        deadline_seconds: float | None,
    ) -> LifecycleResult:
        provisioners = self._provisioner_factory(self._context_for(deployment))
        engine = self._diff_engine(provisioners)
        previous, desired = self._resource_maps(deployment, operation)
        change_set = engine.diff(previous, desired, replace_kinds)

        logger.info(
            "Executing lifecycle request",
            extra={
                "deployment_id": deployment.id,
                "operation": operation.value,
                **change_set.summary(),
                "replaced_kinds": sorted(k.value for k in change_set.replaced_kinds),
            },
        )

        deadline = deadline_seconds if deadline_seconds is not None else self._deadline_seconds
        executor = ChangeSetExecutor(provisioners, engine, deadline_seconds=deadline)
        report = await executor.execute(change_set)

        status = aggregate_status(report.outcome_values(), operation)
        failure = self._failure_detail(report)
        if report.deadline_exceeded and status == IN_PROGRESS_STATUS[operation]:
            # Nothing is in flight any more; Retry or Update picks up the rest
            status = DeploymentStatus.FAILED
            failure = self._deadline_failure(report, deadline)
        replaced = (
            sorted(change_set.replaced_kinds, key=lambda k: k.value)
            if replace_kinds
            else list(deployment.replaced_kinds)
        )
        final = deployment.model_copy(
            update={
                "status": status,
                "resources": self._applied_resources(deployment, report),
                "failure": failure,
                "replaced_kinds": replaced,
            }
        )
        stored = await self._store.update_at_version(final, deployment.version)

        if status == DeploymentStatus.DELETED:
            stored = await self._store.soft_delete(stored.id, stored.operator)

        return LifecycleResult.from_deployment(
            stored, summary=change_set.summary(), deadline_exceeded=report.deadline_exceeded
        )

    @staticmethod
    def _applied_resources(deployment: Deployment, report: ExecutionReport) -> dict[str, ResourceRecord]:
        resources = dict(deployment.resources)
        for outcome in report.delete_outcomes:
            if outcome.outcome == Outcome.SUCCEEDED:
                resources.pop(outcome.change.key, None)
        for outcome in report.write_outcomes:
            if outcome.outcome != Outcome.SUCCEEDED:
                continue
            change = outcome.change
            spec = change.new_spec or {}
            previous = resources.get(change.key)
            resources[change.key] = ResourceRecord(
                kind=change.kind,
                spec_hash=spec_hash(spec),
                spec=spec,
                external_id=outcome.external_id or (previous.external_id if previous else None),
            )
        return resources

    @staticmethod
    def _failure_detail(report: ExecutionReport) -> FailureDetail | None:
        failed = report.first_failure
        if failed is None:
            return None
        error = failed.error
        return FailureDetail(
            key=failed.change.key,
            kind=failed.change.kind.value,
            message=str(error) if error else "unknown error",
            error_type=type(error).__name__ if error else "Unknown",
        )

    @staticmethod
    def _deadline_failure(report: ExecutionReport, deadline: float | None) -> FailureDetail:
        first = report.pending[0]
        return FailureDetail(
            key=first.key,
            kind=first.kind.value,
            message=f"Request deadline of {deadline}s exceeded with {len(report.pending)} changes not executed",
            error_type=OperationTimeoutError.__name__,
        )

    async def _track(
        self,
        operation: LifecycleOperation | str,
        deployment_id: str,
        project_id: str,
        operator: str,
        request: Callable[[], Awaitable[LifecycleResult]],
    ) -> LifecycleResult:
        """Run a request and emit its provenance record."""
        provenance_logger = get_provenance_logger()
        provenance = provenance_logger.create_provenance(
            operation=operation.value if isinstance(operation, LifecycleOperation) else operation,
            deployment_id=deployment_id,
            project_id=project_id,
            operator=operator,
        )
        started = time.monotonic()
        try:
            result = await request()
        except ControlPlaneError as e:
            provenance.error = str(e)
            provenance.error_type = type(e).__name__
            provenance.duration_seconds = time.monotonic() - started
            provenance_logger.log_provenance(provenance)
            raise

        provenance.duration_seconds = time.monotonic() - started
        provenance.deployment_id = result.deployment_id
        provenance.version = result.version
        provenance.status = result.status.value
        provenance.replaced_kinds = [k.value for k in result.replaced_kinds]
        provenance.change_summary = ChangeProvenanceSummary.from_summary(result.summary)
        provenance.deadline_exceeded = result.deadline_exceeded
        if result.failure is not None:
            provenance.error = result.failure.message
            provenance.error_type = result.failure.error_type
            provenance.failed_key = result.failure.key
        provenance_logger.log_provenance(provenance)
        return result
