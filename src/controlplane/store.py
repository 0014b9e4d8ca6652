"""Versioned metadata store for deployment records.

Every write produces a new version of the record. Writes are optimistic:
update_at_version succeeds only when the stored version still equals the
version the caller read, otherwise ConflictError is raised and nothing is
written.

Two implementations are provided:
- InMemoryMetadataStore keeps the full history of each record in process
- DynamoDbMetadataStore keeps one item per version plus a "latest" pointer
  item that is written with a condition on the expected version
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from .errors import ConflictError, DeploymentNotFoundError
from .models import Deployment, DeploymentStatus

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

LATEST_SORT_KEY = "latest"
VERSION_SORT_KEY_FORMAT = "v#{:010d}"
CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailedException"


@dataclass(frozen=True)
class DeploymentFilter:
    """Selection criteria for listing deployments."""

    project_id: str | None = None
    include_deleted: bool = False

    def matches(self, deployment: Deployment) -> bool:
        if self.project_id is not None and deployment.project_id != self.project_id:
            return False
        return self.include_deleted or not deployment.deleted


@dataclass
class Page:
    """One page of a listing."""

    items: list[Deployment] = field(default_factory=list)
    total_count: int = 0


def _paginate(deployments: list[Deployment], page_size: int, page_number: int) -> Page:
    if page_size < 1 or page_size > MAX_PAGE_SIZE:
        raise ValueError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")
    if page_number < 1:
        raise ValueError("page_number must be at least 1")
    ordered = sorted(deployments, key=lambda d: (d.created_at, d.id), reverse=True)
    start = (page_number - 1) * page_size
    return Page(items=ordered[start : start + page_size], total_count=len(ordered))


def _stamp(deployment: Deployment, version: int, **updates: Any) -> Deployment:
    return deployment.model_copy(
        update={"version": version, "updated_at": datetime.now(UTC), **updates}, deep=True
    )


class MetadataStore(ABC):
    """Persistence of deployment records with optimistic versioning."""

    @abstractmethod
    async def get(self, deployment_id: str) -> Deployment | None:
        """Return the latest version of a record, soft-deleted ones included."""

    @abstractmethod
    async def put(self, deployment: Deployment) -> str:
        """Store a new record at version 1.

        Raises:
            ConflictError: If a record with the same id exists.
        """

    @abstractmethod
    async def update_at_version(self, deployment: Deployment, expected_version: int) -> Deployment:
        """Write a new version if the stored version equals expected_version.

        Returns:
            The stored record at its new version.

        Raises:
            ConflictError: If the stored version differs.
            DeploymentNotFoundError: If the record does not exist.
        """

    @abstractmethod
    async def list(
        self,
        filter: DeploymentFilter | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        page_number: int = 1,
    ) -> Page:
        """List the latest versions of matching records, newest first."""

    async def soft_delete(self, deployment_id: str, operator: str) -> Deployment:
        """Mark a record deleted, keeping its history."""
        current = await self.get(deployment_id)
        if current is None:
            raise DeploymentNotFoundError(f"Deployment {deployment_id} not found")
        marked = current.model_copy(
            update={"deleted": True, "operator": operator, "status": DeploymentStatus.DELETED}
        )
        return await self.update_at_version(marked, current.version)


class InMemoryMetadataStore(MetadataStore):
    """Process-local store keeping every version of every record."""

    def __init__(self) -> None:
        self._history: dict[str, list[dict[str, Any]]] = {}

    async def get(self, deployment_id: str) -> Deployment | None:
        versions = self._history.get(deployment_id)
        if not versions:
            return None
        return Deployment.from_item(versions[-1])

    async def put(self, deployment: Deployment) -> str:
        if deployment.id in self._history:
            raise ConflictError(f"Deployment {deployment.id} already exists")
        self._history[deployment.id] = [_stamp(deployment, 1).to_item()]
        return deployment.id

    async def update_at_version(self, deployment: Deployment, expected_version: int) -> Deployment:
        versions = self._history.get(deployment.id)
        if not versions:
            raise DeploymentNotFoundError(f"Deployment {deployment.id} not found")
        current_version = versions[-1]["version"]
        if current_version != expected_version:
            raise ConflictError(
                f"Deployment {deployment.id} is at version {current_version}, "
                f"expected {expected_version}"
            )
        stored = _stamp(deployment, expected_version + 1)
        versions.append(stored.to_item())
        return stored

    async def list(
        self,
        filter: DeploymentFilter | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        page_number: int = 1,
    ) -> Page:
        filter = filter or DeploymentFilter()
        latest = [Deployment.from_item(v[-1]) for v in self._history.values()]
        return _paginate([d for d in latest if filter.matches(d)], page_size, page_number)

    def history(self, deployment_id: str) -> list[Deployment]:
        """Return every stored version of a record, oldest first."""
        return [Deployment.from_item(v) for v in self._history.get(deployment_id, [])]


class DynamoDbMetadataStore(MetadataStore):
    """DynamoDB-backed store.

    Table layout: partition key "id", sort key "sk". Each version is an item
    with sk "v#<version>"; the item with sk "latest" mirrors the newest
    version and carries the optimistic lock. Record bodies are stored as JSON
    strings.
    """

    def __init__(self, table: Any) -> None:
        """Initialize with a boto3 DynamoDB Table resource."""
        self._table = table

    async def _call(self, fn: Callable[..., Any], **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, **kwargs))

    @staticmethod
    def _item(deployment: Deployment, sort_key: str) -> dict[str, Any]:
        return {
            "id": deployment.id,
            "sk": sort_key,
            "version": deployment.version,
            "project_id": deployment.project_id,
            "status": deployment.status.value,
            "deleted": deployment.deleted,
            "body": json.dumps(deployment.to_item(), sort_keys=True),
        }

    @staticmethod
    def _from_item(item: dict[str, Any]) -> Deployment:
        return Deployment.from_item(json.loads(item["body"]))

    async def _write(self, deployment: Deployment, latest_condition: Any) -> None:
        """Move the latest pointer, then record the version item.

        The pointer put holds the optimistic lock. The version item is
        written only by the writer that won it, so it is overwritten
        unconditionally; a version item left over from a write whose pointer
        put failed never blocks a later write of the same version.
        """
        try:
            await self._call(
                self._table.put_item,
                Item=self._item(deployment, LATEST_SORT_KEY),
                ConditionExpression=latest_condition,
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == CONDITIONAL_CHECK_FAILED:
                raise ConflictError(
                    f"Deployment {deployment.id} was modified concurrently "
                    f"(version {deployment.version} already written)"
                ) from e
            raise

        try:
            await self._call(
                self._table.put_item,
                Item=self._item(deployment, VERSION_SORT_KEY_FORMAT.format(deployment.version)),
            )
        except ClientError:
            logger.error(
                "Version item not recorded, history is missing this version",
                extra={"deployment_id": deployment.id, "version": deployment.version},
            )
            raise

    async def get(self, deployment_id: str) -> Deployment | None:
        response = await self._call(
            self._table.get_item, Key={"id": deployment_id, "sk": LATEST_SORT_KEY}
        )
        item = response.get("Item")
        return self._from_item(item) if item else None

    async def put(self, deployment: Deployment) -> str:
        stored = _stamp(deployment, 1)
        await self._write(stored, Attr("id").not_exists())
        logger.debug("Stored new deployment", extra={"deployment_id": stored.id})
        return stored.id

    async def update_at_version(self, deployment: Deployment, expected_version: int) -> Deployment:
        current = await self.get(deployment.id)
        if current is None:
            raise DeploymentNotFoundError(f"Deployment {deployment.id} not found")
        if current.version != expected_version:
            raise ConflictError(
                f"Deployment {deployment.id} is at version {current.version}, "
                f"expected {expected_version}"
            )
        stored = _stamp(deployment, expected_version + 1)
        await self._write(stored, Attr("version").eq(expected_version))
        return stored

    async def list(
        self,
        filter: DeploymentFilter | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        page_number: int = 1,
    ) -> Page:
        filter = filter or DeploymentFilter()
        condition = Attr("sk").eq(LATEST_SORT_KEY)
        if filter.project_id is not None:
            condition = condition & Attr("project_id").eq(filter.project_id)
        if not filter.include_deleted:
            condition = condition & Attr("deleted").eq(False)

        deployments: list[Deployment] = []
        kwargs: dict[str, Any] = {"FilterExpression": condition}
        while True:
            response = await self._call(self._table.scan, **kwargs)
            deployments.extend(self._from_item(item) for item in response.get("Items", []))
            if "LastEvaluatedKey" not in response:
                break
            kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]

        return _paginate(deployments, page_size, page_number)

    async def history(self, deployment_id: str) -> list[Deployment]:
        """Return every stored version of a record, oldest first."""
        response = await self._call(
            self._table.query,
            KeyConditionExpression=Key("id").eq(deployment_id) & Key("sk").begins_with("v#"),
        )
        return [self._from_item(item) for item in response.get("Items", [])]
