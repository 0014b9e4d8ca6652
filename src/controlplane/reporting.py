"""BI asset provisioners: datasets, analyses, dashboards and folder placement.

Assets are built per tenant schema. Datasets wrap custom SQL against the
tenant schema; the analysis and dashboard are instantiated from a template
that references the datasets; the dashboard is then placed into a shared
folder.

Asset ids are derived from the deployment id and the warehouse database name,
so a database rename yields fresh ids and the old assets are deleted rather
than reused.

Permissions are granted on create and re-granted on update. Grants are never
revoked.
"""

from __future__ import annotations

import hashlib
import logging
import re
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from botocore.exceptions import ClientError

from .classifier import OperationKind
from .errors import ExternalFailure
from .models import ResourceKind
from .poller import ObservedState, OperationPoller
from .provisioner import ABSENT, ProvisionContext, ResourceProvisioner, is_absent, never

logger = logging.getLogger(__name__)

# =============================================================================
# Status values and permission sets
# =============================================================================

CREATION_SUCCESSFUL = "CREATION_SUCCESSFUL"
UPDATE_SUCCESSFUL = "UPDATE_SUCCESSFUL"
DELETED = "DELETED"
PRESENT = "PRESENT"

SUCCESS_STATES = frozenset({CREATION_SUCCESSFUL, UPDATE_SUCCESSFUL})
FAILURE_STATES = frozenset({"CREATION_FAILED", "UPDATE_FAILED", DELETED})

DATA_SOURCE_OWNER_ACTIONS = [
    "quicksight:DescribeDataSource",
    "quicksight:DescribeDataSourcePermissions",
    "quicksight:PassDataSource",
    "quicksight:UpdateDataSource",
    "quicksight:DeleteDataSource",
    "quicksight:UpdateDataSourcePermissions",
]
DATA_SOURCE_VIEWER_ACTIONS = [
    "quicksight:DescribeDataSource",
    "quicksight:DescribeDataSourcePermissions",
    "quicksight:PassDataSource",
]

DATA_SET_OWNER_ACTIONS = [
    "quicksight:UpdateDataSetPermissions",
    "quicksight:DescribeDataSet",
    "quicksight:DescribeDataSetPermissions",
    "quicksight:PassDataSet",
    "quicksight:CreateIngestion",
    "quicksight:DescribeIngestion",
    "quicksight:ListIngestions",
    "quicksight:UpdateDataSet",
    "quicksight:DeleteDataSet",
    "quicksight:CancelIngestion",
]
DATA_SET_VIEWER_ACTIONS = [
    "quicksight:DescribeDataSet",
    "quicksight:DescribeDataSetPermissions",
    "quicksight:PassDataSet",
    "quicksight:DescribeIngestion",
    "quicksight:ListIngestions",
]

ANALYSIS_OWNER_ACTIONS = [
    "quicksight:DescribeAnalysis",
    "quicksight:UpdateAnalysisPermissions",
    "quicksight:QueryAnalysis",
    "quicksight:UpdateAnalysis",
    "quicksight:RestoreAnalysis",
    "quicksight:DeleteAnalysis",
    "quicksight:DescribeAnalysisPermissions",
]

DASHBOARD_OWNER_ACTIONS = [
    "quicksight:DescribeDashboard",
    "quicksight:ListDashboardVersions",
    "quicksight:QueryDashboard",
    "quicksight:UpdateDashboard",
    "quicksight:DeleteDashboard",
    "quicksight:UpdateDashboardPermissions",
    "quicksight:DescribeDashboardPermissions",
    "quicksight:UpdateDashboardPublishedVersion",
]
DASHBOARD_VIEWER_ACTIONS = [
    "quicksight:DescribeDashboard",
    "quicksight:ListDashboardVersions",
    "quicksight:QueryDashboard",
]

FOLDER_OWNER_ACTIONS = [
    "quicksight:CreateFolder",
    "quicksight:DescribeFolder",
    "quicksight:UpdateFolder",
    "quicksight:DeleteFolder",
    "quicksight:CreateFolderMembership",
    "quicksight:DeleteFolderMembership",
    "quicksight:DescribeFolderPermissions",
    "quicksight:UpdateFolderPermissions",
]
FOLDER_VIEWER_ACTIONS = [
    "quicksight:DescribeFolder",
]

# Rolling bounds for date-range parameters without a default
DEFAULT_DATE_RANGE_DAYS = 3650

SCHEMA_PLACEHOLDER = "{{schema}}"
DATABASE_PLACEHOLDER = "{{database_name}}"


# =============================================================================
# Identifiers and payloads
# =============================================================================


def _digest(*parts: str, length: int = 10) -> str:
    return hashlib.sha256(":".join(parts).encode()).hexdigest()[:length]


def _slug(value: str) -> str:
    return re.sub(r"[^a-z0-9_]+", "_", value.lower()).strip("_")


def data_set_id(prefix: str, deployment_id: str, app_id: str, table_name: str, database_name: str) -> str:
    return f"{prefix}_dataset_{_slug(app_id)}_{_slug(table_name)}_{_digest(deployment_id, database_name)}"


def analysis_id(prefix: str, deployment_id: str, app_id: str, database_name: str) -> str:
    return f"{prefix}_analysis_{_slug(app_id)}_{_digest(deployment_id, database_name)}"


def dashboard_id(prefix: str, deployment_id: str, app_id: str, database_name: str) -> str:
    return f"{prefix}_dashboard_{_slug(app_id)}_{_digest(deployment_id, database_name)}"


def version_number(version_arn: str) -> int:
    """Version number at the end of a dashboard version ARN (``.../version/3``)."""
    return int(version_arn.rsplit("/", 1)[-1])


def folder_id(prefix: str, project_id: str, folder_name: str) -> str:
    return f"{prefix}_folder_{_slug(project_id)}_{_digest(folder_name)}"


def dashboard_member_prefix(prefix: str) -> str:
    """Folder members carrying this prefix were placed by the control plane."""
    return f"{prefix}_dashboard_"


def render_sql(sql: str, app_id: str, database_name: str) -> str:
    """Substitute tenant schema and database placeholders."""
    return sql.replace(SCHEMA_PLACEHOLDER, app_id).replace(DATABASE_PLACEHOLDER, database_name)


def grant_permissions(
    owner: str, share: str | None, owner_actions: list[str], viewer_actions: list[str]
) -> list[dict[str, Any]]:
    """Owner gets the owner set; a distinct share principal gets the viewer set.

    With a single principal, that principal gets the owner set.
    """
    permissions = [{"Principal": owner, "Actions": list(owner_actions)}]
    if share and share != owner:
        permissions.append({"Principal": share, "Actions": list(viewer_actions)})
    return permissions


def parameter_default(name: str, value: str | None, now: datetime | None = None) -> datetime:
    """Resolve the default of a date-range parameter."""
    if value:
        parsed = datetime.fromisoformat(value)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    now = now or datetime.now(UTC)
    bound = timedelta(days=DEFAULT_DATE_RANGE_DAYS)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight + bound if "end" in name.lower() else midnight - bound


def data_set_payload(spec: dict[str, Any], asset_id: str, now: datetime | None = None) -> dict[str, Any]:
    """Build the shared create/update arguments of a dataset."""
    data_set = spec["data_set"]
    table = data_set["table_name"]
    payload: dict[str, Any] = {
        "DataSetId": asset_id,
        "Name": data_set["name"],
        "ImportMode": data_set["import_mode"],
        "PhysicalTableMap": {
            table: {
                "CustomSql": {
                    "DataSourceArn": spec["data_source_arn"],
                    "Name": table,
                    "SqlQuery": render_sql(data_set["custom_sql"], spec["app_id"], spec["database_name"]),
                    "Columns": [{"Name": c["name"], "Type": c["type"]} for c in data_set["columns"]],
                }
            }
        },
        "LogicalTableMap": {
            table: {"Alias": table, "Source": {"PhysicalTableId": table}},
        },
    }
    parameters = [
        {
            "DateTimeDatasetParameter": {
                "Id": str(uuid.uuid5(uuid.NAMESPACE_URL, f"{asset_id}/{p['name']}")),
                "Name": p["name"],
                "ValueType": "SINGLE_VALUED",
                "TimeGranularity": p["time_granularity"],
                "DefaultValues": {
                    "StaticValues": [parameter_default(p["name"], p.get("default_value"), now)]
                },
            }
        }
        for p in data_set.get("date_time_parameters", [])
    ]
    if parameters:
        payload["DatasetParameters"] = parameters
    return payload


# =============================================================================
# Provisioners
# =============================================================================


class _QuickSightBase(ResourceProvisioner):
    """Client access, identifiers and polling shared by BI assets."""

    def __init__(self, context: ProvisionContext, poller: OperationPoller, client: Any) -> None:
        super().__init__(context, poller)
        self._client = client

    @property
    def _account(self) -> str:
        return self._context.account_id

    def _arn(self, resource: str, asset_id: str) -> str:
        c = self._context
        return f"arn:{c.partition}:quicksight:{c.region}:{c.account_id}:{resource}/{asset_id}"

    def _data_set_ids(self, spec: dict[str, Any]) -> dict[str, str]:
        return {
            table: data_set_id(
                self._context.resource_prefix,
                self._context.deployment_id,
                spec["app_id"],
                table,
                spec["database_name"],
            )
            for table in spec["data_set_tables"]
        }

    def _source_entity(self, spec: dict[str, Any]) -> dict[str, Any]:
        return {
            "SourceTemplate": {
                "Arn": spec["template_arn"],
                "DataSetReferences": [
                    {"DataSetPlaceholder": table, "DataSetArn": self._arn("dataset", asset_id)}
                    for table, asset_id in self._data_set_ids(spec).items()
                ],
            }
        }

    async def _confirm(
        self,
        key: str,
        operation: str,
        submit: Any,
        describe_call: Any,
        read_state: Any,
        deleting: bool = False,
    ) -> Any:
        """Poll an asset after a mutation.

        Args:
            describe_call: Callable returning the SDK describe response.
            read_state: Maps a describe response to an ObservedState.
            deleting: Confirm absence instead of a successful state.
        """
        confirm = OperationKind.CONFIRM_DELETE if deleting else OperationKind.CONFIRM_WRITE

        async def describe(handle: Any) -> ObservedState:
            try:
                response = await self._call(describe_call)
            except ClientError as e:
                return self._observe_error(confirm, key, e)
            return read_state(response)

        if deleting:
            success = lambda tag: tag in (ABSENT, DELETED)  # noqa: E731
            failure = never
        else:
            success = lambda tag: tag in SUCCESS_STATES  # noqa: E731
            failure = lambda tag: tag in FAILURE_STATES  # noqa: E731

        result = await self._poller.run(submit, describe, success, failure, operation=operation, key=key)
        return result.handle

    @staticmethod
    def _errors_of(entity: dict[str, Any]) -> str | None:
        errors = entity.get("Errors") or []
        return "; ".join(e.get("Message", "") for e in errors) or None

    async def _adopt(self, key: str, spec: dict[str, Any]) -> str:
        existing = await self.current_external_id(key, spec)
        if existing is None:
            raise ExternalFailure(
                f"{self.kind.value} {key} reported as existing but was not found",
                operation="create",
                kind=self.kind.value,
                key=key,
            )
        return existing


class DataSetProvisioner(_QuickSightBase):
    """Custom SQL dataset over a tenant schema."""

    kind = ResourceKind.BI_DATASET
    immutable_fields = frozenset({"database_name", "app_id"})

    def asset_id(self, spec: dict[str, Any]) -> str:
        return data_set_id(
            self._context.resource_prefix,
            self._context.deployment_id,
            spec["app_id"],
            spec["data_set"]["table_name"],
            spec["database_name"],
        )

    def _permissions(self, spec: dict[str, Any]) -> list[dict[str, Any]]:
        return grant_permissions(
            spec["owner_principal_arn"],
            spec.get("share_principal_arn"),
            DATA_SET_OWNER_ACTIONS,
            DATA_SET_VIEWER_ACTIONS,
        )

    async def _grant_data_source(self, key: str, spec: dict[str, Any]) -> None:
        data_source_id = spec["data_source_arn"].rsplit("/", 1)[-1]
        await self._mutate(
            OperationKind.UPDATE,
            key,
            self._client.update_data_source_permissions,
            AwsAccountId=self._account,
            DataSourceId=data_source_id,
            GrantPermissions=grant_permissions(
                spec["owner_principal_arn"],
                spec.get("share_principal_arn"),
                DATA_SOURCE_OWNER_ACTIONS,
                DATA_SOURCE_VIEWER_ACTIONS,
            ),
        )

    def _describe_call(self, asset_id: str) -> Any:
        return lambda: self._client.describe_data_set(AwsAccountId=self._account, DataSetId=asset_id)

    @staticmethod
    def _read_state(response: dict[str, Any]) -> ObservedState:
        data_set = response.get("DataSet") or {}
        return ObservedState(CREATION_SUCCESSFUL, external_id=data_set.get("Arn"))

    async def create(self, key: str, spec: dict[str, Any]) -> str | None:
        asset_id = self.asset_id(spec)
        await self._grant_data_source(key, spec)

        async def submit() -> str:
            response = await self._mutate(
                OperationKind.CREATE,
                key,
                self._client.create_data_set,
                AwsAccountId=self._account,
                Permissions=self._permissions(spec),
                **data_set_payload(spec, asset_id),
            )
            if response is not None:
                return response["Arn"]
            return await self._adopt(key, spec)

        return await self._confirm(
            key, "create dataset", submit, self._describe_call(asset_id), self._read_state
        )

    async def _update(self, key: str, old_spec: dict[str, Any], new_spec: dict[str, Any]) -> str | None:
        asset_id = self.asset_id(new_spec)

        async def submit() -> str:
            response = await self._mutate(
                OperationKind.UPDATE,
                key,
                self._client.update_data_set,
                AwsAccountId=self._account,
                **data_set_payload(new_spec, asset_id),
            )
            await self._mutate(
                OperationKind.UPDATE,
                key,
                self._client.update_data_set_permissions,
                AwsAccountId=self._account,
                DataSetId=asset_id,
                GrantPermissions=self._permissions(new_spec),
            )
            return response["Arn"] if response else self._arn("dataset", asset_id)

        return await self._confirm(
            key, "update dataset", submit, self._describe_call(asset_id), self._read_state
        )

    async def delete(self, key: str, spec: dict[str, Any]) -> None:
        asset_id = self.asset_id(spec)

        async def submit() -> str:
            await self._mutate(
                OperationKind.DELETE,
                key,
                self._client.delete_data_set,
                AwsAccountId=self._account,
                DataSetId=asset_id,
            )
            return asset_id

        await self._confirm(
            key, "delete dataset", submit, self._describe_call(asset_id), self._read_state, deleting=True
        )

    async def current_external_id(self, key: str, spec: dict[str, Any]) -> str | None:
        try:
            response = await self._call(self._describe_call(self.asset_id(spec)))
        except ClientError as e:
            if self._observe_error(OperationKind.CONFIRM_DELETE, key, e).tag == ABSENT:
                return None
            raise self._failure("describe", key, e) from e
        return response["DataSet"]["Arn"]


class AnalysisProvisioner(_QuickSightBase):
    """Analysis instantiated from the template, owner access only."""

    kind = ResourceKind.BI_ANALYSIS
    immutable_fields = frozenset({"database_name", "app_id"})

    def asset_id(self, spec: dict[str, Any]) -> str:
        return analysis_id(
            self._context.resource_prefix, self._context.deployment_id, spec["app_id"], spec["database_name"]
        )

    def _permissions(self, spec: dict[str, Any]) -> list[dict[str, Any]]:
        return [{"Principal": spec["owner_principal_arn"], "Actions": list(ANALYSIS_OWNER_ACTIONS)}]

    def _describe_call(self, asset_id: str) -> Any:
        return lambda: self._client.describe_analysis(AwsAccountId=self._account, AnalysisId=asset_id)

    def _read_state(self, response: dict[str, Any]) -> ObservedState:
        analysis = response.get("Analysis") or {}
        return ObservedState(
            analysis.get("Status", "UNKNOWN"), reason=self._errors_of(analysis), external_id=analysis.get("Arn")
        )

    async def create(self, key: str, spec: dict[str, Any]) -> str | None:
        asset_id = self.asset_id(spec)

        async def submit() -> str:
            response = await self._mutate(
                OperationKind.CREATE,
                key,
                self._client.create_analysis,
                AwsAccountId=self._account,
                AnalysisId=asset_id,
                Name=spec["name"],
                SourceEntity=self._source_entity(spec),
                Permissions=self._permissions(spec),
            )
            if response is not None:
                return response["Arn"]
            return await self._adopt(key, spec)

        return await self._confirm(
            key, "create analysis", submit, self._describe_call(asset_id), self._read_state
        )

    async def _update(self, key: str, old_spec: dict[str, Any], new_spec: dict[str, Any]) -> str | None:
        asset_id = self.asset_id(new_spec)

        async def submit() -> str:
            response = await self._mutate(
                OperationKind.UPDATE,
                key,
                self._client.update_analysis,
                AwsAccountId=self._account,
                AnalysisId=asset_id,
                Name=new_spec["name"],
                SourceEntity=self._source_entity(new_spec),
            )
            await self._mutate(
                OperationKind.UPDATE,
                key,
                self._client.update_analysis_permissions,
                AwsAccountId=self._account,
                AnalysisId=asset_id,
                GrantPermissions=self._permissions(new_spec),
            )
            return response["Arn"] if response else self._arn("analysis", asset_id)

        return await self._confirm(
            key, "update analysis", submit, self._describe_call(asset_id), self._read_state
        )

    async def delete(self, key: str, spec: dict[str, Any]) -> None:
        asset_id = self.asset_id(spec)

        async def submit() -> str:
            await self._mutate(
                OperationKind.DELETE,
                key,
                self._client.delete_analysis,
                AwsAccountId=self._account,
                AnalysisId=asset_id,
                ForceDeleteWithoutRecovery=True,
            )
            return asset_id

        await self._confirm(
            key, "delete analysis", submit, self._describe_call(asset_id), self._read_state, deleting=True
        )

    async def current_external_id(self, key: str, spec: dict[str, Any]) -> str | None:
        try:
            response = await self._call(self._describe_call(self.asset_id(spec)))
        except ClientError as e:
            if self._observe_error(OperationKind.CONFIRM_DELETE, key, e).tag == ABSENT:
                return None
            raise self._failure("describe", key, e) from e
        analysis = response["Analysis"]
        return None if analysis.get("Status") == DELETED else analysis["Arn"]


class DashboardProvisioner(_QuickSightBase):
    """Published dashboard instantiated from the template."""

    kind = ResourceKind.BI_DASHBOARD
    immutable_fields = frozenset({"database_name", "app_id"})

    def asset_id(self, spec: dict[str, Any]) -> str:
        return dashboard_id(
            self._context.resource_prefix, self._context.deployment_id, spec["app_id"], spec["database_name"]
        )

    def _permissions(self, spec: dict[str, Any]) -> list[dict[str, Any]]:
        return grant_permissions(
            spec["owner_principal_arn"],
            spec.get("share_principal_arn"),
            DASHBOARD_OWNER_ACTIONS,
            DASHBOARD_VIEWER_ACTIONS,
        )

    def _describe_call(self, asset_id: str) -> Any:
        # Without a version number the published version is described
        return lambda: self._client.describe_dashboard(AwsAccountId=self._account, DashboardId=asset_id)

    def _read_state(self, response: dict[str, Any]) -> ObservedState:
        dashboard = response.get("Dashboard") or {}
        version = dashboard.get("Version") or {}
        return ObservedState(
            version.get("Status", "UNKNOWN"), reason=self._errors_of(version), external_id=dashboard.get("Arn")
        )

    async def create(self, key: str, spec: dict[str, Any]) -> str | None:
        asset_id = self.asset_id(spec)

        async def submit() -> str:
            response = await self._mutate(
                OperationKind.CREATE,
                key,
                self._client.create_dashboard,
                AwsAccountId=self._account,
                DashboardId=asset_id,
                Name=spec["name"],
                SourceEntity=self._source_entity(spec),
                Permissions=self._permissions(spec),
            )
            if response is not None:
                return response["Arn"]
            return await self._adopt(key, spec)

        return await self._confirm(
            key, "create dashboard", submit, self._describe_call(asset_id), self._read_state
        )

    async def _update(self, key: str, old_spec: dict[str, Any], new_spec: dict[str, Any]) -> str | None:
        """Update the dashboard, wait for the new version and publish it."""
        asset_id = self.asset_id(new_spec)
        new_version: int | None = None

        async def submit() -> str:
            nonlocal new_version
            response = await self._mutate(
                OperationKind.UPDATE,
                key,
                self._client.update_dashboard,
                AwsAccountId=self._account,
                DashboardId=asset_id,
                Name=new_spec["name"],
                SourceEntity=self._source_entity(new_spec),
            )
            await self._mutate(
                OperationKind.UPDATE,
                key,
                self._client.update_dashboard_permissions,
                AwsAccountId=self._account,
                DashboardId=asset_id,
                GrantPermissions=self._permissions(new_spec),
            )
            if response is None:
                return self._arn("dashboard", asset_id)
            new_version = version_number(response["VersionArn"])
            return response["Arn"]

        def describe_new_version() -> dict[str, Any]:
            if new_version is None:
                return self._client.describe_dashboard(AwsAccountId=self._account, DashboardId=asset_id)
            return self._client.describe_dashboard(
                AwsAccountId=self._account, DashboardId=asset_id, VersionNumber=new_version
            )

        arn = await self._confirm(key, "update dashboard", submit, describe_new_version, self._read_state)
        if new_version is None:
            logger.info("Dashboard unchanged, nothing to publish", extra={"key": key, "dashboard_id": asset_id})
            return arn

        await self._mutate(
            OperationKind.UPDATE,
            key,
            self._client.update_dashboard_published_version,
            AwsAccountId=self._account,
            DashboardId=asset_id,
            VersionNumber=new_version,
        )
        logger.info(
            "Published dashboard version",
            extra={"key": key, "dashboard_id": asset_id, "version": new_version},
        )
        return arn

    async def delete(self, key: str, spec: dict[str, Any]) -> None:
        asset_id = self.asset_id(spec)

        async def submit() -> str:
            await self._mutate(
                OperationKind.DELETE,
                key,
                self._client.delete_dashboard,
                AwsAccountId=self._account,
                DashboardId=asset_id,
            )
            return asset_id

        await self._confirm(
            key, "delete dashboard", submit, self._describe_call(asset_id), self._read_state, deleting=True
        )

    async def current_external_id(self, key: str, spec: dict[str, Any]) -> str | None:
        try:
            response = await self._call(self._describe_call(self.asset_id(spec)))
        except ClientError as e:
            if self._observe_error(OperationKind.CONFIRM_DELETE, key, e).tag == ABSENT:
                return None
            raise self._failure("describe", key, e) from e
        return response["Dashboard"]["Arn"]


class _FolderAccess(_QuickSightBase):
    """Folder look-up and member listing."""

    def folder_id(self, folder_name: str) -> str:
        return folder_id(self._context.resource_prefix, self._context.project_id, folder_name)

    async def _describe_folder(self, key: str, asset_id: str) -> dict[str, Any] | None:
        try:
            response = await self._call(
                self._client.describe_folder, AwsAccountId=self._account, FolderId=asset_id
            )
        except ClientError as e:
            if self._observe_error(OperationKind.CONFIRM_DELETE, key, e).tag == ABSENT:
                return None
            raise self._failure("describe", key, e) from e
        return response["Folder"]

    async def _list_members(self, key: str, asset_id: str) -> list[str]:
        members: list[str] = []
        kwargs: dict[str, Any] = {"AwsAccountId": self._account, "FolderId": asset_id}
        while True:
            try:
                response = await self._call(self._client.list_folder_members, **kwargs)
            except ClientError as e:
                raise self._failure("list members", key, e) from e
            members.extend(m["MemberId"] for m in response.get("FolderMemberList", []))
            if not response.get("NextToken"):
                return members
            kwargs["NextToken"] = response["NextToken"]


class FolderProvisioner(_FolderAccess):
    """Shared folder holding the dashboards of a deployment."""

    kind = ResourceKind.BI_FOLDER
    immutable_fields = frozenset({"folder_name"})

    def _permissions(self, spec: dict[str, Any]) -> list[dict[str, Any]]:
        return grant_permissions(
            spec["owner_principal_arn"],
            spec.get("share_principal_arn"),
            FOLDER_OWNER_ACTIONS,
            FOLDER_VIEWER_ACTIONS,
        )

    async def create(self, key: str, spec: dict[str, Any]) -> str | None:
        asset_id = self.folder_id(spec["folder_name"])
        existing = await self._describe_folder(key, asset_id)
        if existing is not None:
            logger.info("Using existing folder", extra={"key": key, "folder_id": asset_id})
            return existing["Arn"]

        async def submit() -> str:
            await self._mutate(
                OperationKind.CREATE,
                key,
                self._client.create_folder,
                AwsAccountId=self._account,
                FolderId=asset_id,
                Name=spec["folder_name"],
                FolderType="SHARED",
                Permissions=self._permissions(spec),
            )
            return asset_id

        def read_state(response: dict[str, Any]) -> ObservedState:
            return ObservedState(CREATION_SUCCESSFUL, external_id=response["Folder"]["Arn"])

        await self._confirm(
            key,
            "create folder",
            submit,
            lambda: self._client.describe_folder(AwsAccountId=self._account, FolderId=asset_id),
            read_state,
        )
        return self._arn("folder", asset_id)

    async def _update(self, key: str, old_spec: dict[str, Any], new_spec: dict[str, Any]) -> str | None:
        asset_id = self.folder_id(new_spec["folder_name"])
        await self._mutate(
            OperationKind.UPDATE,
            key,
            self._client.update_folder_permissions,
            AwsAccountId=self._account,
            FolderId=asset_id,
            GrantPermissions=self._permissions(new_spec),
        )
        return self._arn("folder", asset_id)

    async def delete(self, key: str, spec: dict[str, Any]) -> None:
        asset_id = self.folder_id(spec["folder_name"])
        if await self._describe_folder(key, asset_id) is None:
            logger.info("Folder already absent", extra={"key": key, "folder_id": asset_id})
            return

        prefix = dashboard_member_prefix(self._context.resource_prefix)
        members = await self._list_members(key, asset_id)
        owned = [m for m in members if m.startswith(prefix)]
        for member_id in owned:
            await self._mutate(
                OperationKind.DELETE,
                key,
                self._client.delete_folder_membership,
                AwsAccountId=self._account,
                FolderId=asset_id,
                MemberId=member_id,
                MemberType="DASHBOARD",
            )

        unrelated = [m for m in members if not m.startswith(prefix)]
        if unrelated:
            logger.warning(
                "Keeping folder with unrelated members",
                extra={"key": key, "folder_id": asset_id, "unrelated_members": len(unrelated)},
            )
            return

        async def submit() -> str:
            await self._mutate(
                OperationKind.DELETE, key, self._client.delete_folder, AwsAccountId=self._account, FolderId=asset_id
            )
            return asset_id

        await self._confirm(
            key,
            "delete folder",
            submit,
            lambda: self._client.describe_folder(AwsAccountId=self._account, FolderId=asset_id),
            lambda response: ObservedState(PRESENT),
            deleting=True,
        )

    async def current_external_id(self, key: str, spec: dict[str, Any]) -> str | None:
        folder = await self._describe_folder(key, self.folder_id(spec["folder_name"]))
        return folder["Arn"] if folder else None


class FolderMembershipProvisioner(_FolderAccess):
    """Placement of one tenant dashboard into the shared folder."""

    kind = ResourceKind.BI_FOLDER_MEMBERSHIP
    immutable_fields = frozenset({"*"})

    def _ids(self, spec: dict[str, Any]) -> tuple[str, str]:
        return (
            self.folder_id(spec["folder_name"]),
            dashboard_id(
                self._context.resource_prefix,
                self._context.deployment_id,
                spec["app_id"],
                spec["database_name"],
            ),
        )

    async def _membership_state(self, key: str, asset_id: str, member_id: str) -> ObservedState:
        members = await self._list_members(key, asset_id)
        return ObservedState(PRESENT if member_id in members else ABSENT)

    async def create(self, key: str, spec: dict[str, Any]) -> str | None:
        asset_id, member_id = self._ids(spec)

        async def submit() -> str:
            await self._mutate(
                OperationKind.CREATE,
                key,
                self._client.create_folder_membership,
                AwsAccountId=self._account,
                FolderId=asset_id,
                MemberId=member_id,
                MemberType="DASHBOARD",
            )
            return member_id

        await self._poller.run(
            submit,
            lambda _: self._membership_state(key, asset_id, member_id),
            lambda tag: tag == PRESENT,
            never,
            operation="create folder membership",
            key=key,
        )
        return f"{asset_id}/{member_id}"

    async def delete(self, key: str, spec: dict[str, Any]) -> None:
        asset_id, member_id = self._ids(spec)

        async def submit() -> str:
            await self._mutate(
                OperationKind.DELETE,
                key,
                self._client.delete_folder_membership,
                AwsAccountId=self._account,
                FolderId=asset_id,
                MemberId=member_id,
                MemberType="DASHBOARD",
            )
            return member_id

        async def describe(_: str) -> ObservedState:
            try:
                return await self._membership_state(key, asset_id, member_id)
            except ExternalFailure as e:
                # A missing folder means the membership is gone too
                if e.code in ("ResourceNotFoundException", "NotFoundException"):
                    return ObservedState(ABSENT)
                raise

        await self._poller.run(
            submit, describe, is_absent, never, operation="delete folder membership", key=key
        )

    async def current_external_id(self, key: str, spec: dict[str, Any]) -> str | None:
        asset_id, member_id = self._ids(spec)
        if await self._describe_folder(key, asset_id) is None:
            return None
        state = await self._membership_state(key, asset_id, member_id)
        return f"{asset_id}/{member_id}" if state.tag == PRESENT else None
