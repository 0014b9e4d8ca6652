"""Pydantic models for deployment configuration and records.

These models provide:
1. Type-safe YAML parsing of the desired configuration
2. Validation at the boundary (fail fast, before any external call)
3. Clean transformation to the keyed sub-resource map the diff engine consumes
"""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator

from .config import MAX_TENANTS_PER_DEPLOYMENT

# =============================================================================
# Enumerations
# =============================================================================


class ResourceKind(str, Enum):
    """Kinds of externally hosted sub-resources owned by a deployment."""

    WAREHOUSE_DATABASE = "warehouse-database"
    WAREHOUSE_SCHEMA = "warehouse-schema"
    CONNECTOR_PLUGIN = "connector-plugin"
    SINK_CONNECTOR = "sink-connector"
    BI_DATASET = "bi-dataset"
    BI_ANALYSIS = "bi-analysis"
    BI_DASHBOARD = "bi-dashboard"
    BI_FOLDER = "bi-folder"
    BI_FOLDER_MEMBERSHIP = "bi-folder-membership"


class DeploymentStatus(str, Enum):
    """Lifecycle status of a deployment."""

    CREATING = "CREATING"
    ACTIVE = "ACTIVE"
    UPDATING = "UPDATING"
    DELETING = "DELETING"
    DELETED = "DELETED"
    FAILED = "FAILED"


class LifecycleOperation(str, Enum):
    """Lifecycle requests that mutate external resources."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class Outcome(str, Enum):
    """Outcome of one sub-resource operation or templating stack."""

    SUCCEEDED = "succeeded"
    IN_PROGRESS = "in_progress"
    FAILED = "failed"


# BI kinds rebuilt from scratch when the warehouse database name changes
BI_ASSET_KINDS: frozenset[ResourceKind] = frozenset({
    ResourceKind.BI_DATASET,
    ResourceKind.BI_ANALYSIS,
    ResourceKind.BI_DASHBOARD,
    ResourceKind.BI_FOLDER_MEMBERSHIP,
})

IDENTIFIER_PATTERN = r"^[a-zA-Z_][a-zA-Z0-9_]{0,126}$"
PROJECT_ID_PATTERN = r"^[a-z][a-z0-9_-]{0,62}$"

VALID_COLUMN_TYPES = {"STRING", "INTEGER", "DECIMAL", "DATETIME", "BIT", "BOOLEAN", "JSON"}
VALID_TIME_GRANULARITIES = {"YEAR", "QUARTER", "MONTH", "WEEK", "DAY", "HOUR", "MINUTE", "SECOND"}


def spec_hash(spec: dict[str, Any]) -> str:
    """Return a stable digest of a sub-resource spec."""
    canonical = json.dumps(spec, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def split_app_ids(value: str) -> list[str]:
    """Split a comma-separated tenant list, ignoring blanks."""
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass(frozen=True)
class DesiredResource:
    """One named sub-resource in the desired configuration."""

    key: str
    kind: ResourceKind
    spec: dict[str, Any]


# =============================================================================
# Warehouse
# =============================================================================


class WarehouseConfig(BaseModel):
    """Analytics warehouse connection and naming."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    database_name: Annotated[str, Field(alias="databaseName")]
    ods_table_name: str = Field("ods_events", alias="odsTableName")
    admin_database: str = Field("dev", alias="adminDatabase")
    owner_role_name: str | None = Field(None, alias="ownerRoleName")

    # Serverless workgroup or provisioned cluster, exactly one
    workgroup_name: str | None = Field(None, alias="workgroupName")
    cluster_identifier: str | None = Field(None, alias="clusterIdentifier")
    db_user: str | None = Field(None, alias="dbUser")

    @field_validator("database_name", "ods_table_name")
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        if not re.match(IDENTIFIER_PATTERN, v):
            raise ValueError(f"must match {IDENTIFIER_PATTERN}: {v}")
        return v

    @model_validator(mode="after")
    def validate_target(self) -> WarehouseConfig:
        if bool(self.workgroup_name) == bool(self.cluster_identifier):
            raise ValueError("exactly one of workgroupName or clusterIdentifier is required")
        if self.cluster_identifier and not self.db_user:
            raise ValueError("dbUser is required with clusterIdentifier")
        return self

    def connection(self) -> dict[str, Any]:
        """Return the Data API connection parameters."""
        return {
            "workgroup_name": self.workgroup_name,
            "cluster_identifier": self.cluster_identifier,
            "db_user": self.db_user,
        }


# =============================================================================
# Streaming sink connector
# =============================================================================


class CapacityConfig(BaseModel):
    """Autoscaling capacity of the sink connector."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    min_worker_count: Annotated[int, Field(ge=1, le=10, alias="minWorkerCount")] = 1
    max_worker_count: Annotated[int, Field(ge=1, le=10, alias="maxWorkerCount")] = 3
    worker_mcu_count: Annotated[int, Field(alias="workerMcuCount")] = 1

    @field_validator("worker_mcu_count")
    @classmethod
    def validate_mcu(cls, v: int) -> int:
        if v not in (1, 2, 4, 8):
            raise ValueError("workerMcuCount must be one of 1, 2, 4, 8")
        return v

    @model_validator(mode="after")
    def validate_bounds(self) -> CapacityConfig:
        if self.min_worker_count > self.max_worker_count:
            raise ValueError("minWorkerCount must not exceed maxWorkerCount")
        return self


class ConnectorConfig(BaseModel):
    """S3 sink connector reading ingestion topics."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=32)] = "s3-sink"

    # Plugin artifact
    plugin_url: str = Field(alias="pluginUrl")
    plugin_bucket: str = Field(alias="pluginBucket")
    plugin_prefix: str = Field("plugins", alias="pluginPrefix")

    # Source cluster
    bootstrap_servers: str = Field(alias="bootstrapServers")
    topics: str
    security_group_id: str = Field(alias="securityGroupId")
    subnet_ids: list[str] = Field(alias="subnetIds")
    kafka_connect_version: str = Field("2.7.1", alias="kafkaConnectVersion")

    # Sink
    sink_bucket: str = Field(alias="sinkBucket")
    sink_prefix: str = Field("data", alias="sinkPrefix")
    flush_size: Annotated[int, Field(ge=1, alias="flushSize")] = 50000
    rotate_interval_ms: Annotated[int, Field(ge=1000, alias="rotateIntervalMs")] = 3000000

    # Operations
    log_bucket: str = Field(alias="logBucket")
    log_prefix: str = Field("connector-logs", alias="logPrefix")
    service_role_arn: str = Field(alias="serviceRoleArn")

    capacity: CapacityConfig = Field(default_factory=CapacityConfig)
    custom_configuration: dict[str, str] = Field(
        default_factory=dict, alias="customConfiguration"
    )

    @field_validator("plugin_url")
    @classmethod
    def validate_plugin_url(cls, v: str) -> str:
        if not v.startswith(("https://", "http://")):
            raise ValueError("pluginUrl must be an http(s) URL")
        if not v.rstrip("/").rsplit("/", 1)[-1]:
            raise ValueError("pluginUrl must end with a file name")
        return v

    @field_validator("subnet_ids")
    @classmethod
    def validate_subnets(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("at least one subnet is required")
        return v


# =============================================================================
# BI assets
# =============================================================================


class ColumnConfig(BaseModel):
    """Input column of a custom SQL dataset."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1)]
    type: str

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if v not in VALID_COLUMN_TYPES:
            raise ValueError(f"type must be one of {sorted(VALID_COLUMN_TYPES)}")
        return v


class DateTimeParameterConfig(BaseModel):
    """Date-range parameter exposed by a dataset."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1)]
    time_granularity: str = Field("DAY", alias="timeGranularity")
    # None resolves to a rolling bound when the dataset payload is built
    default_value: datetime | None = Field(None, alias="defaultValue")

    @field_validator("time_granularity")
    @classmethod
    def validate_granularity(cls, v: str) -> str:
        if v not in VALID_TIME_GRANULARITIES:
            raise ValueError(f"timeGranularity must be one of {sorted(VALID_TIME_GRANULARITIES)}")
        return v


class DataSetConfig(BaseModel):
    """Custom SQL dataset built once per tenant schema."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1)]
    table_name: Annotated[str, Field(alias="tableName")]
    custom_sql: Annotated[str, Field(min_length=1, alias="customSql")]
    import_mode: str = Field("DIRECT_QUERY", alias="importMode")
    columns: list[ColumnConfig] = Field(default_factory=list)
    date_time_parameters: list[DateTimeParameterConfig] = Field(
        default_factory=list, alias="dateTimeParameters"
    )

    @field_validator("table_name")
    @classmethod
    def validate_table_name(cls, v: str) -> str:
        if not re.match(IDENTIFIER_PATTERN, v):
            raise ValueError(f"tableName must match {IDENTIFIER_PATTERN}: {v}")
        return v

    @field_validator("import_mode")
    @classmethod
    def validate_import_mode(cls, v: str) -> str:
        if v not in ("DIRECT_QUERY", "SPICE"):
            raise ValueError("importMode must be DIRECT_QUERY or SPICE")
        return v


def default_data_sets() -> list[DataSetConfig]:
    """Datasets built for every tenant when none are configured."""
    return [
        DataSetConfig(
            name="User Dim Data Set",
            table_name="User_Dim_View",
            custom_sql="select * from {{database_name}}.{{schema}}.clickstream_user_dim_view_v1",
            columns=[
                ColumnConfig(name="user_pseudo_id", type="STRING"),
                ColumnConfig(name="user_id", type="STRING"),
                ColumnConfig(name="first_visit_date", type="DATETIME"),
                ColumnConfig(name="first_visit_country", type="STRING"),
                ColumnConfig(name="first_visit_city", type="STRING"),
                ColumnConfig(name="first_platform", type="STRING"),
            ],
        ),
        DataSetConfig(
            name="ODS Flattened Data Set",
            table_name="Session_View",
            custom_sql=(
                "select * from {{database_name}}.{{schema}}.clickstream_session_view_v1 "
                "where event_date >= <<$startDate>> and event_date < DATEADD(DAY, 1, <<$endDate>>)"
            ),
            columns=[
                ColumnConfig(name="session_id", type="STRING"),
                ColumnConfig(name="user_pseudo_id", type="STRING"),
                ColumnConfig(name="platform", type="STRING"),
                ColumnConfig(name="session_duration", type="INTEGER"),
                ColumnConfig(name="session_views", type="INTEGER"),
                ColumnConfig(name="event_date", type="DATETIME"),
            ],
            date_time_parameters=[
                DateTimeParameterConfig(name="startDate"),
                DateTimeParameterConfig(name="endDate"),
            ],
        ),
    ]


class ReportingConfig(BaseModel):
    """BI assets published per tenant schema."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    namespace: str = "default"
    owner_principal_arn: str = Field(alias="ownerPrincipalArn")
    share_principal_arn: str | None = Field(None, alias="sharePrincipalArn")
    data_source_arn: str = Field(alias="dataSourceArn")
    template_arn: str = Field(alias="templateArn")
    analysis_name: str = Field("Clickstream Analysis", alias="analysisName")
    dashboard_name: str = Field("Clickstream Dashboard", alias="dashboardName")
    folder_name: str | None = Field(None, alias="folderName")
    data_sets: list[DataSetConfig] = Field(default_factory=default_data_sets, alias="dataSets")

    @model_validator(mode="after")
    def validate_data_sets(self) -> ReportingConfig:
        if not self.data_sets:
            raise ValueError("at least one dataset is required")
        tables = [ds.table_name for ds in self.data_sets]
        if len(set(tables)) != len(tables):
            raise ValueError("dataset tableName values must be unique")
        return self


# =============================================================================
# Deployment specification
# =============================================================================


class DeploymentSpec(BaseModel):
    """Desired configuration of one deployment."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    project_id: Annotated[str, Field(alias="projectId")]
    warehouse: WarehouseConfig
    app_ids: list[str] = Field(default_factory=list, alias="appIds")
    connector: ConnectorConfig | None = None
    reporting: ReportingConfig | None = None
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("project_id")
    @classmethod
    def validate_project_id(cls, v: str) -> str:
        if not re.match(PROJECT_ID_PATTERN, v):
            raise ValueError(f"projectId must match {PROJECT_ID_PATTERN}: {v}")
        return v

    @field_validator("app_ids", mode="before")
    @classmethod
    def parse_app_ids(cls, v: Any) -> Any:
        if isinstance(v, str):
            return split_app_ids(v)
        return v

    @field_validator("app_ids")
    @classmethod
    def validate_app_ids(cls, v: list[str]) -> list[str]:
        if len(v) > MAX_TENANTS_PER_DEPLOYMENT:
            raise ValueError(f"at most {MAX_TENANTS_PER_DEPLOYMENT} appIds are allowed")
        if len(set(v)) != len(v):
            raise ValueError("appIds must be unique")
        for app_id in v:
            if not re.match(IDENTIFIER_PATTERN, app_id):
                raise ValueError(f"appId must match {IDENTIFIER_PATTERN}: {app_id}")
        return v

    def folder_name(self) -> str:
        """Name of the BI folder dashboards are placed into."""
        if self.reporting and self.reporting.folder_name:
            return self.reporting.folder_name
        return f"{self.project_id} dashboards"

    def to_resource_map(self) -> dict[str, DesiredResource]:
        """Expand the configuration into keyed sub-resources.

        Returns:
            Mapping of resource key to desired resource, one entry per
            externally hosted object.
        """
        resources: dict[str, DesiredResource] = {}

        def add(kind: ResourceKind, name: str, spec: dict[str, Any]) -> None:
            key = f"{kind.value}/{name}"
            resources[key] = DesiredResource(key=key, kind=kind, spec=spec)

        # The database only exists to hold tenant schemas
        wh = self.warehouse
        if self.app_ids:
            add(
                ResourceKind.WAREHOUSE_DATABASE,
                wh.database_name,
                {
                    "database_name": wh.database_name,
                    "admin_database": wh.admin_database,
                    "owner_role_name": wh.owner_role_name,
                    "connection": wh.connection(),
                },
            )
        for app_id in self.app_ids:
            add(
                ResourceKind.WAREHOUSE_SCHEMA,
                app_id,
                {
                    "app_id": app_id,
                    "database_name": wh.database_name,
                    "ods_table_name": wh.ods_table_name,
                    "connection": wh.connection(),
                },
            )

        if self.connector is not None:
            self._add_connector(add, self.connector)

        if self.reporting is not None and self.app_ids:
            self._add_reporting(add, self.reporting)

        return resources

    def _add_connector(self, add: Any, connector: ConnectorConfig) -> None:
        plugin = {
            "plugin_url": connector.plugin_url,
            "plugin_bucket": connector.plugin_bucket,
            "plugin_prefix": connector.plugin_prefix,
        }
        add(ResourceKind.CONNECTOR_PLUGIN, connector.name, plugin)
        add(
            ResourceKind.SINK_CONNECTOR,
            connector.name,
            {
                **plugin,
                "plugin_name": connector.name,
                "bootstrap_servers": connector.bootstrap_servers,
                "topics": connector.topics,
                "security_group_id": connector.security_group_id,
                "subnet_ids": list(connector.subnet_ids),
                "kafka_connect_version": connector.kafka_connect_version,
                "sink_bucket": connector.sink_bucket,
                "sink_prefix": connector.sink_prefix,
                "flush_size": connector.flush_size,
                "rotate_interval_ms": connector.rotate_interval_ms,
                "log_bucket": connector.log_bucket,
                "log_prefix": connector.log_prefix,
                "service_role_arn": connector.service_role_arn,
                "custom_configuration": dict(connector.custom_configuration),
                "capacity": connector.capacity.model_dump(),
            },
        )

    def _add_reporting(self, add: Any, reporting: ReportingConfig) -> None:
        database_name = self.warehouse.database_name
        principals = {
            "namespace": reporting.namespace,
            "owner_principal_arn": reporting.owner_principal_arn,
            "share_principal_arn": reporting.share_principal_arn,
        }
        folder_name = self.folder_name()
        add(ResourceKind.BI_FOLDER, folder_name, {"folder_name": folder_name, **principals})

        tables = [ds.table_name for ds in reporting.data_sets]
        for app_id in self.app_ids:
            for data_set in reporting.data_sets:
                add(
                    ResourceKind.BI_DATASET,
                    f"{app_id}/{data_set.table_name}",
                    {
                        "app_id": app_id,
                        "database_name": database_name,
                        "data_source_arn": reporting.data_source_arn,
                        "data_set": data_set.model_dump(mode="json"),
                        **principals,
                    },
                )
            add(
                ResourceKind.BI_ANALYSIS,
                app_id,
                {
                    "app_id": app_id,
                    "database_name": database_name,
                    "name": reporting.analysis_name,
                    "template_arn": reporting.template_arn,
                    "data_set_tables": tables,
                    **principals,
                },
            )
            add(
                ResourceKind.BI_DASHBOARD,
                app_id,
                {
                    "app_id": app_id,
                    "database_name": database_name,
                    "name": reporting.dashboard_name,
                    "template_arn": reporting.template_arn,
                    "data_set_tables": tables,
                    **principals,
                },
            )
            add(
                ResourceKind.BI_FOLDER_MEMBERSHIP,
                app_id,
                {
                    "app_id": app_id,
                    "database_name": database_name,
                    "folder_name": folder_name,
                    "namespace": reporting.namespace,
                },
            )


# =============================================================================
# Deployment record
# =============================================================================


class ResourceRecord(BaseModel):
    """Last applied state of one sub-resource.

    The applied spec is kept so that later requests diff against what was
    actually provisioned, not against what was last asked for.
    """

    kind: ResourceKind
    spec_hash: str
    spec: dict[str, Any] = Field(default_factory=dict)
    external_id: str | None = None

    def to_desired(self, key: str) -> DesiredResource:
        return DesiredResource(key=key, kind=self.kind, spec=self.spec)


class FailureDetail(BaseModel):
    """The sub-resource operation that failed a lifecycle request."""

    key: str
    kind: str
    message: str
    error_type: str


class Deployment(BaseModel):
    """Persisted deployment record. Every write produces a new version."""

    id: str
    project_id: str
    version: int = 1
    status: DeploymentStatus = DeploymentStatus.CREATING
    spec: DeploymentSpec
    previous_spec: DeploymentSpec | None = None
    last_operation: LifecycleOperation = LifecycleOperation.CREATE
    resources: dict[str, ResourceRecord] = Field(default_factory=dict)
    replaced_kinds: list[ResourceKind] = Field(default_factory=list)
    failure: FailureDetail | None = None
    operator: str = ""
    deleted: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def to_item(self) -> dict[str, Any]:
        """Serialize for storage."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> Deployment:
        """Deserialize a stored record."""
        return cls.model_validate(item)
