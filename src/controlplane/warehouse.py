"""Warehouse provisioners: analytics database and per-tenant schemas.

DDL runs through the Redshift Data API. Statements are asynchronous: the API
returns a statement id that is polled with describe_statement until it
finishes.

Schema DDL is idempotent (IF NOT EXISTS), so every tenant schema in a tier is
created or re-applied in a single batched execution. Deleting a tenant keeps
its schema and data unless dropping is enabled in configuration.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from botocore.exceptions import ClientError

from .classifier import Disposition, OperationKind, classify
from .diff import Change
from .errors import ControlPlaneError, ExternalFailure
from .models import Outcome, ResourceKind
from .poller import ObservedState, OperationPoller
from .provisioner import ChangeOutcome, ProvisionContext, ResourceProvisioner

logger = logging.getLogger(__name__)

STATEMENT_FINISHED = "FINISHED"
STATEMENT_FAILED_STATES = frozenset({"FAILED", "ABORTED"})

# Columns of the raw event table created in every tenant schema (version 1)
ODS_EVENT_COLUMNS: tuple[tuple[str, str], ...] = (
    ("app_info", "SUPER"),
    ("device", "SUPER"),
    ("ecommerce", "SUPER"),
    ("event_bundle_sequence_id", "BIGINT"),
    ("event_date", "VARCHAR(255)"),
    ("event_dimensions", "SUPER"),
    ("event_id", "VARCHAR(255) DEFAULT RANDOM()"),
    ("event_name", "VARCHAR(255)"),
    ("event_params", "SUPER"),
    ("event_previous_timestamp", "BIGINT"),
    ("event_server_timestamp_offset", "BIGINT"),
    ("event_timestamp", "BIGINT"),
    ("event_value_in_usd", "VARCHAR(255)"),
    ("geo", "SUPER"),
    ("ingest_timestamp", "BIGINT"),
    ("items", "SUPER"),
    ("platform", "VARCHAR(255)"),
    ("privacy_info", "SUPER"),
    ("stream_id", "VARCHAR(255)"),
    ("traffic_source", "SUPER"),
    ("user_first_touch_timestamp", "BIGINT"),
    ("user_id", "VARCHAR(255)"),
    ("user_ltv", "SUPER"),
    ("user_properties", "SUPER"),
    ("user_pseudo_id", "VARCHAR(255)"),
)


def create_schema_statements(app_id: str, table_name: str) -> list[str]:
    """DDL creating a tenant schema and its event table."""
    columns = ",\n".join(f"    {name} {ddl_type}" for name, ddl_type in ODS_EVENT_COLUMNS)
    return [
        f"CREATE SCHEMA IF NOT EXISTS {app_id}",
        f"CREATE TABLE IF NOT EXISTS {app_id}.{table_name}(\n{columns}\n) DISTSTYLE AUTO SORTKEY AUTO",
    ]


def drop_schema_statements(app_id: str) -> list[str]:
    return [f"DROP SCHEMA IF EXISTS {app_id} CASCADE"]


def connection_params(connection: dict[str, Any]) -> dict[str, Any]:
    """Data API target parameters for a serverless workgroup or a cluster."""
    if connection.get("workgroup_name"):
        return {"WorkgroupName": connection["workgroup_name"]}
    return {
        "ClusterIdentifier": connection["cluster_identifier"],
        "DbUser": connection["db_user"],
    }


class _StatementRunner(ResourceProvisioner):
    """Shared statement submission and polling."""

    def __init__(self, context: ProvisionContext, poller: OperationPoller, client: Any) -> None:
        super().__init__(context, poller)
        self._client = client

    async def _run_statements(
        self,
        key: str,
        sqls: list[str],
        database: str,
        connection: dict[str, Any],
        operation: OperationKind,
    ) -> str:
        """Execute statements as one unit and wait until they finish.

        Returns:
            The statement id.

        Raises:
            ExternalFailure: If the statement fails or is aborted.
            OperationTimeoutError: If the statement does not finish in budget.
        """
        target = connection_params(connection)

        async def submit() -> str:
            try:
                if len(sqls) == 1:
                    response = await self._call(
                        self._client.execute_statement, Sql=sqls[0], Database=database, **target
                    )
                else:
                    response = await self._call(
                        self._client.batch_execute_statement, Sqls=sqls, Database=database, **target
                    )
            except ClientError as e:
                raise self._failure(operation.value, key, e) from e
            return response["Id"]

        async def describe(statement_id: str) -> ObservedState:
            try:
                response = await self._call(self._client.describe_statement, Id=statement_id)
            except ClientError as e:
                return self._observe_error(OperationKind.CONFIRM_WRITE, key, e)
            return ObservedState(response["Status"], reason=response.get("Error"), external_id=statement_id)

        logger.info(
            "Executing warehouse statements",
            extra={"key": key, "database": database, "statement_count": len(sqls)},
        )
        result = await self._poller.run(
            submit,
            describe,
            lambda tag: tag == STATEMENT_FINISHED,
            lambda tag: tag in STATEMENT_FAILED_STATES,
            operation=f"{self.kind.value} {operation.value}",
            key=key,
        )
        return result.handle


class WarehouseDatabaseProvisioner(_StatementRunner):
    """Analytics database and its owner user."""

    kind = ResourceKind.WAREHOUSE_DATABASE
    immutable_fields = frozenset({"database_name"})

    async def create(self, key: str, spec: dict[str, Any]) -> str | None:
        database = spec["database_name"]
        role = spec.get("owner_role_name")
        statements: list[str] = []
        if role:
            statements.append(f'CREATE USER "IAMR:{role}" PASSWORD DISABLE')
            statements.append(f'CREATE DATABASE {database} WITH OWNER "IAMR:{role}"')
        else:
            statements.append(f"CREATE DATABASE {database}")

        # CREATE DATABASE cannot run inside a transaction block
        for sql in statements:
            try:
                await self._run_statements(
                    key, [sql], spec["admin_database"], spec["connection"], OperationKind.CREATE
                )
            except ExternalFailure as e:
                if classify(OperationKind.CREATE, e) != Disposition.IGNORABLE:
                    raise
                logger.info(
                    "Warehouse object already exists",
                    extra={"key": key, "statement": sql.split(" WITH ")[0]},
                )
        return database

    async def _update(self, key: str, old_spec: dict[str, Any], new_spec: dict[str, Any]) -> str | None:
        # Only connection details can differ; the database itself is unchanged
        return new_spec["database_name"]

    async def delete(self, key: str, spec: dict[str, Any]) -> None:
        database = spec["database_name"]
        if not self._context.drop_warehouse_on_delete:
            logger.info("Retaining warehouse database", extra={"key": key, "database": database})
            return
        try:
            await self._run_statements(
                key,
                [f"DROP DATABASE {database}"],
                spec["admin_database"],
                spec["connection"],
                OperationKind.DELETE,
            )
        except ExternalFailure as e:
            if classify(OperationKind.DELETE, e) != Disposition.IGNORABLE:
                raise

    async def current_external_id(self, key: str, spec: dict[str, Any]) -> str | None:
        database = spec["database_name"]
        target = connection_params(spec["connection"])
        kwargs: dict[str, Any] = {"Database": spec["admin_database"], **target}
        while True:
            try:
                response = await self._call(self._client.list_databases, **kwargs)
            except ClientError as e:
                raise self._failure("describe", key, e) from e
            if database in response.get("Databases", []):
                return database
            if not response.get("NextToken"):
                return None
            kwargs["NextToken"] = response["NextToken"]


class WarehouseSchemaProvisioner(_StatementRunner):
    """Per-tenant schema with the raw event table."""

    kind = ResourceKind.WAREHOUSE_SCHEMA
    immutable_fields = frozenset({"database_name"})
    # IF NOT EXISTS DDL is re-applied to every tenant whenever the kind changes
    reapply_unchanged = True

    async def apply(self, changes: list[Change], deleting: bool) -> list[ChangeOutcome]:
        """Run all tenant DDL of one tier as batched executions.

        Changes are grouped by target database; each group is one batch.
        """
        if not changes:
            return []

        if deleting and not self._context.drop_warehouse_on_delete:
            logger.info(
                "Retaining tenant schemas",
                extra={"keys": [c.key for c in changes], "count": len(changes)},
            )
            return [ChangeOutcome(c, Outcome.SUCCEEDED) for c in changes]

        groups: dict[str, list[Change]] = {}
        for change in changes:
            spec = (change.old_spec if deleting else change.new_spec) or {}
            group = json.dumps([spec["database_name"], spec["connection"]], sort_keys=True)
            groups.setdefault(group, []).append(change)

        outcomes: dict[str, ChangeOutcome] = {}
        for members in groups.values():
            for outcome in await self._apply_batch(members, deleting):
                outcomes[outcome.change.key] = outcome
        return [outcomes[c.key] for c in changes]

    async def _apply_batch(self, changes: list[Change], deleting: bool) -> list[ChangeOutcome]:
        specs = [(c.old_spec if deleting else c.new_spec) or {} for c in changes]
        sqls: list[str] = []
        for spec in specs:
            if deleting:
                sqls.extend(drop_schema_statements(spec["app_id"]))
            else:
                sqls.extend(create_schema_statements(spec["app_id"], spec["ods_table_name"]))

        batch_key = ",".join(c.key for c in changes)
        operation = OperationKind.DELETE if deleting else OperationKind.CREATE
        try:
            await self._run_statements(
                batch_key, sqls, specs[0]["database_name"], specs[0]["connection"], operation
            )
        except (ControlPlaneError, ClientError) as e:
            logger.error(
                "Tenant schema batch failed",
                extra={"keys": [c.key for c in changes], "error": str(e)},
            )
            return [ChangeOutcome(c, Outcome.FAILED, error=e) for c in changes]

        logger.info(
            "Tenant schema batch applied",
            extra={"keys": [c.key for c in changes], "phase": "delete" if deleting else "write"},
        )
        return [
            ChangeOutcome(c, Outcome.SUCCEEDED, external_id=None if deleting else spec["app_id"])
            for c, spec in zip(changes, specs)
        ]

    async def create(self, key: str, spec: dict[str, Any]) -> str | None:
        await self._run_statements(
            key,
            create_schema_statements(spec["app_id"], spec["ods_table_name"]),
            spec["database_name"],
            spec["connection"],
            OperationKind.CREATE,
        )
        return spec["app_id"]

    async def delete(self, key: str, spec: dict[str, Any]) -> None:
        if not self._context.drop_warehouse_on_delete:
            logger.info("Retaining tenant schema", extra={"key": key})
            return
        await self._run_statements(
            key,
            drop_schema_statements(spec["app_id"]),
            spec["database_name"],
            spec["connection"],
            OperationKind.DELETE,
        )

    async def current_external_id(self, key: str, spec: dict[str, Any]) -> str | None:
        target = connection_params(spec["connection"])
        try:
            response = await self._call(
                self._client.list_schemas,
                Database=spec["database_name"],
                SchemaPattern=spec["app_id"],
                **target,
            )
        except ClientError as e:
            raise self._failure("describe", key, e) from e
        return spec["app_id"] if spec["app_id"] in response.get("Schemas", []) else None
