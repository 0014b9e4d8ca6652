"""Process wiring for the analytics control plane.

Builds one LifecycleController from configuration: boto3 clients for each
provisioning API, the metadata store, the shared poller and the templating
stack status source.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

import boto3

from .config import Config
from .connector import ConnectorPluginProvisioner, SinkConnectorProvisioner
from .diff import DiffEngine
from .lifecycle import LifecycleController, ProvisionerFactory
from .models import ResourceKind
from .poller import OperationPoller
from .provisioner import ProvisionContext, ResourceProvisioner
from .reporting import (
    AnalysisProvisioner,
    DashboardProvisioner,
    DataSetProvisioner,
    FolderMembershipProvisioner,
    FolderProvisioner,
)
from .stacks import CloudFormationStackStatusSource
from .store import DynamoDbMetadataStore, InMemoryMetadataStore, MetadataStore
from .warehouse import WarehouseDatabaseProvisioner, WarehouseSchemaProvisioner

logger = logging.getLogger(__name__)

# LogRecord attributes that are not user supplied extras
_RESERVED_RECORD_FIELDS = frozenset({
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "stack_info",
    "exc_info",
    "exc_text",
    "thread",
    "threadName",
    "taskName",
    "message",
})


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_FIELDS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Configure structured logging with JSON output on stderr."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers[:] = [handler]
    root_logger.setLevel(level)

    # Reduce noise from the AWS SDK and HTTP stack
    for name in ("botocore", "boto3", "urllib3", "httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)


def base_context(config: Config) -> ProvisionContext:
    """Provisioning settings shared by every deployment."""
    return ProvisionContext(
        deployment_id="",
        project_id="",
        resource_prefix=config.resource_prefix,
        stack_prefix=config.stack_prefix,
        account_id=config.account_id,
        region=config.region,
        partition=config.partition,
        drop_warehouse_on_delete=config.drop_warehouse_on_delete,
    )


def build_provisioner_factory(
    clients: Mapping[str, Any],
    config: Config,
    poller: OperationPoller,
) -> ProvisionerFactory:
    """Return a factory building one provisioner per resource kind.

    Args:
        clients: boto3 clients keyed by service name: redshift-data,
            kafkaconnect, s3 and quicksight.
        config: Control plane configuration.
        poller: Poller shared by all provisioners.
    """
    redshift_data = clients["redshift-data"]
    kafkaconnect = clients["kafkaconnect"]
    s3 = clients["s3"]
    quicksight = clients["quicksight"]

    def factory(context: ProvisionContext) -> dict[ResourceKind, ResourceProvisioner]:
        provisioners: list[ResourceProvisioner] = [
            WarehouseDatabaseProvisioner(context, poller, redshift_data),
            WarehouseSchemaProvisioner(context, poller, redshift_data),
            ConnectorPluginProvisioner(
                context,
                poller,
                kafkaconnect,
                s3,
                download_timeout=config.plugin_download_timeout_seconds,
            ),
            SinkConnectorProvisioner(context, poller, kafkaconnect),
            DataSetProvisioner(context, poller, quicksight),
            AnalysisProvisioner(context, poller, quicksight),
            DashboardProvisioner(context, poller, quicksight),
            FolderProvisioner(context, poller, quicksight),
            FolderMembershipProvisioner(context, poller, quicksight),
        ]
        return {p.kind: p for p in provisioners}

    return factory


def build_store(config: Config, session: Any) -> MetadataStore:
    """DynamoDB store when a table is configured, in-memory otherwise."""
    if config.metadata_table:
        table = session.resource("dynamodb").Table(config.metadata_table)
        return DynamoDbMetadataStore(table)
    logger.warning("METADATA_TABLE not set, deployment records are kept in memory only")
    return InMemoryMetadataStore()


def build_controller(config: Config, session: Any = None) -> LifecycleController:
    """Wire a LifecycleController from configuration.

    Args:
        config: Validated configuration.
        session: boto3 session; a new one for the configured region when omitted.
    """
    session = session or boto3.session.Session(region_name=config.region)
    clients = {
        name: session.client(name)
        for name in ("redshift-data", "kafkaconnect", "s3", "quicksight", "cloudformation")
    }
    poller = OperationPoller(
        interval=config.poll_interval_seconds,
        max_attempts=config.max_poll_attempts,
    )

    logger.info(
        "Building lifecycle controller",
        extra={
            "region": config.region,
            "resource_prefix": config.resource_prefix,
            "metadata_table": config.metadata_table or None,
            "deadline_seconds": config.request_deadline_seconds,
        },
    )

    return LifecycleController(
        store=build_store(config, session),
        provisioner_factory=build_provisioner_factory(clients, config, poller),
        context=base_context(config),
        stack_source=CloudFormationStackStatusSource(
            clients["cloudformation"], stack_prefix=config.stack_prefix
        ),
        deadline_seconds=config.request_deadline_seconds,
    )


PROVISIONER_TYPES: tuple[type[ResourceProvisioner], ...] = (
    WarehouseDatabaseProvisioner,
    WarehouseSchemaProvisioner,
    ConnectorPluginProvisioner,
    SinkConnectorProvisioner,
    DataSetProvisioner,
    AnalysisProvisioner,
    DashboardProvisioner,
    FolderProvisioner,
    FolderMembershipProvisioner,
)


def offline_diff_engine() -> DiffEngine:
    """Diff engine carrying every kind's replace rules, without any client."""
    return DiffEngine(
        immutable_fields={t.kind: t.immutable_fields for t in PROVISIONER_TYPES},
        reapply_kinds=[t.kind for t in PROVISIONER_TYPES if t.reapply_unchanged],
    )
