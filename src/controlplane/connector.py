"""Streaming sink connector provisioners.

A sink connector needs a custom plugin: the plugin artifact is downloaded,
stored in the artifact bucket under a deterministic key, registered as a
custom plugin, and polled until ACTIVE. The connector is then created against
the plugin and polled until RUNNING.

Only capacity can change in place. Any other change replaces the connector
(and the plugin, when the artifact changed). Deletion runs connector first,
then plugin, each polled until the object is gone, then removes the artifact.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlparse

import httpx
from botocore.exceptions import ClientError

from .classifier import OperationKind
from .config import DEFAULT_PLUGIN_DOWNLOAD_TIMEOUT_SECONDS
from .errors import ExternalFailure
from .models import ResourceKind
from .poller import ObservedState, OperationPoller
from .provisioner import ProvisionContext, ResourceProvisioner, is_absent, never

logger = logging.getLogger(__name__)

# Plugin registration settles faster than connector start-up
PLUGIN_POLL_INTERVAL_SECONDS = 5

PLUGIN_ACTIVE = "ACTIVE"
PLUGIN_FAILED_STATES = frozenset({"CREATE_FAILED"})

CONNECTOR_RUNNING = "RUNNING"
CONNECTOR_FAILED = "FAILED"

SCALE_IN_CPU_PERCENT = 20
SCALE_OUT_CPU_PERCENT = 80

# Fixed S3 sink settings, overridable per deployment
BASE_CONNECTOR_CONFIGURATION: dict[str, str] = {
    "connector.class": "io.confluent.connect.s3.S3SinkConnector",
    "tasks.max": "2",
    "s3.compression.type": "gzip",
    "storage.class": "io.confluent.connect.s3.storage.S3Storage",
    "format.class": "io.confluent.connect.s3.format.json.JsonFormat",
    "partitioner.class": "io.confluent.connect.storage.partitioner.TimeBasedPartitioner",
    "path.format": "'year'=YYYY/'month'=MM/'day'=dd/'hour'=HH",
    "partition.duration.ms": "60000",
    "timezone": "UTC",
    "locale": "en-US",
    "schema.compatibility": "NONE",
}

CONNECTOR_IMMUTABLE_FIELDS: frozenset[str] = frozenset({
    "plugin_url",
    "plugin_bucket",
    "plugin_prefix",
    "plugin_name",
    "bootstrap_servers",
    "topics",
    "security_group_id",
    "subnet_ids",
    "kafka_connect_version",
    "sink_bucket",
    "sink_prefix",
    "flush_size",
    "rotate_interval_ms",
    "log_bucket",
    "log_prefix",
    "service_role_arn",
    "custom_configuration",
})


def artifact_file_name(plugin_url: str) -> str:
    return urlparse(plugin_url).path.rstrip("/").rsplit("/", 1)[-1]


def artifact_key(plugin_prefix: str, deployment_id: str, plugin_url: str) -> str:
    """Artifact store key of a deployment's plugin."""
    return f"{plugin_prefix.strip('/')}/{deployment_id}-{artifact_file_name(plugin_url)}"


def connector_configuration(spec: dict[str, Any], region: str) -> dict[str, str]:
    """Connector properties: the base map merged with overrides, overrides win."""
    configuration = {
        **BASE_CONNECTOR_CONFIGURATION,
        "topics": spec["topics"],
        "s3.region": region,
        "s3.bucket.name": spec["sink_bucket"],
        "topics.dir": spec["sink_prefix"],
        "flush.size": str(spec["flush_size"]),
        "rotate.interval.ms": str(spec["rotate_interval_ms"]),
    }
    configuration.update(spec.get("custom_configuration") or {})
    return configuration


def capacity_payload(capacity: dict[str, Any]) -> dict[str, Any]:
    return {
        "autoScaling": {
            "maxWorkerCount": capacity["max_worker_count"],
            "minWorkerCount": capacity["min_worker_count"],
            "mcuCount": capacity["worker_mcu_count"],
            "scaleInPolicy": {"cpuUtilizationPercentage": SCALE_IN_CPU_PERCENT},
            "scaleOutPolicy": {"cpuUtilizationPercentage": SCALE_OUT_CPU_PERCENT},
        }
    }


class _ConnectorBase(ResourceProvisioner):
    """Naming and look-ups shared by plugin and connector."""

    def __init__(
        self,
        context: ProvisionContext,
        poller: OperationPoller,
        client: Any,
        s3_client: Any = None,
    ) -> None:
        super().__init__(context, poller)
        self._client = client
        self._s3 = s3_client

    @staticmethod
    def _name_of(key: str) -> str:
        return key.split("/", 1)[1]

    def plugin_name(self, name: str) -> str:
        return f"{self._context.stack_prefix}-Plugin-{name}-{self._context.deployment_id}"

    def connector_name(self, name: str) -> str:
        return f"{self._context.stack_prefix}-Connector-{name}-{self._context.deployment_id}"

    async def _find_plugin(self, key: str, plugin_name: str) -> dict[str, Any] | None:
        kwargs: dict[str, Any] = {"namePrefix": plugin_name}
        while True:
            try:
                response = await self._call(self._client.list_custom_plugins, **kwargs)
            except ClientError as e:
                raise self._failure("describe", key, e) from e
            for plugin in response.get("customPlugins", []):
                if plugin.get("name") == plugin_name:
                    return plugin
            if not response.get("nextToken"):
                return None
            kwargs["nextToken"] = response["nextToken"]

    async def _find_connector(self, key: str, connector_name: str) -> dict[str, Any] | None:
        kwargs: dict[str, Any] = {"connectorNamePrefix": connector_name}
        while True:
            try:
                response = await self._call(self._client.list_connectors, **kwargs)
            except ClientError as e:
                raise self._failure("describe", key, e) from e
            for connector in response.get("connectors", []):
                if connector.get("connectorName") == connector_name:
                    return connector
            if not response.get("nextToken"):
                return None
            kwargs["nextToken"] = response["nextToken"]


class ConnectorPluginProvisioner(_ConnectorBase):
    """Custom plugin and its artifact."""

    kind = ResourceKind.CONNECTOR_PLUGIN
    immutable_fields = frozenset({"*"})

    def __init__(
        self,
        context: ProvisionContext,
        poller: OperationPoller,
        client: Any,
        s3_client: Any,
        download_timeout: float = DEFAULT_PLUGIN_DOWNLOAD_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(context, poller, client, s3_client)
        self._download_timeout = download_timeout
        self._transport = transport

    async def _download(self, key: str, url: str) -> bytes:
        try:
            async with httpx.AsyncClient(
                timeout=self._download_timeout, follow_redirects=True, transport=self._transport
            ) as client:
                response = await client.get(url)
                response.raise_for_status()
                return response.content
        except httpx.HTTPError as e:
            raise ExternalFailure(
                f"Plugin download failed for {key}: {e}",
                operation="download",
                kind=self.kind.value,
                key=key,
                code=type(e).__name__,
            ) from e

    async def create(self, key: str, spec: dict[str, Any]) -> str | None:
        plugin_name = self.plugin_name(self._name_of(key))
        bucket = spec["plugin_bucket"]
        object_key = artifact_key(spec["plugin_prefix"], self._context.deployment_id, spec["plugin_url"])
        file_name = artifact_file_name(spec["plugin_url"])

        async def submit() -> str:
            content = await self._download(key, spec["plugin_url"])
            await self._mutate(
                OperationKind.CREATE, key, self._s3.put_object, Bucket=bucket, Key=object_key, Body=content
            )
            logger.info(
                "Stored connector plugin artifact",
                extra={"key": key, "bucket": bucket, "object_key": object_key, "size": len(content)},
            )
            response = await self._mutate(
                OperationKind.CREATE,
                key,
                self._client.create_custom_plugin,
                name=plugin_name,
                contentType="ZIP" if file_name.lower().endswith(".zip") else "JAR",
                location={
                    "s3Location": {
                        "bucketArn": f"arn:{self._context.partition}:s3:::{bucket}",
                        "fileKey": object_key,
                    }
                },
            )
            if response is not None:
                return response["customPluginArn"]
            existing = await self.current_external_id(key, spec)
            if existing is None:
                raise ExternalFailure(
                    f"Plugin {plugin_name} reported as existing but was not found",
                    operation="create",
                    kind=self.kind.value,
                    key=key,
                )
            return existing

        async def describe(plugin_arn: str) -> ObservedState:
            try:
                response = await self._call(self._client.describe_custom_plugin, customPluginArn=plugin_arn)
            except ClientError as e:
                return self._observe_error(OperationKind.CONFIRM_WRITE, key, e)
            reason = (response.get("stateDescription") or {}).get("message")
            return ObservedState(response["customPluginState"], reason=reason, external_id=plugin_arn)

        result = await self._poller.run(
            submit,
            describe,
            lambda tag: tag == PLUGIN_ACTIVE,
            lambda tag: tag in PLUGIN_FAILED_STATES,
            interval=min(self._poller.interval, PLUGIN_POLL_INTERVAL_SECONDS),
            operation="create custom plugin",
            key=key,
        )
        return result.handle

    async def delete(self, key: str, spec: dict[str, Any]) -> None:
        plugin_name = self.plugin_name(self._name_of(key))
        plugin = await self._find_plugin(key, plugin_name)

        if plugin is not None:
            plugin_arn = plugin["customPluginArn"]

            async def submit() -> str:
                await self._mutate(
                    OperationKind.DELETE, key, self._client.delete_custom_plugin, customPluginArn=plugin_arn
                )
                return plugin_arn

            async def describe(arn: str) -> ObservedState:
                try:
                    response = await self._call(self._client.describe_custom_plugin, customPluginArn=arn)
                except ClientError as e:
                    return self._observe_error(OperationKind.CONFIRM_DELETE, key, e)
                return ObservedState(response["customPluginState"])

            await self._poller.run(
                submit,
                describe,
                is_absent,
                never,
                interval=min(self._poller.interval, PLUGIN_POLL_INTERVAL_SECONDS),
                operation="delete custom plugin",
                key=key,
            )
        else:
            logger.info("Connector plugin already absent", extra={"key": key, "plugin_name": plugin_name})

        object_key = artifact_key(spec["plugin_prefix"], self._context.deployment_id, spec["plugin_url"])
        await self._mutate(
            OperationKind.DELETE, key, self._s3.delete_object, Bucket=spec["plugin_bucket"], Key=object_key
        )

    async def current_external_id(self, key: str, spec: dict[str, Any]) -> str | None:
        plugin = await self._find_plugin(key, self.plugin_name(self._name_of(key)))
        return plugin["customPluginArn"] if plugin else None


class SinkConnectorProvisioner(_ConnectorBase):
    """S3 sink connector running the custom plugin."""

    kind = ResourceKind.SINK_CONNECTOR
    immutable_fields = CONNECTOR_IMMUTABLE_FIELDS

    async def create(self, key: str, spec: dict[str, Any]) -> str | None:
        connector_name = self.connector_name(self._name_of(key))
        plugin = await self._find_plugin(key, self.plugin_name(spec["plugin_name"]))
        if plugin is None:
            raise ExternalFailure(
                f"Custom plugin for {key} does not exist",
                operation="create",
                kind=self.kind.value,
                key=key,
            )
        revision = (plugin.get("latestRevision") or {}).get("revision", 1)

        async def submit() -> str:
            response = await self._mutate(
                OperationKind.CREATE,
                key,
                self._client.create_connector,
                connectorName=connector_name,
                capacity=capacity_payload(spec["capacity"]),
                connectorConfiguration=connector_configuration(spec, self._context.region),
                kafkaCluster={
                    "apacheKafkaCluster": {
                        "bootstrapServers": spec["bootstrap_servers"],
                        "vpc": {
                            "securityGroups": [spec["security_group_id"]],
                            "subnets": spec["subnet_ids"],
                        },
                    }
                },
                kafkaClusterClientAuthentication={"authenticationType": "NONE"},
                kafkaClusterEncryptionInTransit={"encryptionType": "PLAINTEXT"},
                kafkaConnectVersion=spec["kafka_connect_version"],
                logDelivery={
                    "workerLogDelivery": {
                        "s3": {"enabled": True, "bucket": spec["log_bucket"], "prefix": spec["log_prefix"]}
                    }
                },
                plugins=[{"customPlugin": {"customPluginArn": plugin["customPluginArn"], "revision": revision}}],
                serviceExecutionRoleArn=spec["service_role_arn"],
            )
            if response is not None:
                return response["connectorArn"]
            existing = await self.current_external_id(key, spec)
            if existing is None:
                raise ExternalFailure(
                    f"Connector {connector_name} reported as existing but was not found",
                    operation="create",
                    kind=self.kind.value,
                    key=key,
                )
            return existing

        result = await self._poller.run(
            submit,
            self._describer(key, OperationKind.CONFIRM_WRITE),
            lambda tag: tag == CONNECTOR_RUNNING,
            lambda tag: tag == CONNECTOR_FAILED,
            operation="create connector",
            key=key,
        )
        return result.handle

    async def _update(self, key: str, old_spec: dict[str, Any], new_spec: dict[str, Any]) -> str | None:
        connector = await self._find_connector(key, self.connector_name(self._name_of(key)))
        if connector is None:
            raise ExternalFailure(
                f"Connector for {key} does not exist",
                operation="update",
                kind=self.kind.value,
                key=key,
                code="NotFoundException",
            )
        connector_arn = connector["connectorArn"]

        async def submit() -> str:
            await self._mutate(
                OperationKind.UPDATE,
                key,
                self._client.update_connector,
                connectorArn=connector_arn,
                currentVersion=connector["currentVersion"],
                capacity=capacity_payload(new_spec["capacity"]),
            )
            return connector_arn

        result = await self._poller.run(
            submit,
            self._describer(key, OperationKind.CONFIRM_WRITE),
            lambda tag: tag == CONNECTOR_RUNNING,
            lambda tag: tag == CONNECTOR_FAILED,
            operation="update connector",
            key=key,
        )
        return result.handle

    async def delete(self, key: str, spec: dict[str, Any]) -> None:
        connector = await self._find_connector(key, self.connector_name(self._name_of(key)))
        if connector is None:
            logger.info("Connector already absent", extra={"key": key})
            return

        async def submit() -> str:
            await self._mutate(
                OperationKind.DELETE,
                key,
                self._client.delete_connector,
                connectorArn=connector["connectorArn"],
                currentVersion=connector["currentVersion"],
            )
            return connector["connectorArn"]

        await self._poller.run(
            submit,
            self._describer(key, OperationKind.CONFIRM_DELETE),
            is_absent,
            lambda tag: tag == CONNECTOR_FAILED,
            operation="delete connector",
            key=key,
        )

    async def current_external_id(self, key: str, spec: dict[str, Any]) -> str | None:
        connector = await self._find_connector(key, self.connector_name(self._name_of(key)))
        return connector["connectorArn"] if connector else None

    def _describer(self, key: str, operation: OperationKind) -> Any:
        async def describe(connector_arn: str) -> ObservedState:
            try:
                response = await self._call(self._client.describe_connector, connectorArn=connector_arn)
            except ClientError as e:
                return self._observe_error(operation, key, e)
            reason = (response.get("stateDescription") or {}).get("message")
            return ObservedState(response["connectorState"], reason=reason, external_id=connector_arn)

        return describe
