"""Tests for the connector plugin and sink connector provisioners."""

from __future__ import annotations

from typing import Any

import pytest
from aws_mock import PLUGIN_CONTENT
from factories import make_connector_data, make_spec_data

from controlplane.connector import (
    artifact_key,
    capacity_payload,
    connector_configuration,
)
from controlplane.diff import Change, ChangeAction
from controlplane.errors import ExternalFailure
from controlplane.models import DeploymentSpec, Outcome, ResourceKind

PLUGIN_KEY = "connector-plugin/s3-sink"
CONNECTOR_KEY = "sink-connector/s3-sink"
PLUGIN_URL = "https://plugins.example.com/confluentinc-kafka-connect-s3-10.0.3.zip"


def connector_specs(**connector_overrides: Any) -> dict[str, dict[str, Any]]:
    data = make_spec_data(connector=make_connector_data(**connector_overrides))
    resources = DeploymentSpec.model_validate(data).to_resource_map()
    return {PLUGIN_KEY: resources[PLUGIN_KEY].spec, CONNECTOR_KEY: resources[CONNECTOR_KEY].spec}


def change(
    key: str,
    action: ChangeAction,
    old: dict[str, Any] | None = None,
    new: dict[str, Any] | None = None,
) -> Change:
    return Change(key, ResourceKind(key.split("/", 1)[0]), action, old_spec=old, new_spec=new)


def create(key: str, spec: dict[str, Any]) -> Change:
    return change(key, ChangeAction.CREATE, new=spec)


def delete(key: str, spec: dict[str, Any]) -> Change:
    return change(key, ChangeAction.DELETE, old=spec)


async def provision(aws, specs: dict[str, dict[str, Any]]) -> None:
    provisioners = aws.provisioners(aws.context())
    for key in (PLUGIN_KEY, CONNECTOR_KEY):
        kind = ResourceKind(key.split("/", 1)[0])
        [outcome] = await provisioners[kind].apply(
            [create(key, specs[key])], deleting=False
        )
        assert outcome.outcome == Outcome.SUCCEEDED


class TestHelpers:
    """Tests for naming and payload helpers."""

    def test_artifact_key(self) -> None:
        """The artifact key is derived from prefix, deployment and file name."""
        assert artifact_key("plugins/", "dep1", PLUGIN_URL) == (
            "plugins/dep1-confluentinc-kafka-connect-s3-10.0.3.zip"
        )

    def test_overrides_win(self) -> None:
        """Custom configuration overrides base properties."""
        spec = connector_specs(customConfiguration={"tasks.max": "4", "extra.key": "x"})[CONNECTOR_KEY]

        configuration = connector_configuration(spec, "eu-west-1")

        assert configuration["tasks.max"] == "4"
        assert configuration["extra.key"] == "x"
        assert configuration["s3.region"] == "eu-west-1"
        assert configuration["s3.bucket.name"] == "ingestion"
        assert configuration["topics"] == "shop_web,shop_ios"
        assert configuration["flush.size"] == "50000"

    def test_capacity_payload(self) -> None:
        """Capacity maps to an autoscaling block."""
        payload = capacity_payload({"min_worker_count": 1, "max_worker_count": 4, "worker_mcu_count": 2})
        assert payload["autoScaling"]["maxWorkerCount"] == 4
        assert payload["autoScaling"]["mcuCount"] == 2


class TestConnectorPluginProvisioner:
    """Tests for ConnectorPluginProvisioner."""

    @pytest.mark.asyncio
    async def test_create_uploads_and_registers(self, aws) -> None:
        """The artifact is stored, registered and polled to ACTIVE."""
        provisioner = aws.provisioners(aws.context())[ResourceKind.CONNECTOR_PLUGIN]
        spec = connector_specs()[PLUGIN_KEY]

        [outcome] = await provisioner.apply([create(PLUGIN_KEY, spec)], deleting=False)

        assert outcome.outcome == Outcome.SUCCEEDED
        assert aws.downloads == [PLUGIN_URL]
        object_key = "plugins/dep1-confluentinc-kafka-connect-s3-10.0.3.zip"
        assert aws.s3.objects[("artifacts", object_key)] == PLUGIN_CONTENT
        [registration] = aws.kafkaconnect.calls_to("create_custom_plugin")
        assert registration["name"] == "Clickstream-Plugin-s3-sink-dep1"
        assert registration["contentType"] == "ZIP"
        assert registration["location"]["s3Location"] == {
            "bucketArn": "arn:aws:s3:::artifacts",
            "fileKey": object_key,
        }
        assert outcome.external_id in aws.kafkaconnect.plugins

    @pytest.mark.asyncio
    async def test_jar_content_type(self, aws) -> None:
        """A .jar artifact is registered as JAR."""
        provisioner = aws.provisioners(aws.context())[ResourceKind.CONNECTOR_PLUGIN]
        spec = connector_specs(pluginUrl="https://plugins.example.com/sink.jar")[PLUGIN_KEY]

        await provisioner.apply([create(PLUGIN_KEY, spec)], deleting=False)

        assert aws.kafkaconnect.calls_to("create_custom_plugin")[0]["contentType"] == "JAR"

    @pytest.mark.asyncio
    async def test_existing_plugin_is_adopted(self, aws) -> None:
        """A retried create finds the plugin registered earlier."""
        provisioner = aws.provisioners(aws.context())[ResourceKind.CONNECTOR_PLUGIN]
        spec = connector_specs()[PLUGIN_KEY]
        [first] = await provisioner.apply([create(PLUGIN_KEY, spec)], deleting=False)

        [second] = await provisioner.apply([create(PLUGIN_KEY, spec)], deleting=False)

        assert second.outcome == Outcome.SUCCEEDED
        assert second.external_id == first.external_id
        assert len(aws.kafkaconnect.plugins) == 1

    @pytest.mark.asyncio
    async def test_download_failure(self, aws) -> None:
        """An unreachable artifact fails the change before any registration."""
        aws.missing_urls.add(PLUGIN_URL)
        provisioner = aws.provisioners(aws.context())[ResourceKind.CONNECTOR_PLUGIN]
        spec = connector_specs()[PLUGIN_KEY]

        [outcome] = await provisioner.apply([create(PLUGIN_KEY, spec)], deleting=False)

        assert outcome.outcome == Outcome.FAILED
        assert isinstance(outcome.error, ExternalFailure)
        assert outcome.error.operation == "download"
        assert aws.kafkaconnect.calls == []
        assert aws.s3.objects == {}

    @pytest.mark.asyncio
    async def test_failed_registration(self, aws) -> None:
        """CREATE_FAILED is a terminal failure."""
        aws.kafkaconnect.plugin_state = "CREATE_FAILED"
        provisioner = aws.provisioners(aws.context())[ResourceKind.CONNECTOR_PLUGIN]
        spec = connector_specs()[PLUGIN_KEY]

        [outcome] = await provisioner.apply([create(PLUGIN_KEY, spec)], deleting=False)

        assert outcome.outcome == Outcome.FAILED
        assert "CREATE_FAILED" in str(outcome.error)

    @pytest.mark.asyncio
    async def test_delete_removes_plugin_and_artifact(self, aws) -> None:
        """Delete deregisters the plugin, then removes the artifact."""
        provisioner = aws.provisioners(aws.context())[ResourceKind.CONNECTOR_PLUGIN]
        spec = connector_specs()[PLUGIN_KEY]
        await provisioner.apply([create(PLUGIN_KEY, spec)], deleting=False)

        [outcome] = await provisioner.apply([delete(PLUGIN_KEY, spec)], deleting=True)

        assert outcome.outcome == Outcome.SUCCEEDED
        assert aws.kafkaconnect.plugins == {}
        assert aws.s3.objects == {}
        assert aws.s3.methods()[-1] == "delete_object"

    @pytest.mark.asyncio
    async def test_delete_absent_plugin(self, aws) -> None:
        """Deleting a plugin that never existed succeeds."""
        provisioner = aws.provisioners(aws.context())[ResourceKind.CONNECTOR_PLUGIN]
        spec = connector_specs()[PLUGIN_KEY]

        [outcome] = await provisioner.apply([delete(PLUGIN_KEY, spec)], deleting=True)

        assert outcome.outcome == Outcome.SUCCEEDED
        assert aws.kafkaconnect.call_count("delete_custom_plugin") == 0

    @pytest.mark.asyncio
    async def test_any_change_replaces(self, aws) -> None:
        """Every plugin field is immutable."""
        provisioner = aws.provisioners(aws.context())[ResourceKind.CONNECTOR_PLUGIN]
        old = connector_specs()[PLUGIN_KEY]
        new = connector_specs(pluginPrefix="other")[PLUGIN_KEY]
        await provisioner.apply([create(PLUGIN_KEY, old)], deleting=False)

        [outcome] = await provisioner.apply(
            [change(PLUGIN_KEY, ChangeAction.UPDATE, old=old, new=new)], deleting=False
        )

        assert outcome.outcome == Outcome.SUCCEEDED
        assert aws.kafkaconnect.call_count("delete_custom_plugin") == 1
        assert aws.kafkaconnect.call_count("create_custom_plugin") == 2
        assert list(aws.s3.objects) == [("artifacts", "other/dep1-confluentinc-kafka-connect-s3-10.0.3.zip")]


class TestSinkConnectorProvisioner:
    """Tests for SinkConnectorProvisioner."""

    @pytest.mark.asyncio
    async def test_create_requires_plugin(self, aws) -> None:
        """A connector cannot be created before its plugin."""
        provisioner = aws.provisioners(aws.context())[ResourceKind.SINK_CONNECTOR]
        spec = connector_specs()[CONNECTOR_KEY]

        [outcome] = await provisioner.apply([create(CONNECTOR_KEY, spec)], deleting=False)

        assert outcome.outcome == Outcome.FAILED
        assert aws.kafkaconnect.call_count("create_connector") == 0

    @pytest.mark.asyncio
    async def test_create_runs_against_plugin(self, aws) -> None:
        """The connector references the plugin and reaches RUNNING."""
        specs = connector_specs()
        await provision(aws, specs)

        [request] = aws.kafkaconnect.calls_to("create_connector")
        [plugin] = aws.kafkaconnect.plugins.values()
        assert request["connectorName"] == "Clickstream-Connector-s3-sink-dep1"
        assert request["plugins"] == [
            {"customPlugin": {"customPluginArn": plugin["customPluginArn"], "revision": 1}}
        ]
        assert request["kafkaCluster"]["apacheKafkaCluster"]["vpc"]["subnets"] == ["subnet-a", "subnet-b"]
        assert request["serviceExecutionRoleArn"] == "arn:aws:iam::123456789012:role/connector"
        assert request["connectorConfiguration"]["s3.region"] == "us-east-1"

    @pytest.mark.asyncio
    async def test_connector_failure_state(self, aws) -> None:
        """A FAILED connector fails the change."""
        specs = connector_specs()
        provisioners = aws.provisioners(aws.context())
        await provisioners[ResourceKind.CONNECTOR_PLUGIN].apply(
            [create(PLUGIN_KEY, specs[PLUGIN_KEY])], deleting=False
        )
        aws.kafkaconnect.connector_state = "FAILED"

        [outcome] = await provisioners[ResourceKind.SINK_CONNECTOR].apply(
            [create(CONNECTOR_KEY, specs[CONNECTOR_KEY])], deleting=False
        )

        assert outcome.outcome == Outcome.FAILED
        assert outcome.error.kind == "sink-connector"

    @pytest.mark.asyncio
    async def test_capacity_updates_in_place(self, aws) -> None:
        """Only capacity changed: the running connector is scaled."""
        old = connector_specs()
        new = connector_specs(capacity={"minWorkerCount": 2, "maxWorkerCount": 6})
        await provision(aws, old)
        [arn] = aws.kafkaconnect.connectors

        provisioner = aws.provisioners(aws.context())[ResourceKind.SINK_CONNECTOR]
        [outcome] = await provisioner.apply(
            [change(CONNECTOR_KEY, ChangeAction.UPDATE, old=old[CONNECTOR_KEY], new=new[CONNECTOR_KEY])],
            deleting=False,
        )

        assert outcome.outcome == Outcome.SUCCEEDED
        assert outcome.external_id == arn
        [update] = aws.kafkaconnect.calls_to("update_connector")
        assert update["currentVersion"] == "V1"
        assert update["capacity"]["autoScaling"]["maxWorkerCount"] == 6
        assert aws.kafkaconnect.connectors[arn]["currentVersion"] == "V2"
        assert aws.kafkaconnect.call_count("delete_connector") == 0

    @pytest.mark.asyncio
    async def test_identical_capacity_is_success(self, aws) -> None:
        """A capacity already in place is reported as identical and accepted."""
        old = connector_specs()
        new = connector_specs(capacity={"maxWorkerCount": 4})
        await provision(aws, old)
        aws.kafkaconnect.fail(
            "update_connector", "ValidationException", "The new value is identical to the current value"
        )

        provisioner = aws.provisioners(aws.context())[ResourceKind.SINK_CONNECTOR]
        [outcome] = await provisioner.apply(
            [change(CONNECTOR_KEY, ChangeAction.UPDATE, old=old[CONNECTOR_KEY], new=new[CONNECTOR_KEY])],
            deleting=False,
        )

        assert outcome.outcome == Outcome.SUCCEEDED
        assert aws.kafkaconnect.call_count("update_connector") == 1
        assert aws.kafkaconnect.call_count("delete_connector") == 0

    @pytest.mark.asyncio
    async def test_topic_change_replaces(self, aws) -> None:
        """A changed immutable field deletes and recreates the connector."""
        old = connector_specs()
        new = connector_specs(topics="shop_web")
        await provision(aws, old)
        [old_arn] = aws.kafkaconnect.connectors

        provisioner = aws.provisioners(aws.context())[ResourceKind.SINK_CONNECTOR]
        [outcome] = await provisioner.apply(
            [change(CONNECTOR_KEY, ChangeAction.UPDATE, old=old[CONNECTOR_KEY], new=new[CONNECTOR_KEY])],
            deleting=False,
        )

        assert outcome.outcome == Outcome.SUCCEEDED
        assert outcome.external_id != old_arn
        assert aws.kafkaconnect.call_count("update_connector") == 0
        [connector] = aws.kafkaconnect.connectors.values()
        assert connector["connectorConfiguration"]["topics"] == "shop_web"

    @pytest.mark.asyncio
    async def test_update_missing_connector_fails(self, aws) -> None:
        """Scaling a connector that is gone cannot succeed."""
        old = connector_specs()
        new = connector_specs(capacity={"maxWorkerCount": 5})
        provisioner = aws.provisioners(aws.context())[ResourceKind.SINK_CONNECTOR]

        [outcome] = await provisioner.apply(
            [change(CONNECTOR_KEY, ChangeAction.UPDATE, old=old[CONNECTOR_KEY], new=new[CONNECTOR_KEY])],
            deleting=False,
        )

        assert outcome.outcome == Outcome.FAILED
        assert "does not exist" in str(outcome.error)

    @pytest.mark.asyncio
    async def test_delete_waits_until_gone(self, aws) -> None:
        """Delete is confirmed by describing until the connector is absent."""
        specs = connector_specs()
        await provision(aws, specs)
        provisioner = aws.provisioners(aws.context())[ResourceKind.SINK_CONNECTOR]

        [outcome] = await provisioner.apply(
            [delete(CONNECTOR_KEY, specs[CONNECTOR_KEY])], deleting=True
        )

        assert outcome.outcome == Outcome.SUCCEEDED
        assert aws.kafkaconnect.connectors == {}
        assert aws.kafkaconnect.methods()[-2:] == ["delete_connector", "describe_connector"]

    @pytest.mark.asyncio
    async def test_names_scoped_to_deployment(self, aws) -> None:
        """Connectors of other deployments are not touched."""
        specs = connector_specs()
        await provision(aws, specs)
        other = aws.provisioners(aws.context(deployment_id="dep2"))[ResourceKind.SINK_CONNECTOR]

        assert await other.current_external_id(CONNECTOR_KEY, specs[CONNECTOR_KEY]) is None
        [outcome] = await other.apply(
            [delete(CONNECTOR_KEY, specs[CONNECTOR_KEY])], deleting=True
        )

        assert outcome.outcome == Outcome.SUCCEEDED
        assert len(aws.kafkaconnect.connectors) == 1
