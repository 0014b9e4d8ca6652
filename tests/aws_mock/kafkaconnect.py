"""Mock MSK Connect and S3 clients."""

from __future__ import annotations

import itertools
from typing import Any

from .base import MockClient, client_error


class MockKafkaConnectClient(MockClient):
    """In-memory stand-in for the kafkaconnect client.

    Plugins become ACTIVE and connectors RUNNING on the first describe unless
    a different state is configured. Deleted objects disappear immediately.
    """

    def __init__(self, region: str = "us-east-1", account_id: str = "123456789012") -> None:
        super().__init__()
        self.plugins: dict[str, dict[str, Any]] = {}
        self.connectors: dict[str, dict[str, Any]] = {}
        self.plugin_state = "ACTIVE"
        self.connector_state = "RUNNING"
        self._arn_base = f"arn:aws:kafkaconnect:{region}:{account_id}"
        self._ids = itertools.count(1)

    # Plugins

    def create_custom_plugin(self, name: str, contentType: str, location: dict[str, Any]) -> dict[str, Any]:
        self._record("create_custom_plugin", name=name, contentType=contentType, location=location)
        if any(p["name"] == name for p in self.plugins.values()):
            raise client_error("ConflictException", f"Custom plugin {name} already exists", "CreateCustomPlugin")
        arn = f"{self._arn_base}:custom-plugin/{name}/{next(self._ids)}"
        self.plugins[arn] = {
            "name": name,
            "customPluginArn": arn,
            "contentType": contentType,
            "location": location,
            "latestRevision": {"revision": 1},
        }
        return {"customPluginArn": arn, "name": name, "customPluginState": "CREATING", "revision": 1}

    def describe_custom_plugin(self, customPluginArn: str) -> dict[str, Any]:
        self._record("describe_custom_plugin", customPluginArn=customPluginArn)
        if customPluginArn not in self.plugins:
            raise client_error("NotFoundException", "Custom plugin not found", "DescribeCustomPlugin")
        return {**self.plugins[customPluginArn], "customPluginState": self.plugin_state}

    def list_custom_plugins(self, namePrefix: str = "", **kwargs: Any) -> dict[str, Any]:
        self._record("list_custom_plugins", namePrefix=namePrefix, **kwargs)
        return {"customPlugins": [p for p in self.plugins.values() if p["name"].startswith(namePrefix)]}

    def delete_custom_plugin(self, customPluginArn: str) -> dict[str, Any]:
        self._record("delete_custom_plugin", customPluginArn=customPluginArn)
        if self.plugins.pop(customPluginArn, None) is None:
            raise client_error("NotFoundException", "Custom plugin not found", "DeleteCustomPlugin")
        return {"customPluginArn": customPluginArn, "customPluginState": "DELETING"}

    # Connectors

    def create_connector(self, connectorName: str, **kwargs: Any) -> dict[str, Any]:
        self._record("create_connector", connectorName=connectorName, **kwargs)
        if any(c["connectorName"] == connectorName for c in self.connectors.values()):
            raise client_error("ConflictException", f"Connector {connectorName} already exists", "CreateConnector")
        arn = f"{self._arn_base}:connector/{connectorName}/{next(self._ids)}"
        self.connectors[arn] = {
            "connectorName": connectorName,
            "connectorArn": arn,
            "currentVersion": "V1",
            "capacity": kwargs.get("capacity"),
            "connectorConfiguration": kwargs.get("connectorConfiguration"),
        }
        return {"connectorArn": arn, "connectorName": connectorName, "connectorState": "CREATING"}

    def describe_connector(self, connectorArn: str) -> dict[str, Any]:
        self._record("describe_connector", connectorArn=connectorArn)
        if connectorArn not in self.connectors:
            raise client_error("NotFoundException", "Connector not found", "DescribeConnector")
        return {**self.connectors[connectorArn], "connectorState": self.connector_state}

    def list_connectors(self, connectorNamePrefix: str = "", **kwargs: Any) -> dict[str, Any]:
        self._record("list_connectors", connectorNamePrefix=connectorNamePrefix, **kwargs)
        return {
            "connectors": [
                c for c in self.connectors.values() if c["connectorName"].startswith(connectorNamePrefix)
            ]
        }

    def update_connector(self, connectorArn: str, currentVersion: str, capacity: dict[str, Any]) -> dict[str, Any]:
        self._record("update_connector", connectorArn=connectorArn, currentVersion=currentVersion, capacity=capacity)
        connector = self.connectors.get(connectorArn)
        if connector is None:
            raise client_error("NotFoundException", "Connector not found", "UpdateConnector")
        if connector["currentVersion"] != currentVersion:
            raise client_error("BadRequestException", "Connector version mismatch", "UpdateConnector")
        connector["capacity"] = capacity
        connector["currentVersion"] = f"V{int(currentVersion[1:]) + 1}"
        return {"connectorArn": connectorArn, "connectorState": "UPDATING"}

    def delete_connector(self, connectorArn: str, currentVersion: str = "") -> dict[str, Any]:
        self._record("delete_connector", connectorArn=connectorArn, currentVersion=currentVersion)
        if self.connectors.pop(connectorArn, None) is None:
            raise client_error("NotFoundException", "Connector not found", "DeleteConnector")
        return {"connectorArn": connectorArn, "connectorState": "DELETING"}


class MockS3Client(MockClient):
    """In-memory object store."""

    def __init__(self) -> None:
        super().__init__()
        self.objects: dict[tuple[str, str], bytes] = {}

    def put_object(self, Bucket: str, Key: str, Body: bytes) -> dict[str, Any]:
        self._record("put_object", Bucket=Bucket, Key=Key)
        self.objects[(Bucket, Key)] = Body
        return {"ETag": f'"{len(Body)}"'}

    def delete_object(self, Bucket: str, Key: str) -> dict[str, Any]:
        self._record("delete_object", Bucket=Bucket, Key=Key)
        self.objects.pop((Bucket, Key), None)
        return {}
