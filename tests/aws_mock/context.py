"""One set of mock AWS clients wired into provisioners."""

from __future__ import annotations

from typing import Any

import httpx
from controlplane.connector import ConnectorPluginProvisioner, SinkConnectorProvisioner
from controlplane.models import ResourceKind
from controlplane.poller import OperationPoller
from controlplane.provisioner import ProvisionContext, ResourceProvisioner
from controlplane.reporting import (
    AnalysisProvisioner,
    DashboardProvisioner,
    DataSetProvisioner,
    FolderMembershipProvisioner,
    FolderProvisioner,
)
from controlplane.warehouse import WarehouseDatabaseProvisioner, WarehouseSchemaProvisioner

from .kafkaconnect import MockKafkaConnectClient, MockS3Client
from .quicksight import MockQuickSightClient
from .redshift import MockRedshiftDataClient
from .stores import MockCloudFormationClient

REGION = "us-east-1"
ACCOUNT_ID = "123456789012"
PLUGIN_CONTENT = b"PK\x03\x04plugin"


class MockAwsContext:
    """Mock clients for every provisioning API plus a provisioner factory.

    Plugin downloads are served by an httpx MockTransport; URLs listed in
    `missing_urls` answer 404.
    """

    def __init__(self, poll_attempts: int = 5) -> None:
        self.redshift = MockRedshiftDataClient()
        self.kafkaconnect = MockKafkaConnectClient(REGION, ACCOUNT_ID)
        self.s3 = MockS3Client()
        self.quicksight = MockQuickSightClient(REGION, ACCOUNT_ID)
        self.cloudformation = MockCloudFormationClient()
        self.poller = OperationPoller(interval=0, max_attempts=poll_attempts)
        self.downloads: list[str] = []
        self.missing_urls: set[str] = set()
        self.transport = httpx.MockTransport(self._serve)

    def _serve(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.downloads.append(url)
        if url in self.missing_urls:
            return httpx.Response(404)
        return httpx.Response(200, content=PLUGIN_CONTENT)

    def context(self, deployment_id: str = "dep1", project_id: str = "shop", **overrides: Any) -> ProvisionContext:
        settings: dict[str, Any] = {
            "deployment_id": deployment_id,
            "project_id": project_id,
            "account_id": ACCOUNT_ID,
            "region": REGION,
            **overrides,
        }
        return ProvisionContext(**settings)

    def provisioners(self, context: ProvisionContext) -> dict[ResourceKind, ResourceProvisioner]:
        built: list[ResourceProvisioner] = [
            WarehouseDatabaseProvisioner(context, self.poller, self.redshift),
            WarehouseSchemaProvisioner(context, self.poller, self.redshift),
            ConnectorPluginProvisioner(
                context, self.poller, self.kafkaconnect, self.s3, download_timeout=5, transport=self.transport
            ),
            SinkConnectorProvisioner(context, self.poller, self.kafkaconnect),
            DataSetProvisioner(context, self.poller, self.quicksight),
            AnalysisProvisioner(context, self.poller, self.quicksight),
            DashboardProvisioner(context, self.poller, self.quicksight),
            FolderProvisioner(context, self.poller, self.quicksight),
            FolderMembershipProvisioner(context, self.poller, self.quicksight),
        ]
        return {p.kind: p for p in built}

    def all_calls(self) -> list[str]:
        """Every mutating or describing call issued, across clients."""
        return [
            *self.redshift.methods(),
            *self.kafkaconnect.methods(),
            *self.s3.methods(),
            *self.quicksight.methods(),
        ]
