"""AWS API mocks for testing provisioners and the lifecycle controller.

Key Features:
- In-memory state per service, just deep enough for create/describe/delete
- Call recording for asserting on issued requests
- Error injection per method for failure scenarios
- Conditional writes for the DynamoDB metadata table

Usage:
    from aws_mock import MockAwsContext

    aws = MockAwsContext()
    controller = LifecycleController(InMemoryMetadataStore(), aws.provisioners)
    await controller.create(spec)

    assert aws.quicksight.call_count("create_dashboard") == 2
"""

from .base import MockClient, client_error
from .context import ACCOUNT_ID, PLUGIN_CONTENT, REGION, MockAwsContext
from .kafkaconnect import MockKafkaConnectClient, MockS3Client
from .quicksight import MockQuickSightClient
from .redshift import MockRedshiftDataClient
from .stores import MockCloudFormationClient, MockDynamoTable

__all__ = [
    "ACCOUNT_ID",
    "PLUGIN_CONTENT",
    "REGION",
    "MockAwsContext",
    "MockClient",
    "MockCloudFormationClient",
    "MockDynamoTable",
    "MockKafkaConnectClient",
    "MockQuickSightClient",
    "MockRedshiftDataClient",
    "MockS3Client",
    "client_error",
]
