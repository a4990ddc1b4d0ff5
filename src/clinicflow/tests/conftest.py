"""
Pytest configuration and shared fixtures for clinicflow tests.
"""

import secrets
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

import pytest
from botocore.exceptions import ClientError
from tenacity import wait_none

from clinicflow.config import Settings
from clinicflow.db.store import InMemoryReferralStore
from clinicflow.export.orchestrator import ExportOrchestrator
from clinicflow.models.referral import Referral, Urgency
from clinicflow.notifications.dispatcher import NotificationDispatcher, NotificationEvent
from clinicflow.security.encryption import KeyRing, MasterKey
from clinicflow.services.workflow_service import ReferralWorkflowService
from clinicflow.storage.client import ObjectStorageClient

TEST_KEY_HEX = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"


def client_error(code: str, status: int, operation: str = "PutObject") -> ClientError:
    """Build a botocore ClientError as S3 would raise it."""
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


class FakeBody:
    def __init__(self, data: bytes):
        self._data = data

    def read(self) -> bytes:
        return self._data


class FakeS3:
    """
    In-process stand-in for a boto3 S3 client.

    ``failures`` maps an operation name to a list of exceptions raised on
    successive calls before the operation starts succeeding.
    """

    def __init__(self):
        self.objects: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.failures: dict[str, list[Exception]] = {}

    def _record(self, operation: str, kwargs: dict[str, Any]) -> None:
        self.calls.append((operation, kwargs))
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    def put_object(self, **kwargs):
        self._record("put_object", kwargs)
        self.objects[kwargs["Key"]] = {
            "Body": kwargs["Body"],
            "Metadata": kwargs.get("Metadata", {}),
            "ContentType": kwargs.get("ContentType"),
            "ACL": kwargs.get("ACL"),
        }
        return {"ETag": '"etag-' + kwargs["Key"][-8:] + '"'}

    def get_object(self, **kwargs):
        self._record("get_object", kwargs)
        stored = self.objects.get(kwargs["Key"])
        if stored is None:
            raise client_error("NoSuchKey", 404, "GetObject")
        return {
            "Body": FakeBody(stored["Body"]),
            "Metadata": stored["Metadata"],
            "ContentType": stored["ContentType"],
        }

    def head_object(self, **kwargs):
        self._record("head_object", kwargs)
        stored = self.objects.get(kwargs["Key"])
        if stored is None:
            raise client_error("404", 404, "HeadObject")
        return {
            "ContentLength": len(stored["Body"]),
            "ContentType": stored["ContentType"],
            "Metadata": stored["Metadata"],
        }

    def delete_object(self, **kwargs):
        self._record("delete_object", kwargs)
        self.objects.pop(kwargs["Key"], None)
        return {}

    def list_objects_v2(self, **kwargs):
        self._record("list_objects_v2", kwargs)
        keys = sorted(k for k in self.objects if k.startswith(kwargs.get("Prefix", "")))
        return {"Contents": [{"Key": k} for k in keys], "IsTruncated": False}

    def generate_presigned_url(self, ClientMethod, Params, ExpiresIn):
        self._record("generate_presigned_url", {"ClientMethod": ClientMethod, "Params": Params})
        return (
            f"https://{Params['Bucket']}.example.test/{Params['Key']}"
            f"?X-Amz-Expires={ExpiresIn}&X-Amz-Signature={secrets.token_hex(8)}"
        )


class RecordingSink:
    """Notification sink that keeps every event it receives."""

    name = "recording"

    def __init__(self):
        self.events: list[NotificationEvent] = []

    async def send(self, event: NotificationEvent) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [event.type.value for event in self.events]


@pytest.fixture
def settings() -> Settings:
    """Settings with a test key and no environment or .env influence."""
    return Settings(
        _env_file=None,
        environment="testing",
        encryption_key=TEST_KEY_HEX,
        encryption_key_id="master-key-v1",
        storage_bucket="test-intake",
        storage_region="us-east-1",
        storage_max_attempts=3,
        export_step_timeout_seconds=5.0,
        telemetry_token="telemetry-test-token",
    )


@pytest.fixture
def master_key() -> MasterKey:
    return MasterKey.from_hex("master-key-v1", TEST_KEY_HEX)


@pytest.fixture
def key_ring(settings) -> KeyRing:
    return KeyRing.from_settings(settings)


@pytest.fixture
def fake_s3() -> FakeS3:
    return FakeS3()


@pytest.fixture
def storage_client(settings, fake_s3) -> ObjectStorageClient:
    """Storage client over the fake S3 with no retry back-off."""
    return ObjectStorageClient(settings, s3_client=fake_s3, retry_wait=wait_none())


@pytest.fixture
def orchestrator(key_ring, storage_client, settings) -> ExportOrchestrator:
    return ExportOrchestrator(key_ring, storage_client, settings)


@pytest.fixture
def store() -> InMemoryReferralStore:
    return InMemoryReferralStore()


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def dispatcher(recording_sink) -> NotificationDispatcher:
    return NotificationDispatcher([recording_sink])


@pytest.fixture
def service(store, orchestrator, storage_client, dispatcher) -> ReferralWorkflowService:
    return ReferralWorkflowService(store, orchestrator, storage_client, dispatcher)


@pytest.fixture
def sample_referral() -> Referral:
    """Create a sample referral for testing."""
    return Referral(
        id=uuid4(),
        client_name="Jordan Rivera",
        client_email="jordan@example.com",
        client_phone="555-0100",
        client_age=34,
        presenting_concerns="Anxiety and sleep problems",
        urgency=Urgency.URGENT,
        insurance_provider="Acme Health",
        insurance_member_id="AH-1234",
        referral_source="Primary care",
        created_at=datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc),
    )


def make_referral(client_name: str = "Test Client", **kwargs: Any) -> Referral:
    kwargs.setdefault("created_at", datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))
    return Referral(client_name=client_name, **kwargs)


@pytest.fixture
def referral_factory():
    """Factory for referrals with sensible defaults."""
    return make_referral


def find_call(fake: FakeS3, operation: str) -> Optional[dict[str, Any]]:
    for name, kwargs in fake.calls:
        if name == operation:
            return kwargs
    return None
