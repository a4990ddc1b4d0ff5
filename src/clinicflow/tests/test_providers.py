"""
Tests for integration providers.

Tests:
- Provider factory and fallbacks
- EMRM contact and subscriber forwarding
- Generic webhook forwarding and error codes
"""

import json

import httpx
import pytest

from clinicflow.integrations.providers import (
    ContactSubmission,
    EMRMProvider,
    GenericWebhookProvider,
    NewsletterSubscription,
    ProviderConfig,
    StandaloneProvider,
    create_provider,
)


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def contact() -> ContactSubmission:
    return ContactSubmission(
        name="Jordan Rivera",
        email="jordan@example.com",
        phone="555-0100",
        preferred_contact="email",
        message="Looking for a therapist",
    )


class TestFactory:
    """Tests for create_provider."""

    def test_known_types(self):
        assert isinstance(create_provider("emrm"), EMRMProvider)
        assert isinstance(create_provider("generic_webhook"), GenericWebhookProvider)
        assert isinstance(create_provider("standalone"), StandaloneProvider)

    def test_unimplemented_and_unknown_fall_back(self):
        assert isinstance(create_provider("simplysafe"), StandaloneProvider)
        assert isinstance(create_provider("carrier-pigeon"), StandaloneProvider)

    def test_config_from_settings(self, settings):
        settings.integration_api_key = "k"
        config = ProviderConfig.from_settings(settings)
        assert config.auth_header == "Bearer k"


class TestStandalone:
    @pytest.mark.asyncio
    async def test_keeps_local_id(self, contact):
        response = await StandaloneProvider(ProviderConfig()).handle_contact_submission(contact, "local-1")
        assert response.success
        assert response.external_id == "local-1"


class TestEMRM:
    """Tests for EMRMProvider."""

    @pytest.mark.asyncio
    async def test_contact_forwarded(self, contact):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(201, json={"clientId": "emrm-42"})

        provider = EMRMProvider(
            ProviderConfig(api_url="https://emrm.example.com/api/", api_key="key"),
            mock_client(handler),
        )

        response = await provider.handle_contact_submission(contact, "local-1")

        assert response.success
        assert response.external_id == "emrm-42"
        assert str(requests[0].url) == "https://emrm.example.com/api/intake/contact"
        assert requests[0].headers["Authorization"] == "Bearer key"
        body = json.loads(requests[0].content)
        assert body["websiteSubmissionId"] == "local-1"
        assert body["contactData"]["preferredContact"] == "email"

    @pytest.mark.asyncio
    async def test_subscriber_forwarded(self):
        provider = EMRMProvider(
            ProviderConfig(api_url="https://emrm.example.com/api", api_key="key"),
            mock_client(lambda request: httpx.Response(200, json={"subscriberId": "sub-7"})),
        )

        response = await provider.handle_newsletter_subscription(
            NewsletterSubscription(email="jordan@example.com"), "local-2"
        )

        assert response.external_id == "sub-7"

    @pytest.mark.asyncio
    async def test_missing_configuration(self, contact):
        response = await EMRMProvider(ProviderConfig()).handle_contact_submission(contact, "local-1")
        assert not response.success
        assert response.error.code == "CONFIGURATION_ERROR"

    @pytest.mark.asyncio
    async def test_api_error(self, contact):
        provider = EMRMProvider(
            ProviderConfig(api_url="https://emrm.example.com", api_key="key"),
            mock_client(
                lambda request: httpx.Response(
                    409, json={"error": {"code": "DUPLICATE", "message": "Client exists"}}
                )
            ),
        )

        response = await provider.handle_contact_submission(contact, "local-1")

        assert not response.success
        assert response.error.code == "DUPLICATE"
        assert response.message == "Client exists"

    @pytest.mark.asyncio
    async def test_network_error(self, contact):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        provider = EMRMProvider(
            ProviderConfig(api_url="https://emrm.example.com", api_key="key"), mock_client(handler)
        )

        response = await provider.handle_contact_submission(contact, "local-1")

        assert response.error.code == "NETWORK_ERROR"


class TestGenericWebhook:
    """Tests for GenericWebhookProvider."""

    @pytest.mark.asyncio
    async def test_contact_forwarded_with_auth(self, contact):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"id": "hook-1"})

        provider = GenericWebhookProvider(
            ProviderConfig(contact_webhook_url="https://hooks.example.com/contact", auth_header="Bearer t"),
            mock_client(handler),
        )

        response = await provider.handle_contact_submission(contact, "local-1")

        assert response.success
        assert response.external_id == "hook-1"
        assert requests[0].headers["Authorization"] == "Bearer t"
        assert json.loads(requests[0].content)["type"] == "contact_submission"

    @pytest.mark.asyncio
    async def test_falls_back_to_local_id(self):
        provider = GenericWebhookProvider(
            ProviderConfig(newsletter_webhook_url="https://hooks.example.com/news"),
            mock_client(lambda request: httpx.Response(204)),
        )

        response = await provider.handle_newsletter_subscription(
            NewsletterSubscription(email="jordan@example.com"), "local-2"
        )

        assert response.success
        assert response.external_id == "local-2"

    @pytest.mark.asyncio
    async def test_webhook_error(self, contact):
        provider = GenericWebhookProvider(
            ProviderConfig(contact_webhook_url="https://hooks.example.com/contact"),
            mock_client(lambda request: httpx.Response(500, text="boom")),
        )

        response = await provider.handle_contact_submission(contact, "local-1")

        assert not response.success
        assert response.error.code == "WEBHOOK_ERROR"
        assert response.error.message == "HTTP 500"

    @pytest.mark.asyncio
    async def test_missing_url(self, contact):
        response = await GenericWebhookProvider(ProviderConfig()).handle_contact_submission(contact, "x")
        assert response.error.code == "CONFIGURATION_ERROR"
