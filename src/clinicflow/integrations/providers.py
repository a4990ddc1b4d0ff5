"""
Integration providers for website contact and newsletter submissions.

The provider set is closed: ``create_provider`` picks one variant per
deployment. Providers report failures in their response instead of
raising, so a broken integration never loses the local submission.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import httpx

from clinicflow.config import Settings
from clinicflow.models.base import utcnow

logger = logging.getLogger(__name__)

SOURCE_HEADER = "clinicflow-website"


class ProviderType(str, Enum):
    STANDALONE = "standalone"
    EMRM = "emrm"
    SIMPLYSAFE = "simplysafe"
    GENERIC_WEBHOOK = "generic_webhook"


@dataclass
class ContactSubmission:
    name: str
    email: str
    phone: Optional[str] = None
    preferred_contact: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "preferredContact": self.preferred_contact,
            "message": self.message,
        }


@dataclass
class NewsletterSubscription:
    email: str


@dataclass
class ProviderError:
    code: str
    message: str


@dataclass
class ProviderResponse:
    success: bool
    message: str
    external_id: Optional[str] = None
    error: Optional[ProviderError] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "external_id": self.external_id,
            "error": {"code": self.error.code, "message": self.error.message} if self.error else None,
        }


@dataclass
class ProviderConfig:
    api_url: Optional[str] = None
    api_key: Optional[str] = None
    contact_webhook_url: Optional[str] = None
    newsletter_webhook_url: Optional[str] = None
    auth_header: Optional[str] = None
    timeout: float = 10.0
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderConfig":
        return cls(
            api_url=settings.emrm_api_url,
            api_key=settings.emrm_api_key,
            contact_webhook_url=settings.contact_webhook_url,
            newsletter_webhook_url=settings.newsletter_webhook_url,
            auth_header=f"Bearer {settings.integration_api_key}" if settings.integration_api_key else None,
            timeout=settings.integration_timeout_seconds,
        )


def _configuration_error(message: str) -> ProviderResponse:
    return ProviderResponse(
        success=False,
        message="Integration not configured",
        error=ProviderError(code="CONFIGURATION_ERROR", message=message),
    )


class IntegrationProvider(ABC):
    """Forwards website submissions to an external system."""

    name: str = "base"

    def __init__(self, config: ProviderConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = client

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout)
        return self._client

    async def _post(self, url: str, body: dict, headers: dict[str, str]) -> tuple[Optional[httpx.Response], dict]:
        """POST JSON. Returns (response, parsed body); response is None on network failure."""
        try:
            response = await self._http().post(url, json=body, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"{self.name} request failed: {type(e).__name__}")
            return None, {"error": str(e)}
        try:
            data = response.json()
        except ValueError:
            data = {}
        return response, data if isinstance(data, dict) else {}

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    @abstractmethod
    async def handle_contact_submission(self, contact: ContactSubmission, local_id: str) -> ProviderResponse:
        """Forward a contact form submission."""

    @abstractmethod
    async def handle_newsletter_subscription(
        self, subscriber: NewsletterSubscription, local_id: str
    ) -> ProviderResponse:
        """Forward a newsletter subscription."""


class StandaloneProvider(IntegrationProvider):
    """Keeps submissions local only."""

    name = "standalone"

    async def handle_contact_submission(self, contact: ContactSubmission, local_id: str) -> ProviderResponse:
        logger.info(f"Contact submission {local_id} stored locally")
        return ProviderResponse(success=True, message="Contact stored locally", external_id=local_id)

    async def handle_newsletter_subscription(
        self, subscriber: NewsletterSubscription, local_id: str
    ) -> ProviderResponse:
        logger.info(f"Newsletter subscription {local_id} stored locally")
        return ProviderResponse(success=True, message="Subscription stored locally", external_id=local_id)


class EMRMProvider(IntegrationProvider):
    """Creates intake contacts and marketing subscribers in EMRM."""

    name = "emrm"

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.config.api_key}",
            "X-Source": SOURCE_HEADER,
        }

    async def _send(self, path: str, body: dict, id_field: str, success_message: str) -> ProviderResponse:
        if not self.config.api_url or not self.config.api_key:
            return _configuration_error("EMRM API URL or API key is missing")

        response, data = await self._post(f"{self.config.api_url.rstrip('/')}{path}", body, self._headers())
        if response is None:
            return ProviderResponse(
                success=False,
                message="Failed to connect to EMRM",
                error=ProviderError(code="NETWORK_ERROR", message=data.get("error", "")),
            )
        if not response.is_success:
            error = data.get("error") or {}
            logger.error(f"EMRM API error: HTTP {response.status_code}")
            return ProviderResponse(
                success=False,
                message=error.get("message") or "EMRM integration failed",
                error=ProviderError(
                    code=error.get("code") or "EMRM_ERROR",
                    message=error.get("message") or f"HTTP {response.status_code}",
                ),
            )
        return ProviderResponse(
            success=True,
            message=data.get("message") or success_message,
            external_id=data.get(id_field),
        )

    async def handle_contact_submission(self, contact: ContactSubmission, local_id: str) -> ProviderResponse:
        body = {
            "source": "website_contact_form",
            "contactData": {**contact.to_dict(), "submittedAt": utcnow().isoformat()},
            "websiteSubmissionId": local_id,
        }
        return await self._send("/intake/contact", body, "clientId", "Contact forwarded to EMRM successfully")

    async def handle_newsletter_subscription(
        self, subscriber: NewsletterSubscription, local_id: str
    ) -> ProviderResponse:
        body = {
            "email": subscriber.email,
            "subscribedAt": utcnow().isoformat(),
            "source": "website_footer",
            "tags": ["website_visitor", "newsletter_subscriber"],
        }
        return await self._send(
            "/marketing/subscriber", body, "subscriberId", "Newsletter subscription synced to EMRM"
        )


class GenericWebhookProvider(IntegrationProvider):
    """POSTs submissions as JSON to configured webhook URLs."""

    name = "generic_webhook"

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "X-Source": SOURCE_HEADER}
        if self.config.auth_header:
            headers["Authorization"] = self.config.auth_header
        return headers

    async def _send(self, url: Optional[str], missing: str, body: dict, local_id: str, kind: str) -> ProviderResponse:
        if not url:
            return _configuration_error(missing)

        response, data = await self._post(url, body, self._headers())
        if response is None:
            return ProviderResponse(
                success=False,
                message="Failed to send to webhook",
                error=ProviderError(code="NETWORK_ERROR", message=data.get("error", "")),
            )
        if not response.is_success:
            logger.error(f"Webhook {kind} failed: HTTP {response.status_code}")
            return ProviderResponse(
                success=False,
                message="Webhook request failed",
                error=ProviderError(
                    code="WEBHOOK_ERROR",
                    message=data.get("message") or f"HTTP {response.status_code}",
                ),
            )
        logger.info(f"{kind} {local_id} sent to webhook")
        return ProviderResponse(
            success=True,
            message=f"{kind} forwarded to webhook successfully",
            external_id=str(data.get("id") or local_id),
        )

    async def handle_contact_submission(self, contact: ContactSubmission, local_id: str) -> ProviderResponse:
        body = {
            "type": "contact_submission",
            "data": {
                **contact.to_dict(),
                "websiteSubmissionId": local_id,
                "submittedAt": utcnow().isoformat(),
            },
        }
        return await self._send(
            self.config.contact_webhook_url, "Contact webhook URL is missing", body, local_id, "Contact"
        )

    async def handle_newsletter_subscription(
        self, subscriber: NewsletterSubscription, local_id: str
    ) -> ProviderResponse:
        body = {
            "type": "newsletter_subscription",
            "data": {
                "email": subscriber.email,
                "websiteSubmissionId": local_id,
                "subscribedAt": utcnow().isoformat(),
            },
        }
        return await self._send(
            self.config.newsletter_webhook_url,
            "Newsletter webhook URL is missing",
            body,
            local_id,
            "Subscription",
        )


PROVIDERS: dict[ProviderType, type[IntegrationProvider]] = {
    ProviderType.STANDALONE: StandaloneProvider,
    ProviderType.EMRM: EMRMProvider,
    ProviderType.GENERIC_WEBHOOK: GenericWebhookProvider,
}


def create_provider(
    provider_type: "ProviderType | str",
    config: Optional[ProviderConfig] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> IntegrationProvider:
    """
    Build the provider for ``provider_type``.

    Unknown and not-yet-supported types (simplysafe) fall back to the
    standalone provider.
    """
    config = config or ProviderConfig()
    try:
        provider_type = ProviderType(provider_type)
    except ValueError:
        logger.warning(f"Unknown provider type: {provider_type}, using standalone")
        return StandaloneProvider(config, client)

    provider_cls = PROVIDERS.get(provider_type)
    if provider_cls is None:
        logger.warning(f"{provider_type.value} provider not implemented, using standalone")
        return StandaloneProvider(config, client)
    return provider_cls(config, client)
