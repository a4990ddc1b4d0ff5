"""
External integration providers.
"""

from clinicflow.integrations.providers import (
    ContactSubmission,
    EMRMProvider,
    GenericWebhookProvider,
    IntegrationProvider,
    NewsletterSubscription,
    ProviderConfig,
    ProviderError,
    ProviderResponse,
    ProviderType,
    StandaloneProvider,
    create_provider,
)

__all__ = [
    "ContactSubmission",
    "EMRMProvider",
    "GenericWebhookProvider",
    "IntegrationProvider",
    "NewsletterSubscription",
    "ProviderConfig",
    "ProviderError",
    "ProviderResponse",
    "ProviderType",
    "StandaloneProvider",
    "create_provider",
]
