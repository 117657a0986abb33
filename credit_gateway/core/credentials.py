"""
Credential store for provider integrations.

Resolves integrations by id or provider tag. Secret material is only
returned in full on the dispatch path; display paths get redacted copies.
"""

import logging
from typing import List, Optional

from .errors import ProviderUnavailable
from credit_gateway.storage.models import IntegrationStatus, ProviderIntegration
from credit_gateway.storage.repository import GatewayRepository

logger = logging.getLogger(__name__)


class CredentialStore:
    """Read access to registered provider integrations."""

    def __init__(self, repository: GatewayRepository):
        self.repository = repository

    def lookup(self, provider_tag: str) -> ProviderIntegration:
        """Return the integration registered for a provider tag.

        Raises:
            ProviderUnavailable: If nothing is registered for the tag
        """
        integration = self.repository.find_integration_by_provider_tag(provider_tag)
        if integration is None:
            raise ProviderUnavailable(f"No integration registered for provider '{provider_tag}'")
        return integration

    def get(self, integration_id: str) -> ProviderIntegration:
        """Return an integration by id, with its credential, for dispatch.

        Raises:
            ProviderUnavailable: If the integration does not exist
        """
        integration = self.repository.get_integration(integration_id)
        if integration is None:
            raise ProviderUnavailable(f"Integration '{integration_id}' is not registered")
        return integration

    def get_for_display(self, integration_id: str) -> Optional[ProviderIntegration]:
        integration = self.repository.get_integration(integration_id)
        return integration.redacted() if integration else None

    def list_integrations(self, reveal: bool = False) -> List[ProviderIntegration]:
        integrations = self.repository.list_integrations()
        if reveal:
            return integrations
        return [integration.redacted() for integration in integrations]

    @staticmethod
    def is_usable(integration: ProviderIntegration) -> bool:
        return integration.status == IntegrationStatus.ACTIVE

    def record_usage(self, integration_id: str) -> None:
        self.repository.record_integration_usage(integration_id)
        logger.debug("Recorded usage for integration %s", integration_id)
