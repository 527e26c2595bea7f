"""
Deskpilot Integration Credential Resolution

Tools declare the integration keys they need (``order_api``,
``booking_api``...) and a mapping from each key to the tenant's
integration type. The resolver turns that into the credential payload
forwarded to the webhook.
"""

from __future__ import annotations

from typing import Any

from deskpilot.exceptions import IntegrationError
from deskpilot.logging import get_logger

logger = get_logger("deskpilot.integrations")


def format_integration(integration_type: str, config: dict[str, Any]) -> dict[str, Any]:
    """Flatten a stored connection config into the webhook credential shape."""
    return {
        "type": integration_type,
        "apiUrl": config.get("api_url") or config.get("apiUrl") or config.get("url"),
        "apiKey": config.get("api_key") or config.get("apiKey") or config.get("key"),
        "apiSecret": config.get("api_secret") or config.get("apiSecret") or config.get("secret"),
        "authMethod": config.get("auth_method") or config.get("authMethod") or "bearer",
        "method": config.get("method", "GET"),
        "headers": config.get("headers") or {},
        "config": config,
    }


class StaticCredentialResolver:
    """CredentialResolver over an in-memory table.

    ``integrations`` maps client id → integration type → connection config.
    """

    def __init__(self, integrations: dict[str, dict[str, dict[str, Any]]] | None = None):
        self._integrations = integrations or {}

    def register(self, client_id: str, integration_type: str, config: dict[str, Any]) -> None:
        self._integrations.setdefault(client_id, {})[integration_type] = config

    async def resolve(
        self,
        client_id: str,
        mapping: dict[str, str],
        required: list[str],
    ) -> dict[str, Any]:
        configured = self._integrations.get(client_id, {})
        credentials: dict[str, Any] = {}
        missing: list[str] = []

        for key in required:
            integration_type = mapping.get(key, key)
            config = configured.get(integration_type)
            if config is None or config.get("enabled") is False:
                missing.append(integration_type)
                continue
            formatted = format_integration(integration_type, config)
            if not formatted["apiUrl"]:
                raise IntegrationError(
                    client_id,
                    f"Integration '{integration_type}' is missing API URL configuration",
                    missing=[integration_type],
                )
            credentials[key] = formatted

        if missing:
            raise IntegrationError(
                client_id,
                f"Client does not have the required integration(s) configured: {', '.join(missing)}",
                missing=missing,
            )

        logger.debug("Resolved %d integrations", len(credentials), extra={"client_id": client_id})
        return credentials
