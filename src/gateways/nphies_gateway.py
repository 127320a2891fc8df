"""
NPHIES Exchange Gateway.

Posts FHIR message Bundles to the NPHIES `$process-message` endpoint:
- Test (OBA) and production endpoint selection
- Single retry on HTTP 429
- Endpoint health tracking
"""

import json
import logging
from typing import Any, Optional

import httpx

from src.core.config import NphiesSettings, get_nphies_settings
from src.core.enums import NphiesEndpoint
from src.gateways.base import (
    BaseGateway,
    GatewayConfig,
    GatewayError,
    ProviderRateLimitError,
)

logger = logging.getLogger(__name__)

FHIR_JSON = "application/fhir+json"
PROCESS_MESSAGE_PATH = "/$process-message"

# Raw bodies attached to errors are truncated to keep logs readable
MAX_ERROR_BODY_CHARS = 4000


class TransportError(GatewayError):
    """Network or HTTP failure talking to NPHIES."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[Any] = None,
        provider: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message, provider=provider, original_error=original_error)
        self.status_code = status_code
        self.body = body


class RateLimitedError(TransportError, ProviderRateLimitError):
    """NPHIES answered HTTP 429."""

    pass


def _decode_body(response: httpx.Response) -> Any:
    """Best-effort body for diagnostics: JSON when possible, else text."""
    try:
        return response.json()
    except ValueError:
        return response.text[:MAX_ERROR_BODY_CHARS]


class NphiesGateway(BaseGateway[dict, dict, NphiesEndpoint]):
    """
    Transport client for the NPHIES message exchange.

    Requests are FHIR Bundles (dicts); responses are the parsed response
    Bundles. Any non-2xx status, timeout, connection failure or non-object
    body raises TransportError with the raw status and body attached.
    """

    def __init__(
        self,
        settings: Optional[NphiesSettings] = None,
        config: Optional[GatewayConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        settings = settings or get_nphies_settings()

        if config is None:
            config = GatewayConfig(
                primary_provider=settings.DEFAULT_ENDPOINT.value,
                timeout_seconds=settings.TIMEOUT_SECONDS,
                retry_attempts=2,
                retry_delay_seconds=settings.RATE_LIMIT_RETRY_DELAY_SECONDS,
            )

        super().__init__(config)
        self._settings = settings
        self._http_client = http_client
        self._owns_client = http_client is None

    @property
    def gateway_name(self) -> str:
        return "NPHIES"

    def _parse_provider(self, provider_str: str) -> NphiesEndpoint:
        return NphiesEndpoint(provider_str)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": FHIR_JSON, "Accept": FHIR_JSON}
        if self._settings.ACCESS_TOKEN:
            headers["Authorization"] = f"Bearer {self._settings.ACCESS_TOKEN}"
        return headers

    async def _initialize_provider(self, provider: NphiesEndpoint) -> None:
        """Create the shared HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.config.timeout_seconds)
            self._owns_client = True
        logger.info(
            f"NPHIES gateway ready: {provider.value} -> "
            f"{self._settings.endpoint_url(provider)}"
        )

    def process_url(self, endpoint: Optional[NphiesEndpoint] = None) -> str:
        """Full `$process-message` URL for an endpoint selection."""
        return f"{self._settings.endpoint_url(endpoint)}{PROCESS_MESSAGE_PATH}"

    async def _execute_request(self, request: dict, provider: NphiesEndpoint) -> dict:
        """POST one Bundle and return the decoded response Bundle."""
        if not self._http_client:
            raise TransportError("HTTP client not initialized", provider=provider.value)

        url = self.process_url(provider)
        try:
            response = await self._http_client.post(
                url, content=json.dumps(request), headers=self._headers()
            )
        except httpx.TimeoutException as e:
            raise TransportError(
                f"NPHIES request timed out after {self.config.timeout_seconds}s",
                provider=provider.value,
                original_error=e,
            )
        except httpx.HTTPError as e:
            raise TransportError(
                f"Could not reach NPHIES at {url}: {e}",
                provider=provider.value,
                original_error=e,
            )

        if response.status_code == 429:
            raise RateLimitedError(
                "NPHIES rate limit exceeded",
                status_code=429,
                body=_decode_body(response),
                provider=provider.value,
            )

        if not response.is_success:
            raise TransportError(
                f"NPHIES returned HTTP {response.status_code}",
                status_code=response.status_code,
                body=_decode_body(response),
                provider=provider.value,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise TransportError(
                "NPHIES returned a body that is not JSON",
                status_code=response.status_code,
                body=response.text[:MAX_ERROR_BODY_CHARS],
                provider=provider.value,
                original_error=e,
            )

        if not isinstance(payload, dict):
            raise TransportError(
                "NPHIES returned JSON that is not a resource",
                status_code=response.status_code,
                body=payload,
                provider=provider.value,
            )

        return payload

    async def process_message(
        self, bundle: dict, endpoint: Optional[NphiesEndpoint] = None
    ) -> dict:
        """
        Send a message Bundle to `$process-message`.

        Args:
            bundle: FHIR Bundle of type `message`
            endpoint: test or production; defaults to NPHIES_DEFAULT_ENDPOINT

        Returns:
            The response Bundle as a dict

        Raises:
            TransportError: On any HTTP, network or decoding failure
        """
        logger.debug(f"Posting bundle {bundle.get('id')} to NPHIES")
        return await self.execute(bundle, endpoint)

    async def close(self) -> None:
        """Clean up NPHIES gateway resources."""
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None
        await super().close()


# Singleton instance
_nphies_gateway: Optional[NphiesGateway] = None


def get_nphies_gateway() -> NphiesGateway:
    """Get or create the singleton NPHIES gateway instance."""
    global _nphies_gateway
    if _nphies_gateway is None:
        _nphies_gateway = NphiesGateway()
    return _nphies_gateway


async def reset_nphies_gateway() -> None:
    """Reset the NPHIES gateway (for testing)."""
    global _nphies_gateway
    if _nphies_gateway:
        await _nphies_gateway.close()
    _nphies_gateway = None
