"""
Base Gateway Abstract Class for External Exchange Integrations.

Implements the Strategy Pattern for swappable endpoints with:
- Rate-limit aware retry
- Health monitoring
- Usage tracking
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Generic, Optional, TypeVar
import asyncio
import logging
import time

from src.core.enums import ProviderStatus

logger = logging.getLogger(__name__)

# Type variables for generic gateway pattern
TRequest = TypeVar("TRequest")
TResponse = TypeVar("TResponse")
TProvider = TypeVar("TProvider", bound=Enum)


class GatewayError(Exception):
    """Base exception for gateway errors."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.original_error = original_error


class ProviderRateLimitError(GatewayError):
    """Raised when a provider rate limit is exceeded."""

    pass


@dataclass
class GatewayConfig:
    """Configuration for a gateway instance."""

    primary_provider: str
    timeout_seconds: float = 30.0
    retry_attempts: int = 2  # one retry, rate limits only
    retry_delay_seconds: float = 1.0
    degraded_threshold: int = 3


@dataclass
class ProviderHealth:
    """Health status for a provider."""

    status: ProviderStatus = ProviderStatus.UNKNOWN
    last_check: Optional[datetime] = None
    consecutive_failures: int = 0
    last_error: Optional[str] = None
    avg_latency_ms: float = 0.0
    request_count: int = 0
    error_count: int = 0

    def record_success(self, latency_ms: float) -> None:
        """Record a successful request."""
        self.consecutive_failures = 0
        self.request_count += 1
        self.last_check = datetime.now(timezone.utc)
        # Update rolling average latency
        if self.request_count == 1:
            self.avg_latency_ms = latency_ms
        else:
            self.avg_latency_ms = (
                self.avg_latency_ms * 0.9 + latency_ms * 0.1
            )
        self.status = ProviderStatus.HEALTHY

    def record_failure(self, error: str, degraded_threshold: int) -> None:
        """Record a failed request."""
        self.consecutive_failures += 1
        self.error_count += 1
        self.request_count += 1
        self.last_error = error
        self.last_check = datetime.now(timezone.utc)

        if self.consecutive_failures >= degraded_threshold:
            self.status = ProviderStatus.UNHEALTHY
        else:
            self.status = ProviderStatus.DEGRADED

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "request_count": self.request_count,
            "error_count": self.error_count,
        }


class BaseGateway(ABC, Generic[TRequest, TResponse, TProvider]):
    """
    Abstract base class for exchange gateways.

    Implements:
    - Provider (endpoint) selection per request
    - Retry of rate-limited requests
    - Health monitoring
    - Usage tracking

    Unlike a fallback gateway, failures are raised to the caller; the
    workflow decides what a failed exchange means.
    """

    def __init__(self, config: GatewayConfig):
        self.config = config
        self._health: dict[str, ProviderHealth] = {}
        self._initialized = False
        self._lock = asyncio.Lock()

    @property
    @abstractmethod
    def gateway_name(self) -> str:
        """Name of this gateway for logging."""
        pass

    @abstractmethod
    async def _initialize_provider(self, provider: TProvider) -> None:
        """Initialize a specific provider."""
        pass

    @abstractmethod
    async def _execute_request(
        self, request: TRequest, provider: TProvider
    ) -> TResponse:
        """Execute a request using the specified provider."""
        pass

    @abstractmethod
    def _parse_provider(self, provider_str: str) -> TProvider:
        """Parse provider string to enum."""
        pass

    def _get_health(self, provider: str) -> ProviderHealth:
        """Get or create health status for a provider."""
        if provider not in self._health:
            self._health[provider] = ProviderHealth()
        return self._health[provider]

    async def initialize(self) -> None:
        """Initialize the gateway and its primary provider."""
        async with self._lock:
            if self._initialized:
                return

            logger.info(f"Initializing {self.gateway_name} gateway...")
            primary = self._parse_provider(self.config.primary_provider)
            await self._initialize_provider(primary)
            self._initialized = True
            logger.info(f"{self.gateway_name} gateway initialized")

    async def execute(
        self, request: TRequest, provider: Optional[TProvider] = None
    ) -> TResponse:
        """
        Execute a request against the selected provider.

        Args:
            request: Gateway request
            provider: Provider override; defaults to the configured primary

        Returns:
            Provider response

        Raises:
            GatewayError: When the request fails after retries
        """
        if not self._initialized:
            await self.initialize()

        selected = provider or self._parse_provider(self.config.primary_provider)
        health = self._get_health(selected.value)
        start_time = time.perf_counter()

        try:
            response = await self._execute_with_retry(request, selected)
        except GatewayError as e:
            health.record_failure(str(e), self.config.degraded_threshold)
            logger.error(f"{self.gateway_name}: {selected.value} request failed: {e}")
            raise

        latency = (time.perf_counter() - start_time) * 1000
        health.record_success(latency)
        logger.debug(
            f"{self.gateway_name}: {selected.value} succeeded in {latency:.1f}ms"
        )
        return response

    async def _execute_with_retry(
        self, request: TRequest, provider: TProvider
    ) -> TResponse:
        """Execute request, retrying only when the provider rate limits us."""
        last_exception: Optional[GatewayError] = None
        delay = self.config.retry_delay_seconds

        for attempt in range(self.config.retry_attempts):
            try:
                return await self._execute_request(request, provider)
            except ProviderRateLimitError as e:
                last_exception = e
                if attempt < self.config.retry_attempts - 1:
                    logger.warning(
                        f"Rate limit hit, retrying in {delay:.1f}s "
                        f"(attempt {attempt + 1}/{self.config.retry_attempts})"
                    )
                    await asyncio.sleep(delay)
                    delay *= 2

        raise last_exception or GatewayError("All retry attempts failed")

    def get_provider_status(self, provider: str) -> ProviderHealth:
        """Get current health status for a provider."""
        return self._get_health(provider)

    def get_all_status(self) -> dict[str, ProviderHealth]:
        """Get health status for all providers."""
        return self._health.copy()

    async def close(self) -> None:
        """Clean up gateway resources."""
        self._initialized = False
        logger.info(f"{self.gateway_name} gateway closed")
