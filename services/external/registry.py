"""External registry clients (authorization lookups, document search)."""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Protocol

import httpx
from tenacity import RetryError, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from common.config import Settings, get_settings
from common.enums import ExternalSystem
import logging

logger = logging.getLogger(__name__)


class ExternalUnavailable(Exception):
    """Raised when a registry call failed after all retries."""

    def __init__(self, system: str, message: str, attempts: int = 0):
        super().__init__(message)
        self.system = system
        self.attempts = attempts


class RegistryCallError(Exception):
    """Transient failure of one registry call; retried."""

    pass


@dataclass
class RegistryResponse:
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    attempts: int = 1
    extra: Dict[str, Any] = field(default_factory=dict)


class ExternalRegistry(Protocol):
    def query(self, kind: ExternalSystem, parameters: Dict[str, Any], timeout: Optional[float] = None) -> RegistryResponse:
        ...


class HttpExternalRegistry:
    """Registry reached over HTTP, one endpoint per system.

    Transport errors and 5xx responses raise RegistryCallError so the caller can
    retry; a 404 is a clean "not found".
    """

    def __init__(self, endpoints: Dict[ExternalSystem, Optional[str]], timeout: float = 30.0, client: Optional[httpx.Client] = None):
        self.endpoints = endpoints
        self.timeout = timeout
        self._client = client

    def query(self, kind: ExternalSystem, parameters: Dict[str, Any], timeout: Optional[float] = None) -> RegistryResponse:
        url = self.endpoints.get(kind)
        if not url:
            return RegistryResponse(success=False, error=f"No endpoint configured for {kind.value}")

        client = self._client or httpx.Client()
        try:
            response = client.get(url, params=parameters, timeout=timeout or self.timeout)
        except httpx.HTTPError as e:
            raise RegistryCallError(f"{kind.value} request failed: {e}") from e
        finally:
            if self._client is None:
                client.close()

        if response.status_code == 404:
            return RegistryResponse(success=False, error="Not found")
        if response.status_code >= 500:
            raise RegistryCallError(f"{kind.value} returned {response.status_code}")
        if response.status_code >= 400:
            return RegistryResponse(success=False, error=f"{kind.value} returned {response.status_code}")
        return RegistryResponse(success=True, data=response.json())


class RetryingRegistry:
    """Wraps a registry with bounded exponential-backoff retries.

    After the last attempt ExternalUnavailable is raised; callers degrade the
    step that needed the data to a warning.
    """

    def __init__(
        self,
        registry: ExternalRegistry,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 8.0,
        timeout: float = 30.0,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.registry = registry
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self.sleep = sleep

    def query(self, kind: ExternalSystem, parameters: Dict[str, Any], timeout: Optional[float] = None) -> RegistryResponse:
        options = dict(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.initial_delay, max=self.max_delay),
            retry=retry_if_exception_type(Exception),
        )
        if self.sleep is not None:
            options["sleep"] = self.sleep

        retrying = Retrying(**options)
        try:
            response = retrying(self.registry.query, kind, parameters, timeout or self.timeout)
        except RetryError as e:
            attempts = e.last_attempt.attempt_number
            cause = e.last_attempt.exception()
            logger.warning(f"{kind.value} unavailable after {attempts} attempts: {cause}")
            raise ExternalUnavailable(kind.value, str(cause), attempts) from cause

        response.attempts = retrying.statistics.get("attempt_number", 1)
        return response


def build_registry(settings: Optional[Settings] = None) -> RetryingRegistry:
    settings = settings or get_settings()
    http = HttpExternalRegistry(
        endpoints={
            ExternalSystem.AUTHORIZATION: settings.authorization_registry_url,
            ExternalSystem.DOCUMENT_SEARCH: settings.document_search_registry_url,
        },
        timeout=settings.registry_timeout,
    )
    return RetryingRegistry(
        http,
        max_attempts=settings.registry_max_attempts,
        initial_delay=settings.registry_initial_delay,
        max_delay=settings.registry_max_delay,
        timeout=settings.registry_timeout,
    )
