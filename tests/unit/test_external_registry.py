"""Unit tests for external registry clients and retries."""

import pytest
import httpx
from common.config import Settings
from common.enums import ExternalSystem
from services.external.registry import (
    ExternalUnavailable,
    HttpExternalRegistry,
    RegistryCallError,
    RegistryResponse,
    RetryingRegistry,
    build_registry,
)


class FlakyRegistry:
    """Fails a number of times before answering."""

    def __init__(self, failures, response=None):
        self.failures = failures
        self.response = response or RegistryResponse(success=True, data={"procedure_code": "890281"})
        self.calls = 0

    def query(self, kind, parameters, timeout=None):
        self.calls += 1
        if self.calls <= self.failures:
            raise RegistryCallError("connection reset")
        return self.response


def no_sleep(seconds):
    return None


class TestRetryingRegistry:
    """Bounded exponential backoff around registry calls."""

    def test_succeeds_after_transient_failures(self):
        flaky = FlakyRegistry(failures=2)
        registry = RetryingRegistry(flaky, max_attempts=3, sleep=no_sleep)

        response = registry.query(ExternalSystem.AUTHORIZATION, {"number": "AUT-1"})

        assert response.success
        assert response.attempts == 3
        assert flaky.calls == 3

    def test_exhausted_retries_raise_unavailable(self):
        flaky = FlakyRegistry(failures=10)
        registry = RetryingRegistry(flaky, max_attempts=3, sleep=no_sleep)

        with pytest.raises(ExternalUnavailable) as exc_info:
            registry.query(ExternalSystem.AUTHORIZATION, {"number": "AUT-1"})

        assert exc_info.value.attempts == 3
        assert exc_info.value.system == "authorization"
        assert "connection reset" in str(exc_info.value)
        assert flaky.calls == 3

    def test_not_found_is_not_retried(self):
        flaky = FlakyRegistry(failures=0, response=RegistryResponse(success=False, error="Not found"))
        registry = RetryingRegistry(flaky, max_attempts=3, sleep=no_sleep)

        response = registry.query(ExternalSystem.DOCUMENT_SEARCH, {})

        assert not response.success
        assert flaky.calls == 1

    def test_build_registry_from_settings(self):
        registry = build_registry(Settings(registry_max_attempts=5))
        assert isinstance(registry, RetryingRegistry)
        assert registry.max_attempts == 5


class TestHttpExternalRegistry:
    """HTTP status handling, using httpx's mock transport."""

    def make_registry(self, handler):
        client = httpx.Client(transport=httpx.MockTransport(handler))
        return HttpExternalRegistry({ExternalSystem.AUTHORIZATION: "http://registry.test/authorizations"}, client=client)

    def test_success_returns_json(self):
        def handler(request):
            assert request.url.params["number"] == "AUT-1"
            return httpx.Response(200, json={"procedure_code": "890281", "date": "01/03/2024"})

        response = self.make_registry(handler).query(ExternalSystem.AUTHORIZATION, {"number": "AUT-1"})

        assert response.success
        assert response.data["procedure_code"] == "890281"

    def test_not_found(self):
        response = self.make_registry(lambda request: httpx.Response(404)).query(ExternalSystem.AUTHORIZATION, {})

        assert not response.success
        assert response.error == "Not found"

    def test_server_error_raises_for_retry(self):
        with pytest.raises(RegistryCallError):
            self.make_registry(lambda request: httpx.Response(503)).query(ExternalSystem.AUTHORIZATION, {})

    def test_client_error_is_plain_failure(self):
        response = self.make_registry(lambda request: httpx.Response(422)).query(ExternalSystem.AUTHORIZATION, {})
        assert not response.success

    def test_unconfigured_system(self):
        response = self.make_registry(lambda request: httpx.Response(200)).query(ExternalSystem.DOCUMENT_SEARCH, {})

        assert not response.success
        assert "No endpoint" in response.error
