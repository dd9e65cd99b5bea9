"""
Shared plumbing for provider API clients.

Implements:
- Error classification (transient / permanent / rate limit)
- Exponential backoff for transient errors
- Circuit breaker pattern, one breaker per client instance
- Cached OAuth client-credentials tokens
"""
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Tuple

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from payout_engine.config import get_settings
from payout_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Refresh tokens this many seconds before the provider says they expire
TOKEN_EXPIRY_MARGIN_SECONDS = 60


class ProviderErrorType(Enum):
    """Classification of provider errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class ProviderError(Exception):
    """Error returned by, or raised while talking to, a provider API."""

    def __init__(
        self,
        message: str,
        provider: str,
        error_type: ProviderErrorType,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        retry_after: Optional[float] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.error_type = error_type
        self.status_code = status_code
        self.code = code
        self.retry_after = retry_after
        self.original_error = original_error

    @property
    def is_transient(self) -> bool:
        return self.error_type is not ProviderErrorType.PERMANENT


class CircuitBreaker:
    """
    Circuit breaker for provider API calls.

    Prevents cascading failures by temporarily stopping requests
    when consecutive failures exceed a threshold. Permanent (4xx) errors
    are the provider answering normally and do not count as failures.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Provider name, used for logs and metrics
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """
        Await `func` with circuit breaker protection.

        Raises:
            ProviderError: If circuit is open
        """
        if self.state == "open":
            if self.last_failure_time and time.time() - self.last_failure_time > self.timeout:
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open", provider=self.name)
            else:
                raise ProviderError(
                    f"{self.name} circuit breaker is open",
                    provider=self.name,
                    error_type=ProviderErrorType.TRANSIENT,
                    code="circuit_open",
                )

        try:
            result = await func(*args, **kwargs)
        except ProviderError as e:
            if e.error_type is ProviderErrorType.PERMANENT:
                self.on_success()
            else:
                self.on_failure()
            raise
        except Exception:
            self.on_failure()
            raise

        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed", provider=self.name)

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                provider=self.name,
                failure_count=self.failure_count,
            )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(self.name, state)


def _should_retry(error: BaseException) -> bool:
    if not isinstance(error, ProviderError):
        return False
    if error.code == "circuit_open":
        return False
    return error.error_type is not ProviderErrorType.PERMANENT


class ApiClient:
    """
    Base for httpx-backed provider clients.

    Subclasses set `provider`, build auth headers and know how to pull an
    error code out of their provider's error bodies. The httpx client can
    be injected (tests pass one with a MockTransport).
    """

    provider = "provider"
    retry_rate_limited = True

    def __init__(
        self,
        base_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        settings = get_settings()
        self.base_url = base_url.rstrip("/")
        self.http = http_client or httpx.AsyncClient(timeout=settings.provider_timeout_seconds)
        self._owns_http = http_client is None
        self.max_attempts = max_attempts or settings.provider_retry_max_attempts
        self.base_delay = settings.provider_retry_base_delay if base_delay is None else base_delay
        self.circuit_breaker = circuit_breaker or CircuitBreaker(self.provider)
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _auth_headers(self) -> Dict[str, str]:
        """Headers added to every request. Overridden by authenticated clients."""
        return {}

    def _extract_error(self, body: Any) -> Tuple[Optional[str], Optional[str]]:
        """
        Pull (code, message) out of a provider error body.

        Default understands the common `{"code", "message"}` and
        `{"error": {"code", "message"}}` shapes.
        """
        if not isinstance(body, dict):
            return None, None
        error = body.get("error")
        if isinstance(error, dict):
            return error.get("code") or error.get("type"), error.get("message")
        code = body.get("code") or body.get("name") or (error if isinstance(error, str) else None)
        message = body.get("message") or body.get("error_description")
        return code, message

    @staticmethod
    def _classify_status(status_code: int) -> ProviderErrorType:
        if status_code == 429:
            return ProviderErrorType.RATE_LIMIT
        if status_code >= 500 or status_code == 408:
            return ProviderErrorType.TRANSIENT
        return ProviderErrorType.PERMANENT

    def _error_from_response(self, response: httpx.Response) -> ProviderError:
        try:
            body = response.json()
        except ValueError:
            body = None
        code, message = self._extract_error(body)
        retry_after = None
        if "retry-after" in response.headers:
            try:
                retry_after = float(response.headers["retry-after"])
            except ValueError:
                retry_after = None
        return ProviderError(
            message or f"{self.provider} returned HTTP {response.status_code}",
            provider=self.provider,
            error_type=self._classify_status(response.status_code),
            status_code=response.status_code,
            code=code,
            retry_after=retry_after,
        )

    async def _send(
        self,
        method: str,
        path: str,
        expected: Iterable[int],
        **kwargs: Any,
    ) -> httpx.Response:
        started = time.perf_counter()
        try:
            response = await self.http.request(method, self._url(path), **kwargs)
        except httpx.HTTPError as e:
            metrics.record_provider_call(self.provider, "error", time.perf_counter() - started)
            metrics.record_provider_error(self.provider, ProviderErrorType.TRANSIENT.value)
            raise ProviderError(
                f"{self.provider} request failed: {e}",
                provider=self.provider,
                error_type=ProviderErrorType.TRANSIENT,
                original_error=e,
            ) from e

        duration = time.perf_counter() - started
        if response.status_code in expected:
            metrics.record_provider_call(self.provider, "success", duration)
            return response

        error = self._error_from_response(response)
        metrics.record_provider_call(self.provider, "error", duration)
        metrics.record_provider_error(self.provider, error.error_type.value)
        logger.warning(
            "provider_api_error",
            provider=self.provider,
            method=method,
            path=path,
            status_code=response.status_code,
            error_type=error.error_type.value,
            error_code=error.code,
            error_message=error.message,
        )
        raise error

    async def _request(
        self,
        method: str,
        path: str,
        *,
        expected: Iterable[int] = (200, 201),
        authenticated: bool = True,
        retry: bool = True,
        headers: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Send a request with retry and circuit breaker protection.

        Args:
            method: HTTP method
            path: Path relative to base_url, or an absolute URL
            expected: Status codes treated as success
            authenticated: Whether to add the client's auth headers
            retry: False for calls the provider cannot de-duplicate; one attempt only
            headers: Extra headers for this request
            **kwargs: Passed through to httpx (json, data, params, ...)

        Returns:
            httpx.Response: Successful response

        Raises:
            ProviderError: After retries are exhausted, or immediately for
                permanent errors
        """
        expected = tuple(expected)

        async def _attempt() -> httpx.Response:
            request_headers = dict(await self._auth_headers()) if authenticated else {}
            request_headers.update(headers or {})
            return await self.circuit_breaker.call(
                self._send, method, path, expected, headers=request_headers, **kwargs
            )

        def _retryable(error: BaseException) -> bool:
            if (
                isinstance(error, ProviderError)
                and error.error_type is ProviderErrorType.RATE_LIMIT
                and not self.retry_rate_limited
            ):
                return False
            return _should_retry(error)

        retrying = AsyncRetrying(
            retry=retry_if_exception(_retryable),
            stop=stop_after_attempt(self.max_attempts if retry else 1),
            wait=wait_exponential(multiplier=self.base_delay, max=16),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await _attempt()
        raise AssertionError("unreachable")  # pragma: no cover

    async def _fetch_token(self) -> Tuple[str, int]:
        """Obtain (access_token, expires_in_seconds). Overridden by OAuth clients."""
        raise NotImplementedError

    async def _bearer_token(self) -> str:
        """Return a cached access token, fetching a new one when near expiry."""
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        token, expires_in = await self._fetch_token()
        self._token = token
        self._token_expires_at = time.monotonic() + max(
            int(expires_in) - TOKEN_EXPIRY_MARGIN_SECONDS, 0
        )
        logger.debug("provider_token_refreshed", provider=self.provider, expires_in=expires_in)
        return token


@dataclass(frozen=True)
class ContentStats:
    """
    What a metrics provider told us about one post or video.

    Count fields are None when the source does not expose them (oEmbed).
    """

    post_id: Optional[str]
    source: str
    views: Optional[int] = None
    likes: Optional[int] = None
    comments: Optional[int] = None
    shares: Optional[int] = None
    title: Optional[str] = None
    author: Optional[str] = None
