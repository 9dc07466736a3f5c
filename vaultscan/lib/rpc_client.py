"""
HTTP client for chain data sources with rate-limit handling and endpoint rotation.

This module provides the client used for every outbound data request:
JSON-RPC calls to chain nodes and REST calls to block explorers and the
price oracle. Rate-limit and authorization rejections (429, 401, 403) are
retried with exponential backoff, switching to the next interchangeable
endpoint before each retry. Any other failure is raised immediately.
"""

import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import requests

from .errors import NetworkError, RateLimitError
from .logger import get_logger

logger = get_logger(__name__)

# Retry configuration
DEFAULT_INITIAL_DELAY = 1.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_MAX_DELAY = 5.0  # seconds
DEFAULT_TIMEOUT = 15.0  # seconds

RATE_LIMIT_STATUS_CODES = (401, 403, 429)
RATE_LIMIT_MARKERS = ("429", "too many requests", "forbidden", "rate limit")


class EndpointPool:
    """
    Interchangeable endpoints for one data source.

    The current index and the number of rotations belong to the pool, so
    separate clients never share rotation state.
    """

    def __init__(self, urls: Sequence[str]):
        if not urls:
            raise ValueError("EndpointPool needs at least one URL")
        self.urls: List[str] = list(urls)
        self.index = 0
        self.rotations = 0

    @property
    def current(self) -> str:
        return self.urls[self.index]

    def rotate(self) -> str:
        """Advance to the next endpoint and return it."""
        self.index = (self.index + 1) % len(self.urls)
        self.rotations += 1
        return self.current


def is_rate_limit_error(error: Any) -> bool:
    """Check whether a JSON-RPC error object signals rate limiting."""
    if not isinstance(error, dict):
        return False
    if error.get("code") in RATE_LIMIT_STATUS_CODES:
        return True
    message = str(error.get("message", "")).lower()
    return any(marker in message for marker in RATE_LIMIT_MARKERS)


class RpcClient:
    """
    Data source client with automatic rate-limit retry and endpoint rotation.

    All requests go through this class, which handles:
    - Endpoint selection and rotation
    - 429/401/403 retries with capped exponential backoff
    - Request/response serialization
    - Redaction of secrets from error messages
    """

    def __init__(
        self,
        endpoints: Union[EndpointPool, Sequence[str]],
        initial_delay: float = DEFAULT_INITIAL_DELAY,
        backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        max_delay: float = DEFAULT_MAX_DELAY,
        timeout: float = DEFAULT_TIMEOUT,
        secrets: Optional[Sequence[str]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the client.

        Args:
            endpoints: EndpointPool or list of interchangeable base URLs
            initial_delay: Delay in seconds before the first retry
            backoff_multiplier: Multiplier for exponential backoff
            max_attempts: Total attempts including the first request
            max_delay: Maximum delay cap in seconds
            timeout: Per-request timeout in seconds
            secrets: Strings (API keys) to redact from error messages
            sleep: Sleep function, replaceable in tests
        """
        self.pool = endpoints if isinstance(endpoints, EndpointPool) else EndpointPool(endpoints)
        self.initial_delay = initial_delay
        self.backoff_multiplier = backoff_multiplier
        self.max_attempts = max_attempts
        self.max_delay = max_delay
        self.timeout = timeout
        self.secrets = [s for s in (secrets or []) if s]
        self.sleep = sleep
        self.session = requests.Session()
        self._request_id = 0

    def _sanitize_error_message(self, message: str) -> str:
        """Remove API keys from error messages to prevent credential leakage."""
        for secret in self.secrets:
            message = message.replace(secret, "[REDACTED]")
        return message

    def _backoff_delay(self, attempt: int) -> float:
        return min(self.initial_delay * (self.backoff_multiplier**attempt), self.max_delay)

    def _execute_with_retry(self, request_func: Callable[[str], requests.Response]) -> Any:
        """
        Execute a request against the current endpoint, retrying rate limits.

        Args:
            request_func: Callable taking the endpoint URL and returning a response

        Returns:
            The decoded JSON body of the successful response

        Raises:
            RateLimitError: When rate-limit retries are exhausted
            NetworkError: For any other failure (no retry)
        """
        for attempt in range(self.max_attempts):
            endpoint = self.pool.current
            try:
                response = request_func(endpoint)
            except requests.RequestException as e:
                sanitized_msg = self._sanitize_error_message(str(e))
                raise NetworkError(f"Request failed: {sanitized_msg}") from e

            status_code = response.status_code
            rate_limited = status_code in RATE_LIMIT_STATUS_CODES
            data: Any = None

            if not rate_limited:
                if status_code >= 400:
                    raise NetworkError(f"HTTP error: {status_code}", status_code=status_code)
                try:
                    data = response.json()
                except ValueError as e:
                    raise NetworkError("Response is not valid JSON", status_code=status_code) from e
                if isinstance(data, dict) and is_rate_limit_error(data.get("error")):
                    rate_limited = True
                    status_code = 429

            if not rate_limited:
                return data

            if attempt < self.max_attempts - 1:
                delay = self._backoff_delay(attempt)
                logger.debug("Rate limited (HTTP %d), retrying in %.1fs", status_code, delay)
                self.sleep(delay)
                self.pool.rotate()
                continue

            raise RateLimitError(
                "Rate limit exceeded and max retries reached",
                status_code=status_code,
            )

        raise NetworkError("Max retries exceeded")

    def call(self, method: str, params: Any) -> Any:
        """
        Make a JSON-RPC request.

        Args:
            method: JSON-RPC method name
            params: Method parameters

        Returns:
            The 'result' field of the response

        Raises:
            NetworkError: For transport or JSON-RPC errors
            RateLimitError: When rate-limit retries are exhausted
        """
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params,
        }

        data = self._execute_with_retry(
            lambda url: self.session.post(url, json=payload, timeout=self.timeout)
        )

        if not isinstance(data, dict):
            raise NetworkError(f"Unexpected JSON-RPC response for {method}")
        if "error" in data:
            error = data["error"] or {}
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            raise NetworkError(
                f"API error: {self._sanitize_error_message(message)}",
                status_code=error.get("code") if isinstance(error, dict) else None,
            )
        return data.get("result")

    def get(self, path: str = "", params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Make a REST GET request relative to the current endpoint.

        Args:
            path: Path appended to the endpoint URL
            params: Query parameters

        Returns:
            The decoded JSON response
        """
        return self._execute_with_retry(
            lambda url: self.session.get(f"{url}{path}", params=params, timeout=self.timeout)
        )
