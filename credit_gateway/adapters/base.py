"""
Provider adapter interface.

An adapter turns a logical operation plus input into one outbound call
against an external verification provider, and turns the response into
a NormalizedResult or a typed ProviderError. Adapters are pure
translation: they never touch the ledger or the query log.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional

import httpx

from credit_gateway.core.errors import ErrorKind, ProviderError

logger = logging.getLogger(__name__)

USER_AGENT = "credit-gateway/0.1"


@dataclass(frozen=True)
class NormalizedResult:
    """Provider-agnostic lookup result."""
    summary: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Operation:
    """One lookup a provider family serves.

    build maps the caller's payload to keyword arguments for the HTTP
    request; parse maps the decoded JSON body to a NormalizedResult.
    Endpoints that only take credentials as query parameters set
    credential_in_query.
    """
    method: str
    path: str
    build: Callable[[Mapping[str, Any]], Dict[str, Any]]
    parse: Callable[[Dict[str, Any]], NormalizedResult]
    credential_in_query: bool = False


def error_for_status(status_code: int, detail: str = "") -> ProviderError:
    """Map an HTTP error status to a provider error kind."""
    if status_code in (401, 403):
        kind = ErrorKind.UNAUTHORIZED
    elif status_code == 404:
        kind = ErrorKind.NOT_FOUND
    elif status_code == 429:
        kind = ErrorKind.RATE_LIMITED
    elif status_code in (408, 504):
        kind = ErrorKind.TIMEOUT
    elif status_code in (400, 422):
        kind = ErrorKind.MALFORMED
    else:
        kind = ErrorKind.UNKNOWN
    message = f"Provider returned HTTP {status_code}"
    if detail:
        message += f": {detail[:200]}"
    return ProviderError(kind, message, status_code=status_code)


def require(payload: Mapping[str, Any], key: str) -> str:
    """Fetch a required, non-blank input field as a stripped string."""
    value = payload.get(key)
    if value is None or not str(value).strip():
        raise ProviderError(ErrorKind.MALFORMED, f"Missing required input '{key}'")
    return str(value).strip()


def digits(value: str) -> str:
    return "".join(ch for ch in value if ch.isdigit())


def section(body: Mapping[str, Any], key: str) -> Dict[str, Any]:
    """Nested object under key, or an empty dict when absent or not an object."""
    value = body.get(key)
    return value if isinstance(value, dict) else {}


class ProviderAdapter(ABC):
    """Base class for one provider family.

    Subclasses declare provider_tag, default_base_url and their
    operations table, and implement auth_headers for their credential
    format.
    """

    provider_tag: str = ""
    default_base_url: str = ""
    operations: Dict[str, Operation] = {}

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = (base_url or self.default_base_url).rstrip("/")
        self.timeout = timeout
        self._client = client
        self._client_lock = threading.Lock()

    @property
    def client(self) -> httpx.Client:
        # Adapters are shared by concurrent lookups
        with self._client_lock:
            if self._client is None:
                self._client = httpx.Client(
                    base_url=self.base_url,
                    timeout=self.timeout,
                    headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
                )
            return self._client

    def close(self) -> None:
        with self._client_lock:
            if self._client is not None:
                self._client.close()
                self._client = None

    def supports(self, operation_tag: str) -> bool:
        return operation_tag in self.operations

    def invoke(
        self, operation_tag: str, credential: str, payload: Mapping[str, Any]
    ) -> NormalizedResult:
        """Run one lookup against the provider.

        Args:
            operation_tag: Logical operation to run
            credential: Secret material of the integration
            payload: Caller input for the operation

        Returns:
            Normalized result of a successful lookup

        Raises:
            ProviderError: On any failure, tagged with its kind
        """
        operation = self.operations.get(operation_tag)
        if operation is None:
            raise ProviderError(
                ErrorKind.MALFORMED,
                f"Operation '{operation_tag}' is not supported by provider '{self.provider_tag}'",
            )
        request = operation.build(payload)
        headers = dict(request.pop("headers", {}))
        headers.update(self.auth_headers(credential, payload))
        if operation.credential_in_query:
            params = dict(request.pop("params", {}))
            params.update(self.auth_params(credential))
            request["params"] = params
        body = self.send(operation.method, operation.path, headers=headers, **request)
        try:
            return operation.parse(body)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise ProviderError(
                ErrorKind.MALFORMED, f"Unexpected response shape for {operation_tag}: {exc}"
            ) from exc

    @abstractmethod
    def auth_headers(self, credential: str, payload: Mapping[str, Any]) -> Dict[str, str]:
        """Build the request headers that carry the credential."""

    def auth_params(self, credential: str) -> Dict[str, str]:
        """Query parameters carrying the credential, for endpoints that need them."""
        return {}

    def send(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        """Issue an HTTP request and decode a JSON object body.

        Transport failures, error statuses and undecodable bodies are all
        converted to ProviderError.
        """
        try:
            response = self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise ProviderError(ErrorKind.TIMEOUT, f"Provider call timed out: {exc}")
        except httpx.RequestError as exc:
            raise ProviderError(ErrorKind.UNKNOWN, f"Provider call failed: {exc}")

        if response.is_error:
            logger.debug(
                "%s %s returned %s", method, path, response.status_code,
            )
            raise error_for_status(response.status_code, response.text)

        try:
            body = response.json()
        except ValueError:
            raise ProviderError(
                ErrorKind.MALFORMED,
                "Invalid response format: expected JSON",
                status_code=response.status_code,
            )
        if not isinstance(body, dict):
            raise ProviderError(
                ErrorKind.MALFORMED,
                "Invalid response format: expected a JSON object",
                status_code=response.status_code,
            )
        return body
