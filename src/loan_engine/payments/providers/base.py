"""Base protocol and types for payment channel providers.

All provider adapters must implement the PaymentChannelProvider protocol.
The closed set of implementations is one per channel: push (M-Pesa STK),
pull (Airtel USSD with polling) and manual (bank transfer).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Protocol

import httpx

from loan_engine.payments.errors import ProviderError
from loan_engine.payments.model import (
    Channel,
    Provider,
    ProviderEvent,
    ProviderMetadata,
    SubmissionRequest,
)

Clock = Callable[[], datetime]


@dataclass(frozen=True)
class SubmitResult:
    """Result of submitting a payment request to a provider."""

    accepted: bool
    external_reference: str | None
    message: str = ""
    result_code: str | None = None
    metadata: ProviderMetadata | None = None


class PaymentChannelProvider(Protocol):
    """Protocol for payment channel adapters.

    Each provider has its own adapter implementing this protocol. The
    reconciliation engine only ever sees the canonical ProviderEvent.
    """

    provider: Provider
    channel: Channel
    # Smallest amount step the provider can collect
    minimum_unit: Decimal

    def supported_currencies(self) -> tuple[str, ...]:
        """Currencies this adapter can collect."""
        ...

    def expiry_timeout(self) -> timedelta | None:
        """How long an intent may stay PENDING. None means unbounded."""
        ...

    def normalize_payer_account(self, value: str) -> str:
        """Normalize a payer account (phone number, bank account).

        Raises:
            ValidationError: If the value cannot be used with this provider
        """
        ...

    def submit(self, request: SubmissionRequest) -> SubmitResult:
        """Submit a collection request to the provider.

        Makes exactly one provider round trip and never touches the database.

        Args:
            request: Detached copy of the intent being submitted

        Returns:
            SubmitResult with external reference and acceptance status.

        Raises:
            ProviderError: Provider unreachable or response unusable
        """
        ...

    def parse_callback(self, payload: Any) -> ProviderEvent | None:
        """Translate a provider-native webhook body.

        Returns None (after logging) for anything unparseable; never raises.
        """
        ...

    def poll(self, external_reference: str) -> ProviderEvent | None:
        """Query the provider for the current status of a transaction.

        Returns None if the channel has no status query.

        Raises:
            ProviderError: Provider unreachable or response unusable
        """
        ...

    def acknowledgement(self) -> dict[str, Any]:
        """Provider-native success body for webhook responses."""
        ...

    def close(self) -> None:
        """Release network resources."""
        ...


class HttpProviderMixin:
    """Shared HTTP plumbing for adapters that talk to a provider API.

    Subclasses set ``provider`` and implement ``_fetch_token`` returning
    ``(token, lifetime_seconds)``.
    """

    provider: Provider
    _client: httpx.Client
    _clock: Clock

    # Refresh tokens this long before the provider says they expire
    TOKEN_REFRESH_MARGIN = timedelta(seconds=60)

    def _init_http(self, http_client: httpx.Client | None, timeout: float) -> None:
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(timeout=timeout)
        self._token: str | None = None
        self._token_expires_at: datetime | None = None

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def _fetch_token(self) -> tuple[str, int]:
        raise NotImplementedError

    def _access_token(self) -> str:
        now = self._clock()
        if self._token and self._token_expires_at and now < self._token_expires_at:
            return self._token
        token, lifetime = self._fetch_token()
        self._token = token
        self._token_expires_at = now + timedelta(seconds=lifetime) - self.TOKEN_REFRESH_MARGIN
        return token

    def _request(self, method: str, url: str, **kwargs: Any) -> tuple[int, dict[str, Any]]:
        """Perform one HTTP call and decode the JSON body.

        Transport failures and undecodable bodies are ProviderErrors. Any JSON
        body is returned with its status so the adapter can read provider
        error codes, which some providers send with 4xx and 5xx statuses.
        """
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise ProviderError(
                f"{self.provider.value} request failed: {exc}",
                provider=self.provider.value,
            ) from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderError(
                f"{self.provider.value} returned a non-JSON body (HTTP {response.status_code})",
                provider=self.provider.value,
            ) from exc

        if not isinstance(body, dict):
            raise ProviderError(
                f"{self.provider.value} returned an unexpected body",
                provider=self.provider.value,
            )
        return response.status_code, body

    def _server_error(self, status_code: int, body: dict[str, Any]) -> ProviderError:
        detail = body.get("errorMessage") or body.get("message") or ""
        return ProviderError(
            f"{self.provider.value} returned HTTP {status_code} {detail}".rstrip(),
            provider=self.provider.value,
        )
