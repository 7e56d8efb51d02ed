"""Gateway adapter contract.

Every payment backend exposes the same three calls to the checkout
orchestrator:

- ``initiate(amount_cents, currency, metadata)`` opens a payment at the
  provider and returns its reference plus whatever the client needs to finish
  (a Stripe client secret or a redirect URL). It never touches balances.
- ``confirm(external_ref)`` asks the provider where the payment is.
- ``cancel(external_ref)`` abandons a payment that has not settled.

Provider responses are parsed into the dataclasses below at the adapter edge;
nothing past this module sees raw provider JSON.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Mapping, Optional

import httpx

from app.config import settings

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """The provider rejected or failed a call. The message is kept for support."""


class ProviderTimeout(ProviderError):
    """The provider did not answer within the HTTP timeout."""


class ConfirmStatus:
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    STILL_PENDING = "still_pending"


class CancelStatus:
    CANCELLED = "cancelled"
    ALREADY_TERMINAL = "already_terminal"


@dataclass(frozen=True)
class InitiateResult:
    external_ref: str
    client_secret: Optional[str] = None
    redirect_url: Optional[str] = None
    # Amount and currency actually requested from the provider, when converted
    provider_amount_cents: Optional[int] = None
    provider_currency: Optional[str] = None


@dataclass(frozen=True)
class ConfirmResult:
    status: str
    failure_reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == ConfirmStatus.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.status == ConfirmStatus.FAILED


class GatewayAdapter(ABC):
    """Base class for payment backends."""

    name: str = ""
    # Synchronous adapters settle inside the confirm call itself (wallet)
    synchronous: bool = False
    confirm_timeout_minutes: int = 30

    @abstractmethod
    async def initiate(self, amount_cents: int, currency: str, metadata: Mapping[str, str]) -> InitiateResult:
        ...

    @abstractmethod
    async def confirm(self, external_ref: str) -> ConfirmResult:
        ...

    @abstractmethod
    async def cancel(self, external_ref: str) -> str:
        ...

    async def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> Optional[str]:
        """Verify a provider callback and return the external ref it concerns.

        Returns ``None`` for events that do not affect a payment.
        """
        raise NotImplementedError(f"{self.name} does not accept webhooks")


class HttpGatewayAdapter(GatewayAdapter):
    """Shared plumbing for adapters that talk to a JSON HTTP API."""

    base_url: str = ""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=settings.GATEWAY_HTTP_TIMEOUT_SECONDS,
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(f"{self.name} {method} {path} timed out: {e}")
            raise ProviderTimeout(f"{self.name} timed out") from e
        except httpx.HTTPError as e:
            logger.error(f"{self.name} {method} {path} failed: {e}")
            raise ProviderError(f"{self.name} request failed: {e}") from e

        if response.status_code >= 400:
            logger.error(f"{self.name} API error: {response.status_code} - {response.text}")
            raise ProviderError(f"{self.name} API error ({response.status_code}): {response.text}")

        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(f"{self.name} returned a non-JSON response") from e
