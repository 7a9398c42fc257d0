import logging
from http import HTTPStatus
from typing import Protocol

import httpx
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """Transient gateway failure: timeout, connection error, 5xx."""


class GatewayDeclinedError(GatewayError):
    """The provider refused the operation; retrying will not help."""


class GatewayResult(BaseModel):
    transaction_id: str


class PaymentGateway(Protocol):
    async def capture(
        self, provider_payment_id: str, amount: int, idempotency_key: str
    ) -> GatewayResult: ...

    async def refund(
        self, provider_payment_id: str, amount: int, idempotency_key: str
    ) -> GatewayResult: ...


class HttpPaymentGateway:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport

    async def capture(
        self, provider_payment_id: str, amount: int, idempotency_key: str
    ) -> GatewayResult:
        return await self._post(
            f"/payments/{provider_payment_id}/capture", amount, idempotency_key
        )

    async def refund(
        self, provider_payment_id: str, amount: int, idempotency_key: str
    ) -> GatewayResult:
        return await self._post(
            f"/payments/{provider_payment_id}/refunds", amount, idempotency_key
        )

    async def _post(self, path: str, amount: int, idempotency_key: str) -> GatewayResult:
        async with httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
        ) as client:
            try:
                resp = await client.post(
                    path,
                    json={"amount": amount},
                    headers={
                        "Authorization": f"Bearer {self._api_key}",
                        "Idempotency-Key": idempotency_key,
                    },
                )
            except httpx.HTTPError as e:
                raise GatewayError(f"Gateway request {path} failed: {e}") from e

        if resp.status_code >= HTTPStatus.INTERNAL_SERVER_ERROR:
            raise GatewayError(f"Gateway returned {resp.status_code} for {path}")
        if resp.status_code >= HTTPStatus.BAD_REQUEST:
            logger.warning(f"Gateway declined {path}: {resp.status_code} {resp.text}")
            raise GatewayDeclinedError(f"Gateway declined {path}: {resp.text}")

        return GatewayResult(transaction_id=resp.json()["id"])
