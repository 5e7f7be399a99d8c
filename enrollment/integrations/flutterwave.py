from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from enrollment.config import Settings, settings as default_settings
from enrollment.core.exceptions import ExternalServiceError
from enrollment.schemas.gateway import (
    FlutterwaveEnvelope,
    FlutterwaveTransaction,
    GatewayCustomer,
    HostedOrder,
    VerificationResult,
)

logger = logging.getLogger(__name__)


class FlutterwaveClient:
    """Flutterwave v3 hosted-checkout client: order creation and transaction verification."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        config = config or default_settings
        self.base_url = config.gateway_base_url
        self.secret_key = config.flw_secret_key.get_secret_value()
        self.timeout = config.gateway_timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {self.secret_key}",
                "Content-Type": "application/json",
            },
            timeout=self.timeout,
            transport=self._transport,
        )

    async def create_order(
        self,
        amount: int,
        currency: str,
        tx_ref: str,
        customer: GatewayCustomer,
        payment_options: str,
        redirect_url: str,
    ) -> HostedOrder:
        payload: Dict[str, Any] = {
            "tx_ref": tx_ref,
            "amount": amount,
            "currency": currency,
            "payment_options": payment_options,
            "redirect_url": redirect_url,
            "customer": {
                "email": customer.email,
                "name": customer.name,
                "phonenumber": customer.phone_number,
            },
        }
        headers = {"X-Idempotency-Key": tx_ref, "X-Trace-Id": str(uuid.uuid4())}
        logger.info("Creating hosted order tx_ref=%s amount=%s %s", tx_ref, amount, currency)

        body = await self._request("POST", "/payments", json=payload, headers=headers)
        envelope = self._envelope(body, "create order")
        if envelope.status != "success" or not envelope.data or not envelope.data.get("link"):
            logger.error("Flutterwave rejected order tx_ref=%s message=%s", tx_ref, envelope.message)
            raise ExternalServiceError("Payment provider rejected the order")

        provider_order_id = envelope.data.get("id")
        return HostedOrder(
            checkout_url=envelope.data["link"],
            provider_order_id=str(provider_order_id) if provider_order_id is not None else None,
        )

    async def verify(self, transaction_id: str) -> VerificationResult:
        """Server-to-server verification; the redirect's own query string is never trusted."""
        body = await self._request("GET", f"/transactions/{transaction_id}/verify")
        envelope = self._envelope(body, "verify transaction")
        if envelope.status != "success" or not envelope.data:
            logger.warning("Verification failed for transaction %s: %s", transaction_id, envelope.message)
            return VerificationResult(success=False, provider_status=envelope.status, transaction_id=transaction_id)

        try:
            transaction = FlutterwaveTransaction.model_validate(envelope.data)
        except PydanticValidationError as exc:
            logger.error("Malformed verification payload for %s: %s", transaction_id, exc)
            raise ExternalServiceError("Payment provider returned a malformed transaction") from exc

        success = transaction.status.lower() == "successful"
        logger.info(
            "Verified transaction %s status=%s amount=%s %s",
            transaction.id,
            transaction.status,
            transaction.amount,
            transaction.currency,
        )
        return VerificationResult(
            success=success,
            provider_status=transaction.status,
            amount=transaction.amount,
            currency=transaction.currency,
            tx_ref=transaction.tx_ref,
            transaction_id=transaction.id,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
                response.raise_for_status()
                return response.json()
        except httpx.TimeoutException as exc:
            logger.error("Flutterwave %s %s timed out after %ss", method, path, self.timeout)
            raise ExternalServiceError("Payment provider timed out") from exc
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Flutterwave %s %s failed status=%s body=%s",
                method,
                path,
                exc.response.status_code,
                exc.response.text[:500],
            )
            raise ExternalServiceError(f"Payment provider returned {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            logger.error("Flutterwave %s %s transport error: %s", method, path, exc)
            raise ExternalServiceError("Payment provider is unreachable") from exc
        except ValueError as exc:
            logger.error("Flutterwave %s %s returned non-JSON body", method, path)
            raise ExternalServiceError("Payment provider returned an invalid response") from exc

    @staticmethod
    def _envelope(body: Any, action: str) -> FlutterwaveEnvelope:
        try:
            return FlutterwaveEnvelope.model_validate(body)
        except PydanticValidationError as exc:
            raise ExternalServiceError(f"Payment provider returned an invalid {action} response") from exc
