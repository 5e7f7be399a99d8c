"""External integration adapters."""
from __future__ import annotations

from typing import Protocol

from enrollment.schemas.gateway import GatewayCustomer, HostedOrder, VerificationResult

from .email import EmailService
from .flutterwave import FlutterwaveClient


class PaymentGateway(Protocol):
    async def create_order(
        self,
        amount: int,
        currency: str,
        tx_ref: str,
        customer: GatewayCustomer,
        payment_options: str,
        redirect_url: str,
    ) -> HostedOrder: ...

    async def verify(self, transaction_id: str) -> VerificationResult: ...


__all__ = [
    "EmailService",
    "FlutterwaveClient",
    "PaymentGateway",
]
