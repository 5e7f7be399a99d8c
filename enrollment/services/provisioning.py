from __future__ import annotations

import logging
from typing import Optional, Protocol

import httpx

from enrollment.config import Settings, settings as default_settings
from enrollment.core.exceptions import ExternalServiceError
from enrollment.models import Account

logger = logging.getLogger(__name__)


def calculate_age_range(age: Optional[int]) -> str:
    if age is None or age < 13:
        return "under_13"
    if age < 16:
        return "13_15"
    if age < 19:
        return "16_18"
    return "19_plus"


class InitialResourceProvisioner(Protocol):
    async def provision(self, account: Account) -> Optional[str]: ...


class CareerQuizProvisioner:
    """Requests the initial career quiz for a freshly registered student."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        config = config or default_settings
        self.base_url = config.quiz_service_url
        self.api_key = config.internal_api_key.get_secret_value() if config.internal_api_key else None
        self.timeout = config.gateway_timeout_seconds
        self._transport = transport

    async def provision(self, account: Account) -> Optional[str]:
        if not self.base_url:
            logger.debug("Quiz service not configured; skipping initial quiz for %s", account.id)
            return None

        payload = {"user_id": str(account.id), "age_range": calculate_age_range(account.age)}
        headers = {"X-Internal-Key": self.api_key} if self.api_key else {}
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post("/career-quizzes", json=payload, headers=headers)
                response.raise_for_status()
                quiz_id = response.json().get("id")
        except (httpx.HTTPError, ValueError) as exc:
            raise ExternalServiceError(f"Quiz generation failed: {exc}") from exc

        return str(quiz_id) if quiz_id is not None else None
