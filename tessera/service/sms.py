from __future__ import annotations

from typing import Optional

import httpx

from tessera.logging import get_logger

logger = get_logger(__name__)


def _redact_phone(phone: str) -> str:
    digits = "".join(ch for ch in phone if ch.isdigit())
    return f"***{digits[-4:]}" if len(digits) >= 4 else "redacted"


class SmsService:
    """Sends verification codes through the Twilio Messages REST endpoint.

    Without Twilio credentials the message is logged instead of sent (dev mode).
    """

    def __init__(
        self,
        *,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        api_base_url: str = "https://api.twilio.com/2010-04-01",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.api_base_url = api_base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    async def send_message(self, to_number: str, body: str) -> bool:
        if not self.is_configured:
            logger.info("sms_dev_mode", to=_redact_phone(to_number), length=len(body))
            return True

        url = f"{self.api_base_url}/Accounts/{self.account_sid}/Messages.json"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    url,
                    data={"To": to_number, "From": self.from_number, "Body": body},
                    auth=(self.account_sid, self.auth_token),
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "sms_provider_rejected",
                to=_redact_phone(to_number),
                status_code=exc.response.status_code,
            )
            return False
        except httpx.HTTPError as exc:
            logger.error(
                "sms_send_failed",
                to=_redact_phone(to_number),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("sms_sent", to=_redact_phone(to_number))
        return True

    async def send_mfa_code(self, to_number: str, code: str, *, ttl_minutes: int = 5) -> bool:
        return await self.send_message(
            to_number,
            f"Your verification code is {code}. It expires in {ttl_minutes} minutes.",
        )
