"""
Rendezvous — Verification-code delivery.

The notifier is an external collaborator: it accepts a destination and a code
and reports success or failure.  It never raises for delivery problems, so the
verification gate alone decides what a failure means for the environment.

  - ``TwilioNotifier`` sends SMS through the Twilio REST API using ``httpx``.
  - ``ConsoleNotifier`` logs the code and keeps an in-memory outbox; used
    outside production so codes can be retrieved out-of-band.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

import httpx
import structlog

from app.config import Settings

logger = structlog.get_logger("rendezvous.notifier_service")


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    message_id: str | None = None
    error: str | None = None
    unconfigured: bool = False


class Notifier(Protocol):
    async def send_code(self, phone_number: str, code: str) -> DeliveryResult: ...

    async def aclose(self) -> None: ...


def _code_message(app_name: str, code: str, ttl_minutes: int) -> str:
    return (
        f"Your verification code for {app_name} is: {code}. "
        f"This code will expire in {ttl_minutes} minutes. "
        "Do not share this code with anyone."
    )


@dataclass
class ConsoleNotifier:
    """Development notifier: logs each code and remembers it."""

    outbox: list[tuple[str, str]] = field(default_factory=list)

    async def send_code(self, phone_number: str, code: str) -> DeliveryResult:
        self.outbox.append((phone_number, code))
        logger.info("sms_dev_delivery", phone_number=phone_number, dev_code=code)
        return DeliveryResult(success=True, message_id="dev-mock-id")

    def last_code_for(self, phone_number: str) -> str | None:
        for phone, code in reversed(self.outbox):
            if phone == phone_number:
                return code
        return None

    async def aclose(self) -> None:
        return None


class TwilioNotifier:
    """Send verification codes through Twilio's Messages endpoint."""

    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._account_sid = settings.TWILIO_ACCOUNT_SID
        self._auth_token = settings.TWILIO_AUTH_TOKEN
        self._from_number = settings.TWILIO_PHONE_NUMBER
        self._api_base = settings.TWILIO_API_BASE.rstrip("/")
        self._app_name = settings.SMS_APP_NAME
        self._ttl_minutes = settings.SMS_CODE_TTL_MINUTES
        self._client = client or httpx.AsyncClient(timeout=10.0)

    @property
    def configured(self) -> bool:
        return bool(self._account_sid and self._auth_token and self._from_number)

    async def send_code(self, phone_number: str, code: str) -> DeliveryResult:
        log = logger.bind(phone_number=phone_number)

        if not self.configured:
            log.error("sms_not_configured")
            return DeliveryResult(
                success=False, error="SMS service not configured", unconfigured=True
            )

        url = f"{self._api_base}/Accounts/{self._account_sid}/Messages.json"
        data = {
            "To": phone_number,
            "From": self._from_number,
            "Body": _code_message(self._app_name, code, self._ttl_minutes),
        }

        try:
            response = await self._client.post(
                url, data=data, auth=(self._account_sid, self._auth_token)
            )
        except httpx.HTTPError as exc:
            log.error("sms_transport_error", error=str(exc))
            return DeliveryResult(success=False, error=str(exc))

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {}
            log.error(
                "sms_rejected",
                status=response.status_code,
                twilio_code=body.get("code"),
            )
            return DeliveryResult(
                success=False,
                error=body.get("message") or f"HTTP {response.status_code}",
            )

        sid = response.json().get("sid")
        log.info("sms_sent", message_id=sid)
        return DeliveryResult(success=True, message_id=sid)

    async def aclose(self) -> None:
        await self._client.aclose()


def build_notifier(settings: Settings) -> Notifier:
    """Twilio in production, console delivery everywhere else."""
    if settings.is_production:
        return TwilioNotifier(settings)
    return ConsoleNotifier()
