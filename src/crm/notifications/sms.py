"""Twilio SMS delivery over the Twilio REST API.

Provides:
- normalize_phone_for_sms(): coerce local phone formats to E.164
- TwilioSmsClient: async sender with tenacity retry on transport errors
- SmsResult: per-message outcome (never raised, always returned)
"""

from __future__ import annotations

import re
from dataclasses import dataclass

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.crm.config import Settings

logger = structlog.get_logger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"

_NON_DIGITS = re.compile(r"\D")

_twilio_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((httpx.ConnectError, httpx.TimeoutException)),
    reraise=True,
)


def normalize_phone_for_sms(raw_phone: str | None) -> str | None:
    """Return the E.164 form of ``raw_phone`` or None if it cannot be coerced.

    Ten-digit numbers are assumed North American (+1).
    """
    if not raw_phone:
        return None
    trimmed = raw_phone.strip()
    if not trimmed:
        return None

    if trimmed.startswith("+"):
        digits = _NON_DIGITS.sub("", trimmed[1:])
        if 10 <= len(digits) <= 15:
            return f"+{digits}"
        return None

    digits = _NON_DIGITS.sub("", trimmed)
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    return None


@dataclass
class SmsResult:
    success: bool
    to: str
    normalized_to: str | None = None
    sid: str | None = None
    error: str | None = None


class TwilioSmsClient:
    """Send single SMS messages through Twilio's Messages resource.

    Args:
        account_sid: Twilio account SID.
        auth_token: Twilio auth token.
        messaging_service_sid: Preferred sender; overrides ``from_number``.
        from_number: Sender phone number used when no messaging service is set.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests).
    """

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        messaging_service_sid: str = "",
        from_number: str = "",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._messaging_service_sid = messaging_service_sid
        self._from_number = from_number
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> TwilioSmsClient:
        return cls(
            account_sid=settings.TWILIO_ACCOUNT_SID,
            auth_token=settings.TWILIO_AUTH_TOKEN,
            messaging_service_sid=settings.TWILIO_MESSAGING_SERVICE_SID,
            from_number=settings.TWILIO_FROM_NUMBER,
            timeout=settings.TWILIO_TIMEOUT,
        )

    @property
    def configured(self) -> bool:
        return bool(
            self._account_sid
            and self._auth_token
            and (self._messaging_service_sid or self._from_number)
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            auth=(self._account_sid, self._auth_token),
            headers={"Accept": "application/json"},
            timeout=self._timeout,
            transport=self._transport,
        )

    @_twilio_retry
    async def _post_message(self, form: dict[str, str]) -> httpx.Response:
        async with self._client() as client:
            return await client.post(
                f"{TWILIO_API_BASE}/Accounts/{self._account_sid}/Messages.json",
                data=form,
            )

    async def send(self, to: str, body: str) -> SmsResult:
        if not self.configured:
            return SmsResult(success=False, to=to, error="Twilio SMS is not configured")

        normalized_to = normalize_phone_for_sms(to)
        if normalized_to is None:
            return SmsResult(success=False, to=to, error="Invalid recipient phone number")

        form = {"To": normalized_to, "Body": body}
        if self._messaging_service_sid:
            form["MessagingServiceSid"] = self._messaging_service_sid
        else:
            normalized_from = normalize_phone_for_sms(self._from_number)
            if normalized_from is None:
                return SmsResult(
                    success=False,
                    to=to,
                    normalized_to=normalized_to,
                    error="Configured Twilio sender phone number is invalid",
                )
            form["From"] = normalized_from

        try:
            response = await self._post_message(form)
        except httpx.HTTPError as exc:
            logger.warning("sms.send_exception", to=normalized_to, error=str(exc))
            return SmsResult(success=False, to=to, normalized_to=normalized_to, error=str(exc))

        if response.is_success:
            payload = response.json()
            return SmsResult(
                success=True,
                to=to,
                normalized_to=normalized_to,
                sid=payload.get("sid"),
            )

        error = _twilio_error_message(response)
        logger.warning("sms.send_failed", status=response.status_code, to=normalized_to, error=error)
        return SmsResult(success=False, to=to, normalized_to=normalized_to, error=error)


def _twilio_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    message = payload.get("message") if isinstance(payload, dict) else None
    return message or f"Twilio request failed with status {response.status_code}"
