from __future__ import annotations

from dataclasses import dataclass
import logging
import time

import httpx

from cronshift.core.config import Settings, get_settings
from cronshift.services.resilience import CircuitBreaker, get_resilience_redis, retry_async
from cronshift.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

INTEGRATION_NAME = "sendgrid.mail"


@dataclass(frozen=True)
class NotificationResult:
    # Delivery outcome; callers decide whether a failure is fatal.
    sent: bool
    status_code: int | None
    message: str


def build_mail_payload(*, sender: str, recipient: str, subject: str, html: str) -> dict:
    return {
        "personalizations": [{"to": [{"email": recipient}]}],
        "from": {"email": sender},
        "subject": subject,
        "content": [{"type": "text/html", "value": html}],
    }


def _retryable(exc: Exception) -> bool:
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return False


class NotificationGateway:
    """SendGrid v3 mail client used for operator alerts."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._transport = transport
        self._breaker = breaker

    def is_configured(self) -> bool:
        return bool(self._settings.sendgrid_api_key and self._settings.sendgrid_from_email)

    async def _get_breaker(self) -> CircuitBreaker:
        if self._breaker is None:
            self._breaker = CircuitBreaker(INTEGRATION_NAME, redis=await get_resilience_redis())
        return self._breaker

    async def send_email(self, *, subject: str, html: str, to: str | None = None) -> NotificationResult:
        settings = self._settings
        if not self.is_configured():
            return NotificationResult(sent=False, status_code=None, message="SendGrid not configured")
        recipient = to or settings.notification_address()
        payload = build_mail_payload(
            sender=settings.sendgrid_from_email or "",
            recipient=recipient or "",
            subject=subject,
            html=html,
        )
        headers = {"Authorization": f"Bearer {settings.sendgrid_api_key}"}
        timeout = min(settings.notification_timeout_ms, settings.ext_call_timeout_ms) / 1000.0

        breaker: CircuitBreaker | None = None
        start = time.monotonic()
        try:
            breaker = await self._get_breaker()
            await breaker.before_call()

            async def _call() -> httpx.Response:
                async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                    response = await client.post(settings.sendgrid_api_url, json=payload, headers=headers)
                if response.status_code >= 500:
                    response.raise_for_status()
                return response

            response = await retry_async(_call, retryable=_retryable)
        except Exception as exc:  # noqa: BLE001 - delivery failures are reported as results
            if breaker is not None:
                await breaker.record_failure()
            record_external_call(
                integration=INTEGRATION_NAME,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            logger.warning("notification_send_failed subject=%s", subject, exc_info=exc)
            return NotificationResult(sent=False, status_code=None, message=str(exc))

        latency_ms = (time.monotonic() - start) * 1000.0
        if response.status_code >= 400:
            record_external_call(integration=INTEGRATION_NAME, latency_ms=latency_ms, success=False)
            logger.warning("notification_rejected status=%s", response.status_code)
            return NotificationResult(
                sent=False,
                status_code=response.status_code,
                message=f"SendGrid responded with status {response.status_code}",
            )

        await breaker.record_success()
        record_external_call(integration=INTEGRATION_NAME, latency_ms=latency_ms, success=True)
        logger.info("notification_sent recipient_set=%s status=%s", bool(recipient), response.status_code)
        return NotificationResult(sent=True, status_code=response.status_code, message="Notification sent")
