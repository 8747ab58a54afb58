# /mya_recovery/services/whatsapp_service.py

import time
import httpx
import logging
import tenacity
from dataclasses import dataclass
from typing import Optional

from mya_recovery.config.settings import settings
from mya_recovery.config.strings import ERROR_GATEWAY_NOT_CONFIGURED, ERROR_MISSING_WHATSAPP
from mya_recovery.services.security_service import EnhancedSecurityService
from mya_recovery.utils.alerting import alerting_service
from mya_recovery.utils.circuit_breaker import CircuitBreaker, CircuitOpenError
from mya_recovery.utils.metrics import gateway_latency_histogram

logger = logging.getLogger(__name__)


@dataclass
class GatewayResult:
    """Outcome of a send; the gateway client never raises to its callers."""
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    status_code: Optional[int] = None


class WhatsAppService:
    """Client for the Evolution API WhatsApp gateway."""

    def __init__(self, api_url: Optional[str], api_key: Optional[str], instance_name: Optional[str], timeout: float = 15.0):
        self.api_url = api_url
        self.api_key = api_key
        self.instance_name = instance_name
        self.http_client = httpx.AsyncClient(timeout=timeout)
        self.circuit_breaker = CircuitBreaker("whatsapp")

    @property
    def is_configured(self) -> bool:
        return bool(self.api_url and self.api_key and self.instance_name)

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=2, min=1, max=10),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await self.circuit_breaker.call(func, *args, **kwargs)

    async def send_text(self, to_phone: Optional[str], text: str) -> GatewayResult:
        """
        Sends a plain text message through the configured Evolution instance.

        A 2xx response counts as delivered to the gateway when its body reports
        `status == "success"` or carries a `key.id`; that id is returned as the
        external message id.
        """
        if not self.is_configured:
            logger.error("whatsapp_gateway_not_configured")
            return GatewayResult(success=False, error=ERROR_GATEWAY_NOT_CONFIGURED)

        number = EnhancedSecurityService.gateway_number(to_phone)
        if not number:
            return GatewayResult(success=False, error=ERROR_MISSING_WHATSAPP)

        url = f"{self.api_url}/message/sendText/{self.instance_name}"
        headers = {"apikey": self.api_key, "Content-Type": "application/json"}
        payload = {"number": number, "text": text}

        started = time.perf_counter()
        try:
            response = await self.resilient_api_call(self.http_client.post, url, json=payload, headers=headers)
        except CircuitOpenError as e:
            return GatewayResult(success=False, error=str(e))
        except httpx.HTTPError as e:
            logger.error(f"whatsapp_send_error to {number}: {e}", exc_info=True)
            return GatewayResult(success=False, error=f"Gateway request failed: {e}")
        finally:
            gateway_latency_histogram.observe(time.perf_counter() - started)

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.is_success and isinstance(body, dict):
            message_id = (body.get("key") or {}).get("id")
            if body.get("status") == "success" or message_id:
                logger.info(f"WhatsApp recovery message sent to {number}, id: {message_id}")
                return GatewayResult(success=True, message_id=message_id, status_code=response.status_code)

        error_text = response.text or f"HTTP {response.status_code}"
        logger.error(f"whatsapp_send_failed to {number}: {response.status_code} - {error_text}")
        if response.status_code == 401:
            await alerting_service.send_critical_alert(
                "WhatsApp gateway authentication failed",
                {"instance": self.instance_name, "error": "Invalid Evolution API key"}
            )
        return GatewayResult(success=False, error=error_text, status_code=response.status_code)

    async def close(self):
        await self.http_client.aclose()


# Globally accessible instance
whatsapp_service = WhatsAppService(
    api_url=settings.evolution_api_url,
    api_key=settings.evolution_api_key,
    instance_name=settings.evolution_instance_name,
    timeout=settings.evolution_timeout_seconds,
)
