from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

import httpx
import structlog

from kodi.metrics.metrics import MetricsCollector, get_metrics
from kodi.plugins.pms.services.store import Store
from kodi.plugins.sms.models.models import SendResult, SmsLog
from kodi.plugins.sms.services.providers.base import BaseProvider
from kodi.utils.exceptions import ReconciliationError

logger = structlog.get_logger(__name__)


class NotificationSender(ABC):
    @abstractmethod
    async def send(self, phone: str, message: str, kind: str = "generic", tenant_id: Optional[str] = None) -> SendResult:
        """Deliver one SMS. Implementations report failure in the result instead of raising."""


class SmsNotifier(NotificationSender):
    """Sends through an SMS provider and keeps a row per attempt in sms_logs."""

    def __init__(self, provider: BaseProvider, store: Store, metrics: Optional[MetricsCollector] = None):
        self.provider = provider
        self.store = store
        self.metrics = metrics or get_metrics()

    async def send(self, phone: str, message: str, kind: str = "generic", tenant_id: Optional[str] = None) -> SendResult:
        log = logger.bind(to=phone, kind=kind, provider=self.provider.name)

        if not phone:
            result = SendResult(success=False, error="No phone number")
        elif not getattr(self.provider, "configured", True):
            result = SendResult(success=False, error="SMS provider credentials not configured")
        else:
            if len(message) > 160:
                log.info("sms_multipart", length=len(message))
            try:
                response = await self.provider.send({"to": phone, "message": message})
                result = SendResult(success=True, message_id=self.provider.message_id(response))
            except httpx.HTTPStatusError as e:
                result = SendResult(success=False, error=f"HTTP {e.response.status_code}: {e.response.text[:200]}")
            except (httpx.HTTPError, ValueError, KeyError) as e:
                result = SendResult(success=False, error=str(e) or type(e).__name__)

        if result.success:
            log.info("sms_sent", message_id=result.message_id)
        else:
            log.warning("sms_failed", error=result.error)
        self.metrics.record_notification(kind, result.success)

        await self._log(phone, message, kind, tenant_id, result)
        return result

    async def _log(self, phone: str, message: str, kind: str, tenant_id: Optional[str], result: SendResult) -> None:
        entry = SmsLog(
            to=phone or "",
            message=message,
            kind=kind,
            status="success" if result.success else "failed",
            message_id=result.message_id,
            error=result.error,
            provider=self.provider.name,
            tenant_id=tenant_id,
            created_at=datetime.now(timezone.utc),
        )
        try:
            await self.store.log_notification(entry.model_dump(by_alias=True))
        except ReconciliationError as e:
            logger.error("sms_log_write_failed", error=e.message)
