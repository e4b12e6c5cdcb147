from __future__ import annotations

import logging

from settlement.integrations.common import IntegrationResult
from settlement.integrations.notifications.base import NotificationProvider

logger = logging.getLogger(__name__)


class DisabledNotificationProvider(NotificationProvider):
    name = "disabled"

    def _skip(self, kind: str, subject_id: int) -> IntegrationResult:
        logger.info("notification_skipped kind=%s subject=%s", kind, subject_id)
        return IntegrationResult(ok=True, code="DISABLED", message="notifications disabled")

    def order_created(self, *, sub_order_id: int) -> IntegrationResult:
        return self._skip("order_created", sub_order_id)

    def milestone_verified(self, *, milestone_id: int) -> IntegrationResult:
        return self._skip("milestone_verified", milestone_id)

    def refund_issued(self, *, sub_order_id: int, amount_minor: int) -> IntegrationResult:
        return self._skip("refund_issued", sub_order_id)

    def refund_requested(self, *, refund_request_id: int) -> IntegrationResult:
        return self._skip("refund_requested", refund_request_id)

    def refund_rejected(self, *, refund_request_id: int) -> IntegrationResult:
        return self._skip("refund_rejected", refund_request_id)
