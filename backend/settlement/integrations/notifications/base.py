from __future__ import annotations

from settlement.integrations.common import IntegrationResult


class NotificationProvider:
    name = "unknown"

    def order_created(self, *, sub_order_id: int) -> IntegrationResult:
        raise NotImplementedError

    def milestone_verified(self, *, milestone_id: int) -> IntegrationResult:
        raise NotImplementedError

    def refund_issued(self, *, sub_order_id: int, amount_minor: int) -> IntegrationResult:
        raise NotImplementedError

    def refund_requested(self, *, refund_request_id: int) -> IntegrationResult:
        raise NotImplementedError

    def refund_rejected(self, *, refund_request_id: int) -> IntegrationResult:
        raise NotImplementedError
