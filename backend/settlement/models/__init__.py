from settlement.models.user import User
from settlement.models.product import Product
from settlement.models.inventory import (
    InventoryAlert,
    InventoryItem,
    InventoryMovement,
    InventoryReservation,
    ReservationStatus,
)
from settlement.models.order import Order, SubOrder, SubOrderLine, SubOrderTransition
from settlement.models.escrow import EscrowAccount, EscrowLedgerEntry, EscrowTransition
from settlement.models.milestone import Milestone, MilestonePayment
from settlement.models.refund_request import RefundRequest
from settlement.models.notification import Notification
from settlement.models.webhook_event import WebhookEvent
from settlement.models.idempotency_key import IdempotencyKey
from settlement.models.settlement_event import JobRun, SettlementEvent

__all__ = [
    "User",
    "Product",
    "InventoryAlert",
    "InventoryItem",
    "InventoryMovement",
    "InventoryReservation",
    "ReservationStatus",
    "Order",
    "SubOrder",
    "SubOrderLine",
    "SubOrderTransition",
    "EscrowAccount",
    "EscrowLedgerEntry",
    "EscrowTransition",
    "Milestone",
    "MilestonePayment",
    "RefundRequest",
    "Notification",
    "WebhookEvent",
    "IdempotencyKey",
    "JobRun",
    "SettlementEvent",
]
