from __future__ import annotations

from dataclasses import asdict, dataclass

from settlement.errors import InvalidRequest
from settlement.utils.money import (
    bps_minor_half_up,
    divide_minor_half_up,
    money_major_to_minor,
    rate_to_bps,
)
from settlement.utils.settings import EngineSettings

PAYMENT_TYPES = ("full", "installment")


@dataclass(frozen=True)
class PriceLine:
    unit_price_minor: int
    quantity: int

    @property
    def total_minor(self) -> int:
        return int(self.unit_price_minor) * int(self.quantity)


@dataclass(frozen=True)
class Quote:
    subtotal_minor: int
    shipping_minor: int
    tax_minor: int
    installment_fee_minor: int
    total_minor: int
    monthly_payment_minor: int | None
    installment_fee_bps: int
    tax_bps: int
    payment_type: str
    installment_months: int | None

    def to_dict(self) -> dict:
        return asdict(self)


class PricingCalculator:
    """Pure price computation; rates are captured when constructed.

    The installment fee is ``subtotal * fee_rate`` charged once, whatever the
    term. The monthly payment is the total divided by the term, half-up.
    """

    def __init__(self, settings: EngineSettings):
        self.installment_fee_bps = rate_to_bps(settings.installment_fee_rate)
        self.tax_bps = rate_to_bps(settings.tax_rate)
        self.shipping_flat_minor = money_major_to_minor(settings.shipping_flat_fee)
        self.free_shipping_threshold_minor = money_major_to_minor(settings.free_shipping_threshold)
        self.installment_terms = tuple(settings.installment_terms)

    def quote(self, lines: list[PriceLine], payment_type: str = "full", installment_months: int | None = None) -> Quote:
        kind = (payment_type or "full").strip().lower()
        if kind not in PAYMENT_TYPES:
            raise InvalidRequest(f"Unsupported payment type {payment_type!r}", payment_type=payment_type)
        months = None
        if kind == "installment":
            try:
                months = int(installment_months or 0)
            except (TypeError, ValueError):
                months = 0
            if months not in self.installment_terms:
                raise InvalidRequest(
                    f"Installment term must be one of {list(self.installment_terms)}",
                    installment_months=installment_months,
                )
        for line in lines:
            if int(line.quantity) <= 0 or int(line.unit_price_minor) < 0:
                raise InvalidRequest("Line quantity must be positive and price non-negative")

        subtotal = sum(line.total_minor for line in lines)
        shipping = 0 if subtotal >= self.free_shipping_threshold_minor else self.shipping_flat_minor
        tax = bps_minor_half_up(subtotal, self.tax_bps)
        fee_bps = self.installment_fee_bps if kind == "installment" else 0
        fee = bps_minor_half_up(subtotal, fee_bps)
        total = subtotal + shipping + tax + fee
        monthly = divide_minor_half_up(total, months) if months else None
        return Quote(
            subtotal_minor=subtotal,
            shipping_minor=shipping,
            tax_minor=tax,
            installment_fee_minor=fee,
            total_minor=total,
            monthly_payment_minor=monthly,
            installment_fee_bps=fee_bps,
            tax_bps=self.tax_bps,
            payment_type=kind,
            installment_months=months,
        )
