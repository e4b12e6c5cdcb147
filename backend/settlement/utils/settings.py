from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from flask import current_app, has_app_context


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or "").strip() or default


def _env_int(name: str, default: int, *, minimum: int = 0, maximum: int = 10_000_000) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        value = int(default)
    else:
        try:
            value = int(raw)
        except Exception:
            value = int(default)
    if value < minimum:
        value = minimum
    if value > maximum:
        value = maximum
    return value


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _env_float(name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = (os.getenv(name) or "").strip()
    try:
        value = float(raw) if raw else float(default)
    except Exception:
        value = float(default)
    return max(minimum, value)


def _env_decimal(name: str, default: str) -> Decimal:
    raw = (os.getenv(name) or "").strip() or default
    try:
        value = Decimal(raw)
    except (InvalidOperation, ValueError):
        value = Decimal(default)
    if value < 0:
        value = Decimal(default)
    return value


def _env_terms(name: str, default: tuple[int, ...]) -> tuple[int, ...]:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    out = []
    for part in raw.split(","):
        part = part.strip()
        if part.isdigit() and int(part) > 0:
            out.append(int(part))
    return tuple(sorted(set(out))) or default


@dataclass(frozen=True)
class EngineSettings:
    env: str = "dev"
    installment_fee_rate: Decimal = Decimal("0.30")
    installment_terms: tuple[int, ...] = (6, 12, 18, 24, 36)
    tax_rate: Decimal = Decimal("0.00")
    shipping_flat_fee: Decimal = Decimal("25.00")
    free_shipping_threshold: Decimal = Decimal("100.00")
    currency: str = "USD"
    reservation_ttl_seconds: int = 15 * 60
    reservation_sweep_interval_seconds: int = 60
    milestone_due_days: int = 7
    platform_commission_bps: int = 500
    retry_max_attempts: int = 5
    retry_base_delay_seconds: float = 0.05
    retry_max_delay_seconds: float = 1.0
    retry_timeout_seconds: float = 5.0
    payment_webhook_secret: str = ""
    notifications_provider: str = "outbox"
    refund_review_required: bool = False


def load_settings() -> EngineSettings:
    return EngineSettings(
        env=_env_str("SETTLEMENT_ENV", "dev").lower(),
        installment_fee_rate=_env_decimal("INSTALLMENT_FEE_RATE", "0.30"),
        installment_terms=_env_terms("INSTALLMENT_TERMS", (6, 12, 18, 24, 36)),
        tax_rate=_env_decimal("TAX_RATE", "0.00"),
        shipping_flat_fee=_env_decimal("SHIPPING_FLAT_FEE", "25.00"),
        free_shipping_threshold=_env_decimal("FREE_SHIPPING_THRESHOLD", "100.00"),
        currency=_env_str("SETTLEMENT_CURRENCY", "USD").upper()[:3],
        reservation_ttl_seconds=_env_int("RESERVATION_TTL_SECONDS", 15 * 60, minimum=30, maximum=7 * 86400),
        reservation_sweep_interval_seconds=_env_int("RESERVATION_SWEEP_INTERVAL_SECONDS", 60, minimum=30, maximum=86400),
        milestone_due_days=_env_int("MILESTONE_DUE_DAYS", 7, minimum=1, maximum=365),
        platform_commission_bps=_env_int("PLATFORM_COMMISSION_BPS", 500, minimum=0, maximum=10000),
        retry_max_attempts=_env_int("RETRY_MAX_ATTEMPTS", 5, minimum=1, maximum=50),
        retry_base_delay_seconds=_env_float("RETRY_BASE_DELAY_SECONDS", 0.05),
        retry_max_delay_seconds=_env_float("RETRY_MAX_DELAY_SECONDS", 1.0),
        retry_timeout_seconds=_env_float("RETRY_TIMEOUT_SECONDS", 5.0, minimum=0.1),
        payment_webhook_secret=_env_str("PAYMENT_WEBHOOK_SECRET", ""),
        notifications_provider=_env_str("NOTIFICATIONS_PROVIDER", "outbox").lower(),
        refund_review_required=_env_bool("REFUND_REVIEW_REQUIRED", False),
    )


def get_settings() -> EngineSettings:
    if has_app_context():
        settings = current_app.config.get("SETTLEMENT_SETTINGS")
        if isinstance(settings, EngineSettings):
            return settings
    return load_settings()
