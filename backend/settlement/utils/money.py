from __future__ import annotations

from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP

BPS_DENOMINATOR = 10000


def _clamp_minor(value: int | float | Decimal | None) -> int:
    try:
        parsed = int(value or 0)
    except Exception:
        parsed = 0
    return parsed if parsed > 0 else 0


def money_major_to_minor(amount: float | Decimal | int | str | None) -> int:
    try:
        parsed = Decimal(str(amount or 0))
    except Exception:
        parsed = Decimal("0")
    minor = (parsed * Decimal("100")).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return _clamp_minor(int(minor))


def money_minor_to_major(minor: int | float | Decimal | None) -> float:
    try:
        parsed = Decimal(int(minor or 0))
    except Exception:
        parsed = Decimal("0")
    return float((parsed / Decimal("100")).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def rate_to_bps(rate: Decimal | float | str | None) -> int:
    try:
        parsed = Decimal(str(rate or 0))
    except Exception:
        parsed = Decimal("0")
    bps = (parsed * Decimal(BPS_DENOMINATOR)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return max(0, int(bps))


def bps_to_rate(bps: int | None) -> Decimal:
    return Decimal(int(bps or 0)) / Decimal(BPS_DENOMINATOR)


def percent_to_bps(percentage: Decimal | float | int | str | None) -> int:
    """Convert a 0-100 percentage into basis points (half-up to 0.01%)."""
    try:
        parsed = Decimal(str(percentage if percentage is not None else 0))
    except Exception:
        parsed = Decimal("0")
    return int((parsed * Decimal("100")).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def bps_minor_half_up(amount_minor: int, bps: int) -> int:
    amt = Decimal(_clamp_minor(amount_minor))
    rate = Decimal(int(max(0, bps)))
    raw = (amt * rate) / Decimal(BPS_DENOMINATOR)
    return _clamp_minor(int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP)))


def bps_minor_floor(amount_minor: int, bps: int) -> int:
    amt = Decimal(_clamp_minor(amount_minor))
    rate = Decimal(int(max(0, bps)))
    raw = (amt * rate) / Decimal(BPS_DENOMINATOR)
    return _clamp_minor(int(raw.quantize(Decimal("1"), rounding=ROUND_DOWN)))


def divide_minor_half_up(amount_minor: int, parts: int) -> int:
    if int(parts or 0) <= 0:
        return _clamp_minor(amount_minor)
    raw = Decimal(_clamp_minor(amount_minor)) / Decimal(int(parts))
    return _clamp_minor(int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP)))


def allocate_by_bps(total_minor: int, weights_bps: list[int]) -> list[int]:
    """Split ``total_minor`` by basis-point weights.

    Every share is floored; the rounding remainder goes to the last share so
    the parts always add back up to the total.
    """
    total = _clamp_minor(total_minor)
    if not weights_bps:
        return []
    shares = [bps_minor_floor(total, w) for w in weights_bps]
    shares[-1] += total - sum(shares)
    return shares


def allocate_proportionally(amount_minor: int, weights_minor: list[int]) -> list[int]:
    """Split ``amount_minor`` in proportion to ``weights_minor``.

    Shares are floored and the remainder lands on the last weight.
    """
    amount = _clamp_minor(amount_minor)
    weights = [_clamp_minor(w) for w in weights_minor]
    if not weights:
        return []
    total_weight = sum(weights)
    if total_weight <= 0:
        shares = [0 for _ in weights]
        shares[-1] = amount
        return shares
    shares = [
        int((Decimal(amount) * Decimal(w) / Decimal(total_weight)).quantize(Decimal("1"), rounding=ROUND_DOWN))
        for w in weights
    ]
    shares[-1] += amount - sum(shares)
    return shares


def allocate_within_caps(amount_minor: int, caps_minor: list[int]) -> list[int]:
    """Split ``amount_minor`` in proportion to ``caps_minor`` without any
    share exceeding its cap.

    Shares are floored; the rounding remainder is handed out from the last
    slot backwards, each slot taking no more than its spare capacity.
    """
    amount = _clamp_minor(amount_minor)
    caps = [_clamp_minor(c) for c in caps_minor]
    capacity = sum(caps)
    if amount > capacity:
        raise ValueError(f"cannot place {amount} within a capacity of {capacity}")
    if not caps or amount == 0:
        return [0 for _ in caps]
    shares = [
        int((Decimal(amount) * Decimal(c) / Decimal(capacity)).quantize(Decimal("1"), rounding=ROUND_DOWN))
        for c in caps
    ]
    remainder = amount - sum(shares)
    for idx in range(len(shares) - 1, -1, -1):
        if remainder <= 0:
            break
        top_up = min(remainder, caps[idx] - shares[idx])
        shares[idx] += top_up
        remainder -= top_up
    return shares
