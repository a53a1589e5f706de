from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP

DEFAULT_PLATFORM_COMMISSION_BPS = 1000


def _clamp_minor(value: int | float | Decimal | None) -> int:
    try:
        parsed = int(value or 0)
    except (TypeError, ValueError):
        parsed = 0
    return parsed if parsed > 0 else 0


def money_major_to_minor(amount: float | Decimal | int | str | None) -> int:
    try:
        parsed = Decimal(str(amount or 0))
    except (ArithmeticError, TypeError, ValueError):
        parsed = Decimal("0")
    minor = (parsed * Decimal("100")).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return _clamp_minor(int(minor))


def money_minor_to_major(minor: int | float | Decimal | None) -> float:
    try:
        parsed = Decimal(int(minor or 0))
    except (ArithmeticError, TypeError, ValueError):
        parsed = Decimal("0")
    return float((parsed / Decimal("100")).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def format_major(amount: float | Decimal | int | None) -> str:
    """Two-decimal rendering used in provider payloads and signatures."""
    return f"{Decimal(money_major_to_minor(amount)) / Decimal('100'):.2f}"


def bps_minor_half_up(amount_minor: int, bps: int) -> int:
    amt = Decimal(_clamp_minor(amount_minor))
    rate = Decimal(int(max(0, bps)))
    raw = (amt * rate) / Decimal("10000")
    return _clamp_minor(int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP)))


def split_commission_minor(amount_minor: int, commission_bps: int) -> tuple[int, int]:
    """Return (seller_minor, platform_minor) for a sale amount."""
    total = _clamp_minor(amount_minor)
    if total <= 0:
        return 0, 0
    bps = min(10000, max(0, int(commission_bps)))
    platform_minor = bps_minor_half_up(total, bps)
    return total - platform_minor, platform_minor
