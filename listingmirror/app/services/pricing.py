"""Payout/projected price arithmetic."""

from __future__ import annotations

from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal

from ..core.config import settings

BASIS_POINTS = Decimal("10000")


def commission_rate(basis_points: int | None) -> Decimal:
    """Commission as a fraction; 1400 basis points -> 0.14."""

    if basis_points is None:
        basis_points = settings.default_commission_basis_points
    return Decimal(basis_points) / BASIS_POINTS


def round_price(value: Decimal | int | float) -> int:
    """Round half up to a whole currency unit."""

    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def projected_price(payout: int, basis_points: int | None) -> int:
    """Customer-facing price the marketplace derives from a payout."""

    return round_price(Decimal(payout) * (1 + commission_rate(basis_points)))


def undercut_payout(market_lowest: Decimal | int, basis_points: int | None) -> int:
    """Largest payout whose projected price targets one unit below ``market_lowest``."""

    target = (Decimal(str(market_lowest)) - 1) / (1 + commission_rate(basis_points))
    return int(target.to_integral_value(rounding=ROUND_FLOOR))
