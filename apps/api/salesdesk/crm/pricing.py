"""Unit price, margin and profit figures for a quoted deal line.

Prices are VAT inclusive (12%). Margins are expressed over the pre-tax base price, and
income withholding (ISR) follows the progressive 5% / 7% schedule. Government buyers
additionally retain 15% of the VAT portion at payment time.

Every function here is free of side effects apart from a warning log for an unknown sector,
which is priced as private. Negative inputs are accepted as-is; callers validate them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum


logger = logging.getLogger("salesdesk.crm.pricing")

VAT_MULTIPLIER = 1.12
WITHHOLDING_THRESHOLD = 30000.0
WITHHOLDING_LOW_RATE = 0.05
WITHHOLDING_HIGH_BASE = 1500.0
WITHHOLDING_HIGH_RATE = 0.07
GOVERNMENT_VAT_RETENTION_RATE = 0.15
MAX_MARGIN_PERCENT = 99.0


class Sector(str, Enum):
    PRIVATE = "Private"
    GOVERNMENT = "Government"

    @classmethod
    def _missing_(cls, value: object) -> Sector | None:
        if not isinstance(value, str):
            return None
        return _SECTOR_ALIASES.get(value.strip().lower())


_SECTOR_ALIASES = {
    "private": Sector.PRIVATE,
    "privado": Sector.PRIVATE,
    "government": Sector.GOVERNMENT,
    "gobierno": Sector.GOVERNMENT,
    "publico": Sector.GOVERNMENT,
    "público": Sector.GOVERNMENT,
}


def resolve_sector(value: Sector | str | None) -> Sector:
    if isinstance(value, Sector):
        return value
    try:
        return Sector(value)
    except ValueError:
        logger.warning("sector.unmapped", extra={"sector": str(value)[:64]})
        return Sector.PRIVATE


@dataclass(frozen=True, slots=True)
class LineItem:
    label: str
    amount: float


@dataclass(frozen=True, slots=True)
class ProfitBreakdown:
    sector: Sector
    amount: float
    base_amount: float
    tax: float
    withholding: float
    tax_retention: float
    total_cost: float
    gross_profit: float
    net_profit: float
    cash_received: float
    line_items: tuple[LineItem, ...]


@dataclass(frozen=True, slots=True)
class PricedLine:
    unit_cost: float
    quantity: int
    unit_price: float
    margin_percent: float
    amount: float
    breakdown: ProfitBreakdown


def _money(value: float) -> float:
    return round(value, 2)


def normalize_quantity(quantity: int | float | None) -> int | float:
    return quantity if quantity else 1


def price_from_cost_and_margin(cost: float, margin_percent: float) -> float:
    margin = min(float(margin_percent), MAX_MARGIN_PERCENT)
    base_price = float(cost) / (1 - margin / 100)
    return base_price * VAT_MULTIPLIER


def margin_from_cost_and_price(cost: float, unit_price: float) -> float:
    base_price = float(unit_price) / VAT_MULTIPLIER
    if base_price <= 0:
        return 0.0
    return (base_price - float(cost)) / base_price * 100


def totals_from_line(unit_price: float, quantity: int | float | None) -> float:
    return float(unit_price) * normalize_quantity(quantity)


def income_withholding(base_amount: float) -> float:
    if base_amount <= WITHHOLDING_THRESHOLD:
        return base_amount * WITHHOLDING_LOW_RATE
    return WITHHOLDING_HIGH_BASE + (base_amount - WITHHOLDING_THRESHOLD) * WITHHOLDING_HIGH_RATE


def profit_breakdown(
    amount: float,
    unit_cost: float,
    quantity: int | float | None,
    sector: Sector | str,
) -> ProfitBreakdown:
    resolved_sector = resolve_sector(sector)
    amount = float(amount)
    base_amount = amount / VAT_MULTIPLIER
    tax = amount - base_amount
    withholding = income_withholding(base_amount)
    total_cost = float(unit_cost) * normalize_quantity(quantity)
    gross_profit = base_amount - total_cost
    net_profit = gross_profit - withholding

    if resolved_sector is Sector.GOVERNMENT:
        tax_retention = tax * GOVERNMENT_VAT_RETENTION_RATE
        cash_received = amount - withholding - tax_retention
        line_items = (
            LineItem("Venta Neta (Base)", _money(base_amount)),
            LineItem("Costo Total", _money(-total_cost)),
            LineItem("ISR (Retenido por Estado)", _money(-withholding)),
            LineItem("Retención IVA (15% del IVA)", _money(-tax_retention)),
            LineItem("Utilidad Neta Contable", _money(net_profit)),
        )
    else:
        tax_retention = 0.0
        cash_received = amount
        line_items = (
            LineItem("Venta Neta (Base)", _money(base_amount)),
            LineItem("Costo Total", _money(-total_cost)),
            LineItem("ISR a Pagar (5% o 7%)", _money(-withholding)),
            LineItem("Utilidad Neta", _money(net_profit)),
        )

    return ProfitBreakdown(
        sector=resolved_sector,
        amount=_money(amount),
        base_amount=_money(base_amount),
        tax=_money(tax),
        withholding=_money(withholding),
        tax_retention=_money(tax_retention),
        total_cost=_money(total_cost),
        gross_profit=_money(gross_profit),
        net_profit=_money(net_profit),
        cash_received=_money(cash_received),
        line_items=line_items,
    )


def quote_line(
    unit_cost: float,
    quantity: int | None,
    sector: Sector | str,
    *,
    margin_percent: float | None = None,
    unit_price: float | None = None,
) -> PricedLine:
    """Price a line from whichever of margin or unit price the user edited last.

    An explicit unit price wins and the margin is re-derived from it; otherwise the
    price is built from the margin, defaulting to a zero margin.
    """

    resolved_quantity = int(normalize_quantity(quantity))
    if unit_price is not None:
        resolved_price = float(unit_price)
        resolved_margin = margin_from_cost_and_price(unit_cost, resolved_price)
    else:
        resolved_margin = min(float(margin_percent or 0), MAX_MARGIN_PERCENT)
        resolved_price = price_from_cost_and_margin(unit_cost, resolved_margin)

    resolved_price = _money(resolved_price)
    amount = totals_from_line(resolved_price, resolved_quantity)
    return PricedLine(
        unit_cost=float(unit_cost),
        quantity=resolved_quantity,
        unit_price=resolved_price,
        margin_percent=_money(resolved_margin),
        amount=_money(amount),
        breakdown=profit_breakdown(amount, unit_cost, resolved_quantity, sector),
    )
