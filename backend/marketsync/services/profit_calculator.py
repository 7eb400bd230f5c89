"""Net-profit arithmetic for a single order.

Pure functions, no I/O. All arithmetic runs on ``Decimal`` at full
precision; the breakdown is rounded to cents exactly once, when it is
returned, so batches do not accumulate rounding error.

Tax regimes:
- SIMPLES_NACIONAL: one blended rate over gross (``simples_rate``).
- LUCRO_PRESUMIDO / LUCRO_REAL: ICMS + PIS/COFINS (+ ISS when configured),
  each computed independently over gross.
A rate that is not configured contributes 0.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from marketsync.models_sqlalchemy.models import TaxRegime


Number = Union[Decimal, int, float, str]

CENT = Decimal("0.01")
ZERO = Decimal("0")
HUNDRED = Decimal("100")


def to_decimal(value: Optional[Number]) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    # str() first so floats like 0.0465 keep their literal value.
    return Decimal(str(value))


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class TaxConfig:
    regime: TaxRegime = TaxRegime.SIMPLES_NACIONAL
    simples_rate: Optional[Number] = None
    icms_rate: Optional[Number] = None
    pis_cofins_rate: Optional[Number] = None
    iss_rate: Optional[Number] = None


@dataclass
class ProfitInput:
    gross: Number
    fees: Sequence[Number] = field(default_factory=list)
    shipping_cost: Number = 0
    shipping_paid_by_buyer: Number = 0
    product_cost: Number = 0


@dataclass(frozen=True)
class ProfitBreakdown:
    gross: Decimal
    icms: Decimal
    pis_cofins: Decimal
    iss: Decimal
    simples: Decimal
    taxes: Decimal
    total_fees: Decimal
    net_shipping: Decimal
    product_cost: Decimal
    net_profit: Decimal
    profit_margin: Decimal

    def tax_components(self) -> Dict[str, str]:
        return {
            "icms": str(self.icms),
            "pis_cofins": str(self.pis_cofins),
            "iss": str(self.iss),
            "simples": str(self.simples),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {key: str(value) for key, value in asdict(self).items()}


def calculate_profit(data: ProfitInput, tax: TaxConfig) -> ProfitBreakdown:
    gross = to_decimal(data.gross)
    total_fees = sum((to_decimal(fee) for fee in data.fees), ZERO)

    icms = pis_cofins = iss = simples = ZERO
    if tax.regime == TaxRegime.SIMPLES_NACIONAL:
        simples = gross * to_decimal(tax.simples_rate)
    else:
        icms = gross * to_decimal(tax.icms_rate)
        pis_cofins = gross * to_decimal(tax.pis_cofins_rate)
        iss = gross * to_decimal(tax.iss_rate)
    taxes = icms + pis_cofins + iss + simples

    # The seller never carries a negative shipping obligation.
    net_shipping = max(ZERO, to_decimal(data.shipping_cost) - to_decimal(data.shipping_paid_by_buyer))
    product_cost = to_decimal(data.product_cost)

    net_profit = gross - total_fees - net_shipping - product_cost - taxes
    margin = ZERO if gross == 0 else net_profit / gross * HUNDRED

    return ProfitBreakdown(
        gross=round_money(gross),
        icms=round_money(icms),
        pis_cofins=round_money(pis_cofins),
        iss=round_money(iss),
        simples=round_money(simples),
        taxes=round_money(taxes),
        total_fees=round_money(total_fees),
        net_shipping=round_money(net_shipping),
        product_cost=round_money(product_cost),
        net_profit=round_money(net_profit),
        profit_margin=round_money(margin),
    )


def calculate_batch(inputs: Iterable[ProfitInput], tax: TaxConfig) -> List[ProfitBreakdown]:
    return [calculate_profit(item, tax) for item in inputs]


def aggregate(breakdowns: Iterable[ProfitBreakdown]) -> Dict[str, Decimal]:
    """Totals over a batch; average margin is revenue-weighted."""

    revenue = profit = taxes = fees = ZERO
    for b in breakdowns:
        revenue += b.gross
        profit += b.net_profit
        taxes += b.taxes
        fees += b.total_fees

    return {
        "total_revenue": round_money(revenue),
        "total_profit": round_money(profit),
        "total_taxes": round_money(taxes),
        "total_fees": round_money(fees),
        "average_margin": round_money(profit / revenue * HUNDRED) if revenue > 0 else round_money(ZERO),
    }
