from decimal import Decimal

import pytest

from marketsync.models_sqlalchemy.models import TaxRegime
from marketsync.services.profit_calculator import (
    ProfitInput,
    TaxConfig,
    aggregate,
    calculate_batch,
    calculate_profit,
)


SIMPLES_6 = TaxConfig(regime=TaxRegime.SIMPLES_NACIONAL, simples_rate=0.06)
PRESUMIDO = TaxConfig(regime=TaxRegime.LUCRO_PRESUMIDO, icms_rate=0.18, pis_cofins_rate=0.0465)


def test_unified_regime_example():
    result = calculate_profit(
        ProfitInput(gross=100, fees=[10, 5], shipping_cost=10, product_cost=30),
        SIMPLES_6,
    )

    assert result.taxes == Decimal("6.00")
    assert result.simples == Decimal("6.00")
    assert result.total_fees == Decimal("15.00")
    assert result.net_shipping == Decimal("10.00")
    assert result.net_profit == Decimal("39.00")
    assert result.profit_margin == Decimal("39.00")


def test_component_regime_example():
    result = calculate_profit(
        ProfitInput(gross=1000, fees=[100], shipping_cost=50, product_cost=300),
        PRESUMIDO,
    )

    assert result.icms == Decimal("180.00")
    assert result.pis_cofins == Decimal("46.50")
    assert result.iss == Decimal("0.00")
    assert result.taxes == Decimal("226.50")
    assert result.net_profit == Decimal("323.50")


def test_component_regime_includes_service_tax_when_configured():
    tax = TaxConfig(regime=TaxRegime.LUCRO_REAL, icms_rate=0.18, pis_cofins_rate=0.0465, iss_rate=0.05)
    result = calculate_profit(ProfitInput(gross=1000), tax)

    assert result.iss == Decimal("50.00")
    assert result.taxes == Decimal("276.50")


def test_zero_gross_has_zero_margin():
    result = calculate_profit(ProfitInput(gross=0, fees=[5], shipping_cost=3), SIMPLES_6)

    assert result.profit_margin == Decimal("0.00")
    assert result.net_profit == Decimal("-8.00")


def test_loss_orders_are_representable():
    result = calculate_profit(
        ProfitInput(gross=50, fees=[20], shipping_cost=15, product_cost=30),
        SIMPLES_6,
    )

    assert result.taxes == Decimal("3.00")
    assert result.net_profit == Decimal("-18.00")
    assert result.profit_margin == Decimal("-36.00")


def test_buyer_paid_shipping_never_turns_into_income():
    result = calculate_profit(
        ProfitInput(gross=100, shipping_cost=10, shipping_paid_by_buyer=25),
        TaxConfig(regime=TaxRegime.SIMPLES_NACIONAL, simples_rate=0),
    )

    assert result.net_shipping == Decimal("0.00")
    assert result.net_profit == Decimal("100.00")


@pytest.mark.parametrize("regime", [TaxRegime.SIMPLES_NACIONAL, TaxRegime.LUCRO_PRESUMIDO, TaxRegime.LUCRO_REAL])
def test_unconfigured_rates_contribute_nothing(regime):
    result = calculate_profit(ProfitInput(gross=200, fees=[20]), TaxConfig(regime=regime))

    assert result.taxes == Decimal("0.00")
    assert result.net_profit == Decimal("180.00")


def test_rounding_happens_once_on_the_final_values():
    # Each component is 0.495; rounding them first would give 1.00 in taxes.
    tax = TaxConfig(regime=TaxRegime.LUCRO_PRESUMIDO, icms_rate="0.0033", pis_cofins_rate="0.0033")
    result = calculate_profit(ProfitInput(gross=150), tax)

    assert result.icms == Decimal("0.50")
    assert result.pis_cofins == Decimal("0.50")
    assert result.taxes == Decimal("0.99")
    assert result.net_profit == Decimal("149.01")


def test_batch_and_aggregate():
    inputs = [
        ProfitInput(gross=100, fees=[10, 5], shipping_cost=10, product_cost=30),
        ProfitInput(gross=50, fees=[20], shipping_cost=15, product_cost=30),
    ]
    results = calculate_batch(inputs, SIMPLES_6)
    totals = aggregate(results)

    assert [r.net_profit for r in results] == [Decimal("39.00"), Decimal("-18.00")]
    assert totals["total_revenue"] == Decimal("150.00")
    assert totals["total_profit"] == Decimal("21.00")
    assert totals["total_taxes"] == Decimal("9.00")
    assert totals["total_fees"] == Decimal("35.00")
    assert totals["average_margin"] == Decimal("14.00")


def test_aggregate_of_nothing_is_zero():
    totals = aggregate([])

    assert totals["total_revenue"] == Decimal("0.00")
    assert totals["average_margin"] == Decimal("0.00")


def test_breakdown_serializes_as_strings():
    result = calculate_profit(ProfitInput(gross="99.99", fees=["9.99"]), SIMPLES_6)

    data = result.to_dict()
    assert data["gross"] == "99.99"
    assert data["total_fees"] == "9.99"
    assert result.tax_components()["simples"] == "6.00"
