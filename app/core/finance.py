"""Deterministic financial calculations: unit economics and monthly projections.

Pure functions only. Same inputs always produce the same outputs.
Unbounded results (zero churn, zero gross profit) are float("inf").
"""

import math
from typing import Any

from pydantic import ValidationError

from app.core.llm import format_validation_error
from app.core.schemas_assistant import (
    FinancialInputs,
    FinancialModel,
    ProjectionRow,
    UnitEconomics,
)


def _round(value: float, decimals: int = 2) -> float:
    """Round half up (not banker's rounding)."""
    if math.isinf(value) or math.isnan(value):
        return value
    multiplier = 10**decimals
    return math.floor(value * multiplier + 0.5) / multiplier


def calc_arpu(arpu_monthly: float | None = None, acv: float | None = None) -> tuple[float, str]:
    """Monthly ARPU and a note on how it was derived."""
    if arpu_monthly and arpu_monthly > 0:
        return _round(arpu_monthly, 2), "Using provided ARPU monthly"
    if acv and acv > 0:
        return _round(acv / 12, 2), "Calculated from ACV / 12"
    return 0.0, "No valid pricing provided"


def calc_gross_margin(
    arpu_monthly: float,
    cogs_pct: float,
    variable_cost_per_user: float | None = None,
) -> float:
    """Gross margin as a 0-1 fraction, 4 dp. COGS is the larger of the two cost bases."""
    cogs = arpu_monthly * cogs_pct
    if variable_cost_per_user and variable_cost_per_user > 0:
        cogs = max(cogs, variable_cost_per_user)

    if arpu_monthly <= 0:
        return 0.0
    return _round((arpu_monthly - cogs) / arpu_monthly, 4)


def calc_cac(
    sales_marketing_spend_monthly: float,
    customers_acquired_per_month: float | None = None,
    assumed_cac: float | None = None,
) -> tuple[float, str]:
    """CAC and method ("assumed" or "derived"); 0 when no customers are acquired."""
    if assumed_cac is not None and assumed_cac >= 0:
        return _round(assumed_cac, 2), "assumed"

    customers = customers_acquired_per_month or 0
    cac = sales_marketing_spend_monthly / customers if customers > 0 else 0.0
    return _round(cac, 2), "derived"


def calc_ltv(
    arpu_monthly: float,
    gross_margin_pct: float,
    churn_rate_monthly: float,
) -> tuple[float, float]:
    """(LTV, months of customer life). Zero churn means both are infinite."""
    if churn_rate_monthly == 0:
        return math.inf, math.inf

    months_of_life = 1 / churn_rate_monthly
    ltv = arpu_monthly * gross_margin_pct / churn_rate_monthly
    return _round(ltv, 2), _round(months_of_life, 1)


def calc_payback_months(cac: float, arpu_monthly: float, gross_margin_pct: float) -> float:
    """Months of gross profit needed to recover CAC; infinite with no gross profit."""
    monthly_gross_profit = arpu_monthly * gross_margin_pct
    if monthly_gross_profit == 0:
        return math.inf
    return _round(cac / monthly_gross_profit, 1)


def build_unit_economics(inputs: FinancialInputs) -> tuple[UnitEconomics, dict[str, Any]]:
    """Unit economics plus the assumptions they were derived from."""
    arpu, arpu_notes = calc_arpu(inputs.arpu_monthly, inputs.acv)
    gross_margin_pct = calc_gross_margin(arpu, inputs.cogs_pct, inputs.variable_cost_per_user)

    customers_for_cac = (
        inputs.customers_acquired_per_month
        if inputs.customers_acquired_per_month is not None
        else inputs.new_customers_per_month
    )
    cac, cac_method = calc_cac(
        inputs.sales_marketing_spend_monthly,
        customers_for_cac,
        inputs.assumed_cac,
    )
    ltv, months_of_life = calc_ltv(arpu, gross_margin_pct, inputs.churn_rate_monthly)
    payback_months = calc_payback_months(cac, arpu, gross_margin_pct)

    ltv_cac_ratio = _round(ltv / cac, 2) if cac > 0 and not math.isinf(ltv) else None

    unit_economics = UnitEconomics(
        arpu_monthly=arpu,
        gross_margin_pct=gross_margin_pct,
        cac=cac,
        ltv=ltv,
        payback_months=payback_months,
        ltv_cac_ratio=ltv_cac_ratio,
    )

    assumptions: dict[str, Any] = {
        "arpu_monthly": arpu,
        "arpu_notes": arpu_notes,
        "cogs_pct": inputs.cogs_pct,
        "starting_customers": inputs.starting_customers,
        "new_customers_per_month": inputs.new_customers_per_month,
        "churn_rate_monthly": inputs.churn_rate_monthly,
        "expansion_pct_monthly": inputs.expansion_pct_monthly,
        "sales_marketing_spend_monthly": inputs.sales_marketing_spend_monthly,
        "cac_method": cac_method,
        "months_of_life": "Infinity" if math.isinf(months_of_life) else months_of_life,
    }
    if inputs.variable_cost_per_user:
        assumptions["variable_cost_per_user"] = inputs.variable_cost_per_user
    if inputs.acv:
        assumptions["acv"] = inputs.acv

    return unit_economics, assumptions


def build_projections(inputs: FinancialInputs, arpu: float, cac: float) -> list[ProjectionRow]:
    """Month-by-month customers, revenue, COGS and gross margin."""
    projections = []
    current_customers = float(inputs.starting_customers)

    for month in range(1, inputs.months + 1):
        churned = _round(current_customers * inputs.churn_rate_monthly, 0)
        retained = max(0.0, current_customers - churned)
        new_customers = _round(inputs.new_customers_per_month, 0)
        customers_end = max(0.0, retained + new_customers)

        revenue = customers_end * arpu
        if inputs.expansion_pct_monthly > 0 and retained > 0:
            revenue += retained * arpu * inputs.expansion_pct_monthly
        revenue = _round(revenue, 2)

        cogs = revenue * inputs.cogs_pct
        if inputs.variable_cost_per_user:
            cogs = max(cogs, customers_end * inputs.variable_cost_per_user)
        cogs = _round(cogs, 2)

        gross_margin = _round(revenue - cogs, 2)
        gross_margin_pct = _round(gross_margin / revenue, 4) if revenue > 0 else 0.0

        projections.append(
            ProjectionRow(
                month=month,
                customers_end=customers_end,
                new_customers=new_customers,
                churned_customers=churned,
                revenue=revenue,
                cogs=cogs,
                gross_margin=gross_margin,
                gross_margin_pct=gross_margin_pct,
                cac=cac,
            )
        )
        current_customers = customers_end

    return projections


def build_financial_model(inputs: FinancialInputs) -> FinancialModel:
    """
    Full model: unit economics, monthly projections and assumptions.

    Args:
        inputs: Validated financial inputs

    Returns:
        FinancialModel
    """
    unit_economics, assumptions = build_unit_economics(inputs)
    projections = build_projections(inputs, unit_economics.arpu_monthly, unit_economics.cac)
    return FinancialModel(
        unit_economics=unit_economics,
        projections=projections,
        assumptions=assumptions,
    )


def validate_financial_inputs(data: Any) -> tuple[bool, FinancialInputs | None, list[str]]:
    """Validate a raw payload. Returns (ok, inputs or None, error strings)."""
    try:
        return True, FinancialInputs.model_validate(data), []
    except ValidationError as e:
        return False, None, format_validation_error(e).split("; ")
