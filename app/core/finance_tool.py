"""`finance_calc` tool: deterministic finance calculations callable by the model."""

from typing import Any, Literal

from pydantic import ValidationError

from app.core.finance import build_financial_model, build_projections, build_unit_economics
from app.core.llm import format_validation_error, strict_json_schema
from app.core.logging import get_logger
from app.core.schemas_assistant import FinancialInputs

logger = get_logger(__name__)

FinanceOperation = Literal["unit_economics", "projection", "full_model"]


class FinanceCalcArgs(FinancialInputs):
    """FinancialInputs plus which calculation to run."""

    operation: FinanceOperation = "full_model"


def _parameters_schema() -> dict[str, Any]:
    schema = strict_json_schema(FinanceCalcArgs)
    # Optional inputs stay optional for the model
    schema["required"] = [
        "cogs_pct",
        "starting_customers",
        "new_customers_per_month",
        "churn_rate_monthly",
        "sales_marketing_spend_monthly",
    ]
    return schema


FINANCE_CALC_TOOL: dict[str, Any] = {
    "type": "function",
    "function": {
        "name": "finance_calc",
        "description": (
            "Deterministic financial calculations for SaaS/B2B business models. Computes unit "
            "economics (ARPU, Gross Margin, CAC, LTV, Payback) and 1-24 month revenue/customer "
            "projections with churn modeling. operation selects unit_economics, projection or "
            "full_model."
        ),
        "parameters": _parameters_schema(),
    },
}


async def finance_calc_handler(args: dict[str, Any]) -> dict[str, Any]:
    """
    Run the requested finance operation.

    Invalid arguments come back as {"error": ..., "errors": [...]} so the
    model can correct itself.
    """
    try:
        parsed = FinanceCalcArgs.model_validate(args)
    except ValidationError as e:
        return {
            "error": "Invalid financial inputs",
            "errors": format_validation_error(e).split("; "),
        }

    inputs = FinancialInputs.model_validate(parsed.model_dump(exclude={"operation"}))

    if parsed.operation == "unit_economics":
        unit_economics, assumptions = build_unit_economics(inputs)
        return {
            "unit_economics": unit_economics.model_dump(),
            "assumptions": assumptions,
        }

    if parsed.operation == "projection":
        unit_economics, _ = build_unit_economics(inputs)
        rows = build_projections(inputs, unit_economics.arpu_monthly, unit_economics.cac)
        return {"projections": [row.model_dump() for row in rows]}

    model = build_financial_model(inputs)
    logger.debug(f"finance_calc full_model over {inputs.months} months")
    return model.model_dump()


def build_finance_tool() -> tuple[dict[str, Any], Any]:
    """Tool spec and handler for chat_with_tools."""
    return FINANCE_CALC_TOOL, finance_calc_handler
