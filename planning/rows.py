"""Row table shared by the rollup (display) path and the distribution (write) path."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Union

from planning.errors import ValidationError


# Day counts are never converted to volume/value.
TIME_BASED_FIELDS = frozenset({"inventory_days"})

OVERRIDE_TARGET = "override"
FORECAST_TARGET = "forecast"


class RowType(str, Enum):
    STATISTICAL_FORECAST = "statistical_forecast"
    MANAGER_ADJUSTMENT = "manager_adjustment"
    EFFECTIVE_FORECAST = "effective_forecast"
    APPROVED_COMMERCIAL_INPUT = "approved_commercial_input"
    COMMERCIAL_INPUT = "commercial_input"
    ACTUALS = "actuals"
    LAST_YEAR = "last_year"
    SALES_PLAN = "sales_plan"
    DEMAND_PLANNER = "demand_planner"
    GAP = "gap"
    INVENTORY_DAYS = "inventory_days"


@dataclass(frozen=True)
class FieldSelector:
    field: str
    label: str
    write_field: Optional[str] = None
    write_target: Optional[str] = None

    @property
    def editable(self) -> bool:
        return self.write_field is not None

    @property
    def time_based(self) -> bool:
        return self.field in TIME_BASED_FIELDS


ROW_FIELDS: Dict[RowType, FieldSelector] = {
    RowType.STATISTICAL_FORECAST: FieldSelector("calculated_forecast", "Statistical forecast"),
    RowType.MANAGER_ADJUSTMENT: FieldSelector(
        "manager_adjustment", "Manager adjustment", write_field="manager_override", write_target=OVERRIDE_TARGET
    ),
    RowType.EFFECTIVE_FORECAST: FieldSelector("effective_forecast", "Effective forecast"),
    RowType.APPROVED_COMMERCIAL_INPUT: FieldSelector("approved_commercial_input", "Approved commercial input"),
    RowType.COMMERCIAL_INPUT: FieldSelector(
        "commercial_input", "Commercial input", write_field="commercial_input", write_target=OVERRIDE_TARGET
    ),
    RowType.ACTUALS: FieldSelector("actual_value", "Actuals"),
    RowType.LAST_YEAR: FieldSelector("last_year", "Last year"),
    RowType.SALES_PLAN: FieldSelector("sales_plan", "Sales plan"),
    RowType.DEMAND_PLANNER: FieldSelector(
        "demand_planner", "Demand planner", write_field="demand_planner", write_target=FORECAST_TARGET
    ),
    RowType.GAP: FieldSelector("gap", "Gap"),
    RowType.INVENTORY_DAYS: FieldSelector("inventory_days", "Days of inventory"),
}


def selector_for(row: Union[RowType, str]) -> FieldSelector:
    try:
        return ROW_FIELDS[RowType(row)]
    except ValueError:
        raise ValidationError(f"Unknown row type: {row!r}", code="unknown_row", details={"row": str(row)})


def editable_rows() -> List[RowType]:
    return [row for row, sel in ROW_FIELDS.items() if sel.editable]
