from __future__ import annotations

from dataclasses import asdict
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

import pandas as pd

from planning.attributes import Unit
from planning.budget import Deadline
from planning.filters import FilterScope, validate_scope
from planning.merge import MergeResult, merge_records
from planning.periods import period_sort_key
from planning.rollups import rollup_table
from planning.rows import ROW_FIELDS, RowType, selector_for
from planning.store import Snapshot


DEFAULT_ROWS = (
    RowType.STATISTICAL_FORECAST,
    RowType.MANAGER_ADJUSTMENT,
    RowType.EFFECTIVE_FORECAST,
    RowType.COMMERCIAL_INPUT,
    RowType.ACTUALS,
    RowType.LAST_YEAR,
    RowType.SALES_PLAN,
)
DEFAULT_UNITS = (Unit.CASES,)


def row_table() -> List[Dict[str, Any]]:
    return [
        {
            "row": row.value,
            "label": sel.label,
            "field": sel.field,
            "editable": sel.editable,
            "time_based": sel.time_based,
        }
        for row, sel in ROW_FIELDS.items()
    ]


def series_frame(merged: MergeResult) -> pd.DataFrame:
    """Long table: one line per (customer, product, period) with every metric."""
    records = []
    for entry in merged.entries.values():
        for label, bundle in entry.periods.items():
            records.append(
                {
                    "customer_key": entry.customer_key,
                    "product_id": entry.product_id,
                    "period": label,
                    **asdict(bundle),
                }
            )
    df = pd.DataFrame(records)
    if df.empty:
        return df
    df["_order"] = df["period"].map(period_sort_key)
    return df.sort_values(["customer_key", "product_id", "_order"]).drop(columns="_order").reset_index(drop=True)


def period_totals(series: pd.DataFrame, rows: Sequence[RowType]) -> pd.DataFrame:
    """The "all customers" line: each row summed across series per period."""
    if series.empty:
        return pd.DataFrame(columns=["period"] + [r.value for r in rows])
    out = pd.DataFrame({"period": sorted(series["period"].unique(), key=period_sort_key)})
    for row in rows:
        agg = series.groupby("period")[selector_for(row).field].sum()
        out[row.value] = out["period"].map(agg).fillna(0.0)
    return out


def compute_collaboration(
    scope: FilterScope,
    snapshot: Snapshot,
    *,
    rows: Optional[Iterable[Union[RowType, str]]] = None,
    units: Optional[Iterable[Union[Unit, str]]] = None,
    deadline: Optional[Deadline] = None,
) -> Dict[str, Any]:
    validate_scope(scope)
    deadline = deadline or Deadline(operation="collaboration view")
    rows = [RowType(r) for r in (rows or DEFAULT_ROWS)]
    units = [Unit(u) for u in (units or DEFAULT_UNITS)]

    payload: Dict[str, Any] = {
        "filters": asdict(scope),
        "periods": [],
        "series": [],
        "period_totals": [],
        "rollups": [],
        "data_quality": {},
        "partial_data": None,
        "attribute_misses": 0,
    }

    merged = merge_records(snapshot.forecast_records, snapshot.override_records, scope, deadline=deadline)
    payload["data_quality"] = {
        "dropped_records": merged.dropped_records,
        "invalid_dates": merged.invalid_dates,
        "out_of_range": merged.out_of_range,
        "out_of_scope": merged.out_of_scope,
    }
    partial = merged.partial_data_error()
    if partial is not None:
        payload["partial_data"] = partial.to_dict()

    if not merged.entries:
        return payload

    series = series_frame(merged)
    payload["periods"] = merged.periods
    payload["series"] = series.to_dict(orient="records")
    payload["period_totals"] = period_totals(series, rows).to_dict(orient="records")
    deadline.check()

    resolver = snapshot.resolver()
    table = rollup_table(list(merged.entries.values()), rows, units, resolver, active_year=scope.active_year)
    payload["rollups"] = table.to_dict(orient="records")
    payload["attribute_misses"] = resolver.misses
    deadline.check()
    return payload
