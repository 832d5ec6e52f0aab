from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Union

import pandas as pd

from planning import settings
from planning.attributes import AttributeResolver, Unit
from planning.merge import MergedSeriesEntry
from planning.rows import RowType, selector_for


ALL_CUSTOMERS = "all"


@dataclass(frozen=True)
class Rollup:
    ytd: float = 0.0
    ytg: float = 0.0
    total: float = 0.0

    def as_dict(self) -> dict:
        return {"ytd": self.ytd, "ytg": self.ytg, "total": self.total}


def _window_sum(entry: MergedSeriesEntry, labels: Sequence[str], field_name: str, multiplier: Optional[float]) -> float:
    raw = sum(entry.value(p, field_name) for p in labels)
    if raw == 0:
        return 0.0
    if multiplier is None:
        return float(raw)
    return float(sum(entry.value(p, field_name) * multiplier for p in labels))


def compute_rollup(
    entry: MergedSeriesEntry,
    row: Union[RowType, str],
    unit: Union[Unit, str],
    resolver: AttributeResolver,
    *,
    active_year: Optional[int] = None,
    ytg_periods: Optional[int] = None,
) -> Rollup:
    """YTD / YTG / Total of one row of one series in one unit.

    YTD covers every period of the active year, YTG the trailing periods of
    that year in chronological order. A window whose raw sum is zero rolls up
    to zero whatever the multiplier; otherwise each period is converted before
    summing. Time-based rows are never converted.
    """
    selector = selector_for(row)
    ytg_periods = settings.YTG_PERIODS if ytg_periods is None else ytg_periods
    multiplier = None if selector.time_based else resolver.multiplier_for(entry.product_id, Unit(unit))

    labels = entry.labels(active_year)
    trailing = labels[-ytg_periods:] if ytg_periods > 0 else []

    ytd = _window_sum(entry, labels, selector.field, multiplier)
    ytg = _window_sum(entry, trailing, selector.field, multiplier)
    return Rollup(ytd=ytd, ytg=ytg, total=ytd + ytg)


def aggregate_rollups(
    entries: Iterable[MergedSeriesEntry],
    row: Union[RowType, str],
    unit: Union[Unit, str],
    resolver: AttributeResolver,
    *,
    active_year: Optional[int] = None,
    ytg_periods: Optional[int] = None,
) -> Rollup:
    # Each series carries its own multiplier, so series are rolled up first and then added.
    ytd = ytg = total = 0.0
    for entry in entries:
        r = compute_rollup(entry, row, unit, resolver, active_year=active_year, ytg_periods=ytg_periods)
        ytd += r.ytd
        ytg += r.ytg
        total += r.total
    return Rollup(ytd=ytd, ytg=ytg, total=total)


def rollup_table(
    entries: Sequence[MergedSeriesEntry],
    rows: Iterable[Union[RowType, str]],
    units: Iterable[Union[Unit, str]],
    resolver: AttributeResolver,
    *,
    active_year: Optional[int] = None,
    include_aggregate: bool = True,
) -> pd.DataFrame:
    rows = [RowType(r) for r in rows]
    units = [Unit(u) for u in units]
    records: List[dict] = []
    for row in rows:
        for unit in units:
            for entry in entries:
                r = compute_rollup(entry, row, unit, resolver, active_year=active_year)
                records.append(
                    {
                        "customer_key": entry.customer_key,
                        "product_id": entry.product_id,
                        "row": row.value,
                        "unit": unit.value,
                        **r.as_dict(),
                    }
                )
            if include_aggregate and entries:
                agg = aggregate_rollups(entries, row, unit, resolver, active_year=active_year)
                records.append(
                    {
                        "customer_key": ALL_CUSTOMERS,
                        "product_id": None,
                        "row": row.value,
                        "unit": unit.value,
                        **agg.as_dict(),
                    }
                )
    return pd.DataFrame(records, columns=["customer_key", "product_id", "row", "unit", "ytd", "ytg", "total"])
