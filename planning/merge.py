"""Record merge: forecast rows + commercial overrides -> one series per (customer, product).

The merge is a pure function of its inputs. Source records are grouped by
grain ``(customer, product, location, period)`` and the grain values are
summed into the per-period bucket of their ``(customer, product)`` series.
The effective forecast is resolved on the bucket: a manager override at any
location replaces the whole bucket's forecast, so a value written at one
location by an aggregate edit is what the series shows afterwards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from planning.budget import Deadline
from planning.errors import PartialDataError
from planning.filters import FilterScope
from planning.periods import canonicalize, period_sort_key, planning_year, sort_periods
from planning.records import CommercialOverrideRecord, ForecastRecord, SeriesKey


logger = logging.getLogger(__name__)

# How many records are processed between two deadline checks.
_DEADLINE_STRIDE = 500

_BUNDLE_FIELDS = (
    "calculated_forecast",
    "manager_adjustment",
    "effective_forecast",
    "approved_commercial_input",
    "actual_value",
    "last_year",
    "sales_plan",
    "demand_planner",
    "commercial_input",
    "gap",
    "inventory_days",
)

_FLAGS = ("actual_is_estimate", "manager_present", "commercial_present")


@dataclass(frozen=True)
class MetricBundle:
    calculated_forecast: float = 0.0
    manager_adjustment: float = 0.0
    effective_forecast: float = 0.0
    approved_commercial_input: float = 0.0
    actual_value: float = 0.0
    last_year: float = 0.0
    sales_plan: float = 0.0
    demand_planner: float = 0.0
    commercial_input: float = 0.0
    gap: float = 0.0
    inventory_days: float = 0.0
    actual_is_estimate: bool = False

    def value(self, field_name: str) -> float:
        return float(getattr(self, field_name) or 0.0)


@dataclass(frozen=True)
class MergedSeriesEntry:
    customer_key: str
    product_id: str
    locations: Tuple[str, ...] = ()
    periods: Dict[str, MetricBundle] = field(default_factory=dict)

    @property
    def key(self) -> SeriesKey:
        return (self.customer_key, self.product_id)

    def labels(self, year: Optional[int] = None) -> List[str]:
        labels = sort_periods(self.periods)
        if year is None:
            return labels
        return [p for p in labels if planning_year(p) == year]

    def value(self, period: str, field_name: str) -> float:
        bundle = self.periods.get(period)
        return bundle.value(field_name) if bundle is not None else 0.0


@dataclass(frozen=True)
class MergeResult:
    entries: Dict[SeriesKey, MergedSeriesEntry]
    dropped_records: int = 0
    invalid_dates: int = 0
    out_of_range: int = 0
    out_of_scope: int = 0

    @property
    def periods(self) -> List[str]:
        labels = set()
        for entry in self.entries.values():
            labels.update(entry.periods)
        return sort_periods(labels)

    def entry(self, customer_key: str, product_id: str) -> Optional[MergedSeriesEntry]:
        return self.entries.get((customer_key, product_id))

    def partial_data_error(self) -> Optional[PartialDataError]:
        """Summary of what was left out, or None when every record was usable."""
        if not (self.dropped_records or self.invalid_dates):
            return None
        return PartialDataError(
            f"{self.dropped_records + self.invalid_dates} record(s) could not be matched and were left out",
            code="records_dropped",
            details={"dropped_records": self.dropped_records, "invalid_dates": self.invalid_dates},
        )


@dataclass
class _Counts:
    dropped_records: int = 0
    invalid_dates: int = 0
    out_of_range: int = 0
    out_of_scope: int = 0


_Grain = Tuple[str, str, Optional[str], str]


def _grain_sort_key(grain: _Grain):
    customer, product, location, label = grain
    return (customer, product, location or "", period_sort_key(label))


def _group_by_grain(records: Iterable, scope: FilterScope, counts: _Counts, deadline: Optional[Deadline]) -> Dict[_Grain, list]:
    grouped: Dict[_Grain, list] = {}
    for i, rec in enumerate(records):
        if deadline is not None and i % _DEADLINE_STRIDE == 0:
            deadline.check()
        if not rec.customer_key:
            counts.dropped_records += 1
            continue
        if not scope.matches(rec.product_id, rec.customer_key, rec.location_key):
            counts.out_of_scope += 1
            continue
        try:
            label = canonicalize(rec.postdate, scope.date_range)
        except ValueError:
            counts.invalid_dates += 1
            continue
        if label is None:
            counts.out_of_range += 1
            continue
        grouped.setdefault((rec.customer_key, rec.product_id, rec.location_key, label), []).append(rec)
    return grouped


def _sum_present(values: Sequence[Optional[float]]) -> Optional[float]:
    present = [float(v) for v in values if v is not None]
    return sum(present) if present else None


def _grain_contribution(
    forecasts: Sequence[ForecastRecord],
    overrides: Sequence[CommercialOverrideRecord],
    *,
    estimate_missing_actuals: bool,
) -> Dict[str, object]:
    forecast = _sum_present([r.forecast for r in forecasts])
    actual = _sum_present([r.actual for r in forecasts])
    manager_override = _sum_present([o.manager_override for o in overrides])
    commercial_input = _sum_present([o.commercial_input for o in overrides])
    inventory = [r.inventory_days for r in forecasts if r.inventory_days is not None]

    actual_is_estimate = False
    if actual is None and estimate_missing_actuals and forecast is not None:
        actual, actual_is_estimate = forecast, True

    return {
        "calculated_forecast": forecast or 0.0,
        "manager_adjustment": manager_override or 0.0,
        "effective_forecast": 0.0,
        "approved_commercial_input": _sum_present([r.approved_commercial_input for r in forecasts]) or 0.0,
        "actual_value": actual or 0.0,
        "last_year": _sum_present([r.forecast_last_year for r in forecasts]) or 0.0,
        "sales_plan": _sum_present([r.sales_plan for r in forecasts]) or 0.0,
        "demand_planner": _sum_present([r.demand_planner for r in forecasts]) or 0.0,
        "commercial_input": commercial_input or 0.0,
        "gap": _sum_present([o.gap for o in overrides]) or 0.0,
        # Days of inventory is a level, not a flow; locations are not added together.
        "inventory_days": max(inventory) if inventory else 0.0,
        "actual_is_estimate": actual_is_estimate,
        "manager_present": manager_override is not None,
        "commercial_present": commercial_input is not None,
    }


def _fold(bucket: Dict[str, object], part: Dict[str, object]) -> None:
    for name in _BUNDLE_FIELDS:
        if name == "inventory_days":
            bucket[name] = max(bucket[name], part[name])
        else:
            bucket[name] += part[name]
    for flag in _FLAGS:
        bucket[flag] = bool(bucket[flag] or part[flag])


def _bundle(bucket: Dict[str, object]) -> MetricBundle:
    # Precedence over the whole (customer, product, period) bucket.
    if bucket["manager_present"]:
        effective = bucket["manager_adjustment"]
    elif bucket["commercial_present"]:
        effective = bucket["commercial_input"]
    else:
        effective = bucket["calculated_forecast"]
    values = {name: bucket[name] for name in _BUNDLE_FIELDS}
    values["effective_forecast"] = effective
    return MetricBundle(actual_is_estimate=bool(bucket["actual_is_estimate"]), **values)


def merge_records(
    forecast_records: Iterable[ForecastRecord],
    override_records: Iterable[CommercialOverrideRecord],
    scope: Optional[FilterScope] = None,
    *,
    deadline: Optional[Deadline] = None,
) -> MergeResult:
    scope = scope or FilterScope()
    counts = _Counts()
    forecasts_by_grain = _group_by_grain(forecast_records, scope, counts, deadline)
    overrides_by_grain = _group_by_grain(override_records, scope, counts, deadline)

    buckets: Dict[SeriesKey, Dict[str, Dict[str, object]]] = {}
    locations: Dict[SeriesKey, set] = {}
    for i, grain in enumerate(sorted(set(forecasts_by_grain) | set(overrides_by_grain), key=_grain_sort_key)):
        if deadline is not None and i % _DEADLINE_STRIDE == 0:
            deadline.check()
        customer, product, location, label = grain
        part = _grain_contribution(
            forecasts_by_grain.get(grain, ()),
            overrides_by_grain.get(grain, ()),
            estimate_missing_actuals=scope.estimate_missing_actuals,
        )
        series = buckets.setdefault((customer, product), {})
        if label not in series:
            series[label] = {name: 0.0 for name in _BUNDLE_FIELDS}
            series[label].update({flag: False for flag in _FLAGS})
        _fold(series[label], part)
        if location:
            locations.setdefault((customer, product), set()).add(location)

    entries: Dict[SeriesKey, MergedSeriesEntry] = {}
    for key in sorted(buckets):
        series = buckets[key]
        entries[key] = MergedSeriesEntry(
            customer_key=key[0],
            product_id=key[1],
            locations=tuple(sorted(locations.get(key, ()))),
            periods={label: _bundle(series[label]) for label in sort_periods(series)},
        )

    if counts.dropped_records or counts.invalid_dates:
        logger.warning(
            "Merge left out %s record(s) without a customer key and %s with an unreadable date",
            counts.dropped_records,
            counts.invalid_dates,
        )

    return MergeResult(
        entries=entries,
        dropped_records=counts.dropped_records,
        invalid_dates=counts.invalid_dates,
        out_of_range=counts.out_of_range,
        out_of_scope=counts.out_of_scope,
    )
