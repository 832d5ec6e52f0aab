from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Tuple, Union

import pandas as pd

from planning.periods import to_date


SeriesKey = Tuple[str, str]  # (customer_key, product_id)
GrainKey = Tuple[str, str, str]  # (customer_key, product_id, location_key)


@dataclass(frozen=True)
class ForecastRecord:
    product_id: str
    customer_key: Optional[str]
    location_key: Optional[str]
    postdate: Union[date, str]
    forecast: Optional[float] = None
    actual: Optional[float] = None
    sales_plan: Optional[float] = None
    demand_planner: Optional[float] = None
    forecast_last_year: Optional[float] = None
    approved_commercial_input: Optional[float] = None
    upper_bound: Optional[float] = None
    lower_bound: Optional[float] = None
    fitted_history: Optional[float] = None
    inventory_days: Optional[float] = None
    version: int = 0


@dataclass(frozen=True)
class CommercialOverrideRecord:
    product_id: str
    customer_key: Optional[str]
    location_key: Optional[str]
    postdate: Union[date, str]
    manager_override: Optional[float] = None
    commercial_input: Optional[float] = None
    gap: Optional[float] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    version: int = 0


@dataclass(frozen=True)
class ProductAttributes:
    product_id: str
    unit_a_multiplier: float = 0.0
    unit_b_multiplier: float = 0.0
    unit_c_native: bool = True


# Source column aliases -> record field names.
FORECAST_COLUMNS = {
    "customer_node_id": "customer_key",
    "customer_id": "customer_key",
    "location_node_id": "location_key",
    "location_id": "location_key",
    "forecast_ly": "forecast_last_year",
    "approved_sm_kam": "approved_commercial_input",
    "ddi_totales": "inventory_days",
    "date": "postdate",
}

OVERRIDE_COLUMNS = {
    "customer_node_id": "customer_key",
    "customer_id": "customer_key",
    "location_node_id": "location_key",
    "location_id": "location_key",
    "sm_kam_override": "manager_override",
    "kam_forecast_correction": "manager_override",
    "commercial_reviewed_by": "reviewed_by",
    "commercial_reviewed_at": "reviewed_at",
    "date": "postdate",
}

ATTRIBUTE_COLUMNS = {
    "attr_1": "unit_a_multiplier",
    "attr_2": "unit_b_multiplier",
}

KEY_COLUMNS = ["product_id", "customer_key", "location_key"]


def normalize_key(value: object) -> Optional[str]:
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return None
    s = str(value).strip()
    if not s or s.lower() in {"nan", "none", "null", "<na>", "na", "n/a"}:
        return None
    return s


def numericize(df: pd.DataFrame, cols: Iterable[str]) -> pd.DataFrame:
    for col in cols:
        if col in df.columns:
            df[col] = pd.to_numeric(df[col], errors="coerce")
    return df


def _rename_columns(df: pd.DataFrame, mapping: Dict[str, str]) -> pd.DataFrame:
    # First alias wins when a frame carries both e.g. customer_node_id and customer_id.
    renamed = df.copy()
    for source, target in mapping.items():
        if source in renamed.columns:
            if target in renamed.columns:
                renamed[target] = renamed[target].where(renamed[target].notna(), renamed[source])
                renamed = renamed.drop(columns=[source])
            else:
                renamed = renamed.rename(columns={source: target})
    return renamed


def _optional_float(value: object) -> Optional[float]:
    if value is None or pd.isna(value):
        return None
    return float(value)


def _as_date(value: object):
    # Unparseable dates are kept as-is so the merge can count them.
    parsed = to_date(value)
    return value if parsed is None else parsed


def _as_bool(value: object, *, default: bool) -> bool:
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return default
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "y"}
    return bool(value)


def _frame_rows(df: pd.DataFrame, record_cls, mapping: Dict[str, str]) -> List[dict]:
    if df is None or df.empty:
        return []
    frame = _rename_columns(df, mapping)
    names = {f.name for f in fields(record_cls)}
    for col in KEY_COLUMNS:
        if col not in frame.columns:
            frame[col] = None
    numeric = [
        f.name
        for f in fields(record_cls)
        if f.name not in KEY_COLUMNS and f.name not in {"postdate", "version", "reviewed_by", "reviewed_at"}
    ]
    frame = numericize(frame, numeric)
    keep = [c for c in frame.columns if c in names]
    return frame[keep].to_dict(orient="records")


def forecast_records_from_frame(df: pd.DataFrame) -> List[ForecastRecord]:
    records: List[ForecastRecord] = []
    for row in _frame_rows(df, ForecastRecord, FORECAST_COLUMNS):
        records.append(
            ForecastRecord(
                product_id=normalize_key(row.get("product_id")) or "",
                customer_key=normalize_key(row.get("customer_key")),
                location_key=normalize_key(row.get("location_key")),
                postdate=_as_date(row.get("postdate")),
                forecast=_optional_float(row.get("forecast")),
                actual=_optional_float(row.get("actual")),
                sales_plan=_optional_float(row.get("sales_plan")),
                demand_planner=_optional_float(row.get("demand_planner")),
                forecast_last_year=_optional_float(row.get("forecast_last_year")),
                approved_commercial_input=_optional_float(row.get("approved_commercial_input")),
                upper_bound=_optional_float(row.get("upper_bound")),
                lower_bound=_optional_float(row.get("lower_bound")),
                fitted_history=_optional_float(row.get("fitted_history")),
                inventory_days=_optional_float(row.get("inventory_days")),
                version=int(_optional_float(row.get("version")) or 0),
            )
        )
    return records


def override_records_from_frame(df: pd.DataFrame) -> List[CommercialOverrideRecord]:
    records: List[CommercialOverrideRecord] = []
    for row in _frame_rows(df, CommercialOverrideRecord, OVERRIDE_COLUMNS):
        reviewed_at = row.get("reviewed_at")
        records.append(
            CommercialOverrideRecord(
                product_id=normalize_key(row.get("product_id")) or "",
                customer_key=normalize_key(row.get("customer_key")),
                location_key=normalize_key(row.get("location_key")),
                postdate=_as_date(row.get("postdate")),
                manager_override=_optional_float(row.get("manager_override")),
                commercial_input=_optional_float(row.get("commercial_input")),
                gap=_optional_float(row.get("gap")),
                reviewed_by=normalize_key(row.get("reviewed_by")),
                reviewed_at=None if reviewed_at is None or pd.isna(reviewed_at) else pd.Timestamp(reviewed_at).to_pydatetime(),
                version=int(_optional_float(row.get("version")) or 0),
            )
        )
    return records


def attributes_from_frame(df: pd.DataFrame) -> List[ProductAttributes]:
    if df is None or df.empty:
        return []
    frame = numericize(_rename_columns(df, ATTRIBUTE_COLUMNS), ["unit_a_multiplier", "unit_b_multiplier"])
    out: List[ProductAttributes] = []
    for row in frame.to_dict(orient="records"):
        product_id = normalize_key(row.get("product_id"))
        if product_id is None:
            continue
        native = _as_bool(row.get("unit_c_native"), default=True)
        out.append(
            ProductAttributes(
                product_id=product_id,
                unit_a_multiplier=_optional_float(row.get("unit_a_multiplier")) or 0.0,
                unit_b_multiplier=_optional_float(row.get("unit_b_multiplier")) or 0.0,
                unit_c_native=native,
            )
        )
    return out
