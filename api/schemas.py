from __future__ import annotations

from datetime import date
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class DateRangeModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    start: Optional[date] = Field(default=None, alias="from")
    end: Optional[date] = Field(default=None, alias="to")


class FilterScopeModel(BaseModel):
    product_id: Optional[str] = None
    product_ids: List[str] = Field(default_factory=list)
    location_id: Optional[str] = None
    customer_ids: List[str] = Field(default_factory=list)
    brands: List[str] = Field(default_factory=list)
    categories: List[str] = Field(default_factory=list)
    hierarchy: List[str] = Field(default_factory=list)
    product_locations: Dict[str, List[str]] = Field(default_factory=dict)
    date_range: DateRangeModel = Field(default_factory=DateRangeModel)
    active_year: Optional[int] = None
    estimate_missing_actuals: bool = False


class CollaborationRequest(BaseModel):
    scope: FilterScopeModel = Field(default_factory=FilterScopeModel)
    rows: List[str] = Field(default_factory=list)
    units: List[str] = Field(default_factory=list)


class ContributingKeyModel(BaseModel):
    customer_key: str
    product_id: str
    location_key: Optional[str] = None


class DistributionRequest(BaseModel):
    scope: FilterScopeModel = Field(default_factory=FilterScopeModel)
    target_metric: str
    period: str
    value: float
    # Defaults to every series visible under the scope.
    contributing_keys: Optional[List[ContributingKeyModel]] = None


class RowMeta(BaseModel):
    row: str
    label: str
    field: str
    editable: bool
    time_based: bool


class MetaRowsResponse(BaseModel):
    rows: List[RowMeta]


class MetaPeriodsResponse(BaseModel):
    periods: List[str]
