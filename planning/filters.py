from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from planning.errors import ValidationError
from planning.periods import DateRange, to_date


@dataclass(frozen=True)
class FilterScope:
    """Immutable filter context passed explicitly into every engine call.

    ``product_ids`` holds the products already resolved upstream from
    brand/category/hierarchy selectors; ``product_locations`` maps those
    products to the locations those selectors imply.
    """

    product_id: Optional[str] = None
    product_ids: List[str] = field(default_factory=list)
    location_id: Optional[str] = None
    customer_ids: List[str] = field(default_factory=list)
    brands: List[str] = field(default_factory=list)
    categories: List[str] = field(default_factory=list)
    hierarchy: List[str] = field(default_factory=list)
    product_locations: Dict[str, List[str]] = field(default_factory=dict)
    date_range: DateRange = field(default_factory=DateRange)
    active_year: Optional[int] = None
    estimate_missing_actuals: bool = False

    @property
    def has_product_context(self) -> bool:
        return bool(self.product_id or self.product_ids or self.brands or self.categories or self.hierarchy)

    def allowed_products(self) -> Optional[set]:
        ids = set(self.product_ids)
        if self.product_id:
            ids.add(self.product_id)
        return ids or None

    def matches(self, product_id: Optional[str], customer_key: Optional[str], location_key: Optional[str]) -> bool:
        products = self.allowed_products()
        if products is not None and product_id not in products:
            return False
        if self.customer_ids and customer_key not in set(self.customer_ids):
            return False
        if self.location_id and location_key != self.location_id:
            return False
        return True


def _as_str_list(values: Optional[Iterable[object]]) -> List[str]:
    if not values:
        return []
    if isinstance(values, str):
        values = [values]
    out: List[str] = []
    for v in values:
        if v is None:
            continue
        s = str(v).strip()
        if s and s not in out:
            out.append(s)
    return out


def _as_optional_str(value: object) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    if not s or s.lower() == "all":
        return None
    return s


def normalize_filter_scope(raw: dict) -> FilterScope:
    raw = raw or {}

    customer_ids = [c for c in _as_str_list(raw.get("customer_ids")) if c.lower() != "all"]

    dr = raw.get("date_range") or {}
    start = to_date(dr.get("from") or dr.get("start"))
    end = to_date(dr.get("to") or dr.get("end"))
    if start is not None and end is not None and start > end:
        raise ValidationError("date_range.from is after date_range.to", code="bad_date_range")

    active_year = raw.get("active_year")
    try:
        active_year = int(active_year) if active_year not in (None, "") else None
    except (TypeError, ValueError):
        raise ValidationError(f"active_year must be an integer, got {active_year!r}", code="bad_active_year")

    product_locations = {
        str(k): _as_str_list(v) for k, v in (raw.get("product_locations") or {}).items() if k is not None
    }

    return FilterScope(
        product_id=_as_optional_str(raw.get("product_id")),
        product_ids=_as_str_list(raw.get("product_ids")),
        location_id=_as_optional_str(raw.get("location_id")),
        customer_ids=customer_ids,
        brands=_as_str_list(raw.get("brands")),
        categories=_as_str_list(raw.get("categories")),
        hierarchy=_as_str_list(raw.get("hierarchy")),
        product_locations=product_locations,
        date_range=DateRange(start=start, end=end),
        active_year=active_year,
        estimate_missing_actuals=bool(raw.get("estimate_missing_actuals", False)),
    )


def validate_scope(scope: FilterScope) -> FilterScope:
    """Reject a scope with no product context before anything is queried."""
    if not scope.has_product_context:
        raise ValidationError(
            "A product, product list or brand/category/hierarchy selector is required",
            code="missing_product_scope",
        )
    return scope
