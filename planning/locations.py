"""Location resolution for edits made under brand/hierarchy filters.

Each strategy is a pure function of the query that returns a location key or
None; the resolver tries them in order and the first answer wins.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Tuple

from planning.errors import PartialDataError
from planning.filters import FilterScope
from planning.records import CommercialOverrideRecord


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LocationQuery:
    customer_key: str
    product_id: str
    scope: FilterScope
    overrides: Tuple[CommercialOverrideRecord, ...] = ()


Strategy = Callable[[LocationQuery], Optional[str]]


def explicit_location(query: LocationQuery) -> Optional[str]:
    return query.scope.location_id or None


def scoped_product_location(query: LocationQuery) -> Optional[str]:
    locations = query.scope.product_locations.get(query.product_id) or []
    return locations[0] if locations else None


def _first_location(records) -> Optional[str]:
    locations = sorted({r.location_key for r in records if r.location_key})
    return locations[0] if locations else None


def override_for_pair(query: LocationQuery) -> Optional[str]:
    return _first_location(
        r for r in query.overrides if r.customer_key == query.customer_key and r.product_id == query.product_id
    )


def override_for_customer(query: LocationQuery) -> Optional[str]:
    return _first_location(r for r in query.overrides if r.customer_key == query.customer_key)


DEFAULT_STRATEGIES: Tuple[Strategy, ...] = (
    explicit_location,
    scoped_product_location,
    override_for_pair,
    override_for_customer,
)


class LocationResolver:
    def __init__(self, strategies: Sequence[Strategy] = DEFAULT_STRATEGIES):
        self.strategies = tuple(strategies)

    def resolve(self, query: LocationQuery) -> Optional[str]:
        for strategy in self.strategies:
            location = strategy(query)
            if location:
                logger.debug(
                    "Resolved location %s for %s/%s via %s",
                    location,
                    query.customer_key,
                    query.product_id,
                    strategy.__name__,
                )
                return location
        return None

    def resolve_or_raise(self, query: LocationQuery) -> str:
        location = self.resolve(query)
        if location is None:
            raise PartialDataError(
                f"Could not resolve a location for customer {query.customer_key}, product {query.product_id}",
                code="unresolved_location",
                details={"customer_key": query.customer_key, "product_id": query.product_id},
            )
        return location
