from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, Iterable, Optional

from planning.records import ProductAttributes


logger = logging.getLogger(__name__)


class Unit(str, Enum):
    CASES = "cases"  # already expressed in target units
    VOLUME = "volume"  # unit_a_multiplier
    VALUE = "value"  # unit_b_multiplier


class AttributeResolver:
    """Per-product unit multipliers. A miss degrades to zero multipliers, it never raises."""

    def __init__(self, attributes: Iterable[ProductAttributes] = ()):
        self._by_product: Dict[str, ProductAttributes] = {a.product_id: a for a in attributes}
        self.misses = 0

    def __len__(self) -> int:
        return len(self._by_product)

    def resolve(self, product_id: Optional[str]) -> ProductAttributes:
        attrs = self._by_product.get(product_id) if product_id else None
        if attrs is None:
            self.misses += 1
            logger.debug("No unit attributes for product %s; multipliers default to 0", product_id)
            return ProductAttributes(product_id=product_id or "")
        return attrs

    def multiplier_for(self, product_id: Optional[str], unit: Unit) -> Optional[float]:
        """Multiplier to apply for ``unit``, or None when values are already in that unit."""
        unit = Unit(unit)
        attrs = self.resolve(product_id)
        if unit is Unit.CASES:
            return None if attrs.unit_c_native else 0.0
        if unit is Unit.VOLUME:
            return float(attrs.unit_a_multiplier or 0.0)
        return float(attrs.unit_b_multiplier or 0.0)
