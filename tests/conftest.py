from __future__ import annotations

from datetime import date

import pytest

from planning.errors import PersistenceError
from planning.filters import FilterScope
from planning.records import CommercialOverrideRecord, ForecastRecord, ProductAttributes
from planning.store import InMemoryStore


class FlakyStore(InMemoryStore):
    """In-memory store whose writes for some customers always fail."""

    def __init__(self, *args, fail_customers=(), **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_customers = set(fail_customers)
        self.failed_attempts = 0

    def upsert(self, op):
        if op.customer_key in self.fail_customers:
            self.failed_attempts += 1
            raise PersistenceError("write rejected by backend", code="write_failed")
        return super().upsert(op)


@pytest.fixture
def make_forecast():
    def _make(customer="C1", product="P1", location="L1", postdate=date(2025, 1, 1), **values):
        return ForecastRecord(
            product_id=product,
            customer_key=customer,
            location_key=location,
            postdate=postdate,
            **values,
        )

    return _make


@pytest.fixture
def make_override():
    def _make(customer="C1", product="P1", location="L1", postdate=date(2025, 1, 1), **values):
        return CommercialOverrideRecord(
            product_id=product,
            customer_key=customer,
            location_key=location,
            postdate=postdate,
            **values,
        )

    return _make


@pytest.fixture
def attributes():
    return [
        ProductAttributes("P1", unit_a_multiplier=2.0, unit_b_multiplier=10.0, unit_c_native=True),
        ProductAttributes("P2", unit_a_multiplier=0.5, unit_b_multiplier=4.0, unit_c_native=False),
    ]


@pytest.fixture
def two_customer_forecasts(make_forecast):
    return [
        make_forecast("C1", forecast=100.0),
        make_forecast("C2", forecast=50.0),
    ]


@pytest.fixture
def two_customer_store(two_customer_forecasts, attributes):
    return InMemoryStore(two_customer_forecasts, (), attributes)


@pytest.fixture
def flaky_store(two_customer_forecasts, attributes):
    return FlakyStore(two_customer_forecasts, (), attributes, atomic=False, fail_customers={"C2"})


@pytest.fixture
def p1_scope():
    return FilterScope(product_id="P1")
