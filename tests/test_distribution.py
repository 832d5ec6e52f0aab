from dataclasses import replace
from decimal import Decimal

import pytest

from planning.distribution import (
    ContributingKey,
    DistributionEdit,
    DistributionEngine,
    contributing_keys_for,
    decimals_of,
    split_equal,
)
from planning.errors import ConflictError, DistributionError, ValidationError
from planning.filters import FilterScope
from planning.merge import merge_records
from planning.rows import RowType
from planning.store import IdentityContext, InMemoryStore


def _keys(store, scope):
    snapshot = store.query(scope)
    return contributing_keys_for(merge_records(snapshot.forecast_records, snapshot.override_records, scope))


def _edit(keys, value=300, row=RowType.MANAGER_ADJUSTMENT, period="jan-25"):
    return DistributionEdit(target_metric=row, period=period, new_aggregate_value=value, contributing_keys=tuple(keys))


def test_split_equal_puts_the_remainder_on_the_first_share():
    assert split_equal(100, 3) == [Decimal("34"), Decimal("33"), Decimal("33")]
    assert split_equal("10.5", 2) == [Decimal("5.2"), Decimal("5.3")]
    assert split_equal(5, 0) == []


@pytest.mark.parametrize("total", ["100", "100.01", "0.07", "-12.5", "0"])
@pytest.mark.parametrize("count", [1, 2, 3, 7])
def test_split_equal_preserves_the_total(total, count):
    assert sum(split_equal(total, count), Decimal(0)) == Decimal(total)


def test_decimals_of():
    assert decimals_of(300) == 0
    assert decimals_of("12.50") == 1
    assert decimals_of("0.123456789") == 6


def test_contributing_keys_carry_a_single_location(make_forecast):
    merged = merge_records(
        [
            make_forecast("C1", location="L1", forecast=1.0),
            make_forecast("C2", location="L1", forecast=1.0),
            make_forecast("C2", location="L2", forecast=1.0),
        ],
        [],
    )
    assert contributing_keys_for(merged) == (
        ContributingKey("C1", "P1", "L1"),
        ContributingKey("C2", "P1", None),
    )
    assert contributing_keys_for(merged, ["C2"]) == (ContributingKey("C2", "P1", None),)


def _aggregate_effective(store, scope, period="jan-25"):
    snapshot = store.query(scope)
    merged = merge_records(snapshot.forecast_records, snapshot.override_records, scope)
    return sum(e.value(period, "effective_forecast") for e in merged.entries.values())


def test_two_customer_edit_splits_equally(two_customer_store, p1_scope):
    assert _aggregate_effective(two_customer_store, p1_scope) == 150.0
    engine = DistributionEngine(two_customer_store)
    result = engine.distribute(_edit(_keys(two_customer_store, p1_scope)), p1_scope, IdentityContext("kam-1"))

    assert result.records_attempted == 2
    assert result.records_succeeded == 2
    assert result.failed_keys == []
    assert result.sum_invariant_held
    assert result.persisted == {("C1", "P1"): Decimal("150"), ("C2", "P1"): Decimal("150")}

    written = two_customer_store.override_for("C1", "P1", "L1", "jan-25")
    assert written.manager_override == 150.0
    assert written.reviewed_by == "kam-1"
    assert written.version == 1

    # The re-merged aggregate now shows what was typed.
    assert _aggregate_effective(two_customer_store, p1_scope) == 300.0


def test_edit_on_a_series_spread_over_locations_shows_the_typed_value(make_forecast, attributes):
    store = InMemoryStore(
        [
            make_forecast("C1", location="L1", forecast=100.0),
            make_forecast("C1", location="L2", forecast=40.0),
            make_forecast("C2", location="L1", forecast=50.0),
        ],
        (),
        attributes,
    )
    scope = FilterScope(product_id="P1", product_locations={"P1": ["L1"]})
    assert _aggregate_effective(store, scope) == 190.0

    result = DistributionEngine(store).distribute(_edit(_keys(store, scope), 300), scope)

    assert result.records_succeeded == 2
    assert result.sum_invariant_held
    assert _aggregate_effective(store, scope) == 300.0


def test_repeating_an_edit_overwrites_rather_than_accumulates(two_customer_store, p1_scope):
    engine = DistributionEngine(two_customer_store)
    keys = _keys(two_customer_store, p1_scope)
    engine.distribute(_edit(keys, 300), p1_scope)
    engine.distribute(_edit(keys, 90), p1_scope)
    assert two_customer_store.override_for("C2", "P1", "L1", "jan-25").manager_override == 45.0


def test_demand_planner_edits_write_forecast_rows(two_customer_store, p1_scope):
    result = DistributionEngine(two_customer_store).distribute(
        _edit(_keys(two_customer_store, p1_scope), 51, row=RowType.DEMAND_PLANNER), p1_scope
    )
    assert result.sum_invariant_held
    [c1] = two_customer_store.forecasts_for("C1", "P1", "L1", "jan-25")
    [c2] = two_customer_store.forecasts_for("C2", "P1", "L1", "jan-25")
    assert (c1.demand_planner, c2.demand_planner) == (25.0, 26.0)


def test_partial_failure_is_reported(flaky_store, p1_scope):
    engine = DistributionEngine(flaky_store, max_attempts=2)
    result = engine.distribute(_edit(_keys(flaky_store, p1_scope)), p1_scope)

    assert not result.atomic
    assert [f.customer_key for f in result.failed_keys] == ["C2"]
    assert result.records_succeeded == 1
    assert result.persisted_total == Decimal("150")
    assert result.sum_invariant_held is False
    assert flaky_store.failed_attempts == 2
    assert flaky_store.override_for("C1", "P1", "L1", "jan-25").manager_override == 150.0

    with pytest.raises(DistributionError) as excinfo:
        result.raise_for_failures()
    assert excinfo.value.code == "partial_distribution"
    assert excinfo.value.details["failed_keys"][0]["customer_key"] == "C2"


def test_atomic_batch_rejects_every_key_on_any_failure(two_customer_store, p1_scope):
    keys = (ContributingKey("C1", "P1", "L1"), ContributingKey("C2", "P1", None))
    scope = FilterScope(product_id="P1", product_locations={"P1": ["L1"]})

    class RacingStore(InMemoryStore):
        def batch_upsert(self, ops):
            # Another writer lands on C2 between the read and the batch.
            self.upsert(replace(ops[1], value=1.0, expected_version=None))
            return super().batch_upsert(ops)

    store = RacingStore(two_customer_store.query(p1_scope).forecast_records)
    result = DistributionEngine(store).distribute(_edit(keys), scope)

    assert result.atomic
    assert result.records_succeeded == 0
    assert sorted(f.customer_key for f in result.failed_keys) == ["C1", "C2"]
    assert all("stale_version" in f.reason for f in result.failed_keys)
    assert store.override_for("C1", "P1", "L1", "jan-25") is None
    assert store.override_for("C2", "P1", "L1", "jan-25").manager_override == 1.0


def test_unresolved_location_fails_only_that_key(two_customer_store, p1_scope):
    keys = (ContributingKey("C1", "P1", "L1"), ContributingKey("C3", "P1", None))
    result = DistributionEngine(two_customer_store).distribute(_edit(keys, 10), p1_scope)
    assert result.records_succeeded == 1
    assert [(f.customer_key, f.reason) for f in result.failed_keys] == [("C3", "unresolved_location")]
    assert not result.sum_invariant_held


def test_held_key_raises_conflict_before_writing(two_customer_store, p1_scope):
    keys = _keys(two_customer_store, p1_scope)
    engine = DistributionEngine(two_customer_store, lock_timeout=0.05)
    with two_customer_store.locks.hold([("C2", "P1", "jan-25")]):
        with pytest.raises(ConflictError):
            engine.distribute(_edit(keys), p1_scope)
    assert two_customer_store.override_for("C1", "P1", "L1", "jan-25") is None


@pytest.mark.parametrize(
    "edit_kwargs, code",
    [
        ({"row": RowType.EFFECTIVE_FORECAST}, "row_not_editable"),
        ({"row": "nonsense"}, "unknown_row"),
        ({"period": "2025-01"}, "bad_period"),
        ({"value": float("nan")}, "bad_value"),
        ({"value": 1.0000001}, "too_precise"),
    ],
)
def test_invalid_edits_are_rejected(two_customer_store, p1_scope, edit_kwargs, code):
    edit = _edit(_keys(two_customer_store, p1_scope), **edit_kwargs)
    with pytest.raises(ValidationError) as excinfo:
        DistributionEngine(two_customer_store).distribute(edit, p1_scope)
    assert excinfo.value.code == code


def test_empty_key_set_is_rejected(two_customer_store, p1_scope):
    with pytest.raises(ValidationError):
        DistributionEngine(two_customer_store).distribute(_edit(()), p1_scope)


def test_value_past_the_decimal_cap_writes_nothing(two_customer_store, p1_scope):
    edit = _edit(_keys(two_customer_store, p1_scope), value=1.0000001)
    with pytest.raises(ValidationError) as excinfo:
        DistributionEngine(two_customer_store).distribute(edit, p1_scope)
    assert excinfo.value.details == {"max_decimals": 6}
    assert two_customer_store.override_for("C1", "P1", "L1", "jan-25") is None


def test_value_at_the_decimal_cap_adds_back_to_the_typed_total(two_customer_store, p1_scope):
    result = DistributionEngine(two_customer_store).distribute(
        _edit(_keys(two_customer_store, p1_scope), value=1.000001), p1_scope
    )
    assert result.requested_total == Decimal("1.000001")
    assert result.persisted_total == Decimal("1.000001")
    assert result.sum_invariant_held
