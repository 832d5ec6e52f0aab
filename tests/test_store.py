from datetime import date

import pandas as pd
import pytest

from planning.errors import ConflictError, PersistenceError
from planning.filters import FilterScope
from planning.store import InMemoryStore, UpsertOp


def _op(**kwargs):
    values = dict(customer_key="C1", product_id="P1", location_key="L1", period="jan-25", field="manager_override", value=10.0)
    values.update(kwargs)
    return UpsertOp(**values)


def test_from_frames_maps_source_columns():
    forecast_df = pd.DataFrame(
        {
            "product_id": ["P1", "P1"],
            "customer_node_id": ["C1", None],
            "location_node_id": ["L1", "L1"],
            "postdate": ["2025-01-01", "2025-02-01"],
            "forecast": ["12.5", "bad"],
            "ddi_totales": [14, 15],
        }
    )
    override_df = pd.DataFrame(
        {
            "product_id": ["P1"],
            "customer_node_id": ["C1"],
            "location_node_id": ["L1"],
            "postdate": ["2025-01-01"],
            "sm_kam_override": [30.0],
            "version": [None],
        }
    )
    attributes_df = pd.DataFrame({"product_id": ["P1"], "attr_1": [2.0], "attr_2": [9.5], "unit_c_native": ["false"]})

    store = InMemoryStore.from_frames(forecast_df, override_df, attributes_df)
    snapshot = store.query(FilterScope())

    first, second = snapshot.forecast_records
    assert first.customer_key == "C1"
    assert first.postdate == date(2025, 1, 1)
    assert first.forecast == 12.5
    assert first.inventory_days == 14.0
    assert second.customer_key is None
    assert second.forecast is None

    [override] = snapshot.override_records
    assert override.manager_override == 30.0
    assert override.version == 0

    [attrs] = snapshot.product_attributes
    assert (attrs.unit_a_multiplier, attrs.unit_b_multiplier, attrs.unit_c_native) == (2.0, 9.5, False)


def test_from_csv_dir(tmp_path):
    pd.DataFrame(
        {"product_id": ["P1"], "customer_id": ["C1"], "location_id": ["L1"], "postdate": ["2025-03-01"], "forecast": [4]}
    ).to_csv(tmp_path / "forecast_data.csv", index=False)

    store = InMemoryStore.from_csv_dir(tmp_path)
    snapshot = store.query(FilterScope(product_id="P1"))
    assert len(snapshot.forecast_records) == 1
    assert snapshot.override_records == ()
    assert snapshot.product_attributes == ()


def test_query_respects_scope(two_customer_store):
    assert len(two_customer_store.query(FilterScope(customer_ids=["C2"])).forecast_records) == 1
    assert two_customer_store.query(FilterScope(product_id="P9")).forecast_records == ()
    assert [a.product_id for a in two_customer_store.query(FilterScope(product_id="P1")).product_attributes] == ["P1"]


def test_snapshots_do_not_change_after_writes(two_customer_store):
    before = two_customer_store.query(FilterScope())
    two_customer_store.upsert(_op())
    after = two_customer_store.query(FilterScope())
    assert before.override_records == ()
    assert len(after.override_records) == 1
    assert after.version > before.version


def test_upsert_creates_then_updates(two_customer_store):
    two_customer_store.upsert(_op(value=10.0, reviewed_by="u1"))
    two_customer_store.upsert(_op(field="commercial_input", value=7.0, expected_version=1))
    rec = two_customer_store.override_for("C1", "P1", "L1", "jan-25")
    assert (rec.manager_override, rec.commercial_input) == (10.0, 7.0)
    assert rec.reviewed_by == "u1"
    assert rec.version == 2
    assert rec.postdate == date(2025, 1, 1)


def test_stale_version_is_a_conflict(two_customer_store):
    two_customer_store.upsert(_op())
    with pytest.raises(ConflictError) as excinfo:
        two_customer_store.upsert(_op(value=3.0, expected_version=0))
    assert excinfo.value.code == "stale_version"
    assert two_customer_store.override_for("C1", "P1", "L1", "jan-25").manager_override == 10.0


def test_write_without_location_fails(two_customer_store):
    with pytest.raises(PersistenceError):
        two_customer_store.upsert(_op(location_key=None))


def test_atomic_batch_is_all_or_nothing(two_customer_store):
    result = two_customer_store.batch_upsert([_op(), _op(customer_key="C2", location_key=None)])
    assert result.succeeded == []
    assert len(result.failed) == 2
    assert two_customer_store.override_for("C1", "P1", "L1", "jan-25") is None


def test_non_atomic_store_has_no_batches(two_customer_forecasts):
    store = InMemoryStore(two_customer_forecasts, atomic=False)
    with pytest.raises(NotImplementedError):
        store.batch_upsert([_op()])


def test_held_locks_time_out(two_customer_store):
    key = ("C1", "P1", "jan-25")
    with two_customer_store.locks.hold([key]):
        with pytest.raises(ConflictError) as excinfo:
            with two_customer_store.locks.hold([key], timeout=0.01):
                pass
    assert excinfo.value.code == "key_locked"
    # Released afterwards.
    with two_customer_store.locks.hold([key], timeout=0.01):
        pass


def test_released_locks_are_forgotten(two_customer_store):
    locks = two_customer_store.locks
    keys = [("C1", "P1", "jan-25"), ("C2", "P1", "jan-25")]
    with locks.hold(keys):
        assert len(locks) == 2
        with pytest.raises(ConflictError):
            with locks.hold([("C2", "P1", "jan-25"), ("C3", "P1", "jan-25")], timeout=0.01):
                pass
        # The timed-out edit leaves nothing behind; the outer edit still holds its keys.
        assert len(locks) == 2
    assert len(locks) == 0
