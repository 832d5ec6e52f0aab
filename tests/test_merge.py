from datetime import date

import pytest

from planning.errors import PartialDataError
from planning.filters import FilterScope
from planning.merge import merge_records
from planning.periods import DateRange


def _effective(result, customer="C1", product="P1", period="jan-25"):
    return result.entry(customer, product).value(period, "effective_forecast")


def test_manager_override_wins(make_forecast, make_override):
    result = merge_records(
        [make_forecast(forecast=50.0)],
        [make_override(manager_override=100.0, commercial_input=80.0)],
    )
    assert _effective(result) == 100.0


def test_commercial_input_used_without_manager_override(make_forecast, make_override):
    result = merge_records([make_forecast(forecast=50.0)], [make_override(commercial_input=80.0)])
    assert _effective(result) == 80.0


def test_statistical_forecast_is_the_last_resort(make_forecast):
    result = merge_records([make_forecast(forecast=50.0)], [])
    bundle = result.entry("C1", "P1").periods["jan-25"]
    assert bundle.effective_forecast == 50.0
    assert bundle.calculated_forecast == 50.0
    assert bundle.manager_adjustment == 0.0


def test_explicit_zero_override_counts_as_an_override(make_forecast, make_override):
    result = merge_records([make_forecast(forecast=50.0)], [make_override(manager_override=0.0)])
    assert _effective(result) == 0.0


def test_locations_are_summed_into_one_series(make_forecast):
    result = merge_records(
        [
            make_forecast(location="L1", forecast=10.0),
            make_forecast(location="L2", forecast=20.0),
        ],
        [],
    )
    entry = result.entry("C1", "P1")
    assert entry.locations == ("L1", "L2")
    assert entry.value("jan-25", "calculated_forecast") == 30.0


def test_an_override_at_one_location_replaces_the_whole_series_forecast(make_forecast, make_override):
    result = merge_records(
        [
            make_forecast(location="L1", forecast=10.0),
            make_forecast(location="L2", forecast=20.0),
        ],
        [make_override(location="L1", manager_override=100.0)],
    )
    assert _effective(result) == 100.0
    assert result.entry("C1", "P1").value("jan-25", "calculated_forecast") == 30.0


def test_commercial_input_is_resolved_on_the_series_too(make_forecast, make_override):
    result = merge_records(
        [
            make_forecast(location="L1", forecast=10.0),
            make_forecast(location="L2", forecast=20.0),
        ],
        [
            make_override(location="L1", commercial_input=7.0),
            make_override(location="L2", commercial_input=8.0),
        ],
    )
    assert _effective(result) == 15.0


def test_inventory_days_take_the_max_across_locations(make_forecast):
    result = merge_records(
        [
            make_forecast(location="L1", inventory_days=12.0),
            make_forecast(location="L2", inventory_days=30.0),
        ],
        [],
    )
    assert result.entry("C1", "P1").value("jan-25", "inventory_days") == 30.0


def test_missing_actuals_are_not_estimated_by_default(make_forecast):
    records = [make_forecast(forecast=50.0)]

    plain = merge_records(records, []).entry("C1", "P1").periods["jan-25"]
    assert plain.actual_value == 0.0
    assert plain.actual_is_estimate is False

    estimated = merge_records(records, [], FilterScope(estimate_missing_actuals=True)).entry("C1", "P1").periods["jan-25"]
    assert estimated.actual_value == 50.0
    assert estimated.actual_is_estimate is True


def test_records_without_customer_or_date_are_counted(make_forecast, make_override):
    result = merge_records(
        [
            make_forecast(forecast=10.0),
            make_forecast(customer=None, forecast=99.0),
            make_forecast(postdate="no date", forecast=99.0),
        ],
        [make_override(customer=None, manager_override=5.0)],
    )
    assert result.dropped_records == 2
    assert result.invalid_dates == 1
    assert list(result.entries) == [("C1", "P1")]
    assert _effective(result) == 10.0

    err = result.partial_data_error()
    assert isinstance(err, PartialDataError)
    assert err.code == "records_dropped"
    assert err.details == {"dropped_records": 2, "invalid_dates": 1}


def test_scope_and_range_filters(make_forecast):
    scope = FilterScope(
        product_id="P1",
        date_range=DateRange(date(2025, 1, 1), date(2025, 2, 28)),
    )
    result = merge_records(
        [
            make_forecast(forecast=1.0),
            make_forecast(postdate=date(2025, 3, 1), forecast=1.0),
            make_forecast(product="P9", forecast=1.0),
        ],
        [],
        scope,
    )
    assert result.out_of_range == 1
    assert result.out_of_scope == 1
    assert result.periods == ["jan-25"]
    assert result.partial_data_error() is None


def test_periods_are_chronological(make_forecast):
    result = merge_records(
        [
            make_forecast(postdate=date(2025, 2, 1), forecast=1.0),
            make_forecast(postdate=date(2024, 12, 1), forecast=1.0),
            make_forecast(postdate=date(2025, 1, 1), forecast=1.0),
        ],
        [],
    )
    entry = result.entry("C1", "P1")
    assert list(entry.periods) == ["dec-24", "jan-25", "feb-25"]
    assert entry.labels(2025) == ["jan-25", "feb-25"]


def test_merge_is_idempotent_and_order_independent(make_forecast, make_override):
    forecasts = [
        make_forecast("C1", location="L1", forecast=10.5),
        make_forecast("C1", location="L2", forecast=0.25),
        make_forecast("C2", forecast=7.0, actual=6.0),
    ]
    overrides = [make_override("C2", commercial_input=9.0)]

    first = merge_records(forecasts, overrides)
    again = merge_records(forecasts, overrides)
    shuffled = merge_records(list(reversed(forecasts)), overrides)

    assert first == again
    assert first == shuffled


@pytest.mark.parametrize("scope", [None, FilterScope()])
def test_empty_input(scope):
    result = merge_records([], [], scope)
    assert result.entries == {}
    assert result.periods == []
