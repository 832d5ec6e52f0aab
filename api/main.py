from __future__ import annotations

from datetime import date
from functools import lru_cache
import logging
import math
from typing import Optional

import numpy as np
import pandas as pd
from fastapi import Depends, FastAPI, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder

from api.schemas import (
    CollaborationRequest,
    DistributionRequest,
    FilterScopeModel,
    MetaPeriodsResponse,
    MetaRowsResponse,
    RowMeta,
)
from planning import settings
from planning.budget import Deadline
from planning.dashboard import compute_collaboration, row_table
from planning.distribution import ContributingKey, DistributionEdit, DistributionEngine, contributing_keys_for
from planning.errors import PlanningError, ValidationError
from planning.filters import FilterScope, normalize_filter_scope, validate_scope
from planning.merge import merge_records
from planning.periods import DateRange, months_in_range
from planning.sql_store import SqlStore
from planning.store import ForecastStore, IdentityContext, InMemoryStore


logging.basicConfig(level=settings.LOG_LEVEL, format=settings.LOG_FORMAT)

app = FastAPI(title="Forecast Collaboration API", version="0.1.0")
logger = logging.getLogger(__name__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache(maxsize=1)
def get_store() -> ForecastStore:
    if settings.DATABASE_URL:
        store = SqlStore(settings.DATABASE_URL)
        store.create_all()
        logger.info("Using SQL store")
        return store
    logger.info("Using in-memory store seeded from %s", settings.DATA_DIR)
    return InMemoryStore.from_csv_dir()


def _scope_from_model(model: FilterScopeModel) -> FilterScope:
    raw = model.model_dump(by_alias=True)
    return normalize_filter_scope(raw)


def _json(data: object, status_code: int = 200) -> JSONResponse:
    """Return JSON with safe encoding for pandas/numpy objects."""

    def _safe_float(value: object) -> float | None:
        try:
            out = float(value)  # type: ignore[arg-type]
        except Exception:
            return None
        if math.isnan(out) or math.isinf(out):
            return None
        return out

    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(
            data,
            custom_encoder={
                type(pd.NA): lambda _: None,
                np.integer: int,
                float: _safe_float,
                np.floating: _safe_float,
                np.bool_: bool,
                np.ndarray: lambda arr: arr.tolist(),
                pd.Timestamp: lambda ts: ts.isoformat(),
            },
        ),
    )


def _error(exc: PlanningError) -> JSONResponse:
    return _json(exc.to_dict(), status_code=exc.status_code)


@app.get("/meta/rows", response_model=MetaRowsResponse)
def meta_rows():
    return MetaRowsResponse(rows=[RowMeta(**row) for row in row_table()])


@app.get("/meta/periods", response_model=MetaPeriodsResponse)
def meta_periods(
    date_from: date = Query(alias="from"),
    date_to: date = Query(alias="to"),
):
    try:
        if date_from > date_to:
            raise ValidationError("from is after to", code="bad_date_range")
        return MetaPeriodsResponse(periods=months_in_range(DateRange(date_from, date_to)))
    except PlanningError as exc:
        logger.warning("meta_periods rejected: %s", exc)
        return _error(exc)
    except Exception as exc:
        logger.exception("meta_periods failed")
        return JSONResponse(status_code=500, content={"error": str(exc), "type": type(exc).__name__})


@app.post("/collaboration")
def collaboration(request: CollaborationRequest, store: ForecastStore = Depends(get_store)):
    try:
        scope = validate_scope(_scope_from_model(request.scope))
        deadline = Deadline(operation="collaboration view")
        snapshot = store.query(scope)
        return _json(compute_collaboration(scope, snapshot, rows=request.rows, units=request.units, deadline=deadline))
    except PlanningError as exc:
        logger.warning("collaboration rejected: %s", exc)
        return _error(exc)
    except ValueError as exc:
        # Unknown row or unit names.
        return _error(ValidationError(str(exc), code="bad_request"))
    except Exception as exc:
        logger.exception("collaboration failed")
        return JSONResponse(status_code=500, content={"error": str(exc), "type": type(exc).__name__})


@app.post("/distribution")
def distribution(
    request: DistributionRequest,
    x_user_id: Optional[str] = Header(default=None),
    store: ForecastStore = Depends(get_store),
):
    try:
        scope = validate_scope(_scope_from_model(request.scope))
        if request.contributing_keys is not None:
            keys = tuple(ContributingKey(k.customer_key, k.product_id, k.location_key) for k in request.contributing_keys)
        else:
            snapshot = store.query(scope)
            merged = merge_records(snapshot.forecast_records, snapshot.override_records, scope)
            keys = contributing_keys_for(merged)

        edit = DistributionEdit(
            target_metric=request.target_metric,
            period=request.period,
            new_aggregate_value=request.value,
            contributing_keys=keys,
        )
        identity = IdentityContext(x_user_id) if x_user_id else None
        result = DistributionEngine(store).distribute(edit, scope, identity)
        # 207: some keys were written, some were not; the body says which.
        return _json(result.to_dict(), status_code=207 if result.failed_keys else 200)
    except PlanningError as exc:
        logger.warning("distribution rejected: %s", exc)
        return _error(exc)
    except Exception as exc:
        logger.exception("distribution failed")
        return JSONResponse(status_code=500, content={"error": str(exc), "type": type(exc).__name__})
