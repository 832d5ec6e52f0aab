"""SQLAlchemy persistence adapter. Each batch is one transaction, so batches are atomic."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import asdict
from typing import Iterable, List, Optional

import pandas as pd
from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    Integer,
    String,
    UniqueConstraint,
    and_,
    create_engine,
    select,
    true,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from planning import settings
from planning.errors import ConflictError, PersistenceError, PlanningError
from planning.filters import FilterScope
from planning.periods import month_end, month_start
from planning.records import (
    CommercialOverrideRecord,
    ForecastRecord,
    ProductAttributes,
    attributes_from_frame,
    forecast_records_from_frame,
    override_records_from_frame,
)
from planning.rows import OVERRIDE_TARGET
from planning.store import BatchResult, ForecastStore, Snapshot, UpsertOp


logger = logging.getLogger(__name__)

Base = declarative_base()


class ForecastRow(Base):
    __tablename__ = "forecast_data"

    id = Column(Integer, primary_key=True, autoincrement=True)
    product_id = Column(String(64), nullable=False, index=True)
    customer_key = Column(String(64), index=True)
    location_key = Column(String(64), index=True)
    postdate = Column(Date, nullable=False, index=True)
    forecast = Column(Float)
    actual = Column(Float)
    sales_plan = Column(Float)
    demand_planner = Column(Float)
    forecast_last_year = Column(Float)
    approved_commercial_input = Column(Float)
    upper_bound = Column(Float)
    lower_bound = Column(Float)
    fitted_history = Column(Float)
    inventory_days = Column(Float)
    version = Column(Integer, nullable=False, default=0)


class OverrideRow(Base):
    __tablename__ = "commercial_collaboration"
    __table_args__ = (UniqueConstraint("customer_key", "product_id", "location_key", "postdate", name="uq_override_grain"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    product_id = Column(String(64), nullable=False, index=True)
    customer_key = Column(String(64), index=True)
    location_key = Column(String(64), index=True)
    postdate = Column(Date, nullable=False)
    manager_override = Column(Float)
    commercial_input = Column(Float)
    gap = Column(Float)
    reviewed_by = Column(String(64))
    reviewed_at = Column(DateTime)
    version = Column(Integer, nullable=False, default=0)


class AttributeRow(Base):
    __tablename__ = "product_attributes"

    product_id = Column(String(64), primary_key=True)
    unit_a_multiplier = Column(Float, nullable=False, default=0.0)
    unit_b_multiplier = Column(Float, nullable=False, default=0.0)
    unit_c_native = Column(Boolean, nullable=False, default=True)


def _scope_filters(model, scope: FilterScope) -> list:
    conditions = []
    products = scope.allowed_products()
    if products is not None:
        conditions.append(model.product_id.in_(sorted(products)))
    if scope.customer_ids:
        conditions.append(model.customer_key.in_(list(scope.customer_ids)))
    if scope.location_id:
        conditions.append(model.location_key == scope.location_id)
    if scope.date_range.start is not None:
        conditions.append(model.postdate >= scope.date_range.start)
    if scope.date_range.end is not None:
        conditions.append(model.postdate <= scope.date_range.end)
    return conditions


class SqlStore(ForecastStore):
    supports_atomic_batches = True

    def __init__(self, url: Optional[str] = None, *, engine=None, echo: Optional[bool] = None):
        super().__init__()
        echo = settings.DATABASE_ECHO if echo is None else echo
        self.engine = engine or create_engine(url or settings.DATABASE_URL, echo=echo)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session_scope(self):
        """Provide a transactional scope around a series of operations."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def add_records(
        self,
        forecast_records: Iterable[ForecastRecord] = (),
        override_records: Iterable[CommercialOverrideRecord] = (),
        product_attributes: Iterable[ProductAttributes] = (),
    ) -> None:
        with self.session_scope() as session:
            session.add_all([ForecastRow(**asdict(r)) for r in forecast_records])
            session.add_all([OverrideRow(**asdict(r)) for r in override_records])
            session.add_all([AttributeRow(**asdict(a)) for a in product_attributes])

    # ---------------- Reads ----------------
    def query(self, scope: FilterScope) -> Snapshot:
        try:
            # One transaction for all three reads.
            with self.session_scope() as session:
                conn = session.connection()
                forecast_df = pd.read_sql(
                    select(ForecastRow.__table__).where(and_(true(), *_scope_filters(ForecastRow, scope))), conn
                )
                override_df = pd.read_sql(
                    select(OverrideRow.__table__).where(and_(true(), *_scope_filters(OverrideRow, scope))), conn
                )
                attr_stmt = select(AttributeRow.__table__)
                products = scope.allowed_products()
                if products is not None:
                    attr_stmt = attr_stmt.where(AttributeRow.product_id.in_(sorted(products)))
                attributes_df = pd.read_sql(attr_stmt.order_by(AttributeRow.product_id), conn)
        except SQLAlchemyError as exc:
            logger.exception("Snapshot query failed")
            raise PersistenceError(f"Query failed: {exc}", code="query_failed")

        return Snapshot(
            forecast_records=tuple(forecast_records_from_frame(forecast_df)),
            override_records=tuple(override_records_from_frame(override_df)),
            product_attributes=tuple(attributes_from_frame(attributes_df)),
        )

    def _override_row(self, session, op: UpsertOp) -> Optional[OverrideRow]:
        return (
            session.query(OverrideRow)
            .filter(
                OverrideRow.customer_key == op.customer_key,
                OverrideRow.product_id == op.product_id,
                OverrideRow.location_key == op.location_key,
                OverrideRow.postdate == month_start(op.period),
            )
            .one_or_none()
        )

    def _forecast_rows(self, session, op: UpsertOp) -> List[ForecastRow]:
        return (
            session.query(ForecastRow)
            .filter(
                ForecastRow.customer_key == op.customer_key,
                ForecastRow.product_id == op.product_id,
                ForecastRow.location_key == op.location_key,
                ForecastRow.postdate >= month_start(op.period),
                ForecastRow.postdate <= month_end(op.period),
            )
            .order_by(ForecastRow.id)
            .all()
        )

    def _version(self, session, op: UpsertOp) -> int:
        if op.target == OVERRIDE_TARGET:
            row = self._override_row(session, op)
            return row.version if row is not None else 0
        return max((r.version for r in self._forecast_rows(session, op)), default=0)

    def current_version(self, op: UpsertOp) -> int:
        with self.session_scope() as session:
            return self._version(session, op)

    # ---------------- Writes ----------------
    def _apply(self, session, op: UpsertOp) -> None:
        if not op.location_key:
            raise PersistenceError("Cannot write a record without a location", code="missing_location")
        if op.expected_version is not None:
            current = self._version(session, op)
            if current != op.expected_version:
                raise ConflictError(
                    "Record changed since it was read",
                    code="stale_version",
                    details={"expected": op.expected_version, "current": current, "key": list(op.record_key)},
                )

        if op.target == OVERRIDE_TARGET:
            row = self._override_row(session, op)
            if row is None:
                row = OverrideRow(
                    product_id=op.product_id,
                    customer_key=op.customer_key,
                    location_key=op.location_key,
                    postdate=month_start(op.period),
                    version=0,
                )
                session.add(row)
            setattr(row, op.field, float(op.value))
            if op.reviewed_by:
                row.reviewed_by = op.reviewed_by
            if op.reviewed_at:
                row.reviewed_at = op.reviewed_at.replace(tzinfo=None)
            row.version = (row.version or 0) + 1
            return

        rows = self._forecast_rows(session, op)
        if not rows:
            session.add(
                ForecastRow(
                    product_id=op.product_id,
                    customer_key=op.customer_key,
                    location_key=op.location_key,
                    postdate=month_start(op.period),
                    demand_planner=float(op.value),
                    version=1,
                )
            )
            return
        for n, row in enumerate(rows):
            row.demand_planner = float(op.value) if n == 0 else 0.0
            row.version = (row.version or 0) + 1

    def upsert(self, op: UpsertOp) -> bool:
        try:
            with self.session_scope() as session:
                self._apply(session, op)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Write failed: {exc}", code="write_failed")
        return True

    def batch_upsert(self, ops: List[UpsertOp]) -> BatchResult:
        try:
            with self.session_scope() as session:
                for op in ops:
                    self._apply(session, op)
        except (PlanningError, SQLAlchemyError) as exc:
            logger.warning("Atomic batch of %s write(s) rolled back: %s", len(ops), exc)
            return BatchResult(failed=[(op, str(exc)) for op in ops])
        return BatchResult(succeeded=list(ops))
