"""Persistence adapter contracts and the in-memory store."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

import pandas as pd

from planning import settings
from planning.attributes import AttributeResolver
from planning.errors import ConflictError, PersistenceError, PlanningError, ValidationError
from planning.filters import FilterScope
from planning.periods import month_start, period_label
from planning.records import (
    CommercialOverrideRecord,
    ForecastRecord,
    ProductAttributes,
    attributes_from_frame,
    forecast_records_from_frame,
    override_records_from_frame,
)
from planning.rows import FORECAST_TARGET, OVERRIDE_TARGET


logger = logging.getLogger(__name__)

OVERRIDE_FIELDS = frozenset({"manager_override", "commercial_input", "gap"})
FORECAST_FIELDS = frozenset({"demand_planner"})

_RecordKey = Tuple[str, str, Optional[str], str]  # (customer, product, location, period)


@dataclass(frozen=True)
class IdentityContext:
    user_id: str


@dataclass(frozen=True)
class Snapshot:
    """Records of one scope captured at a single data version."""

    forecast_records: Tuple[ForecastRecord, ...] = ()
    override_records: Tuple[CommercialOverrideRecord, ...] = ()
    product_attributes: Tuple[ProductAttributes, ...] = ()
    version: int = 0

    def resolver(self) -> AttributeResolver:
        return AttributeResolver(self.product_attributes)


@dataclass(frozen=True)
class UpsertOp:
    customer_key: str
    product_id: str
    location_key: Optional[str]
    period: str
    field: str
    value: float
    expected_version: Optional[int] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None

    @property
    def target(self) -> str:
        if self.field in OVERRIDE_FIELDS:
            return OVERRIDE_TARGET
        if self.field in FORECAST_FIELDS:
            return FORECAST_TARGET
        raise ValidationError(f"Field {self.field!r} is not writable", code="field_not_writable")

    @property
    def record_key(self) -> _RecordKey:
        return (self.customer_key, self.product_id, self.location_key, self.period)


@dataclass
class BatchResult:
    succeeded: List[UpsertOp] = field(default_factory=list)
    failed: List[Tuple[UpsertOp, str]] = field(default_factory=list)


class KeyLockRegistry:
    """Per-(customer, product, period) write locks shared by concurrent edits.

    A key's lock lives only while some edit holds or waits on it.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[str, str, str], threading.Lock] = {}
        self._users: Dict[Tuple[str, str, str], int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, key: Tuple[str, str, str]) -> threading.Lock:
        with self._guard:
            self._users[key] = self._users.get(key, 0) + 1
            return self._locks.setdefault(key, threading.Lock())

    def _checkin(self, key: Tuple[str, str, str]) -> None:
        with self._guard:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    @contextmanager
    def hold(self, keys: Iterable[Tuple[str, str, str]], timeout: Optional[float] = None) -> Iterator[None]:
        timeout = settings.LOCK_TIMEOUT_SECONDS if timeout is None else timeout
        acquired: List[Tuple[Tuple[str, str, str], threading.Lock]] = []
        try:
            # Sorted acquisition order keeps two overlapping edits from deadlocking.
            for key in sorted(set(keys)):
                lock = self._checkout(key)
                if not lock.acquire(timeout=timeout):
                    self._checkin(key)
                    raise ConflictError(
                        "Another edit is writing to an overlapping key; retry with fresh data",
                        code="key_locked",
                        details={"customer_key": key[0], "product_id": key[1], "period": key[2]},
                    )
                acquired.append((key, lock))
            yield
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._checkin(key)


class ForecastStore(ABC):
    """Query / Upsert / BatchUpsert boundary used by the engine."""

    supports_atomic_batches = False

    def __init__(self):
        self.locks = KeyLockRegistry()

    @abstractmethod
    def query(self, scope: FilterScope) -> Snapshot:
        ...

    @abstractmethod
    def current_version(self, op: UpsertOp) -> int:
        """Version of the record ``op`` would write (0 when it does not exist yet)."""

    @abstractmethod
    def upsert(self, op: UpsertOp) -> bool:
        """Write one value. Raises ConflictError on a stale version, PersistenceError on failure."""

    def batch_upsert(self, ops: List[UpsertOp]) -> BatchResult:
        raise NotImplementedError(f"{type(self).__name__} does not support atomic batches")


class InMemoryStore(ForecastStore):
    def __init__(
        self,
        forecast_records: Iterable[ForecastRecord] = (),
        override_records: Iterable[CommercialOverrideRecord] = (),
        product_attributes: Iterable[ProductAttributes] = (),
        *,
        atomic: bool = True,
    ):
        super().__init__()
        self.supports_atomic_batches = atomic
        self._lock = threading.RLock()
        self._version = 0
        self._forecasts: List[ForecastRecord] = list(forecast_records)
        self._overrides: Dict[_RecordKey, CommercialOverrideRecord] = {}
        self._unkeyed_overrides: List[CommercialOverrideRecord] = []
        for rec in override_records:
            self._add_override(rec)
        self._attributes: Dict[str, ProductAttributes] = {a.product_id: a for a in product_attributes}

    # ---------------- Loading ----------------
    @classmethod
    def from_frames(
        cls,
        forecast_df: Optional[pd.DataFrame] = None,
        override_df: Optional[pd.DataFrame] = None,
        attributes_df: Optional[pd.DataFrame] = None,
        **kwargs,
    ) -> "InMemoryStore":
        return cls(
            forecast_records_from_frame(forecast_df if forecast_df is not None else pd.DataFrame()),
            override_records_from_frame(override_df if override_df is not None else pd.DataFrame()),
            attributes_from_frame(attributes_df if attributes_df is not None else pd.DataFrame()),
            **kwargs,
        )

    @classmethod
    def from_csv_dir(cls, data_dir: Optional[Path] = None, **kwargs) -> "InMemoryStore":
        data_dir = Path(data_dir or settings.DATA_DIR)

        def read(name: str) -> pd.DataFrame:
            path = data_dir / name
            if not path.exists():
                logger.info("Seed file %s not found; starting empty", path)
                return pd.DataFrame()
            return pd.read_csv(path)

        return cls.from_frames(
            read("forecast_data.csv"),
            read("commercial_collaboration.csv"),
            read("product_attributes.csv"),
            **kwargs,
        )

    def _add_override(self, rec: CommercialOverrideRecord) -> None:
        try:
            label = period_label(rec.postdate)
        except ValueError:
            label = None
        if not rec.customer_key or label is None:
            # Kept so queries still return it; the merge counts and drops it.
            self._unkeyed_overrides.append(rec)
            return
        key = (rec.customer_key, rec.product_id, rec.location_key, label)
        existing = self._overrides.get(key)
        if existing is None:
            self._overrides[key] = rec
            return
        updates = {
            name: getattr(rec, name)
            for name in ("manager_override", "commercial_input", "gap", "reviewed_by", "reviewed_at")
            if getattr(rec, name) is not None
        }
        self._overrides[key] = replace(existing, **updates)

    # ---------------- Reads ----------------
    def query(self, scope: FilterScope) -> Snapshot:
        with self._lock:
            forecasts = tuple(r for r in self._forecasts if scope.matches(r.product_id, r.customer_key, r.location_key))
            overrides = tuple(
                r
                for r in list(self._overrides.values()) + self._unkeyed_overrides
                if scope.matches(r.product_id, r.customer_key, r.location_key)
            )
            products = scope.allowed_products()
            attributes = tuple(a for pid, a in sorted(self._attributes.items()) if products is None or pid in products)
            return Snapshot(forecasts, overrides, attributes, version=self._version)

    def override_for(self, customer_key: str, product_id: str, location_key: Optional[str], period: str) -> Optional[CommercialOverrideRecord]:
        with self._lock:
            return self._overrides.get((customer_key, product_id, location_key, period))

    def forecasts_for(self, customer_key: str, product_id: str, location_key: Optional[str], period: str) -> List[ForecastRecord]:
        with self._lock:
            return [r for r in self._forecasts if self._forecast_matches(r, (customer_key, product_id, location_key, period))]

    def current_version(self, op: UpsertOp) -> int:
        with self._lock:
            if op.target == OVERRIDE_TARGET:
                rec = self._overrides.get(op.record_key)
                return rec.version if rec is not None else 0
            matches = [r for r in self._forecasts if self._forecast_matches(r, op.record_key)]
            return max((r.version for r in matches), default=0)

    @staticmethod
    def _forecast_matches(rec: ForecastRecord, key: _RecordKey) -> bool:
        customer, product, location, period = key
        if rec.customer_key != customer or rec.product_id != product or rec.location_key != location:
            return False
        try:
            return period_label(rec.postdate) == period
        except ValueError:
            return False

    # ---------------- Writes ----------------
    def _check_version(self, op: UpsertOp) -> None:
        if op.expected_version is None:
            return
        current = self.current_version(op)
        if current != op.expected_version:
            raise ConflictError(
                "Record changed since it was read",
                code="stale_version",
                details={"expected": op.expected_version, "current": current, "key": list(op.record_key)},
            )

    def _apply(self, op: UpsertOp) -> None:
        if not op.location_key:
            raise PersistenceError("Cannot write a record without a location", code="missing_location")
        if op.target == OVERRIDE_TARGET:
            existing = self._overrides.get(op.record_key)
            if existing is None:
                existing = CommercialOverrideRecord(
                    product_id=op.product_id,
                    customer_key=op.customer_key,
                    location_key=op.location_key,
                    postdate=month_start(op.period),
                )
            self._overrides[op.record_key] = replace(
                existing,
                **{op.field: float(op.value)},
                reviewed_by=op.reviewed_by or existing.reviewed_by,
                reviewed_at=op.reviewed_at or existing.reviewed_at,
                version=existing.version + 1,
            )
            return

        # demand_planner lives on forecast rows: the first row of the period carries the value.
        indexes = [i for i, r in enumerate(self._forecasts) if self._forecast_matches(r, op.record_key)]
        if not indexes:
            self._forecasts.append(
                ForecastRecord(
                    product_id=op.product_id,
                    customer_key=op.customer_key,
                    location_key=op.location_key,
                    postdate=month_start(op.period),
                    demand_planner=float(op.value),
                    version=1,
                )
            )
            return
        for n, i in enumerate(indexes):
            rec = self._forecasts[i]
            self._forecasts[i] = replace(rec, demand_planner=float(op.value) if n == 0 else 0.0, version=rec.version + 1)

    def upsert(self, op: UpsertOp) -> bool:
        with self._lock:
            self._check_version(op)
            self._apply(op)
            self._version += 1
        return True

    def batch_upsert(self, ops: List[UpsertOp]) -> BatchResult:
        if not self.supports_atomic_batches:
            return super().batch_upsert(ops)
        with self._lock:
            try:
                for op in ops:
                    self._check_version(op)
                    if not op.location_key:
                        raise PersistenceError("Cannot write a record without a location", code="missing_location")
            except PlanningError as exc:
                logger.warning("Atomic batch of %s write(s) rejected: %s", len(ops), exc)
                return BatchResult(failed=[(op, str(exc)) for op in ops])
            for op in ops:
                self._apply(op)
            self._version += 1
        return BatchResult(succeeded=list(ops))
