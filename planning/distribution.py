"""Aggregate-edit distribution.

An edit made on a value shown at an aggregate level (e.g. "all customers")
is split back across the (customer, product) series that compose it and
persisted one record per series.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from planning import settings
from planning.budget import Deadline
from planning.errors import ConflictError, DistributionError, PlanningError, ValidationError
from planning.filters import FilterScope
from planning.locations import LocationQuery, LocationResolver
from planning.merge import MergeResult
from planning.periods import parse_label
from planning.rows import RowType, selector_for
from planning.store import ForecastStore, IdentityContext, UpsertOp


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContributingKey:
    customer_key: str
    product_id: str
    location_key: Optional[str] = None


@dataclass(frozen=True)
class DistributionEdit:
    target_metric: RowType
    period: str
    new_aggregate_value: float
    contributing_keys: Tuple[ContributingKey, ...]


@dataclass(frozen=True)
class FailedKey:
    customer_key: str
    product_id: str
    location_key: Optional[str]
    reason: str


@dataclass
class DistributionResult:
    target_metric: str
    period: str
    requested_total: Decimal
    records_attempted: int = 0
    records_succeeded: int = 0
    failed_keys: List[FailedKey] = field(default_factory=list)
    persisted: Dict[Tuple[str, str], Decimal] = field(default_factory=dict)
    atomic: bool = False

    @property
    def persisted_total(self) -> Decimal:
        return sum(self.persisted.values(), Decimal(0))

    @property
    def sum_invariant_held(self) -> bool:
        return not self.failed_keys and self.persisted_total == self.requested_total

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_metric": self.target_metric,
            "period": self.period,
            "requested_total": float(self.requested_total),
            "persisted_total": float(self.persisted_total),
            "records_attempted": self.records_attempted,
            "records_succeeded": self.records_succeeded,
            "failed_keys": [
                {
                    "customer_key": f.customer_key,
                    "product_id": f.product_id,
                    "location_key": f.location_key,
                    "reason": f.reason,
                }
                for f in self.failed_keys
            ],
            "sum_invariant_held": self.sum_invariant_held,
            "atomic": self.atomic,
            "shares": [
                {"customer_key": c, "product_id": p, "value": float(v)} for (c, p), v in self.persisted.items()
            ],
        }

    def raise_for_failures(self) -> "DistributionResult":
        if self.failed_keys:
            raise DistributionError(
                f"{len(self.failed_keys)} of {self.records_attempted} write(s) failed; "
                f"persisted total {self.persisted_total} != requested {self.requested_total}",
                code="partial_distribution",
                details=self.to_dict(),
            )
        return self


def decimals_of(value: Union[float, int, str, Decimal], max_decimals: Optional[int] = None) -> int:
    max_decimals = settings.DISTRIBUTION_MAX_DECIMALS if max_decimals is None else max_decimals
    exponent = Decimal(str(value)).normalize().as_tuple().exponent
    if not isinstance(exponent, int) or exponent >= 0:
        return 0
    return min(-exponent, max_decimals)


def split_equal(total: Union[float, int, str, Decimal], count: int, decimals: Optional[int] = None) -> List[Decimal]:
    """Equal shares rounded half-up; the rounding remainder goes to the first share.

    >>> split_equal(100, 3)
    [Decimal('34'), Decimal('33'), Decimal('33')]
    """
    if count <= 0:
        return []
    decimals = decimals_of(total) if decimals is None else decimals
    q = Decimal(10) ** -decimals
    total_d = Decimal(str(total)).quantize(q, rounding=ROUND_HALF_UP)
    share = (total_d / count).quantize(q, rounding=ROUND_HALF_UP)
    shares = [share] * count
    shares[0] = share + (total_d - share * count)
    return shares


def contributing_keys_for(merged: MergeResult, customer_ids: Optional[Iterable[str]] = None) -> Tuple[ContributingKey, ...]:
    """Keys visible in a merged view; a series seen at exactly one location carries it."""
    allowed = set(customer_ids) if customer_ids else None
    keys = []
    for (customer, product), entry in merged.entries.items():
        if allowed is not None and customer not in allowed:
            continue
        location = entry.locations[0] if len(entry.locations) == 1 else None
        keys.append(ContributingKey(customer, product, location))
    return tuple(keys)


class DistributionEngine:
    def __init__(
        self,
        store: ForecastStore,
        resolver: Optional[LocationResolver] = None,
        *,
        max_attempts: Optional[int] = None,
        lock_timeout: Optional[float] = None,
        time_budget: Optional[float] = None,
    ):
        self.store = store
        self.resolver = resolver or LocationResolver()
        self.max_attempts = max(1, settings.DISTRIBUTION_MAX_ATTEMPTS if max_attempts is None else max_attempts)
        self.lock_timeout = lock_timeout
        self.time_budget = time_budget

    def _validate(self, edit: DistributionEdit):
        selector = selector_for(edit.target_metric)
        if not selector.editable:
            raise ValidationError(
                f"Row {RowType(edit.target_metric).value!r} cannot be edited",
                code="row_not_editable",
            )
        try:
            parse_label(edit.period)
        except ValueError as exc:
            raise ValidationError(str(exc), code="bad_period")
        try:
            value = Decimal(str(edit.new_aggregate_value))
        except InvalidOperation:
            value = None
        if value is None or not value.is_finite():
            raise ValidationError(f"Not a number: {edit.new_aggregate_value!r}", code="bad_value")
        # Shares are rounded to the typed precision; past the cap they could not add back up.
        if -value.normalize().as_tuple().exponent > settings.DISTRIBUTION_MAX_DECIMALS:
            raise ValidationError(
                f"{edit.new_aggregate_value!r} has more than {settings.DISTRIBUTION_MAX_DECIMALS} decimal places",
                code="too_precise",
                details={"max_decimals": settings.DISTRIBUTION_MAX_DECIMALS},
            )
        if not edit.contributing_keys:
            raise ValidationError("No contributing keys to distribute over", code="no_contributing_keys")
        return selector

    def distribute(
        self,
        edit: DistributionEdit,
        scope: FilterScope,
        identity: Optional[IdentityContext] = None,
    ) -> DistributionResult:
        selector = self._validate(edit)
        deadline = Deadline(self.time_budget, operation="distribution")

        keys: List[ContributingKey] = []
        seen = set()
        for key in edit.contributing_keys:
            if (key.customer_key, key.product_id) not in seen:
                seen.add((key.customer_key, key.product_id))
                keys.append(key)

        shares = split_equal(edit.new_aggregate_value, len(keys))
        result = DistributionResult(
            target_metric=RowType(edit.target_metric).value,
            period=edit.period,
            requested_total=Decimal(str(edit.new_aggregate_value)),
            records_attempted=len(keys),
            atomic=bool(self.store.supports_atomic_batches),
        )

        # Overrides of every product of these customers feed the location fallbacks.
        lookup = self.store.query(FilterScope(customer_ids=sorted({k.customer_key for k in keys})))
        deadline.check()

        reviewed_by = identity.user_id if identity else None
        reviewed_at = datetime.now(timezone.utc)
        lock_keys = [(k.customer_key, k.product_id, edit.period) for k in keys]

        with self.store.locks.hold(lock_keys, timeout=self.lock_timeout):
            pending: List[Tuple[UpsertOp, Decimal]] = []
            for key, share in zip(keys, shares):
                location = key.location_key or self.resolver.resolve(
                    LocationQuery(key.customer_key, key.product_id, scope, lookup.override_records)
                )
                if location is None:
                    result.failed_keys.append(FailedKey(key.customer_key, key.product_id, None, "unresolved_location"))
                    continue
                op = UpsertOp(
                    customer_key=key.customer_key,
                    product_id=key.product_id,
                    location_key=location,
                    period=edit.period,
                    field=selector.write_field,
                    value=float(share),
                    reviewed_by=reviewed_by,
                    reviewed_at=reviewed_at,
                )
                pending.append((replace(op, expected_version=self.store.current_version(op)), share))

            if self.store.supports_atomic_batches:
                self._write_batch(pending, result)
            else:
                self._write_sequential(pending, result, deadline)

        if result.failed_keys:
            logger.warning(
                "Distribution of %s for %s partially failed: %s/%s written, failed=%s",
                result.target_metric,
                edit.period,
                result.records_succeeded,
                result.records_attempted,
                [(f.customer_key, f.product_id, f.reason) for f in result.failed_keys],
            )
        else:
            logger.info(
                "Distributed %s=%s for %s across %s record(s)",
                result.target_metric,
                result.requested_total,
                edit.period,
                result.records_succeeded,
            )
        return result

    def _write_batch(self, pending: Sequence[Tuple[UpsertOp, Decimal]], result: DistributionResult) -> None:
        if not pending:
            return
        shares = {op.record_key: share for op, share in pending}
        batch = self.store.batch_upsert([op for op, _ in pending])
        for op in batch.succeeded:
            result.persisted[(op.customer_key, op.product_id)] = shares[op.record_key]
            result.records_succeeded += 1
        for op, reason in batch.failed:
            result.failed_keys.append(FailedKey(op.customer_key, op.product_id, op.location_key, reason))

    def _write_sequential(
        self,
        pending: Sequence[Tuple[UpsertOp, Decimal]],
        result: DistributionResult,
        deadline: Deadline,
    ) -> None:
        for op, share in pending:
            if deadline.expired():
                result.failed_keys.append(FailedKey(op.customer_key, op.product_id, op.location_key, "timeout"))
                continue
            reason = None
            for attempt in range(1, self.max_attempts + 1):
                try:
                    self.store.upsert(op)
                    reason = None
                    break
                except ConflictError as exc:
                    reason = f"conflict: {exc.message}"
                    break
                except PlanningError as exc:
                    reason = str(exc)
                    logger.warning(
                        "Write %s/%s attempt %s of %s failed: %s",
                        op.customer_key,
                        op.product_id,
                        attempt,
                        self.max_attempts,
                        exc,
                    )
            if reason is None:
                result.persisted[(op.customer_key, op.product_id)] = share
                result.records_succeeded += 1
            else:
                result.failed_keys.append(FailedKey(op.customer_key, op.product_id, op.location_key, reason))
