"""
allocation_engine.py — Cross-case batch allocation of inventory units

All cases scheduled for one facility/date contend for the same finite pool of
physical units. The allocator decides, once and deterministically, which units
each case may count before any case is evaluated:

  1. Pool    : every AVAILABLE or RESERVED unit, grouped by catalog item.
               RESERVED units are eligible only for the case they are reserved for.
  2. Cases   : scheduled_time ascending (unscheduled last), then creation order, then id.
  3. Claims  : per case, requirements in criticality-descending order; each claims up
               to ``quantity`` valid units: units reserved for the case first, then
               first-expiring-first-used, ties by unit id.
  4. Remove  : claimed units leave the pool immediately, so no unit is ever claimed twice.
  5. Substitute: a substitutable item that is still short draws from its configured
               substitutes' pools in priority order.

Greedy single pass, not an optimal matching: the same inputs always produce the same
allocation, and every shortfall can be explained from the order above.
Nothing is written anywhere; claims exist only in the returned BatchAllocation.
"""
from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from app.models.readiness_types import (
    POOL_STATUSES,
    AvailabilityStatus,
    CaseForReadiness,
    CaseRequirement,
    CatalogItem,
    InventoryUnit,
)
from app.services.civil_date import as_utc
from app.services.readiness_engine import requirement_sort_key, unit_failure
from app.services.readiness_errors import AllocationDeadlineExceeded

logger = logging.getLogger("asc-readiness.allocator")


@dataclass
class RequirementClaim:
    requirement_id: str
    catalog_id: str
    quantity: int
    primary_units: List[InventoryUnit] = field(default_factory=list)
    substitute_units: List[InventoryUnit] = field(default_factory=list)
    rejections: Counter = field(default_factory=Counter)

    @property
    def units(self) -> List[InventoryUnit]:
        return self.primary_units + self.substitute_units

    @property
    def claimed_count(self) -> int:
        return len(self.primary_units) + len(self.substitute_units)


@dataclass
class CaseAllocation:
    case_id: str
    claims: Dict[str, RequirementClaim] = field(default_factory=dict)

    def units_by_requirement(self) -> Dict[str, List[InventoryUnit]]:
        return {req_id: claim.units for req_id, claim in self.claims.items()}

    def rejections_by_requirement(self) -> Dict[str, Counter]:
        return {req_id: claim.rejections for req_id, claim in self.claims.items()}

    def unit_ids(self) -> List[str]:
        return sorted(u.id for claim in self.claims.values() for u in claim.units)


@dataclass
class BatchAllocation:
    case_order: List[str] = field(default_factory=list)
    cases: Dict[str, CaseAllocation] = field(default_factory=dict)

    def for_case(self, case_id: str) -> CaseAllocation:
        return self.cases.get(case_id) or CaseAllocation(case_id=case_id)

    def claimed_unit_ids(self) -> List[str]:
        return [uid for cid in self.case_order for uid in self.cases[cid].unit_ids()]


def case_sort_key(case: CaseForReadiness) -> Tuple:
    """scheduled_time ascending with NULLs last, then creation order, then id."""
    return (
        case.scheduled_time is None,
        case.scheduled_time.isoformat() if case.scheduled_time is not None else "",
        as_utc(case.created_at),
        case.id,
    )


def expiry_sort_key(unit: InventoryUnit) -> Tuple:
    """Soonest sterility expiry first; units that never expire last; then unit id."""
    expires_at = as_utc(unit.sterility_expires_at)
    return (expires_at is None, expires_at.isoformat() if expires_at else "", unit.id)


class BatchAllocator:
    """
    One allocator instance serves one batch run.

    ``substitutes`` maps a catalog id to its substitute catalog ids, already in
    priority order. ``deadline`` is a ``clock()`` value after which the run aborts.
    """

    def __init__(
        self,
        catalog: Mapping[str, CatalogItem],
        inventory: Sequence[InventoryUnit],
        substitutes: Optional[Mapping[str, Sequence[str]]] = None,
        deadline: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.catalog = catalog
        self.substitutes = substitutes or {}
        self.deadline = deadline
        self.clock = clock
        self._pool: Dict[str, List[InventoryUnit]] = {}
        for unit in inventory:
            if unit.availability_status not in POOL_STATUSES:
                continue
            self._pool.setdefault(unit.catalog_id, []).append(unit)
        for units in self._pool.values():
            units.sort(key=expiry_sort_key)
        self._claimed: Set[str] = set()

    # -----------------------------------------------------------------------

    def allocate(
        self,
        cases: Sequence[CaseForReadiness],
        requirements_by_case: Mapping[str, Sequence[CaseRequirement]],
        cutoff: datetime,
        ordered: bool = False,
    ) -> BatchAllocation:
        """
        Allocate for all ``cases``. With ``ordered=True`` the given order is kept
        (used when a single out-of-day case is appended after its day's batch).
        """
        ordered_cases = list(cases) if ordered else sorted(cases, key=case_sort_key)
        result = BatchAllocation()

        for index, case in enumerate(ordered_cases):
            if self.deadline is not None and self.clock() > self.deadline:
                raise AllocationDeadlineExceeded(index, len(ordered_cases))
            if case.id in result.cases:
                continue
            allocation = CaseAllocation(case_id=case.id)
            requirements = sorted(
                requirements_by_case.get(case.id, ()),
                key=lambda r: requirement_sort_key(r, self.catalog),
            )
            for req in requirements:
                allocation.claims[req.id] = self._claim_requirement(case.id, req, cutoff)
            result.case_order.append(case.id)
            result.cases[case.id] = allocation
            logger.debug(
                f"Allocated case {case.id}: {len(allocation.unit_ids())} units "
                f"across {len(requirements)} requirements"
            )

        logger.info(
            f"Batch allocation complete: {len(result.case_order)} cases, "
            f"{len(self._claimed)} units claimed"
        )
        return result

    # -----------------------------------------------------------------------

    def _claim_requirement(self, case_id: str, req: CaseRequirement, cutoff: datetime) -> RequirementClaim:
        claim = RequirementClaim(requirement_id=req.id, catalog_id=req.catalog_id, quantity=req.quantity)
        item = self.catalog.get(req.catalog_id)
        if item is None or not item.active or req.quantity <= 0:
            return claim

        claim.primary_units = self._take(case_id, item, req.quantity, cutoff, claim.rejections)

        if claim.claimed_count < req.quantity and item.substitutable:
            for substitute_id in self.substitutes.get(req.catalog_id, ()):
                remaining = req.quantity - claim.claimed_count
                if remaining <= 0:
                    break
                substitute = self.catalog.get(substitute_id)
                if substitute is None or not substitute.active or substitute_id == req.catalog_id:
                    continue
                taken = self._take(case_id, substitute, remaining, cutoff, None)
                if taken:
                    logger.debug(
                        f"Case {case_id}: {len(taken)} x {substitute_id} substituted for {req.catalog_id}"
                    )
                claim.substitute_units.extend(taken)
        return claim

    def _take(
        self,
        case_id: str,
        item: CatalogItem,
        wanted: int,
        cutoff: datetime,
        rejections: Optional[Counter],
    ) -> List[InventoryUnit]:
        eligible = [
            u for u in self._pool.get(item.id, ())
            if u.id not in self._claimed and self._eligible_for(u, case_id)
        ]
        # Stable sort keeps expiry order within each group.
        eligible.sort(key=lambda u: 0 if u.availability_status == AvailabilityStatus.RESERVED else 1)

        taken: List[InventoryUnit] = []
        for unit in eligible:
            if len(taken) >= wanted:
                break
            failure = unit_failure(unit, item, case_id, cutoff)
            if failure is not None:
                if rejections is not None:
                    rejections[failure] += 1
                continue
            taken.append(unit)
            self._claimed.add(unit.id)
        return taken

    @staticmethod
    def _eligible_for(unit: InventoryUnit, case_id: str) -> bool:
        if unit.availability_status == AvailabilityStatus.RESERVED:
            return unit.reserved_for_case_id == case_id
        return True


def rejection_summary(allocation: BatchAllocation) -> Dict[str, Dict[str, int]]:
    """Per-case rejection totals by reason; used for recompute logging."""
    summary: Dict[str, Dict[str, int]] = {}
    for case_id in allocation.case_order:
        totals: Counter = Counter()
        for claim in allocation.cases[case_id].claims.values():
            totals.update(claim.rejections)
        if totals:
            summary[case_id] = {reason.value: count for reason, count in sorted(totals.items(), key=lambda kv: kv[0].value)}
    return summary

