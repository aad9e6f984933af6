"""
readiness_engine.py — Day-before Readiness Evaluator

Pure evaluation of one surgical case against the inventory units the batch
allocator has already claimed for it. No I/O; identical inputs always produce an
identical ReadinessOutput (content and ordering).

Verdict rules:
  - RED    : a CRITICAL requirement is short (partially or fully), a requirement
             references a catalog item that is unknown or inactive, or a
             non-critical requirement has no valid unit at all
  - ORANGE : no RED condition, but some non-critical requirement is partially short
  - GREEN  : every readiness-gating requirement is fully satisfied

A CASE_READINESS attestation is *current* only while its recorded state equals
the state computed from data; otherwise it is reported as stale. A current
attestation recorded at RED overrides a RED that comes only from non-critical
requirements with no valid unit, and the case reports ORANGE. It never overrides
a critical shortfall or an unresolvable catalog item. SURGEON_ACKNOWLEDGMENT is
tracked separately and never changes the verdict.
"""
from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

from app.models.readiness_types import (
    CRITICALITY_RANK,
    FAILURE_PRIORITY,
    Attestation,
    AttestationType,
    AvailabilityStatus,
    CaseForReadiness,
    CaseRequirement,
    CatalogItem,
    Criticality,
    ExpiringUnit,
    InventoryUnit,
    MissingItem,
    MissingReason,
    ReadinessOutput,
    ReadinessState,
    SterilityStatus,
)
from app.services.civil_date import as_utc

logger = logging.getLogger("asc-readiness.engine")

UNKNOWN_ITEM_NAME = "[Unknown Item]"


# ---------------------------------------------------------------------------
# Unit validity
# ---------------------------------------------------------------------------

def unit_failure(
    unit: InventoryUnit,
    catalog_item: CatalogItem,
    case_id: str,
    cutoff: datetime,
) -> Optional[MissingReason]:
    """
    Return the first rule a unit breaks for ``case_id``, or None if it may count.

    Checks run in FAILURE_PRIORITY order so the reported reason is stable.
    """
    if catalog_item.requires_expiration_tracking:
        if unit.sterility_status == SterilityStatus.EXPIRED:
            return MissingReason.STERILITY_EXPIRED
        expires_at = as_utc(unit.sterility_expires_at)
        if expires_at is not None and expires_at <= cutoff:
            return MissingReason.STERILITY_EXPIRED
    if catalog_item.requires_lot_tracking and not unit.lot_number:
        return MissingReason.MISSING_LOT
    if catalog_item.requires_serial_tracking and not unit.serial_number:
        return MissingReason.MISSING_SERIAL
    if not is_available_for_case(unit, case_id):
        return MissingReason.NOT_AVAILABLE
    return None


def is_available_for_case(unit: InventoryUnit, case_id: str) -> bool:
    if unit.availability_status == AvailabilityStatus.AVAILABLE:
        return True
    return (
        unit.availability_status == AvailabilityStatus.RESERVED
        and unit.reserved_for_case_id == case_id
    )


def dominant_failure(failures: Counter) -> Optional[MissingReason]:
    """Most frequent failure; ties resolved by FAILURE_PRIORITY."""
    if not failures:
        return None
    return min(
        failures,
        key=lambda reason: (-failures[reason], FAILURE_PRIORITY.index(reason)),
    )


def requirement_sort_key(req: CaseRequirement, catalog: Mapping[str, CatalogItem]) -> Tuple:
    """Criticality descending, then catalog name, then ids. Unknown items sort first."""
    item = catalog.get(req.catalog_id)
    if item is None or not item.active:
        return (-(CRITICALITY_RANK[Criticality.CRITICAL] + 1), UNKNOWN_ITEM_NAME, req.catalog_id, req.id)
    return (-CRITICALITY_RANK[item.criticality], item.name, req.catalog_id, req.id)


def _missing_sort_key(item: MissingItem) -> Tuple:
    return (-CRITICALITY_RANK[item.criticality], item.catalog_name, item.catalog_id, item.reason.value)


def _latest(attestations: Iterable[Attestation]) -> Optional[Attestation]:
    latest = None
    for att in attestations:
        if latest is None or (as_utc(att.created_at), att.id) > (as_utc(latest.created_at), latest.id):
            latest = att
    return latest


# ---------------------------------------------------------------------------
# ReadinessEngine
# ---------------------------------------------------------------------------

class ReadinessEngine:
    """Stateless evaluator; one instance may be shared across requests."""

    def evaluate_case(
        self,
        case: CaseForReadiness,
        requirements: Sequence[CaseRequirement],
        catalog: Mapping[str, CatalogItem],
        claimed_units: Mapping[str, Sequence[InventoryUnit]],
        attestations: Sequence[Attestation],
        cutoff: datetime,
        rejections: Optional[Mapping[str, Counter]] = None,
    ) -> ReadinessOutput:
        """
        Evaluate one case.

        ``claimed_units`` maps requirement id to the units the allocator claimed
        for it (primary units first, then substitutes). ``rejections`` maps
        requirement id to a Counter of MissingReason for units the allocator saw
        but could not use; it only sharpens the explanation.
        """
        rejections = rejections or {}
        missing: List[MissingItem] = []
        expiring: List[ExpiringUnit] = []
        total_required = 0
        total_verified = 0
        red = False
        overridable = False
        orange = False

        for req in sorted(requirements, key=lambda r: requirement_sort_key(r, catalog)):
            catalog_item = catalog.get(req.catalog_id)
            if catalog_item is None or not catalog_item.active:
                logger.warning(
                    f"Case {case.id}: requirement {req.id} references unknown or inactive "
                    f"catalog item {req.catalog_id}; treating as unsatisfiable"
                )
                total_required += req.quantity
                missing.append(MissingItem(
                    catalog_id=req.catalog_id,
                    catalog_name=UNKNOWN_ITEM_NAME,
                    criticality=Criticality.CRITICAL,
                    required_quantity=req.quantity,
                    satisfied_quantity=0,
                    reason=MissingReason.NOT_IN_CATALOG,
                ))
                red = True
                continue

            if not catalog_item.readiness_required:
                continue

            total_required += req.quantity
            valid_primary, valid_substitute, failures = self._count_valid(
                req, catalog_item, claimed_units.get(req.id, ()), catalog, case.id, cutoff,
            )
            failures.update(rejections.get(req.id, Counter()))

            primary_used = valid_primary[: req.quantity]
            substitute_used = valid_substitute[: max(0, req.quantity - len(primary_used))]
            satisfied = len(primary_used) + len(substitute_used)
            total_verified += satisfied
            substitute_ids = sorted({u.catalog_id for u in substitute_used})

            for unit in primary_used + substitute_used:
                warning = self._expiry_warning(unit, catalog.get(unit.catalog_id), cutoff)
                if warning is not None:
                    expiring.append(warning)

            if satisfied >= req.quantity:
                if substitute_used:
                    missing.append(MissingItem(
                        catalog_id=req.catalog_id,
                        catalog_name=catalog_item.name,
                        criticality=catalog_item.criticality,
                        required_quantity=req.quantity,
                        satisfied_quantity=satisfied,
                        reason=MissingReason.SATISFIED_VIA_SUBSTITUTE,
                        substitute_catalog_ids=substitute_ids,
                    ))
                continue

            if satisfied > 0:
                reason = MissingReason.INSUFFICIENT_QUANTITY
            else:
                reason = dominant_failure(failures) or MissingReason.INSUFFICIENT_QUANTITY

            missing.append(MissingItem(
                catalog_id=req.catalog_id,
                catalog_name=catalog_item.name,
                criticality=catalog_item.criticality,
                required_quantity=req.quantity,
                satisfied_quantity=satisfied,
                reason=reason,
                substitute_catalog_ids=substitute_ids,
            ))
            if catalog_item.criticality == Criticality.CRITICAL:
                red = True
            elif satisfied == 0:
                overridable = True
            else:
                orange = True

        if red or overridable:
            state = ReadinessState.RED
        elif orange:
            state = ReadinessState.ORANGE
        else:
            state = ReadinessState.GREEN

        output = ReadinessOutput(
            case_id=case.id,
            readiness_state=state,
            missing_items=sorted(missing, key=_missing_sort_key),
            total_required_items=total_required,
            total_verified_items=total_verified,
            allocated_unit_ids=sorted(
                {u.id for units in claimed_units.values() for u in units}
            ),
            expiring_soon=sorted(expiring, key=lambda e: (e.expires_at, e.unit_id)),
        )
        self._apply_attestations(output, case.id, attestations, overridable and not red)
        return output

    # ------------------------------------------------------------------

    @staticmethod
    def _count_valid(
        req: CaseRequirement,
        catalog_item: CatalogItem,
        units: Sequence[InventoryUnit],
        catalog: Mapping[str, CatalogItem],
        case_id: str,
        cutoff: datetime,
    ) -> Tuple[List[InventoryUnit], List[InventoryUnit], Counter]:
        primary: List[InventoryUnit] = []
        substitutes: List[InventoryUnit] = []
        failures: Counter = Counter()
        seen = set()
        for unit in units:
            if unit.id in seen:
                continue
            seen.add(unit.id)
            unit_item = catalog_item if unit.catalog_id == req.catalog_id else catalog.get(unit.catalog_id)
            if unit_item is None:
                continue
            failure = unit_failure(unit, unit_item, case_id, cutoff)
            if failure is not None:
                failures[failure] += 1
            elif unit.catalog_id == req.catalog_id:
                primary.append(unit)
            else:
                substitutes.append(unit)
        return primary, substitutes, failures

    @staticmethod
    def _expiry_warning(
        unit: InventoryUnit,
        catalog_item: Optional[CatalogItem],
        cutoff: datetime,
    ) -> Optional[ExpiringUnit]:
        if catalog_item is None or catalog_item.expiration_warning_days is None:
            return None
        expires_at = as_utc(unit.sterility_expires_at)
        if expires_at is None:
            return None
        if expires_at <= cutoff + timedelta(days=catalog_item.expiration_warning_days):
            return ExpiringUnit(
                unit_id=unit.id,
                catalog_id=unit.catalog_id,
                catalog_name=catalog_item.name,
                expires_at=expires_at,
            )
        return None

    @staticmethod
    def _apply_attestations(
        output: ReadinessOutput,
        case_id: str,
        attestations: Sequence[Attestation],
        overridable: bool = False,
    ) -> None:
        active = [a for a in attestations if a.case_id == case_id and not a.is_voided]

        readiness = _latest(a for a in active if a.type == AttestationType.CASE_READINESS)
        if readiness is not None:
            current = readiness.readiness_state_at_time == output.readiness_state
            if current and overridable:
                output.readiness_state = ReadinessState.ORANGE
                output.overridden_by_attestation = True
            output.has_attestation = current
            output.attestation_stale = not current
            output.attested_at = readiness.created_at
            output.attestation_id = readiness.id
            output.attested_by_user_id = readiness.attested_by_user_id

        acknowledgment = _latest(a for a in active if a.type == AttestationType.SURGEON_ACKNOWLEDGMENT)
        if acknowledgment is not None:
            output.has_surgeon_acknowledgment = True
            output.surgeon_acknowledged_at = acknowledgment.created_at
            output.surgeon_acknowledgment_id = acknowledgment.id

