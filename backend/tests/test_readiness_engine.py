"""
test_readiness_engine.py — Unit tests for the single-case readiness evaluator.

Tests cover:
  - unit_failure: expiry cutoff, lot/serial tracking, availability and reservations
  - dominant_failure: frequency first, fixed priority on ties
  - ReadinessEngine.evaluate_case: tri-state verdict, unresolvable catalog items,
    non-gating items, quantity caps, substitution entries, missing-item ordering,
    expiring-soon warnings and attestation currency

All tests are pure unit tests; no database or external services required.
"""

from collections import Counter
from datetime import datetime, timedelta

import pytest

from app.models.readiness_types import (
    AttestationType,
    AvailabilityStatus,
    Criticality,
    MissingReason,
    ReadinessState,
    SterilityStatus,
)
from app.services.civil_date import cutoff_instant
from app.services.readiness_engine import (
    UNKNOWN_ITEM_NAME,
    ReadinessEngine,
    dominant_failure,
    unit_failure,
)
from conftest import DAY, make_attestation, make_case, make_item, make_req, make_unit

CUTOFF = cutoff_instant(DAY)


@pytest.fixture
def engine():
    return ReadinessEngine()


# ===========================================================================
# Unit validity
# ===========================================================================

class TestUnitFailure:

    def test_valid_unit_passes(self, scalpel):
        unit = make_unit("u1", scalpel.id, sterility_expires_at=CUTOFF + timedelta(days=30))
        assert unit_failure(unit, scalpel, "case-1", CUTOFF) is None

    def test_expired_status_fails_expiration_tracked_item(self, scalpel):
        unit = make_unit("u1", scalpel.id, sterility_status=SterilityStatus.EXPIRED)
        assert unit_failure(unit, scalpel, "case-1", CUTOFF) == MissingReason.STERILITY_EXPIRED

    def test_expiry_exactly_at_cutoff_fails(self, scalpel):
        unit = make_unit("u1", scalpel.id, sterility_expires_at=CUTOFF)
        assert unit_failure(unit, scalpel, "case-1", CUTOFF) == MissingReason.STERILITY_EXPIRED

    def test_expiry_one_second_after_cutoff_passes(self, scalpel):
        unit = make_unit("u1", scalpel.id, sterility_expires_at=CUTOFF + timedelta(seconds=1))
        assert unit_failure(unit, scalpel, "case-1", CUTOFF) is None

    def test_naive_expiry_is_read_as_utc(self, scalpel):
        naive = datetime(DAY.year, DAY.month, DAY.day) - timedelta(hours=1)
        unit = make_unit("u1", scalpel.id, sterility_expires_at=naive)
        assert unit_failure(unit, scalpel, "case-1", CUTOFF) == MissingReason.STERILITY_EXPIRED

    def test_expiry_ignored_when_item_not_expiration_tracked(self, gauze):
        unit = make_unit("u1", gauze.id, sterility_status=SterilityStatus.EXPIRED, sterility_expires_at=CUTOFF)
        assert unit_failure(unit, gauze, "case-1", CUTOFF) is None

    def test_missing_lot(self, scalpel):
        unit = make_unit("u1", scalpel.id, lot_number=None)
        assert unit_failure(unit, scalpel, "case-1", CUTOFF) == MissingReason.MISSING_LOT

    def test_missing_serial(self):
        implant = make_item("cat-implant", requires_serial_tracking=True)
        unit = make_unit("u1", implant.id, serial_number="")
        assert unit_failure(unit, implant, "case-1", CUTOFF) == MissingReason.MISSING_SERIAL

    def test_expiry_reported_before_lot(self, scalpel):
        unit = make_unit("u1", scalpel.id, lot_number=None, sterility_status=SterilityStatus.EXPIRED)
        assert unit_failure(unit, scalpel, "case-1", CUTOFF) == MissingReason.STERILITY_EXPIRED

    def test_reserved_for_other_case_not_available(self, gauze):
        unit = make_unit(
            "u1", gauze.id,
            availability_status=AvailabilityStatus.RESERVED,
            reserved_for_case_id="case-2",
        )
        assert unit_failure(unit, gauze, "case-1", CUTOFF) == MissingReason.NOT_AVAILABLE

    def test_reserved_for_this_case_passes(self, gauze):
        unit = make_unit(
            "u1", gauze.id,
            availability_status=AvailabilityStatus.RESERVED,
            reserved_for_case_id="case-1",
        )
        assert unit_failure(unit, gauze, "case-1", CUTOFF) is None

    def test_in_use_not_available(self, gauze):
        unit = make_unit("u1", gauze.id, availability_status=AvailabilityStatus.IN_USE)
        assert unit_failure(unit, gauze, "case-1", CUTOFF) == MissingReason.NOT_AVAILABLE


class TestDominantFailure:

    def test_empty_counter(self):
        assert dominant_failure(Counter()) is None

    def test_most_frequent_wins(self):
        failures = Counter({MissingReason.MISSING_LOT: 1, MissingReason.NOT_AVAILABLE: 3})
        assert dominant_failure(failures) == MissingReason.NOT_AVAILABLE

    def test_tie_resolved_by_priority(self):
        failures = Counter({MissingReason.MISSING_SERIAL: 2, MissingReason.STERILITY_EXPIRED: 2})
        assert dominant_failure(failures) == MissingReason.STERILITY_EXPIRED


# ===========================================================================
# Verdict
# ===========================================================================

class TestVerdict:

    def test_all_satisfied_is_green(self, engine, scalpel, gauze):
        case = make_case("case-1")
        reqs = [make_req("r1", case.id, scalpel.id), make_req("r2", case.id, gauze.id, 2)]
        claimed = {
            "r1": [make_unit("u1", scalpel.id)],
            "r2": [make_unit("u2", gauze.id), make_unit("u3", gauze.id)],
        }
        out = engine.evaluate_case(case, reqs, {scalpel.id: scalpel, gauze.id: gauze}, claimed, [], CUTOFF)
        assert out.readiness_state == ReadinessState.GREEN
        assert out.missing_items == []
        assert out.total_required_items == 3
        assert out.total_verified_items == 3
        assert out.allocated_unit_ids == ["u1", "u2", "u3"]

    def test_partially_short_critical_is_red(self, engine, scalpel):
        case = make_case("case-1")
        reqs = [make_req("r1", case.id, scalpel.id, 2)]
        out = engine.evaluate_case(
            case, reqs, {scalpel.id: scalpel}, {"r1": [make_unit("u1", scalpel.id)]}, [], CUTOFF,
            rejections={"r1": Counter({MissingReason.MISSING_LOT: 1})},
        )
        assert out.readiness_state == ReadinessState.RED
        [missing] = out.missing_items
        assert missing.satisfied_quantity == 1
        assert missing.required_quantity == 2
        assert missing.reason == MissingReason.INSUFFICIENT_QUANTITY
        assert missing.to_dict()["reason_label"] == "insufficient stock"

    def test_short_non_critical_is_orange(self, engine, scalpel, gauze):
        case = make_case("case-1")
        reqs = [make_req("r1", case.id, scalpel.id), make_req("r2", case.id, gauze.id, 2)]
        claimed = {"r1": [make_unit("u1", scalpel.id)], "r2": [make_unit("u2", gauze.id)]}
        out = engine.evaluate_case(case, reqs, {scalpel.id: scalpel, gauze.id: gauze}, claimed, [], CUTOFF)
        assert out.readiness_state == ReadinessState.ORANGE
        assert [m.catalog_id for m in out.missing_items] == [gauze.id]

    def test_important_partial_shortfall_is_orange(self, engine):
        retractor = make_item("cat-retractor", criticality=Criticality.IMPORTANT)
        case = make_case("case-1")
        out = engine.evaluate_case(
            case, [make_req("r1", case.id, retractor.id, 2)], {retractor.id: retractor},
            {"r1": [make_unit("u1", retractor.id)]}, [], CUTOFF,
        )
        assert out.readiness_state == ReadinessState.ORANGE
        assert out.overridden_by_attestation is False

    def test_non_critical_with_no_valid_unit_is_red(self, engine):
        retractor = make_item("cat-retractor", criticality=Criticality.IMPORTANT)
        case = make_case("case-1")
        out = engine.evaluate_case(
            case, [make_req("r1", case.id, retractor.id)], {retractor.id: retractor}, {}, [], CUTOFF
        )
        assert out.readiness_state == ReadinessState.RED
        assert out.computed_state == ReadinessState.RED
        assert out.missing_items[0].satisfied_quantity == 0

    def test_zero_claimed_reports_dominant_rejection(self, engine, scalpel):
        case = make_case("case-1")
        out = engine.evaluate_case(
            case, [make_req("r1", case.id, scalpel.id)], {scalpel.id: scalpel}, {}, [], CUTOFF,
            rejections={"r1": Counter({MissingReason.MISSING_LOT: 2, MissingReason.NOT_AVAILABLE: 1})},
        )
        assert out.missing_items[0].reason == MissingReason.MISSING_LOT
        assert out.missing_items[0].to_dict()["reason_label"] == "missing lot"

    def test_zero_claimed_without_rejections_is_insufficient(self, engine, scalpel):
        case = make_case("case-1")
        out = engine.evaluate_case(case, [make_req("r1", case.id, scalpel.id)], {scalpel.id: scalpel}, {}, [], CUTOFF)
        assert out.missing_items[0].reason == MissingReason.INSUFFICIENT_QUANTITY

    def test_claimed_unit_is_revalidated(self, engine, scalpel):
        case = make_case("case-1")
        expired = make_unit("u1", scalpel.id, sterility_status=SterilityStatus.EXPIRED)
        out = engine.evaluate_case(
            case, [make_req("r1", case.id, scalpel.id)], {scalpel.id: scalpel}, {"r1": [expired]}, [], CUTOFF
        )
        assert out.readiness_state == ReadinessState.RED
        assert out.missing_items[0].reason == MissingReason.STERILITY_EXPIRED
        assert out.total_verified_items == 0

    def test_unknown_catalog_item_is_red(self, engine, gauze):
        case = make_case("case-1")
        reqs = [make_req("r1", case.id, "cat-gone", 2), make_req("r2", case.id, gauze.id)]
        out = engine.evaluate_case(
            case, reqs, {gauze.id: gauze}, {"r2": [make_unit("u1", gauze.id)]}, [], CUTOFF
        )
        assert out.readiness_state == ReadinessState.RED
        [missing] = out.missing_items
        assert missing.catalog_name == UNKNOWN_ITEM_NAME
        assert missing.criticality == Criticality.CRITICAL
        assert missing.reason == MissingReason.NOT_IN_CATALOG
        assert out.total_required_items == 3

    def test_inactive_catalog_item_is_red(self, engine):
        retired = make_item("cat-old", active=False)
        case = make_case("case-1")
        out = engine.evaluate_case(case, [make_req("r1", case.id, retired.id)], {retired.id: retired}, {}, [], CUTOFF)
        assert out.readiness_state == ReadinessState.RED
        assert out.missing_items[0].reason == MissingReason.NOT_IN_CATALOG

    def test_non_gating_item_is_skipped(self, engine):
        optional = make_item("cat-opt", criticality=Criticality.CRITICAL, readiness_required=False)
        case = make_case("case-1")
        out = engine.evaluate_case(case, [make_req("r1", case.id, optional.id)], {optional.id: optional}, {}, [], CUTOFF)
        assert out.readiness_state == ReadinessState.GREEN
        assert out.total_required_items == 0

    def test_satisfied_count_never_exceeds_quantity(self, engine, gauze):
        case = make_case("case-1")
        claimed = {"r1": [make_unit("u1", gauze.id), make_unit("u2", gauze.id), make_unit("u3", gauze.id)]}
        out = engine.evaluate_case(case, [make_req("r1", case.id, gauze.id, 2)], {gauze.id: gauze}, claimed, [], CUTOFF)
        assert out.total_verified_items == 2
        assert out.total_required_items == 2

    def test_substitute_satisfaction_is_reported(self, engine):
        primary = make_item("cat-a", name="Suture A", substitutable=True, criticality=Criticality.CRITICAL)
        alternate = make_item("cat-b", name="Suture B")
        case = make_case("case-1")
        out = engine.evaluate_case(
            case, [make_req("r1", case.id, primary.id, 2)],
            {primary.id: primary, alternate.id: alternate},
            {"r1": [make_unit("u1", primary.id), make_unit("u2", alternate.id)]},
            [], CUTOFF,
        )
        assert out.readiness_state == ReadinessState.GREEN
        [entry] = out.missing_items
        assert entry.reason == MissingReason.SATISFIED_VIA_SUBSTITUTE
        assert entry.substitute_catalog_ids == [alternate.id]
        assert entry.satisfied_quantity == 2

    def test_missing_items_ordered_by_criticality_then_name(self, engine):
        items = {
            "c1": make_item("c1", name="Zeta", criticality=Criticality.ROUTINE),
            "c2": make_item("c2", name="Alpha", criticality=Criticality.ROUTINE),
            "c3": make_item("c3", name="Mid", criticality=Criticality.CRITICAL),
        }
        case = make_case("case-1")
        reqs = [make_req(f"r{i}", case.id, cid) for i, cid in enumerate(items)]
        out = engine.evaluate_case(case, reqs, items, {}, [], CUTOFF)
        assert [m.catalog_name for m in out.missing_items] == ["Mid", "Alpha", "Zeta"]

    def test_expiring_soon_warning_does_not_change_verdict(self, engine):
        item = make_item("cat-mesh", requires_expiration_tracking=True, expiration_warning_days=3)
        case = make_case("case-1")
        unit = make_unit("u1", item.id, sterility_expires_at=CUTOFF + timedelta(days=2))
        out = engine.evaluate_case(case, [make_req("r1", case.id, item.id)], {item.id: item}, {"r1": [unit]}, [], CUTOFF)
        assert out.readiness_state == ReadinessState.GREEN
        assert [w.unit_id for w in out.expiring_soon] == ["u1"]

    def test_same_inputs_same_output(self, engine, scalpel, gauze):
        case = make_case("case-1")
        reqs = [make_req("r2", case.id, gauze.id, 3), make_req("r1", case.id, scalpel.id, 2)]
        claimed = {"r2": [make_unit("u2", gauze.id)]}
        catalog = {scalpel.id: scalpel, gauze.id: gauze}
        first = engine.evaluate_case(case, reqs, catalog, claimed, [], CUTOFF).to_dict()
        second = engine.evaluate_case(case, list(reversed(reqs)), catalog, claimed, [], CUTOFF).to_dict()
        assert first == second


# ===========================================================================
# Attestations
# ===========================================================================

class TestAttestations:

    def _green(self, engine, gauze, attestations):
        case = make_case("case-1")
        return engine.evaluate_case(
            case, [make_req("r1", case.id, gauze.id)], {gauze.id: gauze},
            {"r1": [make_unit("u1", gauze.id)]}, attestations, CUTOFF,
        )

    def test_current_attestation(self, engine, gauze):
        att = make_attestation("a1", "case-1", ReadinessState.GREEN)
        out = self._green(engine, gauze, [att])
        assert out.readiness_state == ReadinessState.GREEN
        assert out.has_attestation is True
        assert out.attestation_stale is False
        assert out.attestation_id == "a1"
        assert out.attested_by_user_id == "nurse-1"

    def test_stale_attestation(self, engine, gauze):
        att = make_attestation("a1", "case-1", ReadinessState.RED)
        out = self._green(engine, gauze, [att])
        assert out.readiness_state == ReadinessState.GREEN
        assert out.has_attestation is False
        assert out.attestation_stale is True
        assert out.attestation_id == "a1"

    def test_latest_attestation_wins(self, engine, gauze):
        older = make_attestation("a1", "case-1", ReadinessState.RED)
        newer = make_attestation("a2", "case-1", ReadinessState.GREEN, created_at=older.created_at + timedelta(hours=1))
        out = self._green(engine, gauze, [newer, older])
        assert out.attestation_id == "a2"
        assert out.has_attestation is True

    def test_voided_attestation_ignored(self, engine, gauze):
        att = make_attestation("a1", "case-1", ReadinessState.GREEN, voided_at=datetime(2026, 3, 2))
        out = self._green(engine, gauze, [att])
        assert out.has_attestation is False
        assert out.attestation_id is None

    def test_other_case_attestation_ignored(self, engine, gauze):
        att = make_attestation("a1", "case-9", ReadinessState.GREEN)
        assert self._green(engine, gauze, [att]).has_attestation is False

    def _gauze_empty(self, engine, gauze, attestations, extra_reqs=(), catalog=None):
        case = make_case("case-1")
        reqs = [make_req("r1", case.id, gauze.id, 2), *extra_reqs]
        return engine.evaluate_case(
            case, reqs, {gauze.id: gauze, **(catalog or {})}, {}, attestations, CUTOFF,
        )

    def test_red_attestation_overrides_empty_non_critical(self, engine, gauze):
        att = make_attestation("a1", "case-1", ReadinessState.RED)
        out = self._gauze_empty(engine, gauze, [att])
        assert out.readiness_state == ReadinessState.ORANGE
        assert out.computed_state == ReadinessState.RED
        assert out.overridden_by_attestation is True
        assert out.has_attestation is True
        assert out.attestation_stale is False
        assert out.to_dict()["overridden_by_attestation"] is True
        assert [m.catalog_id for m in out.missing_items] == [gauze.id]

    def test_voided_attestation_does_not_override(self, engine, gauze):
        att = make_attestation("a1", "case-1", ReadinessState.RED, voided_at=datetime(2026, 3, 2))
        out = self._gauze_empty(engine, gauze, [att])
        assert out.readiness_state == ReadinessState.RED
        assert out.overridden_by_attestation is False

    def test_stale_attestation_does_not_override(self, engine, gauze):
        att = make_attestation("a1", "case-1", ReadinessState.GREEN)
        out = self._gauze_empty(engine, gauze, [att])
        assert out.readiness_state == ReadinessState.RED
        assert out.attestation_stale is True
        assert out.overridden_by_attestation is False

    def test_acknowledgment_does_not_override(self, engine, gauze):
        ack = make_attestation("a1", "case-1", ReadinessState.RED, kind=AttestationType.SURGEON_ACKNOWLEDGMENT)
        out = self._gauze_empty(engine, gauze, [ack])
        assert out.readiness_state == ReadinessState.RED
        assert out.has_surgeon_acknowledgment is True

    def test_attestation_never_overrides_critical_shortfall(self, engine, gauze, scalpel):
        att = make_attestation("a1", "case-1", ReadinessState.RED)
        out = self._gauze_empty(
            engine, gauze, [att], extra_reqs=[make_req("r2", "case-1", scalpel.id)],
            catalog={scalpel.id: scalpel},
        )
        assert out.readiness_state == ReadinessState.RED
        assert out.has_attestation is True
        assert out.overridden_by_attestation is False

    def test_attestation_never_overrides_unknown_item(self, engine, gauze):
        att = make_attestation("a1", "case-1", ReadinessState.RED)
        out = self._gauze_empty(engine, gauze, [att], extra_reqs=[make_req("r2", "case-1", "cat-gone")])
        assert out.readiness_state == ReadinessState.RED
        assert out.overridden_by_attestation is False

    def test_surgeon_acknowledgment_tracked_separately(self, engine, gauze):
        ack = make_attestation("a1", "case-1", ReadinessState.RED, kind=AttestationType.SURGEON_ACKNOWLEDGMENT)
        out = self._green(engine, gauze, [ack])
        assert out.has_surgeon_acknowledgment is True
        assert out.surgeon_acknowledgment_id == "a1"
        assert out.has_attestation is False
        assert out.attestation_stale is False
