"""
conftest.py — Shared pytest fixtures for the readiness backend test suite.

No database fixtures are defined here. Service and route tests run against
``InMemoryReadinessStore``, an in-process implementation of the ReadinessStore
interface with call recording and failure injection.

Import-path bootstrapping:
    The ``backend/`` directory is inserted into sys.path so that all
    ``app.*`` imports resolve correctly regardless of where pytest is invoked.
"""

import sys
import os
from dataclasses import replace
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import pytest

# ---------------------------------------------------------------------------
# Ensure ``backend/`` is on the import path before any app imports occur.
# ---------------------------------------------------------------------------
_BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND_DIR not in sys.path:
    sys.path.insert(0, _BACKEND_DIR)

from app.config import RecomputeBudget  # noqa: E402
from app.models.readiness_types import (  # noqa: E402
    EXCLUDED_CASE_STATUSES,
    POOL_STATUSES,
    Attestation,
    AttestationType,
    AvailabilityStatus,
    CachedReadinessRow,
    CalendarCaseRecord,
    CaseForReadiness,
    CaseRequirement,
    CatalogItem,
    CatalogSubstituteRecord,
    Criticality,
    InventoryUnit,
    ReadinessState,
    SterilityStatus,
)
from app.services.perf_monitor import tracker  # noqa: E402
from app.services.readiness_service import ReadinessService  # noqa: E402


FACILITY = "fac-1"
OTHER_FACILITY = "fac-2"
DAY = date(2026, 3, 10)
CREATED = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Record builders
# ---------------------------------------------------------------------------

def make_item(item_id: str, **overrides) -> CatalogItem:
    fields = dict(id=item_id, facility_id=FACILITY, name=f"Item {item_id}")
    fields.update(overrides)
    return CatalogItem(**fields)


def make_unit(unit_id: str, catalog_id: str, **overrides) -> InventoryUnit:
    fields = dict(
        id=unit_id,
        facility_id=FACILITY,
        catalog_id=catalog_id,
        sterility_status=SterilityStatus.STERILE,
        availability_status=AvailabilityStatus.AVAILABLE,
        lot_number=f"LOT-{unit_id}",
        serial_number=f"SN-{unit_id}",
    )
    fields.update(overrides)
    return InventoryUnit(**fields)


def make_case(case_id: str, scheduled_time: Optional[time] = time(8, 0), **overrides) -> CaseForReadiness:
    fields = dict(
        id=case_id,
        facility_id=FACILITY,
        scheduled_date=DAY,
        procedure_name=f"Procedure {case_id}",
        surgeon_id="surgeon-1",
        created_at=CREATED,
        scheduled_time=scheduled_time,
    )
    fields.update(overrides)
    return CaseForReadiness(**fields)


def make_req(req_id: str, case_id: str, catalog_id: str, quantity: int = 1) -> CaseRequirement:
    return CaseRequirement(id=req_id, case_id=case_id, catalog_id=catalog_id, quantity=quantity)


def make_attestation(
    att_id: str,
    case_id: str,
    state: ReadinessState,
    kind: AttestationType = AttestationType.CASE_READINESS,
    created_at: datetime = CREATED,
    **overrides,
) -> Attestation:
    fields = dict(
        id=att_id,
        facility_id=FACILITY,
        case_id=case_id,
        type=kind,
        attested_by_user_id="nurse-1",
        readiness_state_at_time=state,
        created_at=created_at,
    )
    fields.update(overrides)
    return Attestation(**fields)


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class InMemoryReadinessStore:
    """
    ReadinessStore held in plain dicts.

    ``calls`` records every method invoked, in order. ``fail_on`` names a method
    that raises RuntimeError before touching any state.
    """

    def __init__(self):
        self.cases: Dict[str, CaseForReadiness] = {}
        self.requirements: List[CaseRequirement] = []
        self.catalog: Dict[str, CatalogItem] = {}
        self.inventory: Dict[str, InventoryUnit] = {}
        self.substitutes: List[CatalogSubstituteRecord] = []
        self.attestations: Dict[str, Attestation] = {}
        self.users: Dict[str, Tuple[str, Optional[str]]] = {}
        self.cache: Dict[Tuple[str, date], CachedReadinessRow] = {}
        self.calls: List[str] = []
        self.fail_on: Optional[str] = None

    # -- seeding ------------------------------------------------------------

    def add(self, *records):
        for record in records:
            if isinstance(record, CaseForReadiness):
                self.cases[record.id] = record
            elif isinstance(record, CaseRequirement):
                self.requirements.append(record)
            elif isinstance(record, CatalogItem):
                self.catalog[record.id] = record
            elif isinstance(record, InventoryUnit):
                self.inventory[record.id] = record
            elif isinstance(record, Attestation):
                self.attestations[record.id] = record
            elif isinstance(record, CatalogSubstituteRecord):
                self.substitutes.append(record)
            else:
                raise TypeError(f"cannot seed {record!r}")
        return self

    def add_user(self, user_id: str, name: str, color: Optional[str] = None):
        self.users[user_id] = (name, color)
        return self

    def update_unit(self, unit_id: str, **changes):
        self.inventory[unit_id] = replace(self.inventory[unit_id], **changes)

    def replace_count(self) -> int:
        return self.calls.count("replace_cached_rows")

    def _enter(self, name: str):
        self.calls.append(name)
        if self.fail_on == name:
            raise RuntimeError(f"injected failure in {name}")

    # -- ReadinessStore -----------------------------------------------------

    async def fetch_cases_for_date(self, facility_id, scheduled_date):
        self._enter("fetch_cases_for_date")
        return sorted(
            (
                c for c in self.cases.values()
                if c.facility_id == facility_id
                and c.scheduled_date == scheduled_date
                and c.status not in EXCLUDED_CASE_STATUSES
            ),
            key=lambda c: c.id,
        )

    async def fetch_case(self, facility_id, case_id):
        self._enter("fetch_case")
        case = self.cases.get(case_id)
        return case if case is not None and case.facility_id == facility_id else None

    async def fetch_requirements(self, case_ids):
        self._enter("fetch_requirements")
        grouped: Dict[str, List[CaseRequirement]] = {}
        for req in sorted(self.requirements, key=lambda r: (r.case_id, r.id)):
            if req.case_id in case_ids:
                grouped.setdefault(req.case_id, []).append(req)
        return grouped

    async def fetch_catalog(self, facility_id):
        self._enter("fetch_catalog")
        return {k: v for k, v in self.catalog.items() if v.facility_id == facility_id}

    async def fetch_inventory(self, facility_id):
        self._enter("fetch_inventory")
        return sorted(
            (
                u for u in self.inventory.values()
                if u.facility_id == facility_id and u.availability_status in POOL_STATUSES
            ),
            key=lambda u: u.id,
        )

    async def fetch_substitutes(self, facility_id):
        self._enter("fetch_substitutes")
        mapping: Dict[str, List[str]] = {}
        rows = sorted(
            (s for s in self.substitutes if s.facility_id == facility_id),
            key=lambda s: (s.catalog_id, s.priority, s.substitute_catalog_id),
        )
        for row in rows:
            mapping.setdefault(row.catalog_id, []).append(row.substitute_catalog_id)
        return mapping

    async def fetch_attestations(self, case_ids, include_voided=False):
        self._enter("fetch_attestations")
        return sorted(
            (
                a for a in self.attestations.values()
                if a.case_id in case_ids and (include_voided or not a.is_voided)
            ),
            key=lambda a: (a.created_at, a.id),
        )

    async def fetch_user_names(self, user_ids):
        self._enter("fetch_user_names")
        return {uid: self.users[uid][0] for uid in user_ids if uid in self.users}

    async def fetch_cached_rows(self, facility_id, scheduled_date):
        self._enter("fetch_cached_rows")
        return [
            row for (case_id, d), row in self.cache.items()
            if row.facility_id == facility_id and d == scheduled_date
        ]

    async def replace_cached_rows(self, facility_id, scheduled_date, rows):
        self._enter("replace_cached_rows")
        kept = {
            key: row for key, row in self.cache.items()
            if not (row.facility_id == facility_id and key[1] == scheduled_date)
        }
        for row in rows:
            kept[(row.case_id, row.scheduled_date)] = row
        self.cache = kept

    async def fetch_calendar_cases(self, facility_id, start_date, end_date):
        self._enter("fetch_calendar_cases")
        records = []
        for case in sorted(self.cases.values(), key=lambda c: c.id):
            if case.facility_id != facility_id or case.scheduled_date is None:
                continue
            if not (start_date <= case.scheduled_date <= end_date):
                continue
            if case.status in EXCLUDED_CASE_STATUSES:
                continue
            cached = self.cache.get((case.id, case.scheduled_date))
            name, color = self.users.get(case.surgeon_id, ("Unknown", None))
            records.append(CalendarCaseRecord(
                case_id=case.id,
                case_number=None,
                scheduled_date=case.scheduled_date,
                scheduled_time=case.scheduled_time,
                procedure_name=case.procedure_name,
                laterality=None,
                surgeon_name=name,
                surgeon_color=color,
                readiness_state=cached.readiness_state if cached else None,
                is_active=case.is_active,
                room_id=None,
                room_name=None,
            ))
        return records

    async def insert_attestation(self, attestation):
        self._enter("insert_attestation")
        self.attestations[attestation.id] = attestation
        return attestation

    async def fetch_attestation(self, facility_id, attestation_id):
        self._enter("fetch_attestation")
        att = self.attestations.get(attestation_id)
        return att if att is not None and att.facility_id == facility_id else None

    async def void_attestation(self, attestation_id, voided_by_user_id, voided_at):
        self._enter("void_attestation")
        voided = replace(
            self.attestations[attestation_id], voided_at=voided_at, voided_by_user_id=voided_by_user_id
        )
        self.attestations[attestation_id] = voided
        return voided

    async def list_substitutes(self, facility_id):
        self._enter("list_substitutes")
        return sorted(
            (s for s in self.substitutes if s.facility_id == facility_id),
            key=lambda s: (s.catalog_id, s.priority, s.substitute_catalog_id),
        )

    async def add_substitute(self, record, created_by_user_id=None):
        self._enter("add_substitute")
        self.substitutes.append(record)
        return record

    async def remove_substitute(self, facility_id, substitute_id):
        self._enter("remove_substitute")
        before = len(self.substitutes)
        self.substitutes = [
            s for s in self.substitutes if not (s.id == substitute_id and s.facility_id == facility_id)
        ]
        return len(self.substitutes) < before


class SteppingNow:
    """Deterministic wall clock: each call is one second after the previous."""

    def __init__(self, start: datetime = datetime(2026, 3, 9, 12, 0, tzinfo=timezone.utc)):
        self.current = start

    def __call__(self) -> datetime:
        value = self.current
        self.current = self.current + timedelta(seconds=1)
        return value


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def reset_perf_tracker():
    tracker.reset()
    yield
    tracker.reset()


@pytest.fixture
def store():
    return InMemoryReadinessStore().add_user("surgeon-1", "Dr. Rivera", "#3366ff").add_user("nurse-1", "Pat Lee")


@pytest.fixture
def service(store):
    return ReadinessService(store, budget=RecomputeBudget(), now=SteppingNow())


@pytest.fixture
def scalpel():
    """CRITICAL, lot- and expiration-tracked."""
    return make_item(
        "cat-scalpel",
        name="Scalpel Kit",
        criticality=Criticality.CRITICAL,
        requires_lot_tracking=True,
        requires_expiration_tracking=True,
    )


@pytest.fixture
def gauze():
    """ROUTINE, untracked."""
    return make_item("cat-gauze", name="Gauze Pack", criticality=Criticality.ROUTINE)


@pytest.fixture
def ready_case(store, scalpel, gauze):
    """case-1: one scalpel, two gauze, all in stock and valid."""
    store.add(
        scalpel, gauze,
        make_case("case-1"),
        make_req("r1", "case-1", scalpel.id),
        make_req("r2", "case-1", gauze.id, 2),
        make_unit("s1", scalpel.id, sterility_expires_at=None),
        make_unit("g1", gauze.id),
        make_unit("g2", gauze.id),
    )
    return store.cases["case-1"]
