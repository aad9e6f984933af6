"""
Domain value types for day-before readiness evaluation.

These are plain dataclasses and enums. They carry no database or HTTP concerns:
the store layer maps ORM rows into them, the engines consume them, and the API
layer maps them out to Pydantic responses.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Any, Dict, List, Optional


class ReadinessState(str, enum.Enum):
    GREEN = "GREEN"    # every readiness-gating requirement fully satisfied
    ORANGE = "ORANGE"  # non-critical partial shortfalls, or empty ones overridden by attestation
    RED = "RED"        # a critical shortfall or an unresolvable requirement


# Sort weight used by read paths: worst first.
STATE_SEVERITY: Dict[ReadinessState, int] = {
    ReadinessState.RED: 2,
    ReadinessState.ORANGE: 1,
    ReadinessState.GREEN: 0,
}


class Criticality(str, enum.Enum):
    CRITICAL = "CRITICAL"
    IMPORTANT = "IMPORTANT"
    ROUTINE = "ROUTINE"


CRITICALITY_RANK: Dict[Criticality, int] = {
    Criticality.CRITICAL: 3,
    Criticality.IMPORTANT: 2,
    Criticality.ROUTINE: 1,
}


class SterilityStatus(str, enum.Enum):
    STERILE = "STERILE"
    NON_STERILE = "NON_STERILE"
    EXPIRED = "EXPIRED"
    UNKNOWN = "UNKNOWN"


class AvailabilityStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    RESERVED = "RESERVED"
    IN_USE = "IN_USE"
    UNAVAILABLE = "UNAVAILABLE"
    MISSING = "MISSING"


POOL_STATUSES = (AvailabilityStatus.AVAILABLE, AvailabilityStatus.RESERVED)


class AttestationType(str, enum.Enum):
    CASE_READINESS = "CASE_READINESS"
    SURGEON_ACKNOWLEDGMENT = "SURGEON_ACKNOWLEDGMENT"


class MissingReason(str, enum.Enum):
    STERILITY_EXPIRED = "STERILITY_EXPIRED"
    MISSING_LOT = "MISSING_LOT"
    MISSING_SERIAL = "MISSING_SERIAL"
    NOT_AVAILABLE = "NOT_AVAILABLE"
    INSUFFICIENT_QUANTITY = "INSUFFICIENT_QUANTITY"
    NOT_IN_CATALOG = "NOT_IN_CATALOG"
    SATISFIED_VIA_SUBSTITUTE = "SATISFIED_VIA_SUBSTITUTE"


MISSING_REASON_LABELS: Dict[MissingReason, str] = {
    MissingReason.STERILITY_EXPIRED: "expired",
    MissingReason.MISSING_LOT: "missing lot",
    MissingReason.MISSING_SERIAL: "missing serial",
    MissingReason.NOT_AVAILABLE: "not available",
    MissingReason.INSUFFICIENT_QUANTITY: "insufficient stock",
    MissingReason.NOT_IN_CATALOG: "catalog item inactive or unknown",
    MissingReason.SATISFIED_VIA_SUBSTITUTE: "satisfied via substitute",
}

# Order in which unit-level failures are reported when several apply.
FAILURE_PRIORITY: List[MissingReason] = [
    MissingReason.STERILITY_EXPIRED,
    MissingReason.MISSING_LOT,
    MissingReason.MISSING_SERIAL,
    MissingReason.NOT_AVAILABLE,
]


class CaseStatus(str, enum.Enum):
    REQUESTED = "REQUESTED"
    DRAFT = "DRAFT"
    SCHEDULED = "SCHEDULED"
    READY = "READY"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


EXCLUDED_CASE_STATUSES = (CaseStatus.CANCELLED, CaseStatus.COMPLETED)


class Granularity(str, enum.Enum):
    DAY = "day"
    CASE = "case"


# ── Store records ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CatalogItem:
    id: str
    facility_id: str
    name: str
    criticality: Criticality = Criticality.ROUTINE
    requires_lot_tracking: bool = False
    requires_serial_tracking: bool = False
    requires_expiration_tracking: bool = False
    readiness_required: bool = True
    substitutable: bool = False
    expiration_warning_days: Optional[int] = None
    active: bool = True


@dataclass(frozen=True)
class InventoryUnit:
    id: str
    facility_id: str
    catalog_id: str
    sterility_status: SterilityStatus = SterilityStatus.UNKNOWN
    availability_status: AvailabilityStatus = AvailabilityStatus.AVAILABLE
    sterility_expires_at: Optional[datetime] = None
    lot_number: Optional[str] = None
    serial_number: Optional[str] = None
    barcode: Optional[str] = None
    reserved_for_case_id: Optional[str] = None


@dataclass(frozen=True)
class CaseRequirement:
    id: str
    case_id: str
    catalog_id: str
    quantity: int
    is_surgeon_override: bool = False


@dataclass(frozen=True)
class Attestation:
    id: str
    facility_id: str
    case_id: str
    type: AttestationType
    attested_by_user_id: str
    readiness_state_at_time: ReadinessState
    created_at: datetime
    notes: Optional[str] = None
    voided_at: Optional[datetime] = None
    voided_by_user_id: Optional[str] = None

    @property
    def is_voided(self) -> bool:
        return self.voided_at is not None


@dataclass(frozen=True)
class CaseForReadiness:
    id: str
    facility_id: str
    scheduled_date: Optional[date]
    procedure_name: str
    surgeon_id: str
    created_at: datetime
    scheduled_time: Optional[time] = None
    status: CaseStatus = CaseStatus.SCHEDULED
    is_active: bool = True


@dataclass(frozen=True)
class CatalogSubstituteRecord:
    id: str
    facility_id: str
    catalog_id: str
    substitute_catalog_id: str
    priority: int = 100


# ── Evaluator output ──────────────────────────────────────────────────────────

@dataclass
class MissingItem:
    catalog_id: str
    catalog_name: str
    criticality: Criticality
    required_quantity: int
    satisfied_quantity: int
    reason: MissingReason
    substitute_catalog_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "catalog_id": self.catalog_id,
            "catalog_name": self.catalog_name,
            "criticality": self.criticality.value,
            "required_quantity": self.required_quantity,
            "satisfied_quantity": self.satisfied_quantity,
            "reason": self.reason.value,
            "reason_label": MISSING_REASON_LABELS[self.reason],
            "substitute_catalog_ids": list(self.substitute_catalog_ids),
        }


@dataclass
class ExpiringUnit:
    unit_id: str
    catalog_id: str
    catalog_name: str
    expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "unit_id": self.unit_id,
            "catalog_id": self.catalog_id,
            "catalog_name": self.catalog_name,
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass
class ReadinessOutput:
    case_id: str
    readiness_state: ReadinessState
    missing_items: List[MissingItem] = field(default_factory=list)
    total_required_items: int = 0
    total_verified_items: int = 0
    has_attestation: bool = False
    attested_at: Optional[datetime] = None
    attestation_id: Optional[str] = None
    attested_by_user_id: Optional[str] = None
    attestation_stale: bool = False
    overridden_by_attestation: bool = False
    has_surgeon_acknowledgment: bool = False
    surgeon_acknowledged_at: Optional[datetime] = None
    surgeon_acknowledgment_id: Optional[str] = None
    allocated_unit_ids: List[str] = field(default_factory=list)
    expiring_soon: List[ExpiringUnit] = field(default_factory=list)

    @property
    def computed_state(self) -> ReadinessState:
        """State from inventory data alone, before any attestation override."""
        if self.overridden_by_attestation:
            return ReadinessState.RED
        return self.readiness_state

    def to_dict(self) -> Dict[str, Any]:
        return {
            "case_id": self.case_id,
            "readiness_state": self.readiness_state.value,
            "missing_items": [m.to_dict() for m in self.missing_items],
            "total_required_items": self.total_required_items,
            "total_verified_items": self.total_verified_items,
            "has_attestation": self.has_attestation,
            "attested_at": self.attested_at.isoformat() if self.attested_at else None,
            "attestation_id": self.attestation_id,
            "attested_by_user_id": self.attested_by_user_id,
            "attestation_stale": self.attestation_stale,
            "overridden_by_attestation": self.overridden_by_attestation,
            "has_surgeon_acknowledgment": self.has_surgeon_acknowledgment,
            "surgeon_acknowledged_at": (
                self.surgeon_acknowledged_at.isoformat() if self.surgeon_acknowledged_at else None
            ),
            "surgeon_acknowledgment_id": self.surgeon_acknowledgment_id,
            "allocated_unit_ids": list(self.allocated_unit_ids),
            "expiring_soon": [u.to_dict() for u in self.expiring_soon],
        }


@dataclass
class DayReadiness:
    scheduled_date: date
    cases: List[ReadinessOutput]
    surgeon_names: Dict[str, str]
    case_records: Dict[str, CaseForReadiness] = field(default_factory=dict)


# ── Cache + calendar read models ──────────────────────────────────────────────

@dataclass
class CachedReadinessRow:
    case_id: str
    facility_id: str
    scheduled_date: date
    procedure_name: str
    surgeon_name: str
    readiness_state: ReadinessState
    missing_items: List[Dict[str, Any]]
    total_required_items: int
    total_verified_items: int
    has_attestation: bool
    attested_at: Optional[datetime]
    attested_by_name: Optional[str]
    attestation_id: Optional[str]
    attestation_stale: bool
    has_surgeon_acknowledgment: bool
    surgeon_acknowledged_at: Optional[datetime]
    surgeon_acknowledgment_id: Optional[str]
    computed_at: datetime

    def content_fields(self) -> Dict[str, Any]:
        """Every field except computed_at; used to compare two recomputes."""
        return {
            "case_id": self.case_id,
            "facility_id": self.facility_id,
            "scheduled_date": self.scheduled_date,
            "procedure_name": self.procedure_name,
            "surgeon_name": self.surgeon_name,
            "readiness_state": self.readiness_state,
            "missing_items": self.missing_items,
            "total_required_items": self.total_required_items,
            "total_verified_items": self.total_verified_items,
            "has_attestation": self.has_attestation,
            "attested_at": self.attested_at,
            "attested_by_name": self.attested_by_name,
            "attestation_id": self.attestation_id,
            "attestation_stale": self.attestation_stale,
            "has_surgeon_acknowledgment": self.has_surgeon_acknowledgment,
            "surgeon_acknowledged_at": self.surgeon_acknowledged_at,
            "surgeon_acknowledgment_id": self.surgeon_acknowledgment_id,
        }


@dataclass(frozen=True)
class CalendarCaseRecord:
    """A live case joined with whatever cache row exists for its date."""
    case_id: str
    case_number: Optional[str]
    scheduled_date: date
    scheduled_time: Optional[time]
    procedure_name: str
    laterality: Optional[str]
    surgeon_name: str
    surgeon_color: Optional[str]
    readiness_state: Optional[ReadinessState]
    is_active: bool
    room_id: Optional[str]
    room_name: Optional[str]


@dataclass
class DaySummary:
    date: str
    case_count: int = 0
    green_count: int = 0
    orange_count: int = 0
    red_count: int = 0
    uncached_count: int = 0


@dataclass
class CaseSummary:
    case_id: str
    case_number: Optional[str]
    scheduled_date: str
    scheduled_time: Optional[str]
    procedure_name: str
    laterality: Optional[str]
    surgeon_name: str
    surgeon_color: Optional[str]
    readiness_state: Optional[ReadinessState]
    is_active: bool
    room_id: Optional[str]
    room_name: Optional[str]
    cached: bool = True
