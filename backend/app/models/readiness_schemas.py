"""Pydantic request/response models for the readiness API."""
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from app.models.readiness_types import (
    Attestation,
    CachedReadinessRow,
    CaseSummary,
    CatalogSubstituteRecord,
    DaySummary,
    ReadinessOutput,
    ReadinessState,
)
from app.services.civil_date import format_civil_date


class MissingItemOut(BaseModel):
    catalog_id: str
    catalog_name: str
    criticality: str
    required_quantity: int
    satisfied_quantity: int
    reason: str
    reason_label: str
    substitute_catalog_ids: List[str] = []


class ExpiringUnitOut(BaseModel):
    unit_id: str
    catalog_id: str
    catalog_name: str
    expires_at: datetime


class CaseReadinessOut(BaseModel):
    """Live evaluation of one case; nothing here was read from the cache."""
    case_id: str
    readiness_state: ReadinessState
    missing_items: List[MissingItemOut]
    total_required_items: int
    total_verified_items: int
    has_attestation: bool
    attested_at: Optional[datetime] = None
    attestation_id: Optional[str] = None
    attested_by_user_id: Optional[str] = None
    attestation_stale: bool = False
    overridden_by_attestation: bool = False
    has_surgeon_acknowledgment: bool = False
    surgeon_acknowledged_at: Optional[datetime] = None
    surgeon_acknowledgment_id: Optional[str] = None
    allocated_unit_ids: List[str] = []
    expiring_soon: List[ExpiringUnitOut] = []

    @classmethod
    def from_output(cls, output: ReadinessOutput) -> "CaseReadinessOut":
        data = output.to_dict()
        data["readiness_state"] = output.readiness_state
        data["attested_at"] = output.attested_at
        data["surgeon_acknowledged_at"] = output.surgeon_acknowledged_at
        data["expiring_soon"] = [
            ExpiringUnitOut(
                unit_id=u.unit_id, catalog_id=u.catalog_id, catalog_name=u.catalog_name, expires_at=u.expires_at
            )
            for u in output.expiring_soon
        ]
        return cls(**data)


class DayPreviewCaseOut(CaseReadinessOut):
    procedure_name: str
    surgeon_id: str
    surgeon_name: str


class DayPreviewOut(BaseModel):
    date: str
    cases: List[DayPreviewCaseOut]
    surgeon_names: Dict[str, str]


class CachedReadinessOut(BaseModel):
    case_id: str
    scheduled_date: str
    procedure_name: str
    surgeon_name: str
    readiness_state: ReadinessState
    missing_items: List[MissingItemOut]
    total_required_items: int
    total_verified_items: int
    has_attestation: bool
    attested_at: Optional[datetime] = None
    attested_by_name: Optional[str] = None
    attestation_id: Optional[str] = None
    attestation_stale: bool = False
    has_surgeon_acknowledgment: bool = False
    surgeon_acknowledged_at: Optional[datetime] = None
    surgeon_acknowledgment_id: Optional[str] = None
    computed_at: datetime

    @classmethod
    def from_row(cls, row: CachedReadinessRow) -> "CachedReadinessOut":
        fields = row.content_fields()
        fields.pop("facility_id")
        fields["scheduled_date"] = format_civil_date(row.scheduled_date)
        fields["missing_items"] = [MissingItemOut(**m) for m in row.missing_items]
        return cls(computed_at=row.computed_at, **fields)


class DayReadinessSummaryOut(BaseModel):
    total_cases: int = 0
    green: int = 0
    orange: int = 0
    red: int = 0
    attested: int = 0
    stale_attestations: int = 0


class DayReadinessOut(BaseModel):
    date: str
    summary: DayReadinessSummaryOut
    cases: List[CachedReadinessOut]

    @classmethod
    def from_rows(cls, day: str, rows: List[CachedReadinessRow]) -> "DayReadinessOut":
        summary = DayReadinessSummaryOut(total_cases=len(rows))
        for row in rows:
            if row.readiness_state == ReadinessState.GREEN:
                summary.green += 1
            elif row.readiness_state == ReadinessState.ORANGE:
                summary.orange += 1
            else:
                summary.red += 1
            if row.has_attestation:
                summary.attested += 1
            if row.attestation_stale:
                summary.stale_attestations += 1
        return cls(date=day, summary=summary, cases=[CachedReadinessOut.from_row(r) for r in rows])


class DaySummaryOut(BaseModel):
    date: str
    case_count: int
    green_count: int
    orange_count: int
    red_count: int
    uncached_count: int

    @classmethod
    def from_summary(cls, s: DaySummary) -> "DaySummaryOut":
        return cls(
            date=s.date,
            case_count=s.case_count,
            green_count=s.green_count,
            orange_count=s.orange_count,
            red_count=s.red_count,
            uncached_count=s.uncached_count,
        )


class CaseSummaryOut(BaseModel):
    case_id: str
    case_number: Optional[str] = None
    scheduled_date: str
    scheduled_time: Optional[str] = None
    procedure_name: str
    laterality: Optional[str] = None
    surgeon_name: str
    surgeon_color: Optional[str] = None
    readiness_state: Optional[ReadinessState] = None
    is_active: bool
    room_id: Optional[str] = None
    room_name: Optional[str] = None
    cached: bool = True

    @classmethod
    def from_summary(cls, s: CaseSummary) -> "CaseSummaryOut":
        return cls(**s.__dict__)


class CalendarSummaryOut(BaseModel):
    granularity: str
    start_date: str
    end_date: str
    days: Optional[List[DaySummaryOut]] = None
    cases: Optional[List[CaseSummaryOut]] = None


# ── Attestations ──────────────────────────────────────────────────────────────

class AttestationCreate(BaseModel):
    case_id: str
    type: str = Field(..., description="CASE_READINESS or SURGEON_ACKNOWLEDGMENT")
    notes: Optional[str] = Field(None, max_length=2000)


class AttestationOut(BaseModel):
    id: str
    case_id: str
    type: str
    attested_by_user_id: str
    readiness_state_at_time: ReadinessState
    notes: Optional[str] = None
    created_at: datetime
    voided_at: Optional[datetime] = None
    voided_by_user_id: Optional[str] = None
    is_current: Optional[bool] = None

    @classmethod
    def from_attestation(cls, a: Attestation, is_current: Optional[bool] = None) -> "AttestationOut":
        return cls(
            id=a.id,
            case_id=a.case_id,
            type=a.type.value,
            attested_by_user_id=a.attested_by_user_id,
            readiness_state_at_time=a.readiness_state_at_time,
            notes=a.notes,
            created_at=a.created_at,
            voided_at=a.voided_at,
            voided_by_user_id=a.voided_by_user_id,
            is_current=is_current,
        )


# ── Substitution table ────────────────────────────────────────────────────────

class CatalogSubstituteCreate(BaseModel):
    catalog_id: str
    substitute_catalog_id: str
    priority: int = Field(100, ge=0, le=10_000)


class CatalogSubstituteOut(BaseModel):
    id: str
    catalog_id: str
    substitute_catalog_id: str
    priority: int

    @classmethod
    def from_record(cls, r: CatalogSubstituteRecord) -> "CatalogSubstituteOut":
        return cls(id=r.id, catalog_id=r.catalog_id, substitute_catalog_id=r.substitute_catalog_id, priority=r.priority)
