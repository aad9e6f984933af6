"""
readiness_store.py — Row fetch / insert / replace collaborator for the readiness service.

The service never touches SQLAlchemy directly: it talks to a ``ReadinessStore``.
``SqlReadinessStore`` is the production implementation over an ``AsyncSession``;
the test suite supplies an in-memory one with the same method set.

All reads return plain dataclasses from ``app.models.readiness_types`` so nothing
downstream holds a live ORM object.
"""
from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Protocol, Sequence

from sqlalchemy import and_, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.orm_models import (
    AppUser,
    AttestationRow,
    CaseReadinessCache,
    CaseRequirementRow,
    CatalogSubstitute,
    InventoryItem,
    ItemCatalog,
    Room,
    SurgicalCase,
)
from app.models.readiness_types import (
    EXCLUDED_CASE_STATUSES,
    POOL_STATUSES,
    Attestation,
    AttestationType,
    AvailabilityStatus,
    CachedReadinessRow,
    CalendarCaseRecord,
    CaseForReadiness,
    CaseRequirement,
    CaseStatus,
    CatalogItem,
    CatalogSubstituteRecord,
    Criticality,
    InventoryUnit,
    ReadinessState,
    SterilityStatus,
)

logger = logging.getLogger("asc-readiness.store")

_EXCLUDED = [s.value for s in EXCLUDED_CASE_STATUSES]
_POOL = [s.value for s in POOL_STATUSES]


class ReadinessStore(Protocol):
    """Everything the readiness service reads or writes."""

    async def fetch_cases_for_date(self, facility_id: str, scheduled_date: date) -> List[CaseForReadiness]: ...

    async def fetch_case(self, facility_id: str, case_id: str) -> Optional[CaseForReadiness]: ...

    async def fetch_requirements(self, case_ids: Sequence[str]) -> Dict[str, List[CaseRequirement]]: ...

    async def fetch_catalog(self, facility_id: str) -> Dict[str, CatalogItem]: ...

    async def fetch_inventory(self, facility_id: str) -> List[InventoryUnit]: ...

    async def fetch_substitutes(self, facility_id: str) -> Dict[str, List[str]]: ...

    async def fetch_attestations(
        self, case_ids: Sequence[str], include_voided: bool = False
    ) -> List[Attestation]: ...

    async def fetch_user_names(self, user_ids: Iterable[str]) -> Dict[str, str]: ...

    async def fetch_cached_rows(self, facility_id: str, scheduled_date: date) -> List[CachedReadinessRow]: ...

    async def replace_cached_rows(
        self, facility_id: str, scheduled_date: date, rows: Sequence[CachedReadinessRow]
    ) -> None: ...

    async def fetch_calendar_cases(
        self, facility_id: str, start_date: date, end_date: date
    ) -> List[CalendarCaseRecord]: ...

    async def insert_attestation(self, attestation: Attestation) -> Attestation: ...

    async def fetch_attestation(self, facility_id: str, attestation_id: str) -> Optional[Attestation]: ...

    async def void_attestation(
        self, attestation_id: str, voided_by_user_id: str, voided_at: datetime
    ) -> Attestation: ...

    async def list_substitutes(self, facility_id: str) -> List[CatalogSubstituteRecord]: ...

    async def add_substitute(
        self, record: CatalogSubstituteRecord, created_by_user_id: Optional[str] = None
    ) -> CatalogSubstituteRecord: ...

    async def remove_substitute(self, facility_id: str, substitute_id: str) -> bool: ...


# ── Row → record mapping ──────────────────────────────────────────────────────

def _to_case(row: SurgicalCase) -> CaseForReadiness:
    return CaseForReadiness(
        id=str(row.id),
        facility_id=str(row.facility_id),
        scheduled_date=row.scheduled_date,
        procedure_name=row.procedure_name,
        surgeon_id=str(row.surgeon_id),
        created_at=row.created_at,
        scheduled_time=row.scheduled_time,
        status=CaseStatus(row.status),
        is_active=bool(row.is_active),
    )


def _to_catalog_item(row: ItemCatalog) -> CatalogItem:
    return CatalogItem(
        id=str(row.id),
        facility_id=str(row.facility_id),
        name=row.name,
        criticality=Criticality(row.criticality),
        requires_lot_tracking=bool(row.requires_lot_tracking),
        requires_serial_tracking=bool(row.requires_serial_tracking),
        requires_expiration_tracking=bool(row.requires_expiration_tracking),
        readiness_required=bool(row.readiness_required),
        substitutable=bool(row.substitutable),
        expiration_warning_days=row.expiration_warning_days,
        active=bool(row.active),
    )


def _to_unit(row: InventoryItem) -> InventoryUnit:
    return InventoryUnit(
        id=str(row.id),
        facility_id=str(row.facility_id),
        catalog_id=str(row.catalog_id),
        sterility_status=SterilityStatus(row.sterility_status),
        availability_status=AvailabilityStatus(row.availability_status),
        sterility_expires_at=row.sterility_expires_at,
        lot_number=row.lot_number,
        serial_number=row.serial_number,
        barcode=row.barcode,
        reserved_for_case_id=str(row.reserved_for_case_id) if row.reserved_for_case_id else None,
    )


def _to_attestation(row: AttestationRow) -> Attestation:
    return Attestation(
        id=str(row.id),
        facility_id=str(row.facility_id),
        case_id=str(row.case_id),
        type=AttestationType(row.type),
        attested_by_user_id=str(row.attested_by_user_id),
        readiness_state_at_time=ReadinessState(row.readiness_state_at_time),
        created_at=row.created_at,
        notes=row.notes,
        voided_at=row.voided_at,
        voided_by_user_id=str(row.voided_by_user_id) if row.voided_by_user_id else None,
    )


def _to_cached_row(row: CaseReadinessCache) -> CachedReadinessRow:
    return CachedReadinessRow(
        case_id=str(row.case_id),
        facility_id=str(row.facility_id),
        scheduled_date=row.scheduled_date,
        procedure_name=row.procedure_name,
        surgeon_name=row.surgeon_name,
        readiness_state=ReadinessState(row.readiness_state),
        missing_items=list(row.missing_items or []),
        total_required_items=row.total_required_items,
        total_verified_items=row.total_verified_items,
        has_attestation=bool(row.has_attestation),
        attested_at=row.attested_at,
        attested_by_name=row.attested_by_name,
        attestation_id=str(row.attestation_id) if row.attestation_id else None,
        attestation_stale=bool(row.attestation_stale),
        has_surgeon_acknowledgment=bool(row.has_surgeon_acknowledgment),
        surgeon_acknowledged_at=row.surgeon_acknowledged_at,
        surgeon_acknowledgment_id=(
            str(row.surgeon_acknowledgment_id) if row.surgeon_acknowledgment_id else None
        ),
        computed_at=row.computed_at,
    )


def _to_substitute(row: CatalogSubstitute) -> CatalogSubstituteRecord:
    return CatalogSubstituteRecord(
        id=str(row.id),
        facility_id=str(row.facility_id),
        catalog_id=str(row.catalog_id),
        substitute_catalog_id=str(row.substitute_catalog_id),
        priority=row.priority,
    )


# ── SQLAlchemy implementation ─────────────────────────────────────────────────

class SqlReadinessStore:
    """ReadinessStore over one request-scoped AsyncSession."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # -- cases / requirements -------------------------------------------------

    async def fetch_cases_for_date(self, facility_id: str, scheduled_date: date) -> List[CaseForReadiness]:
        result = await self.session.execute(
            select(SurgicalCase)
            .where(
                SurgicalCase.facility_id == facility_id,
                SurgicalCase.scheduled_date == scheduled_date,
                SurgicalCase.status.not_in(_EXCLUDED),
            )
            .order_by(SurgicalCase.id)
        )
        return [_to_case(row) for row in result.scalars().all()]

    async def fetch_case(self, facility_id: str, case_id: str) -> Optional[CaseForReadiness]:
        result = await self.session.execute(
            select(SurgicalCase).where(
                SurgicalCase.id == case_id,
                SurgicalCase.facility_id == facility_id,
            )
        )
        row = result.scalar_one_or_none()
        return _to_case(row) if row else None

    async def fetch_requirements(self, case_ids: Sequence[str]) -> Dict[str, List[CaseRequirement]]:
        if not case_ids:
            return {}
        result = await self.session.execute(
            select(CaseRequirementRow)
            .where(CaseRequirementRow.case_id.in_(list(case_ids)))
            .order_by(CaseRequirementRow.case_id, CaseRequirementRow.id)
        )
        grouped: Dict[str, List[CaseRequirement]] = {}
        for row in result.scalars().all():
            grouped.setdefault(str(row.case_id), []).append(CaseRequirement(
                id=str(row.id),
                case_id=str(row.case_id),
                catalog_id=str(row.catalog_id),
                quantity=row.quantity,
                is_surgeon_override=bool(row.is_surgeon_override),
            ))
        return grouped

    # -- catalog / inventory --------------------------------------------------

    async def fetch_catalog(self, facility_id: str) -> Dict[str, CatalogItem]:
        # Inactive items are returned too; the evaluator reports them as unresolvable.
        result = await self.session.execute(
            select(ItemCatalog).where(ItemCatalog.facility_id == facility_id)
        )
        return {str(row.id): _to_catalog_item(row) for row in result.scalars().all()}

    async def fetch_inventory(self, facility_id: str) -> List[InventoryUnit]:
        result = await self.session.execute(
            select(InventoryItem)
            .where(
                InventoryItem.facility_id == facility_id,
                InventoryItem.availability_status.in_(_POOL),
            )
            .order_by(InventoryItem.id)
        )
        return [_to_unit(row) for row in result.scalars().all()]

    async def fetch_substitutes(self, facility_id: str) -> Dict[str, List[str]]:
        result = await self.session.execute(
            select(CatalogSubstitute)
            .where(CatalogSubstitute.facility_id == facility_id)
            .order_by(
                CatalogSubstitute.catalog_id,
                CatalogSubstitute.priority,
                CatalogSubstitute.substitute_catalog_id,
            )
        )
        mapping: Dict[str, List[str]] = {}
        for row in result.scalars().all():
            mapping.setdefault(str(row.catalog_id), []).append(str(row.substitute_catalog_id))
        return mapping

    # -- attestations / users -------------------------------------------------

    async def fetch_attestations(
        self, case_ids: Sequence[str], include_voided: bool = False
    ) -> List[Attestation]:
        if not case_ids:
            return []
        stmt = select(AttestationRow).where(AttestationRow.case_id.in_(list(case_ids)))
        if not include_voided:
            stmt = stmt.where(AttestationRow.voided_at.is_(None))
        result = await self.session.execute(stmt.order_by(AttestationRow.created_at, AttestationRow.id))
        return [_to_attestation(row) for row in result.scalars().all()]

    async def fetch_user_names(self, user_ids: Iterable[str]) -> Dict[str, str]:
        ids = sorted({uid for uid in user_ids if uid})
        if not ids:
            return {}
        result = await self.session.execute(select(AppUser.id, AppUser.name).where(AppUser.id.in_(ids)))
        return {str(uid): name for uid, name in result.all()}

    async def insert_attestation(self, attestation: Attestation) -> Attestation:
        row = AttestationRow(
            id=attestation.id,
            facility_id=attestation.facility_id,
            case_id=attestation.case_id,
            type=attestation.type.value,
            attested_by_user_id=attestation.attested_by_user_id,
            readiness_state_at_time=attestation.readiness_state_at_time.value,
            notes=attestation.notes,
            created_at=attestation.created_at,
        )
        self.session.add(row)
        await self.session.commit()
        logger.info(f"Attestation {attestation.id} ({attestation.type.value}) recorded for case {attestation.case_id}")
        return attestation

    async def fetch_attestation(self, facility_id: str, attestation_id: str) -> Optional[Attestation]:
        result = await self.session.execute(
            select(AttestationRow).where(
                AttestationRow.id == attestation_id,
                AttestationRow.facility_id == facility_id,
            )
        )
        row = result.scalar_one_or_none()
        return _to_attestation(row) if row else None

    async def void_attestation(
        self, attestation_id: str, voided_by_user_id: str, voided_at: datetime
    ) -> Attestation:
        await self.session.execute(
            update(AttestationRow)
            .where(AttestationRow.id == attestation_id)
            .values(voided_at=voided_at, voided_by_user_id=voided_by_user_id)
        )
        await self.session.commit()
        result = await self.session.execute(select(AttestationRow).where(AttestationRow.id == attestation_id))
        return _to_attestation(result.scalar_one())

    # -- readiness cache ------------------------------------------------------

    async def fetch_cached_rows(self, facility_id: str, scheduled_date: date) -> List[CachedReadinessRow]:
        result = await self.session.execute(
            select(CaseReadinessCache).where(
                CaseReadinessCache.facility_id == facility_id,
                CaseReadinessCache.scheduled_date == scheduled_date,
            )
        )
        return [_to_cached_row(row) for row in result.scalars().all()]

    async def replace_cached_rows(
        self, facility_id: str, scheduled_date: date, rows: Sequence[CachedReadinessRow]
    ) -> None:
        """Delete every row for the scope and insert ``rows`` in one transaction."""
        try:
            await self.session.execute(
                delete(CaseReadinessCache).where(
                    CaseReadinessCache.facility_id == facility_id,
                    CaseReadinessCache.scheduled_date == scheduled_date,
                )
            )
            self.session.add_all([
                CaseReadinessCache(computed_at=row.computed_at, **row.content_fields())
                for row in rows
            ])
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        logger.debug(
            f"Replaced {len(rows)} cache rows",
            extra={"facility_id": facility_id, "scheduled_date": scheduled_date.isoformat()},
        )

    async def fetch_calendar_cases(
        self, facility_id: str, start_date: date, end_date: date
    ) -> List[CalendarCaseRecord]:
        stmt = (
            select(
                SurgicalCase,
                AppUser.name,
                AppUser.display_color,
                Room.name,
                CaseReadinessCache.readiness_state,
            )
            .join(AppUser, AppUser.id == SurgicalCase.surgeon_id, isouter=True)
            .join(Room, Room.id == SurgicalCase.room_id, isouter=True)
            .join(
                CaseReadinessCache,
                and_(
                    CaseReadinessCache.case_id == SurgicalCase.id,
                    CaseReadinessCache.scheduled_date == SurgicalCase.scheduled_date,
                ),
                isouter=True,
            )
            .where(
                SurgicalCase.facility_id == facility_id,
                SurgicalCase.scheduled_date >= start_date,
                SurgicalCase.scheduled_date <= end_date,
                SurgicalCase.status.not_in(_EXCLUDED),
            )
            .order_by(SurgicalCase.scheduled_date, SurgicalCase.scheduled_time, SurgicalCase.id)
        )
        result = await self.session.execute(stmt)
        records: List[CalendarCaseRecord] = []
        for case, surgeon_name, surgeon_color, room_name, state in result.all():
            records.append(CalendarCaseRecord(
                case_id=str(case.id),
                case_number=case.case_number,
                scheduled_date=case.scheduled_date,
                scheduled_time=case.scheduled_time,
                procedure_name=case.procedure_name,
                laterality=case.laterality,
                surgeon_name=surgeon_name or "Unknown",
                surgeon_color=surgeon_color,
                readiness_state=ReadinessState(state) if state else None,
                is_active=bool(case.is_active),
                room_id=str(case.room_id) if case.room_id else None,
                room_name=room_name,
            ))
        return records

    # -- substitution table ---------------------------------------------------

    async def list_substitutes(self, facility_id: str) -> List[CatalogSubstituteRecord]:
        result = await self.session.execute(
            select(CatalogSubstitute)
            .where(CatalogSubstitute.facility_id == facility_id)
            .order_by(
                CatalogSubstitute.catalog_id,
                CatalogSubstitute.priority,
                CatalogSubstitute.substitute_catalog_id,
            )
        )
        return [_to_substitute(row) for row in result.scalars().all()]

    async def add_substitute(
        self, record: CatalogSubstituteRecord, created_by_user_id: Optional[str] = None
    ) -> CatalogSubstituteRecord:
        self.session.add(CatalogSubstitute(
            id=record.id,
            facility_id=record.facility_id,
            catalog_id=record.catalog_id,
            substitute_catalog_id=record.substitute_catalog_id,
            priority=record.priority,
            created_by_user_id=created_by_user_id,
        ))
        await self.session.commit()
        return record

    async def remove_substitute(self, facility_id: str, substitute_id: str) -> bool:
        result = await self.session.execute(
            delete(CatalogSubstitute).where(
                CatalogSubstitute.id == substitute_id,
                CatalogSubstitute.facility_id == facility_id,
            )
        )
        await self.session.commit()
        return (result.rowcount or 0) > 0
