"""
readiness_service.py — Day-before readiness operations

The five operations collaborators call:

  compute_case_readiness(case_id, facility_id)   single case, no persistence
  compute_day_readiness(facility_id, date)        whole day batch, no persistence
  refresh_readiness_cache(facility_id, date)      recompute and replace cache rows
  get_day_readiness(facility_id, date, force)     read-through cache accessor
  get_calendar_summary(facility_id, from, to, g)  per-day counts or per-case rows

plus the attestation flows and substitution-table maintenance that sit on top of them.

Every day batch runs fetch → allocate → evaluate for the whole (facility, date)
before any output is trusted. A recompute is bounded by ``RecomputeBudget``;
exceeding it fails the whole recompute and the cache for that date is left as it was.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from app.config import (
    ADMIN_ROLE,
    CALENDAR_MAX_RANGE_DAYS,
    DEFAULT_BUDGET,
    READINESS_ATTESTER_ROLES,
    READINESS_SERIALIZE_RECOMPUTES,
    SURGEON_ROLE,
    RecomputeBudget,
)
from app.models.readiness_types import (
    EXCLUDED_CASE_STATUSES,
    STATE_SEVERITY,
    Attestation,
    AttestationType,
    CachedReadinessRow,
    CalendarCaseRecord,
    CaseForReadiness,
    CaseRequirement,
    CaseSummary,
    CatalogItem,
    CatalogSubstituteRecord,
    DayReadiness,
    DaySummary,
    Granularity,
    ReadinessOutput,
    ReadinessState,
)
from app.services.allocation_engine import BatchAllocator, rejection_summary
from app.services.civil_date import cutoff_instant, date_range, format_civil_date, parse_civil_date
from app.services.perf_monitor import timed_async, tracker as perf_tracker
from app.services.readiness_engine import ReadinessEngine
from app.services.readiness_errors import (
    AllocationDeadlineExceeded,
    AttestationAlreadyVoided,
    AttestationNotAllowed,
    AttestationNotFound,
    InvalidInputError,
    RecomputeBudgetExceeded,
    RecomputeFailure,
)
from app.services.readiness_store import ReadinessStore

logger = logging.getLogger("asc-readiness.service")

UNKNOWN_SURGEON = "Unknown"

DateInput = Union[str, date]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def group_by_case(items: Iterable, key: str = "case_id") -> Dict[str, list]:
    grouped: Dict[str, list] = {}
    for item in items:
        grouped.setdefault(getattr(item, key), []).append(item)
    return grouped


def cached_row_sort_key(row: CachedReadinessRow) -> Tuple:
    """RED first, then ORANGE, then GREEN; within a state by procedure name, then case id."""
    return (-STATE_SEVERITY[row.readiness_state], row.procedure_name, row.case_id)


# ── Per-(facility, date) recompute serialization ─────────────────────────────

# Entries live only while a recompute holds or waits on the lock.
_recompute_locks: "weakref.WeakValueDictionary[Tuple[str, date], asyncio.Lock]" = weakref.WeakValueDictionary()


def _recompute_lock(facility_id: str, scheduled_date: date) -> asyncio.Lock:
    key = (facility_id, scheduled_date)
    lock = _recompute_locks.get(key)
    if lock is None:
        lock = asyncio.Lock()
        _recompute_locks[key] = lock
    return lock


@dataclass
class _DayBatch:
    """Everything one day batch saw, kept so a single case can be appended to it."""
    scheduled_date: date
    cutoff: datetime
    catalog: Dict[str, CatalogItem]
    allocator: BatchAllocator
    cases: Dict[str, CaseForReadiness]
    outputs: List[ReadinessOutput]
    user_names: Dict[str, str] = field(default_factory=dict)
    deadline: float = float("inf")


@dataclass
class AttestationListing:
    attestation: Attestation
    is_current: bool


class ReadinessService:
    def __init__(
        self,
        store: ReadinessStore,
        budget: RecomputeBudget = DEFAULT_BUDGET,
        engine: Optional[ReadinessEngine] = None,
        serialize: bool = READINESS_SERIALIZE_RECOMPUTES,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.budget = budget
        self.engine = engine or ReadinessEngine()
        self.serialize = serialize
        self.clock = clock
        self.now = now

    # =========================================================================
    # Single case
    # =========================================================================

    async def compute_case_readiness(self, case_id: str, facility_id: str) -> Optional[ReadinessOutput]:
        """
        Evaluate one case without persisting anything. Returns None when no case
        with that id exists in the facility.

        A dated case is evaluated inside its day's batch so it sees the same
        allocation the cache would. A case the day batch excludes (cancelled,
        completed) is allocated after every included case, from what is left.
        """
        if not case_id:
            raise InvalidInputError("case_id is required")
        if not facility_id:
            raise InvalidInputError("facility_id is required")

        case = await self.store.fetch_case(facility_id, case_id)
        if case is None:
            return None

        if case.scheduled_date is None:
            cutoff = cutoff_instant(self.now().date())
            batch = await self._build_batch(facility_id, self.now().date(), cases=[], cutoff=cutoff)
        else:
            batch = await self._run_day(facility_id, case.scheduled_date)
            for output in batch.outputs:
                if output.case_id == case.id:
                    return output

        requirements = await self.store.fetch_requirements([case.id])
        attestations = await self.store.fetch_attestations([case.id])
        try:
            allocation = batch.allocator.allocate([case], requirements, batch.cutoff, ordered=True)
        except AllocationDeadlineExceeded as exc:
            raise RecomputeBudgetExceeded(facility_id, batch.scheduled_date, str(exc)) from exc
        claimed = allocation.for_case(case.id)
        return self.engine.evaluate_case(
            case,
            requirements.get(case.id, []),
            batch.catalog,
            claimed.units_by_requirement(),
            attestations,
            batch.cutoff,
            claimed.rejections_by_requirement(),
        )

    # =========================================================================
    # Day batch
    # =========================================================================

    @timed_async
    async def compute_day_readiness(self, facility_id: str, scheduled_date: DateInput) -> DayReadiness:
        """Evaluate every case scheduled for the date. Nothing is written."""
        if not facility_id:
            raise InvalidInputError("facility_id is required")
        day = parse_civil_date(scheduled_date)
        batch = await self._run_day(facility_id, day)
        surgeon_names = {
            case.surgeon_id: batch.user_names.get(case.surgeon_id, UNKNOWN_SURGEON)
            for case in batch.cases.values()
        }
        return DayReadiness(
            scheduled_date=day,
            cases=batch.outputs,
            surgeon_names=surgeon_names,
            case_records=dict(batch.cases),
        )

    # =========================================================================
    # Cache refresh and read-through
    # =========================================================================

    async def refresh_readiness_cache(self, facility_id: str, scheduled_date: DateInput) -> None:
        """Recompute the whole date and replace its cache rows. Raises RecomputeFailure."""
        if not facility_id:
            raise InvalidInputError("facility_id is required")
        day = parse_civil_date(scheduled_date)
        await self._recompute(facility_id, day)

    async def get_day_readiness(
        self,
        facility_id: str,
        scheduled_date: DateInput,
        force_refresh: bool = False,
    ) -> List[CachedReadinessRow]:
        """
        Cached rows for the date, worst state first. An empty cache (or
        ``force_refresh``) triggers exactly one recompute and returns its rows.
        """
        if not facility_id:
            raise InvalidInputError("facility_id is required")
        day = parse_civil_date(scheduled_date)

        if not force_refresh:
            rows = await self.store.fetch_cached_rows(facility_id, day)
            if rows:
                perf_tracker.record_cache_read(hit=True)
                return sorted(rows, key=cached_row_sort_key)
            perf_tracker.record_cache_read(hit=False)

        rows = await self._recompute(facility_id, day)
        return sorted(rows, key=cached_row_sort_key)

    # =========================================================================
    # Calendar
    # =========================================================================

    async def get_calendar_summary(
        self,
        facility_id: str,
        start_date: DateInput,
        end_date: DateInput,
        granularity: Union[str, Granularity] = Granularity.DAY,
    ) -> Union[List[DaySummary], List[CaseSummary]]:
        """
        Live cases joined with whatever cache rows exist. A case with no cache row
        counts as ORANGE in day totals (and in ``uncached_count``); it is never an error.
        """
        if not facility_id:
            raise InvalidInputError("facility_id is required")
        start = parse_civil_date(start_date, "start_date")
        end = parse_civil_date(end_date, "end_date")
        try:
            mode = Granularity(granularity)
        except ValueError as exc:
            raise InvalidInputError(f"granularity must be 'day' or 'case', got {granularity!r}") from exc
        if end < start:
            raise InvalidInputError("end_date must not be before start_date")
        span = (end - start).days + 1
        if span > CALENDAR_MAX_RANGE_DAYS:
            raise InvalidInputError(f"date range spans {span} days; maximum is {CALENDAR_MAX_RANGE_DAYS}")

        records = await self.store.fetch_calendar_cases(facility_id, start, end)
        if mode == Granularity.CASE:
            return [self._case_summary(r) for r in sorted(records, key=_calendar_sort_key)]
        return self._day_summaries(records, start, end)

    @staticmethod
    def _day_summaries(records: Sequence[CalendarCaseRecord], start: date, end: date) -> List[DaySummary]:
        by_day: Dict[date, DaySummary] = {}
        for record in records:
            summary = by_day.setdefault(
                record.scheduled_date, DaySummary(date=format_civil_date(record.scheduled_date))
            )
            summary.case_count += 1
            state = record.readiness_state
            if state is None:
                summary.uncached_count += 1
                state = ReadinessState.ORANGE
            if state == ReadinessState.GREEN:
                summary.green_count += 1
            elif state == ReadinessState.RED:
                summary.red_count += 1
            else:
                summary.orange_count += 1
        return [by_day[d] for d in date_range(start, end) if d in by_day]

    @staticmethod
    def _case_summary(record: CalendarCaseRecord) -> CaseSummary:
        return CaseSummary(
            case_id=record.case_id,
            case_number=record.case_number,
            scheduled_date=format_civil_date(record.scheduled_date),
            scheduled_time=record.scheduled_time.strftime("%H:%M") if record.scheduled_time else None,
            procedure_name=record.procedure_name,
            laterality=record.laterality,
            surgeon_name=record.surgeon_name,
            surgeon_color=record.surgeon_color,
            readiness_state=record.readiness_state or ReadinessState.ORANGE,
            is_active=record.is_active,
            room_id=record.room_id,
            room_name=record.room_name,
            cached=record.readiness_state is not None,
        )

    # =========================================================================
    # Attestations
    # =========================================================================

    async def create_attestation(
        self,
        facility_id: str,
        case_id: str,
        attestation_type: Union[str, AttestationType],
        user_id: str,
        role: str,
        notes: Optional[str] = None,
    ) -> Optional[Attestation]:
        """
        Record an attestation against the case's freshly computed state, then
        refresh the cache for the case's date. Returns None for an unknown case.
        """
        try:
            kind = AttestationType(attestation_type)
        except ValueError as exc:
            raise InvalidInputError(f"unknown attestation type {attestation_type!r}") from exc

        case = await self.store.fetch_case(facility_id, case_id)
        if case is None:
            return None
        if case.status in EXCLUDED_CASE_STATUSES:
            raise AttestationNotAllowed(f"case is {case.status.value.lower()}", status_code=400)

        if kind == AttestationType.CASE_READINESS and role not in READINESS_ATTESTER_ROLES:
            raise AttestationNotAllowed(f"role {role} may not attest case readiness", status_code=403)
        if kind == AttestationType.SURGEON_ACKNOWLEDGMENT:
            if role != SURGEON_ROLE or user_id != case.surgeon_id:
                raise AttestationNotAllowed(
                    "only the assigned surgeon may acknowledge readiness exceptions", status_code=403
                )

        output = await self.compute_case_readiness(case_id, facility_id)
        if kind == AttestationType.SURGEON_ACKNOWLEDGMENT and output.computed_state != ReadinessState.RED:
            raise AttestationNotAllowed(
                f"surgeon acknowledgment requires a RED case; case is {output.computed_state.value}",
                status_code=400,
            )

        attestation = await self.store.insert_attestation(Attestation(
            id=str(uuid.uuid4()),
            facility_id=facility_id,
            case_id=case_id,
            type=kind,
            attested_by_user_id=user_id,
            readiness_state_at_time=output.computed_state,
            created_at=self.now(),
            notes=notes,
        ))
        logger.info(
            f"{kind.value} attestation by {user_id} at state {output.computed_state.value}",
            extra={"facility_id": facility_id, "case_id": case_id},
        )
        if case.scheduled_date is not None:
            await self._recompute(facility_id, case.scheduled_date)
        return attestation

    async def list_attestations(self, facility_id: str, case_id: str) -> Optional[List[AttestationListing]]:
        """All attestations for the case, voided included, newest first."""
        case = await self.store.fetch_case(facility_id, case_id)
        if case is None:
            return None
        attestations = await self.store.fetch_attestations([case_id], include_voided=True)
        output = await self.compute_case_readiness(case_id, facility_id)
        current_ids = set()
        if output.has_attestation and output.attestation_id:
            current_ids.add(output.attestation_id)
        if output.surgeon_acknowledgment_id:
            current_ids.add(output.surgeon_acknowledgment_id)
        ordered = sorted(attestations, key=lambda a: (a.created_at, a.id), reverse=True)
        return [AttestationListing(attestation=a, is_current=a.id in current_ids) for a in ordered]

    async def void_attestation(
        self, facility_id: str, attestation_id: str, user_id: str, role: str
    ) -> Attestation:
        """Flag an attestation voided (never deleted) and refresh the cache for its case's date."""
        attestation = await self.store.fetch_attestation(facility_id, attestation_id)
        if attestation is None:
            raise AttestationNotFound(f"attestation {attestation_id} not found")
        if attestation.is_voided:
            raise AttestationAlreadyVoided(f"attestation {attestation_id} is already voided")
        if role != ADMIN_ROLE and user_id != attestation.attested_by_user_id:
            raise AttestationNotAllowed("only the attesting user or an admin may void", status_code=403)

        voided = await self.store.void_attestation(attestation_id, user_id, self.now())
        logger.info(
            f"Attestation {attestation_id} voided by {user_id}",
            extra={"facility_id": facility_id, "case_id": attestation.case_id},
        )
        case = await self.store.fetch_case(facility_id, attestation.case_id)
        if case is not None and case.scheduled_date is not None:
            await self._recompute(facility_id, case.scheduled_date)
        return voided

    # =========================================================================
    # Substitution table
    # =========================================================================

    async def list_substitutes(self, facility_id: str) -> List[CatalogSubstituteRecord]:
        return await self.store.list_substitutes(facility_id)

    async def add_substitute(
        self,
        facility_id: str,
        catalog_id: str,
        substitute_catalog_id: str,
        priority: int = 100,
        created_by_user_id: Optional[str] = None,
    ) -> CatalogSubstituteRecord:
        if catalog_id == substitute_catalog_id:
            raise InvalidInputError("an item cannot substitute for itself")
        catalog = await self.store.fetch_catalog(facility_id)
        for label, cid in (("catalog_id", catalog_id), ("substitute_catalog_id", substitute_catalog_id)):
            if cid not in catalog:
                raise InvalidInputError(f"{label} {cid} is not in this facility's catalog")
        existing = await self.store.list_substitutes(facility_id)
        if any(s.catalog_id == catalog_id and s.substitute_catalog_id == substitute_catalog_id for s in existing):
            raise InvalidInputError("substitute mapping already exists")

        record = CatalogSubstituteRecord(
            id=str(uuid.uuid4()),
            facility_id=facility_id,
            catalog_id=catalog_id,
            substitute_catalog_id=substitute_catalog_id,
            priority=priority,
        )
        return await self.store.add_substitute(record, created_by_user_id)

    async def remove_substitute(self, facility_id: str, substitute_id: str) -> bool:
        return await self.store.remove_substitute(facility_id, substitute_id)

    # =========================================================================
    # Internals
    # =========================================================================

    @asynccontextmanager
    async def _serialized(self, facility_id: str, day: date) -> AsyncIterator[None]:
        if not self.serialize:
            yield
            return
        async with _recompute_lock(facility_id, day):
            yield

    async def _recompute(self, facility_id: str, day: date) -> List[CachedReadinessRow]:
        scope = f"{facility_id}/{format_civil_date(day)}"
        log_extra = {"facility_id": facility_id, "scheduled_date": format_civil_date(day)}

        async with self._serialized(facility_id, day):
            start = time.perf_counter()
            logger.info("Readiness recompute started", extra=log_extra)
            try:
                batch = await self._run_day(facility_id, day)
                rows = self._cache_rows(facility_id, batch)
                if self.clock() > batch.deadline:
                    raise RecomputeBudgetExceeded(
                        facility_id, day, f"exceeded {self.budget.timeout_seconds}s before cache write"
                    )
                await self.store.replace_cached_rows(facility_id, day, rows)
            except RecomputeFailure as exc:
                perf_tracker.record_recompute_failure(type(exc).__name__)
                logger.error(f"Readiness recompute failed: {exc}", extra=log_extra)
                raise
            except Exception as exc:
                perf_tracker.record_recompute_failure(type(exc).__name__)
                logger.error(f"Readiness recompute failed: {exc}", extra=log_extra, exc_info=True)
                raise RecomputeFailure(facility_id, day, str(exc)) from exc

            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            perf_tracker.record_recompute(scope, duration_ms, len(rows))
            logger.info(
                f"Readiness recompute complete: {len(rows)} cases",
                extra={**log_extra, "duration_ms": duration_ms},
            )
            return rows

    async def _run_day(self, facility_id: str, day: date) -> _DayBatch:
        cases = await self.store.fetch_cases_for_date(facility_id, day)
        if len(cases) > self.budget.max_cases:
            raise RecomputeBudgetExceeded(
                facility_id, day, f"{len(cases)} cases exceeds budget of {self.budget.max_cases}"
            )
        return await self._build_batch(facility_id, day, cases, cutoff_instant(day))

    async def _build_batch(
        self,
        facility_id: str,
        day: date,
        cases: Sequence[CaseForReadiness],
        cutoff: datetime,
    ) -> _DayBatch:
        deadline = self.clock() + self.budget.timeout_seconds
        case_ids = [c.id for c in cases]

        catalog = await self.store.fetch_catalog(facility_id)
        inventory = await self.store.fetch_inventory(facility_id)
        if len(inventory) > self.budget.max_inventory_units:
            raise RecomputeBudgetExceeded(
                facility_id, day,
                f"{len(inventory)} inventory units exceeds budget of {self.budget.max_inventory_units}",
            )
        substitutes = await self.store.fetch_substitutes(facility_id)
        requirements: Dict[str, List[CaseRequirement]] = await self.store.fetch_requirements(case_ids)
        attestations = group_by_case(await self.store.fetch_attestations(case_ids))

        allocator = BatchAllocator(catalog, inventory, substitutes, deadline=deadline, clock=self.clock)
        try:
            allocation = allocator.allocate(cases, requirements, cutoff)
        except AllocationDeadlineExceeded as exc:
            raise RecomputeBudgetExceeded(facility_id, day, str(exc)) from exc

        rejected = rejection_summary(allocation)
        if rejected:
            logger.debug(
                f"Allocator rejected units for {len(rejected)} cases: {rejected}",
                extra={"facility_id": facility_id, "scheduled_date": format_civil_date(day)},
            )

        by_id = {c.id: c for c in cases}
        outputs: List[ReadinessOutput] = []
        for case_id in allocation.case_order:
            claimed = allocation.for_case(case_id)
            outputs.append(self.engine.evaluate_case(
                by_id[case_id],
                requirements.get(case_id, []),
                catalog,
                claimed.units_by_requirement(),
                attestations.get(case_id, []),
                cutoff,
                claimed.rejections_by_requirement(),
            ))

        user_ids = {c.surgeon_id for c in cases}
        user_ids.update(o.attested_by_user_id for o in outputs if o.attested_by_user_id)
        user_names = await self.store.fetch_user_names(user_ids) if user_ids else {}

        return _DayBatch(
            scheduled_date=day,
            cutoff=cutoff,
            catalog=catalog,
            allocator=allocator,
            cases=by_id,
            outputs=outputs,
            user_names=user_names,
            deadline=deadline,
        )

    def _cache_rows(self, facility_id: str, batch: _DayBatch) -> List[CachedReadinessRow]:
        computed_at = self.now()
        rows: List[CachedReadinessRow] = []
        for output in batch.outputs:
            case = batch.cases[output.case_id]
            rows.append(CachedReadinessRow(
                case_id=output.case_id,
                facility_id=facility_id,
                scheduled_date=batch.scheduled_date,
                procedure_name=case.procedure_name,
                surgeon_name=batch.user_names.get(case.surgeon_id, UNKNOWN_SURGEON),
                readiness_state=output.readiness_state,
                missing_items=[m.to_dict() for m in output.missing_items],
                total_required_items=output.total_required_items,
                total_verified_items=output.total_verified_items,
                has_attestation=output.has_attestation,
                attested_at=output.attested_at,
                attested_by_name=(
                    batch.user_names.get(output.attested_by_user_id) if output.attested_by_user_id else None
                ),
                attestation_id=output.attestation_id,
                attestation_stale=output.attestation_stale,
                has_surgeon_acknowledgment=output.has_surgeon_acknowledgment,
                surgeon_acknowledged_at=output.surgeon_acknowledged_at,
                surgeon_acknowledgment_id=output.surgeon_acknowledgment_id,
                computed_at=computed_at,
            ))
        return rows


def _calendar_sort_key(record: CalendarCaseRecord) -> Tuple:
    return (
        record.scheduled_date,
        record.scheduled_time is None,
        record.scheduled_time.isoformat() if record.scheduled_time else "",
        record.procedure_name,
        record.case_id,
    )
