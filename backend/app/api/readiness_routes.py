"""Readiness routes — day-before view, refresh, preview, calendar, single case, attestations."""
import logging
from datetime import datetime, timezone
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from app.api.deps import Principal, get_current_principal, get_readiness_service
from app.models.readiness_schemas import (
    AttestationCreate,
    AttestationOut,
    CalendarSummaryOut,
    CaseReadinessOut,
    CaseSummaryOut,
    DayPreviewCaseOut,
    DayPreviewOut,
    DayReadinessOut,
    DaySummaryOut,
)
from app.models.readiness_types import Granularity
from app.services.civil_date import format_civil_date, next_civil_day, parse_civil_date
from app.services.readiness_errors import AttestationError, InvalidInputError, RecomputeFailure
from app.services.readiness_service import ReadinessService

router = APIRouter(prefix="/api/v1/readiness", tags=["Readiness"])
logger = logging.getLogger("asc-readiness.api")


# ─── Helpers ────────────────────────────────────────────────────────────────

def _target_date(value: Optional[str]) -> str:
    """Requested date, or tomorrow on the server's civil calendar."""
    if value:
        return value
    return format_civil_date(next_civil_day(datetime.now(timezone.utc).date()))


def _bad_request(exc: InvalidInputError) -> HTTPException:
    return HTTPException(status_code=400, detail=str(exc))


def _unavailable(exc: RecomputeFailure) -> HTTPException:
    logger.error(f"Recompute failure surfaced to caller: {exc}")
    return HTTPException(status_code=503, detail=str(exc))


# ─── Day-before readiness ───────────────────────────────────────────────────

@router.get("/day-before", response_model=DayReadinessOut)
async def get_day_before(
    date: Optional[str] = Query(None, description="YYYY-MM-DD; defaults to tomorrow"),
    refresh: bool = Query(False),
    principal: Principal = Depends(get_current_principal),
    service: ReadinessService = Depends(get_readiness_service),
):
    """Cached readiness for every case on the date; recomputes when the cache is empty."""
    day = _target_date(date)
    try:
        rows = await service.get_day_readiness(principal.facility_id, day, force_refresh=refresh)
    except InvalidInputError as exc:
        raise _bad_request(exc)
    except RecomputeFailure as exc:
        raise _unavailable(exc)
    return DayReadinessOut.from_rows(day, rows)


@router.post("/refresh")
async def refresh_day(
    date: Optional[str] = Query(None, description="YYYY-MM-DD; defaults to tomorrow"),
    principal: Principal = Depends(get_current_principal),
    service: ReadinessService = Depends(get_readiness_service),
):
    day = _target_date(date)
    try:
        await service.refresh_readiness_cache(principal.facility_id, day)
    except InvalidInputError as exc:
        raise _bad_request(exc)
    except RecomputeFailure as exc:
        raise _unavailable(exc)
    return {"status": "refreshed", "date": day}


@router.get("/day-preview", response_model=DayPreviewOut)
async def preview_day(
    date: Optional[str] = Query(None, description="YYYY-MM-DD; defaults to tomorrow"),
    principal: Principal = Depends(get_current_principal),
    service: ReadinessService = Depends(get_readiness_service),
):
    """Live batch evaluation for the date; nothing is cached."""
    day = _target_date(date)
    try:
        result = await service.compute_day_readiness(principal.facility_id, day)
    except InvalidInputError as exc:
        raise _bad_request(exc)
    except RecomputeFailure as exc:
        raise _unavailable(exc)

    cases = []
    for output in result.cases:
        case = result.case_records[output.case_id]
        base = CaseReadinessOut.from_output(output)
        cases.append(DayPreviewCaseOut(
            **base.model_dump(),
            procedure_name=case.procedure_name,
            surgeon_id=case.surgeon_id,
            surgeon_name=result.surgeon_names.get(case.surgeon_id, "Unknown"),
        ))
    return DayPreviewOut(date=format_civil_date(result.scheduled_date), cases=cases, surgeon_names=result.surgeon_names)


# ─── Calendar ───────────────────────────────────────────────────────────────

@router.get("/calendar-summary", response_model=CalendarSummaryOut)
async def calendar_summary(
    start_date: str = Query(...),
    end_date: str = Query(...),
    granularity: str = Query(Granularity.DAY.value),
    principal: Principal = Depends(get_current_principal),
    service: ReadinessService = Depends(get_readiness_service),
):
    try:
        summaries = await service.get_calendar_summary(principal.facility_id, start_date, end_date, granularity)
    except InvalidInputError as exc:
        raise _bad_request(exc)

    out = CalendarSummaryOut(
        granularity=granularity,
        start_date=format_civil_date(parse_civil_date(start_date, "start_date")),
        end_date=format_civil_date(parse_civil_date(end_date, "end_date")),
    )
    if granularity == Granularity.CASE.value:
        out.cases = [CaseSummaryOut.from_summary(s) for s in summaries]
    else:
        out.days = [DaySummaryOut.from_summary(s) for s in summaries]
    return out


# ─── Single case ────────────────────────────────────────────────────────────

@router.get("/cases/{case_id}", response_model=CaseReadinessOut)
async def case_readiness(
    case_id: str,
    principal: Principal = Depends(get_current_principal),
    service: ReadinessService = Depends(get_readiness_service),
):
    try:
        output = await service.compute_case_readiness(case_id, principal.facility_id)
    except InvalidInputError as exc:
        raise _bad_request(exc)
    except RecomputeFailure as exc:
        raise _unavailable(exc)
    if output is None:
        raise HTTPException(status_code=404, detail="Case not found")
    return CaseReadinessOut.from_output(output)


# ─── Attestations ───────────────────────────────────────────────────────────

@router.post("/attestations", response_model=AttestationOut, status_code=201)
async def create_attestation(
    body: AttestationCreate,
    principal: Principal = Depends(get_current_principal),
    service: ReadinessService = Depends(get_readiness_service),
):
    try:
        attestation = await service.create_attestation(
            principal.facility_id,
            body.case_id,
            body.type,
            principal.user_id,
            principal.role,
            body.notes,
        )
    except InvalidInputError as exc:
        raise _bad_request(exc)
    except AttestationError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc))
    except RecomputeFailure as exc:
        raise _unavailable(exc)
    if attestation is None:
        raise HTTPException(status_code=404, detail="Case not found")
    return AttestationOut.from_attestation(attestation, is_current=True)


@router.get("/cases/{case_id}/attestations", response_model=list[AttestationOut])
async def list_attestations(
    case_id: str,
    principal: Principal = Depends(get_current_principal),
    service: ReadinessService = Depends(get_readiness_service),
):
    try:
        listings = await service.list_attestations(principal.facility_id, case_id)
    except RecomputeFailure as exc:
        raise _unavailable(exc)
    if listings is None:
        raise HTTPException(status_code=404, detail="Case not found")
    return [AttestationOut.from_attestation(item.attestation, item.is_current) for item in listings]


@router.post("/attestations/{attestation_id}/void", response_model=AttestationOut)
async def void_attestation(
    attestation_id: str,
    principal: Principal = Depends(get_current_principal),
    service: ReadinessService = Depends(get_readiness_service),
):
    try:
        voided = await service.void_attestation(
            principal.facility_id, attestation_id, principal.user_id, principal.role
        )
    except AttestationError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc))
    except RecomputeFailure as exc:
        raise _unavailable(exc)
    return AttestationOut.from_attestation(voided, is_current=False)
