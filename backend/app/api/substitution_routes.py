"""Catalog substitution routes — admin maintenance of the facility's substitute table."""
import logging
from fastapi import APIRouter, Depends, HTTPException
from app.api.deps import Principal, require_admin, get_readiness_service
from app.models.readiness_schemas import CatalogSubstituteCreate, CatalogSubstituteOut
from app.services.readiness_errors import InvalidInputError
from app.services.readiness_service import ReadinessService

router = APIRouter(prefix="/api/v1/catalog-substitutes", tags=["Catalog Substitutes"])
logger = logging.getLogger("asc-readiness.api")


@router.get("", response_model=list[CatalogSubstituteOut])
async def list_substitutes(
    admin: Principal = Depends(require_admin),
    service: ReadinessService = Depends(get_readiness_service),
):
    records = await service.list_substitutes(admin.facility_id)
    return [CatalogSubstituteOut.from_record(r) for r in records]


@router.post("", response_model=CatalogSubstituteOut, status_code=201)
async def add_substitute(
    body: CatalogSubstituteCreate,
    admin: Principal = Depends(require_admin),
    service: ReadinessService = Depends(get_readiness_service),
):
    """Takes effect at the next recompute; cached rows are not touched."""
    try:
        record = await service.add_substitute(
            admin.facility_id,
            body.catalog_id,
            body.substitute_catalog_id,
            body.priority,
            created_by_user_id=admin.user_id,
        )
    except InvalidInputError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    logger.info(
        f"Substitute {record.substitute_catalog_id} added for {record.catalog_id} by {admin.user_id}",
        extra={"facility_id": admin.facility_id},
    )
    return CatalogSubstituteOut.from_record(record)


@router.delete("/{substitute_id}")
async def remove_substitute(
    substitute_id: str,
    admin: Principal = Depends(require_admin),
    service: ReadinessService = Depends(get_readiness_service),
):
    if not await service.remove_substitute(admin.facility_id, substitute_id):
        raise HTTPException(status_code=404, detail="Substitute mapping not found")
    return {"status": "deleted", "id": substitute_id}
