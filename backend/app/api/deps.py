"""FastAPI dependency injection — auth guards and the readiness service."""
from dataclasses import dataclass
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from sqlalchemy.ext.asyncio import AsyncSession
from app.config import ADMIN_ROLE, JWT_ALGORITHM, JWT_SECRET_KEY
from app.db import get_db
from app.services.readiness_service import ReadinessService
from app.services.readiness_store import SqlReadinessStore

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    """The caller, as asserted by the identity service's bearer token."""
    user_id: str
    facility_id: str
    role: str


async def get_current_principal(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Principal:
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        payload = jwt.decode(credentials.credentials, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    user_id = payload.get("sub")
    facility_id = payload.get("facility_id")
    if not user_id or not facility_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return Principal(user_id=str(user_id), facility_id=str(facility_id), role=str(payload.get("role") or ""))


async def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    """Require Admin role. Returns 403 for any non-Admin authenticated caller."""
    if principal.role != ADMIN_ROLE:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return principal


def get_readiness_service(db: AsyncSession = Depends(get_db)) -> ReadinessService:
    return ReadinessService(SqlReadinessStore(db))
