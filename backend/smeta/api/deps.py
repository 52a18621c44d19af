"""FastAPI dependency injection — auth guards and per-request services."""
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from smeta.config import CATALOG_CACHE_TTL_SECONDS, JWT_ALGORITHM, JWT_SECRET_KEY
from smeta.db import apply_session_context, get_db, get_session_factory
from smeta.services.cache_store import CacheStore

security = HTTPBearer(auto_error=False)

# One catalog cache per process; its lifetime is the application's
catalog_cache = CacheStore(ttl_seconds=CATALOG_CACHE_TTL_SECONDS)


@dataclass(frozen=True)
class CurrentUser:
    id: str
    tenant_id: Optional[str]


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> CurrentUser:
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        payload = jwt.decode(credentials.credentials, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
        user_id: str = payload.get("sub")
        if not user_id:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return CurrentUser(id=user_id, tenant_id=payload.get("tenant_id"))


def get_tenant_id(user: CurrentUser = Depends(get_current_user)) -> str:
    if not user.tenant_id:
        raise HTTPException(status_code=400, detail="User has no tenant assigned")
    return user.tenant_id


def get_catalog_cache() -> CacheStore:
    return catalog_cache


def get_transaction_factory() -> async_sessionmaker:
    """Session factory for operations that own their transaction (act generation)."""
    return get_session_factory()


async def get_scoped_db(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> AsyncSession:
    """Request session with tenant/user bound to its transaction."""
    await apply_session_context(db, user.tenant_id, user.id)
    return db
