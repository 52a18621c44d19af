"""
Smeta API
FastAPI backend for construction estimates and completion acts (KS-2 / KS-3),
async SQLAlchemy on PostgreSQL, JWT auth.
"""
import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from smeta.config import LOG_FORMAT, LOG_LEVEL
from smeta.errors import (
    ActNotFoundError,
    CatalogWorkNotFoundError,
    CatalogWorkReadOnlyError,
    EstimateNotFoundError,
    ForeignEstimateItemError,
    InvalidActStatusError,
    InvalidActTypeError,
    NoCompletedWorksError,
    SmetaError,
    TransientPersistenceError,
)
from smeta.services.logging_config import setup_logging
from smeta.services.middleware import RequestTimingMiddleware

setup_logging(level=LOG_LEVEL, json_output=LOG_FORMAT != "text")
logger = logging.getLogger("smeta-api")

for var in ["DATABASE_URL", "JWT_SECRET_KEY"]:
    if not os.getenv(var):
        logger.warning(f"MISSING env var: {var} — running in dev mode")

# Most specific class first; the first isinstance match wins
ERROR_STATUS = (
    (NoCompletedWorksError, 409),
    (ActNotFoundError, 404),
    (EstimateNotFoundError, 404),
    (CatalogWorkNotFoundError, 404),
    (CatalogWorkReadOnlyError, 403),
    (ForeignEstimateItemError, 400),
    (InvalidActStatusError, 400),
    (InvalidActTypeError, 400),
    (TransientPersistenceError, 503),
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        from smeta.db import init_db
        await init_db()
    except Exception as e:
        logger.warning(f"Table init warning: {e}")
    yield
    from smeta.db import engine
    await engine.dispose()


app = FastAPI(
    title="Smeta API",
    version="1.0.0",
    description="Construction estimates, work completion and KS-2/KS-3 acts",
    lifespan=lifespan,
)


@app.exception_handler(SmetaError)
async def smeta_error_handler(request: Request, exc: SmetaError):
    status_code = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 400)
    if status_code >= 500:
        logger.error("%s: %s", exc.code, exc.message)
    headers = {"Retry-After": "1"} if isinstance(exc, TransientPersistenceError) else None
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "code": exc.code},
        headers=headers,
    )


_cors_default = "http://localhost:3000,http://localhost:8000"
cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", _cors_default).split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept", "X-Requested-With", "X-Request-ID"],
)
# Request timing + X-Request-ID must be outermost so it wraps all other middleware
app.add_middleware(RequestTimingMiddleware)

# Routers
from smeta.api.estimate_routes import router as estimate_router
from smeta.api.completion_routes import router as completion_router
from smeta.api.act_routes import router as act_router

app.include_router(estimate_router)
app.include_router(completion_router)
app.include_router(act_router)


@app.get("/health")
async def health_check():
    return {
        "status": "active",
        "version": "1.0.0",
        "db_configured": bool(os.getenv("DATABASE_URL")),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("smeta.main:app", host="0.0.0.0", port=8000, reload=True)
