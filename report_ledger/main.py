"""Report Ledger: Main FastAPI Application.

Freezes compliance reports into hash-committed runs, collects role
signatures and verifies runs independently at any later time.
"""

import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from .api import api_router
from .core import close_db, configure_logging, get_settings, init_db
from .core.dependencies import StorageDep
from .schemas import ErrorResponse
from .services.storage import LocalObjectStorage

settings = get_settings()
configure_logging(settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    logger.info(f"Starting {settings.app_name} v{settings.app_version} ({settings.environment})")

    # Startup - skip init_db in production (tables are migrated)
    if settings.environment != "production":
        try:
            await init_db()
        except Exception as e:
            logger.warning(f"Could not initialize database: {e}")
    yield
    # Shutdown
    await close_db()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description=(
        "Freeze job data into hash-committed report runs, collect prepared_by, "
        "reviewed_by and approved_by signatures, and re-verify any run against "
        "its source data. Requests carry a bearer token and an X-Organization-ID header."
    ),
    openapi_url=f"{settings.api_prefix}/openapi.json",
    docs_url=f"{settings.api_prefix}/docs",
    redoc_url=None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    max_age=86400,
)


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")

    # Internals stay in the log unless debugging
    message = "Internal server error"
    details = []
    if settings.debug:
        message = f"{type(exc).__name__}: {exc}"
        details = [
            {"code": "traceback", "message": line.strip()}
            for line in traceback.format_exception(exc)[-3:]
        ]

    body = ErrorResponse(error="internal_error", message=message, details=details)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body.model_dump())


@app.get("/health", tags=["health"])
async def health_check():
    return {"status": "ok", "service": settings.app_name, "version": settings.app_version}


@app.get("/artifacts/{path:path}", tags=["artifacts"], include_in_schema=False)
async def download_artifact(
    path: str,
    storage: StorageDep,
    expires: int = Query(...),
    signature: str = Query(...),
):
    """Serve a locally stored artifact behind a signed URL."""
    if not isinstance(storage, LocalObjectStorage):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    if not storage.verify_signed_url(path, expires, signature):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid or expired link")

    data = await storage.get(path)
    if data is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    return Response(content=data, media_type="application/pdf")


# Include API routes
app.include_router(api_router, prefix=settings.api_prefix)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "report_ledger.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
