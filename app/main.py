from typing import Annotated

from fastapi import Depends, FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from timing_asgi import TimingMiddleware, TimingClient  # type: ignore
from timing_asgi.integrations import StarletteScopeToName  # type: ignore

from app.core import config
from app.core.database.engine import get_db, init_db
from app.features.users.routes import router as user_router
from app.features.branches.routes import router as branch_router
from app.features.permissions.routes import router as permission_router
from app.features.permissions.exceptions import ConflictingOverride, NotFound, StorageFailure
from app.features.users.dependencies import limiter
from app.utils import get_logger


log = get_logger(__name__)
log.info("Initializing server")
app = FastAPI(
    title="School Branch Authorization",
    description="Branch-scoped roles, permission overrides and branch hierarchy for a multi-branch school",
    version="0.1.0",
    docs_url="/docs" if config.ENABLE_DOCS else None,
    redoc_url="/redoc" if config.ENABLE_DOCS else None,
    openapi_url="/openapi.json" if config.ENABLE_DOCS else None
)
app.state.limiter = limiter


class PrintTimings(TimingClient):
    def timing(self, metric_name, timing, tags):
        log.debug(dict(route=metric_name.removeprefix("main.app.features."), timing=timing, tags=tags))


app.add_middleware(TimingMiddleware, client=PrintTimings(), metric_namer=StarletteScopeToName("main", app))

if config.ENABLE_DOCS:
    log.warning("Docs enabled")
if config.ALLOW_ORIGIN:
    log.warning("Setting allow origin to %s", config.ALLOW_ORIGIN)
    origins = [config.ALLOW_ORIGIN]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_request: Request, exc: RequestValidationError):
    errors = dict()
    for error in exc.errors():
        if "loc" not in error or "msg" not in error:
            continue
        key = error["loc"][-1]
        if key == "__root__":
            key = "root"
        errors[key] = error["msg"]
    log.info("Request validation error %s", errors)
    return JSONResponse(status_code=400, content=jsonable_encoder(errors))


@app.exception_handler(RateLimitExceeded)
def rate_limit_exceeded_handler(_request: Request, _exc: RateLimitExceeded) -> Response:
    return JSONResponse({"error": "You are going too fast"}, status_code=429)


@app.exception_handler(NotFound)
async def not_found_handler(_request: Request, exc: NotFound) -> Response:
    return JSONResponse({"error": str(exc)}, status_code=404)


@app.exception_handler(ConflictingOverride)
async def conflicting_override_handler(_request: Request, exc: ConflictingOverride) -> Response:
    log.error("Conflicting override rows: %s", exc)
    return JSONResponse({"error": "Conflicting permission overrides, contact an administrator"}, status_code=409)


@app.exception_handler(StorageFailure)
async def storage_failure_handler(_request: Request, exc: StorageFailure) -> Response:
    log.error("Storage failure: %s", exc)
    return JSONResponse({"error": "Permission store unavailable"}, status_code=503)


@app.on_event("startup")
async def startup():
    """Create missing tables. Seeding the catalog is a separate step (scripts/seed_permissions.py)."""
    await init_db()


@app.get("/")
async def root():
    """Service banner."""
    return {
        "message": "School Branch Authorization API",
        "version": "0.1.0",
        "status": "online",
        "docs": "/docs" if config.ENABLE_DOCS else None,
        "authentication": {
            "info": "Protected endpoints require Bearer token in Authorization header",
            "protected_endpoints": ["/users/me", "/branches/*", "/permissions/*"],
            "public_endpoints": ["/", "/health"]
        },
        "features": {
            "permissions": "Branch-scoped roles with per-user grant/revoke overrides",
            "branches": "Branch hierarchy with cross-branch access permissions",
            "users": "Current user profile and role assignments"
        }
    }


@app.get("/health")
async def health(db: Annotated[AsyncSession, Depends(get_db)]):
    """Liveness plus a round trip to the permission store."""
    try:
        await db.execute(text("SELECT 1"))
    except (OperationalError, InterfaceError) as e:
        log.error("Health check could not reach the database: %s", e)
        return JSONResponse({"status": "unhealthy", "database": "unreachable"}, status_code=503)
    return {"status": "healthy", "database": "ok"}


# Include routers
app.include_router(user_router, prefix="/users", tags=["users"])

# Branch hierarchy routes
app.include_router(branch_router, prefix="/branches", tags=["branches"])

# Permission routes (RBAC with overrides)
app.include_router(permission_router, prefix="/permissions", tags=["permissions"])
