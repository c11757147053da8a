import logging

from botocore.exceptions import BotoCoreError, ClientError
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.base import BaseHTTPMiddleware

from grc_core.config import settings
from grc_core.database import check_db_connection
from grc_core.errors import ApiError
from grc_core.middleware.audit import set_audit_context
from grc_core.routers.audit_comments import router as audit_comments_router
from grc_core.routers.audit_findings import router as audit_findings_router
from grc_core.routers.audit_log import router as audit_log_router
from grc_core.routers.audit_requests import router as audit_requests_router
from grc_core.routers.audit_requests import templates_router as audit_request_templates_router
from grc_core.routers.audits import router as audits_router
from grc_core.routers.evidence import lookup_router as evidence_lookup_router
from grc_core.routers.evidence import router as evidence_router
from grc_core.routers.policies import router as policies_router
from grc_core.routers.policies import signoffs_router
from grc_core.routers.policy_gap import gap_router as policy_gap_router
from grc_core.routers.policy_gap import templates_router as policy_templates_router

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
)


class AuditContextMiddleware(BaseHTTPMiddleware):
    """Capture client address and agent for the audit trail of this request."""

    async def dispatch(self, request: Request, call_next):
        forwarded = request.headers.get("X-Forwarded-For")
        ip = forwarded.split(",")[0].strip() if forwarded else (request.client.host if request.client else None)
        set_audit_context(ip_address=ip, user_agent=request.headers.get("User-Agent"))
        return await call_next(request)


app.add_middleware(AuditContextMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Error envelope: {"error": {"code", "message"}} ──

def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": {"code": code, "message": message}})


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    return _error(exc.status_code, exc.code, exc.message)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{where}: {first.get('msg')}" if where else str(first.get("msg", "Invalid request"))
    return _error(400, "VALIDATION_ERROR", message)


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return _error(500, "INTERNAL_ERROR", "Internal server error")


@app.exception_handler(ClientError)
@app.exception_handler(BotoCoreError)
async def storage_error_handler(request: Request, exc: Exception):
    logger.exception("Object storage error on %s %s", request.method, request.url.path)
    return _error(500, "INTERNAL_ERROR", "Object storage request failed")


app.include_router(audits_router)
app.include_router(audit_requests_router)
app.include_router(audit_request_templates_router)
app.include_router(audit_findings_router)
app.include_router(audit_comments_router)
app.include_router(evidence_router)
app.include_router(evidence_lookup_router)
app.include_router(policies_router)
app.include_router(signoffs_router)
app.include_router(policy_templates_router)
app.include_router(policy_gap_router)
app.include_router(audit_log_router)


@app.get("/health")
async def health():
    """Health check: verifies API is running and database is reachable."""
    try:
        await check_db_connection()
        db_status = "connected"
    except SQLAlchemyError as exc:
        logger.warning("Health check: database unreachable: %s", exc)
        db_status = f"error: {exc}"

    return {
        "status": "ok" if db_status == "connected" else "degraded",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "database": db_status,
        "storage": "configured" if settings.storage_configured else "disabled",
    }
