from contextlib import asynccontextmanager
from datetime import datetime
import logging
import os

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlmodel import Session, text

from database import create_db, get_session
import models  # noqa: F401  registers the tables before create_db
from routers.audit import router as audit_router
from routers.auth import router as auth_router
from routers.bills import router as bills_router
from routers.branches import router as branches_router
from routers.diagnostic_visits import router as diagnostic_visits_router
from routers.lab_tests import router as lab_tests_router
from routers.patients import router as patients_router
from routers.payouts import router as payouts_router
from routers.referral_doctors import router as referral_doctors_router
from services.errors import DomainError

logging.basicConfig(
    level=os.getenv("LABDESK_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("labdesk")

ROUTERS = (
    auth_router,
    branches_router,
    patients_router,
    lab_tests_router,
    referral_doctors_router,
    payouts_router,
    diagnostic_visits_router,
    bills_router,
    audit_router,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    create_db()
    yield


app = FastAPI(title="Labdesk", version="0.1.0", lifespan=lifespan)


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    if exc.status_code >= 500:
        logger.warning("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.payload())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled server error for %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.middleware("http")
async def no_cache_api_responses(request: Request, call_next):
    response = await call_next(request)
    if request.url.path != "/health":
        response.headers["Cache-Control"] = "no-store, max-age=0"
        response.headers["Pragma"] = "no-cache"
        response.headers["Expires"] = "0"
    return response


for router in ROUTERS:
    app.include_router(router)
    app.include_router(router, prefix="/api")


@app.get("/health")
def health(session: Session = Depends(get_session)):
    try:
        session.exec(text("SELECT 1"))
        return {
            "status": "ok",
            "database": "connected",
            "timestamp": datetime.utcnow().isoformat(),
        }
    except Exception:
        logger.exception("Health check failed")
        return JSONResponse(status_code=500, content={"status": "error", "database": "unavailable"})
