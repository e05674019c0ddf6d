import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from passport_sync.core.logging import configure_logging
from passport_sync.core.settings import settings, validate_settings
from passport_sync.db.session import engine
from passport_sync.models import Base
from passport_sync.routers.sync import router as sync_router
from passport_sync.services.openmrs_sync.supervisor import get_sync_supervisor

app = FastAPI(title="Patient Passport Sync API", version="0.1.0")
logger = logging.getLogger("passport_sync.startup")


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    request_id = request.headers.get("x-request-id")
    logger.exception("Unhandled server error", extra={"request_id": request_id})
    payload = {"detail": "Internal server error"}
    if request_id:
        payload["request_id"] = request_id
    return JSONResponse(status_code=500, content=payload)


@app.on_event("startup")
def startup():
    configure_logging()
    validate_settings(settings)
    Base.metadata.create_all(bind=engine)

    if settings.sync_background_enabled:
        get_sync_supervisor().start()
    else:
        logger.info("OpenMRS background sync disabled by configuration.")


@app.on_event("shutdown")
def shutdown():
    if settings.sync_background_enabled:
        get_sync_supervisor().stop(timeout=settings.sync_max_run_seconds)


@app.get("/health")
def health():
    return {"status": "ok"}


app.include_router(sync_router)
