from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from passport_sync.core.settings import settings
from passport_sync.db.session import get_db
from passport_sync.models.sync_state import SyncRun
from passport_sync.schemas.sync import (
    IdentityLinkOut,
    IdentityLinkRequest,
    SyncRunOut,
    SyncRunRequest,
    SyncRunSummaryOut,
    SyncStatusOut,
)
from passport_sync.services.openmrs_sync.errors import SyncAlreadyRunning
from passport_sync.services.openmrs_sync.identity import link_patient
from passport_sync.services.openmrs_sync.supervisor import SyncSupervisor, get_sync_supervisor
from passport_sync.services.openmrs_sync.sync_run import load_checkpoint

router = APIRouter(prefix="/sync", tags=["sync"])


def get_supervisor() -> SyncSupervisor:
    return get_sync_supervisor()


@router.post("/run", response_model=SyncRunSummaryOut)
def trigger_sync_run(
    payload: SyncRunRequest | None = None,
    supervisor: SyncSupervisor = Depends(get_supervisor),
):
    full_history = payload.full_history if payload else False
    try:
        summary = supervisor.trigger(full_history=full_history, trigger="api")
    except SyncAlreadyRunning as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return SyncRunSummaryOut.model_validate(summary.as_dict())


@router.get("/status", response_model=SyncStatusOut)
def get_sync_status(
    db: Session = Depends(get_db),
    supervisor: SyncSupervisor = Depends(get_supervisor),
):
    status = supervisor.status()
    checkpoint = load_checkpoint(db, settings.sync_source_system)
    return SyncStatusOut.model_validate(
        {
            **status,
            "source_system": settings.sync_source_system,
            "checkpoint": checkpoint.model_dump() if checkpoint else None,
        }
    )


@router.get("/runs", response_model=list[SyncRunOut])
def list_sync_runs(
    limit: int = Query(default=20, ge=1, le=200),
    db: Session = Depends(get_db),
):
    stmt = (
        select(SyncRun)
        .where(SyncRun.source_system == settings.sync_source_system)
        .order_by(SyncRun.id.desc())
        .limit(limit)
    )
    return list(db.scalars(stmt))


@router.put("/identity-links/{source_person_id}", response_model=IdentityLinkOut)
def set_identity_link(
    source_person_id: str,
    payload: IdentityLinkRequest,
    db: Session = Depends(get_db),
):
    try:
        link = link_patient(
            db,
            settings.sync_source_system,
            source_person_id,
            payload.patient_id,
        )
    except LookupError:
        raise HTTPException(status_code=404, detail="Patient not found")
    db.commit()
    db.refresh(link)
    return link
