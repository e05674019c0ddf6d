from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from passport_sync.models.patient_source_link import LinkMethod
from passport_sync.models.sync_state import SyncRunStatus


class SyncRunRequest(BaseModel):
    full_history: bool = False


class SyncCheckpointOut(BaseModel):
    recorded_at: datetime
    source_id: str | None = None


class SyncRunSummaryOut(BaseModel):
    status: str
    source_system: str
    full_history: bool
    trigger: str
    run_id: int | None = None
    fetched: int = 0
    inserted: int = 0
    already_present: int = 0
    skipped: int = 0
    skipped_no_match: int = 0
    skipped_ambiguous: int = 0
    failed: int = 0
    deadline_reached: bool = False
    checkpoint_before: SyncCheckpointOut | None = None
    checkpoint_after: SyncCheckpointOut | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_seconds: float | None = None
    error: str | None = None


class SyncStatusOut(BaseModel):
    state: str
    busy: bool
    loop_running: bool
    interval_seconds: int
    source_system: str
    checkpoint: SyncCheckpointOut | None = None
    last_run: SyncRunSummaryOut | None = None


class SyncRunOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    source_system: str
    status: SyncRunStatus
    trigger: str
    full_history: bool
    started_at: datetime
    finished_at: datetime | None = None
    checkpoint_before: datetime | None = None
    checkpoint_after: datetime | None = None
    fetched: int
    inserted: int
    already_present: int
    skipped_no_match: int
    skipped_ambiguous: int
    failed: int
    error: str | None = None


class IdentityLinkRequest(BaseModel):
    patient_id: int = Field(..., ge=1)


class IdentityLinkOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    source_system: str
    source_person_id: str
    patient_id: int
    method: LinkMethod
