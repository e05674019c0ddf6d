from passport_sync.models.base import Base
from passport_sync.models.clinical_record import ClinicalRecord
from passport_sync.models.patient import Patient
from passport_sync.models.patient_source_link import LinkMethod, PatientSourceLink
from passport_sync.models.sync_state import SyncCheckpoint, SyncRun, SyncRunStatus

__all__ = [
    "Base",
    "ClinicalRecord",
    "LinkMethod",
    "Patient",
    "PatientSourceLink",
    "SyncCheckpoint",
    "SyncRun",
    "SyncRunStatus",
]
