from __future__ import annotations

import enum
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from passport_sync.db.upsert import insert_ignoring_conflicts
from passport_sync.models.clinical_record import ClinicalRecord
from passport_sync.services.openmrs_sync.errors import DestinationUnavailable
from passport_sync.services.openmrs_sync.types import ClinicalRecordInput

logger = logging.getLogger(__name__)


class WriteOutcome(str, enum.Enum):
    inserted = "inserted"
    already_present = "already_present"


def write_record(session: Session, record: ClinicalRecordInput) -> WriteOutcome:
    """Create the record once per (patient, source observation); never update it."""
    try:
        inserted = insert_ignoring_conflicts(
            session,
            ClinicalRecord,
            {
                "patient_id": record.patient_id,
                "record_type": record.record_type,
                "data": record.data,
                "source_system": record.source_system,
                "source_id": record.source_id,
                "source_person_id": record.source_person_id,
                "observed_at": record.observed_at,
            },
        )
    except SQLAlchemyError as exc:
        raise DestinationUnavailable(
            f"Writing {record.source_system} observation {record.source_id} failed: {exc}"
        ) from exc
    if not inserted:
        logger.debug(
            "Observation already present",
            extra={"source_id": record.source_id, "patient_id": record.patient_id},
        )
        return WriteOutcome.already_present
    return WriteOutcome.inserted
