from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from passport_sync.models import ClinicalRecord, Patient
from passport_sync.services.openmrs_sync import writer
from passport_sync.services.openmrs_sync.errors import DestinationUnavailable
from passport_sync.services.openmrs_sync.types import ClinicalRecordInput
from passport_sync.services.openmrs_sync.writer import WriteOutcome, write_record


def _record(patient_id: int, source_id: str = "5268", value: float = 64.5) -> ClinicalRecordInput:
    return ClinicalRecordInput(
        patient_id=patient_id,
        record_type="vital_sign",
        data={"label": "Weight", "value": value, "value_kind": "numeric"},
        source_system="openmrs",
        source_id=source_id,
        source_person_id="102",
        observed_at=datetime(2025, 10, 12, 8, 40, tzinfo=timezone.utc),
    )


def test_write_record_inserts_once(session, add_patient):
    patient_id = add_patient("Betty Williams")

    assert write_record(session, _record(patient_id)) == WriteOutcome.inserted
    session.commit()
    assert write_record(session, _record(patient_id)) == WriteOutcome.already_present
    session.commit()

    count = session.scalar(select(func.count()).select_from(ClinicalRecord))
    assert count == 1


def test_write_record_never_updates_existing(session, add_patient):
    patient_id = add_patient("Betty Williams")
    write_record(session, _record(patient_id, value=64.5))
    session.commit()

    write_record(session, _record(patient_id, value=99.0))
    session.commit()

    stored = session.scalar(select(ClinicalRecord))
    assert stored.data["value"] == 64.5
    assert stored.source_person_id == "102"


def test_same_source_id_for_different_patients_is_allowed(session, add_patient):
    first = add_patient("Betty Williams")
    second = add_patient("Jake Doctor")

    assert write_record(session, _record(first)) == WriteOutcome.inserted
    assert write_record(session, _record(second)) == WriteOutcome.inserted


def test_write_record_maps_database_errors(session, monkeypatch):
    def _boom(*_args, **_kwargs):
        raise OperationalError("INSERT INTO clinical_records", {}, Exception("db down"))

    monkeypatch.setattr(writer, "insert_ignoring_conflicts", _boom)

    with pytest.raises(DestinationUnavailable, match="observation 5268"):
        write_record(session, _record(1))


def test_patient_table_holds_only_identity_columns():
    assert set(Patient.__table__.columns.keys()) == {
        "id",
        "display_name",
        "created_at",
        "updated_at",
    }
