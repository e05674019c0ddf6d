from datetime import datetime, timezone

import pytest

from passport_sync.services.openmrs_sync.mapper import (
    GENERIC_RECORD_TYPE,
    categorize_concept,
    map_observation,
)
from passport_sync.services.openmrs_sync.types import ValueKind


@pytest.mark.parametrize(
    ("concept_name", "expected"),
    [
        ("Blood Pressure", "vital_sign"),
        ("Weight", "vital_sign"),
        ("Temperature (C)", "vital_sign"),
        ("Diagnosis: Malaria", "condition"),
        ("Malaria smear impression", "condition"),
        ("HIV rapid test", "test"),
        ("Lab result: haemoglobin", "test"),
        ("Current medication", "medication"),
        ("Antiretroviral treatment start date", "medication"),
        ("Peripheral smear", "condition"),
        ("Visit note", "visit"),
        ("Text of encounter note", "visit"),
        ("Occupation", GENERIC_RECORD_TYPE),
    ],
)
def test_categorize_concept(concept_name, expected):
    assert categorize_concept(concept_name) == expected


def test_diagnosis_prefix_outranks_later_keywords():
    assert categorize_concept("Diagnosis: high blood pressure") == "condition"


def test_map_observation_builds_record(make_observation):
    observed_at = datetime(2025, 10, 9, 14, 2, tzinfo=timezone.utc)
    observation = make_observation(
        obs_id=5267,
        concept_name="Diagnosis: Malaria",
        value="Plasmodium falciparum",
        value_kind=ValueKind.coded,
        observed_at=observed_at,
        comments="Started on artemether-lumefantrine",
        location_name="Site 1",
        provider_name="Jake Doctor",
        encounter_id="874",
    )

    record = map_observation(observation, patient_id=7, source_system="openmrs")

    assert record.patient_id == 7
    assert record.record_type == "condition"
    assert record.source_system == "openmrs"
    assert record.source_id == "5267"
    assert record.source_person_id == "102"
    assert record.observed_at == observed_at
    assert record.data == {
        "label": "Diagnosis: Malaria",
        "value": "Plasmodium falciparum",
        "value_kind": "coded",
        "observed_at": "2025-10-09T14:02:00+00:00",
        "notes": "Started on artemether-lumefantrine",
        "location": "Site 1",
        "provider": "Jake Doctor",
        "encounter_id": "874",
    }


def test_map_observation_is_deterministic(make_observation):
    observation = make_observation()
    assert map_observation(observation, 1) == map_observation(observation, 1)


def test_unknown_concept_is_kept_as_generic_observation(make_observation):
    record = map_observation(
        make_observation(concept_name="Occupation", value=None, value_kind=None),
        patient_id=3,
    )
    assert record.record_type == GENERIC_RECORD_TYPE
    assert record.data["value"] is None
    assert "encounter_id" not in record.data
