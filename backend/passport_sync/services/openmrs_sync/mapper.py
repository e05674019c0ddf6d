from __future__ import annotations

import re

from passport_sync.services.openmrs_sync.types import ClinicalRecordInput, SourceObservation

GENERIC_RECORD_TYPE = "observation"

# First matching category wins; concepts matching none become generic observations.
RECORD_TYPE_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("visit", ("visit", "encounter", "admission", "discharge")),
    (
        "vital_sign",
        (
            "blood pressure",
            "systolic",
            "diastolic",
            "pulse",
            "heart rate",
            "respiratory rate",
            "temperature",
            "weight",
            "height",
            "bmi",
            "body mass index",
            "oxygen saturation",
            "spo2",
        ),
    ),
    (
        "test",
        (
            "lab",
            "laboratory",
            "test",
            "rapid test",
            "investigation",
            "result",
            "screening",
            "x-ray",
            "ultrasound",
            "scan",
            "serum",
        ),
    ),
    ("medication", ("medication", "drug", "treatment", "prescription", "dosage", "regimen")),
    (
        "condition",
        (
            "diagnosis",
            "condition",
            "disease",
            "problem",
            "impression",
            "malaria",
            "smear",
            "fever",
            "pain",
            "infection",
        ),
    ),
)

_RULE_PATTERNS = tuple(
    (
        record_type,
        re.compile(r"\b(" + "|".join(re.escape(k) for k in keywords) + r")\b", re.IGNORECASE),
    )
    for record_type, keywords in RECORD_TYPE_RULES
)


def categorize_concept(concept_name: str) -> str:
    # Diagnosis-style labels ("Diagnosis: Malaria") outrank any keyword found later in the label.
    head = concept_name.split(":", 1)[0] if ":" in concept_name else None
    for candidate in filter(None, (head, concept_name)):
        for record_type, pattern in _RULE_PATTERNS:
            if pattern.search(candidate):
                return record_type
    return GENERIC_RECORD_TYPE


def map_observation(
    observation: SourceObservation,
    patient_id: int,
    source_system: str = "openmrs",
) -> ClinicalRecordInput:
    record_type = categorize_concept(observation.concept_name)
    data = {
        "label": observation.concept_name,
        "value": observation.value,
        "value_kind": observation.value_kind.value if observation.value_kind else None,
        "observed_at": observation.observed_at.isoformat(),
        "notes": observation.comments,
        "location": observation.location_name,
        "provider": observation.provider_name,
    }
    if observation.encounter_id is not None:
        data["encounter_id"] = observation.encounter_id
    return ClinicalRecordInput(
        patient_id=patient_id,
        record_type=record_type,
        data=data,
        source_system=source_system,
        source_id=observation.source_id,
        source_person_id=observation.source_person_id,
        observed_at=observation.observed_at,
    )
