from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ValueKind(str, Enum):
    text = "text"
    numeric = "numeric"
    coded = "coded"


class SyncWatermark(BaseModel):
    """Position of the last processed observation, ordered by (recorded_at, source_id)."""

    model_config = ConfigDict(frozen=True)

    recorded_at: datetime
    source_id: str | None = None

    def sort_key(self) -> tuple[datetime, int, str]:
        return _ordering_key(self.recorded_at, self.source_id or "")


class SourceObservation(BaseModel):
    model_config = ConfigDict(frozen=True)

    source_id: str = Field(..., min_length=1)
    source_person_id: str = Field(..., min_length=1)
    person_given_name: str | None = None
    person_family_name: str | None = None
    concept_name: str
    value: str | float | None = None
    value_kind: ValueKind | None = None
    observed_at: datetime
    recorded_at: datetime
    comments: str | None = None
    location_name: str | None = None
    provider_name: str | None = None
    encounter_id: str | None = None

    @property
    def person_full_name(self) -> str:
        parts = [self.person_given_name or "", self.person_family_name or ""]
        return " ".join(part.strip() for part in parts if part and part.strip())

    def watermark(self) -> SyncWatermark:
        return SyncWatermark(recorded_at=self.recorded_at, source_id=self.source_id)

    def sort_key(self) -> tuple[datetime, int, str]:
        return _ordering_key(self.recorded_at, self.source_id)


class ClinicalRecordInput(BaseModel):
    patient_id: int
    record_type: str
    data: dict[str, Any]
    source_system: str
    source_id: str
    source_person_id: str | None = None
    observed_at: datetime | None = None


def resolve_value(
    value_text: str | None,
    value_numeric: float | int | None,
    value_coded_name: str | None,
) -> tuple[str | float | None, ValueKind | None]:
    if value_text is not None and str(value_text).strip():
        return str(value_text).strip(), ValueKind.text
    if value_numeric is not None:
        return float(value_numeric), ValueKind.numeric
    if value_coded_name is not None and str(value_coded_name).strip():
        return str(value_coded_name).strip(), ValueKind.coded
    return None, None


def normalize_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _ordering_key(recorded_at: datetime, source_id: str) -> tuple[datetime, int, str]:
    # obs_id values are numeric in OpenMRS; compare them numerically so "10" sorts after "9".
    if source_id.isdigit():
        return normalize_datetime(recorded_at), int(source_id), ""
    return normalize_datetime(recorded_at), -1, source_id
