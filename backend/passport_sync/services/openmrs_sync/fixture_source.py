from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from passport_sync.services.openmrs_sync.source import ObservationSource
from passport_sync.services.openmrs_sync.types import (
    SourceObservation,
    SyncWatermark,
    resolve_value,
)


class FixtureSource(ObservationSource):
    """Observation source backed by a JSON list of OpenMRS-shaped obs rows."""

    def __init__(
        self,
        base_path: Path | None = None,
        filename: str = "observations.json",
        source_system: str = "openmrs",
    ) -> None:
        if base_path is None:
            base_path = Path(__file__).resolve().parent / "fixtures"
        self.base_path = base_path
        self.filename = filename
        self.source_system = source_system

    def iter_observations(
        self,
        since: SyncWatermark | None = None,
        limit: int | None = None,
    ) -> list[SourceObservation]:
        items = sorted(self._load_observations(), key=lambda item: item.sort_key())
        if since is not None:
            floor = since.sort_key()
            items = [item for item in items if item.sort_key() > floor]
        if limit is None:
            return items
        return items[:limit]

    def count_observations(self, since: SyncWatermark | None = None) -> int:
        return len(self.iter_observations(since=since))

    def dry_run_summary(
        self,
        since: SyncWatermark | None = None,
        limit: int = 10,
    ) -> dict[str, Any]:
        pending = self.iter_observations(since=since)
        return {
            "source": "fixtures",
            "path": str(self.base_path / self.filename),
            "pending_observations": len(pending),
            "sample_observations": [
                item.model_dump(mode="json") for item in pending[:limit]
            ],
        }

    def _load_observations(self) -> list[SourceObservation]:
        items: list[SourceObservation] = []
        for row in self._load_json(self.filename):
            if row.get("voided"):
                continue
            value, kind = resolve_value(
                row.get("value_text"),
                row.get("value_numeric"),
                row.get("value_coded_name"),
            )
            items.append(
                SourceObservation(
                    source_id=str(row["obs_id"]),
                    source_person_id=str(row["person_id"]),
                    person_given_name=row.get("given_name"),
                    person_family_name=row.get("family_name"),
                    concept_name=row["concept_name"],
                    value=value,
                    value_kind=kind,
                    observed_at=row["obs_datetime"],
                    recorded_at=row.get("date_created") or row["obs_datetime"],
                    comments=row.get("comments"),
                    location_name=row.get("location_name"),
                    provider_name=row.get("provider_name"),
                    encounter_id=_optional_str(row.get("encounter_id")),
                )
            )
        return items

    def _load_json(self, filename: str) -> list[dict]:
        path = self.base_path / filename
        raw = path.read_text(encoding="utf-8")
        data = json.loads(raw)
        if not isinstance(data, list):
            raise ValueError(f"{path} must contain a JSON list.")
        return data


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)
