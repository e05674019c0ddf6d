from __future__ import annotations

from typing import Any, Iterable, Protocol

from passport_sync.services.openmrs_sync.types import SourceObservation, SyncWatermark


class ObservationSource(Protocol):
    source_system: str

    def iter_observations(
        self,
        since: SyncWatermark | None = None,
        limit: int | None = None,
    ) -> Iterable[SourceObservation]:
        raise NotImplementedError

    def count_observations(self, since: SyncWatermark | None = None) -> int:
        raise NotImplementedError

    def dry_run_summary(
        self,
        since: SyncWatermark | None = None,
        limit: int = 10,
    ) -> dict[str, Any]:
        raise NotImplementedError
