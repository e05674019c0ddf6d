import json
from datetime import datetime, timezone

import pytest

from passport_sync.services.openmrs_sync.fixture_source import FixtureSource
from passport_sync.services.openmrs_sync.types import SyncWatermark, ValueKind


def test_fixture_source_skips_voided_and_orders_by_recorded_at():
    observations = FixtureSource().iter_observations()

    assert [item.source_id for item in observations] == ["5266", "5267", "5268"]
    weight = observations[-1]
    assert weight.value == 64.5
    assert weight.value_kind == ValueKind.numeric
    assert weight.recorded_at == datetime(2025, 10, 12, 8, 41, 10, tzinfo=timezone.utc)
    assert observations[1].value_kind == ValueKind.coded
    assert observations[1].encounter_id == "874"


def test_fixture_source_resumes_after_watermark():
    since = SyncWatermark(
        recorded_at=datetime(2025, 10, 9, 14, 5, 41, tzinfo=timezone.utc),
        source_id="5267",
    )

    pending = FixtureSource().iter_observations(since=since)

    assert [item.source_id for item in pending] == ["5268"]
    assert FixtureSource().count_observations(since=since) == 1


def test_fixture_source_dry_run_summary():
    summary = FixtureSource().dry_run_summary(limit=1)

    assert summary["source"] == "fixtures"
    assert summary["pending_observations"] == 3
    assert len(summary["sample_observations"]) == 1
    assert summary["sample_observations"][0]["source_id"] == "5266"


def test_fixture_source_rejects_non_list(tmp_path):
    (tmp_path / "observations.json").write_text(json.dumps({"obs_id": 1}), encoding="utf-8")

    with pytest.raises(ValueError, match="must contain a JSON list"):
        FixtureSource(base_path=tmp_path).iter_observations()
