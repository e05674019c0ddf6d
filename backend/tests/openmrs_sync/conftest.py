from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from passport_sync.models import Base, Patient
from passport_sync.services.openmrs_sync.types import SourceObservation, ValueKind


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture()
def session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def add_patient(session):
    def _add(display_name: str) -> int:
        patient = Patient(display_name=display_name)
        session.add(patient)
        session.commit()
        return patient.id

    return _add


def _make_observation(
    obs_id: int | str = 5266,
    person_id: int | str = 102,
    given_name: str | None = "Betty",
    family_name: str | None = "Williams",
    concept_name: str = "Blood Pressure",
    value="120/80",
    value_kind: ValueKind | None = ValueKind.text,
    recorded_at: datetime | None = None,
    observed_at: datetime | None = None,
    **extra,
) -> SourceObservation:
    recorded_at = recorded_at or datetime(2025, 10, 6, 9, 16, 2, tzinfo=timezone.utc)
    return SourceObservation(
        source_id=str(obs_id),
        source_person_id=str(person_id),
        person_given_name=given_name,
        person_family_name=family_name,
        concept_name=concept_name,
        value=value,
        value_kind=value_kind,
        observed_at=observed_at or recorded_at,
        recorded_at=recorded_at,
        **extra,
    )


class _ListSource:
    """In-memory observation source honouring the watermark contract."""

    def __init__(self, observations, source_system="openmrs", fail_after=None):
        self.observations = list(observations)
        self.source_system = source_system
        self.fail_after = fail_after
        self.calls = []

    def iter_observations(self, since=None, limit=None):
        from passport_sync.services.openmrs_sync.errors import SourceUnavailable

        self.calls.append({"since": since, "limit": limit})
        items = sorted(self.observations, key=lambda item: item.sort_key())
        if since is not None:
            items = [item for item in items if item.sort_key() > since.sort_key()]
        if limit is not None:
            items = items[:limit]
        for index, item in enumerate(items):
            if self.fail_after is not None and index >= self.fail_after:
                raise SourceUnavailable("OpenMRS connection reset")
            yield item

    def count_observations(self, since=None):
        return len(list(self.iter_observations(since=since)))

    def dry_run_summary(self, since=None, limit=10):
        return {"pending_observations": self.count_observations(since=since)}


@pytest.fixture()
def make_observation():
    return _make_observation


@pytest.fixture()
def list_source():
    return _ListSource
