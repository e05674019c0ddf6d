import pytest
from sqlalchemy import select

from passport_sync.models import LinkMethod, PatientSourceLink
from passport_sync.services.openmrs_sync.identity import (
    NameMatchResolver,
    ResolutionOutcome,
    find_linked_patient_id,
    link_patient,
    normalize_name,
)


def test_normalize_name_folds_case_whitespace_and_punctuation():
    assert normalize_name("  Betty   WILLIAMS ") == "betty williams"
    assert normalize_name("O'Brien-Smith, Anne") == "o brien smith anne"
    assert normalize_name(None) == ""
    assert normalize_name("   ") == ""


def test_resolver_matches_case_and_whitespace_variants(session, add_patient):
    patient_id = add_patient("betty   williams")
    add_patient("Betty Williamson")

    resolution = NameMatchResolver().resolve(session, "102", "Betty", "Williams")
    session.commit()

    assert resolution.outcome == ResolutionOutcome.matched
    assert resolution.patient_id == patient_id
    link = session.scalar(select(PatientSourceLink))
    assert link.source_person_id == "102"
    assert link.method == LinkMethod.name_match


def test_resolver_does_not_match_similar_names(session, add_patient):
    add_patient("Betty Williamson")

    resolution = NameMatchResolver().resolve(session, "102", "Betty", "Williams")

    assert resolution.outcome == ResolutionOutcome.no_match
    assert resolution.patient_id is None
    assert session.scalar(select(PatientSourceLink)) is None


def test_resolver_reports_ambiguous_candidates(session, add_patient):
    first = add_patient("Betty Williams")
    second = add_patient("BETTY WILLIAMS")

    resolution = NameMatchResolver().resolve(session, "102", "Betty", "Williams")

    assert resolution.outcome == ResolutionOutcome.ambiguous
    assert resolution.is_match is False
    assert resolution.candidates == (first, second)
    assert session.scalar(select(PatientSourceLink)) is None


def test_resolver_without_name_is_no_match(session, add_patient):
    add_patient("Betty Williams")

    resolution = NameMatchResolver().resolve(session, "102", None, "  ")

    assert resolution.outcome == ResolutionOutcome.no_match


def test_linked_person_is_never_rematched(session, add_patient):
    patient_id = add_patient("Betty Williams")
    NameMatchResolver().resolve(session, "102", "Betty", "Williams")
    session.commit()

    # The source renames the person; the stored link still wins.
    resolution = NameMatchResolver().resolve(session, "102", "Elizabeth", "Jones")

    assert resolution.outcome == ResolutionOutcome.linked
    assert resolution.patient_id == patient_id


def test_patient_linked_to_another_person_is_a_conflict(session, add_patient):
    add_patient("Betty Williams")
    resolver = NameMatchResolver()
    assert resolver.resolve(session, "102", "Betty", "Williams").is_match
    session.commit()

    resolution = NameMatchResolver().resolve(session, "205", "Betty", "Williams")

    assert resolution.outcome == ResolutionOutcome.conflict
    assert resolution.patient_id is None
    assert find_linked_patient_id(session, "openmrs", "205") is None


def test_links_are_scoped_by_source_system(session, add_patient):
    patient_id = add_patient("Betty Williams")
    NameMatchResolver(source_system="openmrs").resolve(session, "102", "Betty", "Williams")
    session.commit()

    assert find_linked_patient_id(session, "openmrs", "102") == patient_id
    assert find_linked_patient_id(session, "openmrs-site-2", "102") is None


def test_link_patient_replaces_existing_links(session, add_patient):
    betty = add_patient("Betty Williams")
    other = add_patient("Elizabeth Williams")
    NameMatchResolver().resolve(session, "102", "Betty", "Williams")
    session.commit()

    link = link_patient(session, "openmrs", "102", other)
    session.commit()

    assert link.method == LinkMethod.manual
    assert find_linked_patient_id(session, "openmrs", "102") == other
    links = session.scalars(select(PatientSourceLink)).all()
    assert [(item.source_person_id, item.patient_id) for item in links] == [("102", other)]
    assert find_linked_patient_id(session, "openmrs", "102") != betty


def test_link_patient_rejects_unknown_patient(session):
    with pytest.raises(LookupError, match="Patient 999 not found"):
        link_patient(session, "openmrs", "102", 999)
