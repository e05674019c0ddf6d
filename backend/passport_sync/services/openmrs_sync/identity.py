"""Resolve OpenMRS persons to local patients.

A person is linked at most once. After the first unambiguous name match the
link row in ``patient_source_links`` is the only thing consulted; names are
never re-matched for a linked person. Ambiguous or missing matches are
reported back to the caller and left for manual relinking.
"""

from __future__ import annotations

import enum
import logging
import re
import unicodedata
from collections import defaultdict
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from passport_sync.db.upsert import insert_ignoring_conflicts
from passport_sync.models.patient import Patient
from passport_sync.models.patient_source_link import LinkMethod, PatientSourceLink

logger = logging.getLogger(__name__)

_PUNCTUATION_RE = re.compile(r"[^\w\s]", re.UNICODE)
_WHITESPACE_RE = re.compile(r"\s+", re.UNICODE)


class ResolutionOutcome(str, enum.Enum):
    linked = "linked"
    matched = "matched"
    no_match = "no_match"
    ambiguous = "ambiguous"
    conflict = "conflict"


@dataclass(frozen=True)
class Resolution:
    outcome: ResolutionOutcome
    patient_id: int | None = None
    candidates: tuple[int, ...] = ()

    @property
    def is_match(self) -> bool:
        return self.patient_id is not None


class PatientResolver(Protocol):
    def resolve(
        self,
        session: Session,
        source_person_id: str,
        given_name: str | None,
        family_name: str | None,
    ) -> Resolution:
        raise NotImplementedError


def normalize_name(value: str | None) -> str:
    if not value:
        return ""
    folded = unicodedata.normalize("NFKC", value).casefold()
    stripped = _PUNCTUATION_RE.sub(" ", folded).replace("_", " ")
    return _WHITESPACE_RE.sub(" ", stripped).strip()


def full_name(given_name: str | None, family_name: str | None) -> str:
    return normalize_name(f"{given_name or ''} {family_name or ''}")


def find_linked_patient_id(
    session: Session,
    source_system: str,
    source_person_id: str,
) -> int | None:
    patient_id = session.scalar(
        select(PatientSourceLink.patient_id).where(
            PatientSourceLink.source_system == source_system,
            PatientSourceLink.source_person_id == source_person_id,
        )
    )
    return int(patient_id) if patient_id is not None else None


class NameMatchResolver:
    """Exact normalized full-name match with a write-once link cache."""

    def __init__(self, source_system: str = "openmrs") -> None:
        self.source_system = source_system
        self._name_index: dict[str, list[int]] | None = None
        self._linked_patient_ids: set[int] | None = None

    def resolve(
        self,
        session: Session,
        source_person_id: str,
        given_name: str | None,
        family_name: str | None,
    ) -> Resolution:
        linked_id = find_linked_patient_id(session, self.source_system, source_person_id)
        if linked_id is not None:
            return Resolution(ResolutionOutcome.linked, linked_id)

        wanted = full_name(given_name, family_name)
        if not wanted:
            logger.info(
                "OpenMRS person has no usable name",
                extra={"source_person_id": source_person_id},
            )
            return Resolution(ResolutionOutcome.no_match)

        candidates = tuple(self._index(session).get(wanted, ()))
        if not candidates:
            return Resolution(ResolutionOutcome.no_match)
        if len(candidates) > 1:
            logger.warning(
                "Ambiguous patient name match for OpenMRS person %s (%s candidates)",
                source_person_id,
                len(candidates),
                extra={"source_person_id": source_person_id, "candidates": list(candidates)},
            )
            return Resolution(ResolutionOutcome.ambiguous, candidates=candidates)

        patient_id = candidates[0]
        if patient_id in self._linked(session):
            logger.warning(
                "Patient %s already linked to another OpenMRS person; not linking %s",
                patient_id,
                source_person_id,
            )
            return Resolution(ResolutionOutcome.conflict, candidates=candidates)

        stored_id = self._persist_link(session, source_person_id, patient_id)
        if stored_id is None:
            return Resolution(ResolutionOutcome.conflict, candidates=candidates)
        if stored_id != patient_id:
            return Resolution(ResolutionOutcome.linked, stored_id)
        logger.info(
            "Linked OpenMRS person %s to patient %s by name",
            source_person_id,
            patient_id,
        )
        return Resolution(ResolutionOutcome.matched, patient_id)

    def _persist_link(self, session: Session, source_person_id: str, patient_id: int) -> int | None:
        insert_ignoring_conflicts(
            session,
            PatientSourceLink,
            {
                "source_system": self.source_system,
                "source_person_id": source_person_id,
                "patient_id": patient_id,
                "method": LinkMethod.name_match,
            },
        )
        # Another writer may have linked the person (or the patient) first; the stored row wins.
        stored_id = find_linked_patient_id(session, self.source_system, source_person_id)
        if stored_id is not None:
            self._linked(session).add(stored_id)
        return stored_id

    def _index(self, session: Session) -> dict[str, list[int]]:
        if self._name_index is None:
            index: dict[str, list[int]] = defaultdict(list)
            for patient_id, display_name in session.execute(
                select(Patient.id, Patient.display_name).order_by(Patient.id.asc())
            ):
                key = normalize_name(display_name)
                if key:
                    index[key].append(int(patient_id))
            self._name_index = dict(index)
        return self._name_index

    def _linked(self, session: Session) -> set[int]:
        if self._linked_patient_ids is None:
            self._linked_patient_ids = {
                int(patient_id)
                for patient_id in session.scalars(
                    select(PatientSourceLink.patient_id).where(
                        PatientSourceLink.source_system == self.source_system
                    )
                )
            }
        return self._linked_patient_ids


def link_patient(
    session: Session,
    source_system: str,
    source_person_id: str,
    patient_id: int,
) -> PatientSourceLink:
    """Manually (re)link a person, replacing any link held by the person or the patient."""
    if session.get(Patient, patient_id) is None:
        raise LookupError(f"Patient {patient_id} not found")
    session.execute(
        delete(PatientSourceLink).where(
            PatientSourceLink.source_system == source_system,
            (PatientSourceLink.source_person_id == source_person_id)
            | (PatientSourceLink.patient_id == patient_id),
        )
    )
    link = PatientSourceLink(
        source_system=source_system,
        source_person_id=source_person_id,
        patient_id=patient_id,
        method=LinkMethod.manual,
    )
    session.add(link)
    session.flush()
    logger.info(
        "Manual link for OpenMRS person %s set to patient %s",
        source_person_id,
        patient_id,
    )
    return link
