from __future__ import annotations

import enum

from sqlalchemy import Enum, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from passport_sync.models.base import Base, TimestampMixin


class LinkMethod(str, enum.Enum):
    name_match = "name_match"
    manual = "manual"


class PatientSourceLink(Base, TimestampMixin):
    __tablename__ = "patient_source_links"
    __table_args__ = (
        UniqueConstraint(
            "source_system",
            "source_person_id",
            name="uq_patient_source_links_person",
        ),
        UniqueConstraint(
            "source_system",
            "patient_id",
            name="uq_patient_source_links_patient",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    source_system: Mapped[str] = mapped_column(String(120), nullable=False, default="openmrs")
    source_person_id: Mapped[str] = mapped_column(String(120), nullable=False)
    patient_id: Mapped[int] = mapped_column(ForeignKey("patients.id"), nullable=False)
    method: Mapped[LinkMethod] = mapped_column(
        Enum(LinkMethod, name="patient_source_link_method"),
        default=LinkMethod.name_match,
        nullable=False,
    )

    patient = relationship("Patient", lazy="joined")
