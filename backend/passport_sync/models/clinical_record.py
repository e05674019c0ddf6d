from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from passport_sync.models.base import Base, JSONPayload


class ClinicalRecord(Base):
    __tablename__ = "clinical_records"
    __table_args__ = (
        UniqueConstraint(
            "patient_id",
            "source_system",
            "source_id",
            name="uq_clinical_records_patient_source",
        ),
        Index("ix_clinical_records_patient", "patient_id"),
        Index("ix_clinical_records_record_type", "record_type"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    patient_id: Mapped[int] = mapped_column(ForeignKey("patients.id"), nullable=False)
    record_type: Mapped[str] = mapped_column(String(40), nullable=False)
    data: Mapped[dict] = mapped_column(JSONPayload, nullable=False)
    source_system: Mapped[str] = mapped_column(String(120), nullable=False)
    source_id: Mapped[str] = mapped_column(String(120), nullable=False)
    source_person_id: Mapped[str | None] = mapped_column(String(120), nullable=True)
    observed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
