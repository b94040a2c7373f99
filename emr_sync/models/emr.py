"""
Data models for the ward EMR synchronization subsystem.

- Patient / Admission are upserted by their external EMR identities
- Observations (vital signs, lab results) are unique per admission and timestamp
- Prescriptions are owned by an admission and replaced wholesale on each sync
- ImportLock rows are the "one sync at a time" coordination resource
- AuditLog is an append-only, hash-chained compliance trail
"""

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    Time,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from emr_sync.models.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the storage convention for every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


JsonDocument = JSON().with_variant(JSONB(), "postgresql")


class Gender(str, enum.Enum):
    MALE = "MALE"
    FEMALE = "FEMALE"
    OTHER = "OTHER"
    UNKNOWN = "UNKNOWN"


class PrescriptionType(str, enum.Enum):
    ORAL = "ORAL"
    INJECTION = "INJECTION"
    EXTERNAL = "EXTERNAL"


class LabItemCode(str, enum.Enum):
    WBC = "WBC"
    RBC = "RBC"
    HGB = "HGB"
    HCT = "HCT"
    PLT = "PLT"
    CRP = "CRP"
    ALB = "ALB"
    BUN = "BUN"
    CRE = "CRE"
    NA = "NA"
    K = "K"
    CL = "CL"
    AST = "AST"
    ALT = "ALT"
    LDH = "LDH"
    GGT = "GGT"
    TBIL = "TBIL"
    GLU = "GLU"


# ---------------------------------------------------------------------------
# Patient – demographic identity keyed by the EMR patient id (contains PHI)
# ---------------------------------------------------------------------------
class Patient(Base):
    __tablename__ = "patients"

    id = Column(Integer, primary_key=True, autoincrement=True)
    patient_id = Column(String(64), unique=True, nullable=False, comment="EMR patient id")

    # PHI fields – Fernet-encrypted at the application layer
    encrypted_last_name = Column(Text, nullable=False)
    encrypted_first_name = Column(Text, nullable=False)
    encrypted_last_name_kana = Column(Text, nullable=True)
    encrypted_first_name_kana = Column(Text, nullable=True)

    birthday = Column(Date, nullable=False)
    sex = Column(Enum(Gender, name="gender_enum"), nullable=False, default=Gender.UNKNOWN)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    admissions = relationship("Admission", back_populates="patient")


# ---------------------------------------------------------------------------
# Admission – keyed by the EMR admission id; owns its clinical children
# ---------------------------------------------------------------------------
class Admission(Base):
    __tablename__ = "admissions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    external_admission_id = Column(String(64), unique=True, nullable=False)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    admission_date = Column(Date, nullable=False)
    admission_time = Column(Time, nullable=True)
    age_at_admission = Column(Integer, nullable=True)
    height = Column(Float, nullable=True, comment="cm")
    weight = Column(Float, nullable=True, comment="kg")
    ward = Column(String(64), nullable=True)
    room = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    patient = relationship("Patient", back_populates="admissions")
    vital_signs = relationship(
        "VitalSign", back_populates="admission", cascade="all, delete-orphan", passive_deletes=True
    )
    lab_results = relationship(
        "LabResult", back_populates="admission", cascade="all, delete-orphan", passive_deletes=True
    )
    prescriptions = relationship(
        "Prescription", back_populates="admission", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (Index("ix_admissions_patient", "patient_id"),)


class VitalSign(Base):
    __tablename__ = "vital_signs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    admission_id = Column(Integer, ForeignKey("admissions.id", ondelete="CASCADE"), nullable=False)
    measured_at = Column(DateTime, nullable=False)
    body_temperature = Column(Float)
    pulse = Column(Integer)
    systolic_bp = Column(Integer)
    diastolic_bp = Column(Integer)
    spo2 = Column(Float)
    respiratory_rate = Column(Integer)

    admission = relationship("Admission", back_populates="vital_signs")

    __table_args__ = (
        UniqueConstraint("admission_id", "measured_at", name="uq_vital_sign_admission_time"),
    )


class LabResult(Base):
    __tablename__ = "lab_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    admission_id = Column(Integer, ForeignKey("admissions.id", ondelete="CASCADE"), nullable=False)
    item_code = Column(Enum(LabItemCode, name="lab_item_code_enum"), nullable=False)
    value = Column(Float, nullable=False)
    measured_at = Column(DateTime, nullable=False)

    admission = relationship("Admission", back_populates="lab_results")

    __table_args__ = (
        UniqueConstraint(
            "admission_id", "item_code", "measured_at", name="uq_lab_result_admission_item_time"
        ),
    )


class Prescription(Base):
    __tablename__ = "prescriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    admission_id = Column(Integer, ForeignKey("admissions.id", ondelete="CASCADE"), nullable=False)
    yj_code = Column(String(32), nullable=True, comment="YJ drug code")
    drug_name = Column(String(255), nullable=False)
    prescription_type = Column(
        Enum(PrescriptionType, name="prescription_type_enum"), nullable=False
    )
    prescribed_at = Column(DateTime, nullable=False)

    admission = relationship("Admission", back_populates="prescriptions")

    __table_args__ = (Index("ix_prescriptions_admission", "admission_id"),)


# ---------------------------------------------------------------------------
# Import Lock – advisory row lock; at most one active row per lock_key
# ---------------------------------------------------------------------------
class ImportLock(Base):
    __tablename__ = "import_locks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    lock_key = Column(String(64), nullable=False)
    holder_id = Column(String(128), nullable=False, comment="User or service identity")
    is_active = Column(Boolean, default=True, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    released_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index(
            "uq_import_locks_active_key",
            "lock_key",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        Index("ix_import_locks_key_expiry", "lock_key", "expires_at"),
    )


# ---------------------------------------------------------------------------
# Audit Log – immutable, hash-chained compliance trail
# ---------------------------------------------------------------------------
class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    actor_id = Column(String(128), nullable=False, comment="User or service identity")
    action = Column(String(64), nullable=False)
    target_type = Column(String(64), nullable=False)
    target_id = Column(String(255), nullable=False)
    before_data = Column(JsonDocument, nullable=True)
    after_data = Column(JsonDocument, nullable=True)
    hash = Column(String(64), nullable=False)
    prev_hash = Column(String(64), nullable=True)
    occurred_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (Index("ix_audit_occurred_at", "occurred_at"),)
