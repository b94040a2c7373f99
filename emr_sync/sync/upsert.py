"""
Per-admission upsert engine.

Merges one EMR bundle (patient, admission, vitals, labs, prescriptions) into
the local store inside a single transaction. Any failure rolls back that
admission only and surfaces as UpsertError; other admissions are unaffected.

Merge rules:
- Patient by EMR patient id, Admission by EMR admission id (create or update)
- VitalSign by (admission, measured_at); LabResult by (admission, item, measured_at)
- Lab results with an unrecognized item code are skipped, not stored
- Prescriptions are replaced wholesale: the EMR is the only source of truth
  for the current list and has no stable key per line
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timezone
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from emr_sync.config import settings
from emr_sync.models.emr import (
    Admission,
    Gender,
    LabItemCode,
    LabResult,
    Patient,
    Prescription,
    PrescriptionType,
    VitalSign,
)
from emr_sync.services.encryption import EncryptionService, encryption
from emr_sync.services.validation import validate_bundle
from emr_sync.sync.types import UpsertCounts, UpsertError

logger = logging.getLogger(__name__)

VALID_LAB_ITEM_CODES = frozenset(code.value for code in LabItemCode)

SEX_ALIASES = {
    "MALE": Gender.MALE,
    "M": Gender.MALE,
    "FEMALE": Gender.FEMALE,
    "F": Gender.FEMALE,
    "OTHER": Gender.OTHER,
    "UNKNOWN": Gender.UNKNOWN,
}
SEX_FALLBACK = Gender.UNKNOWN

PRESCRIPTION_TYPE_ALIASES = {t.value: t for t in PrescriptionType}
PRESCRIPTION_TYPE_FALLBACK = PrescriptionType.ORAL

VITAL_SIGN_FIELDS = {
    "bodyTemperature": "body_temperature",
    "pulse": "pulse",
    "systolicBp": "systolic_bp",
    "diastolicBp": "diastolic_bp",
    "spo2": "spo2",
    "respiratoryRate": "respiratory_rate",
}


# ---------------------------------------------------------------------------
# Field mapping
# ---------------------------------------------------------------------------

def normalize_sex(value: Any, strict: bool = False) -> tuple[Gender, bool]:
    """
    Map an EMR sex string onto Gender, case-insensitively.

    Returns ``(gender, defaulted)``; ``defaulted`` is True when the fallback
    UNKNOWN was applied to an unrecognized code. In strict mode that case
    raises ValueError instead.
    """
    key = str(value or "").strip().upper()
    if key in SEX_ALIASES:
        return SEX_ALIASES[key], False
    if strict:
        raise ValueError(f"Unrecognized sex code: {value!r}")
    return SEX_FALLBACK, True


def normalize_prescription_type(value: Any, strict: bool = False) -> tuple[PrescriptionType, bool]:
    """Same contract as normalize_sex, falling back to ORAL."""
    key = str(value or "").strip().upper()
    if key in PRESCRIPTION_TYPE_ALIASES:
        return PRESCRIPTION_TYPE_ALIASES[key], False
    if strict:
        raise ValueError(f"Unrecognized prescription type: {value!r}")
    return PRESCRIPTION_TYPE_FALLBACK, True


def parse_timestamp(value: str) -> datetime:
    """ISO-8601 timestamp -> naive UTC. Naive input is taken to be UTC already."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _external_admission_id(bundle: Any) -> str | None:
    if isinstance(bundle, dict) and isinstance(bundle.get("admission"), dict):
        value = bundle["admission"].get("externalAdmissionId")
        return str(value) if value is not None else None
    return None


# ---------------------------------------------------------------------------
# Upserter
# ---------------------------------------------------------------------------

class AdmissionUpserter:
    def __init__(
        self,
        session_factory: sessionmaker,
        cipher: EncryptionService = encryption,
        strict: bool | None = None,
    ):
        self.session_factory = session_factory
        self.cipher = cipher
        self.strict = settings.STRICT_CODE_MAPPING if strict is None else strict

    def upsert_admission(self, bundle: dict) -> UpsertCounts:
        """
        Merge one bundle atomically.

        Raises UpsertError (carrying the external admission id) on any failure,
        after the admission's transaction has been rolled back.
        """
        external_id = _external_admission_id(bundle)
        try:
            errors = validate_bundle(bundle)
            if errors:
                raise ValueError("Invalid EMR bundle: " + "; ".join(errors[:5]))
            with self.session_factory.begin() as db:
                counts = self._apply(db, bundle)
        except Exception as exc:
            logger.error("Upsert failed for admission %s: %s", external_id, exc)
            raise UpsertError(
                external_id, f"Failed to update data for admission {external_id}"
            ) from exc

        logger.debug(
            "Admission %s merged: vitals=%d labs=%d (skipped %d) prescriptions=%d",
            external_id, counts.vital_sign_count, counts.lab_result_count,
            counts.skipped_lab_result_count, counts.prescription_count,
        )
        return counts

    def _apply(self, db: Session, bundle: dict) -> UpsertCounts:
        data = bundle["admission"]
        counts = UpsertCounts(external_admission_id=data["externalAdmissionId"])

        patient = self._upsert_patient(db, data, counts)
        admission = self._upsert_admission_row(db, data, patient)

        for sample in bundle.get("vitalSigns") or []:
            self._upsert_vital_sign(db, admission, sample)
            counts.vital_sign_count += 1

        for result in bundle.get("labResults") or []:
            if result["itemCode"] not in VALID_LAB_ITEM_CODES:
                counts.skipped_lab_result_count += 1
                logger.debug("Skipping unrecognized lab item %r for %s",
                             result["itemCode"], counts.external_admission_id)
                continue
            self._upsert_lab_result(db, admission, result)
            counts.lab_result_count += 1

        counts.prescription_count = self._replace_prescriptions(
            db, admission, bundle.get("prescriptions") or [], counts
        )
        return counts

    def _set_encrypted(self, row: Patient, attr: str, plaintext: str | None) -> None:
        # Keep the stored token when it already decrypts to the same value
        if not self.cipher.matches(getattr(row, attr), plaintext):
            setattr(row, attr, self.cipher.encrypt(plaintext))

    def _upsert_patient(self, db: Session, data: dict, counts: UpsertCounts) -> Patient:
        sex, defaulted = normalize_sex(data["sex"], strict=self.strict)
        if defaulted:
            counts.defaulted_sex_count += 1
            logger.warning("Patient %s: unrecognized sex %r stored as %s",
                           data["patientId"], data["sex"], sex.value)

        patient = db.query(Patient).filter(Patient.patient_id == data["patientId"]).one_or_none()
        if patient is None:
            patient = Patient(patient_id=data["patientId"])
            db.add(patient)

        self._set_encrypted(patient, "encrypted_last_name", data["lastName"])
        self._set_encrypted(patient, "encrypted_first_name", data["firstName"])
        self._set_encrypted(patient, "encrypted_last_name_kana", data.get("lastNameKana"))
        self._set_encrypted(patient, "encrypted_first_name_kana", data.get("firstNameKana"))
        patient.birthday = date.fromisoformat(data["birthday"])
        patient.sex = sex
        db.flush()
        return patient

    def _upsert_admission_row(self, db: Session, data: dict, patient: Patient) -> Admission:
        admission = (
            db.query(Admission)
            .filter(Admission.external_admission_id == data["externalAdmissionId"])
            .one_or_none()
        )
        if admission is None:
            admission = Admission(external_admission_id=data["externalAdmissionId"])
            db.add(admission)

        admission_time = data.get("admissionTime")
        admission.patient_id = patient.id
        admission.admission_date = date.fromisoformat(data["admissionDate"])
        admission.admission_time = time.fromisoformat(admission_time) if admission_time else None
        admission.age_at_admission = data.get("ageAtAdmission")
        admission.height = data.get("height")
        admission.weight = data.get("weight")
        admission.ward = data.get("ward")
        admission.room = data.get("room")
        db.flush()
        return admission

    def _upsert_vital_sign(self, db: Session, admission: Admission, sample: dict) -> None:
        measured_at = parse_timestamp(sample["measuredAt"])
        row = (
            db.query(VitalSign)
            .filter(VitalSign.admission_id == admission.id, VitalSign.measured_at == measured_at)
            .one_or_none()
        )
        if row is None:
            row = VitalSign(admission_id=admission.id, measured_at=measured_at)
            db.add(row)
        for source, column in VITAL_SIGN_FIELDS.items():
            setattr(row, column, sample.get(source))
        # Flush so a repeated timestamp later in the same bundle updates this row
        db.flush()

    def _upsert_lab_result(self, db: Session, admission: Admission, result: dict) -> None:
        item_code = LabItemCode(result["itemCode"])
        measured_at = parse_timestamp(result["measuredAt"])
        row = (
            db.query(LabResult)
            .filter(
                LabResult.admission_id == admission.id,
                LabResult.item_code == item_code,
                LabResult.measured_at == measured_at,
            )
            .one_or_none()
        )
        if row is None:
            row = LabResult(admission_id=admission.id, item_code=item_code, measured_at=measured_at)
            db.add(row)
        row.value = result["value"]
        db.flush()

    def _replace_prescriptions(
        self, db: Session, admission: Admission, prescriptions: list[dict], counts: UpsertCounts
    ) -> int:
        removed = (
            db.query(Prescription)
            .filter(Prescription.admission_id == admission.id)
            .delete(synchronize_session=False)
        )
        written = 0
        for item in prescriptions:
            rx_type, defaulted = normalize_prescription_type(item["prescriptionType"], strict=self.strict)
            if defaulted:
                counts.defaulted_prescription_type_count += 1
                logger.warning("Admission %s: unrecognized prescription type %r stored as %s",
                               counts.external_admission_id, item["prescriptionType"], rx_type.value)
            db.add(
                Prescription(
                    admission_id=admission.id,
                    yj_code=item.get("yjCode"),
                    drug_name=item["drugName"],
                    prescription_type=rx_type,
                    prescribed_at=parse_timestamp(item["prescribedAt"]),
                )
            )
            written += 1
        db.flush()
        logger.debug("Admission %s: replaced %d prescriptions with %d",
                     counts.external_admission_id, removed, written)
        return written
