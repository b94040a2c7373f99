"""Tests for the per-admission upsert engine."""

from datetime import datetime

import pytest

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
from emr_sync.services.encryption import EncryptionService
from emr_sync.sync.types import ErrorCode, UpsertError
from emr_sync.sync.upsert import (
    AdmissionUpserter,
    normalize_prescription_type,
    normalize_sex,
    parse_timestamp,
)


def _count(session_factory, model):
    with session_factory() as db:
        return db.query(model).count()


# ---------------------------------------------------------------------------
# Field mapping
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "raw, expected",
    [("MALE", Gender.MALE), ("m", Gender.MALE), ("Female", Gender.FEMALE),
     ("F", Gender.FEMALE), ("OTHER", Gender.OTHER), ("UNKNOWN", Gender.UNKNOWN)],
)
def test_normalize_sex_known_codes(raw, expected):
    assert normalize_sex(raw) == (expected, False)


def test_normalize_sex_unrecognized_defaults_or_raises_in_strict_mode():
    assert normalize_sex("X") == (Gender.UNKNOWN, True)
    with pytest.raises(ValueError):
        normalize_sex("X", strict=True)


def test_normalize_prescription_type():
    assert normalize_prescription_type("injection") == (PrescriptionType.INJECTION, False)
    assert normalize_prescription_type("TOPICAL") == (PrescriptionType.ORAL, True)
    with pytest.raises(ValueError):
        normalize_prescription_type("TOPICAL", strict=True)


def test_parse_timestamp_returns_naive_utc():
    assert parse_timestamp("2026-01-08T08:00:00.000Z") == datetime(2026, 1, 8, 8, 0)
    assert parse_timestamp("2026-01-08T17:00:00+09:00") == datetime(2026, 1, 8, 8, 0)
    assert parse_timestamp("2026-01-08T08:00:00") == datetime(2026, 1, 8, 8, 0)


# ---------------------------------------------------------------------------
# Upsert
# ---------------------------------------------------------------------------

def test_new_admission_creates_all_rows(upserter, session_factory, make_bundle):
    counts = upserter.upsert_admission(make_bundle())

    assert counts.external_admission_id == "ADM-001"
    assert (counts.vital_sign_count, counts.lab_result_count, counts.prescription_count) == (2, 2, 2)
    assert _count(session_factory, Patient) == 1
    assert _count(session_factory, Admission) == 1
    assert _count(session_factory, VitalSign) == 2
    assert _count(session_factory, LabResult) == 2
    assert _count(session_factory, Prescription) == 2

    with session_factory() as db:
        admission = db.query(Admission).one()
        assert admission.ward == "Ward 4F"
        assert admission.admission_time.hour == 14
        assert admission.patient.sex == Gender.MALE


def test_upsert_is_idempotent(upserter, session_factory, make_bundle):
    """Importing the same bundle twice leaves exactly the same rows."""
    upserter.upsert_admission(make_bundle())
    with session_factory() as db:
        first_ids = sorted(row.id for row in db.query(VitalSign).all())
        first_name = db.query(Patient).one().encrypted_last_name

    upserter.upsert_admission(make_bundle())

    assert _count(session_factory, Patient) == 1
    assert _count(session_factory, Admission) == 1
    assert _count(session_factory, VitalSign) == 2
    assert _count(session_factory, LabResult) == 2
    assert _count(session_factory, Prescription) == 2
    with session_factory() as db:
        assert sorted(row.id for row in db.query(VitalSign).all()) == first_ids
        assert db.query(Patient).one().encrypted_last_name == first_name


def test_changed_values_overwrite_existing_rows(upserter, session_factory, make_bundle):
    upserter.upsert_admission(make_bundle())

    bundle = make_bundle(ward="Ward 5F")
    bundle["vitalSigns"][0]["pulse"] = 110
    bundle["labResults"][0]["value"] = 12000
    upserter.upsert_admission(bundle)

    with session_factory() as db:
        assert db.query(Admission).one().ward == "Ward 5F"
        vital = db.query(VitalSign).filter(VitalSign.measured_at == datetime(2026, 1, 8, 8, 0)).one()
        assert vital.pulse == 110
        wbc = db.query(LabResult).filter(LabResult.item_code == LabItemCode.WBC).one()
        assert wbc.value == 12000


def test_prescriptions_are_replaced_not_merged(upserter, session_factory, make_bundle):
    upserter.upsert_admission(make_bundle())

    replacement = [{
        "admissionId": "ADM-001",
        "yjCode": "2171014F1020",
        "drugName": "Amlodipine 5mg tablet",
        "prescriptionType": "ORAL",
        "prescribedAt": "2026-01-09T10:00:00.000Z",
    }]
    counts = upserter.upsert_admission(make_bundle(prescriptions=replacement))

    assert counts.prescription_count == 1
    with session_factory() as db:
        names = [row.drug_name for row in db.query(Prescription).all()]
    assert names == ["Amlodipine 5mg tablet"]


def test_empty_prescription_list_clears_existing(upserter, session_factory, make_bundle):
    upserter.upsert_admission(make_bundle())
    upserter.upsert_admission(make_bundle(prescriptions=[]))

    assert _count(session_factory, Prescription) == 0


def test_unrecognized_lab_codes_are_skipped_and_counted(upserter, session_factory, make_bundle):
    labs = [
        {"admissionId": "ADM-001", "itemCode": "WBC", "value": 5500, "measuredAt": "2026-01-08T06:00:00.000Z"},
        {"admissionId": "ADM-001", "itemCode": "HBA1C", "value": 6.1, "measuredAt": "2026-01-08T06:00:00.000Z"},
    ]
    counts = upserter.upsert_admission(make_bundle(labs=labs))

    assert counts.lab_result_count == 1
    assert counts.skipped_lab_result_count == 1
    assert _count(session_factory, LabResult) == 1


def test_unknown_codes_fall_back_and_are_counted(upserter, session_factory, make_bundle):
    prescriptions = [{
        "admissionId": "ADM-001",
        "drugName": "Gentamicin ointment",
        "prescriptionType": "TOPICAL",
        "prescribedAt": "2026-01-08T10:00:00.000Z",
    }]
    counts = upserter.upsert_admission(make_bundle(sex="X", prescriptions=prescriptions))

    assert counts.defaulted_sex_count == 1
    assert counts.defaulted_prescription_type_count == 1
    with session_factory() as db:
        assert db.query(Patient).one().sex == Gender.UNKNOWN
        assert db.query(Prescription).one().prescription_type == PrescriptionType.ORAL


def test_strict_mode_rejects_unknown_codes(session_factory, make_bundle):
    strict = AdmissionUpserter(session_factory, strict=True)

    with pytest.raises(UpsertError):
        strict.upsert_admission(make_bundle(sex="X"))

    assert _count(session_factory, Patient) == 0


def test_failure_mid_admission_rolls_back_everything(upserter, session_factory, make_bundle):
    """A bad vital after the patient row is written leaves no trace of the admission."""
    bundle = make_bundle()
    bundle["vitalSigns"][1]["measuredAt"] = "2026-01-08T25:00:00.000Z"

    with pytest.raises(UpsertError) as excinfo:
        upserter.upsert_admission(bundle)

    assert excinfo.value.code == ErrorCode.UPSERT_ERROR
    assert excinfo.value.external_admission_id == "ADM-001"
    assert "ADM-001" in str(excinfo.value)
    for model in (Patient, Admission, VitalSign, LabResult, Prescription):
        assert _count(session_factory, model) == 0


def test_failed_reimport_keeps_previous_state(upserter, session_factory, make_bundle):
    upserter.upsert_admission(make_bundle())

    bundle = make_bundle(ward="Ward 9F", prescriptions=[])
    bundle["labResults"][0]["measuredAt"] = "not-a-timestamp"
    with pytest.raises(UpsertError):
        upserter.upsert_admission(bundle)

    with session_factory() as db:
        assert db.query(Admission).one().ward == "Ward 4F"
    assert _count(session_factory, Prescription) == 2


def test_schema_violation_is_an_upsert_error(upserter, make_bundle):
    bundle = make_bundle()
    del bundle["admission"]["patientId"]

    with pytest.raises(UpsertError) as excinfo:
        upserter.upsert_admission(bundle)
    assert excinfo.value.external_admission_id == "ADM-001"


def test_bundle_without_admission_id_is_reported_as_unknown(upserter):
    with pytest.raises(UpsertError) as excinfo:
        upserter.upsert_admission({"vitalSigns": []})
    assert excinfo.value.external_admission_id is None


def test_repeated_timestamp_within_bundle_updates_one_row(upserter, session_factory, make_bundle):
    vitals = [
        {"admissionId": "ADM-001", "pulse": 70, "measuredAt": "2026-01-08T08:00:00.000Z"},
        {"admissionId": "ADM-001", "pulse": 90, "measuredAt": "2026-01-08T08:00:00.000Z"},
    ]
    upserter.upsert_admission(make_bundle(vitals=vitals))

    with session_factory() as db:
        rows = db.query(VitalSign).all()
    assert len(rows) == 1
    assert rows[0].pulse == 90


def test_patient_names_are_encrypted_at_rest(session_factory, make_bundle):
    cipher = EncryptionService()
    upserter = AdmissionUpserter(session_factory, cipher=cipher, strict=False)

    upserter.upsert_admission(make_bundle())

    with session_factory() as db:
        patient = db.query(Patient).one()
        assert patient.encrypted_last_name != "Tanaka"
        assert cipher.decrypt(patient.encrypted_last_name) == "Tanaka"
        assert cipher.decrypt(patient.encrypted_first_name_kana) == "タロウ"


def test_two_admissions_share_one_patient(upserter, session_factory, make_bundle):
    upserter.upsert_admission(make_bundle(external_id="ADM-001"))
    upserter.upsert_admission(make_bundle(external_id="ADM-002", admissionDate="2026-01-09"))

    assert _count(session_factory, Patient) == 1
    assert _count(session_factory, Admission) == 2
