"""
JSON schema for one per-admission bundle returned by the EMR source.

The schema is the structural contract only. Code-level semantics (unknown
sex or prescription-type codes, unrecognized lab items) are handled by the
upsert engine, so those fields are plain strings here.
"""

ISO_DATE = "^\\d{4}-\\d{2}-\\d{2}$"
ISO_DATETIME = "^\\d{4}-\\d{2}-\\d{2}T\\d{2}:\\d{2}"
HH_MM = "^\\d{2}:\\d{2}$"

_nullable_number = {"type": ["number", "null"]}
_nullable_string = {"type": ["string", "null"]}


EMR_ADMISSION_SCHEMA: dict = {
    "type": "object",
    "required": [
        "externalAdmissionId",
        "patientId",
        "lastName",
        "firstName",
        "birthday",
        "sex",
        "admissionDate",
    ],
    "properties": {
        "externalAdmissionId": {"type": "string", "minLength": 1},
        "patientId": {"type": "string", "minLength": 1},
        "lastName": {"type": "string", "minLength": 1},
        "firstName": {"type": "string", "minLength": 1},
        "lastNameKana": _nullable_string,
        "firstNameKana": _nullable_string,
        "birthday": {"type": "string", "pattern": ISO_DATE},
        "sex": {"type": "string"},
        "admissionDate": {"type": "string", "pattern": ISO_DATE},
        "admissionTime": {"type": ["string", "null"], "pattern": HH_MM},
        "ageAtAdmission": {"type": ["integer", "null"], "minimum": 0},
        "height": _nullable_number,
        "weight": _nullable_number,
        "ward": _nullable_string,
        "room": _nullable_string,
    },
}


EMR_VITAL_SIGN_SCHEMA: dict = {
    "type": "object",
    "required": ["measuredAt"],
    "properties": {
        "admissionId": {"type": "string"},
        "bodyTemperature": _nullable_number,
        "pulse": _nullable_number,
        "systolicBp": _nullable_number,
        "diastolicBp": _nullable_number,
        "spo2": _nullable_number,
        "respiratoryRate": _nullable_number,
        "measuredAt": {"type": "string", "pattern": ISO_DATETIME},
    },
}


EMR_LAB_RESULT_SCHEMA: dict = {
    "type": "object",
    "required": ["itemCode", "value", "measuredAt"],
    "properties": {
        "admissionId": {"type": "string"},
        "itemCode": {"type": "string"},
        "value": {"type": "number"},
        "measuredAt": {"type": "string", "pattern": ISO_DATETIME},
    },
}


EMR_PRESCRIPTION_SCHEMA: dict = {
    "type": "object",
    "required": ["drugName", "prescriptionType", "prescribedAt"],
    "properties": {
        "admissionId": {"type": "string"},
        "yjCode": _nullable_string,
        "drugName": {"type": "string", "minLength": 1},
        "prescriptionType": {"type": "string"},
        "prescribedAt": {"type": "string", "pattern": ISO_DATETIME},
    },
}


EMR_BUNDLE_SCHEMA: dict = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "EMR admission bundle",
    "description": "One admission with its vitals, labs and prescriptions for a sync window.",
    "type": "object",
    "required": ["admission"],
    "properties": {
        "admission": EMR_ADMISSION_SCHEMA,
        "vitalSigns": {"type": "array", "items": EMR_VITAL_SIGN_SCHEMA},
        "labResults": {"type": "array", "items": EMR_LAB_RESULT_SCHEMA},
        "prescriptions": {"type": "array", "items": EMR_PRESCRIPTION_SCHEMA},
    },
}
