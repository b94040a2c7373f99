"""
Mock EMR source.

Simulates the hospital DWH for development and demos: for every admission
day in the requested range it produces one or two admissions with vitals,
a lab panel and a few prescriptions. Seedable so runs are reproducible.
"""

from __future__ import annotations

import logging
import random
from datetime import date, datetime, time, timedelta

logger = logging.getLogger(__name__)

LAB_VALUE_RANGES: dict[str, tuple[float, float]] = {
    "WBC": (3500, 9000),
    "RBC": (380, 520),
    "HGB": (11.5, 17.0),
    "HCT": (35.0, 50.0),
    "PLT": (15.0, 35.0),
    "CRP": (0.0, 0.3),
    "ALB": (3.5, 5.0),
    "BUN": (8.0, 20.0),
    "CRE": (0.6, 1.1),
    "NA": (136, 145),
    "K": (3.5, 5.0),
    "CL": (98, 108),
    "AST": (10, 40),
    "ALT": (5, 45),
    "LDH": (120, 240),
    "GGT": (10, 70),
    "TBIL": (0.2, 1.2),
    "GLU": (70, 110),
}

MOCK_DRUGS = [
    {"drugName": "Loxoprofen 60mg tablet", "yjCode": "1149019F1020", "type": "ORAL"},
    {"drugName": "Acetaminophen 200mg tablet", "yjCode": "1141007F1058", "type": "ORAL"},
    {"drugName": "Maintenance infusion 3A 500mL", "yjCode": "3319502A3060", "type": "INJECTION"},
    {"drugName": "Heparin sodium 10000 units injection", "yjCode": "3334400A1040", "type": "INJECTION"},
    {"drugName": "Ketoprofen 40mg tape", "yjCode": "2649728S1060", "type": "EXTERNAL"},
]

MOCK_PATIENTS = [
    {"lastName": "Tanaka", "firstName": "Taro", "lastNameKana": "タナカ", "firstNameKana": "タロウ",
     "sex": "MALE", "birthday": "1955-03-15"},
    {"lastName": "Suzuki", "firstName": "Hanako", "lastNameKana": "スズキ", "firstNameKana": "ハナコ",
     "sex": "FEMALE", "birthday": "1960-07-22"},
    {"lastName": "Sato", "firstName": "Ichiro", "lastNameKana": "サトウ", "firstNameKana": "イチロウ",
     "sex": "MALE", "birthday": "1948-11-03"},
    {"lastName": "Takahashi", "firstName": "Misaki", "lastNameKana": "タカハシ", "firstNameKana": "ミサキ",
     "sex": "FEMALE", "birthday": "1972-09-10"},
    {"lastName": "Yamada", "firstName": "Kenta", "lastNameKana": "ヤマダ", "firstNameKana": "ケンタ",
     "sex": "MALE", "birthday": "1965-01-28"},
]

VITAL_HOURS = (8, 14, 20)


def _iso(value: datetime) -> str:
    return value.isoformat(timespec="milliseconds") + "Z"


class MockEmrClient:
    def __init__(self, seed: int | None = None):
        self._rng = random.Random(seed)

    def _between(self, low: float, high: float, decimals: int = 1) -> float:
        return round(self._rng.uniform(low, high), decimals)

    def _vital_signs(self, external_id: str, admission_date: date) -> list[dict]:
        samples = []
        for day in (admission_date, admission_date + timedelta(days=1)):
            for hour in VITAL_HOURS:
                samples.append({
                    "admissionId": external_id,
                    "bodyTemperature": self._between(36.0, 37.5),
                    "pulse": round(self._between(60, 100, 0)),
                    "systolicBp": round(self._between(100, 150, 0)),
                    "diastolicBp": round(self._between(60, 90, 0)),
                    "spo2": self._between(95.0, 100.0),
                    "respiratoryRate": round(self._between(12, 20, 0)),
                    "measuredAt": _iso(datetime.combine(day, time(hour))),
                })
        return samples

    def _lab_results(self, external_id: str, admission_date: date) -> list[dict]:
        results = []
        # Blood drawn early morning the day before and on the admission day
        for day in (admission_date - timedelta(days=1), admission_date):
            measured_at = _iso(datetime.combine(day, time(6)))
            for item_code, (low, high) in LAB_VALUE_RANGES.items():
                results.append({
                    "admissionId": external_id,
                    "itemCode": item_code,
                    "value": self._between(low, high, 3),
                    "measuredAt": measured_at,
                })
        return results

    def _prescriptions(self, external_id: str, admission_date: date) -> list[dict]:
        prescribed_at = _iso(datetime.combine(admission_date, time(10)))
        drugs = self._rng.sample(MOCK_DRUGS, self._rng.randint(2, 3))
        return [
            {
                "admissionId": external_id,
                "yjCode": drug["yjCode"],
                "drugName": drug["drugName"],
                "prescriptionType": drug["type"],
                "prescribedAt": prescribed_at,
            }
            for drug in drugs
        ]

    def fetch(self, start_date: date, end_date: date) -> list[dict]:
        bundles = []
        total_days = (end_date - start_date).days + 1
        for offset in range(max(total_days, 0)):
            admission_date = start_date + timedelta(days=offset)
            for seq in range(self._rng.randint(1, 2)):
                patient_index = (offset * 2 + seq) % len(MOCK_PATIENTS)
                patient = MOCK_PATIENTS[patient_index]
                external_id = f"ADM-{admission_date.strftime('%Y%m%d')}-{seq + 1:03d}"
                birthday = date.fromisoformat(patient["birthday"])
                bundles.append({
                    "admission": {
                        "externalAdmissionId": external_id,
                        "patientId": f"P{patient_index + 1:06d}",
                        **patient,
                        "admissionDate": admission_date.isoformat(),
                        "admissionTime": "14:00",
                        "ageAtAdmission": admission_date.year - birthday.year,
                        "height": self._between(150, 180),
                        "weight": self._between(45, 85),
                        "ward": f"Ward {self._rng.randint(3, 7)}F",
                        "room": f"Room {self._rng.randint(1, 20)}",
                    },
                    "vitalSigns": self._vital_signs(external_id, admission_date),
                    "labResults": self._lab_results(external_id, admission_date),
                    "prescriptions": self._prescriptions(external_id, admission_date),
                })
        logger.info("Mock EMR generated %d admission bundles for %s..%s", len(bundles), start_date, end_date)
        return bundles
