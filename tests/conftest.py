"""Shared fixtures – in-memory SQLite, a fake clock, a scripted EMR source."""

import copy
import os
from datetime import datetime, timedelta

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from emr_sync.models import emr  # noqa: F401
from emr_sync.models.database import Base
from emr_sync.services.audit import DatabaseAuditSink
from emr_sync.sync.lock import ImportLockStore
from emr_sync.sync.orchestrator import SyncOrchestrator
from emr_sync.sync.upsert import AdmissionUpserter


class FakeClock:
    """Manually driven clock; ``sleep`` records the delay and advances time."""

    def __init__(self, start=datetime(2026, 1, 10, 3, 0, 0)):
        self.current = start
        self.sleeps = []

    def now(self):
        return self.current

    def today(self):
        return self.current.date()

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.current += timedelta(seconds=seconds)

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)


class ScriptedEmrClient:
    """Returns (or raises) one scripted response per call; the last one repeats."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def fetch(self, start_date, end_date):
        self.calls.append((start_date, end_date))
        index = min(len(self.calls), len(self.responses)) - 1
        response = self.responses[index]
        if isinstance(response, Exception):
            raise response
        return copy.deepcopy(response)


class RecordingAuditSink:
    def __init__(self, fail=False):
        self.entries = []
        self.fail = fail

    def record(self, **entry):
        if self.fail:
            raise RuntimeError("audit store unavailable")
        self.entries.append(entry)
        return None


def build_bundle(
    external_id="ADM-001",
    patient_id="P000001",
    sex="MALE",
    vitals=None,
    labs=None,
    prescriptions=None,
    **admission_overrides,
):
    admission = {
        "externalAdmissionId": external_id,
        "patientId": patient_id,
        "lastName": "Tanaka",
        "firstName": "Taro",
        "lastNameKana": "タナカ",
        "firstNameKana": "タロウ",
        "birthday": "1955-03-15",
        "sex": sex,
        "admissionDate": "2026-01-08",
        "admissionTime": "14:00",
        "ageAtAdmission": 70,
        "height": 165.2,
        "weight": 60.5,
        "ward": "Ward 4F",
        "room": "Room 12",
    }
    admission.update(admission_overrides)
    return {
        "admission": admission,
        "vitalSigns": vitals if vitals is not None else [
            {
                "admissionId": external_id,
                "bodyTemperature": 36.5,
                "pulse": 72,
                "systolicBp": 120,
                "diastolicBp": 80,
                "spo2": 98.0,
                "respiratoryRate": 16,
                "measuredAt": "2026-01-08T08:00:00.000Z",
            },
            {
                "admissionId": external_id,
                "bodyTemperature": 37.1,
                "pulse": 80,
                "systolicBp": 130,
                "diastolicBp": 85,
                "spo2": 97.0,
                "respiratoryRate": 18,
                "measuredAt": "2026-01-08T14:00:00.000Z",
            },
        ],
        "labResults": labs if labs is not None else [
            {"admissionId": external_id, "itemCode": "WBC", "value": 5500, "measuredAt": "2026-01-08T06:00:00.000Z"},
            {"admissionId": external_id, "itemCode": "CRP", "value": 0.2, "measuredAt": "2026-01-08T06:00:00.000Z"},
        ],
        "prescriptions": prescriptions if prescriptions is not None else [
            {
                "admissionId": external_id,
                "yjCode": "1149019F1020",
                "drugName": "Loxoprofen 60mg tablet",
                "prescriptionType": "ORAL",
                "prescribedAt": "2026-01-08T10:00:00.000Z",
            },
            {
                "admissionId": external_id,
                "yjCode": "3334400A1040",
                "drugName": "Heparin sodium 10000 units injection",
                "prescriptionType": "INJECTION",
                "prescribedAt": "2026-01-08T10:00:00.000Z",
            },
        ],
    }


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False)
    engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_bundle():
    return build_bundle


@pytest.fixture
def lock_store(session_factory, clock):
    return ImportLockStore(session_factory, lock_key="emr_sync", ttl=timedelta(minutes=30), clock=clock)


@pytest.fixture
def upserter(session_factory):
    return AdmissionUpserter(session_factory, strict=False)


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def make_orchestrator(lock_store, upserter, audit_sink, clock):
    def _make(emr_client, audit=None, lock=None):
        return SyncOrchestrator(
            lock_store=lock or lock_store,
            emr_client=emr_client,
            upserter=upserter,
            audit=audit or audit_sink,
            clock=clock,
        )

    return _make


@pytest.fixture
def db_audit_sink(session_factory, clock):
    return DatabaseAuditSink(session_factory, clock=clock)


@pytest.fixture
def scripted_client():
    return ScriptedEmrClient


@pytest.fixture
def failing_audit_sink():
    return RecordingAuditSink(fail=True)
