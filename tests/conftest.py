"""Shared test fixtures: a small encounters dataset loaded into both stores."""

import pytest

from dimsim.etl.materialize import materialize
from dimsim.models.database import create_store_engine
from dimsim.services.entity_store import EntityStore


def build_dataset():
    """
    Hand-sized dataset with known answers.

    - Cardiology (providers 10, 11): patient 1 discharged 2024-01-10 and
      readmitted exactly 30 days later (counts); patient 2 discharged
      2024-01-20 and readmitted 31 days later by Orthopedics (does not).
    - Orthopedics (provider 20): an inpatient stay followed only by an
      emergency visit, plus an inpatient encounter with no discharge.
    - Neurology (provider 30): outpatient only, no discharges.
    - Dermatology: no providers at all.
    """
    return {
        "specialties": [
            {"specialty_id": 1, "specialty_name": "Cardiology"},
            {"specialty_id": 2, "specialty_name": "Orthopedics"},
            {"specialty_id": 3, "specialty_name": "Neurology"},
            {"specialty_id": 4, "specialty_name": "Dermatology"},
        ],
        "patients": [{"patient_id": i} for i in range(1, 7)],
        "providers": [
            {"provider_id": 10, "specialty_id": 1},
            {"provider_id": 11, "specialty_id": 1},
            {"provider_id": 20, "specialty_id": 2},
            {"provider_id": 30, "specialty_id": 3},
        ],
        "diagnoses": [
            {"diagnosis_id": 1, "icd10_code": "I10", "icd10_description": "Essential hypertension"},
            {"diagnosis_id": 2, "icd10_code": "E11.9", "icd10_description": "Type 2 diabetes"},
            {"diagnosis_id": 3, "icd10_code": "M54.5", "icd10_description": "Low back pain"},
        ],
        "procedures": [
            {"procedure_id": 1, "cpt_code": "99213", "cpt_description": "Office visit"},
            {"procedure_id": 2, "cpt_code": "93000", "cpt_description": "Electrocardiogram"},
            {"procedure_id": 3, "cpt_code": "72148", "cpt_description": "MRI lumbar spine"},
        ],
        "encounters": [
            _encounter(101, 1, 10, "Inpatient", "2024-01-05", "2024-01-10"),
            _encounter(102, 1, 11, "Inpatient", "2024-02-09", "2024-02-12"),
            _encounter(103, 2, 10, "Inpatient", "2024-01-15", "2024-01-20"),
            _encounter(104, 2, 20, "Inpatient", "2024-02-20", "2024-02-22"),
            _encounter(105, 3, 20, "Outpatient", "2024-01-15"),
            _encounter(106, 3, 20, "Inpatient", "2024-03-01", "2024-03-05"),
            _encounter(107, 3, 20, "Emergency", "2024-03-10"),
            _encounter(108, 4, 30, "Outpatient", "2024-02-03"),
            _encounter(109, 5, 10, "Outpatient", "2023-12-28"),
            _encounter(110, 6, 20, "Inpatient", "2024-03-05"),
        ],
        "encounter_diagnoses": [
            {"encounter_id": e, "diagnosis_id": d}
            for e, d in [
                (101, 1), (101, 2), (102, 1), (103, 1), (104, 3),
                (105, 3), (106, 3), (106, 2), (108, 2),
            ]
        ],
        "encounter_procedures": [
            {"encounter_id": e, "procedure_id": p}
            for e, p in [
                (101, 2), (101, 1), (102, 2), (103, 2), (104, 3),
                (105, 3), (106, 3), (108, 1),
            ]
        ],
        "billing": [
            _claim(1, 101, "2024-01-12", 1500, 1200),
            _claim(2, 101, "2024-02-02", "300.00", "250.00"),
            _claim(3, 103, "2024-01-25", 800, "640.50"),
            _claim(4, 104, "2024-02-25", 2000, "1700.25"),
            _claim(5, 105, "2024-01-20", 150, 120),
            _claim(6, 108, "2024-02-05", 200, 180),
            _claim(7, 109, "2024-01-03", 100, 75),
        ],
    }


def _encounter(encounter_id, patient_id, provider_id, encounter_type, on, discharged=None):
    return {
        "encounter_id": encounter_id,
        "patient_id": patient_id,
        "provider_id": provider_id,
        "encounter_type": encounter_type,
        "encounter_date": on,
        "discharge_date": discharged,
    }


def _claim(billing_id, encounter_id, claim_date, claimed, allowed):
    return {
        "billing_id": billing_id,
        "encounter_id": encounter_id,
        "claim_date": claim_date,
        "claim_amount": claimed,
        "allowed_amount": allowed,
    }


def readmission_dataset(first_discharge, second_admission, second_type="Inpatient"):
    """One patient, one Cardiology discharge, one later encounter."""
    return {
        "specialties": [{"specialty_id": 1, "specialty_name": "Cardiology"}],
        "patients": [{"patient_id": 1}],
        "providers": [{"provider_id": 1, "specialty_id": 1}],
        "encounters": [
            _encounter(1, 1, 1, "Inpatient", "2024-01-01", first_discharge),
            _encounter(2, 1, 1, second_type, second_admission),
        ],
    }


def new_entity_store():
    return EntityStore(create_store_engine("sqlite://")).create_schema()


@pytest.fixture
def dataset():
    return build_dataset()


@pytest.fixture
def entity_store(dataset):
    store = new_entity_store()
    store.load(dataset)
    return store


@pytest.fixture
def star(entity_store):
    return materialize(entity_store, engine=create_store_engine("sqlite://"))


@pytest.fixture(params=["oltp", "star"])
def store(request, entity_store, star):
    """Each query test runs once per store."""
    return entity_store if request.param == "oltp" else star
