"""
Tests for the analytics queries.

Value tests run once per store through the parametrized ``store`` fixture,
so every expectation also checks that both schemas give the same answer.
"""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import insert

from conftest import new_entity_store, readmission_dataset
from dimsim.errors import UnknownQueryError, ZeroDischargeError
from dimsim.etl.materialize import materialize
from dimsim.models.database import create_store_engine
from dimsim.models.oltp import Encounter
from dimsim.schemas.api import (
    DiagnosisProcedurePairRow,
    MonthlyEncounterRow,
    ReadmissionRow,
    RevenueRow,
)
from dimsim.services.queries import (
    QUERIES,
    DivideByZeroPolicy,
    compare,
    encounter_detail_summary,
    monthly_encounters_by_specialty,
    readmission_rates,
    revenue_by_specialty_month,
    run_query,
    top_diagnosis_procedure_pairs,
)


def _stores_for(dataset):
    entity_store = new_entity_store()
    entity_store.load(dataset)
    return entity_store, materialize(entity_store, engine=create_store_engine("sqlite://"))


# ---------------------------------------------------------------------------
# Monthly encounters by specialty
# ---------------------------------------------------------------------------

def test_monthly_encounters_by_specialty(store):
    rows = monthly_encounters_by_specialty(store)
    keys = [(r.encounter_month, r.specialty_name, r.encounter_type) for r in rows]
    assert keys == [
        ("2023-12", "Cardiology", "Outpatient"),
        ("2024-01", "Cardiology", "Inpatient"),
        ("2024-01", "Orthopedics", "Outpatient"),
        ("2024-02", "Cardiology", "Inpatient"),
        ("2024-02", "Neurology", "Outpatient"),
        ("2024-02", "Orthopedics", "Inpatient"),
        ("2024-03", "Orthopedics", "Emergency"),
        ("2024-03", "Orthopedics", "Inpatient"),
    ]
    assert rows[1] == MonthlyEncounterRow(
        encounter_month="2024-01",
        specialty_name="Cardiology",
        encounter_type="Inpatient",
        total_encounters=2,
        unique_patients=2,
    )


def test_monthly_encounters_year_filter(store):
    rows = monthly_encounters_by_specialty(store, year=2024)
    assert len(rows) == 7
    assert all(r.encounter_month.startswith("2024-") for r in rows)


# ---------------------------------------------------------------------------
# Top diagnosis-procedure pairs
# ---------------------------------------------------------------------------

def test_top_pairs_require_two_encounters(store):
    rows = top_diagnosis_procedure_pairs(store)
    assert [(r.icd10_code, r.cpt_code, r.encounter_count) for r in rows] == [
        ("I10", "93000", 3),
        ("M54.5", "72148", 3),
        ("E11.9", "99213", 2),
    ]
    assert rows[0] == DiagnosisProcedurePairRow(
        icd10_code="I10",
        icd10_description="Essential hypertension",
        cpt_code="93000",
        cpt_description="Electrocardiogram",
        encounter_count=3,
    )


def test_top_pairs_threshold_of_one_keeps_single_encounter_pairs(store):
    rows = top_diagnosis_procedure_pairs(store, min_encounters=1)
    assert len(rows) == 6
    assert [r.encounter_count for r in rows] == [3, 3, 2, 1, 1, 1]
    # ties on count fall back to ICD-10 then CPT order
    assert [(r.icd10_code, r.cpt_code) for r in rows[3:]] == [
        ("E11.9", "72148"),
        ("E11.9", "93000"),
        ("I10", "99213"),
    ]


def test_top_pairs_limit(store):
    rows = top_diagnosis_procedure_pairs(store, min_encounters=1, limit=2)
    assert len(rows) == 2


def test_top_pairs_never_exceed_twenty_rows():
    diagnoses = [
        {"diagnosis_id": i, "icd10_code": f"Z{i:02d}", "icd10_description": None}
        for i in range(1, 6)
    ]
    procedures = [
        {"procedure_id": i, "cpt_code": f"{90000 + i}", "cpt_description": None}
        for i in range(1, 6)
    ]
    encounters = [
        {
            "encounter_id": e,
            "patient_id": 1,
            "provider_id": 1,
            "encounter_type": "Outpatient",
            "encounter_date": "2024-05-01",
        }
        for e in (1, 2)
    ]
    dataset = {
        "specialties": [{"specialty_id": 1, "specialty_name": "Internal Medicine"}],
        "patients": [{"patient_id": 1}],
        "providers": [{"provider_id": 1, "specialty_id": 1}],
        "diagnoses": diagnoses,
        "procedures": procedures,
        "encounters": encounters,
        "encounter_diagnoses": [
            {"encounter_id": e, "diagnosis_id": d} for e in (1, 2) for d in range(1, 6)
        ],
        "encounter_procedures": [
            {"encounter_id": e, "procedure_id": p} for e in (1, 2) for p in range(1, 6)
        ],
    }
    entity_store, star = _stores_for(dataset)
    for target in (entity_store, star):
        rows = top_diagnosis_procedure_pairs(target)
        assert len(rows) == 20
        assert all(r.encounter_count >= 2 for r in rows)
        assert rows[-1].icd10_code == "Z04"
    assert compare(entity_store, star, "top_diagnosis_procedure_pairs").identical


# ---------------------------------------------------------------------------
# 30-day readmission rate
# ---------------------------------------------------------------------------

def test_readmission_rates(store):
    rows = readmission_rates(store)
    assert rows == [
        ReadmissionRow(
            specialty_name="Cardiology",
            total_discharges=3,
            readmissions=1,
            readmission_rate_pct=Decimal("33.33"),
        ),
        ReadmissionRow(
            specialty_name="Orthopedics",
            total_discharges=2,
            readmissions=0,
            readmission_rate_pct=Decimal("0.00"),
        ),
    ]


@pytest.mark.parametrize(
    "discharged, readmitted_on, second_type, expected",
    [
        ("2024-01-10", "2024-02-09", "Inpatient", 1),   # discharge + 30 days
        ("2024-01-10", "2024-02-10", "Inpatient", 0),   # discharge + 31 days
        ("2024-01-10", "2024-01-10", "Inpatient", 0),   # same day is not "after"
        ("2024-01-10", "2024-01-11", "Inpatient", 1),
        ("2024-01-10", "2024-01-20", "Outpatient", 0),  # not an admission
        ("2024-02-10", "2024-03-11", "Inpatient", 1),   # window spans leap day
    ],
)
def test_readmission_window_boundaries(discharged, readmitted_on, second_type, expected):
    entity_store, star = _stores_for(readmission_dataset(discharged, readmitted_on, second_type))
    for target in (entity_store, star):
        rows = readmission_rates(target)
        assert len(rows) == 1
        # the second encounter has no discharge date, so only one discharge
        assert rows[0].total_discharges == 1
        assert rows[0].readmissions == expected


def test_custom_readmission_window(store):
    rows = readmission_rates(store, window_days=7)
    cardiology = next(r for r in rows if r.specialty_name == "Cardiology")
    assert cardiology.readmissions == 0


def test_zero_discharge_policy_omit_is_default(store):
    names = [r.specialty_name for r in readmission_rates(store)]
    assert "Neurology" not in names


def test_zero_discharge_policy_zero(store):
    rows = readmission_rates(store, zero_policy=DivideByZeroPolicy.ZERO)
    assert [r.specialty_name for r in rows] == ["Cardiology", "Neurology", "Orthopedics"]
    assert rows[1].total_discharges == 0
    assert rows[1].readmission_rate_pct == Decimal("0.00")


def test_zero_discharge_policy_null_sorts_last(store):
    rows = readmission_rates(store, zero_policy="null")
    assert rows[-1].specialty_name == "Neurology"
    assert rows[-1].readmission_rate_pct is None
    # specialties without providers are never reported
    assert "Dermatology" not in [r.specialty_name for r in rows]


def test_zero_discharge_policy_raise(store):
    with pytest.raises(ZeroDischargeError, match="Neurology"):
        readmission_rates(store, zero_policy=DivideByZeroPolicy.RAISE)


def test_invalid_zero_discharge_policy(store):
    with pytest.raises(ValueError):
        readmission_rates(store, zero_policy="ignore")


# ---------------------------------------------------------------------------
# Revenue by specialty and month
# ---------------------------------------------------------------------------

def test_revenue_by_specialty_month(store):
    rows = revenue_by_specialty_month(store)
    assert [(r.billing_month, r.specialty_name) for r in rows] == [
        ("2024-01", "Cardiology"),
        ("2024-01", "Orthopedics"),
        ("2024-02", "Orthopedics"),
        ("2024-02", "Neurology"),
    ]
    assert rows[0] == RevenueRow(
        billing_month="2024-01",
        specialty_name="Cardiology",
        total_claims=4,
        total_claimed=Decimal("2700.00"),
        total_allowed=Decimal("2165.50"),
        avg_allowed=Decimal("541.38"),
    )


def test_revenue_year_filter(store):
    assert revenue_by_specialty_month(store, year=2023) == []
    assert len(revenue_by_specialty_month(store, year=2024)) == 4


# ---------------------------------------------------------------------------
# Encounter detail summary
# ---------------------------------------------------------------------------

def test_encounter_detail_summary(store):
    rows = encounter_detail_summary(store)
    by_key = {(r.encounter_month, r.specialty_name, r.encounter_type): r for r in rows}

    cardiology = by_key[("2024-01", "Cardiology", "Inpatient")]
    assert cardiology.encounter_count == 2
    assert cardiology.total_revenue == Decimal("2090.50")
    assert cardiology.avg_length_of_stay_days == Decimal("5.00")

    orthopedics = by_key[("2024-03", "Orthopedics", "Inpatient")]
    assert orthopedics.encounter_count == 2
    assert orthopedics.total_revenue == Decimal("0.00")
    assert orthopedics.avg_length_of_stay_days == Decimal("4.00")

    assert by_key[("2024-02", "Neurology", "Outpatient")].avg_length_of_stay_days is None


# ---------------------------------------------------------------------------
# Registry and cross-store equivalence
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("name", sorted(QUERIES))
def test_both_stores_return_identical_rows(entity_store, star, name):
    comparison = compare(entity_store, star, name)
    assert comparison.identical, comparison.differences
    assert comparison.oltp_rows == comparison.star_rows


def test_stores_agree_after_incremental_load(entity_store):
    entity_store.load(
        {
            "encounters": [
                {
                    "encounter_id": 120,
                    "patient_id": 2,
                    "provider_id": 30,
                    "encounter_type": "Inpatient",
                    "encounter_date": "2024-02-28",
                    "discharge_date": "2024-03-02",
                }
            ],
            "billing": [
                {
                    "billing_id": 20,
                    "encounter_id": 120,
                    "claim_date": "2024-03-03",
                    "claim_amount": "999.99",
                    "allowed_amount": "333.33",
                }
            ],
        }
    )
    star = materialize(entity_store, engine=create_store_engine("sqlite://"))
    for name in QUERIES:
        assert compare(entity_store, star, name).identical, name


def test_run_query_unknown_name(entity_store):
    with pytest.raises(UnknownQueryError):
        run_query("busiest_wards", entity_store)


def test_unsupported_store_type():
    with pytest.raises(TypeError):
        monthly_encounters_by_specialty(object())


def test_stay_never_counts_as_its_own_readmission():
    entity_store = new_entity_store()
    entity_store.load(
        {
            "specialties": [{"specialty_id": 1, "specialty_name": "Cardiology"}],
            "patients": [{"patient_id": 1}],
            "providers": [{"provider_id": 1, "specialty_id": 1}],
        }
    )
    # written directly, past the discharge-order check in load()
    with entity_store.session() as session, session.begin():
        session.execute(
            insert(Encounter),
            [
                {
                    "encounter_id": 1,
                    "patient_id": 1,
                    "provider_id": 1,
                    "encounter_type": "Inpatient",
                    "encounter_date": date(2024, 1, 20),
                    "discharge_date": date(2024, 1, 10),
                }
            ],
        )
    star = materialize(entity_store, engine=create_store_engine("sqlite://"))

    for target in (entity_store, star):
        rows = readmission_rates(target)
        assert rows == [
            ReadmissionRow(
                specialty_name="Cardiology",
                total_discharges=1,
                readmissions=0,
                readmission_rate_pct=Decimal("0.00"),
            )
        ]


def test_later_claims_count_in_first_claim_month(store):
    # encounter 101 has claims dated 2024-01-12 and 2024-02-02
    rows = revenue_by_specialty_month(store)
    february_cardiology = [
        r for r in rows if r.billing_month == "2024-02" and r.specialty_name == "Cardiology"
    ]
    assert february_cardiology == []
    january = next(
        r for r in rows if r.billing_month == "2024-01" and r.specialty_name == "Cardiology"
    )
    assert january.total_claimed == Decimal("2700.00")
