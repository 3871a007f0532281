"""Tests for the normalized entity store – bulk load and key lookup."""

from datetime import date
from decimal import Decimal

import pytest

from conftest import build_dataset, new_entity_store, readmission_dataset
from dimsim.errors import NotFound, RecordValidationError, ReferentialIntegrityError
from dimsim.models.oltp import Encounter


def test_load_returns_counts_per_entity(entity_store):
    counts = entity_store.row_counts()
    assert counts["encounters"] == 10
    assert counts["billing"] == 7
    assert counts["encounter_diagnoses"] == 9
    assert counts["specialties"] == 4


def test_get_by_primary_key(entity_store):
    encounter = entity_store.get("encounters", 101)
    assert encounter.encounter_type == "Inpatient"
    assert encounter.encounter_date == date(2024, 1, 5)
    assert encounter.discharge_date == date(2024, 1, 10)


def test_get_accepts_model_class_and_composite_key(entity_store):
    assert entity_store.get(Encounter, 105).patient_id == 3
    link = entity_store.get("encounter_diagnoses", (106, 2))
    assert link.encounter_id == 106


def test_get_missing_row_raises_not_found(entity_store):
    with pytest.raises(NotFound, match="encounters 999"):
        entity_store.get("encounters", 999)


def test_amounts_are_exact_decimals(entity_store):
    claims = entity_store.billing_for_encounter(101)
    assert [c.billing_id for c in claims] == [1, 2]
    assert sum(c.allowed_amount for c in claims) == Decimal("1450.00")


def test_children_by_foreign_key(entity_store):
    encounters = entity_store.encounters_for_patient(3)
    assert [e.encounter_id for e in encounters] == [105, 106, 107]


def test_children_of_childless_parent_is_empty(entity_store):
    assert entity_store.billing_for_encounter(106) == []


def test_children_of_missing_parent_raises_not_found(entity_store):
    with pytest.raises(NotFound):
        entity_store.encounters_for_patient(42)


def test_dangling_foreign_keys_are_all_reported():
    store = new_entity_store()
    dataset = build_dataset()
    dataset["encounters"][0]["provider_id"] = 99
    dataset["billing"][0]["encounter_id"] = 555

    with pytest.raises(ReferentialIntegrityError) as excinfo:
        store.load(dataset)

    violations = excinfo.value.violations
    assert any("provider_id=99" in v for v in violations)
    assert any("encounter_id=555" in v for v in violations)
    # Referential integrity errors are also lookup failures
    assert isinstance(excinfo.value, NotFound)


def test_failed_load_writes_nothing():
    store = new_entity_store()
    dataset = build_dataset()
    dataset["encounter_procedures"].append({"encounter_id": 101, "procedure_id": 77})

    with pytest.raises(ReferentialIntegrityError):
        store.load(dataset)
    assert sum(store.row_counts().values()) == 0


def test_schema_errors_are_collected():
    store = new_entity_store()
    dataset = build_dataset()
    dataset["encounters"][0]["encounter_date"] = "01/05/2024"
    dataset["billing"][0]["claim_amount"] = -5

    with pytest.raises(RecordValidationError) as excinfo:
        store.load(dataset)
    assert len(excinfo.value.errors) == 2
    assert excinfo.value.errors[0].startswith("encounters[0]")


def test_duplicate_primary_key_rejected():
    store = new_entity_store()
    dataset = build_dataset()
    dataset["patients"].append({"patient_id": 1})

    with pytest.raises(RecordValidationError, match="duplicate primary key"):
        store.load(dataset)


def test_unknown_entity_type_rejected():
    store = new_entity_store()
    with pytest.raises(RecordValidationError, match="unknown entity type 'wards'"):
        store.load({"wards": [{"ward_id": 1}]})


def test_incremental_load_resolves_existing_parents(entity_store):
    counts = entity_store.load(
        {
            "encounters": [
                {
                    "encounter_id": 111,
                    "patient_id": 1,
                    "provider_id": 30,
                    "encounter_type": "Outpatient",
                    "encounter_date": "2024-04-01",
                }
            ]
        }
    )
    assert counts["encounters"] == 1
    assert entity_store.get("encounters", 111).provider_id == 30


def test_nonexistent_calendar_date_rejected():
    store = new_entity_store()
    with pytest.raises(RecordValidationError) as excinfo:
        store.load(readmission_dataset("2024-02-30", "2024-03-05"))
    assert len(excinfo.value.errors) == 1
    assert excinfo.value.errors[0].startswith("encounters[0]: ")
    assert sum(store.row_counts().values()) == 0


def test_discharge_before_admission_rejected():
    store = new_entity_store()
    dataset = readmission_dataset("2024-01-10", "2024-03-05")
    dataset["encounters"][0]["encounter_date"] = "2024-01-20"

    with pytest.raises(RecordValidationError) as excinfo:
        store.load(dataset)
    assert excinfo.value.errors == [
        "encounters[0]: discharge_date 2024-01-10 precedes encounter_date 2024-01-20"
    ]


def test_same_day_discharge_accepted():
    store = new_entity_store()
    store.load(readmission_dataset("2024-01-01", "2024-03-05"))
    assert store.get("encounters", 1).discharge_date == date(2024, 1, 1)


def test_amounts_with_fractional_cents_rejected():
    store = new_entity_store()
    dataset = build_dataset()
    dataset["billing"][0]["claim_amount"] = 10.005

    with pytest.raises(RecordValidationError) as excinfo:
        store.load(dataset)
    assert excinfo.value.errors[0].startswith("billing[0]: ")
