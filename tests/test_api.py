"""Tests for the HTTP API – load, materialize, then query both stores."""

import pytest
from fastapi.testclient import TestClient

from conftest import build_dataset, new_entity_store, readmission_dataset
from dimsim.main import create_app
from dimsim.services.stores import StoreRegistry

API = "/api/v1"


@pytest.fixture
def client():
    app = create_app(StoreRegistry(new_entity_store()))
    return TestClient(app)


@pytest.fixture
def loaded_client(client):
    assert client.post(f"{API}/load", json={"records": build_dataset()}).status_code == 200
    assert client.post(f"{API}/materialize").status_code == 200
    return client


def test_health_reports_materialization(client):
    body = client.get(f"{API}/health").json()
    assert body["status"] == "healthy"
    assert body["materialized"] is False


def test_load_returns_row_counts(client):
    response = client.post(f"{API}/load", json={"records": build_dataset()})
    assert response.status_code == 200
    assert response.json()["row_counts"]["encounters"] == 10


def test_load_rejects_dangling_references(client):
    dataset = build_dataset()
    dataset["encounters"][0]["provider_id"] = 99
    response = client.post(f"{API}/load", json={"records": dataset})
    assert response.status_code == 422
    assert any("provider_id=99" in v for v in response.json()["detail"])


def test_load_rejects_invalid_records(client):
    response = client.post(f"{API}/load", json={"records": {"patients": [{"patient_id": -1}]}})
    assert response.status_code == 422
    assert response.json()["detail"][0].startswith("patients[0]")


def test_materialize_reports_tasks(client):
    client.post(f"{API}/load", json={"records": build_dataset()})
    body = client.post(f"{API}/materialize").json()
    assert body["status"] == "completed"
    assert body["tasks"]["verify"]["status"] == "success"
    assert body["row_counts"]["input_rows"] == 54
    assert client.get(f"{API}/health").json()["materialized"] is True


def test_star_query_before_materialize_conflicts(client):
    response = client.get(f"{API}/queries/readmission_rates")
    assert response.status_code == 409


def test_oltp_query_works_without_materialize(client):
    client.post(f"{API}/load", json={"records": build_dataset()})
    response = client.get(f"{API}/queries/readmission_rates", params={"store": "oltp"})
    assert response.status_code == 200
    assert response.json()["rows"][0]["readmission_rate_pct"] == "33.33"


def test_list_queries(client):
    names = client.get(f"{API}/queries").json()
    assert "top_diagnosis_procedure_pairs" in names
    assert "revenue_by_specialty_month" in names


def test_query_with_parameters(loaded_client):
    response = loaded_client.get(
        f"{API}/queries/top_diagnosis_procedure_pairs",
        params={"min_encounters": 1, "limit": 4},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["store"] == "star"
    assert len(body["rows"]) == 4


def test_unsupported_parameters_are_ignored(loaded_client):
    response = loaded_client.get(
        f"{API}/queries/readmission_rates", params={"year": 2024}
    )
    assert response.status_code == 200


def test_unknown_query_not_found(loaded_client):
    assert loaded_client.get(f"{API}/queries/busiest_wards").status_code == 404


def test_bad_store_name(loaded_client):
    response = loaded_client.get(
        f"{API}/queries/readmission_rates", params={"store": "lake"}
    )
    assert response.status_code == 422


def test_zero_discharge_raise_policy(loaded_client):
    response = loaded_client.get(
        f"{API}/queries/readmission_rates", params={"zero_policy": "raise"}
    )
    assert response.status_code == 422
    assert "Neurology" in response.json()["detail"]


def test_compare_endpoint(loaded_client):
    body = loaded_client.get(f"{API}/queries/revenue_by_specialty_month/compare").json()
    assert body["identical"] is True
    assert body["oltp_rows"] == body["star_rows"]
    assert body["star_rows"][0]["total_allowed"] == "2165.50"


def test_load_rejects_impossible_dates(client):
    response = client.post(
        f"{API}/load", json={"records": readmission_dataset("2024-02-30", "2024-03-05")}
    )
    assert response.status_code == 422
    assert response.json()["detail"][0].startswith("encounters[0]")


def test_load_rejects_discharge_before_admission(client):
    dataset = readmission_dataset("2024-01-10", "2024-03-05")
    dataset["encounters"][0]["encounter_date"] = "2024-01-20"
    response = client.post(f"{API}/load", json={"records": dataset})
    assert response.status_code == 422
    assert "precedes encounter_date" in response.json()["detail"][0]
