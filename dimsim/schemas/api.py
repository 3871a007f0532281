"""Pydantic models for query result rows and API request/response serialization."""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Query result rows
# ---------------------------------------------------------------------------

class MonthlyEncounterRow(BaseModel):
    encounter_month: str
    specialty_name: str
    encounter_type: str
    total_encounters: int
    unique_patients: int


class DiagnosisProcedurePairRow(BaseModel):
    icd10_code: str
    icd10_description: str | None = None
    cpt_code: str
    cpt_description: str | None = None
    encounter_count: int


class ReadmissionRow(BaseModel):
    specialty_name: str
    total_discharges: int
    readmissions: int
    readmission_rate_pct: Decimal | None


class RevenueRow(BaseModel):
    billing_month: str
    specialty_name: str
    total_claims: int
    total_claimed: Decimal
    total_allowed: Decimal
    avg_allowed: Decimal


class EncounterSummaryRow(BaseModel):
    """One group of the encounter detail view summary."""
    encounter_month: str
    specialty_name: str
    encounter_type: str
    encounter_count: int
    total_revenue: Decimal
    avg_length_of_stay_days: Decimal | None


# ---------------------------------------------------------------------------
# Bulk load
# ---------------------------------------------------------------------------

class LoadRequest(BaseModel):
    """Records keyed by entity type, e.g. {"patients": [{"patient_id": 1}]}."""
    records: dict[str, list[dict[str, Any]]] = Field(..., min_length=1)


class LoadResult(BaseModel):
    row_counts: dict[str, int]


# ---------------------------------------------------------------------------
# Materialization
# ---------------------------------------------------------------------------

class TaskSummary(BaseModel):
    status: str
    duration_ms: float | None = None
    error: str | None = None


class MaterializeResult(BaseModel):
    pipeline: str
    status: str
    tasks: dict[str, TaskSummary]
    row_counts: dict[str, int] = {}


# ---------------------------------------------------------------------------
# Query execution
# ---------------------------------------------------------------------------

class QueryResult(BaseModel):
    query: str
    store: str
    rows: list[dict[str, Any]]


class ComparisonResult(BaseModel):
    query: str
    identical: bool
    oltp_rows: list[dict[str, Any]]
    star_rows: list[dict[str, Any]]


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

class HealthResponse(BaseModel):
    status: str = "healthy"
    environment: str
    materialized: bool = False
