"""
Query engine – the canonical encounter analytics questions.

Every query runs against either store and returns the same ordered rows:

- monthly_encounters_by_specialty   encounters and unique patients per month
- top_diagnosis_procedure_pairs     most frequent co-occurring ICD-10/CPT pairs
- readmission_rates                 30-day inpatient readmission rate per specialty
- revenue_by_specialty_month        claimed and allowed amounts per month
- encounter_detail_summary          encounters, revenue and length of stay per month

The normalized store derives months and day differences from raw dates and
walks the provider -> specialty chain; the star store reads the date
dimension, the denormalized provider dimension and the pre-aggregated fact.
Percentages and averages are computed here, in Decimal, from integer and
decimal aggregates so both stores round identically.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Callable, Union

from pydantic import BaseModel
from sqlalchemy import and_, case, distinct, extract, func, select
from sqlalchemy.orm import aliased

from dimsim.config import settings
from dimsim.errors import UnknownQueryError, ZeroDischargeError
from dimsim.models.oltp import (
    INPATIENT,
    Billing,
    Diagnosis,
    Encounter,
    EncounterDiagnosis,
    EncounterProcedure,
    Procedure,
    Provider,
    Specialty,
)
from dimsim.models.star import (
    BridgeEncounterDiagnosis,
    BridgeEncounterProcedure,
    DimDate,
    DimDiagnosis,
    DimEncounterType,
    DimProcedure,
    DimProvider,
    FactEncounter,
    encounter_detail_view,
)
from dimsim.schemas.api import (
    DiagnosisProcedurePairRow,
    EncounterSummaryRow,
    MonthlyEncounterRow,
    ReadmissionRow,
    RevenueRow,
)
from dimsim.services.dimensional_store import DimensionalStore
from dimsim.services.entity_store import EntityStore
from dimsim.services.sql import days_between, year_month

logger = logging.getLogger(__name__)

Store = Union[EntityStore, DimensionalStore]

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


class DivideByZeroPolicy(str, Enum):
    """What readmission_rates reports for a specialty without discharges."""

    OMIT = "omit"
    ZERO = "zero"
    NULL = "null"
    RAISE = "raise"


def _is_oltp(store: Store) -> bool:
    if isinstance(store, EntityStore):
        return True
    if isinstance(store, DimensionalStore):
        return False
    raise TypeError(f"Unsupported store type: {type(store).__name__}")


def store_kind(store: Store) -> str:
    return "oltp" if _is_oltp(store) else "star"


def _round(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _current_provider():
    return and_(
        FactEncounter.provider_key == DimProvider.provider_key,
        DimProvider.current_flag.is_(True),
    )


# ---------------------------------------------------------------------------
# Monthly encounters by specialty
# ---------------------------------------------------------------------------

def monthly_encounters_by_specialty(
    store: Store, year: int | None = None
) -> list[MonthlyEncounterRow]:
    """Encounters and distinct patients per (month, specialty, encounter type)."""
    if _is_oltp(store):
        month = year_month(Encounter.encounter_date)
        statement = (
            select(
                month.label("encounter_month"),
                Specialty.specialty_name,
                Encounter.encounter_type,
                func.count(distinct(Encounter.encounter_id)).label("total_encounters"),
                func.count(distinct(Encounter.patient_id)).label("unique_patients"),
            )
            .select_from(Encounter)
            .join(Provider, Encounter.provider_id == Provider.provider_id)
            .join(Specialty, Provider.specialty_id == Specialty.specialty_id)
            .group_by(month, Specialty.specialty_name, Encounter.encounter_type)
            .order_by(month, Specialty.specialty_name, Encounter.encounter_type)
        )
        if year is not None:
            statement = statement.where(extract("year", Encounter.encounter_date) == year)
    else:
        statement = (
            select(
                DimDate.year_month.label("encounter_month"),
                DimProvider.specialty_name,
                DimEncounterType.encounter_type_name.label("encounter_type"),
                func.count().label("total_encounters"),
                func.count(distinct(FactEncounter.patient_key)).label("unique_patients"),
            )
            .select_from(FactEncounter)
            .join(DimDate, FactEncounter.encounter_date_key == DimDate.date_key)
            .join(DimProvider, _current_provider())
            .join(
                DimEncounterType,
                FactEncounter.encounter_type_key == DimEncounterType.encounter_type_key,
            )
            .group_by(
                DimDate.year_month,
                DimProvider.specialty_name,
                DimEncounterType.encounter_type_name,
            )
            .order_by(
                DimDate.year_month,
                DimProvider.specialty_name,
                DimEncounterType.encounter_type_name,
            )
        )
        if year is not None:
            statement = statement.where(DimDate.year == year)

    with store.session() as session:
        return [MonthlyEncounterRow(**row._mapping) for row in session.execute(statement)]


# ---------------------------------------------------------------------------
# Top diagnosis-procedure pairs
# ---------------------------------------------------------------------------

def top_diagnosis_procedure_pairs(
    store: Store,
    min_encounters: int | None = None,
    limit: int | None = None,
) -> list[DiagnosisProcedurePairRow]:
    """
    Diagnosis/procedure pairs recorded on the same encounter.

    Pairs seen on fewer than ``min_encounters`` distinct encounters are
    dropped; the ``limit`` most frequent remain, ties broken by ICD-10 code
    then CPT code.
    """
    min_encounters = settings.MIN_PAIR_ENCOUNTERS if min_encounters is None else min_encounters
    limit = settings.TOP_PAIRS_LIMIT if limit is None else limit

    if _is_oltp(store):
        diagnosis, procedure = Diagnosis, Procedure
        encounter_count = func.count(distinct(EncounterDiagnosis.encounter_id))
        statement = (
            select(
                Diagnosis.icd10_code,
                Diagnosis.icd10_description,
                Procedure.cpt_code,
                Procedure.cpt_description,
                encounter_count.label("encounter_count"),
            )
            .select_from(EncounterDiagnosis)
            .join(Diagnosis, EncounterDiagnosis.diagnosis_id == Diagnosis.diagnosis_id)
            .join(
                EncounterProcedure,
                EncounterDiagnosis.encounter_id == EncounterProcedure.encounter_id,
            )
            .join(Procedure, EncounterProcedure.procedure_id == Procedure.procedure_id)
        )
    else:
        diagnosis, procedure = DimDiagnosis, DimProcedure
        encounter_count = func.count(distinct(BridgeEncounterDiagnosis.encounter_key))
        statement = (
            select(
                DimDiagnosis.icd10_code,
                DimDiagnosis.icd10_description,
                DimProcedure.cpt_code,
                DimProcedure.cpt_description,
                encounter_count.label("encounter_count"),
            )
            .select_from(FactEncounter)
            .join(
                BridgeEncounterDiagnosis,
                FactEncounter.encounter_key == BridgeEncounterDiagnosis.encounter_key,
            )
            .join(
                BridgeEncounterProcedure,
                FactEncounter.encounter_key == BridgeEncounterProcedure.encounter_key,
            )
            .join(DimDiagnosis, BridgeEncounterDiagnosis.diagnosis_key == DimDiagnosis.diagnosis_key)
            .join(DimProcedure, BridgeEncounterProcedure.procedure_key == DimProcedure.procedure_key)
            .where(FactEncounter.has_diagnoses.is_(True), FactEncounter.has_procedures.is_(True))
        )

    statement = (
        statement.group_by(
            diagnosis.icd10_code,
            diagnosis.icd10_description,
            procedure.cpt_code,
            procedure.cpt_description,
        )
        .having(encounter_count >= min_encounters)
        .order_by(
            encounter_count.desc(),
            diagnosis.icd10_code,
            procedure.cpt_code,
            diagnosis.icd10_description,
            procedure.cpt_description,
        )
        .limit(limit)
    )

    with store.session() as session:
        return [DiagnosisProcedurePairRow(**row._mapping) for row in session.execute(statement)]


# ---------------------------------------------------------------------------
# 30-day readmission rate
# ---------------------------------------------------------------------------

def readmission_rates(
    store: Store,
    window_days: int | None = None,
    zero_policy: DivideByZeroPolicy | str | None = None,
) -> list[ReadmissionRow]:
    """
    Share of inpatient discharges followed by another admission of the
    same patient within ``window_days`` days, per discharging specialty.

    A readmission starts strictly after the discharge date and no more than
    ``window_days`` calendar days after it. Rows are ordered by rate,
    highest first.
    """
    window_days = settings.READMISSION_WINDOW_DAYS if window_days is None else window_days
    policy = DivideByZeroPolicy(zero_policy or settings.ZERO_DISCHARGE_POLICY)

    if _is_oltp(store):
        readmit = aliased(Encounter, name="readmit")
        readmitted = (
            select(readmit.encounter_id)
            .where(
                readmit.patient_id == Encounter.patient_id,
                readmit.encounter_id != Encounter.encounter_id,
                readmit.encounter_type == INPATIENT,
                readmit.encounter_date > Encounter.discharge_date,
                days_between(readmit.encounter_date, Encounter.discharge_date) <= window_days,
            )
            .correlate(Encounter)
            .exists()
        )
        statement = (
            select(
                Specialty.specialty_name,
                func.count(Encounter.encounter_id).label("total_discharges"),
                func.sum(case((readmitted, 1), else_=0)).label("readmissions"),
            )
            .select_from(Encounter)
            .join(Provider, Encounter.provider_id == Provider.provider_id)
            .join(Specialty, Provider.specialty_id == Specialty.specialty_id)
            .where(Encounter.encounter_type == INPATIENT, Encounter.discharge_date.is_not(None))
            .group_by(Specialty.specialty_name)
        )
        specialties = (
            select(distinct(Specialty.specialty_name))
            .select_from(Specialty)
            .join(Provider, Provider.specialty_id == Specialty.specialty_id)
        )
    else:
        readmit = aliased(FactEncounter, name="readmit")
        readmitted = (
            select(readmit.encounter_key)
            .where(
                readmit.patient_key == FactEncounter.patient_key,
                readmit.encounter_key != FactEncounter.encounter_key,
                readmit.is_admitted.is_(True),
                readmit.encounter_date_key > FactEncounter.discharge_date_key,
                readmit.encounter_date_key <= FactEncounter.discharge_date_key + window_days,
            )
            .correlate(FactEncounter)
            .exists()
        )
        statement = (
            select(
                DimProvider.specialty_name,
                func.count(FactEncounter.encounter_key).label("total_discharges"),
                func.sum(case((readmitted, 1), else_=0)).label("readmissions"),
            )
            .select_from(FactEncounter)
            .join(DimProvider, _current_provider())
            .where(
                FactEncounter.is_admitted.is_(True),
                FactEncounter.discharge_date_key.is_not(None),
            )
            .group_by(DimProvider.specialty_name)
        )
        specialties = select(distinct(DimProvider.specialty_name)).where(
            DimProvider.current_flag.is_(True)
        )

    with store.session() as session:
        counts = {
            row.specialty_name: (row.total_discharges, row.readmissions or 0)
            for row in session.execute(statement)
        }
        all_specialties = (
            [] if policy is DivideByZeroPolicy.OMIT else list(session.execute(specialties).scalars())
        )

    rows = [
        ReadmissionRow(
            specialty_name=name,
            total_discharges=total,
            readmissions=readmissions,
            readmission_rate_pct=_round(Decimal(100) * readmissions / total),
        )
        for name, (total, readmissions) in counts.items()
    ]
    for name in sorted(set(all_specialties) - set(counts)):
        if policy is DivideByZeroPolicy.RAISE:
            raise ZeroDischargeError(name)
        rows.append(
            ReadmissionRow(
                specialty_name=name,
                total_discharges=0,
                readmissions=0,
                readmission_rate_pct=ZERO if policy is DivideByZeroPolicy.ZERO else None,
            )
        )

    rows.sort(
        key=lambda r: (
            r.readmission_rate_pct is None,
            -(r.readmission_rate_pct or ZERO),
            r.specialty_name,
        )
    )
    return rows


# ---------------------------------------------------------------------------
# Revenue by specialty and month
# ---------------------------------------------------------------------------

def revenue_by_specialty_month(store: Store, year: int | None = None) -> list[RevenueRow]:
    """
    Claimed and allowed totals per (billing month, specialty).

    The billing month is per encounter, not per claim: every claim of an
    encounter is counted in the month of its earliest claim date, even a
    later claim dated in another month. Ordered by month, then allowed
    total descending.
    """
    if _is_oltp(store):
        encounter_billing = (
            select(
                Billing.encounter_id,
                func.min(Billing.claim_date).label("first_claim_date"),
                func.count(Billing.billing_id).label("claims"),
                func.sum(Billing.claim_amount).label("claimed"),
                func.sum(Billing.allowed_amount).label("allowed"),
            )
            .group_by(Billing.encounter_id)
            .subquery("encounter_billing")
        )
        month = year_month(encounter_billing.c.first_claim_date)
        statement = (
            select(
                month.label("billing_month"),
                Specialty.specialty_name,
                func.sum(encounter_billing.c.claims).label("total_claims"),
                func.sum(encounter_billing.c.claimed).label("total_claimed"),
                func.sum(encounter_billing.c.allowed).label("total_allowed"),
            )
            .select_from(encounter_billing)
            .join(Encounter, encounter_billing.c.encounter_id == Encounter.encounter_id)
            .join(Provider, Encounter.provider_id == Provider.provider_id)
            .join(Specialty, Provider.specialty_id == Specialty.specialty_id)
            .group_by(month, Specialty.specialty_name)
        )
        if year is not None:
            statement = statement.where(
                extract("year", encounter_billing.c.first_claim_date) == year
            )
    else:
        statement = (
            select(
                DimDate.year_month.label("billing_month"),
                DimProvider.specialty_name,
                func.sum(FactEncounter.claim_count).label("total_claims"),
                func.sum(FactEncounter.total_claim_amount).label("total_claimed"),
                func.sum(FactEncounter.total_allowed_amount).label("total_allowed"),
            )
            .select_from(FactEncounter)
            .join(DimDate, FactEncounter.billing_date_key == DimDate.date_key)
            .join(DimProvider, _current_provider())
            .where(FactEncounter.has_billing.is_(True))
            .group_by(DimDate.year_month, DimProvider.specialty_name)
        )
        if year is not None:
            statement = statement.where(DimDate.year == year)

    with store.session() as session:
        groups = session.execute(statement).all()

    rows = [
        RevenueRow(
            billing_month=row.billing_month,
            specialty_name=row.specialty_name,
            total_claims=row.total_claims,
            total_claimed=_round(Decimal(row.total_claimed)),
            total_allowed=_round(Decimal(row.total_allowed)),
            avg_allowed=_round(Decimal(row.total_allowed) / row.total_claims),
        )
        for row in groups
    ]
    rows.sort(key=lambda r: (r.billing_month, -r.total_allowed, r.specialty_name))
    return rows


# ---------------------------------------------------------------------------
# Encounter detail summary
# ---------------------------------------------------------------------------

def encounter_detail_summary(
    store: Store, year: int | None = None
) -> list[EncounterSummaryRow]:
    """Encounter count, allowed revenue and mean length of stay per month, specialty and type."""
    if _is_oltp(store):
        encounter_allowed = (
            select(
                Billing.encounter_id,
                func.sum(Billing.allowed_amount).label("allowed"),
            )
            .group_by(Billing.encounter_id)
            .subquery("encounter_allowed")
        )
        month = year_month(Encounter.encounter_date)
        length_of_stay = days_between(Encounter.discharge_date, Encounter.encounter_date)
        statement = (
            select(
                month.label("encounter_month"),
                Specialty.specialty_name,
                Encounter.encounter_type,
                func.count(Encounter.encounter_id).label("encounter_count"),
                func.sum(encounter_allowed.c.allowed).label("total_revenue"),
                func.sum(length_of_stay).label("stay_days"),
                func.count(length_of_stay).label("stays"),
            )
            .select_from(Encounter)
            .join(Provider, Encounter.provider_id == Provider.provider_id)
            .join(Specialty, Provider.specialty_id == Specialty.specialty_id)
            .outerjoin(encounter_allowed, encounter_allowed.c.encounter_id == Encounter.encounter_id)
            .group_by(month, Specialty.specialty_name, Encounter.encounter_type)
        )
        if year is not None:
            statement = statement.where(extract("year", Encounter.encounter_date) == year)
    else:
        view = encounter_detail_view()
        statement = select(
            view.c.encounter_year_month.label("encounter_month"),
            view.c.specialty_name,
            view.c.encounter_type_name.label("encounter_type"),
            func.count().label("encounter_count"),
            func.sum(view.c.total_allowed_amount).label("total_revenue"),
            func.sum(view.c.length_of_stay_days).label("stay_days"),
            func.count(view.c.length_of_stay_days).label("stays"),
        ).group_by(
            view.c.encounter_year_month,
            view.c.specialty_name,
            view.c.encounter_type_name,
        )
        if year is not None:
            statement = statement.where(view.c.encounter_year == year)

    with store.session() as session:
        groups = session.execute(statement).all()

    rows = [
        EncounterSummaryRow(
            encounter_month=row.encounter_month,
            specialty_name=row.specialty_name,
            encounter_type=row.encounter_type,
            encounter_count=row.encounter_count,
            total_revenue=_round(Decimal(row.total_revenue or 0)),
            avg_length_of_stay_days=_round(Decimal(row.stay_days) / row.stays)
            if row.stays
            else None,
        )
        for row in groups
    ]
    rows.sort(key=lambda r: (r.encounter_month, r.specialty_name, r.encounter_type))
    return rows


# ---------------------------------------------------------------------------
# Registry and cross-store comparison
# ---------------------------------------------------------------------------

QUERIES: dict[str, Callable[..., list[BaseModel]]] = {
    "monthly_encounters_by_specialty": monthly_encounters_by_specialty,
    "top_diagnosis_procedure_pairs": top_diagnosis_procedure_pairs,
    "readmission_rates": readmission_rates,
    "revenue_by_specialty_month": revenue_by_specialty_month,
    "encounter_detail_summary": encounter_detail_summary,
}


def run_query(name: str, store: Store, **params: Any) -> list[BaseModel]:
    if name not in QUERIES:
        raise UnknownQueryError(name)
    rows = QUERIES[name](store, **params)
    logger.info("Query '%s' on %s store returned %d rows", name, store_kind(store), len(rows))
    return rows


@dataclass
class Comparison:
    query: str
    oltp_rows: list[BaseModel]
    star_rows: list[BaseModel]
    differences: list[str] = field(default_factory=list)

    @property
    def identical(self) -> bool:
        return not self.differences


def compare(
    entity_store: EntityStore,
    dimensional_store: DimensionalStore,
    name: str,
    **params: Any,
) -> Comparison:
    """Run one query against both stores and diff the rows position by position."""
    oltp_rows = run_query(name, entity_store, **params)
    star_rows = run_query(name, dimensional_store, **params)

    differences = []
    if len(oltp_rows) != len(star_rows):
        differences.append(f"row count: oltp={len(oltp_rows)} star={len(star_rows)}")
    for index, (left, right) in enumerate(zip(oltp_rows, star_rows)):
        if left != right:
            differences.append(f"row {index}: oltp={left.model_dump()} star={right.model_dump()}")

    if differences:
        logger.warning("Query '%s' differs between stores: %d differences", name, len(differences))
    return Comparison(query=name, oltp_rows=oltp_rows, star_rows=star_rows, differences=differences)
