"""
Dimensional store – the star schema derived from the entity store.

Read access to dimensions, facts and bridges, the pre-joined encounter
detail view, and verification of the consistency contract between the
pre-aggregated facts and the normalized rows they were built from.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from dimsim.errors import MaterializationInvariantViolation, NotFound
from dimsim.models.database import WarehouseBase
from dimsim.models.oltp import (
    INPATIENT,
    Billing,
    Encounter,
    EncounterDiagnosis,
    EncounterProcedure,
    Provider,
)
from dimsim.models.star import (
    STAR_TABLES,
    BridgeEncounterDiagnosis,
    BridgeEncounterProcedure,
    DimDate,
    DimEncounterType,
    DimPatient,
    DimProvider,
    EtlRun,
    FactEncounter,
    encounter_detail_view,
)

if TYPE_CHECKING:
    from dimsim.services.entity_store import EntityStore

logger = logging.getLogger(__name__)

TABLES: dict[str, type[WarehouseBase]] = {model.__tablename__: model for model in STAR_TABLES}

ZERO = Decimal("0.00")


class DimensionalStore:
    """Star-schema encounter data backed by an SQLAlchemy engine."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)
        self.last_summary: dict[str, Any] | None = None

    def create_schema(self) -> DimensionalStore:
        WarehouseBase.metadata.create_all(bind=self.engine)
        return self

    def session(self) -> Session:
        return self._sessions()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, table: str | type[WarehouseBase], key: Any) -> WarehouseBase:
        model = TABLES.get(table) if isinstance(table, str) else table
        if model is None:
            raise NotFound("table", table)
        with self.session() as session:
            row = session.get(model, key)
        if row is None:
            raise NotFound(model.__tablename__, key)
        return row

    def current_provider(self, provider_id: int) -> DimProvider:
        """The single current dimension row for a provider."""
        statement = select(DimProvider).where(
            DimProvider.provider_id == provider_id, DimProvider.current_flag.is_(True)
        )
        with self.session() as session:
            rows = list(session.execute(statement).scalars())
        if not rows:
            raise NotFound("dim_provider", provider_id)
        if len(rows) > 1:
            raise MaterializationInvariantViolation(
                [f"provider {provider_id} has {len(rows)} current dimension rows"]
            )
        return rows[0]

    def facts_for_patient(self, patient_key: int) -> list[FactEncounter]:
        self.get(DimPatient, patient_key)
        statement = (
            select(FactEncounter)
            .where(FactEncounter.patient_key == patient_key)
            .order_by(FactEncounter.encounter_date_key, FactEncounter.encounter_key)
        )
        with self.session() as session:
            return list(session.execute(statement).scalars())

    def bridge_keys(self, encounter_key: int) -> dict[str, list[int]]:
        """Diagnosis and procedure keys linked to one fact row."""
        self.get(FactEncounter, encounter_key)
        with self.session() as session:
            diagnosis_keys = session.execute(
                select(BridgeEncounterDiagnosis.diagnosis_key)
                .where(BridgeEncounterDiagnosis.encounter_key == encounter_key)
                .order_by(BridgeEncounterDiagnosis.diagnosis_key)
            ).scalars()
            procedure_keys = session.execute(
                select(BridgeEncounterProcedure.procedure_key)
                .where(BridgeEncounterProcedure.encounter_key == encounter_key)
                .order_by(BridgeEncounterProcedure.procedure_key)
            ).scalars()
            return {
                "diagnosis_keys": list(diagnosis_keys),
                "procedure_keys": list(procedure_keys),
            }

    def encounter_detail(self) -> list[dict[str, Any]]:
        """Rows of the pre-joined encounter detail view."""
        view = encounter_detail_view()
        with self.session() as session:
            result = session.execute(select(view).order_by(view.c.encounter_key))
            return [dict(row) for row in result.mappings()]

    def snapshot(self) -> dict[str, list[tuple]]:
        """Every dimension, fact and bridge row, ordered by primary key."""
        tables = {}
        with self.session() as session:
            for name, model in TABLES.items():
                table = model.__table__
                result = session.execute(
                    select(table).order_by(*table.primary_key.columns)
                )
                tables[name] = [tuple(row) for row in result]
        return tables

    def latest_run(self) -> EtlRun | None:
        with self.session() as session:
            return session.execute(
                select(EtlRun).order_by(EtlRun.started_at.desc()).limit(1)
            ).scalar_one_or_none()

    def is_empty(self) -> bool:
        with self.session() as session:
            return not session.scalar(select(func.count()).select_from(FactEncounter))

    # ------------------------------------------------------------------
    # Invariants
    # ------------------------------------------------------------------

    def verify(self, entity_store: EntityStore, session: Session | None = None) -> None:
        """
        Recompute every pre-aggregated fact field from the normalized rows.

        Pass ``session`` to check rows that are not yet committed. Raises
        MaterializationInvariantViolation listing all mismatches.
        """
        if session is None:
            with self.session() as session:
                return self.verify(entity_store, session=session)

        expected = _expected_facts(entity_store)
        mismatches: list[str] = []

        mismatches.extend(_check_current_providers(session, entity_store))
        mismatches.extend(_check_date_dimension(session))

        bridge_dx = dict(
            session.execute(
                select(BridgeEncounterDiagnosis.encounter_key, func.count())
                .group_by(BridgeEncounterDiagnosis.encounter_key)
            ).all()
        )
        bridge_px = dict(
            session.execute(
                select(BridgeEncounterProcedure.encounter_key, func.count())
                .group_by(BridgeEncounterProcedure.encounter_key)
            ).all()
        )

        facts = session.execute(
            select(
                FactEncounter,
                DimPatient.patient_id,
                DimProvider.provider_id,
                DimProvider.current_flag,
                DimEncounterType.encounter_type_name,
            )
            .join(DimPatient, FactEncounter.patient_key == DimPatient.patient_key)
            .join(DimProvider, FactEncounter.provider_key == DimProvider.provider_key)
            .join(
                DimEncounterType,
                FactEncounter.encounter_type_key == DimEncounterType.encounter_type_key,
            )
        ).all()

        seen = set()
        for fact, patient_id, provider_id, current_flag, type_name in facts:
            seen.add(fact.encounter_id)
            want = expected.get(fact.encounter_id)
            if want is None:
                mismatches.append(f"fact {fact.encounter_key}: encounter {fact.encounter_id} not in entity store")
                continue
            if not current_flag:
                mismatches.append(f"fact {fact.encounter_key}: provider row is not current")
            got = {
                "patient_id": patient_id,
                "provider_id": provider_id,
                "encounter_type": type_name,
                "encounter_date_key": fact.encounter_date_key,
                "discharge_date_key": fact.discharge_date_key,
                "is_admitted": fact.is_admitted,
                "has_diagnoses": fact.has_diagnoses,
                "has_procedures": fact.has_procedures,
                "diagnosis_count": fact.diagnosis_count,
                "procedure_count": fact.procedure_count,
                "has_billing": fact.has_billing,
                "claim_count": fact.claim_count,
                "billing_date_key": fact.billing_date_key,
                "total_claim_amount": fact.total_claim_amount,
                "total_allowed_amount": fact.total_allowed_amount,
                "bridged_diagnoses": bridge_dx.get(fact.encounter_key, 0),
                "bridged_procedures": bridge_px.get(fact.encounter_key, 0),
            }
            for field, value in want.items():
                if got[field] != value:
                    mismatches.append(
                        f"fact {fact.encounter_key} (encounter {fact.encounter_id}): "
                        f"{field}={got[field]!r}, expected {value!r}"
                    )

        for encounter_id in sorted(set(expected) - seen):
            mismatches.append(f"encounter {encounter_id} has no fact row")

        if mismatches:
            logger.error("Invariant verification found %d mismatches", len(mismatches))
            raise MaterializationInvariantViolation(mismatches)
        logger.info("Invariant verification passed for %d fact rows", len(facts))


def _expected_facts(entity_store: EntityStore) -> dict[int, dict[str, Any]]:
    """Per-encounter aggregates recomputed with SQL over the normalized tables."""
    with entity_store.session() as session:
        encounters = session.execute(
            select(
                Encounter.encounter_id,
                Encounter.patient_id,
                Encounter.provider_id,
                Encounter.encounter_type,
                Encounter.encounter_date,
                Encounter.discharge_date,
            )
        ).all()
        dx = dict(
            session.execute(
                select(EncounterDiagnosis.encounter_id, func.count())
                .group_by(EncounterDiagnosis.encounter_id)
            ).all()
        )
        px = dict(
            session.execute(
                select(EncounterProcedure.encounter_id, func.count())
                .group_by(EncounterProcedure.encounter_id)
            ).all()
        )
        billing = {
            row.encounter_id: row
            for row in session.execute(
                select(
                    Billing.encounter_id,
                    func.count().label("claims"),
                    func.sum(Billing.claim_amount).label("claimed"),
                    func.sum(Billing.allowed_amount).label("allowed"),
                    func.min(Billing.claim_date).label("first_claim"),
                ).group_by(Billing.encounter_id)
            )
        }

    expected = {}
    for row in encounters:
        claims = billing.get(row.encounter_id)
        diagnosis_count = dx.get(row.encounter_id, 0)
        procedure_count = px.get(row.encounter_id, 0)
        expected[row.encounter_id] = {
            "patient_id": row.patient_id,
            "provider_id": row.provider_id,
            "encounter_type": row.encounter_type,
            "encounter_date_key": row.encounter_date.toordinal(),
            "discharge_date_key": row.discharge_date.toordinal() if row.discharge_date else None,
            "is_admitted": row.encounter_type == INPATIENT,
            "has_diagnoses": diagnosis_count > 0,
            "has_procedures": procedure_count > 0,
            "diagnosis_count": diagnosis_count,
            "procedure_count": procedure_count,
            "has_billing": claims is not None,
            "claim_count": claims.claims if claims else 0,
            "billing_date_key": claims.first_claim.toordinal() if claims else None,
            "total_claim_amount": claims.claimed if claims else ZERO,
            "total_allowed_amount": claims.allowed if claims else ZERO,
            "bridged_diagnoses": diagnosis_count,
            "bridged_procedures": procedure_count,
        }
    return expected


def _check_current_providers(session: Session, entity_store: EntityStore) -> list[str]:
    """Exactly one current dimension row per provider."""
    current = dict(
        session.execute(
            select(DimProvider.provider_id, func.count())
            .where(DimProvider.current_flag.is_(True))
            .group_by(DimProvider.provider_id)
        ).all()
    )
    with entity_store.session() as oltp:
        provider_ids = list(oltp.execute(select(Provider.provider_id)).scalars())

    problems = []
    for provider_id in sorted(provider_ids):
        count = current.get(provider_id, 0)
        if count != 1:
            problems.append(f"provider {provider_id} has {count} current dimension rows")
    return problems


def _check_date_dimension(session: Session) -> list[str]:
    """Date keys are dense ordinals of their calendar date."""
    low, high, count = session.execute(
        select(func.min(DimDate.date_key), func.max(DimDate.date_key), func.count())
    ).one()
    if not count:
        return []
    problems = []
    if high - low + 1 != count:
        problems.append(f"dim_date has gaps: {count} rows between keys {low} and {high}")
    for date_key, full_date in session.execute(select(DimDate.date_key, DimDate.full_date)):
        if full_date.toordinal() != date_key:
            problems.append(f"dim_date key {date_key} does not match {full_date.isoformat()}")
    return problems
