"""
Materialization pipeline: normalized entity store -> star schema.

Extract -> Check integrity -> Build dimensions -> (Build facts, Build bridges)
-> Load -> Verify

Every run is a full recompute. Surrogate keys are assigned 1..n in order
of the natural key, so materializing the same snapshot twice produces the
same dimensional rows. The load replaces all star rows in one transaction
that is committed only after verification passes.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import delete, insert
from sqlalchemy.engine import Engine

from dimsim.config import settings
from dimsim.errors import ReferentialIntegrityError
from dimsim.etl.dag import DAG
from dimsim.models.database import create_store_engine
from dimsim.models.oltp import INPATIENT
from dimsim.models.star import STAR_TABLES, EtlRun
from dimsim.services.dimensional_store import DimensionalStore
from dimsim.services.entity_store import (
    ENTITIES,
    FOREIGN_KEYS,
    EntityStore,
    group_by_key,
    primary_key_names,
)

logger = logging.getLogger(__name__)

PIPELINE_NAME = "materialize_star_schema"

ZERO = Decimal("0.00")


# ---------------------------------------------------------------------------
# Individual pipeline steps (each receives and returns a context dict)
# ---------------------------------------------------------------------------


def extract(context: dict[str, Any]) -> dict[str, Any]:
    """Extract step – read every normalized table, ordered by primary key."""
    entity_store: EntityStore = context["entity_store"]
    source = entity_store.snapshot()
    count = sum(len(rows) for rows in source.values())
    logger.info("Extracted %d normalized rows", count)
    return {"source": source, "source_row_count": count}


def check_integrity(context: dict[str, Any]) -> dict[str, Any]:
    """
    Integrity gate – every foreign key in the snapshot must resolve.
    Dimensional rows are never built from an inconsistent source.
    """
    source = context["source"]
    violations = []
    for name, references in FOREIGN_KEYS.items():
        for column, parent in references:
            (parent_key,) = primary_key_names(ENTITIES[parent])
            parent_keys = {row[parent_key] for row in source[parent]}
            for row in source[name]:
                if row[column] not in parent_keys:
                    violations.append(
                        f"{name}.{column}={row[column]} has no matching {parent} row"
                    )
    if violations:
        raise ReferentialIntegrityError(violations)
    logger.info("Integrity check passed")
    return {}


def build_dimensions(context: dict[str, Any]) -> dict[str, Any]:
    """
    Build every dimension and assign surrogate keys.

    Encounter keys are assigned here as well so facts and bridges can be
    built independently of each other.
    """
    source = context["source"]
    specialty_names = {
        row["specialty_id"]: row["specialty_name"] for row in source["specialties"]
    }

    dim_patient = [
        {"patient_key": key, "patient_id": row["patient_id"]}
        for key, row in enumerate(source["patients"], start=1)
    ]
    dim_provider = [
        {
            "provider_key": key,
            "provider_id": row["provider_id"],
            "specialty_id": row["specialty_id"],
            "specialty_name": specialty_names[row["specialty_id"]],
            "current_flag": True,
        }
        for key, row in enumerate(source["providers"], start=1)
    ]
    type_names = sorted({row["encounter_type"] for row in source["encounters"]})
    dim_encounter_type = [
        {"encounter_type_key": key, "encounter_type_name": name}
        for key, name in enumerate(type_names, start=1)
    ]
    dim_diagnosis = [
        {
            "diagnosis_key": key,
            "diagnosis_id": row["diagnosis_id"],
            "icd10_code": row["icd10_code"],
            "icd10_description": row["icd10_description"],
        }
        for key, row in enumerate(source["diagnoses"], start=1)
    ]
    dim_procedure = [
        {
            "procedure_key": key,
            "procedure_id": row["procedure_id"],
            "cpt_code": row["cpt_code"],
            "cpt_description": row["cpt_description"],
        }
        for key, row in enumerate(source["procedures"], start=1)
    ]
    dim_date = build_date_dimension(_referenced_dates(source))

    keys = {
        "patient": {r["patient_id"]: r["patient_key"] for r in dim_patient},
        "provider": {r["provider_id"]: r["provider_key"] for r in dim_provider},
        "encounter_type": {
            r["encounter_type_name"]: r["encounter_type_key"] for r in dim_encounter_type
        },
        "diagnosis": {r["diagnosis_id"]: r["diagnosis_key"] for r in dim_diagnosis},
        "procedure": {r["procedure_id"]: r["procedure_key"] for r in dim_procedure},
        "encounter": {
            row["encounter_id"]: key
            for key, row in enumerate(source["encounters"], start=1)
        },
    }

    logger.info(
        "Built dimensions: %d dates, %d patients, %d providers, %d encounter types, "
        "%d diagnoses, %d procedures",
        len(dim_date),
        len(dim_patient),
        len(dim_provider),
        len(dim_encounter_type),
        len(dim_diagnosis),
        len(dim_procedure),
    )
    return {
        "dimensions": {
            "dim_date": dim_date,
            "dim_patient": dim_patient,
            "dim_provider": dim_provider,
            "dim_encounter_type": dim_encounter_type,
            "dim_diagnosis": dim_diagnosis,
            "dim_procedure": dim_procedure,
        },
        "keys": keys,
    }


def build_facts(context: dict[str, Any]) -> dict[str, Any]:
    """Build one fact row per encounter with its children pre-aggregated."""
    source = context["source"]
    keys = context["keys"]
    diagnoses = group_by_key(source["encounter_diagnoses"], "encounter_id")
    procedures = group_by_key(source["encounter_procedures"], "encounter_id")
    billing = group_by_key(source["billing"], "encounter_id")

    facts = []
    for encounter in source["encounters"]:
        encounter_id = encounter["encounter_id"]
        encounter_date: date = encounter["encounter_date"]
        discharge_date: date | None = encounter["discharge_date"]
        dx = diagnoses.get(encounter_id, [])
        px = procedures.get(encounter_id, [])
        claims = billing.get(encounter_id, [])

        facts.append(
            {
                "encounter_key": keys["encounter"][encounter_id],
                "encounter_id": encounter_id,
                "encounter_date_key": encounter_date.toordinal(),
                "provider_key": keys["provider"][encounter["provider_id"]],
                "encounter_type_key": keys["encounter_type"][encounter["encounter_type"]],
                "patient_key": keys["patient"][encounter["patient_id"]],
                "is_admitted": encounter["encounter_type"] == INPATIENT,
                "discharge_date_key": discharge_date.toordinal() if discharge_date else None,
                "length_of_stay_days": (discharge_date - encounter_date).days
                if discharge_date
                else None,
                "has_diagnoses": bool(dx),
                "has_procedures": bool(px),
                "diagnosis_count": len(dx),
                "procedure_count": len(px),
                "has_billing": bool(claims),
                "claim_count": len(claims),
                "billing_date_key": min(c["claim_date"] for c in claims).toordinal()
                if claims
                else None,
                "total_claim_amount": sum((c["claim_amount"] for c in claims), ZERO),
                "total_allowed_amount": sum((c["allowed_amount"] for c in claims), ZERO),
            }
        )

    logger.info("Built %d fact rows", len(facts))
    return {"facts": facts, "fact_count": len(facts)}


def build_bridges(context: dict[str, Any]) -> dict[str, Any]:
    """Resolve the many-to-many coded relationships onto surrogate keys."""
    source = context["source"]
    keys = context["keys"]

    diagnosis_bridge = sorted(
        {
            (keys["encounter"][row["encounter_id"]], keys["diagnosis"][row["diagnosis_id"]])
            for row in source["encounter_diagnoses"]
        }
    )
    procedure_bridge = sorted(
        {
            (keys["encounter"][row["encounter_id"]], keys["procedure"][row["procedure_id"]])
            for row in source["encounter_procedures"]
        }
    )

    logger.info(
        "Built bridges: %d diagnosis links, %d procedure links",
        len(diagnosis_bridge),
        len(procedure_bridge),
    )
    return {
        "bridges": {
            "bridge_encounter_diagnoses": [
                {"encounter_key": e, "diagnosis_key": d} for e, d in diagnosis_bridge
            ],
            "bridge_encounter_procedures": [
                {"encounter_key": e, "procedure_key": p} for e, p in procedure_bridge
            ],
        }
    }


def load(context: dict[str, Any]) -> dict[str, Any]:
    """
    Load step – replace every star row inside a single transaction.

    The transaction is left open for the verify step, which commits it
    only once the new rows pass verification. Readers of the target never
    observe a half-built or unverified schema.
    """
    target: DimensionalStore = context["target"]
    tables = {
        **context["dimensions"],
        "fact_encounters": context["facts"],
        **context["bridges"],
    }

    counts: dict[str, int] = {}
    session = target.session()
    try:
        session.begin()
        for model in reversed(STAR_TABLES):
            session.execute(delete(model))
        for model in STAR_TABLES:
            rows = tables[model.__tablename__]
            if rows:
                session.execute(insert(model), rows)
            counts[f"{model.__tablename__}_count"] = len(rows)
    except Exception:
        session.rollback()
        session.close()
        raise

    logger.info("Load phase: %d star rows staged", sum(counts.values()))
    return {
        "load_counts": counts,
        "output_row_count": sum(counts.values()),
        "load_session": session,
    }


def verify_invariants(context: dict[str, Any]) -> dict[str, Any]:
    """Verify step – check the staged rows, then commit or roll back the load."""
    session = context["load_session"]
    try:
        if context.get("verify", True):
            context["target"].verify(context["entity_store"], session=session)
        else:
            logger.info("Invariant verification disabled")
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
    return {"verified": context.get("verify", True)}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _referenced_dates(source: dict[str, list[dict[str, Any]]]) -> list[date]:
    dates = [row["encounter_date"] for row in source["encounters"]]
    dates.extend(row["discharge_date"] for row in source["encounters"] if row["discharge_date"])
    dates.extend(row["claim_date"] for row in source["billing"])
    return dates


def build_date_dimension(dates: list[date]) -> list[dict[str, Any]]:
    """
    One row per calendar day from the earliest to the latest date.

    Keys are proleptic Gregorian ordinals, so key arithmetic is calendar
    day arithmetic.
    """
    if not dates:
        return []
    first, last = min(dates), max(dates)
    rows = []
    for offset in range((last - first).days + 1):
        day = first + timedelta(days=offset)
        rows.append(
            {
                "date_key": day.toordinal(),
                "full_date": day,
                "year": day.year,
                "quarter": (day.month - 1) // 3 + 1,
                "month": day.month,
                "year_month": f"{day.year:04d}-{day.month:02d}",
            }
        )
    return rows


# ---------------------------------------------------------------------------
# Pipeline factory
# ---------------------------------------------------------------------------


def build_materialization_pipeline() -> DAG:
    """Construct the full star-schema materialization DAG."""
    dag = DAG(PIPELINE_NAME)
    dag.add_task("extract", extract)
    dag.add_task("check_integrity", check_integrity, depends_on=["extract"])
    dag.add_task("build_dimensions", build_dimensions, depends_on=["check_integrity"])
    dag.add_task("build_facts", build_facts, depends_on=["build_dimensions"])
    dag.add_task("build_bridges", build_bridges, depends_on=["build_dimensions"])
    dag.add_task("load", load, depends_on=["build_facts", "build_bridges"])
    dag.add_task("verify", verify_invariants, depends_on=["load"])
    return dag


def materialize(
    entity_store: EntityStore,
    engine: Engine | None = None,
    verify: bool = True,
) -> DimensionalStore:
    """
    Derive a dimensional store from the entity store.

    Without an engine a fresh warehouse is created, leaving any store that
    callers already hold untouched. With an engine, its star rows are
    replaced only if the new rows verify; otherwise they are left as they
    were. The run is recorded in ``etl_runs``; a failed task re-raises its
    original error.
    """
    target = DimensionalStore(
        engine or create_store_engine(settings.WAREHOUSE_DATABASE_URL)
    ).create_schema()

    pipeline = build_materialization_pipeline()
    started_at = datetime.now(timezone.utc)
    summary = pipeline.run(
        initial_context={"entity_store": entity_store, "target": target, "verify": verify}
    )
    target.last_summary = summary

    with target.session() as session, session.begin():
        session.add(
            EtlRun(
                pipeline_name=pipeline.name,
                status=summary["status"],
                started_at=started_at,
                completed_at=datetime.now(timezone.utc),
                input_row_count=pipeline.tasks["extract"].result.get("source_row_count"),
                output_row_count=pipeline.tasks["load"].result.get("output_row_count"),
                task_summary=summary["tasks"],
                dag_definition=pipeline.to_dict(),
            )
        )

    failed = pipeline.first_failure()
    if failed is not None:
        raise failed.exception
    return target
