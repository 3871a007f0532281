"""
Star schema for encounter analytics.

One fact table at encounter grain, radial dimensions keyed by integer
surrogate keys, and bridge tables for the many-to-many diagnosis and
procedure relationships. Billing is pre-aggregated onto the fact.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    select,
)

from dimsim.models.database import WarehouseBase

MONEY = Numeric(12, 2)


# ---------------------------------------------------------------------------
# Dimensions
# ---------------------------------------------------------------------------
class DimDate(WarehouseBase):
    __tablename__ = "dim_date"

    date_key = Column(Integer, primary_key=True, autoincrement=False, comment="date.toordinal()")
    full_date = Column(Date, nullable=False, unique=True)
    year = Column(Integer, nullable=False)
    quarter = Column(Integer, nullable=False)
    month = Column(Integer, nullable=False)
    year_month = Column(String(7), nullable=False, comment="YYYY-MM")

    __table_args__ = (Index("ix_dim_date_year_month", "year_month"),)


class DimPatient(WarehouseBase):
    __tablename__ = "dim_patient"

    patient_key = Column(Integer, primary_key=True, autoincrement=False)
    patient_id = Column(Integer, nullable=False, unique=True)


class DimProvider(WarehouseBase):
    __tablename__ = "dim_provider"

    provider_key = Column(Integer, primary_key=True, autoincrement=False)
    provider_id = Column(Integer, nullable=False)
    specialty_id = Column(Integer, nullable=False)
    specialty_name = Column(String(128), nullable=False, comment="Denormalized from specialties")
    current_flag = Column(Boolean, nullable=False, default=True)

    __table_args__ = (Index("ix_dim_provider_current", "provider_id", "current_flag"),)


class DimEncounterType(WarehouseBase):
    __tablename__ = "dim_encounter_type"

    encounter_type_key = Column(Integer, primary_key=True, autoincrement=False)
    encounter_type_name = Column(String(32), nullable=False, unique=True)


class DimDiagnosis(WarehouseBase):
    __tablename__ = "dim_diagnosis"

    diagnosis_key = Column(Integer, primary_key=True, autoincrement=False)
    diagnosis_id = Column(Integer, nullable=False, unique=True)
    icd10_code = Column(String(16), nullable=False)
    icd10_description = Column(String(255))


class DimProcedure(WarehouseBase):
    __tablename__ = "dim_procedure"

    procedure_key = Column(Integer, primary_key=True, autoincrement=False)
    procedure_id = Column(Integer, nullable=False, unique=True)
    cpt_code = Column(String(16), nullable=False)
    cpt_description = Column(String(255))


# ---------------------------------------------------------------------------
# Fact – one row per encounter
# ---------------------------------------------------------------------------
class FactEncounter(WarehouseBase):
    __tablename__ = "fact_encounters"

    encounter_key = Column(Integer, primary_key=True, autoincrement=False)
    encounter_id = Column(Integer, nullable=False, unique=True, comment="OLTP business key")
    encounter_date_key = Column(Integer, ForeignKey("dim_date.date_key"), nullable=False)
    provider_key = Column(Integer, ForeignKey("dim_provider.provider_key"), nullable=False)
    encounter_type_key = Column(
        Integer, ForeignKey("dim_encounter_type.encounter_type_key"), nullable=False
    )
    patient_key = Column(Integer, ForeignKey("dim_patient.patient_key"), nullable=False)

    is_admitted = Column(Boolean, nullable=False)
    discharge_date_key = Column(Integer, ForeignKey("dim_date.date_key"), nullable=True)
    length_of_stay_days = Column(Integer, nullable=True)

    has_diagnoses = Column(Boolean, nullable=False)
    has_procedures = Column(Boolean, nullable=False)
    diagnosis_count = Column(Integer, nullable=False)
    procedure_count = Column(Integer, nullable=False)

    # Billing rolled up from the billing child rows
    has_billing = Column(Boolean, nullable=False)
    claim_count = Column(Integer, nullable=False)
    billing_date_key = Column(
        Integer, ForeignKey("dim_date.date_key"), nullable=True, comment="Earliest claim date"
    )
    total_claim_amount = Column(MONEY, nullable=False)
    total_allowed_amount = Column(MONEY, nullable=False)

    __table_args__ = (
        Index("ix_fact_date", "encounter_date_key"),
        Index("ix_fact_provider", "provider_key"),
        Index(
            "ix_fact_readmission",
            "patient_key",
            "is_admitted",
            "discharge_date_key",
            "encounter_date_key",
        ),
    )


# ---------------------------------------------------------------------------
# Bridges – many-to-many between encounters and coded dimensions
# ---------------------------------------------------------------------------
class BridgeEncounterDiagnosis(WarehouseBase):
    __tablename__ = "bridge_encounter_diagnoses"

    encounter_key = Column(
        Integer, ForeignKey("fact_encounters.encounter_key"), primary_key=True
    )
    diagnosis_key = Column(Integer, ForeignKey("dim_diagnosis.diagnosis_key"), primary_key=True)

    __table_args__ = (
        UniqueConstraint("encounter_key", "diagnosis_key", name="uq_bridge_encounter_diagnosis"),
    )


class BridgeEncounterProcedure(WarehouseBase):
    __tablename__ = "bridge_encounter_procedures"

    encounter_key = Column(
        Integer, ForeignKey("fact_encounters.encounter_key"), primary_key=True
    )
    procedure_key = Column(Integer, ForeignKey("dim_procedure.procedure_key"), primary_key=True)

    __table_args__ = (
        UniqueConstraint("encounter_key", "procedure_key", name="uq_bridge_encounter_procedure"),
    )


# ---------------------------------------------------------------------------
# ETL run – tracks materialization history
# ---------------------------------------------------------------------------
class EtlRun(WarehouseBase):
    __tablename__ = "etl_runs"

    run_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    pipeline_name = Column(String(128), nullable=False)
    status = Column(String(16), nullable=False, default="pending", comment="completed | failed")
    started_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    completed_at = Column(DateTime, nullable=True)
    input_row_count = Column(Integer)
    output_row_count = Column(Integer)
    task_summary = Column(JSON, comment="Per-task status, duration and error")
    dag_definition = Column(JSON, comment="Snapshot of the DAG that was executed")


# Dimension, fact and bridge tables in insert order.
STAR_TABLES = (
    DimDate,
    DimPatient,
    DimProvider,
    DimEncounterType,
    DimDiagnosis,
    DimProcedure,
    FactEncounter,
    BridgeEncounterDiagnosis,
    BridgeEncounterProcedure,
)


def encounter_detail_view():
    """
    Pre-joined projection of the fact with every dimension.

    Business users query this instead of writing the star joins themselves.
    """
    encounter_date = DimDate.__table__.alias("encounter_date")
    return (
        select(
            FactEncounter.encounter_key,
            FactEncounter.encounter_id,
            encounter_date.c.full_date.label("encounter_date"),
            encounter_date.c.year.label("encounter_year"),
            encounter_date.c.year_month.label("encounter_year_month"),
            DimPatient.patient_id,
            DimProvider.provider_id,
            DimProvider.specialty_name,
            DimEncounterType.encounter_type_name,
            FactEncounter.is_admitted,
            FactEncounter.length_of_stay_days,
            FactEncounter.diagnosis_count,
            FactEncounter.procedure_count,
            FactEncounter.claim_count,
            FactEncounter.total_claim_amount,
            FactEncounter.total_allowed_amount,
        )
        .join(encounter_date, FactEncounter.encounter_date_key == encounter_date.c.date_key)
        .join(DimPatient, FactEncounter.patient_key == DimPatient.patient_key)
        .join(
            DimProvider,
            (FactEncounter.provider_key == DimProvider.provider_key)
            & DimProvider.current_flag.is_(True),
        )
        .join(
            DimEncounterType,
            FactEncounter.encounter_type_key == DimEncounterType.encounter_type_key,
        )
        .subquery("vw_encounter_detail")
    )
