"""
Normalized (third-normal-form) encounter schema.

This is the source of truth: every dimensional row is derived from
these tables by the materialization pipeline.
"""

from sqlalchemy import (
    Column,
    Date,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import relationship

from dimsim.models.database import OltpBase

INPATIENT = "Inpatient"

MONEY = Numeric(12, 2)


# ---------------------------------------------------------------------------
# Reference data
# ---------------------------------------------------------------------------
class Specialty(OltpBase):
    __tablename__ = "specialties"

    specialty_id = Column(Integer, primary_key=True)
    specialty_name = Column(String(128), nullable=False)

    providers = relationship("Provider", back_populates="specialty")


class Patient(OltpBase):
    __tablename__ = "patients"

    patient_id = Column(Integer, primary_key=True)

    encounters = relationship("Encounter", back_populates="patient")


class Provider(OltpBase):
    __tablename__ = "providers"

    provider_id = Column(Integer, primary_key=True)
    specialty_id = Column(Integer, ForeignKey("specialties.specialty_id"), nullable=False)

    specialty = relationship("Specialty", back_populates="providers")
    encounters = relationship("Encounter", back_populates="provider")


class Diagnosis(OltpBase):
    __tablename__ = "diagnoses"

    diagnosis_id = Column(Integer, primary_key=True)
    icd10_code = Column(String(16), nullable=False, comment="ICD-10-CM code")
    icd10_description = Column(String(255))


class Procedure(OltpBase):
    __tablename__ = "procedures"

    procedure_id = Column(Integer, primary_key=True)
    cpt_code = Column(String(16), nullable=False, comment="CPT / HCPCS code")
    cpt_description = Column(String(255))


# ---------------------------------------------------------------------------
# Encounter and its children
# ---------------------------------------------------------------------------
class Encounter(OltpBase):
    __tablename__ = "encounters"

    encounter_id = Column(Integer, primary_key=True)
    patient_id = Column(Integer, ForeignKey("patients.patient_id"), nullable=False)
    provider_id = Column(Integer, ForeignKey("providers.provider_id"), nullable=False)
    encounter_type = Column(String(32), nullable=False, comment="Inpatient | Outpatient | ...")
    encounter_date = Column(Date, nullable=False)
    discharge_date = Column(Date, nullable=True)

    patient = relationship("Patient", back_populates="encounters")
    provider = relationship("Provider", back_populates="encounters")
    diagnoses = relationship("EncounterDiagnosis", back_populates="encounter")
    procedures = relationship("EncounterProcedure", back_populates="encounter")
    billing = relationship("Billing", back_populates="encounter")

    __table_args__ = (
        Index("ix_encounters_patient", "patient_id"),
        Index("ix_encounters_provider", "provider_id"),
        Index("ix_encounters_date", "encounter_date"),
    )


class EncounterDiagnosis(OltpBase):
    __tablename__ = "encounter_diagnoses"

    encounter_id = Column(Integer, ForeignKey("encounters.encounter_id"), primary_key=True)
    diagnosis_id = Column(Integer, ForeignKey("diagnoses.diagnosis_id"), primary_key=True)

    encounter = relationship("Encounter", back_populates="diagnoses")
    diagnosis = relationship("Diagnosis")


class EncounterProcedure(OltpBase):
    __tablename__ = "encounter_procedures"

    encounter_id = Column(Integer, ForeignKey("encounters.encounter_id"), primary_key=True)
    procedure_id = Column(Integer, ForeignKey("procedures.procedure_id"), primary_key=True)

    encounter = relationship("Encounter", back_populates="procedures")
    procedure = relationship("Procedure")


class Billing(OltpBase):
    __tablename__ = "billing"

    billing_id = Column(Integer, primary_key=True)
    encounter_id = Column(Integer, ForeignKey("encounters.encounter_id"), nullable=False)
    claim_date = Column(Date, nullable=False)
    claim_amount = Column(MONEY, nullable=False)
    allowed_amount = Column(MONEY, nullable=False)

    encounter = relationship("Encounter", back_populates="billing")

    __table_args__ = (Index("ix_billing_encounter", "encounter_id"),)
