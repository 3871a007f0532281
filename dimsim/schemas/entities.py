"""
JSON schemas for bulk-loaded normalized records.

Each entity type accepted by ``EntityStore.load`` has a schema here. Dates
are YYYY-MM-DD strings naming a real calendar day. Amounts are numbers or
numeric strings with at most two decimal places (strings keep cents exact
when the payload comes from a CSV export). The custom formats are checked
by ``dimsim.services.validation.FORMAT_CHECKER``.
"""

_ID = {"type": "integer", "minimum": 1}
_DATE = {"type": "string", "format": "iso-date"}
_AMOUNT = {
    "oneOf": [
        {"type": "number", "minimum": 0, "format": "cents"},
        {"type": "string", "pattern": "^\\d+(\\.\\d{1,2})?$"},
    ]
}
_CODE = {"type": "string", "minLength": 1, "maxLength": 16}


def _record(title: str, properties: dict, required: list[str]) -> dict:
    return {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "title": title,
        "type": "object",
        "required": required,
        "properties": properties,
        "additionalProperties": False,
    }


SPECIALTY_SCHEMA: dict = _record(
    "Specialty",
    {
        "specialty_id": _ID,
        "specialty_name": {"type": "string", "minLength": 1, "maxLength": 128},
    },
    ["specialty_id", "specialty_name"],
)

PATIENT_SCHEMA: dict = _record("Patient", {"patient_id": _ID}, ["patient_id"])

PROVIDER_SCHEMA: dict = _record(
    "Provider",
    {"provider_id": _ID, "specialty_id": _ID},
    ["provider_id", "specialty_id"],
)

ENCOUNTER_SCHEMA: dict = _record(
    "Encounter",
    {
        "encounter_id": _ID,
        "patient_id": _ID,
        "provider_id": _ID,
        "encounter_type": {
            "type": "string",
            "minLength": 1,
            "maxLength": 32,
            "description": "'Inpatient' marks an admission.",
        },
        "encounter_date": _DATE,
        "discharge_date": {"oneOf": [_DATE, {"type": "null"}]},
    },
    ["encounter_id", "patient_id", "provider_id", "encounter_type", "encounter_date"],
)

DIAGNOSIS_SCHEMA: dict = _record(
    "Diagnosis",
    {
        "diagnosis_id": _ID,
        "icd10_code": _CODE,
        "icd10_description": {"type": ["string", "null"]},
    },
    ["diagnosis_id", "icd10_code"],
)

PROCEDURE_SCHEMA: dict = _record(
    "Procedure",
    {
        "procedure_id": _ID,
        "cpt_code": _CODE,
        "cpt_description": {"type": ["string", "null"]},
    },
    ["procedure_id", "cpt_code"],
)

ENCOUNTER_DIAGNOSIS_SCHEMA: dict = _record(
    "EncounterDiagnosis",
    {"encounter_id": _ID, "diagnosis_id": _ID},
    ["encounter_id", "diagnosis_id"],
)

ENCOUNTER_PROCEDURE_SCHEMA: dict = _record(
    "EncounterProcedure",
    {"encounter_id": _ID, "procedure_id": _ID},
    ["encounter_id", "procedure_id"],
)

BILLING_SCHEMA: dict = _record(
    "Billing",
    {
        "billing_id": _ID,
        "encounter_id": _ID,
        "claim_date": _DATE,
        "claim_amount": _AMOUNT,
        "allowed_amount": _AMOUNT,
    },
    ["billing_id", "encounter_id", "claim_date", "claim_amount", "allowed_amount"],
)


ENTITY_SCHEMAS: dict[str, dict] = {
    "specialties": SPECIALTY_SCHEMA,
    "patients": PATIENT_SCHEMA,
    "providers": PROVIDER_SCHEMA,
    "encounters": ENCOUNTER_SCHEMA,
    "diagnoses": DIAGNOSIS_SCHEMA,
    "procedures": PROCEDURE_SCHEMA,
    "encounter_diagnoses": ENCOUNTER_DIAGNOSIS_SCHEMA,
    "encounter_procedures": ENCOUNTER_PROCEDURE_SCHEMA,
    "billing": BILLING_SCHEMA,
}
