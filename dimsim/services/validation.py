"""
JSON Schema validation for bulk-loaded records.

Collects every error across the batch rather than failing on the first one.
"""

import re
from datetime import date
from decimal import Decimal
from typing import Any, Iterable

import jsonschema

ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

FORMAT_CHECKER = jsonschema.FormatChecker()


@FORMAT_CHECKER.checks("iso-date", raises=ValueError)
def is_iso_date(instance: Any) -> bool:
    """YYYY-MM-DD naming a real calendar day."""
    if not isinstance(instance, str):
        return True
    if not ISO_DATE.match(instance):
        return False
    date.fromisoformat(instance)
    return True


@FORMAT_CHECKER.checks("cents")
def is_cents(instance: Any) -> bool:
    """Numbers carry at most two decimal places."""
    if isinstance(instance, bool) or not isinstance(instance, (int, float)):
        return True
    value = Decimal(str(instance))
    return value.is_finite() and value.as_tuple().exponent >= -2


def validate_against_schema(data: dict[str, Any], schema: dict[str, Any]) -> list[str]:
    """
    Validate a dict against a JSON schema.
    Returns a list of error messages (empty list = valid).
    """
    validator = jsonschema.Draft7Validator(schema, format_checker=FORMAT_CHECKER)
    return [error.message for error in validator.iter_errors(data)]


def validate_records(
    entity: str, records: Iterable[dict[str, Any]], schema: dict[str, Any]
) -> list[str]:
    """Validate a batch, prefixing each message with the entity and row position."""
    validator = jsonschema.Draft7Validator(schema, format_checker=FORMAT_CHECKER)
    errors: list[str] = []
    for index, record in enumerate(records):
        for error in validator.iter_errors(record):
            errors.append(f"{entity}[{index}]: {error.message}")
    return errors


def check_discharge_order(records: Iterable[dict[str, Any]]) -> list[str]:
    """An encounter cannot be discharged before it starts."""
    errors = []
    for index, record in enumerate(records):
        discharged = record.get("discharge_date")
        if discharged is not None and discharged < record["encounter_date"]:
            errors.append(
                f"encounters[{index}]: discharge_date {discharged} "
                f"precedes encounter_date {record['encounter_date']}"
            )
    return errors
