"""Typed failures raised by the stores, the ETL and the query engine."""

from __future__ import annotations

from typing import Any


class DimsimError(Exception):
    """Base class for every error raised by dimsim."""


class NotFound(DimsimError, LookupError):
    """A primary-key lookup matched no row."""

    def __init__(self, entity: str, key: Any):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} {key!r} not found")


class ReferentialIntegrityError(NotFound):
    """One or more foreign keys point at rows that do not exist."""

    def __init__(self, violations: list[str]):
        self.violations = violations
        DimsimError.__init__(
            self,
            f"{len(violations)} referential integrity violation(s): "
            + "; ".join(violations[:10]),
        )
        self.entity = "reference"
        self.key = None


class RecordValidationError(DimsimError, ValueError):
    """Bulk-loaded records failed schema validation or key uniqueness."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(
            f"{len(errors)} invalid record(s): " + "; ".join(errors[:10])
        )


class MaterializationInvariantViolation(DimsimError):
    """A dimensional row disagrees with a recomputation from normalized rows."""

    def __init__(self, mismatches: list[str]):
        self.mismatches = mismatches
        super().__init__(
            f"{len(mismatches)} materialization invariant violation(s): "
            + "; ".join(mismatches[:10])
        )


class ZeroDischargeError(DimsimError, ZeroDivisionError):
    """Readmission rate requested for a specialty with no discharges."""

    def __init__(self, specialty_name: str):
        self.specialty_name = specialty_name
        super().__init__(f"Specialty '{specialty_name}' has no inpatient discharges")


class UnknownQueryError(NotFound):
    def __init__(self, name: str):
        super().__init__("query", name)
