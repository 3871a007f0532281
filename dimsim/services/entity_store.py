"""
Entity store – the normalized source of truth.

Holds patients, providers, specialties, encounters and their coded and
billing children in the OLTP schema. Records arrive once, in bulk, as a
mapping from entity type to its ordered collection of records.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import func, insert, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from dimsim.config import settings
from dimsim.errors import NotFound, RecordValidationError, ReferentialIntegrityError
from dimsim.models.database import OltpBase, create_store_engine
from dimsim.models.oltp import (
    Billing,
    Diagnosis,
    Encounter,
    EncounterDiagnosis,
    EncounterProcedure,
    Patient,
    Procedure,
    Provider,
    Specialty,
)
from dimsim.schemas.entities import ENTITY_SCHEMAS
from dimsim.services.validation import check_discharge_order, validate_records

logger = logging.getLogger(__name__)

# Entity types in dependency (insert) order.
ENTITIES: dict[str, type[OltpBase]] = {
    "specialties": Specialty,
    "patients": Patient,
    "providers": Provider,
    "diagnoses": Diagnosis,
    "procedures": Procedure,
    "encounters": Encounter,
    "encounter_diagnoses": EncounterDiagnosis,
    "encounter_procedures": EncounterProcedure,
    "billing": Billing,
}

# child entity -> [(foreign key column, parent entity)]
FOREIGN_KEYS: dict[str, list[tuple[str, str]]] = {
    "providers": [("specialty_id", "specialties")],
    "encounters": [("patient_id", "patients"), ("provider_id", "providers")],
    "encounter_diagnoses": [("encounter_id", "encounters"), ("diagnosis_id", "diagnoses")],
    "encounter_procedures": [("encounter_id", "encounters"), ("procedure_id", "procedures")],
    "billing": [("encounter_id", "encounters")],
}

_DATE_FIELDS = ("encounter_date", "discharge_date", "claim_date")
_AMOUNT_FIELDS = ("claim_amount", "allowed_amount")


def resolve_entity(entity: str | type[OltpBase]) -> tuple[str, type[OltpBase]]:
    """Accept either an entity type name or a model class."""
    if isinstance(entity, str):
        if entity not in ENTITIES:
            raise NotFound("entity type", entity)
        return entity, ENTITIES[entity]
    for name, model in ENTITIES.items():
        if model is entity:
            return name, model
    raise NotFound("entity type", entity)


def primary_key_names(model: type[OltpBase]) -> tuple[str, ...]:
    return tuple(column.name for column in model.__table__.primary_key.columns)


def _key_of(record: Mapping[str, Any], names: tuple[str, ...]) -> Any:
    if len(names) == 1:
        return record[names[0]]
    return tuple(record[name] for name in names)


def _coerce(model: type[OltpBase], record: Mapping[str, Any]) -> dict[str, Any]:
    """Convert validated JSON values into column types; absent columns become NULL."""
    row = {column.name: record.get(column.name) for column in model.__table__.columns}
    for name in _DATE_FIELDS:
        if row.get(name) is not None:
            row[name] = date.fromisoformat(row[name])
    for name in _AMOUNT_FIELDS:
        if name in row:
            row[name] = Decimal(str(row[name])).quantize(Decimal("0.01"))
    return row


class EntityStore:
    """Normalized encounter data backed by an SQLAlchemy engine."""

    def __init__(self, engine: Engine | None = None):
        self.engine = engine or create_store_engine(settings.OLTP_DATABASE_URL)
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_schema(self) -> EntityStore:
        OltpBase.metadata.create_all(bind=self.engine)
        return self

    def session(self) -> Session:
        return self._sessions()

    # ------------------------------------------------------------------
    # Bulk load
    # ------------------------------------------------------------------

    def load(self, records: Mapping[str, Sequence[dict[str, Any]]]) -> dict[str, int]:
        """
        Validate and insert a batch of records in one transaction.

        Every problem in the batch is reported at once: schema errors,
        discharges before admission and duplicate keys raise
        RecordValidationError, dangling foreign keys
        raise ReferentialIntegrityError. Nothing is written unless the
        whole batch is clean.
        """
        unknown = sorted(set(records) - set(ENTITIES))
        if unknown:
            raise RecordValidationError([f"unknown entity type '{name}'" for name in unknown])

        errors: list[str] = []
        for name, batch in records.items():
            errors.extend(validate_records(name, batch, ENTITY_SCHEMAS[name]))
        if errors:
            raise RecordValidationError(errors)
        errors.extend(check_discharge_order(records.get("encounters") or []))

        counts: dict[str, int] = {}
        with self.session() as session, session.begin():
            keys = self._existing_keys(session, records)
            errors.extend(self._register_batch_keys(records, keys))
            if errors:
                raise RecordValidationError(errors)

            violations = self._check_references(records, keys)
            if violations:
                raise ReferentialIntegrityError(violations)

            for name, model in ENTITIES.items():
                batch = records.get(name) or []
                if batch:
                    session.execute(insert(model), [_coerce(model, r) for r in batch])
                counts[name] = len(batch)

        logger.info(
            "Loaded %d records across %d entity types",
            sum(counts.values()),
            sum(1 for c in counts.values() if c),
        )
        return counts

    def _existing_keys(
        self, session: Session, records: Mapping[str, Sequence[dict[str, Any]]]
    ) -> dict[str, set[Any]]:
        """Primary keys already stored for every entity the batch touches."""
        needed = set(records)
        for name in records:
            needed.update(parent for _, parent in FOREIGN_KEYS.get(name, []))

        keys: dict[str, set[Any]] = {}
        for name in needed:
            model = ENTITIES[name]
            names = primary_key_names(model)
            columns = [model.__table__.c[n] for n in names]
            result = session.execute(select(*columns))
            keys[name] = {row[0] if len(names) == 1 else tuple(row) for row in result}
        return keys

    @staticmethod
    def _register_batch_keys(
        records: Mapping[str, Sequence[dict[str, Any]]], keys: dict[str, set[Any]]
    ) -> list[str]:
        errors = []
        for name, batch in records.items():
            names = primary_key_names(ENTITIES[name])
            for index, record in enumerate(batch):
                key = _key_of(record, names)
                if key in keys[name]:
                    errors.append(f"{name}[{index}]: duplicate primary key {key!r}")
                keys[name].add(key)
        return errors

    @staticmethod
    def _check_references(
        records: Mapping[str, Sequence[dict[str, Any]]], keys: dict[str, set[Any]]
    ) -> list[str]:
        violations = []
        for name, batch in records.items():
            for column, parent in FOREIGN_KEYS.get(name, []):
                for index, record in enumerate(batch):
                    if record[column] not in keys[parent]:
                        violations.append(
                            f"{name}[{index}].{column}={record[column]} has no matching {parent} row"
                        )
        return violations

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, entity: str | type[OltpBase], key: Any) -> OltpBase:
        """Primary-key lookup. Composite keys are passed as tuples."""
        name, model = resolve_entity(entity)
        with self.session() as session:
            row = session.get(model, key)
        if row is None:
            raise NotFound(name, key)
        return row

    def children(self, entity: str | type[OltpBase], **foreign_keys: Any) -> list[OltpBase]:
        """
        Foreign-key lookup, e.g. ``children("encounters", patient_id=7)``.

        Raises NotFound when the referenced parent row does not exist; a
        parent without children returns an empty list.
        """
        name, model = resolve_entity(entity)
        parents = dict(FOREIGN_KEYS.get(name, []))
        for column, value in foreign_keys.items():
            if column not in parents:
                raise NotFound(f"{name} foreign key", column)
            self.get(parents[column], value)

        statement = select(model).filter_by(**foreign_keys).order_by(
            *(model.__table__.c[n] for n in primary_key_names(model))
        )
        with self.session() as session:
            return list(session.execute(statement).scalars())

    def encounters_for_patient(self, patient_id: int) -> list[Encounter]:
        return self.children("encounters", patient_id=patient_id)

    def billing_for_encounter(self, encounter_id: int) -> list[Billing]:
        return self.children("billing", encounter_id=encounter_id)

    def rows(self, entity: str | type[OltpBase]) -> list[dict[str, Any]]:
        """All rows of one entity type as plain dicts, ordered by primary key."""
        _, model = resolve_entity(entity)
        table = model.__table__
        statement = select(table).order_by(*(table.c[n] for n in primary_key_names(model)))
        with self.session() as session:
            return [dict(row) for row in session.execute(statement).mappings()]

    def snapshot(self) -> dict[str, list[dict[str, Any]]]:
        return {name: self.rows(name) for name in ENTITIES}

    def row_counts(self) -> dict[str, int]:
        counts = {}
        with self.session() as session:
            for name, model in ENTITIES.items():
                counts[name] = session.scalar(select(func.count()).select_from(model)) or 0
        return counts


def group_by_key(rows: Iterable[dict[str, Any]], key: str) -> dict[Any, list[dict[str, Any]]]:
    grouped: dict[Any, list[dict[str, Any]]] = defaultdict(list)
    for row in rows:
        grouped[row[key]].append(row)
    return grouped
