"""
entity_writer.py
--------------------
Idempotent create-or-skip writes keyed by the source record id.

Every write starts with an existence check on the external-id column; a
row that is already there is never modified. The unique constraint on
that column settles races: a violation on insert is re-queried and
reported as ``SkippedExisting`` when the row is found.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from ..exceptions import (
    DependencyMissing,
    DestinationError,
    DestinationUniqueViolation,
    describe_error,
)
from ..loaders.destination import DestinationStore
from ..models.record import MatchCandidate
from ..models.report import MigrationOutcome
from ..models.schema import ENTITY_SCHEMAS, EntitySchema, EntityType
from ..services.validator import RecordValidator

logger = logging.getLogger(__name__)


@dataclass
class RelationRef:
    """Linked source ids to be resolved into a foreign-key column."""
    target_column: str
    target_entity: EntityType
    external_ids: List[str] = field(default_factory=list)
    many: bool = False
    required: bool = False


class EntityWriter:
    """Writes destination entities with existence-check-then-insert."""

    def __init__(
        self,
        store: DestinationStore,
        schemas: Optional[Dict[EntityType, EntitySchema]] = None,
        validator: Optional[RecordValidator] = None
    ):
        self.store = store
        self.schemas = schemas or ENTITY_SCHEMAS
        self.validator = validator or RecordValidator()
        # (entity, external id) -> [lock, holders]; entries go away with their last holder
        self._locks: Dict[Tuple[str, str], List[Any]] = {}
        self._locks_guard = threading.Lock()

    def schema(self, entity_type: EntityType) -> EntitySchema:
        return self.schemas[entity_type]

    @contextmanager
    def _locked(self, entity_type: EntityType, external_id: str) -> Iterator[None]:
        """Serialize check-then-write for one external id."""
        key = (entity_type.value, external_id)
        with self._locks_guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1

        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def find_existing(
        self,
        entity_type: EntityType,
        external_id: str,
        columns: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """Row already carrying this external id, if any."""
        schema = self.schema(entity_type)
        return self.store.find_one(
            schema.table,
            {schema.external_id_column: external_id},
            columns or schema.primary_key,
        )

    def resolve_ids(self, entity_type: EntityType, external_ids: Iterable[str]) -> Dict[str, str]:
        """Map external ids to destination primary keys for rows that exist."""
        wanted = list(dict.fromkeys(external_ids))
        if not wanted:
            return {}

        schema = self.schema(entity_type)
        rows = self.store.find_many(
            schema.table,
            {schema.external_id_column: wanted},
            f"{schema.primary_key},{schema.external_id_column}",
        )
        return {row[schema.external_id_column]: str(row[schema.primary_key]) for row in rows}

    def resolve_relations(self, relations: Iterable[RelationRef]) -> Dict[str, Any]:
        """
        Resolve linked source ids into foreign-key values.

        Raises:
            DependencyMissing: a linked record has not been migrated, or a
                required relation has no linked record at all
        """
        resolved: Dict[str, Any] = {}

        for ref in relations:
            if not ref.external_ids:
                if ref.required:
                    raise DependencyMissing(f"{ref.target_column}: no linked {ref.target_entity.value}")
                continue

            ids = self.resolve_ids(ref.target_entity, ref.external_ids)
            missing = [x for x in ref.external_ids if x not in ids]
            if missing:
                raise DependencyMissing(
                    f"{ref.target_column}: {ref.target_entity.value} {', '.join(missing)} not migrated"
                )

            if ref.many:
                resolved[ref.target_column] = list(dict.fromkeys(ids[x] for x in ref.external_ids))
            else:
                resolved[ref.target_column] = ids[ref.external_ids[0]]

        return resolved

    def upsert(
        self,
        entity_type: EntityType,
        external_id: str,
        attributes: Dict[str, Any],
        relations: Optional[List[RelationRef]] = None
    ) -> MigrationOutcome:
        """
        Create the entity unless a row with this external id exists.

        Returns:
            Created, SkippedExisting, or Failed with the error class in the reason
        """
        schema = self.schema(entity_type)
        name = entity_type.value

        with self._locked(entity_type, external_id):
            try:
                existing = self.find_existing(entity_type, external_id)
                if existing:
                    return MigrationOutcome.skipped_existing(name, external_id, str(existing[schema.primary_key]))

                row = dict(attributes)
                row.update(self.resolve_relations(relations or []))
                row[schema.external_id_column] = external_id
                self.validator.check(row, schema)

                try:
                    destination_id = self.store.insert(schema.table, row)
                except DestinationUniqueViolation:
                    existing = self.find_existing(entity_type, external_id)
                    if existing:
                        logger.info(f"{name} {external_id} was created concurrently; skipping")
                        return MigrationOutcome.skipped_existing(name, external_id, str(existing[schema.primary_key]))
                    raise

                logger.debug(f"Created {name} {external_id} -> {destination_id}")
                return MigrationOutcome.created(name, external_id, destination_id)

            except DestinationError as e:
                logger.warning(f"Failed to write {name} {external_id}: {describe_error(e)}")
                return MigrationOutcome.failed(name, external_id, describe_error(e))

    def load_candidates(self, entity_type: EntityType) -> List[MatchCandidate]:
        """Legacy rows (no external id yet) as match candidates."""
        schema = self.schema(entity_type)
        rows = self.store.find_many(
            schema.table,
            {schema.external_id_column: None},
            f"{schema.primary_key},{schema.display_name_column}",
        )
        return [
            MatchCandidate(str(row[schema.primary_key]), row.get(schema.display_name_column) or "")
            for row in rows
        ]

    def claim(self, entity_type: EntityType, destination_id: str, external_id: str) -> MigrationOutcome:
        """Back-fill the external id on a legacy row matched by name."""
        schema = self.schema(entity_type)
        name = entity_type.value

        with self._locked(entity_type, external_id):
            try:
                existing = self.find_existing(entity_type, external_id)
                if existing:
                    return MigrationOutcome.skipped_existing(name, external_id, str(existing[schema.primary_key]))
                self.store.update(schema.table, destination_id, {schema.external_id_column: external_id})
                return MigrationOutcome.skipped_existing(name, external_id, destination_id)
            except DestinationError as e:
                logger.warning(f"Failed to link {name} {external_id}: {describe_error(e)}")
                return MigrationOutcome.failed(name, external_id, describe_error(e))

    def update(self, entity_type: EntityType, destination_id: str, attributes: Dict[str, Any]) -> None:
        """Write attributes onto an existing row (attachment URLs, relation links)."""
        self.store.update(self.schema(entity_type).table, destination_id, attributes)
