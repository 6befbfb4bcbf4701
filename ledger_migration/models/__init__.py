"""Data models for the migration pipeline."""

from .schema import (
    EntityType,
    EntitySchema,
    ENTITY_SCHEMAS,
    TransformType,
    FieldMapping,
    RelationMapping,
    AttachmentMapping,
    StageDefinition,
    LinkDefinition,
)
from .migration import (
    RunStatus,
    SourceConfig,
    DestinationConfig,
    StorageConfig,
    MigrationConfig,
)
from .record import (
    RawRecord,
    ViewDescriptor,
    AttachmentDescriptor,
    SourceRecord,
    MatchCandidate,
)
from .report import (
    OutcomeStatus,
    MigrationOutcome,
    StageReport,
    MigrationReport,
)

__all__ = [
    "EntityType",
    "EntitySchema",
    "ENTITY_SCHEMAS",
    "TransformType",
    "FieldMapping",
    "RelationMapping",
    "AttachmentMapping",
    "StageDefinition",
    "LinkDefinition",
    "RunStatus",
    "SourceConfig",
    "DestinationConfig",
    "StorageConfig",
    "MigrationConfig",
    "RawRecord",
    "ViewDescriptor",
    "AttachmentDescriptor",
    "SourceRecord",
    "MatchCandidate",
    "OutcomeStatus",
    "MigrationOutcome",
    "StageReport",
    "MigrationReport",
]
