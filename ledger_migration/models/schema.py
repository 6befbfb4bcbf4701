"""Schema models for destination entities and per-stage mappings."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class EntityType(str, Enum):
    """Destination entity types, declared in dependency order."""
    STORYTELLER = "storyteller"
    TRANSCRIPT = "transcript"
    MEDIA = "media"
    STORY = "story"
    QUOTE = "quote"
    THEME = "theme"

    @classmethod
    def ordered(cls) -> List["EntityType"]:
        """Entity types in the order they must be migrated."""
        return list(cls)

    @property
    def rank(self) -> int:
        return EntityType.ordered().index(self)


class TransformType(str, Enum):
    """Supported attribute transformations."""
    DIRECT = "direct"
    FIRST = "first"
    JOIN = "join"
    STRIP_TEXT = "strip_text"
    TRUNCATE = "truncate"
    ENUM_MAP = "enum_map"
    ISO_DATETIME = "iso_datetime"
    BOOLEAN = "boolean"
    INTEGER = "integer"
    CONSTANT = "constant"


@dataclass
class EntitySchema:
    """Destination table description for an entity type."""
    entity_type: EntityType
    table: str
    external_id_column: str = "airtable_record_id"
    display_name_column: str = "name"
    primary_key: str = "id"
    required_columns: List[str] = field(default_factory=list)
    max_lengths: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "entity_type": self.entity_type.value,
            "table": self.table,
            "external_id_column": self.external_id_column,
            "display_name_column": self.display_name_column,
            "primary_key": self.primary_key,
            "required_columns": self.required_columns,
            "max_lengths": self.max_lengths,
        }


# Destination schema of the storytelling platform
ENTITY_SCHEMAS: Dict[EntityType, EntitySchema] = {
    EntityType.STORYTELLER: EntitySchema(
        entity_type=EntityType.STORYTELLER,
        table="storytellers",
        display_name_column="full_name",
        required_columns=["full_name"],
        max_lengths={"full_name": 255, "role": 255},
    ),
    EntityType.TRANSCRIPT: EntitySchema(
        entity_type=EntityType.TRANSCRIPT,
        table="transcripts",
        display_name_column="title",
        required_columns=["transcript_content", "storyteller_id"],
    ),
    EntityType.MEDIA: EntitySchema(
        entity_type=EntityType.MEDIA,
        table="media",
        display_name_column="title",
        required_columns=["title"],
        max_lengths={"title": 500},
    ),
    EntityType.STORY: EntitySchema(
        entity_type=EntityType.STORY,
        table="stories",
        display_name_column="title",
        required_columns=["title", "storyteller_id"],
        max_lengths={"title": 500},
    ),
    EntityType.QUOTE: EntitySchema(
        entity_type=EntityType.QUOTE,
        table="quotes",
        display_name_column="quote_text",
        required_columns=["quote_text"],
    ),
    EntityType.THEME: EntitySchema(
        entity_type=EntityType.THEME,
        table="themes",
        display_name_column="name",
        required_columns=["name"],
        max_lengths={"name": 255},
    ),
}


@dataclass
class FieldMapping:
    """Mapping from a source field to a destination column."""
    source_field: Optional[str]  # None for constants
    target_column: str
    transform: TransformType = TransformType.DIRECT
    transform_config: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "source_field": self.source_field,
            "target_column": self.target_column,
            "transform": self.transform.value,
            "transform_config": self.transform_config,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldMapping":
        """Create from dictionary representation."""
        return cls(
            source_field=data.get("source_field"),
            target_column=data["target_column"],
            transform=TransformType(data.get("transform", "direct")),
            transform_config=data.get("transform_config", {}),
        )


@dataclass
class RelationMapping:
    """A source link field resolved to destination primary keys."""
    source_field: str
    target_column: str
    target_entity: EntityType
    many: bool = False
    required: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_field": self.source_field,
            "target_column": self.target_column,
            "target_entity": self.target_entity.value,
            "many": self.many,
            "required": self.required,
        }


@dataclass
class AttachmentMapping:
    """A source attachment field copied into object storage."""
    source_field: str
    target_column: str
    many: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_field": self.source_field,
            "target_column": self.target_column,
            "many": self.many,
        }


@dataclass
class StageDefinition:
    """Everything needed to migrate one source table into one entity type."""
    entity_type: EntityType
    source_table: str
    primary_view: Optional[str] = None
    filter_formula: Optional[str] = None
    field_mappings: List[FieldMapping] = field(default_factory=list)
    relations: List[RelationMapping] = field(default_factory=list)
    attachments: List[AttachmentMapping] = field(default_factory=list)
    display_name_field: str = "Name"
    legacy_linking: bool = False  # Match legacy rows by name, never insert
    claim_legacy: bool = False  # Claim a legacy row by name before inserting
    expected_count: Optional[int] = None
    partition_field: Optional[str] = "CREATED_TIME()"
    enabled: bool = True

    @property
    def name(self) -> str:
        return self.entity_type.value

    def apply_overrides(self, overrides: Dict[str, Any]) -> None:
        """Apply per-stage settings from the migration config."""
        for key in ("primary_view", "filter_formula", "expected_count",
                    "partition_field", "enabled", "legacy_linking", "claim_legacy",
                    "display_name_field", "source_table"):
            if key in overrides:
                setattr(self, key, overrides[key])
        if "field_mappings" in overrides:
            self.field_mappings = [FieldMapping.from_dict(m) for m in overrides["field_mappings"]]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "entity_type": self.entity_type.value,
            "source_table": self.source_table,
            "primary_view": self.primary_view,
            "filter_formula": self.filter_formula,
            "field_mappings": [m.to_dict() for m in self.field_mappings],
            "relations": [r.to_dict() for r in self.relations],
            "attachments": [a.to_dict() for a in self.attachments],
            "display_name_field": self.display_name_field,
            "legacy_linking": self.legacy_linking,
            "claim_legacy": self.claim_legacy,
            "expected_count": self.expected_count,
            "partition_field": self.partition_field,
            "enabled": self.enabled,
        }


@dataclass
class LinkDefinition:
    """A cross-entity relation filled in after every entity stage has run."""
    owner_entity: EntityType
    source_field: str
    target_entity: EntityType
    target_column: str
    many: bool = True

    @property
    def name(self) -> str:
        return f"{self.owner_entity.value}.{self.target_column}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner_entity": self.owner_entity.value,
            "source_field": self.source_field,
            "target_entity": self.target_entity.value,
            "target_column": self.target_column,
            "many": self.many,
        }
