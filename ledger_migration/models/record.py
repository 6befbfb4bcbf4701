"""Record models for source data and reconciliation."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class RawRecord(BaseModel):
    """A record as returned on the wire by the source API."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    fields: Dict[str, Any] = Field(default_factory=dict)
    created_time: Optional[str] = Field(default=None, alias="createdTime")


class ViewDescriptor(BaseModel):
    """A named view exposed by a source table."""
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    type: Optional[str] = None


class AttachmentDescriptor(BaseModel):
    """
    A binary attachment embedded in a source record field.

    Parsed from the source attachment object, e.g.
    ``{"url": ..., "filename": ..., "size": 1024, "type": "image/jpeg"}``.
    """
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    url: str
    filename: str = ""
    byte_size: Optional[int] = Field(default=None, alias="size")
    content_type: Optional[str] = Field(default=None, alias="type")
    width: Optional[int] = None
    height: Optional[int] = None

    @property
    def extension(self) -> str:
        """Lower-cased file extension including the dot, or ''."""
        name = self.filename.rsplit("/", 1)[-1]
        if "." not in name:
            return ""
        return "." + name.rsplit(".", 1)[-1].lower()


@dataclass
class SourceRecord:
    """An immutable snapshot of a record read from the source system."""
    external_id: str
    table_name: str
    fields: Dict[str, Any] = field(default_factory=dict)
    created_time: Optional[str] = None
    fetched_from: Optional[str] = None  # view name or filter expression
    fetched_at: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def from_raw(
        cls,
        raw: RawRecord,
        table_name: str,
        fetched_from: Optional[str] = None
    ) -> "SourceRecord":
        """Create from a wire record."""
        return cls(
            external_id=raw.id,
            table_name=table_name,
            fields=dict(raw.fields),
            created_time=raw.created_time,
            fetched_from=fetched_from,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "external_id": self.external_id,
            "table_name": self.table_name,
            "fields": self.fields,
            "created_time": self.created_time,
            "fetched_from": self.fetched_from,
            "fetched_at": self.fetched_at.isoformat(),
        }

    def get_field(self, path: str, default: Any = None) -> Any:
        """Get a field value by dot-notation path (e.g., 'Location.name')."""
        # Source field names may contain dots and spaces; try the literal name first
        if path in self.fields:
            direct = self.fields[path]
            return default if direct is None else direct

        value: Any = self.fields
        for part in path.split("."):
            if isinstance(value, dict):
                value = value.get(part)
            elif isinstance(value, list) and part.isdigit():
                idx = int(part)
                value = value[idx] if idx < len(value) else None
            else:
                return default
            if value is None:
                return default
        return value

    def linked_ids(self, field_name: str) -> List[str]:
        """Return the linked record IDs held in a link field."""
        value = self.fields.get(field_name)
        if value is None or value == "":
            return []
        if isinstance(value, str):
            return [value]
        return [str(v) for v in value if v]

    def attachments(self, field_name: str) -> List[AttachmentDescriptor]:
        """
        Parse the attachment descriptors carried by a field.

        Entries without a usable URL are ignored.
        """
        value = self.fields.get(field_name)
        if not value:
            return []
        if isinstance(value, dict):
            value = [value]

        descriptors = []
        for item in value:
            if not isinstance(item, dict):
                continue
            try:
                descriptors.append(AttachmentDescriptor.model_validate(item))
            except ValidationError:
                continue
        return descriptors


@dataclass(frozen=True)
class MatchCandidate:
    """Minimal projection of an existing destination row used for matching."""
    destination_id: str
    display_name: str
