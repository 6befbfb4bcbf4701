"""Transformation engine for turning source fields into destination attributes."""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from dateutil import parser as date_parser

from ..models.schema import FieldMapping, TransformType
from ..models.record import SourceRecord

logger = logging.getLogger(__name__)

TRUE_STRINGS = {"true", "1", "yes", "y", "checked", "on"}


@dataclass
class TransformedRecord:
    """Destination attributes derived from one source record."""
    external_id: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


class TransformEngine:
    """
    Engine for transforming source records to destination attributes.

    Supports:
    - Built-in transformation functions
    - Custom transformation functions
    - Literal and dot-notation field access
    """

    def __init__(self):
        """Initialize the transform engine."""
        self._custom_transforms: Dict[str, Callable] = {}
        self._builtin_transforms = self._register_builtin_transforms()

    def _register_builtin_transforms(self) -> Dict[str, Callable]:
        """Register all built-in transformation functions."""
        return {
            TransformType.DIRECT.value: self._transform_direct,
            TransformType.FIRST.value: self._transform_first,
            TransformType.JOIN.value: self._transform_join,
            TransformType.STRIP_TEXT.value: self._transform_strip_text,
            TransformType.TRUNCATE.value: self._transform_truncate,
            TransformType.ENUM_MAP.value: self._transform_enum_map,
            TransformType.ISO_DATETIME.value: self._transform_iso_datetime,
            TransformType.BOOLEAN.value: self._transform_boolean,
            TransformType.INTEGER.value: self._transform_integer,
            TransformType.CONSTANT.value: self._transform_constant,
        }

    def register_transform(self, name: str, func: Callable) -> None:
        """Register a custom transformation function."""
        self._custom_transforms[name] = func

    def transform_record(self, record: SourceRecord, mappings: List[FieldMapping]) -> TransformedRecord:
        """
        Transform a source record into destination attributes.

        Args:
            record: Source record
            mappings: Ordered field mappings for the stage

        Returns:
            TransformedRecord; fields whose transform raised are listed in errors
        """
        result = TransformedRecord(external_id=record.external_id)

        for mapping in mappings:
            transform_name = mapping.transform.value
            transform_func = (
                self._custom_transforms.get(transform_name) or
                self._builtin_transforms.get(transform_name)
            )

            value = record.get_field(mapping.source_field) if mapping.source_field else None

            try:
                transformed = transform_func(value, mapping.transform_config)
            except (TypeError, ValueError) as e:
                result.errors.append(f"{mapping.target_column}: {e}")
                logger.debug(f"Transform error for {record.external_id}.{mapping.target_column}: {e}")
                continue

            if transformed is not None:
                result.attributes[mapping.target_column] = transformed

        return result

    # Built-in transform functions

    @staticmethod
    def _first_value(value: Any) -> Any:
        if isinstance(value, list):
            for item in value:
                if item not in (None, ""):
                    return item
            return None
        return value

    def _transform_direct(self, value: Any, config: Dict) -> Any:
        """Direct copy without transformation."""
        return value

    def _transform_first(self, value: Any, config: Dict) -> Any:
        """First non-empty element of a list (lookup and rollup fields)."""
        return self._first_value(value)

    def _transform_join(self, value: Any, config: Dict) -> Any:
        """Join list elements into one string."""
        if value is None:
            return None
        if not isinstance(value, list):
            return str(value)
        separator = config.get("separator", ", ")
        parts = [str(v) for v in value if v not in (None, "")]
        return separator.join(parts) or None

    def _transform_strip_text(self, value: Any, config: Dict) -> Any:
        """Trim text; values shorter than min_length become None."""
        value = self._first_value(value)
        if value is None:
            return None
        text = str(value).strip()
        if len(text) < config.get("min_length", 1):
            return None
        return text

    def _transform_truncate(self, value: Any, config: Dict) -> Any:
        """Truncate to max length."""
        if value is None:
            return None
        max_length = config.get("max_length", 255)
        return str(value)[:max_length]

    def _transform_enum_map(self, value: Any, config: Dict) -> Any:
        """Map value using a case-insensitive lookup table."""
        value = self._first_value(value)
        if value is None:
            return config.get("default")

        mapping = {str(k).lower(): v for k, v in config.get("mapping", {}).items()}
        return mapping.get(str(value).strip().lower(), config.get("default"))

    def _transform_iso_datetime(self, value: Any, config: Dict) -> Any:
        """Parse a date or datetime string into ISO-8601."""
        value = self._first_value(value)
        if value in (None, ""):
            return None
        try:
            return date_parser.parse(str(value)).isoformat()
        except (ValueError, OverflowError) as e:
            raise ValueError(f"unparseable date {value!r}") from e

    def _transform_boolean(self, value: Any, config: Dict) -> Any:
        """Coerce checkbox-style values to bool."""
        if value is None:
            return config.get("default")
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return value != 0
        return str(value).strip().lower() in TRUE_STRINGS

    def _transform_integer(self, value: Any, config: Dict) -> Any:
        """Coerce to int."""
        value = self._first_value(value)
        if value in (None, ""):
            return None
        if isinstance(value, bool):
            return int(value)
        return int(float(str(value).strip()))

    def _transform_constant(self, value: Any, config: Dict) -> Any:
        """Always return the configured value."""
        return config.get("value")
