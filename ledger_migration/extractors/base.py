"""Base source client interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import logging

from ..models.record import SourceRecord, ViewDescriptor

logger = logging.getLogger(__name__)

Page = Tuple[List[SourceRecord], Optional[str]]


@dataclass
class ExtractionResult:
    """Merged, deduplicated record set for one logical table."""
    table_name: str
    records: List[SourceRecord] = field(default_factory=list)
    observed_count: int = 0
    expected_count: Optional[int] = None
    views_queried: List[str] = field(default_factory=list)
    partitions_queried: int = 0
    duplicates_absorbed: int = 0
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)  # Walks that broke off
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def shortfall(self) -> int:
        """Records the expected-count hint says exist but were never observed."""
        if self.expected_count is None:
            return 0
        return max(0, self.expected_count - self.observed_count)

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "table_name": self.table_name,
            "observed_count": self.observed_count,
            "expected_count": self.expected_count,
            "shortfall": self.shortfall,
            "views_queried": self.views_queried,
            "partitions_queried": self.partitions_queried,
            "duplicates_absorbed": self.duplicates_absorbed,
            "warnings": self.warnings,
            "errors": self.errors,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "records": [r.to_dict() for r in self.records],
        }


class BaseSourceClient(ABC):
    """
    Base class for view-based source record stores.

    A source groups records into named tables, each exposed through one or
    more named views. Listing calls are cursor-paginated: a page comes back
    with the cursor for the next page, or None when the walk is complete.
    """

    @abstractmethod
    def list_view(self, table: str, view: Optional[str], cursor: Optional[str] = None) -> Page:
        """
        Fetch one page of a view.

        Args:
            table: Logical table name
            view: View name, or None for the table's default ordering
            cursor: Continuation cursor from the previous page

        Returns:
            Tuple of (records, next cursor or None)
        """
        pass

    @abstractmethod
    def list_filtered(
        self,
        table: str,
        filter_expression: str,
        cursor: Optional[str] = None,
        view: Optional[str] = None
    ) -> Page:
        """Fetch one page of records matching a filter expression, optionally within a view."""
        pass

    @abstractmethod
    def list_views(self, table: str) -> List[ViewDescriptor]:
        """List the views a table exposes."""
        pass

    @abstractmethod
    def get_record(self, table: str, record_id: str) -> SourceRecord:
        """Read a single record."""
        pass
