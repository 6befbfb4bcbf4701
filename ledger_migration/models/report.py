"""Per-record outcomes and the reconciliation report."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .migration import RunStatus


class OutcomeStatus(str, Enum):
    """Fate of a single source record."""
    CREATED = "created"
    SKIPPED_EXISTING = "skipped_existing"
    SKIPPED_NO_MATCH = "skipped_no_match"
    FAILED = "failed"


@dataclass
class MigrationOutcome:
    """Result of writing one source record to the destination."""
    entity_type: str
    external_id: str
    status: OutcomeStatus
    destination_id: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def created(cls, entity_type: str, external_id: str, destination_id: str) -> "MigrationOutcome":
        return cls(entity_type, external_id, OutcomeStatus.CREATED, destination_id=destination_id)

    @classmethod
    def skipped_existing(
        cls,
        entity_type: str,
        external_id: str,
        destination_id: Optional[str] = None
    ) -> "MigrationOutcome":
        return cls(entity_type, external_id, OutcomeStatus.SKIPPED_EXISTING, destination_id=destination_id)

    @classmethod
    def skipped_no_match(cls, entity_type: str, external_id: str, reason: str = "") -> "MigrationOutcome":
        return cls(entity_type, external_id, OutcomeStatus.SKIPPED_NO_MATCH, reason=reason or None)

    @classmethod
    def failed(cls, entity_type: str, external_id: str, reason: str) -> "MigrationOutcome":
        return cls(entity_type, external_id, OutcomeStatus.FAILED, reason=reason)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "entity_type": self.entity_type,
            "external_id": self.external_id,
            "status": self.status.value,
            "destination_id": self.destination_id,
            "reason": self.reason,
        }


@dataclass
class StageReport:
    """Outcome tallies for one stage of the run."""
    entity_type: str
    created: int = 0
    skipped_existing: int = 0
    skipped_no_match: int = 0
    linked: int = 0  # Legacy rows claimed by name match
    failed: List[Dict[str, str]] = field(default_factory=list)
    attachment_failures: List[Dict[str, str]] = field(default_factory=list)
    attachments_transferred: int = 0
    source_count: int = 0
    expected_count: Optional[int] = None
    warnings: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def record(self, outcome: MigrationOutcome) -> None:
        """Tally an outcome."""
        if outcome.status == OutcomeStatus.CREATED:
            self.created += 1
        elif outcome.status == OutcomeStatus.SKIPPED_EXISTING:
            self.skipped_existing += 1
        elif outcome.status == OutcomeStatus.SKIPPED_NO_MATCH:
            self.skipped_no_match += 1
        else:
            self.failed.append({
                "externalId": outcome.external_id,
                "reason": outcome.reason or "unknown error",
            })

    def record_attachment_failure(self, external_id: str, reason: str, field_name: Optional[str] = None) -> None:
        failure = {"externalId": external_id, "reason": reason}
        if field_name:
            failure["field"] = field_name
        self.attachment_failures.append(failure)

    @property
    def processed(self) -> int:
        return self.created + self.skipped_existing + self.skipped_no_match + len(self.failed)

    @property
    def shortfall(self) -> int:
        """Records the source is known to hold but the merge never saw."""
        if self.expected_count is None:
            return 0
        return max(0, self.expected_count - self.source_count)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the serialized report shape."""
        return {
            "entityType": self.entity_type,
            "created": self.created,
            "skippedExisting": self.skipped_existing,
            "skippedNoMatch": self.skipped_no_match,
            "failed": list(self.failed),
            "linked": self.linked,
            "attachmentsTransferred": self.attachments_transferred,
            "attachmentFailures": list(self.attachment_failures),
            "sourceCount": self.source_count,
            "expectedCount": self.expected_count,
            "shortfall": self.shortfall,
            "warnings": list(self.warnings),
            "durationSeconds": self.duration_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StageReport":
        """Rebuild from a saved report."""
        return cls(
            entity_type=data["entityType"],
            created=data.get("created", 0),
            skipped_existing=data.get("skippedExisting", 0),
            skipped_no_match=data.get("skippedNoMatch", 0),
            linked=data.get("linked", 0),
            failed=list(data.get("failed", [])),
            attachment_failures=list(data.get("attachmentFailures", [])),
            attachments_transferred=data.get("attachmentsTransferred", 0),
            source_count=data.get("sourceCount", 0),
            expected_count=data.get("expectedCount"),
            warnings=list(data.get("warnings", [])),
        )


@dataclass
class MigrationReport:
    """The durable output of a run: per-stage tallies and every failure."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    status: RunStatus = RunStatus.PENDING
    dry_run: bool = False
    stages: List[StageReport] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def add_stage(self, entity_type: str) -> StageReport:
        """Add a new stage to the report."""
        stage = StageReport(entity_type=entity_type)
        self.stages.append(stage)
        return stage

    def get_stage(self, entity_type: str) -> Optional[StageReport]:
        for stage in self.stages:
            if stage.entity_type == entity_type:
                return stage
        return None

    @property
    def total_created(self) -> int:
        return sum(s.created for s in self.stages)

    @property
    def total_failed(self) -> int:
        return sum(len(s.failed) for s in self.stages)

    @property
    def total_attachment_failures(self) -> int:
        return sum(len(s.attachment_failures) for s in self.stages)

    def exceeds_failure_threshold(self, max_failures: int) -> bool:
        """True when failures indicate more than a few bad records."""
        return self.total_failed > max_failures

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the serialized report shape."""
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "dryRun": self.dry_run,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "stages": [s.to_dict() for s in self.stages],
            "errors": list(self.errors),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationReport":
        """Rebuild a report saved with to_dict()."""
        return cls(
            id=data.get("id", str(uuid.uuid4())),
            name=data.get("name", ""),
            status=RunStatus(data.get("status", RunStatus.COMPLETED.value)),
            dry_run=data.get("dryRun", False),
            stages=[StageReport.from_dict(s) for s in data.get("stages", [])],
            errors=list(data.get("errors", [])),
        )
