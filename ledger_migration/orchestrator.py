"""Migration orchestrator - runs the dependency-ordered migration stages."""

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

from .exceptions import (
    AttachmentError,
    ConfigurationError,
    DependencyMissing,
    DestinationError,
    DestinationValidationError,
    describe_error,
)
from .extractors.base import BaseSourceClient, ExtractionResult
from .extractors.page_merger import PageMerger
from .extractors.source_client import SourceClient
from .loaders.destination import (
    DestinationStore,
    DryRunDestinationStore,
    SupabaseDestinationStore,
)
from .loaders.entity_writer import EntityWriter, RelationRef
from .loaders.storage import MemoryObjectStorage, ObjectStorage, SupabaseObjectStorage
from .models.migration import MigrationConfig, RunStatus
from .models.record import MatchCandidate, SourceRecord
from .models.report import MigrationOutcome, MigrationReport, OutcomeStatus, StageReport
from .models.schema import EntityType, LinkDefinition, StageDefinition
from .services.attachments import AttachmentTransfer
from .services.matcher import IdentityMatcher
from .services.transformer import TransformEngine
from .stages import build_links, build_stages

logger = logging.getLogger(__name__)


class MigrationOrchestrator:
    """
    Orchestrates the migration from the source record store.

    Handles:
    - Dependency-ordered stages (storyteller, transcript, media, story, quote, theme)
    - Merged, deduplicated extraction per source table
    - Legacy linking by display name
    - Attachment transfer for newly created entities
    - Cross-entity relation links
    - Cancellation between records
    - Reconciliation reporting
    """

    def __init__(
        self,
        config: MigrationConfig,
        source_client: Optional[BaseSourceClient] = None,
        store: Optional[DestinationStore] = None,
        storage: Optional[ObjectStorage] = None,
        stages: Optional[List[StageDefinition]] = None,
        links: Optional[List[LinkDefinition]] = None,
        cancel_event: Optional[threading.Event] = None,
        http_session: Optional[requests.Session] = None
    ):
        """
        Initialize the orchestrator.

        Args:
            config: Migration configuration
            source_client: Source API client (built from config if omitted)
            store: Destination store (Supabase from config if omitted)
            storage: Attachment storage (Supabase bucket if omitted)
            stages: Stage plan (defaults with config overrides if omitted)
            links: Cross-entity links run after every stage
            cancel_event: Set to stop the run at the next record
            http_session: Session used for attachment downloads
        """
        self.config = config
        self.cancel_event = cancel_event or threading.Event()
        self.stages = stages if stages is not None else build_stages(config.stages)
        self.links = links if links is not None else build_links()

        self.client = source_client or SourceClient(config.source)
        self.merger = PageMerger(
            self.client,
            fetch_workers=config.source.fetch_workers,
            cancel_event=self.cancel_event,
        )

        real_store = store or SupabaseDestinationStore.from_config(config.destination)
        self.store = DryRunDestinationStore(real_store) if config.dry_run else real_store

        if storage is None:
            if config.dry_run:
                storage = MemoryObjectStorage(config.storage.bucket)
            elif isinstance(real_store, SupabaseDestinationStore):
                storage = SupabaseObjectStorage(real_store.client, config.storage.bucket)
            else:
                raise ConfigurationError("Object storage is required when the destination is not Supabase")

        self.writer = EntityWriter(self.store)
        self.transformer = TransformEngine()
        self.matcher = IdentityMatcher()
        self.attachments = AttachmentTransfer(
            storage,
            config.storage,
            session=http_session,
            retry_config=config.source.retry_config,
        )

        # Runtime state
        self.report: Optional[MigrationReport] = None
        self.report_path: Optional[Path] = None
        self._records: Dict[EntityType, List[SourceRecord]] = {}

        self._setup_directories()

    def _setup_directories(self):
        """Create output directories."""
        base = Path(self.config.output_dir)
        self.extracted_dir = base / "extracted"
        self.logs_dir = base / "logs"

        for directory in [self.extracted_dir, self.logs_dir]:
            directory.mkdir(parents=True, exist_ok=True)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        """Stop after the record currently in flight."""
        self.cancel_event.set()

    def ordered_stages(self) -> List[StageDefinition]:
        return sorted(self.stages, key=lambda s: s.entity_type.rank)

    def validate_plan(self) -> None:
        """
        Check that every relation points at an earlier stage.

        Raises:
            ConfigurationError: relation or link targets a later or unknown stage
        """
        planned = {s.entity_type for s in self.stages}

        for stage in self.stages:
            for relation in stage.relations:
                target = relation.target_entity
                if target not in planned:
                    raise ConfigurationError(
                        f"Stage {stage.name} relates to {target.value}, which has no stage"
                    )
                if target.rank >= stage.entity_type.rank:
                    raise ConfigurationError(
                        f"Stage {stage.name} relates to {target.value}, which runs after it"
                    )

        for link in self.links:
            for entity in (link.owner_entity, link.target_entity):
                if entity not in planned:
                    raise ConfigurationError(f"Link {link.name} needs a {entity.value} stage")

    def run_migration(self) -> MigrationReport:
        """
        Run every stage, then the relation links.

        Returns:
            MigrationReport with per-stage outcome counts and failures

        Raises:
            ConfigurationError: the run cannot make progress (saved report is marked failed)
        """
        self.report = MigrationReport(name=self.config.name, dry_run=self.config.dry_run)
        self.report.started_at = datetime.utcnow()
        self.report.status = RunStatus.RUNNING
        self._records = {}

        if self.config.dry_run:
            logger.info("[DRY RUN] Writes are kept in memory")

        try:
            self.validate_plan()

            for stage in self.ordered_stages():
                if self.cancelled:
                    break
                if not stage.enabled:
                    logger.info(f"Skipping disabled stage {stage.name}")
                    continue

                logger.info(f"=== STAGE: {stage.name} ===")
                self._run_stage(stage)

            if self.links and not self.cancelled:
                logger.info("=== STAGE: links ===")
                for link in self.links:
                    if self.cancelled:
                        break
                    self._run_link(link)

            if self.cancelled:
                self.report.status = RunStatus.CANCELLED
                logger.warning("=== MIGRATION CANCELLED ===")
            else:
                self.report.status = RunStatus.COMPLETED
                logger.info("=== MIGRATION COMPLETED ===")

        except ConfigurationError as e:
            logger.error(f"Migration aborted: {e}")
            self.report.status = RunStatus.FAILED
            self.report.errors.append(describe_error(e))
            raise

        finally:
            self.report.completed_at = datetime.utcnow()
            self._log_summary()
            self._save_report()

        return self.report

    def _extract(self, stage: StageDefinition) -> ExtractionResult:
        return self.merger.merge(
            stage.source_table,
            primary_view=stage.primary_view,
            filter_formula=stage.filter_formula,
            expected_count=stage.expected_count,
            partition_field=stage.partition_field,
        )

    def _run_stage(self, stage: StageDefinition) -> StageReport:
        """Extract and migrate one entity type."""
        stage_report = self.report.add_stage(stage.name)
        stage_report.started_at = datetime.utcnow()
        stage_report.expected_count = stage.expected_count

        extraction = self._extract(stage)
        records = extraction.records
        stage_report.source_count = extraction.observed_count
        stage_report.warnings.extend(extraction.warnings)
        for error in extraction.errors:
            logger.error(f"{stage.name}: {error}")
            self.report.errors.append(f"{stage.name}: {error}")
        self._records[stage.entity_type] = records

        if self.config.save_extracted:
            self._save_extracted(stage.name, extraction)

        if stage.legacy_linking:
            self._link_legacy(stage, records, stage_report)
        else:
            candidates = self._load_candidates(stage) if stage.claim_legacy else None
            for record in records:
                if self.cancelled:
                    break
                stage_report.record(self._reconcile_record(stage, record, candidates, stage_report))

        stage_report.completed_at = datetime.utcnow()
        logger.info(
            f"{stage.name}: {stage_report.created} created, "
            f"{stage_report.skipped_existing} existing, "
            f"{stage_report.skipped_no_match} unmatched, "
            f"{len(stage_report.failed)} failed"
        )
        return stage_report

    def _reconcile_record(
        self,
        stage: StageDefinition,
        record: SourceRecord,
        candidates: Optional[List[MatchCandidate]],
        stage_report: StageReport
    ) -> MigrationOutcome:
        """Claim a matching legacy row when the stage allows it, otherwise migrate the record."""
        if candidates is not None:
            try:
                outcome = self._match_legacy(stage, record, candidates, stage_report)
            except ConfigurationError:
                raise
            except Exception as e:
                logger.error(f"Unexpected error linking {stage.name} {record.external_id}: {e}")
                return MigrationOutcome.failed(stage.name, record.external_id, describe_error(e))
            if outcome is not None:
                return outcome

        return self._migrate_record(stage, record, stage_report)

    def _migrate_record(
        self,
        stage: StageDefinition,
        record: SourceRecord,
        stage_report: StageReport
    ) -> MigrationOutcome:
        """Transform and write one record, then copy its attachments if it was created."""
        name = stage.name

        try:
            transformed = self.transformer.transform_record(record, stage.field_mappings)
            if transformed.errors:
                error = DestinationValidationError("; ".join(transformed.errors))
                logger.warning(f"Failed to transform {name} {record.external_id}: {error}")
                return MigrationOutcome.failed(name, record.external_id, describe_error(error))

            relations = [
                RelationRef(
                    target_column=r.target_column,
                    target_entity=r.target_entity,
                    external_ids=record.linked_ids(r.source_field),
                    many=r.many,
                    required=r.required,
                )
                for r in stage.relations
            ]
            outcome = self.writer.upsert(stage.entity_type, record.external_id, transformed.attributes, relations)

        except ConfigurationError:
            raise
        except Exception as e:
            logger.error(f"Unexpected error migrating {name} {record.external_id}: {e}")
            return MigrationOutcome.failed(name, record.external_id, describe_error(e))

        if (
            outcome.status == OutcomeStatus.CREATED
            and stage.attachments
            and not self.config.skip_attachments
        ):
            self._transfer_attachments(stage, record, outcome.destination_id, stage_report)

        return outcome

    def _transfer_attachments(
        self,
        stage: StageDefinition,
        record: SourceRecord,
        destination_id: str,
        stage_report: StageReport
    ) -> None:
        """Copy a created record's attachments and link them; failures never change its outcome."""
        updates: Dict[str, Any] = {}

        for mapping in stage.attachments:
            descriptors = record.attachments(mapping.source_field)
            if not mapping.many:
                descriptors = descriptors[:1]

            urls = []
            for descriptor in descriptors:
                label = descriptor.filename or descriptor.url
                try:
                    urls.append(self.attachments.transfer(descriptor, destination_id, stage.name))
                    stage_report.attachments_transferred += 1
                except ConfigurationError:
                    raise
                except AttachmentError as e:
                    logger.warning(
                        f"Attachment {label} of {stage.name} {record.external_id} not transferred: "
                        f"{describe_error(e)}"
                    )
                    stage_report.record_attachment_failure(record.external_id, describe_error(e), mapping.source_field)
                except Exception as e:
                    logger.error(f"Unexpected error transferring {label} of {stage.name} {record.external_id}: {e}")
                    stage_report.record_attachment_failure(record.external_id, describe_error(e), mapping.source_field)

            if urls:
                updates[mapping.target_column] = urls if mapping.many else urls[0]

        if not updates:
            return

        try:
            self.writer.update(stage.entity_type, destination_id, updates)
        except ConfigurationError:
            raise
        except Exception as e:
            logger.warning(f"Could not link attachments to {stage.name} {record.external_id}: {e}")
            stage_report.record_attachment_failure(record.external_id, describe_error(e))

    @staticmethod
    def _display_name(record: SourceRecord, field_name: str) -> Optional[str]:
        value = record.get_field(field_name)
        if isinstance(value, list):
            value = value[0] if value else None
        return str(value) if value is not None else None

    def _load_candidates(self, stage: StageDefinition) -> List[MatchCandidate]:
        candidates = self.writer.load_candidates(stage.entity_type)
        logger.info(f"{stage.name}: {len(candidates)} legacy rows available for matching")
        return candidates

    def _match_legacy(
        self,
        stage: StageDefinition,
        record: SourceRecord,
        candidates: List[MatchCandidate],
        stage_report: StageReport
    ) -> Optional[MigrationOutcome]:
        """
        Skip a record that is already linked, or claim the legacy row its name matches.

        Returns None when no row carries the external id and no candidate matches.
        A claimed candidate leaves the pool.
        """
        name = stage.name
        primary_key = self.writer.schema(stage.entity_type).primary_key

        existing = self.writer.find_existing(stage.entity_type, record.external_id)
        if existing:
            return MigrationOutcome.skipped_existing(name, record.external_id, str(existing[primary_key]))

        match = self.matcher.match(self._display_name(record, stage.display_name_field), candidates)
        if match is None:
            return None

        outcome = self.writer.claim(stage.entity_type, match.candidate.destination_id, record.external_id)
        if outcome.destination_id == match.candidate.destination_id:
            candidates.remove(match.candidate)
            stage_report.linked += 1
            logger.debug(
                f"Linked {name} {record.external_id} to {match.candidate.destination_id} "
                f"({match.tier.value})"
            )
        return outcome

    def _link_legacy(self, stage: StageDefinition, records: List[SourceRecord], stage_report: StageReport) -> None:
        """Attach external ids to pre-existing rows matched by display name; never insert."""
        candidates = self._load_candidates(stage)

        for record in records:
            if self.cancelled:
                break

            name = stage.name
            try:
                outcome = self._match_legacy(stage, record, candidates, stage_report)
                if outcome is None:
                    display_name = self._display_name(record, stage.display_name_field)
                    outcome = MigrationOutcome.skipped_no_match(
                        name, record.external_id, f"no {name} named {display_name!r}"
                    )
                    logger.info(f"No match for {name} {record.external_id} ({display_name!r})")
            except ConfigurationError:
                raise
            except Exception as e:
                logger.error(f"Unexpected error linking {name} {record.external_id}: {e}")
                outcome = MigrationOutcome.failed(name, record.external_id, describe_error(e))

            stage_report.record(outcome)

    def _records_for(self, entity_type: EntityType) -> List[SourceRecord]:
        """Source records fetched earlier in the run, or fetched now for a disabled stage."""
        if entity_type not in self._records:
            stage = next(s for s in self.stages if s.entity_type == entity_type)
            self._records[entity_type] = self._extract(stage).records
        return self._records[entity_type]

    def _run_link(self, link: LinkDefinition) -> StageReport:
        """Fill an empty relation column on already-migrated rows."""
        stage_report = self.report.add_stage(link.name)
        stage_report.started_at = datetime.utcnow()
        owner_schema = self.writer.schema(link.owner_entity)

        records = [r for r in self._records_for(link.owner_entity) if r.linked_ids(link.source_field)]
        stage_report.source_count = len(records)

        for record in records:
            if self.cancelled:
                break
            stage_report.record(self._link_record(link, owner_schema.primary_key, record))

        stage_report.completed_at = datetime.utcnow()
        logger.info(
            f"{link.name}: {stage_report.created} linked, "
            f"{stage_report.skipped_existing} already set, {len(stage_report.failed)} failed"
        )
        return stage_report

    def _link_record(self, link: LinkDefinition, primary_key: str, record: SourceRecord) -> MigrationOutcome:
        name = link.name
        external_id = record.external_id

        try:
            owner = self.writer.find_existing(
                link.owner_entity, external_id, f"{primary_key},{link.target_column}"
            )
            if owner is None:
                error = DependencyMissing(f"{link.owner_entity.value} {external_id} not migrated")
                return MigrationOutcome.failed(name, external_id, describe_error(error))

            if owner.get(link.target_column) not in (None, "", []):
                return MigrationOutcome.skipped_existing(name, external_id, str(owner[primary_key]))

            target_ids = record.linked_ids(link.source_field)
            resolved = self.writer.resolve_ids(link.target_entity, target_ids)
            missing = [x for x in target_ids if x not in resolved]
            if missing:
                error = DependencyMissing(f"{link.target_entity.value} {', '.join(missing)} not migrated")
                return MigrationOutcome.failed(name, external_id, describe_error(error))

            if link.many:
                value: Any = list(dict.fromkeys(resolved[x] for x in target_ids))
            else:
                value = resolved[target_ids[0]]

            owner_id = str(owner[primary_key])
            self.writer.update(link.owner_entity, owner_id, {link.target_column: value})
            return MigrationOutcome.created(name, external_id, owner_id)

        except ConfigurationError:
            raise
        except DestinationError as e:
            logger.warning(f"Failed to link {name} {external_id}: {describe_error(e)}")
            return MigrationOutcome.failed(name, external_id, describe_error(e))
        except Exception as e:
            logger.error(f"Unexpected error linking {name} {external_id}: {e}")
            return MigrationOutcome.failed(name, external_id, describe_error(e))

    def _log_summary(self) -> None:
        report = self.report
        logger.info(
            f"Migration {report.status.value}: {report.total_created} created, "
            f"{report.total_failed} failed, {report.total_attachment_failures} attachment failures"
        )
        logger.info(
            f"Attachments: {self.attachments.uploaded} uploaded, "
            f"{self.attachments.reused} reused from earlier uploads"
        )
        for stage in report.stages:
            if stage.shortfall:
                logger.warning(
                    f"{stage.entity_type}: source shortfall of {stage.shortfall} "
                    f"({stage.source_count}/{stage.expected_count})"
                )

    def _save_extracted(self, key: str, extraction: ExtractionResult):
        """Save extracted records to file."""
        filepath = self.extracted_dir / f"{key}.json"
        with open(filepath, 'w') as f:
            json.dump(extraction.to_dict(), f, indent=2, default=str)

    def _save_report(self):
        """Save the migration report."""
        timestamp = datetime.utcnow().strftime('%Y%m%d_%H%M%S')
        filepath = self.logs_dir / f"migration_report_{timestamp}_{self.report.id[:8]}.json"
        with open(filepath, 'w') as f:
            json.dump(self.report.to_dict(), f, indent=2, default=str)
        self.report_path = filepath
        logger.info(f"Saved migration report to {filepath}")
