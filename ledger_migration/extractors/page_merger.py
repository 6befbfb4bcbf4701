"""
page_merger.py
--------------------
Complete, deduplicated record sets for a logical table.

A single source view can under-report: it may stop returning a cursor
before every record has been seen. ``PageMerger`` walks the primary view
first, then (when an expected-count hint says the set is short) every
other view of the table, and finally creation-date partitions. Records
are merged by external id; the most recently fetched copy wins.

A page that fails ends only its own walk: the pages already fetched are
kept and the fallbacks run as for any other short walk. A primary walk
that cannot fetch even its first page because the source is unreachable
raises ``SourceUnreachable``.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta

from .base import BaseSourceClient, ExtractionResult, Page
from ..exceptions import (
    FatalSourceError,
    MigrationError,
    SourceUnreachable,
    TransientNetworkError,
    describe_error,
)
from ..models.record import SourceRecord

logger = logging.getLogger(__name__)


@dataclass
class Walk:
    """Records gathered by one cursor walk, and the error that cut it short."""
    label: str
    records: List[SourceRecord] = field(default_factory=list)
    pages: int = 0
    error: Optional[MigrationError] = None

    @property
    def complete(self) -> bool:
        return self.error is None

    def describe_failure(self) -> str:
        return f"Walk of {self.label} stopped after {self.pages} pages: {describe_error(self.error)}"


class DateRangePartitioner:
    """
    Builds filter formulas that split a table into creation-date ranges.

    Ranges are half-open (``start <= t < end``). An open-ended partition
    before the first range and after the last one guarantees every record
    falls in exactly one partition.
    """

    def __init__(self, field_expression: str = "CREATED_TIME()", months_per_partition: int = 1):
        self.field_expression = field_expression
        self.step = relativedelta(months=months_per_partition)

    @staticmethod
    def _parse(value: Optional[str]) -> Optional[datetime]:
        if not value:
            return None
        try:
            return date_parser.isoparse(value)
        except (ValueError, OverflowError):
            return None

    def observed_range(self, records: Iterable[SourceRecord]) -> Optional[Tuple[date, date]]:
        """Earliest and latest creation dates among already-fetched records."""
        stamps = [d for d in (self._parse(r.created_time) for r in records) if d is not None]
        if not stamps:
            return None
        return min(stamps).date(), max(stamps).date()

    def _before(self, bound: date) -> str:
        return f"IS_BEFORE({self.field_expression}, '{bound.isoformat()}')"

    def partitions(self, start: date, end: date) -> List[str]:
        """Filter formulas covering (-inf, start), [start, end] in steps, and the tail."""
        cursor = start.replace(day=1)
        formulas = [self._before(cursor)]

        while cursor <= end:
            upper = cursor + self.step
            formulas.append(f"AND(NOT({self._before(cursor)}), {self._before(upper)})")
            cursor = upper

        formulas.append(f"NOT({self._before(cursor)})")
        return formulas


class PageMerger:
    """
    Walks source pagination to completion and merges overlapping views.

    Secondary views and partitions are fetched concurrently with a bounded
    worker pool; merging always happens on the calling thread.
    """

    def __init__(
        self,
        client: BaseSourceClient,
        fetch_workers: int = 2,
        months_per_partition: int = 1,
        cancel_event: Optional[threading.Event] = None
    ):
        self.client = client
        self.fetch_workers = max(fetch_workers, 1)
        self.months_per_partition = months_per_partition
        self.cancel_event = cancel_event

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def _walk(self, fetch_page: Callable[[Optional[str]], Page], label: str) -> Walk:
        """Follow the cursor until the source stops returning one or a page fails."""
        walk = Walk(label=label)
        seen_cursors = set()
        cursor: Optional[str] = None

        while True:
            try:
                page, next_cursor = fetch_page(cursor)
            except (FatalSourceError, TransientNetworkError) as e:
                walk.error = e
                logger.warning(walk.describe_failure())
                break
            walk.pages += 1
            walk.records.extend(page)

            if not next_cursor or self._cancelled():
                break
            if next_cursor in seen_cursors:
                logger.warning(f"Cursor repeated while walking {label}; stopping walk")
                break
            seen_cursors.add(next_cursor)
            cursor = next_cursor

        logger.debug(f"Walked {label}: {len(walk.records)} records in {walk.pages} pages")
        return walk

    def walk_view(self, table: str, view: Optional[str]) -> Walk:
        """Walk a view to exhaustion."""
        return self._walk(
            lambda cursor: self.client.list_view(table, view, cursor),
            f"{table}/{view or '<default>'}",
        )

    def walk_filtered(self, table: str, filter_expression: str, view: Optional[str] = None) -> Walk:
        """Walk a filter expression (optionally inside a view) to exhaustion."""
        return self._walk(
            lambda cursor: self.client.list_filtered(table, filter_expression, cursor, view=view),
            f"{table}[{filter_expression}]",
        )

    @staticmethod
    def _absorb(merged: Dict[str, SourceRecord], records: List[SourceRecord]) -> int:
        """Merge by external id, last write wins. Returns duplicates absorbed."""
        duplicates = 0
        for record in records:
            if record.external_id in merged:
                duplicates += 1
            merged[record.external_id] = record
        return duplicates

    def _fan_out(
        self,
        jobs: Dict[str, Callable[[], Walk]],
        merged: Dict[str, SourceRecord],
        result: ExtractionResult
    ) -> None:
        """Run walk jobs concurrently and merge them in completion order."""
        if not jobs:
            return

        with ThreadPoolExecutor(max_workers=self.fetch_workers) as pool:
            futures = [pool.submit(job) for job in jobs.values()]
            for future in as_completed(futures):
                walk = future.result()
                if not walk.complete:
                    result.warnings.append(walk.describe_failure())
                result.duplicates_absorbed += self._absorb(merged, walk.records)

    @staticmethod
    def _needs_more(
        merged: Dict[str, SourceRecord],
        expected_count: Optional[int],
        primary: Walk
    ) -> bool:
        """Short of the expected count, or the primary walk broke off with no count to check."""
        if expected_count is None:
            return not primary.complete
        return len(merged) < expected_count

    def merge(
        self,
        table: str,
        primary_view: Optional[str] = None,
        filter_formula: Optional[str] = None,
        expected_count: Optional[int] = None,
        partition_field: Optional[str] = "CREATED_TIME()",
        partition_range: Optional[Tuple[date, date]] = None
    ) -> ExtractionResult:
        """
        Produce the complete, deduplicated record set for a table.

        Args:
            table: Logical table name
            primary_view: View walked first (None for the default listing)
            filter_formula: Restricts every walk to matching records
            expected_count: Known record count; triggers fallbacks when short
            partition_field: Date expression used for partition fallback
            partition_range: Explicit (start, end) for partitioning

        Returns:
            ExtractionResult with merged records and observed count

        Raises:
            SourceUnreachable: the first page of the primary walk failed on connectivity
        """
        result = ExtractionResult(table_name=table, expected_count=expected_count)
        result.started_at = datetime.utcnow()
        merged: Dict[str, SourceRecord] = {}

        # 1. Primary walk
        if filter_formula:
            primary = self.walk_filtered(table, filter_formula, view=primary_view)
        else:
            primary = self.walk_view(table, primary_view)
        result.views_queried.append(primary_view or "<default>")

        if not primary.complete:
            if primary.pages == 0 and isinstance(primary.error, TransientNetworkError):
                raise SourceUnreachable(
                    f"Source unreachable while reading {table}: {primary.error}"
                ) from primary.error
            message = primary.describe_failure()
            result.errors.append(message)
            result.warnings.append(message)

        result.duplicates_absorbed += self._absorb(merged, primary.records)

        # 2. Every other view of the table
        if self._needs_more(merged, expected_count, primary) and not self._cancelled():
            logger.info(
                f"{table}: primary walk returned {len(merged)} of {expected_count or 'unknown'} "
                f"expected; merging other views"
            )
            try:
                views = self.client.list_views(table)
            except (FatalSourceError, TransientNetworkError) as e:
                views = []
                message = f"Could not list views of {table}: {e}"
                logger.warning(message)
                result.warnings.append(message)

            jobs: Dict[str, Callable[[], Walk]] = {}
            for view in views:
                if primary_view in (view.name, view.id):
                    continue
                if filter_formula:
                    jobs[view.name] = (
                        lambda v=view.name: self.walk_filtered(table, filter_formula, view=v)
                    )
                else:
                    jobs[view.name] = lambda v=view.name: self.walk_view(table, v)
            result.views_queried.extend(jobs.keys())
            self._fan_out(jobs, merged, result)

        # 3. Creation-date partitions
        if self._needs_more(merged, expected_count, primary) and partition_field and not self._cancelled():
            partitioner = DateRangePartitioner(partition_field, self.months_per_partition)
            bounds = partition_range or partitioner.observed_range(merged.values())
            if bounds is None:
                message = f"{table}: no creation dates observed; partition fallback skipped"
                logger.warning(message)
                result.warnings.append(message)
            else:
                logger.info(
                    f"{table}: still short after {len(result.views_queried)} views; "
                    f"partitioning {bounds[0]} to {bounds[1]}"
                )
                formulas = partitioner.partitions(*bounds)
                if filter_formula:
                    formulas = [f"AND({filter_formula}, {f})" for f in formulas]
                jobs = {f: (lambda f=f: self.walk_filtered(table, f)) for f in formulas}
                result.partitions_queried = len(jobs)
                self._fan_out(jobs, merged, result)

        result.records = list(merged.values())
        result.observed_count = len(merged)
        result.completed_at = datetime.utcnow()

        if result.shortfall:
            message = (
                f"{table}: observed {result.observed_count} of {expected_count} expected "
                f"records (shortfall {result.shortfall})"
            )
            logger.warning(message)
            result.warnings.append(message)
        else:
            logger.info(f"Merged {result.observed_count} unique {table} records")

        return result
