"""Destination store: the hosted relational database migrated records land in."""

import copy
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Set

from postgrest.exceptions import APIError
from supabase import Client, create_client

from ..exceptions import (
    ConfigurationError,
    DependencyMissing,
    DestinationError,
    DestinationUniqueViolation,
    DestinationValidationError,
)
from ..models.migration import DestinationConfig

logger = logging.getLogger(__name__)

Filters = Dict[str, Any]


def _matches(row: Dict[str, Any], filters: Optional[Filters]) -> bool:
    """None matches IS NULL; a list or set matches IN."""
    for column, expected in (filters or {}).items():
        actual = row.get(column)
        if expected is None:
            if actual is not None:
                return False
        elif isinstance(expected, (list, tuple, set)):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


def _project(row: Dict[str, Any], columns: str) -> Dict[str, Any]:
    if columns.strip() == "*":
        return dict(row)
    wanted = [c.strip() for c in columns.split(",") if c.strip()]
    return {c: row.get(c) for c in wanted}


class DestinationStore(ABC):
    """
    Create/read/update/count access to destination tables.

    Filters map column names to values: ``None`` means IS NULL and a list
    means IN. Implementations raise ``DestinationError`` subclasses.
    """

    @abstractmethod
    def insert(self, table: str, attributes: Dict[str, Any]) -> str:
        """Insert a row and return its primary key."""
        pass

    @abstractmethod
    def find_many(self, table: str, filters: Optional[Filters] = None, columns: str = "*") -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def update(self, table: str, row_id: str, attributes: Dict[str, Any]) -> None:
        pass

    def find_one(self, table: str, filters: Optional[Filters] = None, columns: str = "*") -> Optional[Dict[str, Any]]:
        rows = self.find_many(table, filters, columns)
        return rows[0] if rows else None

    def count(self, table: str, filters: Optional[Filters] = None) -> int:
        return len(self.find_many(table, filters, "id"))


class SupabaseDestinationStore(DestinationStore):
    """Destination store backed by Supabase (PostgREST)."""

    PAGE_SIZE = 1000

    def __init__(self, client: Client):
        self.client = client

    @classmethod
    def from_config(cls, config: DestinationConfig) -> "SupabaseDestinationStore":
        """Create a store from destination credentials."""
        if not config.url or not config.service_key:
            raise ConfigurationError(
                "Missing destination credentials. Set SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY"
            )
        return cls(create_client(config.url, config.service_key))

    @staticmethod
    def _map_error(error: APIError, table: str) -> DestinationError:
        """Translate PostgREST error codes into the migration taxonomy."""
        code = str(error.code or "")
        message = f"{table}: {error.message or error}"
        if error.details:
            message += f" ({error.details})"

        if code == "23505":
            return DestinationUniqueViolation(message, code=code)
        if code == "23503":
            return DependencyMissing(message, code=code)
        if code in ("23502", "23514") or code.startswith("22"):
            return DestinationValidationError(message, code=code)
        return DestinationError(message, code=code)

    @staticmethod
    def _apply_filters(query, filters: Optional[Filters]):
        for column, value in (filters or {}).items():
            if value is None:
                query = query.is_(column, "null")
            elif isinstance(value, (list, tuple, set)):
                query = query.in_(column, list(value))
            else:
                query = query.eq(column, value)
        return query

    def insert(self, table: str, attributes: Dict[str, Any]) -> str:
        try:
            response = self.client.table(table).insert(attributes).execute()
        except APIError as e:
            raise self._map_error(e, table) from e

        if not response.data:
            raise DestinationError(f"{table}: insert returned no row")
        return str(response.data[0]["id"])

    def find_many(self, table: str, filters: Optional[Filters] = None, columns: str = "*") -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        start = 0

        while True:
            query = self._apply_filters(self.client.table(table).select(columns), filters)
            try:
                response = query.range(start, start + self.PAGE_SIZE - 1).execute()
            except APIError as e:
                raise self._map_error(e, table) from e

            batch = response.data or []
            rows.extend(batch)
            if len(batch) < self.PAGE_SIZE:
                return rows
            start += self.PAGE_SIZE

    def find_one(self, table: str, filters: Optional[Filters] = None, columns: str = "*") -> Optional[Dict[str, Any]]:
        query = self._apply_filters(self.client.table(table).select(columns), filters)
        try:
            response = query.limit(1).execute()
        except APIError as e:
            raise self._map_error(e, table) from e
        return response.data[0] if response.data else None

    def count(self, table: str, filters: Optional[Filters] = None) -> int:
        query = self._apply_filters(self.client.table(table).select("id", count="exact"), filters)
        try:
            response = query.execute()
        except APIError as e:
            raise self._map_error(e, table) from e
        return response.count or 0

    def update(self, table: str, row_id: str, attributes: Dict[str, Any]) -> None:
        try:
            self.client.table(table).update(attributes).eq("id", row_id).execute()
        except APIError as e:
            raise self._map_error(e, table) from e


class MemoryDestinationStore(DestinationStore):
    """
    In-process destination store.

    Enforces uniqueness of non-null values in ``unique_columns`` and,
    optionally, foreign keys given as ``{table: {column: target_table}}``.
    """

    def __init__(
        self,
        unique_columns: Iterable[str] = ("airtable_record_id",),
        foreign_keys: Optional[Dict[str, Dict[str, str]]] = None
    ):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.unique_columns: Set[str] = set(unique_columns)
        self.foreign_keys = foreign_keys or {}
        self._lock = threading.Lock()

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return self.tables.setdefault(table, [])

    def _check_constraints(self, table: str, row: Dict[str, Any], exclude_id: Optional[str] = None) -> None:
        for column in self.unique_columns:
            value = row.get(column)
            if value is None:
                continue
            for existing in self.rows(table):
                if existing["id"] != exclude_id and existing.get(column) == value:
                    raise DestinationUniqueViolation(
                        f"{table}: duplicate key value violates unique constraint on {column}",
                        code="23505",
                    )

        for column, target in self.foreign_keys.get(table, {}).items():
            value = row.get(column)
            if value is None:
                continue
            values = value if isinstance(value, list) else [value]
            known = {r["id"] for r in self.rows(target)}
            missing = [v for v in values if v not in known]
            if missing:
                raise DependencyMissing(
                    f"{table}.{column} references missing {target} rows {missing}",
                    code="23503",
                )

    def insert(self, table: str, attributes: Dict[str, Any]) -> str:
        with self._lock:
            row = copy.deepcopy(attributes)
            row.setdefault("id", str(uuid.uuid4()))
            self._check_constraints(table, row)
            self.rows(table).append(row)
            return row["id"]

    def find_many(self, table: str, filters: Optional[Filters] = None, columns: str = "*") -> List[Dict[str, Any]]:
        with self._lock:
            return [_project(copy.deepcopy(r), columns) for r in self.rows(table) if _matches(r, filters)]

    def update(self, table: str, row_id: str, attributes: Dict[str, Any]) -> None:
        with self._lock:
            for row in self.rows(table):
                if row["id"] == row_id:
                    updated = {**row, **copy.deepcopy(attributes)}
                    self._check_constraints(table, updated, exclude_id=row_id)
                    row.update(copy.deepcopy(attributes))
                    return
            raise DestinationError(f"{table}: no row with id {row_id}")


class DryRunDestinationStore(DestinationStore):
    """
    Reads through to a real store, keeps every write in memory.

    Rows inserted during the run live in an in-memory overlay; updates to
    real rows are kept as patches applied on read.
    """

    def __init__(self, store: DestinationStore):
        self.store = store
        self.overlay = MemoryDestinationStore()
        self._patches: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def _patched(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        patch = self._patches.get(table, {}).get(str(row.get("id")))
        return {**row, **patch} if patch else row

    def insert(self, table: str, attributes: Dict[str, Any]) -> str:
        for column in self.overlay.unique_columns:
            value = attributes.get(column)
            if value is not None and self.find_one(table, {column: value}, "id"):
                raise DestinationUniqueViolation(
                    f"{table}: duplicate key value violates unique constraint on {column}",
                    code="23505",
                )
        row_id = self.overlay.insert(table, attributes)
        logger.debug(f"[DRY RUN] Would insert into {table}: {attributes}")
        return row_id

    def find_many(self, table: str, filters: Optional[Filters] = None, columns: str = "*") -> List[Dict[str, Any]]:
        patched_ids = set(self._patches.get(table, {}))
        rows = []

        for row in self.store.find_many(table, filters, "*"):
            if str(row.get("id")) in patched_ids:
                continue
            rows.append(row)

        # Patched rows may have moved in or out of the filter
        for row_id in patched_ids:
            row = self.store.find_one(table, {"id": row_id}, "*")
            if row is not None:
                row = self._patched(table, row)
                if _matches(row, filters):
                    rows.append(row)

        rows.extend(self.overlay.find_many(table, filters, "*"))
        return [_project(r, columns) for r in rows]

    def update(self, table: str, row_id: str, attributes: Dict[str, Any]) -> None:
        if self.overlay.find_one(table, {"id": row_id}, "id"):
            self.overlay.update(table, row_id, attributes)
        else:
            self._patches.setdefault(table, {}).setdefault(str(row_id), {}).update(attributes)
        logger.debug(f"[DRY RUN] Would update {table}/{row_id}: {attributes}")
