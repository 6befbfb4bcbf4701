"""HTTP client for view-based source record stores such as Airtable."""

import time
import logging
import threading
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

import requests
from pydantic import ValidationError

from .base import BaseSourceClient, Page
from ..exceptions import (
    ConfigurationError,
    FatalSourceError,
    SourceAuthError,
    TransientNetworkError,
)
from ..models.migration import SourceConfig
from ..models.record import RawRecord, SourceRecord, ViewDescriptor
from ..utils.http import TRANSIENT_STATUS_CODES, create_session

logger = logging.getLogger(__name__)


class SourceClient(BaseSourceClient):
    """
    Client for a paginated, view-based source API.

    Supports:
    - Airtable REST API (offset cursor, filterByFormula, metadata API)
    - Generic table/view APIs (cursor/nextCursor)
    - Rate limiting shared across threads
    - Retry with exponential backoff on 429/5xx, timeouts and network errors
      (urllib3 Retry on the session adapter)
    """

    # Service-specific wire conventions
    SERVICE_CONFIGS = {
        "airtable": {
            "base_url": "https://api.airtable.com/v0/{base_id}",
            "meta_url": "https://api.airtable.com/v0/meta/bases/{base_id}/tables",
            "auth_type": "bearer",
            "records_field": "records",
            "cursor_param": "offset",
            "cursor_field": "offset",
            "view_param": "view",
            "filter_param": "filterByFormula",
            "page_size_param": "pageSize",
            "max_page_size": 100,
        },
        "generic": {
            "base_url": None,  # Taken from api_endpoint
            "meta_url": None,
            "auth_type": "bearer",
            "records_field": "records",
            "cursor_param": "cursor",
            "cursor_field": "nextCursor",
            "view_param": "view",
            "filter_param": "filter",
            "page_size_param": "pageSize",
            "max_page_size": None,
        },
    }

    def __init__(
        self,
        config: SourceConfig,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize the source client.

        Args:
            config: Source configuration
            session: Custom requests session
            sleep: Sleep function used for rate limiting
        """
        service = (config.service or "airtable").lower()
        if service not in self.SERVICE_CONFIGS:
            raise ConfigurationError(f"Unsupported source service: {config.service}")

        self.config = config
        self._service_config = self.SERVICE_CONFIGS[service]
        self._session = session or self._create_session()
        self._sleep = sleep
        self._rate_limit_delay = 1 / config.rate_limit if config.rate_limit else 0
        self._rate_lock = threading.Lock()
        self._next_request_at = 0.0

    def _create_session(self) -> requests.Session:
        """Create a requests session with retry logic, pooled for the fetch workers."""
        return create_session(self.config.retry_config, pool_size=max(self.config.fetch_workers, 1))

    @property
    def base_url(self) -> str:
        """Get the base URL for table requests."""
        if self.config.api_endpoint:
            return self.config.api_endpoint.rstrip("/")

        template = self._service_config.get("base_url")
        if not template or not self.config.base_id:
            raise ConfigurationError("Source base URL could not be determined")
        return template.format(base_id=self.config.base_id)

    @property
    def page_size(self) -> int:
        max_page_size = self._service_config.get("max_page_size")
        if max_page_size:
            return min(self.config.page_size, max_page_size)
        return self.config.page_size

    def _get_auth_headers(self) -> Dict[str, str]:
        """Get authentication headers."""
        if not self.config.api_key:
            raise ConfigurationError("Source API key is required")
        return {"Authorization": f"Bearer {self.config.api_key}"}

    def _table_url(self, table: str) -> str:
        if self._service_config.get("meta_url"):
            return f"{self.base_url}/{quote(table, safe='')}"
        return f"{self.base_url}/tables/{quote(table, safe='')}"

    def _rate_limit_wait(self) -> None:
        """Space requests by the configured delay, across all threads."""
        if self._rate_limit_delay <= 0:
            return

        with self._rate_lock:
            now = time.monotonic()
            wait = self._next_request_at - now
            if wait > 0:
                self._sleep(wait)
                now = time.monotonic()
            self._next_request_at = now + self._rate_limit_delay

    def _get(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Issue a GET and classify the final response.

        The session adapter has already retried connection errors, timeouts
        and transient statuses by the time a response or error arrives here.
        """
        self._rate_limit_wait()

        try:
            response = self._session.get(
                url,
                headers=self._get_auth_headers(),
                params=params,
                timeout=self.config.timeout,
            )
        except (
            requests.exceptions.ConnectionError,
            requests.exceptions.Timeout,
            requests.exceptions.RetryError,
        ) as e:
            raise TransientNetworkError(f"Request to {url} failed: {e}") from e
        except requests.exceptions.RequestException as e:
            raise FatalSourceError(f"Request to {url} could not be sent: {e}") from e

        status = response.status_code
        if status in TRANSIENT_STATUS_CODES:
            raise TransientNetworkError(f"HTTP {status} from {url} after retries")
        if status in (401, 403):
            raise SourceAuthError(f"Source API rejected credentials (HTTP {status})")
        if status >= 400:
            raise FatalSourceError(
                f"HTTP {status} from {url}: {response.text[:200]}",
                status_code=status,
            )

        return response.json()

    def _build_params(
        self,
        cursor: Optional[str],
        view: Optional[str] = None,
        filter_expression: Optional[str] = None
    ) -> Dict[str, Any]:
        """Build query parameters for a listing request."""
        params: Dict[str, Any] = {self._service_config["page_size_param"]: self.page_size}
        if view:
            params[self._service_config["view_param"]] = view
        if filter_expression:
            params[self._service_config["filter_param"]] = filter_expression
        if cursor:
            params[self._service_config["cursor_param"]] = cursor
        return params

    def _parse_page(self, table: str, data: Dict[str, Any], fetched_from: Optional[str]) -> Page:
        """Parse a listing response into SourceRecords and the next cursor."""
        records = []
        for item in data.get(self._service_config["records_field"], []):
            try:
                raw = RawRecord.model_validate(item)
            except ValidationError as e:
                logger.warning(f"Skipping malformed record in {table}: {e}")
                continue
            records.append(SourceRecord.from_raw(raw, table, fetched_from))

        next_cursor = data.get(self._service_config["cursor_field"]) or None
        return records, next_cursor

    def list_view(self, table: str, view: Optional[str], cursor: Optional[str] = None) -> Page:
        """Fetch one page of a view."""
        params = self._build_params(cursor, view=view)
        data = self._get(self._table_url(table), params)
        return self._parse_page(table, data, view)

    def list_filtered(
        self,
        table: str,
        filter_expression: str,
        cursor: Optional[str] = None,
        view: Optional[str] = None
    ) -> Page:
        """Fetch one page of records matching a filter expression, optionally within a view."""
        params = self._build_params(cursor, view=view, filter_expression=filter_expression)
        data = self._get(self._table_url(table), params)
        return self._parse_page(table, data, filter_expression)

    def list_views(self, table: str) -> List[ViewDescriptor]:
        """List the views a table exposes."""
        meta_template = self._service_config.get("meta_url")

        if meta_template and not self.config.api_endpoint:
            data = self._get(meta_template.format(base_id=self.config.base_id))
            for table_meta in data.get("tables", []):
                if table in (table_meta.get("name"), table_meta.get("id")):
                    views_data = table_meta.get("views", [])
                    break
            else:
                raise FatalSourceError(f"Table {table} not found in source metadata", status_code=404)
        else:
            data = self._get(f"{self._table_url(table)}/meta")
            views_data = data.get("views", [])

        views = []
        for item in views_data:
            try:
                views.append(ViewDescriptor.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Skipping malformed view descriptor in {table}: {e}")
        logger.debug(f"Table {table} exposes {len(views)} views")
        return views

    def get_record(self, table: str, record_id: str) -> SourceRecord:
        """Read a single record by id."""
        data = self._get(f"{self._table_url(table)}/{quote(record_id, safe='')}")
        try:
            raw = RawRecord.model_validate(data)
        except ValidationError as e:
            raise FatalSourceError(f"Malformed record {record_id} in {table}: {e}") from e
        return SourceRecord.from_raw(raw, table, fetched_from=record_id)

    def validate_source(self) -> List[str]:
        """Validate the source configuration."""
        errors = []

        if not self.config.api_key:
            errors.append("API key is required for the source API")

        try:
            self.base_url
        except ConfigurationError as e:
            errors.append(str(e))

        return errors
