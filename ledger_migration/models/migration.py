"""Migration configuration models."""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from ..exceptions import ConfigurationError


class RunStatus(str, Enum):
    """Status of a migration run."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class SourceConfig:
    """Configuration for the source record store."""
    service: str = "airtable"  # airtable, generic
    base_id: Optional[str] = None
    api_key: Optional[str] = None
    api_endpoint: Optional[str] = None  # Overrides the service base URL

    rate_limit: Optional[float] = 5.0  # Requests per second
    retry_config: Dict[str, Any] = field(default_factory=lambda: {
        "max_retries": 3,
        "backoff_factor": 2.0,
        "max_backoff": 30.0,
    })
    page_size: int = 100
    timeout: float = 30.0
    fetch_workers: int = 2

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation (without secrets)."""
        return {
            "service": self.service,
            "base_id": self.base_id,
            "api_endpoint": self.api_endpoint,
            "rate_limit": self.rate_limit,
            "retry_config": self.retry_config,
            "page_size": self.page_size,
            "timeout": self.timeout,
            "fetch_workers": self.fetch_workers,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceConfig":
        """Create from dictionary representation."""
        defaults = cls()
        retry_config = dict(defaults.retry_config)
        retry_config.update(data.get("retry_config", {}))
        return cls(
            service=data.get("service", defaults.service),
            base_id=data.get("base_id"),
            api_key=data.get("api_key"),
            api_endpoint=data.get("api_endpoint"),
            rate_limit=data.get("rate_limit", defaults.rate_limit),
            retry_config=retry_config,
            page_size=data.get("page_size", defaults.page_size),
            timeout=data.get("timeout", defaults.timeout),
            fetch_workers=data.get("fetch_workers", defaults.fetch_workers),
        )


@dataclass
class DestinationConfig:
    """Configuration for the hosted relational store."""
    url: Optional[str] = None
    service_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"url": self.url}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DestinationConfig":
        return cls(url=data.get("url"), service_key=data.get("service_key"))


@dataclass
class StorageConfig:
    """Configuration for attachment object storage."""
    bucket: str = "media"
    max_attachment_bytes: int = 25 * 1024 * 1024
    key_prefix: str = ""
    download_timeout: float = 60.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bucket": self.bucket,
            "max_attachment_bytes": self.max_attachment_bytes,
            "key_prefix": self.key_prefix,
            "download_timeout": self.download_timeout,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StorageConfig":
        defaults = cls()
        return cls(
            bucket=data.get("bucket", defaults.bucket),
            max_attachment_bytes=data.get("max_attachment_bytes", defaults.max_attachment_bytes),
            key_prefix=data.get("key_prefix", defaults.key_prefix),
            download_timeout=data.get("download_timeout", defaults.download_timeout),
        )


@dataclass
class MigrationConfig:
    """Configuration for a migration run."""
    name: str = "storytelling-migration"
    description: str = ""

    source: SourceConfig = field(default_factory=SourceConfig)
    destination: DestinationConfig = field(default_factory=DestinationConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    # Execution options
    dry_run: bool = False
    skip_attachments: bool = False
    max_failures: int = 25  # Non-zero exit above this many failed records

    # Per-stage overrides: entity type -> settings
    stages: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    # Output
    output_dir: str = "./data"
    save_extracted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "description": self.description,
            "source": self.source.to_dict(),
            "destination": self.destination.to_dict(),
            "storage": self.storage.to_dict(),
            "dry_run": self.dry_run,
            "skip_attachments": self.skip_attachments,
            "max_failures": self.max_failures,
            "stages": self.stages,
            "output_dir": self.output_dir,
            "save_extracted": self.save_extracted,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationConfig":
        """Create from dictionary representation."""
        return cls(
            name=data.get("name", "storytelling-migration"),
            description=data.get("description", ""),
            source=SourceConfig.from_dict(data.get("source", {})),
            destination=DestinationConfig.from_dict(data.get("destination", {})),
            storage=StorageConfig.from_dict(data.get("storage", {})),
            dry_run=data.get("dry_run", False),
            skip_attachments=data.get("skip_attachments", False),
            max_failures=data.get("max_failures", 25),
            stages=data.get("stages", {}),
            output_dir=data.get("output_dir", "./data"),
            save_extracted=data.get("save_extracted", False),
        )

    def apply_env(self, environ: Optional[Mapping[str, str]] = None) -> "MigrationConfig":
        """Fill credentials that are not in the config file from the environment."""
        env = os.environ if environ is None else environ

        self.source.api_key = (
            self.source.api_key
            or env.get("AIRTABLE_API_KEY")
            or env.get("SOURCE_API_KEY")
        )
        self.source.base_id = self.source.base_id or env.get("AIRTABLE_BASE_ID")
        self.destination.url = (
            self.destination.url
            or env.get("SUPABASE_URL")
            or env.get("NEXT_PUBLIC_SUPABASE_URL")
        )
        self.destination.service_key = (
            self.destination.service_key or env.get("SUPABASE_SERVICE_ROLE_KEY")
        )
        return self

    def missing_settings(self) -> List[str]:
        """List the settings a run cannot start without."""
        missing = []
        if not self.source.api_key:
            missing.append("source api key (AIRTABLE_API_KEY)")
        if self.source.service == "airtable" and not self.source.base_id and not self.source.api_endpoint:
            missing.append("source base id (AIRTABLE_BASE_ID)")
        if self.source.service != "airtable" and not self.source.api_endpoint:
            missing.append("source api_endpoint")
        if not self.destination.url:
            missing.append("destination url (SUPABASE_URL)")
        if not self.destination.service_key:
            missing.append("destination service key (SUPABASE_SERVICE_ROLE_KEY)")
        return missing

    def validate(self) -> None:
        """Raise ConfigurationError when required settings are missing."""
        missing = self.missing_settings()
        if missing:
            raise ConfigurationError("Missing configuration: " + ", ".join(missing))
