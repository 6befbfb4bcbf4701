import pytest

from ledger_migration.loaders.destination import MemoryDestinationStore
from ledger_migration.loaders.storage import MemoryObjectStorage
from ledger_migration.models.migration import MigrationConfig, SourceConfig

FOREIGN_KEYS = {
    "transcripts": {"storyteller_id": "storytellers"},
    "media": {"storyteller_id": "storytellers"},
    "stories": {"storyteller_id": "storytellers"},
    "quotes": {"transcript_id": "transcripts"},
}


@pytest.fixture
def store() -> MemoryDestinationStore:
    return MemoryDestinationStore(foreign_keys=FOREIGN_KEYS)


@pytest.fixture
def storage() -> MemoryObjectStorage:
    return MemoryObjectStorage(bucket="media", base_url="https://cdn.test/")


@pytest.fixture
def config(tmp_path) -> MigrationConfig:
    return MigrationConfig(
        name="test-migration",
        source=SourceConfig(
            api_key="key-test",
            base_id="appTEST",
            rate_limit=None,
            retry_config={"max_retries": 2, "backoff_factor": 2.0, "max_backoff": 0},
        ),
        output_dir=str(tmp_path),
    )
