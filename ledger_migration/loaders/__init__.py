"""Loaders for the destination database and object storage."""

from .destination import (
    DestinationStore,
    SupabaseDestinationStore,
    MemoryDestinationStore,
    DryRunDestinationStore,
)
from .storage import ObjectStorage, SupabaseObjectStorage, MemoryObjectStorage
from .entity_writer import EntityWriter, RelationRef

__all__ = [
    "DestinationStore",
    "SupabaseDestinationStore",
    "MemoryDestinationStore",
    "DryRunDestinationStore",
    "ObjectStorage",
    "SupabaseObjectStorage",
    "MemoryObjectStorage",
    "EntityWriter",
    "RelationRef",
]
