"""Source extractors: HTTP client and pagination merger."""

from .base import BaseSourceClient, ExtractionResult
from .source_client import SourceClient
from .page_merger import PageMerger, DateRangePartitioner

__all__ = [
    "BaseSourceClient",
    "ExtractionResult",
    "SourceClient",
    "PageMerger",
    "DateRangePartitioner",
]
