"""Services for matching, transformation, validation and attachment transfer."""

from .matcher import IdentityMatcher, MatchResult, MatchTier, normalize_name
from .transformer import TransformEngine, TransformedRecord
from .validator import RecordValidator
from .attachments import AttachmentTransfer

__all__ = [
    "IdentityMatcher",
    "MatchResult",
    "MatchTier",
    "normalize_name",
    "TransformEngine",
    "TransformedRecord",
    "RecordValidator",
    "AttachmentTransfer",
]
