"""Display-name matching against legacy destination rows."""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional

from ..models.record import MatchCandidate

logger = logging.getLogger(__name__)


class MatchTier(str, Enum):
    """Matching tiers in priority order."""
    EXACT = "exact"
    NORMALIZED_EXACT = "normalized_exact"
    NORMALIZED_SUBSTRING = "normalized_substring"


@dataclass(frozen=True)
class MatchResult:
    candidate: MatchCandidate
    tier: MatchTier


def normalize_name(name: Optional[str]) -> str:
    """Lower-case, collapse internal whitespace and trim."""
    if not name:
        return ""
    return " ".join(str(name).split()).lower()


class IdentityMatcher:
    """
    Finds the destination row a source display name refers to.

    Tiers are tried in order and the first tier with any hit wins:
    exact, normalized-exact, then normalized-substring (either name
    containing the other). Within a tier the candidate whose name length is
    closest to the source name wins, then the lowest destination id, so
    results never depend on candidate order.

    No I/O; the same inputs always produce the same result.
    """

    def match(self, display_name: Optional[str], candidates: Iterable[MatchCandidate]) -> Optional[MatchResult]:
        """
        Match a display name against candidates.

        Returns:
            MatchResult, or None when no tier produces a match
        """
        pool = list(candidates)
        target = normalize_name(display_name)
        if not target or not pool:
            return None

        exact = [c for c in pool if c.display_name == display_name]
        if exact:
            return MatchResult(self._pick(exact, display_name), MatchTier.EXACT)

        normalized = [(c, normalize_name(c.display_name)) for c in pool]

        same = [c for c, name in normalized if name == target]
        if same:
            return MatchResult(self._pick(same, display_name), MatchTier.NORMALIZED_EXACT)

        contained = [c for c, name in normalized if name and (name in target or target in name)]
        if contained:
            return MatchResult(self._pick(contained, display_name), MatchTier.NORMALIZED_SUBSTRING)

        return None

    @staticmethod
    def _pick(hits: List[MatchCandidate], display_name: str) -> MatchCandidate:
        target_length = len(normalize_name(display_name))
        return min(
            hits,
            key=lambda c: (abs(len(normalize_name(c.display_name)) - target_length), c.destination_id),
        )
