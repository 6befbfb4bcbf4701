from ledger_migration.models.record import MatchCandidate
from ledger_migration.services.matcher import IdentityMatcher, MatchTier, normalize_name


def candidates(*names):
    return [MatchCandidate(f"id-{i}", name) for i, name in enumerate(names)]


class TestNormalizeName:
    def test_collapses_whitespace_and_case(self):
        assert normalize_name("  Cheryl   Ann\tMARA ") == "cheryl ann mara"

    def test_empty(self):
        assert normalize_name(None) == ""
        assert normalize_name("   ") == ""


class TestIdentityMatcher:
    def setup_method(self):
        self.matcher = IdentityMatcher()

    def test_exact_match_beats_looser_tiers(self):
        pool = candidates("Cheryl", "cheryl ann mara", "Cheryl Ann Mara")

        result = self.matcher.match("Cheryl Ann Mara", pool)

        assert result.tier == MatchTier.EXACT
        assert result.candidate.destination_id == "id-2"

    def test_full_name_prefers_exact_over_shorter_variant(self):
        pool = [MatchCandidate("a", "Cheryl Ann Mara"), MatchCandidate("b", "Cheryl Mara")]

        first = self.matcher.match("Cheryl Ann Mara", pool)
        second = self.matcher.match("Cheryl Ann Mara", pool)

        assert first.candidate.destination_id == "a"
        assert first.tier == MatchTier.EXACT
        assert second == first

    def test_normalized_exact(self):
        result = self.matcher.match("Cheryl  Ann Mara ", candidates("Uncle Bob", "cheryl ann mara"))

        assert result.tier == MatchTier.NORMALIZED_EXACT
        assert result.candidate.destination_id == "id-1"

    def test_substring_either_direction(self):
        shorter = self.matcher.match("Cheryl Ann Mara", candidates("Uncle Bob", "Cheryl Ann"))
        longer = self.matcher.match("Cheryl", candidates("Uncle Bob", "Cheryl Ann Mara"))

        assert shorter.tier == MatchTier.NORMALIZED_SUBSTRING
        assert shorter.candidate.display_name == "Cheryl Ann"
        assert longer.tier == MatchTier.NORMALIZED_SUBSTRING
        assert longer.candidate.display_name == "Cheryl Ann Mara"

    def test_substring_prefers_closest_length(self):
        pool = candidates("Cheryl Ann Mara Smith-Jones", "Cheryl Ann Mara S")

        result = self.matcher.match("Cheryl Ann Mara", pool)

        assert result.candidate.display_name == "Cheryl Ann Mara S"

    def test_no_match(self):
        assert self.matcher.match("Cheryl Ann Mara", candidates("Uncle Bob", "Aunty Rose")) is None

    def test_empty_inputs(self):
        assert self.matcher.match("", candidates("Cheryl")) is None
        assert self.matcher.match("   ", candidates("Cheryl")) is None
        assert self.matcher.match("Cheryl", []) is None

    def test_blank_candidates_never_match_by_substring(self):
        assert self.matcher.match("Cheryl", candidates("", "  ")) is None

    def test_independent_of_candidate_order(self):
        pool = [
            MatchCandidate("b", "Cheryl Ann"),
            MatchCandidate("a", "cheryl ann"),
            MatchCandidate("c", "Cheryl Ann X"),
        ]

        forward = self.matcher.match("cheryl  ann", pool)
        backward = self.matcher.match("cheryl  ann", list(reversed(pool)))

        assert forward == backward
        assert forward.candidate.destination_id == "a"
        assert forward.tier == MatchTier.NORMALIZED_EXACT

    def test_accepts_generators(self):
        result = self.matcher.match("Cheryl", (c for c in candidates("Cheryl")))

        assert result.tier == MatchTier.EXACT
