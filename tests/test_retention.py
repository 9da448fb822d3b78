"""Unit tests for registry_lifecycle/retention.py"""

import itertools
import re

import pytest

from registry_lifecycle.models import MS_PER_DAY, DigestRecord, RetentionPolicy
from registry_lifecycle.retention import (
    age_cutoff_ms,
    evaluate,
    is_in_use,
    matches_tag_pattern,
    most_recent_digests,
    select_evictions,
)

NOW = 1_700_000_000_000


def record(digest, days_old, tags=()):
    return DigestRecord(digest=digest, tags=tuple(tags), created_at_ms=NOW - int(days_old * MS_PER_DAY))


def policy(keep=10, days=365, pattern=".*"):
    return RetentionPolicy.from_values(keep_count=keep, max_age_days=days, tag_pattern=pattern)


def evicted_digests(decisions):
    return [r.digest for r in select_evictions(decisions)]


@pytest.fixture
def mixed_repository():
    return [
        record("sha256:d1", 1, ["v1"]),
        record("sha256:d2", 2, ["v2"]),
        record("sha256:d3", 40, ["v3"]),
        record("sha256:d4", 50, []),
    ]


class TestPredicates:
    """Tests for the individual retention gates"""

    def test_age_cutoff(self):
        """Test cutoff is now minus max_age_days"""
        assert age_cutoff_ms(policy(days=30), NOW) == NOW - 30 * MS_PER_DAY
        assert age_cutoff_ms(policy(days=0), NOW) == NOW

    def test_most_recent_picks_newest(self):
        """Test the keep_count newest digests are selected"""
        records = [record("a", 5), record("b", 1), record("c", 3)]
        assert most_recent_digests(records, 2) == {"b", "c"}

    def test_most_recent_zero_keeps_nothing(self):
        """Test keep_count 0 protects no digest by recency"""
        assert most_recent_digests([record("a", 1)], 0) == set()

    def test_most_recent_ties_keep_input_order(self):
        """Test equal timestamps are broken by listing order"""
        records = [record("first", 10), record("second", 10), record("third", 10)]
        assert most_recent_digests(records, 2) == {"first", "second"}

    def test_is_in_use(self):
        """Test any tag in the used set marks the digest in use"""
        assert is_in_use(record("a", 1, ["x", "y"]), {"y"})
        assert not is_in_use(record("a", 1, ["x"]), {"y"})
        assert not is_in_use(record("a", 1, []), {"y"})

    def test_untagged_matches_any_pattern(self):
        """Test untagged digests are always eligible"""
        assert matches_tag_pattern(record("a", 1, []), policy(pattern="^release-"))

    def test_pattern_needs_one_matching_tag(self):
        """Test a tagged digest needs at least one matching tag"""
        p = policy(pattern="^release-")
        assert matches_tag_pattern(record("a", 1, ["snapshot", "release-2"]), p)
        assert not matches_tag_pattern(record("a", 1, ["snapshot-1"]), p)

    def test_pattern_is_unanchored_search(self):
        """Test a pattern without anchors matches anywhere in the tag"""
        assert matches_tag_pattern(record("a", 1, ["build-rc-7"]), policy(pattern="rc"))


class TestEvaluate:
    """Tests for evaluate"""

    def test_mixed_repository(self, mixed_repository):
        """Test recency, use and age protect, and untagged old digests go"""
        decisions = evaluate(mixed_repository, {"v2"}, policy(keep=2, days=30), NOW)

        by_digest = {d.digest: d for d in decisions}
        assert by_digest["sha256:d1"].recent and not by_digest["sha256:d1"].evict
        assert by_digest["sha256:d2"].recent and by_digest["sha256:d2"].in_use
        assert not by_digest["sha256:d2"].evict
        assert by_digest["sha256:d3"].evict
        assert by_digest["sha256:d4"].evict
        assert by_digest["sha256:d4"].matches_pattern
        assert evicted_digests(decisions) == ["sha256:d3", "sha256:d4"]

    def test_release_pattern_scopes_eviction(self):
        """Test only digests with a matching tag are evicted"""
        records = [
            record("sha256:new", 0, ["latest"]),
            record("sha256:snap", 400, ["snapshot-1"]),
            record("sha256:rel", 400, ["release-1"]),
        ]
        decisions = evaluate(records, set(), policy(keep=1, days=30, pattern="^release-"), NOW)
        assert evicted_digests(decisions) == ["sha256:rel"]

    def test_decisions_follow_input_order(self, mixed_repository):
        """Test one decision per record in input order"""
        decisions = evaluate(mixed_repository, set(), policy(keep=0, days=0), NOW)
        assert [d.digest for d in decisions] == [r.digest for r in mixed_repository]

    def test_keep_count_covering_repository_evicts_nothing(self, mixed_repository):
        """Test keep_count >= digest count keeps everything"""
        for keep in (4, 5, 100):
            decisions = evaluate(mixed_repository, set(), policy(keep=keep, days=0), NOW)
            assert select_evictions(decisions) == []

    def test_used_oldest_digest_survives(self):
        """Test an in-use digest is kept even when it is the oldest"""
        records = [record("new", 1, ["b"]), record("oldest", 900, ["a"])]
        decisions = evaluate(records, {"a"}, policy(keep=0, days=0), NOW)
        assert evicted_digests(decisions) == ["new"]

    def test_age_boundary_is_protected(self):
        """Test a digest created exactly at the cutoff is kept"""
        cutoff = NOW - 30 * MS_PER_DAY
        records = [
            DigestRecord("at", ("x",), cutoff),
            DigestRecord("before", ("y",), cutoff - 1),
        ]
        decisions = evaluate(records, set(), policy(keep=0, days=30), NOW)
        assert evicted_digests(decisions) == ["before"]

    def test_empty_repository(self):
        """Test an empty repository yields no decisions"""
        assert evaluate([], set(), policy(), NOW) == []

    def test_none_used_tags_treated_as_empty(self):
        """Test a missing in-use slice protects nothing"""
        decisions = evaluate([record("a", 500, ["x"])], None, policy(keep=0, days=30), NOW)
        assert evicted_digests(decisions) == ["a"]

    def test_evict_is_exact_conjunction(self):
        """Test evict equals not recent, not in use, not within age, and pattern match"""
        records = [
            record(f"d{i}", days, tags)
            for i, (days, tags) in enumerate(itertools.product(
                (1, 29, 31, 400), ([], ["rel-1"], ["dev-1"], ["rel-2", "dev-2"])
            ))
        ]
        for keep, used in ((0, set()), (3, {"rel-2"}), (7, {"dev-1", "rel-1"})):
            for decision in evaluate(records, used, policy(keep=keep, days=30, pattern="^rel-"), NOW):
                expected = (not decision.recent and not decision.in_use
                            and not decision.within_age and decision.matches_pattern)
                assert decision.evict == expected

    def test_idempotent_and_no_reselection_after_delete(self, mixed_repository):
        """Test re-evaluation is stable and deleted digests stay gone"""
        p = policy(keep=2, days=30)
        first = evicted_digests(evaluate(mixed_repository, {"v2"}, p, NOW))
        assert evicted_digests(evaluate(mixed_repository, {"v2"}, p, NOW)) == first

        remaining = [r for r in mixed_repository if r.digest not in first]
        assert evicted_digests(evaluate(remaining, {"v2"}, p, NOW)) == []

    def test_protected_by_reports_gates(self, mixed_repository):
        """Test protected_by names every gate that keeps a digest"""
        decisions = evaluate(mixed_repository, {"v2"}, policy(keep=2, days=30), NOW)
        by_digest = {d.digest: d for d in decisions}
        assert by_digest["sha256:d2"].protected_by == ["recent", "in_use", "within_age"]
        assert by_digest["sha256:d3"].protected_by == []

    def test_compiled_pattern_accepted(self):
        """Test a precompiled pattern is used as-is"""
        p = RetentionPolicy.from_values(0, 0, re.compile("^v"))
        decisions = evaluate([record("a", 10, ["v1"]), record("b", 10, ["x"])], set(), p, NOW)
        assert evicted_digests(decisions) == ["a"]
