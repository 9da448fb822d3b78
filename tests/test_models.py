"""Unit tests for registry_lifecycle/models.py"""

import pytest

from registry_lifecycle.error_utils import ErrorCategory, PolicyError
from registry_lifecycle.models import (
    DeletionResult,
    DeletionStatus,
    DigestRecord,
    RetentionPolicy,
)


class TestRetentionPolicy:
    """Tests for RetentionPolicy.from_values"""

    def test_defaults(self):
        """Test defaults keep 10 digests for 365 days and match every tag"""
        p = RetentionPolicy.from_values()
        assert p.keep_count == 10
        assert p.max_age_days == 365
        assert p.tag_pattern.pattern == ".*"

    def test_string_numbers_are_coerced(self):
        """Test numeric strings from the environment are accepted"""
        p = RetentionPolicy.from_values("5", "30", "^v")
        assert (p.keep_count, p.max_age_days) == (5, 30)

    @pytest.mark.parametrize("pattern", [None, ""])
    def test_empty_pattern_matches_all(self, pattern):
        """Test an unset pattern falls back to match-all"""
        assert RetentionPolicy.from_values(tag_pattern=pattern).tag_pattern.pattern == ".*"

    def test_negative_keep_count_rejected(self):
        """Test a negative keep count raises PolicyError"""
        with pytest.raises(PolicyError) as exc_info:
            RetentionPolicy.from_values(keep_count=-1)
        assert exc_info.value.category == ErrorCategory.CONFIGURATION
        assert exc_info.value.details["field"] == "keep_count"

    def test_negative_age_rejected(self):
        """Test a negative max age raises PolicyError"""
        with pytest.raises(PolicyError):
            RetentionPolicy.from_values(max_age_days=-7)

    @pytest.mark.parametrize("value", ["ten", 2.5, True, None])
    def test_non_integer_keep_count_rejected(self, value):
        """Test non-integer keep counts raise PolicyError"""
        with pytest.raises(PolicyError):
            RetentionPolicy.from_values(keep_count=value)

    def test_unparsable_regex_rejected(self):
        """Test an invalid regular expression raises PolicyError"""
        with pytest.raises(PolicyError) as exc_info:
            RetentionPolicy.from_values(tag_pattern="release-(")
        assert exc_info.value.details["field"] == "tag_pattern"
        assert "regular expression" in exc_info.value.details["reason"]

    def test_to_dict(self):
        """Test policy serializes the pattern source"""
        p = RetentionPolicy.from_values(3, 7, "^rel")
        assert p.to_dict() == {"keep_count": 3, "max_age_days": 7, "tag_pattern": "^rel"}


class TestRecords:
    """Tests for record and result dataclasses"""

    def test_digest_record_to_dict(self):
        """Test tags serialize as a list"""
        r = DigestRecord("sha256:a", ("v1", "latest"), 123)
        assert r.to_dict() == {"digest": "sha256:a", "tags": ["v1", "latest"], "created_at_ms": 123}

    def test_deletion_result(self):
        """Test succeeded is only true for deleted digests"""
        assert DeletionResult("a", DeletionStatus.DELETED).succeeded
        assert not DeletionResult("a", DeletionStatus.DRY_RUN).succeeded
        failed = DeletionResult("a", DeletionStatus.FAILED, reason="boom")
        assert not failed.succeeded
        assert failed.to_dict() == {"digest": "a", "status": "failed", "reason": "boom"}
