"""Data classes shared by the inventory, evaluation and deletion stages."""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from registry_lifecycle.error_utils import create_policy_error

DEFAULT_KEEP_COUNT = 10
DEFAULT_MAX_AGE_DAYS = 365
DEFAULT_TAG_PATTERN = ".*"

MS_PER_DAY = 24 * 3600 * 1000


@dataclass(frozen=True)
class DigestRecord:
    """One image digest within a repository"""
    digest: str
    tags: Tuple[str, ...]
    created_at_ms: int

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return {
            "digest": self.digest,
            "tags": list(self.tags),
            "created_at_ms": self.created_at_ms,
        }


@dataclass
class Repository:
    """A registry repository and the digests it holds"""
    name: str
    records: List[DigestRecord] = field(default_factory=list)


@dataclass(frozen=True)
class RetentionPolicy:
    """Keep-count, max-age and tag-pattern settings for one run.

    Build instances with :meth:`from_values` so bad settings surface as
    PolicyError before any repository is touched.
    """
    keep_count: int = DEFAULT_KEEP_COUNT
    max_age_days: int = DEFAULT_MAX_AGE_DAYS
    tag_pattern: re.Pattern = field(default_factory=lambda: re.compile(DEFAULT_TAG_PATTERN))

    @classmethod
    def from_values(cls, keep_count: Any = DEFAULT_KEEP_COUNT, max_age_days: Any = DEFAULT_MAX_AGE_DAYS,
                    tag_pattern: Any = DEFAULT_TAG_PATTERN) -> "RetentionPolicy":
        """Validate raw settings and build a policy.

        Args:
            keep_count: Number of most recent digests always retained
            max_age_days: Digests younger than this are always retained
            tag_pattern: Regular expression (string or compiled) scoping deletions

        Raises:
            PolicyError: If a value is negative, non-integer or the pattern does not compile
        """
        keep = _non_negative_int("keep_count", keep_count)
        age = _non_negative_int("max_age_days", max_age_days)

        if isinstance(tag_pattern, re.Pattern):
            compiled = tag_pattern
        else:
            if tag_pattern is None or str(tag_pattern) == "":
                tag_pattern = DEFAULT_TAG_PATTERN
            try:
                compiled = re.compile(str(tag_pattern))
            except re.error as e:
                raise create_policy_error("tag_pattern", tag_pattern, f"unparsable regular expression: {e}")

        return cls(keep_count=keep, max_age_days=age, tag_pattern=compiled)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "keep_count": self.keep_count,
            "max_age_days": self.max_age_days,
            "tag_pattern": self.tag_pattern.pattern,
        }


def _non_negative_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise create_policy_error(name, value, "must be an integer")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise create_policy_error(name, value, "must be an integer")
    if isinstance(value, float) and value != number:
        raise create_policy_error(name, value, "must be a whole number")
    if number < 0:
        raise create_policy_error(name, value, "must be non-negative")
    return number


@dataclass(frozen=True)
class EvictionDecision:
    """Outcome of the four retention gates for one digest"""
    record: DigestRecord
    recent: bool
    in_use: bool
    within_age: bool
    matches_pattern: bool
    evict: bool

    @property
    def digest(self) -> str:
        return self.record.digest

    @property
    def protected_by(self) -> List[str]:
        """Names of the gates that keep this digest, empty when evicted."""
        reasons = []
        if self.recent:
            reasons.append("recent")
        if self.in_use:
            reasons.append("in_use")
        if self.within_age:
            reasons.append("within_age")
        if not self.matches_pattern:
            reasons.append("pattern_mismatch")
        return reasons

    def to_dict(self) -> Dict[str, Any]:
        result = self.record.to_dict()
        result.update({
            "recent": self.recent,
            "in_use": self.in_use,
            "within_age": self.within_age,
            "matches_pattern": self.matches_pattern,
            "evict": self.evict,
            "protected_by": self.protected_by,
        })
        return result


class DeletionStatus(Enum):
    DELETED = "deleted"
    FAILED = "failed"
    DRY_RUN = "dry_run"


@dataclass(frozen=True)
class DeletionResult:
    """Per-digest outcome of a deletion batch"""
    digest: str
    status: DeletionStatus
    reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == DeletionStatus.DELETED

    def to_dict(self) -> Dict[str, Any]:
        return {"digest": self.digest, "status": self.status.value, "reason": self.reason}
