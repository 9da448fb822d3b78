"""
Retention evaluation for one repository.

A digest is evicted only when every gate lets it go:
- it is not one of the ``keep_count`` most recently created digests
- none of its tags is referenced by a cluster workload
- it was created before the age cutoff
- it is untagged, or at least one tag matches the policy's tag pattern

The first three gates protect; the pattern gate scopes which digests are
eligible at all. Evaluation is pure: the caller supplies ``now_ms`` and
nothing is read from or written to the outside world.
"""

from typing import AbstractSet, Iterable, List, Sequence, Set

from registry_lifecycle.models import MS_PER_DAY, DigestRecord, EvictionDecision, RetentionPolicy


def age_cutoff_ms(policy: RetentionPolicy, now_ms: int) -> int:
    """Oldest creation time (inclusive) that is still protected by age."""
    return now_ms - policy.max_age_days * MS_PER_DAY


def most_recent_digests(records: Sequence[DigestRecord], keep_count: int) -> Set[str]:
    """Digests of the ``keep_count`` newest records.

    Ties on ``created_at_ms`` keep input order; ``sorted`` is stable even
    with ``reverse=True``.
    """
    if keep_count <= 0:
        return set()
    newest_first = sorted(records, key=lambda r: r.created_at_ms, reverse=True)
    return {r.digest for r in newest_first[:keep_count]}


def is_in_use(record: DigestRecord, used_tags: AbstractSet[str]) -> bool:
    return any(tag in used_tags for tag in record.tags)


def matches_tag_pattern(record: DigestRecord, policy: RetentionPolicy) -> bool:
    """Untagged digests are always eligible; tagged ones need one matching tag."""
    if not record.tags:
        return True
    return any(policy.tag_pattern.search(tag) for tag in record.tags)


def evaluate(records: Sequence[DigestRecord], used_tags: AbstractSet[str],
             policy: RetentionPolicy, now_ms: int) -> List[EvictionDecision]:
    """Run the four retention gates over a repository's digests.

    Args:
        records: Every digest in the repository
        used_tags: Tags of this repository referenced by cluster workloads
        policy: Retention policy for the run
        now_ms: Evaluation time in milliseconds since epoch

    Returns:
        One decision per record, in input order
    """
    used_tags = used_tags or frozenset()
    recent = most_recent_digests(records, policy.keep_count)
    cutoff = age_cutoff_ms(policy, now_ms)

    decisions = []
    for record in records:
        is_recent = record.digest in recent
        in_use = is_in_use(record, used_tags)
        within_age = record.created_at_ms >= cutoff
        matches = matches_tag_pattern(record, policy)
        decisions.append(EvictionDecision(
            record=record,
            recent=is_recent,
            in_use=in_use,
            within_age=within_age,
            matches_pattern=matches,
            evict=not is_recent and not in_use and not within_age and matches,
        ))
    return decisions


def select_evictions(decisions: Iterable[EvictionDecision]) -> List[DigestRecord]:
    """Records whose decision is evict, in decision order."""
    return [d.record for d in decisions if d.evict]
