"""
Retention-policy garbage collection for container registries.

This package decides which image digests in a registry are safe to delete
while protecting anything a cluster workload still references:
- Repository inventory (registry listings -> digest records)
- In-use index (cluster workloads -> referenced tags per repository)
- Retention evaluator (keep-count, max-age and tag-pattern gates)
- Deletion executor (per-digest delete with failure isolation)
"""

from registry_lifecycle.models import DeletionResult, DigestRecord, EvictionDecision, Repository, RetentionPolicy
from registry_lifecycle.retention import evaluate, select_evictions

__all__ = [
    "DeletionResult",
    "DigestRecord",
    "EvictionDecision",
    "Repository",
    "RetentionPolicy",
    "evaluate",
    "select_evictions",
]
