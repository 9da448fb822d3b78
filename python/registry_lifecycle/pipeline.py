"""
Retention run orchestration.

A run builds the cluster-wide in-use index once, lists the project's
repositories, then processes repositories on a bounded thread pool. Each
worker fetches one repository's listing, evaluates it and applies the
deletions. Repositories are independent: a failure in one is reported and the
others carry on. A failure to build the in-use index or list the catalog
aborts the run before anything is deleted.
"""

import concurrent.futures
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AbstractSet, Any, Dict, List, Optional

from registry_lifecycle.deletion import DeleteFn, execute_deletions
from registry_lifecycle.error_utils import CollectionError
from registry_lifecycle.in_use import build_in_use_index, tags_for
from registry_lifecycle.inventory import build_repository
from registry_lifecycle.logging_utils import get_logger, log_exception
from registry_lifecycle.models import DeletionResult, DeletionStatus, EvictionDecision, RetentionPolicy
from registry_lifecycle.retention import evaluate, select_evictions

logger = get_logger(__name__)

PREVIEW_SIZE = 10


def current_time_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class RepositoryReport:
    """Outcome of processing one repository"""
    name: str
    used_tags: AbstractSet[str] = field(default_factory=frozenset)
    decisions: List[EvictionDecision] = field(default_factory=list)
    results: List[DeletionResult] = field(default_factory=list)
    error: Optional[str] = None
    dry_run: bool = False

    @property
    def total(self) -> int:
        return len(self.decisions)

    @property
    def evicted(self) -> int:
        return sum(1 for d in self.decisions if d.evict)

    @property
    def protected(self) -> int:
        return self.total - self.evicted

    @property
    def deleted(self) -> int:
        return sum(1 for r in self.results if r.succeeded)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.status == DeletionStatus.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "repository": self.name,
            "used_tags": sorted(self.used_tags),
            "digests": self.total,
            "protected": self.protected,
            "evicted": self.evicted,
            "deleted": self.deleted,
            "failed": self.failed,
            "error": self.error,
            "decisions": [d.to_dict() for d in self.decisions],
            "results": [r.to_dict() for r in self.results],
        }


@dataclass
class RunReport:
    """Outcome of a whole retention run"""
    policy: RetentionPolicy
    now_ms: int
    dry_run: bool
    repositories: List[RepositoryReport] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return any(r.error or r.failed for r in self.repositories)

    @property
    def exit_code(self) -> int:
        return 1 if self.has_errors else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "evaluated_at": datetime.fromtimestamp(self.now_ms / 1000, tz=timezone.utc),
            "dry_run": self.dry_run,
            "policy": self.policy.to_dict(),
            "repositories": [r.to_dict() for r in sorted(self.repositories, key=lambda r: r.name)],
        }


class RetentionRun:
    """Drives fetch -> evaluate -> delete over every managed repository"""

    def __init__(
        self,
        registry,
        collector,
        delete: DeleteFn,
        policy: RetentionPolicy,
        registry_host: str,
        project: Optional[str] = None,
        max_workers: int = 4,
        dry_run: bool = True,
        allow_truncated: bool = False,
    ):
        """Initialize a retention run

        Args:
            registry: Object with ``list_repositories()`` and ``get_manifest_listing(name)``
            collector: Object with ``collect_image_references()``
            delete: Callable ``delete(repository, digest)``
            policy: Retention policy applied to every repository
            registry_host: Host whose image references count as in use
            project: Project prefix the in-use index is scoped to
            max_workers: Size of the repository worker pool
            dry_run: Evaluate and report without deleting
            allow_truncated: Evaluate truncated tag listings instead of failing them
        """
        self.registry = registry
        self.collector = collector
        self.delete = delete
        self.policy = policy
        self.registry_host = registry_host
        self.project = project
        self.max_workers = max(1, max_workers)
        self.dry_run = dry_run
        self.allow_truncated = allow_truncated

    def build_in_use_index(self) -> Dict[str, set]:
        references = self.collector.collect_image_references()
        index = build_in_use_index(references, self.registry_host, self.project)
        total_tags = sum(len(tags) for tags in index.values())
        logger.info(f"In-use index: {total_tags} tags across {len(index)} repositories "
                    f"(from {len(references)} image references)")
        return index

    def process_repository(self, name: str, used_tags: AbstractSet[str], now_ms: int) -> RepositoryReport:
        """Fetch, evaluate and delete for a single repository."""
        try:
            listing = self.registry.get_manifest_listing(name)
            repository = build_repository(listing, allow_truncated=self.allow_truncated)
        except CollectionError as e:
            logger.error(f"Skipping {name}: {e.message}")
            logger.debug(str(e))
            return RepositoryReport(name=name, used_tags=used_tags, error=e.message, dry_run=self.dry_run)

        decisions = evaluate(repository.records, used_tags, self.policy, now_ms)
        evicted = [record.digest for record in select_evictions(decisions)]

        if not evicted:
            logger.info(f"image={name}: {len(used_tags)} tags found in cluster, no digests to delete")
            return RepositoryReport(name=name, used_tags=used_tags, decisions=decisions, dry_run=self.dry_run)

        logger.info(f"image={name}: {len(used_tags)} tags found in cluster, {len(evicted)} digests to delete")
        for digest in evicted[:PREVIEW_SIZE]:
            logger.info(f"   {digest}")
        if len(evicted) > PREVIEW_SIZE:
            logger.info(f"   ... and {len(evicted) - PREVIEW_SIZE} others")

        if self.dry_run:
            logger.warning(f"DRY RUN: {len(evicted)} digests in {name} would be deleted")
        results = execute_deletions(name, evicted, self.delete, dry_run=self.dry_run)
        return RepositoryReport(name=name, used_tags=used_tags, decisions=decisions, results=results,
                                dry_run=self.dry_run)

    def run(self, now_ms: Optional[int] = None) -> RunReport:
        """Process every managed repository.

        Args:
            now_ms: Evaluation time; defaults to the current time, read once per run

        Raises:
            CollectionError: If the in-use index or repository catalog cannot be built
        """
        now_ms = current_time_ms() if now_ms is None else now_ms
        report = RunReport(policy=self.policy, now_ms=now_ms, dry_run=self.dry_run)

        index = self.build_in_use_index()
        repositories = self.registry.list_repositories()
        if not repositories:
            logger.warning("No repositories found to process")
            return report

        logger.info(f"Processing {len(repositories)} repositories with {self.max_workers} workers")
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            future_to_repo = {
                executor.submit(self.process_repository, name, tags_for(index, name), now_ms): name
                for name in repositories
            }

            completed = 0
            for future in concurrent.futures.as_completed(future_to_repo):
                name = future_to_repo[future]
                try:
                    report.repositories.append(future.result())
                except Exception as e:
                    log_exception(logger, f"Unexpected error processing repository {name}", e)
                    report.repositories.append(RepositoryReport(name=name, error=str(e), dry_run=self.dry_run))
                finally:
                    completed += 1
                    if completed % 10 == 0:
                        logger.info(f"Processed {completed}/{len(repositories)} repositories")

        return report
