"""Unit tests for registry_lifecycle/pipeline.py"""

import threading
from unittest.mock import MagicMock

import pytest

from registry_lifecycle.error_utils import CollectionError, create_malformed_listing_error
from registry_lifecycle.inventory import ManifestListing
from registry_lifecycle.models import MS_PER_DAY, DeletionStatus, RetentionPolicy
from registry_lifecycle.pipeline import RetentionRun

NOW = 1_700_000_000_000


def manifest(*entries):
    """entries: (digest, days_old, tags)"""
    return {
        "manifest": {
            digest: {"tag": list(tags), "timeCreatedMs": str(NOW - days * MS_PER_DAY)}
            for digest, days, tags in entries
        }
    }


class FakeRegistry:
    def __init__(self, listings, catalog=None):
        self.listings = listings
        self.catalog = catalog if catalog is not None else list(listings)
        self.requested = []
        self._lock = threading.Lock()

    def list_repositories(self):
        return list(self.catalog)

    def get_manifest_listing(self, repository):
        with self._lock:
            self.requested.append(repository)
        listing = self.listings[repository]
        if isinstance(listing, Exception):
            raise listing
        if isinstance(listing, ManifestListing):
            return listing
        return ManifestListing(repository=repository, payload=listing)


class FakeCollector:
    def __init__(self, references):
        self.references = references

    def collect_image_references(self):
        return list(self.references)


class RecordingDeleter:
    def __init__(self, failing=()):
        self.failing = set(failing)
        self.deleted = []
        self._lock = threading.Lock()

    def __call__(self, repository, digest):
        if digest in self.failing:
            raise RuntimeError(f"cannot delete {digest}")
        with self._lock:
            self.deleted.append((repository, digest))


@pytest.fixture
def policy():
    return RetentionPolicy.from_values(keep_count=1, max_age_days=30, tag_pattern=".*")


def make_run(registry, collector, deleter, policy, dry_run=False, **kwargs):
    return RetentionRun(registry=registry, collector=collector, delete=deleter, policy=policy,
                        registry_host="eu.gcr.io", project="p", max_workers=4, dry_run=dry_run, **kwargs)


class TestRetentionRun:
    """Tests for RetentionRun"""

    def test_deletes_only_evicted_digests(self, policy):
        """Test old unused digests are deleted and in-use ones survive"""
        registry = FakeRegistry({
            "p/api": manifest(("sha256:new", 1, ["v3"]), ("sha256:used", 90, ["v1"]), ("sha256:old", 100, ["v0"])),
            "p/web": manifest(("sha256:w1", 1, ["latest"])),
        })
        collector = FakeCollector(["eu.gcr.io/p/api:v1", "gcr.io/p/api:v0"])
        deleter = RecordingDeleter()

        report = make_run(registry, collector, deleter, policy).run(now_ms=NOW)

        assert deleter.deleted == [("p/api", "sha256:old")]
        by_name = {r.name: r for r in report.repositories}
        assert by_name["p/api"].used_tags == {"v1"}
        assert (by_name["p/api"].protected, by_name["p/api"].evicted, by_name["p/api"].deleted) == (2, 1, 1)
        assert by_name["p/web"].evicted == 0
        assert report.exit_code == 0

    def test_dry_run_deletes_nothing(self, policy):
        """Test dry run evaluates but never calls the deleter"""
        registry = FakeRegistry({"p/api": manifest(("a", 1, ["v2"]), ("b", 100, ["v1"]))})
        deleter = RecordingDeleter()

        report = make_run(registry, FakeCollector([]), deleter, policy, dry_run=True).run(now_ms=NOW)

        assert deleter.deleted == []
        assert [r.status for r in report.repositories[0].results] == [DeletionStatus.DRY_RUN]
        assert report.exit_code == 0

    def test_collection_error_is_isolated(self, policy):
        """Test one broken repository does not stop the others"""
        registry = FakeRegistry({
            "p/broken": create_malformed_listing_error("p/broken", "missing timeCreatedMs"),
            "p/api": manifest(("a", 1, ["v2"]), ("b", 100, ["v1"])),
        })
        deleter = RecordingDeleter()

        report = make_run(registry, FakeCollector([]), deleter, policy).run(now_ms=NOW)

        by_name = {r.name: r for r in report.repositories}
        assert by_name["p/broken"].error == "Malformed manifest listing for repository p/broken"
        assert by_name["p/broken"].results == []
        assert deleter.deleted == [("p/api", "b")]
        assert report.exit_code == 1

    def test_truncated_listing_skips_repository(self, policy):
        """Test a truncated tag listing deletes nothing in that repository"""
        listing = ManifestListing("p/api", manifest(("a", 1, []), ("b", 100, [])), truncated=True)
        deleter = RecordingDeleter()

        report = make_run(FakeRegistry({"p/api": listing}), FakeCollector([]), deleter, policy).run(now_ms=NOW)

        assert deleter.deleted == []
        assert "truncated" in report.repositories[0].error
        assert report.exit_code == 1

    def test_truncated_listing_allowed(self, policy):
        """Test truncated listings are evaluated when allowed"""
        listing = ManifestListing("p/api", manifest(("a", 1, []), ("b", 100, [])), truncated=True)
        deleter = RecordingDeleter()

        run = make_run(FakeRegistry({"p/api": listing}), FakeCollector([]), deleter, policy, allow_truncated=True)
        run.run(now_ms=NOW)

        assert deleter.deleted == [("p/api", "b")]

    def test_deletion_failure_sets_exit_code(self, policy):
        """Test per-digest failures are recorded and make the run fail"""
        registry = FakeRegistry({"p/api": manifest(("a", 1, []), ("b", 100, []), ("c", 200, []))})
        deleter = RecordingDeleter(failing={"b"})

        report = make_run(registry, FakeCollector([]), deleter, policy).run(now_ms=NOW)

        repo = report.repositories[0]
        assert (repo.deleted, repo.failed) == (1, 1)
        assert deleter.deleted == [("p/api", "c")]
        assert report.exit_code == 1

    def test_cluster_failure_aborts_before_registry(self, policy):
        """Test an unreadable cluster stops the run before any deletion"""
        collector = MagicMock()
        collector.collect_image_references.side_effect = CollectionError("cluster unreachable")
        registry = MagicMock()
        deleter = RecordingDeleter()

        with pytest.raises(CollectionError):
            make_run(registry, collector, deleter, policy).run(now_ms=NOW)

        registry.list_repositories.assert_not_called()
        assert deleter.deleted == []

    def test_catalog_failure_aborts(self, policy):
        """Test an unreadable catalog stops the run"""
        registry = MagicMock()
        registry.list_repositories.side_effect = CollectionError("catalog unavailable")

        with pytest.raises(CollectionError):
            make_run(registry, FakeCollector([]), RecordingDeleter(), policy).run(now_ms=NOW)
        registry.get_manifest_listing.assert_not_called()

    def test_unexpected_error_is_recorded(self, policy):
        """Test unexpected worker errors are reported per repository"""
        registry = FakeRegistry({"p/api": manifest(("a", 1, []))})
        registry.get_manifest_listing = MagicMock(side_effect=KeyError("boom"))

        report = make_run(registry, FakeCollector([]), RecordingDeleter(), policy).run(now_ms=NOW)

        assert report.repositories[0].error
        assert report.exit_code == 1

    def test_empty_catalog(self, policy):
        """Test a project without repositories is a clean no-op"""
        report = make_run(FakeRegistry({}), FakeCollector([]), RecordingDeleter(), policy).run(now_ms=NOW)
        assert report.repositories == []
        assert report.exit_code == 0

    def test_report_to_dict(self, policy):
        """Test the run report serializes decisions and results"""
        registry = FakeRegistry({"p/api": manifest(("a", 1, ["v2"]), ("b", 100, ["v1"]))})
        report = make_run(registry, FakeCollector([]), RecordingDeleter(), policy).run(now_ms=NOW)

        data = report.to_dict()
        assert data["policy"] == {"keep_count": 1, "max_age_days": 30, "tag_pattern": ".*"}
        assert data["dry_run"] is False
        repo = data["repositories"][0]
        assert repo["repository"] == "p/api"
        assert [d["evict"] for d in repo["decisions"]] == [False, True]
        assert repo["results"] == [{"digest": "b", "status": "deleted", "reason": None}]
        assert "recent" in repo["decisions"][0]["protected_by"]
        assert repo["decisions"][1]["protected_by"] == []
