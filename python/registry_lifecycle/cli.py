#!/usr/bin/env python3
"""
Registry retention job.

Deletes old, unused image digests from a project's container registry while
keeping the most recent digests of each repository, every digest referenced
by a running pod or replica set, and everything younger than the retention
window.
"""

import argparse
import sys

from registry_lifecycle.config_manager import ConfigManager, get_config_manager
from registry_lifecycle.deletion import GcloudDeleter
from registry_lifecycle.error_utils import CollectionError, PolicyError
from registry_lifecycle.in_use import ClusterImageCollector
from registry_lifecycle.logging_utils import get_logger, parse_log_level, setup_logging
from registry_lifecycle.pipeline import RetentionRun
from registry_lifecycle.registry_client import GcrClient
from registry_lifecycle.report_utils import format_summary_table, save_json, summarize_totals

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_RUN_ERRORS = 1
EXIT_INVALID_CONFIG = 2


def parse_arguments(argv=None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="Delete old, unused image digests from a container registry",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Show what would be deleted (dry-run)
  registry-lifecycle --project my-project

  # Keep the 20 most recent digests and anything younger than 90 days
  registry-lifecycle --project my-project --keep-tags 20 --retention-days 90

  # Only consider digests with a release tag
  registry-lifecycle --project my-project --tag-regex '^v[0-9]+'

  # Actually delete
  registry-lifecycle --project my-project --apply
        """
    )

    parser.add_argument('--config', help='Path to config.yaml (default: CONFIG_FILE env var or ./config.yaml)')
    parser.add_argument('--project', help='Project prefix to manage (default: PROJECT_ID or config)')
    parser.add_argument('--registry-host', help='Registry host (default: REGISTRY_HOST or config, eu.gcr.io)')
    parser.add_argument('--keep-tags', type=int, help='Most recent digests always kept per repository')
    parser.add_argument('--retention-days', type=int, help='Digests younger than this are always kept')
    parser.add_argument('--tag-regex', help='Only digests with a tag matching this pattern may be deleted')
    parser.add_argument('--max-workers', type=int, help='Repositories processed in parallel')
    parser.add_argument(
        '--include-nested',
        action='store_true',
        default=None,
        help='Also manage nested repositories such as build caches (project/name/cache)'
    )

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument('--apply', action='store_true', help='Actually delete digests (default: dry-run)')
    mode.add_argument('--dry-run', action='store_true', help='Only report what would be deleted')

    parser.add_argument('--no-report', action='store_true', help='Do not write the JSON run report')
    parser.add_argument('--log-level', default='INFO', help='Logging level (default: INFO)')

    return parser.parse_args(argv)


def apply_overrides(config: ConfigManager, args) -> None:
    """Route command line flags into the configuration."""
    config.set_override("registry", "project", args.project)
    config.set_override("registry", "host", args.registry_host)
    config.set_override("registry", "include_nested_repositories", args.include_nested)
    config.set_override("retention", "keep_tags", args.keep_tags)
    config.set_override("retention", "retention_days", args.retention_days)
    config.set_override("retention", "tag_regex", args.tag_regex)
    config.set_override("analysis", "max_workers", args.max_workers)


def resolve_dry_run(config: ConfigManager, args) -> bool:
    if args.apply:
        return False
    if args.dry_run:
        return True
    return config.is_dry_run_by_default()


def build_run(config: ConfigManager, dry_run: bool) -> RetentionRun:
    registry_host = config.get_registry_host()
    project = config.get_project()
    allow_truncated = config.allow_truncated_listings()

    registry = GcrClient(
        registry_host=registry_host,
        project=project,
        timeout=config.get_registry_timeout(),
        include_nested=config.include_nested_repositories(),
        allow_truncated=allow_truncated,
    )
    collector = ClusterImageCollector(page_size=config.get_kubernetes_page_size())
    return RetentionRun(
        registry=registry,
        collector=collector,
        delete=GcloudDeleter.from_config(config),
        policy=config.get_retention_policy(),
        registry_host=registry_host,
        project=project,
        max_workers=config.get_max_workers(),
        dry_run=dry_run,
        allow_truncated=allow_truncated,
    )


def main(argv=None):
    """Main function"""
    args = parse_arguments(argv)
    setup_logging(parse_log_level(args.log_level))

    try:
        config = ConfigManager(config_file=args.config, validate=False) if args.config else get_config_manager()
        apply_overrides(config, args)
        config.validate_config()
    except PolicyError as e:
        logger.error(str(e))
        sys.exit(EXIT_INVALID_CONFIG)

    dry_run = resolve_dry_run(config, args)
    policy = config.get_retention_policy()

    logger.info("=" * 60)
    logger.info("   Registry retention" + (" (DRY RUN)" if dry_run else ""))
    logger.info("=" * 60)
    logger.info(f"Registry: {config.get_registry_host()}/{config.get_project()}")
    logger.info(f"Keep tags: {policy.keep_count}, retention days: {policy.max_age_days}, "
                f"tag regex: {policy.tag_pattern.pattern}")

    try:
        report = build_run(config, dry_run).run()
    except CollectionError as e:
        logger.error(str(e))
        logger.error("❌ Run aborted before any deletion")
        sys.exit(EXIT_RUN_ERRORS)
    except KeyboardInterrupt:
        logger.warning("\n⚠️  Operation interrupted by user")
        sys.exit(EXIT_RUN_ERRORS)

    if report.repositories:
        print(format_summary_table(report.repositories))

    totals = summarize_totals(report.repositories)
    logger.info(f"📊 {totals['repositories']} repositories, {totals['digests']} digests, "
                f"{totals['evicted']} to delete, {totals['deleted']} deleted, "
                f"{totals['failed']} failed, {totals['errors']} repositories with errors")

    if not args.no_report:
        save_json(config.get_retention_report_path(), report.to_dict(), timestamp=True)

    if report.exit_code == EXIT_OK:
        logger.info("✓ Retention run completed")
    else:
        logger.warning("⚠️  Retention run completed with errors")
    sys.exit(report.exit_code)


if __name__ == '__main__':
    main()
