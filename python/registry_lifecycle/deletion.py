"""
Deletion of evicted digests.

``execute_deletions`` drives any delete callable over a repository's eviction
set and never stops early: each digest gets its own result. ``GcloudDeleter``
is the production callable; it removes a digest and every tag pointing at it.
"""

import subprocess
from typing import Callable, Iterable, List

from registry_lifecycle.error_utils import ActionableError, create_deletion_error
from registry_lifecycle.logging_utils import get_logger
from registry_lifecycle.models import DeletionResult, DeletionStatus
from registry_lifecycle.retry_utils import is_not_found_error, retry_with_backoff

logger = get_logger(__name__)

DeleteFn = Callable[[str, str], None]


def failure_reason(error: Exception) -> str:
    """The underlying cause of a failed delete, e.g. gcloud's error output."""
    if isinstance(error, ActionableError):
        return str(error.details.get("error_message") or error.message)
    return str(error)


def execute_deletions(repository: str, digests: Iterable[str], delete: DeleteFn,
                      dry_run: bool = False) -> List[DeletionResult]:
    """Delete each digest, recording failures without aborting the batch.

    Args:
        repository: Repository the digests belong to
        digests: Digests selected for eviction
        delete: Callable ``delete(repository, digest)``; raising marks the digest failed
        dry_run: Record what would be deleted without calling ``delete``

    Returns:
        One result per digest, in input order
    """
    results = []
    for digest in digests:
        if dry_run:
            results.append(DeletionResult(digest=digest, status=DeletionStatus.DRY_RUN))
            continue
        try:
            delete(repository, digest)
        except Exception as e:
            reason = failure_reason(e)
            logger.error(f"Failed to delete {repository}@{digest}: {reason}")
            results.append(DeletionResult(digest=digest, status=DeletionStatus.FAILED, reason=reason))
            continue
        logger.info(f"Deleted {repository}@{digest}")
        results.append(DeletionResult(digest=digest, status=DeletionStatus.DELETED))
    return results


class GcloudDeleter:
    """Deletes digests with ``gcloud container images delete --force-delete-tags``"""

    def __init__(
        self,
        registry_host: str,
        timeout: int = 300,
        max_retries: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        gcloud_binary: str = "gcloud",
    ):
        self.registry_host = registry_host
        self.timeout = timeout
        self.gcloud_binary = gcloud_binary
        self._retry = retry_with_backoff(
            max_retries=max_retries,
            initial_delay=initial_delay,
            max_delay=max_delay,
            exponential_base=exponential_base,
            jitter=jitter,
        )

    @classmethod
    def from_config(cls, config_manager) -> "GcloudDeleter":
        return cls(
            registry_host=config_manager.get_registry_host(),
            timeout=config_manager.get_retry_timeout(),
            max_retries=config_manager.get_max_retries(),
            initial_delay=config_manager.get_retry_initial_delay(),
            max_delay=config_manager.get_retry_max_delay(),
            exponential_base=config_manager.get_retry_exponential_base(),
            jitter=config_manager.get_retry_jitter(),
        )

    def build_command(self, reference: str) -> List[str]:
        return [
            self.gcloud_binary,
            "container",
            "images",
            "delete",
            "-q",
            "--force-delete-tags",
            reference,
        ]

    def __call__(self, repository: str, digest: str) -> None:
        """Delete ``repository@digest``.

        An already-absent digest is treated as deleted.

        Raises:
            DeletionError: If gcloud keeps failing after retries
        """
        reference = f"{self.registry_host}/{repository}@{digest}"
        cmd = self.build_command(reference)

        @self._retry
        def _execute():
            subprocess.run(cmd, capture_output=True, text=True, check=True, timeout=self.timeout)

        try:
            _execute()
        except subprocess.CalledProcessError as e:
            if is_not_found_error(e.stderr):
                logger.warning(f"{reference} is already gone from the registry")
                return
            raise create_deletion_error(reference, e)
        except (subprocess.TimeoutExpired, OSError) as e:
            raise create_deletion_error(reference, e)
