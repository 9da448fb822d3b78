"""
Container registry client for Google Container Registry style v2 APIs.

Provides read access for the retention job:
- repository catalog, scoped to a project prefix
- per-repository tag listings including the digest ``manifest`` map

Pagination is not followed. When the registry signals more results through a
``Link: <...>; rel="next"`` header the listing is flagged as truncated and the
caller decides what to do with it.
"""

import os
import re
import subprocess
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from registry_lifecycle.error_utils import (
    create_malformed_listing_error,
    create_registry_auth_error,
    create_registry_connection_error,
    create_truncated_listing_error,
)
from registry_lifecycle.inventory import ManifestListing
from registry_lifecycle.logging_utils import get_logger

logger = get_logger(__name__)

# <project>/<name> only; deeper paths hold build caches
TOP_LEVEL_REPOSITORY = re.compile(r"^[^!/]*/[^!/]*$")


def gcloud_access_token(timeout: int = 60) -> str:
    """Fetch an OAuth access token from the gcloud CLI."""
    result = subprocess.run(
        ["gcloud", "auth", "print-access-token"],
        capture_output=True,
        text=True,
        check=True,
        timeout=timeout,
    )
    return result.stdout.strip()


def default_token_provider() -> str:
    """REGISTRY_ACCESS_TOKEN if set, gcloud otherwise."""
    return os.environ.get("REGISTRY_ACCESS_TOKEN") or gcloud_access_token()


def has_next_page(response: requests.Response) -> bool:
    """Whether the registry announced another page of results."""
    if "next" in (response.links or {}):
        return True
    return 'rel="next"' in response.headers.get("Link", "")


class GcrClient:
    """Read-only client for a project's repositories in a v2 registry"""

    def __init__(
        self,
        registry_host: str,
        project: str,
        token_provider: Optional[Callable[[], str]] = None,
        timeout: int = 30,
        include_nested: bool = False,
        allow_truncated: bool = False,
        session: Optional[requests.Session] = None,
    ):
        """Initialize GcrClient.

        Args:
            registry_host: Registry host, e.g. 'eu.gcr.io'
            project: Project prefix; only '<project>/...' repositories are listed
            token_provider: Callable returning an access token (default: env or gcloud)
            timeout: HTTP timeout in seconds
            include_nested: Also manage repositories deeper than '<project>/<name>'
            allow_truncated: Use a truncated catalog instead of failing
            session: Optional requests session (mainly for tests)
        """
        self.registry_host = registry_host
        self.project = project.strip("/")
        self.token_provider = token_provider or default_token_provider
        self.timeout = timeout
        self.include_nested = include_nested
        self.allow_truncated = allow_truncated
        self.session = session or requests.Session()
        self._token: Optional[str] = None

    @property
    def base_url(self) -> str:
        return f"https://{self.registry_host}/v2"

    def _auth(self) -> Tuple[str, str]:
        if self._token is None:
            try:
                self._token = self.token_provider()
            except (OSError, subprocess.SubprocessError) as e:
                raise create_registry_auth_error(self.registry_host, e)
        return "_token", self._token

    def _get_json(self, path: str, repository: Optional[str] = None) -> Tuple[Dict[str, Any], bool]:
        """GET a registry endpoint and return (payload, truncated)."""
        url = f"{self.base_url}/{path}"
        try:
            response = self.session.get(url, auth=self._auth(), timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Registry request failed: GET {url}: {e}")
            raise create_registry_connection_error(self.registry_host, e, repository=repository)

        if response.status_code in (401, 403):
            raise create_registry_auth_error(
                self.registry_host,
                requests.HTTPError(f"{response.status_code} for GET {url}"),
                repository=repository,
            )
        try:
            response.raise_for_status()
        except requests.HTTPError as e:
            raise create_registry_connection_error(self.registry_host, e, repository=repository)

        try:
            payload = response.json()
        except ValueError:
            raise create_malformed_listing_error(repository or "_catalog", f"response to GET {url} is not JSON")

        if not isinstance(payload, dict):
            raise create_malformed_listing_error(repository or "_catalog", f"response to GET {url} is not an object")
        return payload, has_next_page(response)

    def is_managed_repository(self, name: str) -> bool:
        """Whether a catalog entry belongs to the project and is in scope."""
        if not name.startswith(f"{self.project}/"):
            return False
        if self.include_nested:
            return True
        return bool(TOP_LEVEL_REPOSITORY.match(name))

    def list_repositories(self) -> List[str]:
        """List the project's repositories from the registry catalog.

        Raises:
            CollectionError: If the catalog cannot be fetched, parsed, or is truncated
        """
        payload, truncated = self._get_json("_catalog")
        if truncated:
            if not self.allow_truncated:
                raise create_truncated_listing_error(self.registry_host, what="catalog")
            logger.warning("⚠️  Registry catalog is truncated; only the first page of repositories is managed")

        repositories = payload.get("repositories")
        if not isinstance(repositories, list):
            raise create_malformed_listing_error("_catalog", "catalog has no 'repositories' list")

        managed = [name for name in repositories if isinstance(name, str) and self.is_managed_repository(name)]
        skipped = len(repositories) - len(managed)
        logger.info(f"Found {len(managed)} repositories under {self.registry_host}/{self.project} "
                    f"({skipped} outside scope skipped)")
        return managed

    def get_manifest_listing(self, repository: str) -> ManifestListing:
        """Fetch the tag listing, with its digest manifest map, for one repository.

        Raises:
            CollectionError: If the listing cannot be fetched or parsed
        """
        payload, truncated = self._get_json(f"{repository}/tags/list", repository=repository)
        return ManifestListing(repository=repository, payload=payload, truncated=truncated)
