"""
Repository inventory: registry manifest listings -> digest records.

The registry's tag listing (GCR flavour) carries a ``manifest`` map keyed by
digest, each entry holding its ``tag`` list and ``timeCreatedMs``. This
module turns that payload into DigestRecords and refuses to produce partial
data: a missing timestamp or a truncated listing fails the repository.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping

from registry_lifecycle.error_utils import create_malformed_listing_error, create_truncated_listing_error
from registry_lifecycle.logging_utils import get_logger
from registry_lifecycle.models import DigestRecord, Repository

logger = get_logger(__name__)


@dataclass
class ManifestListing:
    """Raw tag listing for one repository as returned by the registry client"""
    repository: str
    payload: Dict[str, Any] = field(default_factory=dict)
    truncated: bool = False


def parse_created_at_ms(repository: str, digest: str, value: Any) -> int:
    """Parse ``timeCreatedMs`` (the registry sends it as a decimal string)."""
    if value is None or isinstance(value, bool):
        raise create_malformed_listing_error(repository, "missing timeCreatedMs", digest=digest)
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        raise create_malformed_listing_error(repository, f"unparsable timeCreatedMs {value!r}", digest=digest)


def parse_tags(repository: str, digest: str, value: Any) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(tag, str) for tag in value):
        raise create_malformed_listing_error(repository, f"tag list is not a list of strings: {value!r}",
                                             digest=digest)
    return value


def build_digest_records(repository: str, payload: Mapping[str, Any]) -> List[DigestRecord]:
    """Build one DigestRecord per digest in a tag listing payload.

    Args:
        repository: Repository name, used for error context
        payload: Parsed JSON body of ``/v2/<repository>/tags/list``

    Returns:
        Records in payload order (empty for a repository without digests)

    Raises:
        CollectionError: If the payload has no manifest map or an entry is malformed
    """
    if not isinstance(payload, Mapping):
        raise create_malformed_listing_error(repository, f"listing is not a JSON object: {type(payload).__name__}")

    manifests = payload.get("manifest")
    if not isinstance(manifests, Mapping):
        raise create_malformed_listing_error(repository, "listing has no 'manifest' map")

    records = []
    for digest, entry in manifests.items():
        if not isinstance(entry, Mapping):
            raise create_malformed_listing_error(repository, "manifest entry is not an object", digest=digest)
        tags = parse_tags(repository, digest, entry.get("tag"))
        created_at_ms = parse_created_at_ms(repository, digest, entry.get("timeCreatedMs"))
        records.append(DigestRecord(digest=digest, tags=tuple(tags), created_at_ms=created_at_ms))
    return records


def build_repository(listing: ManifestListing, allow_truncated: bool = False) -> Repository:
    """Turn a manifest listing into a Repository.

    Pagination is not followed. A listing the registry marked as truncated
    fails the repository unless ``allow_truncated`` is set, in which case the
    partial data is used and a warning logged.

    Raises:
        CollectionError: On truncated (when not allowed) or malformed listings
    """
    if listing.truncated:
        if not allow_truncated:
            raise create_truncated_listing_error(listing.repository)
        logger.warning(f"⚠️  Tag listing for {listing.repository} is truncated; evaluating partial data")

    records = build_digest_records(listing.repository, listing.payload)
    logger.debug(f"{listing.repository}: {len(records)} digests in inventory")
    return Repository(name=listing.repository, records=records)

