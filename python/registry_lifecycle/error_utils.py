"""
Error types and message helpers for the retention job.

Three failure families matter to a run:
- CollectionError: registry or cluster data could not be fetched or parsed
- PolicyError: the retention configuration is invalid
- DeletionError: a single digest could not be removed

Each carries actionable guidance (suggested fixes and context details)
so operators can act on the log output directly.
"""

import re
from enum import Enum
from typing import Any, Dict, List, Optional

from registry_lifecycle.retry_utils import strip_image_references


class ErrorCategory(Enum):
    """Categories of errors for better error handling"""
    CONNECTION = "connection"
    AUTHENTICATION = "authentication"
    CONFIGURATION = "configuration"
    PERMISSION = "permission"
    RESOURCE = "resource"
    MALFORMED_DATA = "malformed_data"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class ActionableError(Exception):
    """Exception with actionable guidance for users"""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.UNKNOWN,
                 suggestions: Optional[List[str]] = None, details: Optional[Dict[str, Any]] = None):
        """Initialize actionable error

        Args:
            message: Primary error message
            category: Error category for classification
            suggestions: List of suggested fixes
            details: Additional context information
        """
        self.message = message
        self.category = category
        self.suggestions = suggestions or []
        self.details = details or {}
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message with suggestions"""
        lines = [f"❌ {self.message}"]

        if self.suggestions:
            lines.append("\n💡 Suggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        if self.details:
            lines.append("\n📋 Additional details:")
            for key, value in self.details.items():
                lines.append(f"   {key}: {value}")

        return "\n".join(lines)


class CollectionError(ActionableError):
    """Registry or cluster data could not be collected for evaluation."""

    def __init__(self, message: str, repository: Optional[str] = None, **kwargs):
        self.repository = repository
        super().__init__(message, **kwargs)


class PolicyError(ActionableError):
    """The retention policy or surrounding configuration is invalid."""


class DeletionError(ActionableError):
    """A single digest could not be deleted from the registry."""

    def __init__(self, message: str, reference: Optional[str] = None, **kwargs):
        self.reference = reference
        super().__init__(message, **kwargs)


def create_registry_connection_error(registry_url: str, error: Exception,
                                     repository: Optional[str] = None) -> CollectionError:
    """Create actionable error for registry connection failures"""
    error_str = str(error).lower()

    suggestions = [
        f"Verify the registry host is correct: {registry_url}",
        "Check network connectivity to the registry",
        "Verify firewall rules allow access to the registry",
    ]

    if "timeout" in error_str or "timed out" in error_str:
        suggestions.insert(1, "Check if the registry is experiencing high load")
        suggestions.insert(2, "Increase registry.timeout in config.yaml")

    if "name resolution" in error_str or "dns" in error_str:
        suggestions.insert(1, f"Verify DNS resolution for {registry_url}")

    return CollectionError(
        message=f"Failed to query container registry at {registry_url}",
        repository=repository,
        category=ErrorCategory.CONNECTION,
        suggestions=suggestions,
        details={
            "registry_url": registry_url,
            "repository": repository or "-",
            "error_type": type(error).__name__,
            "error_message": str(error)
        }
    )


def create_registry_auth_error(registry_url: str, error: Exception,
                               repository: Optional[str] = None) -> CollectionError:
    """Create actionable error for registry authentication failures"""
    suggestions = [
        "Verify REGISTRY_ACCESS_TOKEN is set and has not expired",
        "Run 'gcloud auth print-access-token' to test gcloud credentials",
        "Check the service account has read access to the registry storage bucket",
    ]

    return CollectionError(
        message=f"Failed to authenticate with container registry at {registry_url}",
        repository=repository,
        category=ErrorCategory.AUTHENTICATION,
        suggestions=suggestions,
        details={
            "registry_url": registry_url,
            "error_type": type(error).__name__,
            "error_message": str(error)
        }
    )


def create_kubernetes_error(operation: str, error: Exception) -> CollectionError:
    """Create actionable error for Kubernetes API failures"""
    error_str = str(error).lower()

    suggestions = [
        "Verify Kubernetes cluster access (kubectl cluster-info)",
        "Check if running in-cluster or using kubeconfig",
        "Verify RBAC permissions allow listing pods and replicasets in all namespaces",
    ]

    forbidden = "403" in error_str or "forbidden" in error_str
    if forbidden:
        suggestions.insert(0, "Grant the service account cluster-wide 'list' on pods and replicasets")

    unreachable = not forbidden and any(s in error_str for s in ("max retries", "connection", "timed out"))
    if unreachable:
        suggestions.insert(0, "Check the Kubernetes API server is reachable from where the job runs")

    if forbidden:
        category = ErrorCategory.PERMISSION
    elif unreachable:
        category = ErrorCategory.CONNECTION
    else:
        category = ErrorCategory.RESOURCE

    return CollectionError(
        message=f"Kubernetes operation failed: {operation}",
        category=category,
        suggestions=suggestions,
        details={
            "operation": operation,
            "error_type": type(error).__name__,
            "error_message": str(error)
        }
    )


def create_malformed_listing_error(repository: str, reason: str, digest: Optional[str] = None) -> CollectionError:
    """Create actionable error for registry listings that cannot be parsed"""
    details = {"repository": repository, "reason": reason}
    if digest:
        details["digest"] = digest

    return CollectionError(
        message=f"Malformed manifest listing for repository {repository}",
        repository=repository,
        category=ErrorCategory.MALFORMED_DATA,
        suggestions=[
            "Inspect the raw listing: curl -u _token:$TOKEN https://<host>/v2/<repository>/tags/list",
            "Check the registry implements the GCR manifest extension (manifest/timeCreatedMs)",
        ],
        details=details,
    )


def create_truncated_listing_error(repository: str, what: str = "tag listing") -> CollectionError:
    """Create actionable error for listings that the registry paginated"""
    return CollectionError(
        message=f"Registry returned a truncated {what} for {repository}",
        repository=repository,
        category=ErrorCategory.RESOURCE,
        suggestions=[
            "Pagination is not supported; deletions were skipped to avoid acting on partial data",
            "Set registry.allow_truncated_listings: true to proceed with the partial listing",
        ],
        details={"repository": repository, "listing": what},
    )


def create_policy_error(field: str, value: Any, reason: str) -> PolicyError:
    """Create actionable error for retention policy validation failures"""
    suggestions = [
        f"Check the '{field}' value in config.yaml or the matching environment variable",
        "Review the configuration validation error message above",
    ]

    if "regex" in field.lower() or "pattern" in field.lower():
        suggestions.insert(1, "The tag pattern must be a valid Python regular expression")
    elif "keep" in field.lower() or "days" in field.lower() or "age" in field.lower():
        suggestions.insert(1, "Counts and ages must be non-negative integers")

    return PolicyError(
        message=f"Configuration error: Invalid value for '{field}'",
        category=ErrorCategory.CONFIGURATION,
        suggestions=suggestions,
        details={
            "field": field,
            "value": value,
            "reason": reason
        }
    )


def create_deletion_error(reference: str, error: Exception) -> DeletionError:
    """Create actionable error for a failed digest deletion"""
    stderr = getattr(error, "stderr", None)
    if isinstance(stderr, bytes):
        stderr = stderr.decode("utf-8", errors="replace")
    error_text = (stderr or str(error)).strip()
    error_str = strip_image_references(error_text).lower()

    suggestions = [
        "Re-run the job; deletions are idempotent and already-removed digests are skipped",
        "Check the service account has write access to the registry storage bucket",
    ]
    if "permission" in error_str or re.search(r"\b403\b", error_str) or "denied" in error_str:
        suggestions.insert(0, "Grant roles/storage.admin on the registry bucket to the service account")

    return DeletionError(
        message=f"Failed to delete {reference}",
        reference=reference,
        category=ErrorCategory.RESOURCE,
        suggestions=suggestions,
        details={
            "reference": reference,
            "error_type": type(error).__name__,
            "error_message": error_text
        }
    )
