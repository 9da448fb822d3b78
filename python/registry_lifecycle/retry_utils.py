"""Retry utilities for registry mutations with exponential backoff"""

import logging
import random
import re
import subprocess
import time
from enum import Enum
from functools import wraps
from typing import Callable, List, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

NETWORK_INDICATORS = (
    "connection",
    "timeout",
    "timed out",
    "network",
    "dns",
    "resolve",
    "refused",
    "unreachable",
    "reset",
    "broken pipe",
    "temporary failure",
)

AUTH_PHRASES = ("unauthorized", "forbidden", "permission denied", "permission_denied", "access denied")
NOT_FOUND_PHRASES = ("not found", "manifest unknown", "manifest_unknown", "name unknown", "does not exist")

# [host/path@]sha256:<hex>; hex digests routinely contain "404", "500" and the like
IMAGE_REFERENCE = re.compile(r"\S*sha256:[0-9a-fA-F]+")

AUTH_STATUS = re.compile(r"\b(401|403)\b")
NOT_FOUND_STATUS = re.compile(r"\b404\b")
SERVER_ERROR_STATUS = re.compile(r"\b50[0234]\b")
RATE_LIMIT_STATUS = re.compile(r"\b429\b")


class RetryableErrorType(Enum):
    """Types of errors that should trigger retries"""

    NETWORK = "network"  # Connection errors, timeouts
    TEMPORARY = "temporary"  # 5xx errors, rate limiting
    PERMANENT = "permanent"  # 4xx errors (except rate limiting), auth failures


def strip_image_references(text: str) -> str:
    """Blank out image digests so their hex is not read as status codes."""
    return IMAGE_REFERENCE.sub("<image>", text or "")


def is_not_found_error(text: str) -> bool:
    """Whether an error message says the image is already absent."""
    error_str = strip_image_references(text).lower()
    return any(phrase in error_str for phrase in NOT_FOUND_PHRASES) or bool(NOT_FOUND_STATUS.search(error_str))


def is_retryable_error(error: Exception, error_message: str = "") -> Tuple[bool, RetryableErrorType]:
    """Determine if an error is retryable and what type it is

    Args:
        error: The exception that occurred
        error_message: Optional error message string (e.g. subprocess stderr)

    Returns:
        Tuple of (is_retryable, error_type)
    """
    if isinstance(error, subprocess.TimeoutExpired):
        return True, RetryableErrorType.NETWORK

    # CalledProcessError's str() embeds the command line
    if isinstance(error, subprocess.CalledProcessError):
        combined = error_message or ""
    else:
        combined = f"{error} {error_message}"
    combined = strip_image_references(combined).lower()

    # Auth and missing-resource errors won't fix themselves
    if AUTH_STATUS.search(combined) or any(phrase in combined for phrase in AUTH_PHRASES):
        return False, RetryableErrorType.PERMANENT
    if is_not_found_error(combined):
        return False, RetryableErrorType.PERMANENT

    if any(indicator in combined for indicator in NETWORK_INDICATORS):
        return True, RetryableErrorType.NETWORK

    if SERVER_ERROR_STATUS.search(combined):
        return True, RetryableErrorType.TEMPORARY

    if RATE_LIMIT_STATUS.search(combined) or "rate limit" in combined or "too many requests" in combined:
        return True, RetryableErrorType.TEMPORARY

    # gcloud exits non-zero for transient backend hiccups too
    if isinstance(error, subprocess.CalledProcessError):
        return True, RetryableErrorType.TEMPORARY

    return False, RetryableErrorType.PERMANENT


def compute_backoff_delay(attempt: int, initial_delay: float, max_delay: float,
                          exponential_base: float, jitter: bool) -> float:
    """Delay before retry number ``attempt + 1`` (attempt is zero-based)."""
    delay = min(initial_delay * (exponential_base ** attempt), max_delay)
    if jitter:
        jitter_amount = delay * 0.1  # 10% jitter
        delay = max(0.1, delay + random.uniform(-jitter_amount, jitter_amount))
    return delay


def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    retryable_errors: Optional[List[RetryableErrorType]] = None,
) -> Callable:
    """Decorator for retrying functions with exponential backoff

    Args:
        max_retries: Maximum number of retry attempts (default: 3)
        initial_delay: Initial delay in seconds before first retry (default: 1.0)
        max_delay: Maximum delay between retries in seconds (default: 60.0)
        exponential_base: Base for exponential backoff (default: 2.0)
        jitter: Add random jitter to prevent thundering herd (default: True)
        retryable_errors: List of error types to retry (None = retry all retryable types)

    Returns:
        Decorator function
    """
    if retryable_errors is None:
        retryable_errors = [RetryableErrorType.NETWORK, RetryableErrorType.TEMPORARY]

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            for attempt in range(max_retries + 1):
                try:
                    result = func(*args, **kwargs)
                    if attempt > 0:
                        logger.info(f"{func.__name__} succeeded on attempt {attempt + 1}")
                    return result

                except Exception as e:
                    error_message = getattr(e, "stderr", None) or ""
                    is_retryable, error_type = is_retryable_error(e, error_message)

                    if not is_retryable or error_type not in retryable_errors:
                        logger.error(f"{func.__name__} failed with non-retryable error ({error_type.value}): {e}")
                        raise

                    if attempt >= max_retries:
                        logger.error(
                            f"{func.__name__} failed after {max_retries + 1} attempts. "
                            f"Last error ({error_type.value}): {e}"
                        )
                        raise

                    delay = compute_backoff_delay(attempt, initial_delay, max_delay, exponential_base, jitter)
                    logger.warning(
                        f"{func.__name__} failed on attempt {attempt + 1}/{max_retries + 1} "
                        f"({error_type.value} error: {e}). "
                        f"Retrying in {delay:.2f}s..."
                    )
                    time.sleep(delay)

        return wrapper

    return decorator
