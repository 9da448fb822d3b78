#!/usr/bin/env python3
"""
Configuration Manager for the registry retention job

This module handles loading and managing configuration from config.yaml
and environment variables.
"""

import logging
import os
import re
from typing import Any, Dict, Optional, Tuple

import yaml

from registry_lifecycle.error_utils import ErrorCategory, PolicyError
from registry_lifecycle.models import (
    DEFAULT_KEEP_COUNT,
    DEFAULT_MAX_AGE_DAYS,
    DEFAULT_TAG_PATTERN,
    RetentionPolicy,
)


class ConfigValidationError(PolicyError):
    """Raised when configuration validation fails"""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.CONFIGURATION)
        super().__init__(message, **kwargs)


class ConfigManager:
    """Manages configuration for the registry retention job"""

    def __init__(self, config_file: str = None, validate: bool = True):
        """Initialize ConfigManager

        Args:
            config_file: Path to configuration YAML file (defaults to config.yaml or CONFIG_FILE env var)
            validate: If True, validate configuration on initialization
        """
        if config_file is None:
            config_file = os.environ.get("CONFIG_FILE", "config.yaml")
        self.config_file = config_file
        self.config = self._load_config()
        self.overrides: Dict[Tuple[str, str], Any] = {}

        if validate:
            self.validate_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from YAML file with defaults"""
        default_config = {
            "registry": {
                "host": "eu.gcr.io",
                "project": "",
                "include_nested_repositories": False,
                "allow_truncated_listings": False,
                "timeout": 30,
            },
            "retention": {
                "keep_tags": DEFAULT_KEEP_COUNT,
                "retention_days": DEFAULT_MAX_AGE_DAYS,
                "tag_regex": DEFAULT_TAG_PATTERN,
            },
            "kubernetes": {"page_size": 500},
            "analysis": {"max_workers": 4, "output_dir": "reports"},
            "retry": {
                "max_retries": 3,
                "initial_delay": 1.0,
                "max_delay": 60.0,
                "exponential_base": 2.0,
                "jitter": True,
                "timeout": 300,  # Timeout for subprocess calls in seconds
            },
            "reports": {"retention_report": "retention-report.json"},
            "security": {"dry_run_by_default": True},
        }

        try:
            if os.path.exists(self.config_file):
                with open(self.config_file, "r") as f:
                    user_config = yaml.safe_load(f) or {}
                if not isinstance(user_config, dict):
                    raise ConfigValidationError(
                        f"Config file {self.config_file} must contain a YAML mapping",
                        details={"config_file": self.config_file},
                    )
                return self._merge_config(default_config, user_config)
            else:
                logging.debug(f"Config file {self.config_file} not found, using defaults")
                return default_config
        except (OSError, yaml.YAMLError) as e:
            raise ConfigValidationError(
                f"Error loading config file {self.config_file}: {e}",
                suggestions=["Check the file exists and is valid YAML"],
                details={"config_file": self.config_file},
            )

    def _merge_config(self, default: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge user config with defaults"""
        result = default.copy()
        for key, value in user.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value
        return result

    def _section(self, name: str) -> Dict[str, Any]:
        return self.config.get(name) or {}

    def set_override(self, section: str, key: str, value: Any) -> None:
        """Override a value for this process (command-line flags). None is ignored."""
        if value is not None:
            self.overrides[(section, key)] = value

    def _lookup(self, section: str, key: str, default: Any, env: Optional[str] = None) -> Any:
        """Resolve a value: override, then environment variable, then config file, then default"""
        if (section, key) in self.overrides:
            return self.overrides[(section, key)]
        if env:
            value = os.environ.get(env)
            if value is not None and value != "":
                return value
        value = self._section(section).get(key)
        return default if value is None else value

    def _get_int(self, section: str, key: str, default: int, env: Optional[str] = None) -> int:
        value = self._lookup(section, key, default, env)
        if isinstance(value, bool):
            raise ConfigValidationError(f"{section}.{key} must be an integer, got: {value}")
        try:
            return int(value)
        except (ValueError, TypeError):
            raise ConfigValidationError(
                f"{section}.{key} must be an integer, got: {value} (type: {type(value).__name__})"
            )

    def _get_float(self, section: str, key: str, default: float) -> float:
        value = self._lookup(section, key, default)
        try:
            return float(value)
        except (ValueError, TypeError):
            raise ConfigValidationError(
                f"{section}.{key} must be a number, got: {value} (type: {type(value).__name__})"
            )

    # Registry configuration
    def get_registry_host(self) -> str:
        """Get registry host from environment or config"""
        return str(self._lookup("registry", "host", "eu.gcr.io", env="REGISTRY_HOST"))

    def get_project(self) -> str:
        """Get the project prefix whose repositories are managed"""
        return str(self._lookup("registry", "project", "", env="PROJECT_ID") or "")

    def include_nested_repositories(self) -> bool:
        """Whether repositories deeper than <project>/<name> are managed too"""
        return bool(self._lookup("registry", "include_nested_repositories", False))

    def allow_truncated_listings(self) -> bool:
        """Whether a truncated registry listing may be evaluated anyway"""
        return bool(self._lookup("registry", "allow_truncated_listings", False))

    def get_registry_timeout(self) -> int:
        """Get HTTP timeout for registry queries in seconds"""
        return self._get_int("registry", "timeout", 30)

    # Retention policy
    def get_keep_tags(self) -> int:
        return self._get_int("retention", "keep_tags", DEFAULT_KEEP_COUNT, env="KEEP_TAGS")

    def get_retention_days(self) -> int:
        return self._get_int("retention", "retention_days", DEFAULT_MAX_AGE_DAYS, env="RETENTION_DAYS")

    def get_tag_regex(self) -> str:
        value = self._lookup("retention", "tag_regex", DEFAULT_TAG_PATTERN, env="TAG_REGEX")
        return str(value) if value else DEFAULT_TAG_PATTERN

    def get_retention_policy(self) -> RetentionPolicy:
        """Build the run's retention policy.

        Raises:
            PolicyError: If any retention value is invalid
        """
        return RetentionPolicy.from_values(
            keep_count=self.get_keep_tags(),
            max_age_days=self.get_retention_days(),
            tag_pattern=self.get_tag_regex(),
        )

    # Kubernetes configuration
    def get_kubernetes_page_size(self) -> int:
        return self._get_int("kubernetes", "page_size", 500)

    # Analysis configuration
    def get_max_workers(self) -> int:
        """Get max workers from environment or config, with type coercion"""
        return self._get_int("analysis", "max_workers", 4, env="MAX_WORKERS")

    def get_output_dir(self) -> str:
        """Get output directory from config"""
        return str(self._lookup("analysis", "output_dir", "reports"))

    # Retry configuration
    def get_max_retries(self) -> int:
        return self._get_int("retry", "max_retries", 3)

    def get_retry_initial_delay(self) -> float:
        return self._get_float("retry", "initial_delay", 1.0)

    def get_retry_max_delay(self) -> float:
        return self._get_float("retry", "max_delay", 60.0)

    def get_retry_exponential_base(self) -> float:
        return self._get_float("retry", "exponential_base", 2.0)

    def get_retry_jitter(self) -> bool:
        """Get whether to use jitter in retry delays from config"""
        return bool(self._lookup("retry", "jitter", True))

    def get_retry_timeout(self) -> int:
        """Get timeout for subprocess calls from config, with type coercion"""
        return self._get_int("retry", "timeout", 300)

    # Report configuration
    def _resolve_report_path(self, path: str) -> str:
        """Resolve report file path under the configured output_dir unless absolute or already a path."""
        if os.path.isabs(path) or os.path.basename(path) != path:
            return path
        return os.path.join(self.get_output_dir(), path)

    def get_retention_report_path(self) -> str:
        """Get retention run report path from config"""
        return self._resolve_report_path(self._section("reports").get("retention_report", "retention-report.json"))

    # Security configuration
    def is_dry_run_by_default(self) -> bool:
        """Get dry run default from config"""
        return bool(self._lookup("security", "dry_run_by_default", True))

    def validate_config(self) -> None:
        """Validate configuration values

        Raises:
            ConfigValidationError: If configuration is invalid
            PolicyError: If the retention policy is invalid
        """
        errors = []
        warnings = []

        registry_host = self.get_registry_host()
        if not registry_host or not registry_host.strip():
            errors.append("Registry host is required and cannot be empty")
        elif not self._is_valid_registry_host(registry_host):
            errors.append(f"Registry host '{registry_host}' is invalid (expected format: hostname[:port])")

        project = self.get_project()
        if not project or not project.strip():
            errors.append("Project is required (set PROJECT_ID or registry.project)")
        elif not self._is_valid_project(project):
            errors.append(f"Project '{project}' contains invalid characters")

        try:
            max_workers = self.get_max_workers()
            if max_workers < 1:
                errors.append(f"max_workers must be a positive integer, got: {max_workers}")
            elif max_workers > 100:
                warnings.append(f"max_workers is very high ({max_workers}), this may cause rate limiting")
        except ConfigValidationError as e:
            errors.append(e.message)

        try:
            if self.get_registry_timeout() < 1:
                errors.append("registry.timeout must be a positive integer (seconds)")
            if self.get_kubernetes_page_size() < 1:
                errors.append("kubernetes.page_size must be a positive integer")
        except ConfigValidationError as e:
            errors.append(e.message)

        output_dir = self.get_output_dir()
        if not output_dir or not str(output_dir).strip():
            errors.append("output_dir is required and cannot be empty")

        try:
            max_retries = self.get_max_retries()
            if max_retries < 0:
                errors.append(f"retry.max_retries must be a non-negative integer, got: {max_retries}")
            elif max_retries > 10:
                warnings.append(f"max_retries is very high ({max_retries}), operations may take a long time")

            initial_delay = self.get_retry_initial_delay()
            max_delay = self.get_retry_max_delay()
            if initial_delay < 0:
                errors.append(f"retry.initial_delay must be a non-negative number, got: {initial_delay}")
            if max_delay < initial_delay:
                errors.append(f"retry.max_delay ({max_delay}) must be >= retry.initial_delay ({initial_delay})")
            if self.get_retry_exponential_base() < 1.0:
                errors.append("retry.exponential_base must be >= 1.0")
            if self.get_retry_timeout() < 1:
                errors.append("retry.timeout must be a positive integer (seconds)")
        except ConfigValidationError as e:
            errors.append(e.message)

        for warning in warnings:
            logging.warning(f"Configuration warning: {warning}")

        if errors:
            error_msg = "Configuration validation failed:\n  " + "\n  ".join(errors)
            logging.error(error_msg)
            raise ConfigValidationError(error_msg)

        # Policy errors carry their own field-level guidance
        self.get_retention_policy()

    def _is_valid_registry_host(self, host: str) -> bool:
        host = host.replace("http://", "").replace("https://", "")
        pattern = r"^[a-zA-Z0-9]([a-zA-Z0-9\-\.]*[a-zA-Z0-9])?(:[0-9]{1,5})?$"
        return bool(re.match(pattern, host))

    def _is_valid_project(self, project: str) -> bool:
        # GCP project ids, optionally with a domain-scoped prefix (example.com:project)
        pattern = r"^[a-zA-Z0-9][a-zA-Z0-9_\-\.:]*$"
        return bool(re.match(pattern, project))


# Shared instance, loaded on first use so importing this module never reads the file
_config_manager: Optional[ConfigManager] = None


def get_config_manager() -> ConfigManager:
    """Return the process-wide ConfigManager, creating it on first call.

    Validation is left to the caller, which applies command-line overrides first.

    Raises:
        ConfigValidationError: If the config file cannot be read or parsed
    """
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager(validate=False)
    return _config_manager

