"""
gitchorus config package public API.

File: src/gitchorus/config/__init__.py
Last updated: 2026-10-18

Purpose
- Export config loading/validation entrypoints and public error types.

Functional requirements
- Support loading from ``gitchorus.toml`` + ``GITCHORUS_`` env overrides.
- Fail fast with clear structured validation/load errors.
"""

from gitchorus.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    dump_effective_config,
    env_var_names,
    load_config,
    normalize_paths,
)
from gitchorus.config.schema import (
    DEFAULT_CONFIG,
    PATH_FIELDS,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    GitchorusConfig,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
    validate_config,
)

__all__ = [
    "ConfigLoadError",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "GitchorusConfig",
    "PATH_FIELDS",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "env_var_names",
    "load_config",
    "merge_config",
    "normalize_paths",
    "redact_config",
    "validate_config",
]
