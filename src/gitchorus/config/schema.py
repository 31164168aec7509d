"""
gitchorus — configuration schema and validation.

File: src/gitchorus/config/schema.py
Last updated: 2026-10-18

Purpose
- Define the built-in defaults and the strict rules every effective config must pass.

What should be included in this file
- One declarative table (``_SCHEMA``) mapping each section and field to a rule.
- Structured issues (dotted path + message) collected across the whole payload.
- Deep-merge and redaction helpers shared with the loader and the CLI.

Functional requirements
- Unknown keys are errors; keys that look like credentials get a dedicated message,
  since tokens belong to the GitHub collaborator and never to ``gitchorus.toml``.
- A schema version mismatch reports migration guidance instead of a bare error.
"""

from __future__ import annotations

import copy
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from gitchorus.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_COMMENT_FOOTER,
    DEFAULT_MAX_CONCURRENT_JOBS,
    DEFAULT_REVIEW_CHAIN_LIMIT,
    DEFAULT_STATE_DB,
    LOG_DIR,
    LOG_RETENTION_DAYS,
    MAX_HISTORY_ENTRIES,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

# Resolved against the config file's directory by the loader.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "state_db"),
    ("observability", "log_dir"),
)

_REDACTED: Final[str] = "<redacted>"
_SECRET_WORDS: Final[frozenset[str]] = frozenset(
    {
        "secret",
        "token",
        "password",
        "passwd",
        "api",
        "apikey",
        "private",
        "credential",
        "credentials",
        "auth",
    }
)
_SECRET_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "github_token",
    "client_secret",
    "private_key",
)
_CAMEL_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_SEPARATORS = re.compile(r"[^a-z0-9]+")


class MetaConfig(TypedDict):
    schema_version: int


class EngineConfig(TypedDict):
    max_concurrent_jobs: int
    cancel_policy: Literal["fail", "requeue"]


class HistoryConfig(TypedDict):
    max_entries: int
    chain_limit: int


class PublishConfig(TypedDict):
    include_marker: bool
    footer: str


class PathsConfig(TypedDict):
    state_db: str


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_format: Literal["json", "text"]
    log_dir: str
    retention_days: int
    redact_secrets: bool


class GitchorusConfig(TypedDict):
    meta: MetaConfig
    engine: EngineConfig
    history: HistoryConfig
    publish: PublishConfig
    paths: PathsConfig
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[GitchorusConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "engine": {"max_concurrent_jobs": DEFAULT_MAX_CONCURRENT_JOBS, "cancel_policy": "fail"},
    "history": {"max_entries": MAX_HISTORY_ENTRIES, "chain_limit": DEFAULT_REVIEW_CHAIN_LIMIT},
    "publish": {"include_marker": True, "footer": DEFAULT_COMMENT_FOOTER},
    "paths": {"state_db": str(DEFAULT_STATE_DB)},
    "observability": {
        "log_level": "INFO",
        "log_format": "json",
        "log_dir": f"{LOG_DIR}/",
        "retention_days": LOG_RETENTION_DAYS,
        "redact_secrets": True,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {issue.path}: {issue.message}" for issue in self.issues]
        super().__init__("invalid config:\n" + ("\n".join(lines) or "unknown validation failure"))


class _Invalid(Exception):
    """A rule rejected a value; the message becomes the issue text."""


_Rule = Callable[[object], object]


def _integer(minimum: int) -> _Rule:
    def rule(value: object) -> object:
        if isinstance(value, bool) or not isinstance(value, int):
            raise _Invalid(f"expected integer, got {type(value).__name__}")
        if value < minimum:
            raise _Invalid(f"must be >= {minimum}")
        return value

    return rule


def _boolean(value: object) -> object:
    if not isinstance(value, bool):
        raise _Invalid(f"expected boolean, got {type(value).__name__}")
    return value


def _text(*, allow_empty: bool = False) -> _Rule:
    def rule(value: object) -> object:
        if not isinstance(value, str):
            raise _Invalid(f"expected string, got {type(value).__name__}")
        stripped = value.strip()
        if not stripped and not allow_empty:
            raise _Invalid("must not be empty")
        return stripped

    return rule


def _path(value: object) -> object:
    text = _text()(value)
    if "\x00" in str(text):
        raise _Invalid("must not contain NUL bytes")
    return text


def _choice(*allowed: str) -> _Rule:
    def rule(value: object) -> object:
        text = _text()(value)
        if text not in allowed:
            raise _Invalid(f"invalid value {text!r}; expected one of: {', '.join(sorted(allowed))}")
        return text

    return rule


def _schema_version(value: object) -> object:
    version = _integer(1)(value)
    if isinstance(version, int) and version != ConfigSchemaVersion:
        raise _Invalid(migration_guidance(version))
    return version


_SCHEMA: Final[dict[str, dict[str, _Rule]]] = {
    "meta": {"schema_version": _schema_version},
    "engine": {
        "max_concurrent_jobs": _integer(1),
        "cancel_policy": _choice("fail", "requeue"),
    },
    "history": {"max_entries": _integer(1), "chain_limit": _integer(1)},
    "publish": {"include_marker": _boolean, "footer": _text(allow_empty=True)},
    "paths": {"state_db": _path},
    "observability": {
        "log_level": _choice("DEBUG", "INFO", "WARNING", "ERROR"),
        "log_format": _choice("json", "text"),
        "log_dir": _path,
        "retention_days": _integer(1),
        "redact_secrets": _boolean,
    },
}


def default_config() -> GitchorusConfig:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade gitchorus.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the gitchorus runtime"
        )
    return "schema version is current"


def validate_config(config: object) -> ConfigValidationResult:
    """Check ``config`` against the schema, collecting every issue rather than the first."""

    issues: list[ConfigValidationIssue] = []
    root = _mapping(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=tuple(issues))

    validated: dict[str, Any] = {}
    _check_keys(root, _SCHEMA, "", issues)
    for section_name, rules in _SCHEMA.items():
        if section_name not in root:
            continue
        section = _mapping(root[section_name], section_name, issues)
        if section is None:
            continue
        _check_keys(section, rules, section_name, issues)
        validated[section_name] = {}
        for field_name in sorted(rules.keys() & section.keys()):
            try:
                validated[section_name][field_name] = rules[field_name](section[field_name])
            except _Invalid as exc:
                issues.append(ConfigValidationIssue(f"{section_name}.{field_name}", str(exc)))

    if issues:
        return ConfigValidationResult(config=None, issues=tuple(issues))
    return ConfigValidationResult(config=validated, issues=())


def assert_valid_config(config: object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; neither input is mutated."""

    merged: dict[str, Any] = copy.deepcopy(dict(base))
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(value, Mapping):
            merged[key] = merge_config(current if isinstance(current, Mapping) else {}, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def redact_config(config: object) -> dict[str, Any]:
    """Key-sorted copy of ``config`` with credential-looking values masked."""

    redacted = _redact(config)
    return redacted if isinstance(redacted, dict) else {}


def _mapping(
    value: object, path: str, issues: list[ConfigValidationIssue]
) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.append(ConfigValidationIssue(path, f"expected object, got {type(value).__name__}"))
        return None
    bad_keys = [key for key in value if not isinstance(key, str)]
    for key in bad_keys:
        issues.append(
            ConfigValidationIssue(path, f"object key must be string, got {type(key).__name__}")
        )
    return {key: item for key, item in value.items() if isinstance(key, str)}


def _check_keys(
    payload: Mapping[str, object],
    expected: Mapping[str, object],
    path: str,
    issues: list[ConfigValidationIssue],
) -> None:
    def where(key: str) -> str:
        return f"{path}.{key}" if path else key

    for key in sorted(payload.keys() - expected.keys()):
        if _is_secret_key(key):
            message = "embedded secret values are forbidden; keep credentials in the collaborator"
        else:
            message = "unknown field"
        issues.append(ConfigValidationIssue(where(key), message))
    for key in sorted(expected.keys() - payload.keys()):
        issues.append(ConfigValidationIssue(where(key), "missing required field"))


def _is_secret_key(key: str) -> bool:
    normalized = _SEPARATORS.sub("_", _CAMEL_BOUNDARY.sub(r"\1_\2", key.strip()).lower())
    normalized = normalized.strip("_")
    if any(phrase in normalized for phrase in _SECRET_PHRASES):
        return True
    return any(word in _SECRET_WORDS for word in normalized.split("_"))


def _redact(value: object) -> object:
    if isinstance(value, Mapping):
        return {
            key: _REDACTED if _is_secret_key(str(key)) else _redact(value[key])
            for key in sorted(value)
        }
    if isinstance(value, (list, tuple)):
        return [_redact(item) for item in value]
    return value


__all__ = [
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "EngineConfig",
    "GitchorusConfig",
    "HistoryConfig",
    "ObservabilityConfig",
    "PATH_FIELDS",
    "PathsConfig",
    "PublishConfig",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
