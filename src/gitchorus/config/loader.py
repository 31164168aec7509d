"""
gitchorus — runtime config loader.

File: src/gitchorus/config/loader.py
Last updated: 2026-10-18

Purpose
- Build the effective config from layered sources.

What should be included in this file
- Layering: built-in defaults, then ``gitchorus.toml``, then ``GITCHORUS_*``
  environment variables, then CLI overrides (later layers win).
- One environment variable per scalar setting, named after its dotted path
  (``engine.max_concurrent_jobs`` -> ``GITCHORUS_ENGINE_MAX_CONCURRENT_JOBS``)
  and coerced to the type of the default value.
- Path settings resolved against the directory holding the config file.

Functional requirements
- The file layer is validated on its own first so file mistakes are reported
  against the file, before env or CLI values can mask them.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Iterator, Mapping
from pathlib import Path
from typing import Any, Final

from gitchorus.config.schema import (
    PATH_FIELDS,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "gitchorus.toml"
ENV_PREFIX: Final[str] = "GITCHORUS_"

_TRUE_WORDS: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSE_WORDS: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})


class ConfigLoadError(ValueError):
    """Raised when a config source cannot be read or a value cannot be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return the validated effective config.

    ``config_path`` defaults to ``./gitchorus.toml``, which may be absent; an
    explicit path must exist. ``cli_overrides`` uses dotted keys
    (``{"engine.cancel_policy": "requeue"}``); ``None`` values are skipped so
    unset argparse options fall through to lower layers.
    """

    path = (
        Path.cwd() / DEFAULT_CONFIG_FILE
        if config_path is None
        else Path(config_path).expanduser()
    ).resolve()
    from_file = assert_valid_config(
        merge_config(default_config(), _read_toml(path, required=config_path is not None))
    )

    layered = merge_config(
        from_file, _env_layer(from_file, os.environ if environ is None else environ)
    )
    for dotted, value in sorted((cli_overrides or {}).items()):
        if value is None:
            continue
        parts = tuple(part for part in dotted.split(".") if part)
        if not parts:
            raise ConfigLoadError(f"invalid CLI override key {dotted!r}")
        layered = merge_config(layered, _nest(parts, value))

    return normalize_paths(assert_valid_config(layered), base_dir=path.parent)


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Copy of ``config`` with every path setting made absolute against ``base_dir``."""

    normalized = merge_config({}, config)
    for section, key in PATH_FIELDS:
        block = normalized.get(section)
        if isinstance(block, dict) and isinstance(block.get(key), str):
            raw = Path(os.path.expandvars(block[key])).expanduser()
            absolute = raw if raw.is_absolute() else base_dir / raw
            block[key] = Path(os.path.normpath(absolute)).as_posix()
    return normalized


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Key-sorted, redacted JSON rendering used by ``gitchorus config show``."""

    return json.dumps(redact_config(config), sort_keys=True, indent=2, ensure_ascii=False)


def env_var_names() -> tuple[str, ...]:
    return tuple(sorted(_env_name(path) for path, _ in _leaves(default_config())))


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except FileNotFoundError:
        if required:
            raise ConfigLoadError(f"config file not found: {path}") from None
        return {}
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _env_layer(config: Mapping[str, object], environ: Mapping[str, str]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for path, current in _leaves(config):
        name = _env_name(path)
        raw = environ.get(name)
        if raw is None:
            continue
        coerce = _COERCERS.get(type(current))
        if coerce is None:
            continue
        try:
            value = coerce(raw.strip())
        except ValueError as exc:
            raise ConfigLoadError(f"{name} -> {'.'.join(path)} {exc}") from None
        layer = merge_config(layer, _nest(path, value))
    return layer


def _as_int(raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise ValueError("must be an integer") from None


def _as_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _TRUE_WORDS:
        return True
    if lowered in _FALSE_WORDS:
        return False
    raise ValueError("must be a boolean (true/false/1/0/yes/no/on/off)")


# Keyed by the type of the value already in the config; bool is checked by exact type.
_COERCERS: Final[dict[type, Callable[[str], object]]] = {
    bool: _as_bool,
    int: _as_int,
    str: str,
}


def _leaves(
    payload: Mapping[str, object], prefix: tuple[str, ...] = ()
) -> Iterator[tuple[tuple[str, ...], object]]:
    for key in sorted(payload):
        value = payload[key]
        if isinstance(value, Mapping):
            yield from _leaves(value, (*prefix, key))
        else:
            yield (*prefix, key), value


def _nest(path: tuple[str, ...], value: object) -> dict[str, Any]:
    nested: dict[str, Any] = {path[-1]: value}
    for part in reversed(path[:-1]):
        nested = {part: nested}
    return nested


def _env_name(path: tuple[str, ...]) -> str:
    return ENV_PREFIX + "_".join(path).upper()


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "dump_effective_config",
    "env_var_names",
    "load_config",
    "normalize_paths",
]
