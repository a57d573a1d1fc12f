"""
Settings loader.

Responsibility
--------------
Reads ``defaults.yaml`` (or a caller-supplied file), applies environment
overrides, and builds the frozen ``Settings`` tree from ``schema.py``.

Override keys take the form ``EINVOICE_<SECTION>__<KEY>``; the value is
coerced to the type the schema declares for that key.  Unknown sections
and keys are rejected so a misspelt override never silently does nothing.

Failure modes
-------------
* Missing file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown key or uncoercible value  -> ``ConfigurationError``.
"""

import dataclasses
import types
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Union, get_args, get_origin

import yaml

from einvoice_config.schema import (
    DatabaseSettings,
    FbrSettings,
    IngestionSettings,
    RetrySettings,
    Settings,
    WorkerSettings,
)
from einvoice_kernel.exceptions import ConfigurationError

ENV_PREFIX = "EINVOICE_"

SECTIONS: dict[str, type] = {
    "database": DatabaseSettings,
    "fbr": FbrSettings,
    "retry": RetrySettings,
    "workers": WorkerSettings,
    "ingestion": IngestionSettings,
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}
_NULL = {"", "null", "none"}


def load_yaml_file(path: Path) -> dict[str, Any]:
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _target_type(annotation: Any) -> tuple[type, bool]:
    """(base type, optional) for an annotation such as ``float | None``."""
    if get_origin(annotation) in (Union, types.UnionType):
        args = [a for a in get_args(annotation) if a is not type(None)]
        return args[0], True
    return annotation, False


def coerce(key: str, value: Any, annotation: Any) -> Any:
    base, optional = _target_type(annotation)
    if value is None or (isinstance(value, str) and value.strip().lower() in _NULL and base is not str):
        if optional:
            return None
        raise ConfigurationError(key, "a value is required")

    if base is bool:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ConfigurationError(key, f"expected a boolean, got {value!r}")

    try:
        if base is int:
            if isinstance(value, bool):
                raise ValueError(value)
            return int(str(value).strip())
        if base is float:
            return float(value)
    except ValueError as exc:
        raise ConfigurationError(key, f"expected {base.__name__}, got {value!r}") from exc
    return str(value)


def _build_section(name: str, cls: type, raw: Mapping[str, Any]) -> Any:
    known = {f.name: f for f in dataclasses.fields(cls)}
    kwargs: dict[str, Any] = {}
    for key, value in raw.items():
        if key not in known:
            raise ConfigurationError(f"{name}.{key}", "unknown setting")
        kwargs[key] = coerce(f"{name}.{key}", value, known[key].type)
    return cls(**kwargs)


def environment_overrides(environ: Mapping[str, str]) -> dict[str, dict[str, str]]:
    """Collect ``EINVOICE_<SECTION>__<KEY>`` variables into {section: {key: raw}}."""
    overrides: dict[str, dict[str, str]] = {}
    for name, value in environ.items():
        if not name.startswith(ENV_PREFIX) or "__" not in name:
            continue
        section, _, key = name[len(ENV_PREFIX):].partition("__")
        section, key = section.lower(), key.lower()
        if section not in SECTIONS:
            raise ConfigurationError(name, f"unknown section {section!r}")
        overrides.setdefault(section, {})[key] = value
    return overrides


def build_settings(data: Mapping[str, Any], environ: Mapping[str, str]) -> Settings:
    for section in data:
        if section not in SECTIONS:
            raise ConfigurationError(section, "unknown section")

    overrides = environment_overrides(environ)
    sections: dict[str, Any] = {}
    for name, cls in SECTIONS.items():
        raw = dict(data.get(name) or {})
        raw.update(overrides.get(name, {}))
        sections[name] = _build_section(name, cls, raw)
    return Settings(**sections)
