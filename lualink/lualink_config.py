"""
Binding-wide configuration.

The configuration is resolved once per process from defaults, an optional
YAML file and environment overrides, and is frozen on first use. Runtime
contexts capture it at construction; no operation takes a per-call policy.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, replace, fields
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from lualink.lualink_errors import ConfigurationError

CONFIG_ENV = "LUALINK_CONFIG"

_ENV_OVERRIDES = {
    "return_policy": "LUALINK_RETURN_POLICY",
    "encoding": "LUALINK_ENCODING",
    "open_libs": "LUALINK_OPEN_LIBS",
    "debug": "LUALINK_DEBUG",
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


class ReturnPolicy(str, Enum):
    """How the results of a call are aggregated for the host."""
    SINGLE = "single"
    TABLE = "table"
    VECTOR = "vector"


@dataclass(frozen=True)
class BindingConfig:
    return_policy: ReturnPolicy = ReturnPolicy.TABLE
    encoding: Optional[str] = "UTF-8"
    open_libs: bool = False
    debug: bool = False


def _to_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigurationError(f"{name}: expected a boolean, got {value!r}")


def _coerce(values: Mapping[str, Any]) -> Dict[str, Any]:
    known = {f.name for f in fields(BindingConfig)}
    out: Dict[str, Any] = {}
    for key, value in values.items():
        key = str(key).replace("-", "_")
        if key not in known:
            raise ConfigurationError(f"unknown configuration key: {key}")
        match key:
            case "return_policy":
                try:
                    out[key] = ReturnPolicy(str(getattr(value, "value", value)).lower())
                except ValueError:
                    raise ConfigurationError(
                        f"return_policy must be one of single, table, vector (got {value!r})"
                    ) from None
            case "encoding":
                out[key] = None if value in (None, "", "none", "None") else str(value)
            case _:
                out[key] = _to_bool(key, value)
    return out


def _read_file(path: str | Path) -> Dict[str, Any]:
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigurationError(f"configuration file not found: {p}") from None
    data = yaml.safe_load(text)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"configuration file must hold a mapping: {p}")
    # Allow the settings to be nested under a top-level 'lualink' key.
    if set(data) == {"lualink"} and isinstance(data["lualink"], dict):
        data = data["lualink"]
    return data


def load_config(path: Optional[str | Path] = None,
                env: Optional[Mapping[str, str]] = None) -> BindingConfig:
    """Build a configuration from defaults, a YAML file and env overrides.

    `path` wins over the LUALINK_CONFIG variable. Environment overrides are
    applied last.
    """
    environ = os.environ if env is None else env
    values: Dict[str, Any] = {}
    source = path or environ.get(CONFIG_ENV)
    if source:
        values.update(_read_file(source))
    for key, var in _ENV_OVERRIDES.items():
        if var in environ:
            values[key] = environ[var]
    return BindingConfig(**_coerce(values))


_active: Optional[BindingConfig] = None


def get_config() -> BindingConfig:
    """Return the process-wide configuration, resolving and freezing it on first use."""
    global _active
    if _active is None:
        _active = load_config()
    return _active


def configure(**overrides: Any) -> BindingConfig:
    """Choose the process-wide configuration before it is first used.

    Once frozen, the configuration can only be 're-set' to identical values.
    """
    global _active
    if _active is None:
        _active = replace(load_config(), **_coerce(overrides))
        return _active
    wanted = replace(_active, **_coerce(overrides))
    if wanted != _active:
        raise ConfigurationError("binding configuration is already in use and cannot change")
    return _active
