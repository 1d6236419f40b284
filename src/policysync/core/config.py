from __future__ import annotations

import os
import re
import uuid
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Tuple

import yaml
from dotenv import find_dotenv, load_dotenv

from .errors import ConfigError


# ---------- Typed sections ----------

@dataclass
class AppSection:
    run_id: Optional[str] = None
    dry_run: bool = False
    concurrency: int = 4


@dataclass
class ServiceSection:
    base_url: str = ""
    token: str = ""          # secret, never logged in clear text
    verify_tls: bool = True
    timeout_sec: int = 30


@dataclass
class DescriptorsSection:
    search_paths: List[str] = field(default_factory=lambda: ["resources/descriptors"])


@dataclass
class LoggingSection:
    base_dir: str = "logs"
    console_level: str = "INFO"
    file_level: str = "DEBUG"


@dataclass
class StateSection:
    path: str = "policysync.state.json"


@dataclass
class AppConfig:
    """Typed configuration object built by `load_config`."""
    app: AppSection
    service: ServiceSection
    descriptors: DescriptorsSection
    logging: LoggingSection
    state: StateSection

    @property
    def run_id(self) -> str:
        """Stable run identifier, generated on first access when not configured."""
        if not self.app.run_id:
            self.app.run_id = uuid.uuid4().hex[:12]
        return self.app.run_id


# ---------- Defaults ----------

_DEFAULT_FILES: Tuple[str, ...] = (
    "./policysync.yml",
    os.path.expanduser("~/.config/policysync/config.yml"),
    "/etc/policysync/config.yml",
)

_DEFAULTS: Dict[str, Any] = {
    "app": {"run_id": None, "dry_run": False, "concurrency": 4},
    "service": {"base_url": "", "token": "", "verify_tls": True, "timeout_sec": 30},
    "descriptors": {"search_paths": ["resources/descriptors"]},
    "logging": {"base_dir": "logs", "console_level": "INFO", "file_level": "DEBUG"},
    "state": {"path": "policysync.state.json"},
}

_SECTIONS = {
    "app": AppSection,
    "service": ServiceSection,
    "descriptors": DescriptorsSection,
    "logging": LoggingSection,
    "state": StateSection,
}

_PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


# ---------- Layers ----------

def _overlay(base: Dict[str, Any], *layers: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Stack `layers` on top of `base`; nested mappings merge, anything else replaces."""
    out: Dict[str, Any] = dict(base)
    for layer in layers:
        for key, value in (layer or {}).items():
            current = out.get(key)
            if value is None and isinstance(current, dict):
                continue
            out[key] = _overlay(current, value) if isinstance(value, dict) and isinstance(current, dict) else value
    return out


def _read_yaml_file(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Top-level YAML must be a mapping: {path}")
    return data


def _file_layer(files: Tuple[str, ...]) -> Dict[str, Any]:
    path = next((p for p in files if os.path.exists(p)), None)
    return _read_yaml_file(path) if path else {}


def _env_layer(prefix: str) -> Dict[str, Any]:
    """PSYNC_SERVICE__BASE_URL=val becomes {"service": {"base_url": "val"}}."""
    out: Dict[str, Any] = {}
    for key, val in os.environ.items():
        rest = key[len(prefix):]
        if not key.startswith(prefix) or "__" not in rest:
            continue
        *parents, leaf = rest.lower().split("__")
        cursor = out
        for part in parents:
            cursor = cursor.setdefault(part, {})
        cursor[leaf] = val
    return out


def _expand(value: Any) -> Any:
    """Substitute ${VAR} placeholders from the environment (unset means empty)."""
    if isinstance(value, dict):
        return {k: _expand(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand(v) for v in value]
    if isinstance(value, str):
        return _PLACEHOLDER.sub(lambda m: os.environ.get(m.group(1), ""), value)
    return value


# ---------- Coercion ----------

def _as_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _as_int(name: str, value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from exc


def _as_path_list(name: str, value: Any) -> List[str]:
    # env and CLI give one os.pathsep-separated string, YAML gives a list
    if isinstance(value, str):
        return [p for p in value.split(os.pathsep) if p]
    if isinstance(value, (list, tuple)):
        return [str(p) for p in value if str(p)]
    raise ConfigError(f"{name} must be a list of paths, got {value!r}")


_COERCE = {
    ("app", "dry_run"): _as_bool,
    ("app", "concurrency"): _as_int,
    ("service", "verify_tls"): _as_bool,
    ("service", "timeout_sec"): _as_int,
    ("descriptors", "search_paths"): _as_path_list,
}


def _coerce(cfg: Dict[str, Any]) -> Dict[str, Any]:
    out = {name: dict(section) if isinstance(section, dict) else section for name, section in cfg.items()}
    for (section, key), convert in _COERCE.items():
        values = out.get(section)
        if isinstance(values, dict) and values.get(key) is not None:
            values[key] = convert(f"{section}.{key}", values[key])
    return out


def _validate(cfg: Dict[str, Any]) -> None:
    unknown = sorted(set(cfg) - set(_SECTIONS))
    if unknown:
        raise ConfigError(f"Unknown configuration section(s): {', '.join(unknown)}")
    for name, section in _SECTIONS.items():
        values = cfg.get(name, {})
        if not isinstance(values, dict):
            raise ConfigError(f"Section '{name}' must be a mapping")
        extra = sorted(set(values) - {f.name for f in fields(section)})
        if extra:
            raise ConfigError(f"Unknown key(s) in '{name}': {', '.join(extra)}")

    if cfg["app"]["concurrency"] < 1:
        raise ConfigError("app.concurrency must be >= 1")
    if not cfg["app"]["dry_run"] and not cfg["service"].get("base_url"):
        raise ConfigError("Missing required configuration for non-dry run: service.base_url")


# ---------- Public API ----------

def load_config(
    cli_overrides: Optional[Dict[str, Any]] = None,
    files: Tuple[str, ...] = _DEFAULT_FILES,
    env_prefix: str = "PSYNC_",
    dotenv_path: Optional[str] = None,
) -> AppConfig:
    """
    Resolve configuration, lowest precedence first: built-in defaults, the
    first YAML file of `files` that exists, PSYNC_* environment variables
    (after `.env` is loaded), then `cli_overrides`.

    `dotenv_path=""` skips `.env` discovery. A `.env` file never overrides
    variables that are already exported.
    """
    env_path = dotenv_path if dotenv_path is not None else (find_dotenv(usecwd=True) or "")
    if env_path:
        load_dotenv(env_path, override=False)

    cfg = _overlay(_DEFAULTS, _file_layer(files), _env_layer(env_prefix), cli_overrides)
    cfg = _coerce(_expand(cfg))
    _validate(cfg)
    return AppConfig(**{name: section(**cfg[name]) for name, section in _SECTIONS.items()})
