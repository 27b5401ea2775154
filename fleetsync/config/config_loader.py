"""
Purpose:
    - Load a TOML config file
    - Layer environment and --set KEY=VALUE overrides on top
    - Build and validate a RealtimeConfig

Precedence (later wins): dataclass defaults < file < environment < CLI.
"""

from __future__ import annotations

import dataclasses
import os
import tomllib
import typing
from pathlib import Path
from typing import Any, Mapping, Optional

from pydantic import TypeAdapter, ValidationError

from fleetsync.config.configs import (
    AlertConfig,
    BatchSettings,
    BusConfig,
    ConnectionConfig,
    HealthConfig,
    RealtimeConfig,
    StateConfig,
    UpdateQueueConfig,
)
from fleetsync.core.clock import parse_duration
from fleetsync.errors.errors import ConfigurationError

ENV_PREFIX = "FLEETSYNC_"

_SECTIONS: dict[str, type] = {
    "connection": ConnectionConfig,
    "bus": BusConfig,
    "queue": UpdateQueueConfig,
    "state": StateConfig,
    "health": HealthConfig,
    "alerts": AlertConfig,
}


def insert_path(tree: dict[str, Any], dotted_path: str, value: Any) -> None:
    """Populate ``tree`` with ``value`` located at ``dotted_path``."""

    segments = [segment.strip() for segment in dotted_path.split(".") if segment.strip()]
    if not segments:
        raise ValueError("Override keys must contain at least one non-empty segment")

    cursor: dict[str, Any] = tree
    for segment in segments[:-1]:
        existing = cursor.get(segment)
        if existing is None:
            next_node: dict[str, Any] = {}
            cursor[segment] = next_node
            cursor = next_node
        elif isinstance(existing, dict):
            cursor = existing
        else:
            raise ValueError(
                f"Cannot override nested path '{dotted_path}': "
                f"segment '{segment}' is already a value"
            )
    cursor[segments[-1]] = value


def parse_cli_overrides(pairs: list[str]) -> dict[str, Any]:
    """Expand repeated ``--set a.b=c`` flags into a nested dict."""
    overrides: dict[str, Any] = {}

    for item in pairs:
        key, sep, value = item.partition("=")
        if sep == "":
            raise ValueError(f"--set requires KEY=VALUE format (got {item!r})")
        insert_path(overrides, key, value)
    return overrides


def env_overrides(
    environ: Optional[Mapping[str, str]] = None, prefix: str = ENV_PREFIX
) -> dict[str, Any]:
    """
    FLEETSYNC_CONNECTION__URL=wss://... -> {"connection": {"url": "wss://..."}}.
    Double underscore separates path segments.
    """
    environ = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}
    for key, value in environ.items():
        if not key.startswith(prefix):
            continue
        path = key[len(prefix) :].lower().replace("__", ".")
        insert_path(overrides, path, value)
    return overrides


def _deep_merge(base: dict[str, Any], layer: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in layer.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _field_adapters(cls: type) -> dict[str, TypeAdapter[Any]]:
    hints = typing.get_type_hints(cls)
    return {f.name: TypeAdapter(hints[f.name]) for f in dataclasses.fields(cls)}


FIELD_TYPE_ADAPTERS: dict[str, dict[str, TypeAdapter[Any]]] = {
    section: _field_adapters(cls) for section, cls in _SECTIONS.items()
}
BATCH_TYPE_ADAPTERS: dict[str, TypeAdapter[Any]] = _field_adapters(BatchSettings)


def _coerce(path: str, adapter: TypeAdapter[Any], raw: Any) -> Any:
    """Validate a file/env/CLI value against the field's declared type."""
    try:
        if path.endswith("_s"):
            raw = parse_duration(raw)
        return adapter.validate_python(raw)
    except ValidationError as e:
        reason = "; ".join(err["msg"] for err in e.errors())
        raise ConfigurationError(
            f"Invalid value for {path}: {reason}", field=path, value=raw
        ) from e
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for {path}: {e}", field=path, value=raw) from e


def _build_batches(raw: Any) -> tuple[BatchSettings, ...]:
    if not isinstance(raw, list):
        raise ConfigurationError("queue.batches must be an array of tables", field="queue.batches")
    batches: list[BatchSettings] = []
    for entry in raw:
        if not isinstance(entry, Mapping) or "batch_key" not in entry:
            raise ConfigurationError(
                "each batch needs a batch_key", field="queue.batches", value=entry
            )
        unknown = set(entry) - set(BATCH_TYPE_ADAPTERS)
        if unknown:
            raise ConfigurationError(
                f"Unknown keys in queue.batches: {sorted(unknown)}",
                field="queue.batches",
                value=sorted(unknown),
            )
        fields = {"max_batch_size": 10, "max_wait_s": 1.0, **entry}
        kwargs = {
            name: _coerce(f"queue.batches.{name}", BATCH_TYPE_ADAPTERS[name], value)
            for name, value in fields.items()
        }
        batches.append(BatchSettings(**kwargs))
    return tuple(batches)


def _build_section(section: str, cls: type, data: Mapping[str, Any]) -> Any:
    adapters = FIELD_TYPE_ADAPTERS[section]
    unknown = set(data) - set(adapters)
    if unknown:
        raise ConfigurationError(
            f"Unknown keys in [{section}]: {sorted(unknown)}", field=section, value=sorted(unknown)
        )
    kwargs: dict[str, Any] = {}
    for name, raw in data.items():
        if section == "queue" and name == "batches":
            kwargs[name] = _build_batches(raw)
        else:
            kwargs[name] = _coerce(f"{section}.{name}", adapters[name], raw)
    return cls(**kwargs)


class ConfigLoader:
    """
    Config-loader; loading toml files and resolving override layers.
    """

    def __init__(self, base_dir: str = ".") -> None:
        self._base_dir = base_dir

    def load(self, file_name: str | Path) -> dict[str, Any]:
        path = Path(file_name)
        if not path.is_absolute():
            path = Path(self._base_dir) / path

        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with path.open("rb") as f:
            return tomllib.load(f)

    def resolve(
        self,
        file_cfg: Optional[Mapping[str, Any]] = None,
        env_cfg: Optional[Mapping[str, Any]] = None,
        cli_overrides: Optional[Mapping[str, Any]] = None,
    ) -> dict[str, Any]:
        """Merge the layers in precedence order into one nested dict."""
        resolved: dict[str, Any] = {}
        for layer in (file_cfg, env_cfg, cli_overrides):
            if layer:
                resolved = _deep_merge(resolved, layer)
        return resolved

    def build(self, data: Mapping[str, Any]) -> RealtimeConfig:
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            if key in _SECTIONS:
                if not isinstance(value, Mapping):
                    raise ConfigurationError(f"[{key}] must be a table", field=key, value=value)
                kwargs[key] = _build_section(key, _SECTIONS[key], value)
            else:
                raise ConfigurationError(f"Unknown config section: {key}", field=key)
        return RealtimeConfig(**kwargs)

    def load_realtime_config(
        self,
        file_name: Optional[str | Path] = None,
        *,
        overrides: Optional[list[str]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> RealtimeConfig:
        file_cfg = self.load(file_name) if file_name is not None else None
        resolved = self.resolve(
            file_cfg=file_cfg,
            env_cfg=env_overrides(environ),
            cli_overrides=parse_cli_overrides(overrides or []),
        )
        return self.build(resolved)
