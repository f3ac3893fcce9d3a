"""Configuration for the in-process control plane."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Mapping

import yaml  # type: ignore[import-untyped]

logger = logging.getLogger(__name__)


@dataclass
class EventsConfig:
    """Hash-chained event log sizing."""

    capacity: int = field(default=10_000, metadata={"env": "MASTERCHEF_EVENTS_CAPACITY"})
    subscriber_buffer: int = field(
        default=64, metadata={"env": "MASTERCHEF_EVENTS_SUBSCRIBER_BUFFER"}
    )


@dataclass
class DeliveryConfig:
    """Webhook and notification delivery settings."""

    history_limit: int = field(
        default=5000, metadata={"env": "MASTERCHEF_DELIVERY_HISTORY_LIMIT"}
    )
    timeout: float = field(default=3.0, metadata={"env": "MASTERCHEF_DELIVERY_TIMEOUT"})


@dataclass
class VariablesConfig:
    base_dir: str = field(default=".", metadata={"env": "MASTERCHEF_VARIABLES_BASE_DIR"})
    http_timeout: float = field(
        default=8.0, metadata={"env": "MASTERCHEF_VARIABLES_HTTP_TIMEOUT"}
    )


@dataclass
class EncryptedVarsConfig:
    base_dir: str = field(default=".", metadata={"env": "MASTERCHEF_ENCRYPTED_VARS_BASE_DIR"})


CONFIG_SECTION_NAMES: tuple[str, ...] = ("events", "delivery", "variables", "encrypted_vars")


@dataclass
class ControlPlaneConfig:
    """All sections; missing sections fall back to their defaults."""

    events: EventsConfig = field(default_factory=EventsConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    variables: VariablesConfig = field(default_factory=VariablesConfig)
    encrypted_vars: EncryptedVarsConfig = field(default_factory=EncryptedVarsConfig)


_SECTION_TYPES: dict[str, type] = {
    "events": EventsConfig,
    "delivery": DeliveryConfig,
    "variables": VariablesConfig,
    "encrypted_vars": EncryptedVarsConfig,
}


def _ensure_mapping(name: str, value: Any) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise TypeError(f"{name} section must be a mapping")
    return value


def _coerce(section: str, name: str, expected: Any, value: Any) -> Any:
    if isinstance(expected, bool):
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in {"1", "true", "yes", "on"}:
            return True
        if text in {"0", "false", "no", "off"}:
            return False
        raise ValueError(f"{section}.{name} must be a boolean")
    if isinstance(expected, int):
        if isinstance(value, bool):
            raise TypeError(f"{section}.{name} must be an integer")
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"{section}.{name} must be an integer") from exc
    if isinstance(expected, float):
        if isinstance(value, bool):
            raise TypeError(f"{section}.{name} must be a number")
        try:
            return float(value)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"{section}.{name} must be a number") from exc
    if not isinstance(value, str):
        raise TypeError(f"{section}.{name} must be a string")
    return value


def _build_section(section: str, raw: Mapping[str, Any]) -> Any:
    section_type = _SECTION_TYPES[section]
    defaults = section_type()
    known = {item.name for item in fields(section_type)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ValueError(f"unknown {section} setting(s): {', '.join(unknown)}")
    kwargs = {
        name: _coerce(section, name, getattr(defaults, name), value)
        for name, value in raw.items()
        if value is not None
    }
    return section_type(**kwargs)


def load_control_plane_config(data: Mapping[str, Any] | None) -> ControlPlaneConfig:
    """Coerce raw mapping data into :class:`ControlPlaneConfig`.

    Raises
    ------
    TypeError
        If the document or one of its sections is not a mapping, or a value
        has the wrong type.
    ValueError
        If a section carries an unknown key or a value cannot be converted.
    """

    raw = _ensure_mapping("control plane", data or {})
    sections: dict[str, Any] = {}
    for name in CONFIG_SECTION_NAMES:
        value = raw.get(name)
        sections[name] = _build_section(name, _ensure_mapping(name, value or {}))
    return ControlPlaneConfig(**sections)


def apply_env_overrides(
    config: ControlPlaneConfig, environ: Mapping[str, str] | None = None
) -> ControlPlaneConfig:
    """Overwrite fields in place from their ``MASTERCHEF_*`` variables."""

    env = os.environ if environ is None else environ
    for section_name in CONFIG_SECTION_NAMES:
        section = getattr(config, section_name)
        for item in fields(section):
            key = item.metadata.get("env")
            if not key or key not in env:
                continue
            value = _coerce(section_name, item.name, getattr(section, item.name), env[key])
            setattr(section, item.name, value)
            logger.debug("config %s.%s overridden by %s", section_name, item.name, key)
    return config


def load_config(path: str, *, environ: Mapping[str, str] | None = None) -> ControlPlaneConfig:
    """Parse a YAML file, then apply environment overrides."""

    try:
        with open(path, "r", encoding="utf-8") as fh:
            try:
                data = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                logger.error("Failed to parse configuration file %s: %s", path, exc)
                raise ValueError(f"Failed to parse configuration file {path}") from exc
    except OSError as exc:
        logger.error("Unable to open configuration file %s: %s", path, exc)
        raise
    if not isinstance(data, dict):
        raise TypeError("control plane config must be a mapping")
    return apply_env_overrides(load_control_plane_config(data), environ)


__all__ = [
    "CONFIG_SECTION_NAMES",
    "ControlPlaneConfig",
    "DeliveryConfig",
    "EncryptedVarsConfig",
    "EventsConfig",
    "VariablesConfig",
    "apply_env_overrides",
    "load_config",
    "load_control_plane_config",
]
