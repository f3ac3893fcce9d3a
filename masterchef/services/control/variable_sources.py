"""Resolve variable layers from inline, environment, file and HTTP sources."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Iterable, Mapping

import httpx
import yaml  # type: ignore[import-untyped]
from pydantic import BaseModel, ConfigDict, Field

from masterchef.foundation.common.clone import json_clone

from .errors import ControlPlaneError, ValidationError
from .merge import Layer

logger = logging.getLogger(__name__)

DEFAULT_HTTP_SOURCE_TIMEOUT = 8.0
SOURCE_TYPES = ("inline", "env", "file", "http")


class VariableSourceSpec(BaseModel):
    """Declarative description of one variable source."""

    model_config = ConfigDict(extra="ignore")

    name: str = ""
    type: str = ""
    config: dict[str, Any] = Field(default_factory=dict)


def parse_variable_payload(raw: bytes | str) -> dict[str, Any]:
    """Decode a JSON or YAML object; blank payloads decode to ``{}``."""

    text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
    text = text.strip()
    if not text:
        return {}
    try:
        decoded = json.loads(text)
    except ValueError:
        decoded = None
    if isinstance(decoded, dict):
        return decoded
    try:
        decoded = yaml.safe_load(text)
    except yaml.YAMLError:
        decoded = None
    if isinstance(decoded, dict):
        return decoded
    raise ValidationError("payload must be valid json or yaml object")


def normalize_env_key(key: str, prefix: str) -> str:
    if prefix and key.startswith(prefix):
        key = key[len(prefix) :]
    return key.lower().strip("_").replace("__", "_")


def set_nested_value(dest: dict[str, Any], path: str, value: Any) -> None:
    parts = [part.strip() for part in path.split(".") if part.strip()]
    if not parts:
        return
    current = dest
    for part in parts[:-1]:
        child = current.get(part)
        if not isinstance(child, dict):
            child = {}
            current[part] = child
        current = child
    current[parts[-1]] = json_clone(value)


def _string_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    return json.dumps(value).strip('"')


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, (list, tuple)):
        return []
    items = (_string_value(item).strip() for item in value)
    return [item for item in items if item]


class VariableSourceRegistry:
    """Turns :class:`VariableSourceSpec` entries into merge layers.

    Parameters
    ----------
    base_dir:
        Directory against which relative ``file`` source paths resolve.
    client:
        Optional :class:`httpx.AsyncClient` used by ``http`` sources. When
        omitted a short-lived client with an 8 second timeout is created per
        resolution.
    environ:
        Environment mapping read by ``env`` sources; defaults to
        :data:`os.environ`.
    """

    def __init__(
        self,
        base_dir: str | Path = ".",
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_HTTP_SOURCE_TIMEOUT,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.base_dir = Path(base_dir)
        self._client = client
        self._timeout = timeout
        self._environ = environ

    async def resolve_layers(
        self, specs: Iterable[VariableSourceSpec | Mapping[str, Any]]
    ) -> list[Layer]:
        """Resolve *specs* in order.

        Cancelling the awaiting task abandons any in-flight HTTP request.
        """

        layers: list[Layer] = []
        for position, raw in enumerate(specs, start=1):
            spec = raw if isinstance(raw, VariableSourceSpec) else VariableSourceSpec.model_validate(raw)
            name = spec.name.strip() or f"source-{position}"
            source_type = spec.type.strip().lower()
            if not source_type:
                raise ValidationError("source type is required")
            if source_type not in SOURCE_TYPES:
                raise ValidationError(f"unsupported variable source type: {source_type}")
            try:
                data = await self._resolve(source_type, spec.config or {})
            except ControlPlaneError as exc:
                raise type(exc)(f"{name}: {exc.reason}") from exc
            except (OSError, httpx.HTTPError) as exc:
                raise ControlPlaneError(f"{name}: {exc}") from exc
            logger.debug("resolved variable source %s (%s) with %d keys", name, source_type, len(data))
            layers.append(Layer(name=name, data=data))
        return layers

    async def _resolve(self, source_type: str, config: Mapping[str, Any]) -> dict[str, Any]:
        if source_type == "inline":
            return self._resolve_inline(config)
        if source_type == "env":
            return self._resolve_env(config)
        if source_type == "file":
            return await self._resolve_file(config)
        return await self._resolve_http(config)

    def _resolve_inline(self, config: Mapping[str, Any]) -> dict[str, Any]:
        if "data" not in config:
            raise ValidationError("inline source requires config.data object")
        data = config["data"]
        if not isinstance(data, Mapping):
            raise ValidationError("inline source config.data must be an object")
        return json_clone(dict(data))

    def _resolve_env(self, config: Mapping[str, Any]) -> dict[str, Any]:
        environ = self._environ if self._environ is not None else os.environ
        prefix = _string_value(config.get("prefix")).strip()
        keys = _string_list(config.get("keys"))
        target = _string_value(config.get("target")).strip()
        values: dict[str, Any] = {}
        if keys:
            for key in keys:
                if key in environ:
                    values[normalize_env_key(key, prefix)] = environ[key]
        else:
            for key, value in environ.items():
                if prefix and not key.startswith(prefix):
                    continue
                values[normalize_env_key(key, prefix)] = value
        if not target:
            return values
        wrapped: dict[str, Any] = {}
        set_nested_value(wrapped, target, values)
        return wrapped

    async def _resolve_file(self, config: Mapping[str, Any]) -> dict[str, Any]:
        raw_path = _string_value(config.get("path")).strip()
        if not raw_path:
            raise ValidationError("file source requires config.path")
        path = Path(raw_path)
        if not path.is_absolute():
            path = self.base_dir / path
        payload = await asyncio.to_thread(path.read_bytes)
        return parse_variable_payload(payload)

    async def _resolve_http(self, config: Mapping[str, Any]) -> dict[str, Any]:
        url = _string_value(config.get("url")).strip()
        if not url:
            raise ValidationError("http source requires config.url")
        raw_headers = config.get("headers")
        headers = (
            {str(key): _string_value(value) for key, value in raw_headers.items()}
            if isinstance(raw_headers, Mapping)
            else {}
        )
        if self._client is not None:
            response = await self._client.get(url, headers=headers, timeout=self._timeout)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.get(url, headers=headers)
        if not 200 <= response.status_code < 300:
            raise ControlPlaneError(
                f"unexpected http status: {response.status_code} {response.reason_phrase}".rstrip()
            )
        return parse_variable_payload(response.content)


__all__ = [
    "DEFAULT_HTTP_SOURCE_TIMEOUT",
    "VariableSourceRegistry",
    "VariableSourceSpec",
    "normalize_env_key",
    "parse_variable_payload",
    "set_nested_value",
]
