from __future__ import annotations

import json

import httpx
import pytest

from masterchef.services.control.errors import ControlPlaneError, ValidationError
from masterchef.services.control.variable_sources import (
    VariableSourceRegistry,
    VariableSourceSpec,
    normalize_env_key,
    parse_variable_payload,
    set_nested_value,
)


def test_parse_payload_accepts_json_and_yaml() -> None:
    assert parse_variable_payload(b'{"a": 1}') == {"a": 1}
    assert parse_variable_payload("a:\n  b: 2\n") == {"a": {"b": 2}}
    assert parse_variable_payload("   ") == {}
    with pytest.raises(ValidationError, match="payload must be valid json or yaml object"):
        parse_variable_payload("- just\n- a list\n")


def test_env_key_and_nested_helpers() -> None:
    assert normalize_env_key("APP_DB__HOST", "APP_") == "db_host"
    dest: dict = {"a": "scalar"}
    set_nested_value(dest, "a.b.c", {"x": 1})
    assert dest == {"a": {"b": {"c": {"x": 1}}}}
    set_nested_value(dest, " . ", 1)
    assert dest == {"a": {"b": {"c": {"x": 1}}}}


@pytest.mark.asyncio
async def test_inline_env_and_file_sources(tmp_path) -> None:
    (tmp_path / "vars.yaml").write_text("region: eu-west-1\n", encoding="utf-8")
    registry = VariableSourceRegistry(
        tmp_path, environ={"APP_PORT": "8080", "APP_MODE": "prod", "OTHER": "x"}
    )

    layers = await registry.resolve_layers(
        [
            {"name": "inline", "type": "inline", "config": {"data": {"tier": "web"}}},
            VariableSourceSpec(type="ENV", config={"prefix": "APP_", "target": "app.env"}),
            {"name": "file", "type": "file", "config": {"path": "vars.yaml"}},
        ]
    )

    assert [layer.name for layer in layers] == ["inline", "source-2", "file"]
    assert layers[0].data == {"tier": "web"}
    assert layers[1].data == {"app": {"env": {"port": "8080", "mode": "prod"}}}
    assert layers[2].data == {"region": "eu-west-1"}


@pytest.mark.asyncio
async def test_env_source_reads_listed_keys_from_process(monkeypatch) -> None:
    monkeypatch.setenv("MC_TEST_TOKEN", "abc")
    registry = VariableSourceRegistry()
    layers = await registry.resolve_layers(
        [{"name": "env", "type": "env", "config": {"keys": ["MC_TEST_TOKEN", "MC_TEST_ABSENT"]}}]
    )
    assert layers[0].data == {"mc_test_token": "abc"}


@pytest.mark.asyncio
async def test_http_source_uses_client_and_headers() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=json.dumps({"feature": {"on": True}}).encode())

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        registry = VariableSourceRegistry(client=client)
        layers = await registry.resolve_layers(
            [
                {
                    "name": "remote",
                    "type": "http",
                    "config": {"url": "http://vars.local/app", "headers": {"X-Token": "t"}},
                }
            ]
        )

    assert layers[0].data == {"feature": {"on": True}}
    assert seen[0].headers["X-Token"] == "t"


@pytest.mark.asyncio
async def test_http_source_non_2xx_names_the_source() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(503))
    async with httpx.AsyncClient(transport=transport) as client:
        registry = VariableSourceRegistry(client=client)
        with pytest.raises(ControlPlaneError, match="remote: unexpected http status: 503"):
            await registry.resolve_layers(
                [{"name": "remote", "type": "http", "config": {"url": "http://vars.local"}}]
            )


@pytest.mark.asyncio
async def test_source_validation_errors_keep_their_type(tmp_path) -> None:
    registry = VariableSourceRegistry(tmp_path)

    with pytest.raises(ValidationError, match="unsupported variable source type: vault"):
        await registry.resolve_layers([{"type": "vault"}])
    with pytest.raises(ValidationError, match="source type is required"):
        await registry.resolve_layers([{"name": "blank"}])
    with pytest.raises(ValidationError, match="bad: inline source requires config.data object"):
        await registry.resolve_layers([{"name": "bad", "type": "inline"}])
    with pytest.raises(ValidationError, match="source-1: file source requires config.path"):
        await registry.resolve_layers([{"type": "file", "config": {}}])


@pytest.mark.asyncio
async def test_missing_file_is_wrapped(tmp_path) -> None:
    registry = VariableSourceRegistry(tmp_path)
    with pytest.raises(ControlPlaneError, match="^gone: ") as excinfo:
        await registry.resolve_layers([{"name": "gone", "type": "file", "config": {"path": "nope.yml"}}])
    assert isinstance(excinfo.value.__cause__, FileNotFoundError)
