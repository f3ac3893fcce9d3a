from __future__ import annotations

import pytest

from masterchef.services.control.errors import ConflictError, ValidationError
from masterchef.services.control.masterless import MasterlessStore, render_template
from masterchef.services.control.merge import Layer, MergeStrategy


def test_render_requires_enabled_mode(clock) -> None:
    store = MasterlessStore(clock=clock)
    assert store.mode().enabled is False
    with pytest.raises(ConflictError, match="masterless mode is disabled"):
        store.render("pkg: {{ pillar.pkg }}")
    with pytest.raises(ValidationError, match="state_root is required"):
        store.set_mode(enabled=True)


def test_render_substitutes_pillar_and_vars(clock) -> None:
    store = MasterlessStore(clock=clock)
    mode = store.set_mode(enabled=True, state_root="/srv/state", default_strategy="merge-first")
    assert mode.default_strategy is MergeStrategy.MERGE_FIRST

    result = store.render(
        "pkg={{ pillar.app.pkg }} port={{pillar.app.port}} env={{ var.env }} x={{ var.nope }}",
        layers=[Layer("a", {"app": {"pkg": "nginx", "port": 80}}), Layer("b", {"app": {"port": 81}})],
        lookups=["app.port", "app.absent"],
        variables={"env": "prod"},
    )

    assert result.rendered_state == "pkg=nginx port=80 env=prod x={{ var.nope }}"
    assert result.effective_strategy is MergeStrategy.MERGE_FIRST
    assert result.lookups == {"app.port": 80}
    assert result.missing_tokens == ["var.nope"]
    assert result.deterministic is False


def test_strategy_override_and_structured_values() -> None:
    rendered, missing = render_template(
        "{{ pillar.list }} {{ pillar.flag }}", {"list": [1, 2], "flag": True}, {}
    )
    assert rendered == "[1, 2] true"
    assert missing == []
