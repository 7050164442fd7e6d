from __future__ import annotations

from pathlib import Path

import pytest

from archsentinel.config import (
    ArchSentinelConfig,
    ConfigError,
    compute_enabled_rule_ids,
    load_config,
    path_is_ignored,
)


def _write_pyproject(root: Path, body: str) -> None:
    (root / "pyproject.toml").write_text(body.lstrip(), encoding="utf-8")


def test_load_config_defaults_when_no_pyproject(tmp_path: Path) -> None:
    config = load_config(tmp_path)
    assert isinstance(config, ArchSentinelConfig)
    assert config.agent == "feature-developer"
    assert config.layering.layers["/domain/"] == "domain"
    assert config.layering.port_package == "domain.port"
    assert "Entity" in config.layering.forbidden_annotations
    assert config.store.path == ".archsentinel/violations.sqlite"
    assert config.watch.debounce == 2.0
    assert config.fix.max_rounds == 3


def test_load_config_reads_tool_table(tmp_path: Path) -> None:
    _write_pyproject(
        tmp_path,
        """
[tool.archsentinel]
agent = "backend-bot"
port-package = "core.ports"
adapter-suffixes = ["Gateway"]
forbidden-annotations = ["@Entity", "Service"]
forbidden-import-prefixes = ["jakarta.persistence.*"]
logic-threshold = 0.5
logic-min-constructs = 4

[tool.archsentinel.layers]
"core" = "domain"
"/web/" = "api"

[tool.archsentinel.rules]
enable = ["layering"]
disable = ["wrong-dependency-direction"]

[tool.archsentinel.rules.severity_overrides]
DOMAIN_ANNOTATION = "medium"

[tool.archsentinel.ignore]
paths = ["generated/"]

[tool.archsentinel.store]
path = "var/arch.sqlite"

[tool.archsentinel.watch]
debounce = 0.5

[tool.archsentinel.fix]
max-rounds = 5
""",
    )

    config = load_config(tmp_path)
    assert config.agent == "backend-bot"
    assert dict(config.layering.layers) == {"/core/": "domain", "/web/": "api"}
    assert config.layering.port_package == "core.ports"
    assert config.layering.adapter_suffixes == ("Gateway",)
    assert config.layering.forbidden_annotations == frozenset({"Entity", "Service"})
    assert config.layering.forbidden_import_prefixes == ("jakarta.persistence",)
    assert config.layering.logic_threshold == 0.5
    assert config.layering.logic_min_constructs == 4
    assert config.rules.severity_overrides["DOMAIN_ANNOTATION"] == "MEDIUM"
    assert config.ignore.paths == ("generated/",)
    assert config.store.path == "var/arch.sqlite"
    assert config.watch.debounce == 0.5
    assert config.fix.max_rounds == 5

    enabled = compute_enabled_rule_ids(config)
    assert "MISSING_INTERFACE" in enabled
    assert "WRONG_DEPENDENCY_DIRECTION" not in enabled
    assert "MISPLACED_COMPONENT" not in enabled


@pytest.mark.parametrize(
    "body",
    [
        '[tool.archsentinel]\nagent = ""\n',
        '[tool.archsentinel.layers]\n"domain" = "persistence"\n',
        "[tool.archsentinel]\nlogic-threshold = 2.0\n",
        "[tool.archsentinel]\nlogic-min-constructs = 0\n",
        '[tool.archsentinel.rules]\nenable = ["not a rule!"]\n',
        '[tool.archsentinel.rules.severity_overrides]\nMISSING_INTERFACE = "fatal"\n',
        "[tool.archsentinel.watch]\ndebounce = -1\n",
        "[tool.archsentinel.fix]\nmax-rounds = 0\n",
        "[tool.archsentinel]\nstore = 3\n",
    ],
)
def test_invalid_config_raises(tmp_path: Path, body: str) -> None:
    _write_pyproject(tmp_path, body)
    with pytest.raises(ConfigError):
        load_config(tmp_path)


def test_invalid_toml_raises(tmp_path: Path) -> None:
    _write_pyproject(tmp_path, "[tool.archsentinel\n")
    with pytest.raises(ConfigError, match="Invalid TOML"):
        load_config(tmp_path)


def test_enable_all_respects_available_ids() -> None:
    config = ArchSentinelConfig()
    enabled = compute_enabled_rule_ids(config, available_rule_ids=["MISSING_INTERFACE", "CUSTOM_RULE"])
    assert enabled == {"MISSING_INTERFACE", "CUSTOM_RULE"}


def test_path_is_ignored_patterns(tmp_path: Path) -> None:
    test_file = tmp_path / "src" / "test" / "java" / "FooTest.java"
    generated = tmp_path / "src" / "main" / "java" / "FooGenerated.java"
    regular = tmp_path / "src" / "main" / "java" / "Foo.java"

    assert path_is_ignored(test_file, project_root=tmp_path, ignore_patterns=["src/test/"])
    assert path_is_ignored(generated, project_root=tmp_path, ignore_patterns=["*Generated.java"])
    assert not path_is_ignored(regular, project_root=tmp_path, ignore_patterns=["src/test/", "*Generated.java"])
    assert not path_is_ignored(Path("/elsewhere/Foo.java"), project_root=tmp_path, ignore_patterns=["*.java"])
