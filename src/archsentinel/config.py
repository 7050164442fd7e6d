from __future__ import annotations

import re
import tomllib
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, cast

from archsentinel.engine.types import LAYERS, SEVERITY_ORDER, Layer, Severity


class ConfigError(ValueError):
    """Raised when an ArchSentinel configuration table is invalid."""


RuleId = str
RuleGroup = str

_RULE_ID_RE = re.compile(r"^[A-Z][A-Z0-9_]{2,}$")

DEFAULT_AGENT = "feature-developer"
DEFAULT_STORE_PATH = ".archsentinel/violations.sqlite"
DEFAULT_DEBOUNCE_SECONDS = 2.0
DEFAULT_MAX_FIX_ROUNDS = 3
DEFAULT_LOGIC_THRESHOLD = 0.2
DEFAULT_LOGIC_MIN_CONSTRUCTS = 3
DEFAULT_PORT_PACKAGE = "domain.port"
DEFAULT_IGNORE_PATHS: tuple[str, ...] = ("src/test/",)

# Fragment -> layer. Fragments are matched against "/" + relative path, so
# "/domain/" matches both "src/main/java/com/acme/domain/..." and "domain/...".
DEFAULT_LAYERS: dict[str, Layer] = {
    "/domain/": "domain",
    "/application/": "application",
    "/infrastructure/": "infrastructure",
    "/api/": "api",
}

DEFAULT_ADAPTER_SUFFIXES: tuple[str, ...] = ("Client", "RepositoryImpl", "Adapter")

DEFAULT_FORBIDDEN_ANNOTATIONS: tuple[str, ...] = (
    # JPA
    "Entity",
    "Table",
    "Column",
    "Id",
    "GeneratedValue",
    "Embeddable",
    "Embedded",
    "EmbeddedId",
    "JoinColumn",
    "JoinTable",
    "OneToOne",
    "OneToMany",
    "ManyToOne",
    "ManyToMany",
    "Enumerated",
    "Transient",
    "Version",
    "MappedSuperclass",
    # Spring stereotypes and wiring
    "Component",
    "Service",
    "Repository",
    "Controller",
    "RestController",
    "Configuration",
    "Autowired",
    "Transactional",
    "Value",
)

DEFAULT_FORBIDDEN_IMPORT_PREFIXES: tuple[str, ...] = (
    "javax.persistence",
    "jakarta.persistence",
    "org.springframework",
)

# Keep these in sync with `archsentinel.rules.registry.builtin_rules()`.
DEFAULT_RULE_GROUPS: dict[RuleGroup, tuple[RuleId, ...]] = {
    "layering": (
        "MISSING_INTERFACE",
        "DOMAIN_ANNOTATION",
        "FRAMEWORK_IMPORT_IN_DOMAIN",
        "BUSINESS_LOGIC_IN_WRONG_LAYER",
        "WRONG_DEPENDENCY_DIRECTION",
    ),
    "conventions": (
        "APPLICATION_DEPENDS_ON_INFRASTRUCTURE",
        "MISPLACED_COMPONENT",
    ),
}
DEFAULT_RULE_GROUPS["all"] = tuple(
    rule_id for group in ("layering", "conventions") for rule_id in DEFAULT_RULE_GROUPS[group]
)


def _normalize_group(value: str) -> str:
    return value.strip().lower().replace("-", "_")


def _normalize_rule_id(value: str) -> str:
    # Rule IDs are case-insensitive in UX, but canonicalized internally.
    return value.strip().upper().replace("-", "_")


def _validate_str_list(value: Any, *, field_name: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list) or any(not isinstance(v, str) for v in value):
        raise ConfigError(f"`{field_name}` must be a list of strings.")
    return tuple(v.strip() for v in value)


def _validate_severity(value: Any, *, field_name: str) -> Severity:
    if not isinstance(value, str):
        raise ConfigError(f"`{field_name}` must be a string.")
    normalized = value.strip().upper()
    if normalized not in SEVERITY_ORDER:
        raise ConfigError(f"`{field_name}` must be one of: {', '.join(SEVERITY_ORDER)}.")
    return cast(Severity, normalized)


@dataclass(frozen=True, slots=True)
class RulesConfig:
    enable: str | tuple[str, ...] = "all"
    disable: tuple[str, ...] = ()
    severity_overrides: Mapping[RuleId, Severity] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True, slots=True)
class LayeringConfig:
    """
    The layering contract: how paths map to layers and what each layer may carry.
    """

    layers: Mapping[str, Layer] = field(default_factory=lambda: MappingProxyType(dict(DEFAULT_LAYERS)))
    port_package: str = DEFAULT_PORT_PACKAGE
    adapter_suffixes: tuple[str, ...] = DEFAULT_ADAPTER_SUFFIXES
    forbidden_annotations: frozenset[str] = frozenset(DEFAULT_FORBIDDEN_ANNOTATIONS)
    forbidden_import_prefixes: tuple[str, ...] = DEFAULT_FORBIDDEN_IMPORT_PREFIXES
    logic_threshold: float = DEFAULT_LOGIC_THRESHOLD
    logic_min_constructs: int = DEFAULT_LOGIC_MIN_CONSTRUCTS


@dataclass(frozen=True, slots=True)
class IgnoreConfig:
    paths: tuple[str, ...] = DEFAULT_IGNORE_PATHS


@dataclass(frozen=True, slots=True)
class StoreConfig:
    path: str = DEFAULT_STORE_PATH


@dataclass(frozen=True, slots=True)
class WatchConfig:
    debounce: float = DEFAULT_DEBOUNCE_SECONDS


@dataclass(frozen=True, slots=True)
class FixConfig:
    max_rounds: int = DEFAULT_MAX_FIX_ROUNDS


@dataclass(frozen=True, slots=True)
class ArchSentinelConfig:
    agent: str = DEFAULT_AGENT
    layering: LayeringConfig = field(default_factory=LayeringConfig)
    rules: RulesConfig = field(default_factory=RulesConfig)
    ignore: IgnoreConfig = field(default_factory=IgnoreConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    watch: WatchConfig = field(default_factory=WatchConfig)
    fix: FixConfig = field(default_factory=FixConfig)


def load_config(project_dir: Path | str = ".") -> ArchSentinelConfig:
    """
    Load ArchSentinel configuration from `pyproject.toml` within `project_dir`.

    If no file / no `[tool.archsentinel]` table exists, returns defaults.
    """

    pyproject_path = Path(project_dir) / "pyproject.toml"
    if not pyproject_path.exists():
        return ArchSentinelConfig()

    try:
        data = tomllib.loads(pyproject_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {pyproject_path}: {exc}") from exc

    tool_table = data.get("tool", {})
    if not isinstance(tool_table, dict):
        return ArchSentinelConfig()

    table = tool_table.get("archsentinel", {})
    if not isinstance(table, dict) or not table:
        return ArchSentinelConfig()

    return _parse_archsentinel_table(table)


def _parse_archsentinel_table(table: dict[str, Any]) -> ArchSentinelConfig:
    agent = table.get("agent", DEFAULT_AGENT)
    if not isinstance(agent, str) or not agent.strip():
        raise ConfigError("`tool.archsentinel.agent` must be a non-empty string.")

    return ArchSentinelConfig(
        agent=agent.strip(),
        layering=_parse_layering_config(table),
        rules=_parse_rules_config(table.get("rules", {})),
        ignore=_parse_ignore_config(table.get("ignore", {})),
        store=_parse_store_config(table.get("store", {})),
        watch=_parse_watch_config(table.get("watch", {})),
        fix=_parse_fix_config(table.get("fix", {})),
    )


def _get(table: dict[str, Any], key: str, default: Any) -> Any:
    # Accept both `kebab-case` and `snake_case` keys.
    if key in table:
        return table[key]
    return table.get(key.replace("-", "_"), default)


def _parse_layering_config(table: dict[str, Any]) -> LayeringConfig:
    layers_raw = table.get("layers")
    layers: dict[str, Layer]
    if layers_raw is None:
        layers = dict(DEFAULT_LAYERS)
    else:
        if not isinstance(layers_raw, dict) or not layers_raw:
            raise ConfigError("`tool.archsentinel.layers` must be a non-empty table of fragment = layer.")
        layers = {}
        for raw_fragment, raw_layer in layers_raw.items():
            if not isinstance(raw_layer, str) or raw_layer.strip().lower() not in LAYERS:
                raise ConfigError(
                    f"`tool.archsentinel.layers.{raw_fragment}` must be one of: {', '.join(LAYERS)}."
                )
            fragment = str(raw_fragment).strip().replace("\\", "/")
            if not fragment:
                raise ConfigError("`tool.archsentinel.layers` keys must not be empty.")
            if not fragment.startswith("/"):
                fragment = "/" + fragment
            if not fragment.endswith("/"):
                fragment += "/"
            layers[fragment] = cast(Layer, raw_layer.strip().lower())

    port_package = _get(table, "port-package", DEFAULT_PORT_PACKAGE)
    if not isinstance(port_package, str) or not port_package.strip(".").strip():
        raise ConfigError("`tool.archsentinel.port-package` must be a dotted package fragment.")

    adapter_suffixes = _validate_str_list(
        _get(table, "adapter-suffixes", list(DEFAULT_ADAPTER_SUFFIXES)),
        field_name="tool.archsentinel.adapter-suffixes",
    )
    forbidden = _validate_str_list(
        _get(table, "forbidden-annotations", list(DEFAULT_FORBIDDEN_ANNOTATIONS)),
        field_name="tool.archsentinel.forbidden-annotations",
    )
    prefixes = _validate_str_list(
        _get(table, "forbidden-import-prefixes", list(DEFAULT_FORBIDDEN_IMPORT_PREFIXES)),
        field_name="tool.archsentinel.forbidden-import-prefixes",
    )

    threshold = _get(table, "logic-threshold", DEFAULT_LOGIC_THRESHOLD)
    if isinstance(threshold, bool) or not isinstance(threshold, int | float):
        raise ConfigError("`tool.archsentinel.logic-threshold` must be a number.")
    if not (0.0 < float(threshold) <= 1.0):
        raise ConfigError("`tool.archsentinel.logic-threshold` must be in (0, 1].")

    min_constructs = _get(table, "logic-min-constructs", DEFAULT_LOGIC_MIN_CONSTRUCTS)
    if isinstance(min_constructs, bool) or not isinstance(min_constructs, int) or min_constructs < 1:
        raise ConfigError("`tool.archsentinel.logic-min-constructs` must be an integer >= 1.")

    return LayeringConfig(
        layers=MappingProxyType(layers),
        port_package=port_package.strip().strip("."),
        adapter_suffixes=tuple(s for s in adapter_suffixes if s),
        forbidden_annotations=frozenset(a.lstrip("@") for a in forbidden if a),
        forbidden_import_prefixes=tuple(p.rstrip(".*") for p in prefixes if p),
        logic_threshold=float(threshold),
        logic_min_constructs=min_constructs,
    )


def _parse_rules_config(value: Any) -> RulesConfig:
    if value is None:
        return RulesConfig()
    if not isinstance(value, dict):
        raise ConfigError("`tool.archsentinel.rules` must be a table.")

    enable: str | tuple[str, ...]
    enable_raw = value.get("enable", "all")
    if isinstance(enable_raw, str):
        stripped = enable_raw.strip()
        if "," in stripped or ";" in stripped:
            enable = _split_rule_tokens(stripped)
        else:
            enable = stripped or "all"
    elif isinstance(enable_raw, list) and all(isinstance(v, str) for v in enable_raw):
        enable = _split_rule_list(enable_raw)
    else:
        raise ConfigError("`tool.archsentinel.rules.enable` must be a string or a list of strings.")

    disable_raw = _validate_str_list(value.get("disable", []), field_name="tool.archsentinel.rules.disable")
    disable = _split_rule_list(disable_raw)

    _validate_rule_tokens((enable,) if isinstance(enable, str) else enable, field_name="tool.archsentinel.rules.enable")
    _validate_rule_tokens(disable, field_name="tool.archsentinel.rules.disable")

    sev_overrides_raw = value.get("severity_overrides", value.get("severity-overrides"))
    severity_overrides: dict[RuleId, Severity] = {}
    if sev_overrides_raw is not None:
        if not isinstance(sev_overrides_raw, dict):
            raise ConfigError("`tool.archsentinel.rules.severity_overrides` must be a table.")
        for raw_rule_id, raw_severity in sev_overrides_raw.items():
            normalized_rule_id = _normalize_rule_id(str(raw_rule_id))
            if not _RULE_ID_RE.match(normalized_rule_id):
                raise ConfigError(
                    f"`tool.archsentinel.rules.severity_overrides.{raw_rule_id}` is invalid; "
                    "expected a rule id like MISSING_INTERFACE."
                )
            severity_overrides[normalized_rule_id] = _validate_severity(
                raw_severity,
                field_name=f"tool.archsentinel.rules.severity_overrides.{raw_rule_id}",
            )

    return RulesConfig(
        enable=enable,
        disable=disable,
        severity_overrides=MappingProxyType(severity_overrides),
    )


def _split_rule_tokens(value: str) -> tuple[str, ...]:
    parts = []
    for raw in value.replace(";", ",").split(","):
        token = raw.strip()
        if token:
            parts.append(token)
    return tuple(parts)


def _split_rule_list(values: Iterable[str]) -> tuple[str, ...]:
    parts: list[str] = []
    for raw in values:
        parts.extend(_split_rule_tokens(raw))
    return tuple(parts)


def _validate_rule_tokens(tokens: Iterable[str], *, field_name: str) -> None:
    for token in tokens:
        stripped = token.strip()
        if not stripped:
            continue
        if _normalize_group(stripped) in DEFAULT_RULE_GROUPS:
            continue
        if _RULE_ID_RE.match(_normalize_rule_id(stripped)):
            continue

        groups = ", ".join(sorted(DEFAULT_RULE_GROUPS))
        raise ConfigError(
            f"`{field_name}` contains unknown rule group or invalid rule id: {token!r}. "
            f"Valid groups: {groups}."
        )


def _parse_ignore_config(value: Any) -> IgnoreConfig:
    if value is None:
        return IgnoreConfig()
    if not isinstance(value, dict):
        raise ConfigError("`tool.archsentinel.ignore` must be a table.")
    if "paths" not in value:
        return IgnoreConfig()
    paths = _validate_str_list(value.get("paths"), field_name="tool.archsentinel.ignore.paths")
    return IgnoreConfig(paths=paths)


def _parse_store_config(value: Any) -> StoreConfig:
    if value is None:
        return StoreConfig()
    if not isinstance(value, dict):
        raise ConfigError("`tool.archsentinel.store` must be a table.")
    path = value.get("path", DEFAULT_STORE_PATH)
    if not isinstance(path, str):
        raise ConfigError("`tool.archsentinel.store.path` must be a string path.")
    return StoreConfig(path=path.strip() or DEFAULT_STORE_PATH)


def _parse_watch_config(value: Any) -> WatchConfig:
    if value is None:
        return WatchConfig()
    if not isinstance(value, dict):
        raise ConfigError("`tool.archsentinel.watch` must be a table.")
    debounce = value.get("debounce", DEFAULT_DEBOUNCE_SECONDS)
    if isinstance(debounce, bool) or not isinstance(debounce, int | float) or debounce < 0:
        raise ConfigError("`tool.archsentinel.watch.debounce` must be a number >= 0.")
    return WatchConfig(debounce=float(debounce))


def _parse_fix_config(value: Any) -> FixConfig:
    if value is None:
        return FixConfig()
    if not isinstance(value, dict):
        raise ConfigError("`tool.archsentinel.fix` must be a table.")
    max_rounds = _get(value, "max-rounds", DEFAULT_MAX_FIX_ROUNDS)
    if isinstance(max_rounds, bool) or not isinstance(max_rounds, int) or max_rounds < 1:
        raise ConfigError("`tool.archsentinel.fix.max-rounds` must be an integer >= 1.")
    return FixConfig(max_rounds=max_rounds)


def compute_enabled_rule_ids(
    config: ArchSentinelConfig,
    *,
    available_rule_ids: Iterable[RuleId] | None = None,
) -> set[RuleId]:
    """
    Resolve the final enabled rules set from `rules.enable` + `rules.disable`.

    - `enable = "all"` enables every known rule.
    - `enable = ["layering"]` enables group(s) and/or explicit IDs.
    - `disable = ["MISPLACED_COMPONENT"]` disables specific IDs (or groups).

    If `available_rule_ids` is provided, the result is intersected with it.
    """

    available: set[RuleId] | None = set(available_rule_ids) if available_rule_ids is not None else None

    enable_spec = config.rules.enable
    enable_tokens = (enable_spec,) if isinstance(enable_spec, str) else enable_spec

    enabled: set[RuleId] = set()
    for token in enable_tokens:
        normalized_group = _normalize_group(token)
        if normalized_group == "all":
            enabled.update(available if available is not None else DEFAULT_RULE_GROUPS["all"])
        elif normalized_group in DEFAULT_RULE_GROUPS:
            enabled.update(DEFAULT_RULE_GROUPS[normalized_group])
        else:
            enabled.add(_normalize_rule_id(token))

    for token in config.rules.disable:
        normalized_group = _normalize_group(token)
        if normalized_group == "all":
            enabled.clear()
        elif normalized_group in DEFAULT_RULE_GROUPS:
            enabled.difference_update(DEFAULT_RULE_GROUPS[normalized_group])
        else:
            enabled.discard(_normalize_rule_id(token))

    if available is not None:
        enabled.intersection_update(available)

    return enabled


def path_is_ignored(path: Path, *, project_root: Path, ignore_patterns: Iterable[str]) -> bool:
    """
    Return True if `path` matches any ignore patterns.

    Patterns are evaluated against the POSIX-style relative path from `project_root`.

    Supported patterns:
    - Directory prefixes: "src/test/" matches "src/test/..." under root.
    - Globs without slashes: "*Generated.java" matches basenames.
    - Globs with slashes: "src/**/generated/*.java" matches full relative paths.
    """

    import fnmatch

    try:
        relative = path.resolve().relative_to(project_root.resolve())
    except (ValueError, OSError, RuntimeError):
        # If the path isn't under root (or can't be resolved), don't ignore it implicitly.
        return False

    rel_posix = relative.as_posix()
    basename = relative.name

    for raw_pattern in ignore_patterns:
        pattern = raw_pattern.strip().replace("\\", "/")
        if not pattern:
            continue
        if pattern.startswith("./"):
            pattern = pattern[2:]

        if pattern.endswith("/"):
            if rel_posix.startswith(pattern):
                return True
            continue

        if "/" in pattern:
            if fnmatch.fnmatch(rel_posix, pattern):
                return True
        else:
            if fnmatch.fnmatch(basename, pattern) or fnmatch.fnmatch(rel_posix, pattern):
                return True

    return False
