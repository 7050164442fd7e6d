from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial
from pathlib import Path

from archsentinel.config import ArchSentinelConfig, load_config, path_is_ignored
from archsentinel.engine.context import SessionContext, SourceSet
from archsentinel.engine.java_model import parse_java_source
from archsentinel.engine.tree_sitter import TreeSitterError
from archsentinel.engine.types import Diagnostic, Layer, SourceUnit
from archsentinel.utils import content_hash, safe_relpath

logger = logging.getLogger(__name__)

DEFAULT_SKIP_DIRS = {
    ".git",
    ".hg",
    ".svn",
    ".idea",
    ".vscode",
    ".gradle",
    ".mvn",
    ".archsentinel",
    "node_modules",
    "target",
    "build",
    "out",
    "bin",
}

JAVA_SUFFIX = ".java"

PROJECT_ROOT_MARKERS = (
    "pom.xml",
    "build.gradle",
    "build.gradle.kts",
    "settings.gradle",
    "settings.gradle.kts",
    ".git",
)

ARCHSENTINEL_WORKERS_ENV = "ARCHSENTINEL_WORKERS"
DEFAULT_MAX_WORKERS = 32


@dataclass(frozen=True, slots=True)
class ScanTarget:
    project_root: Path
    scan_path: Path
    config: ArchSentinelConfig


def resolve_worker_count(
    raw_value: str | None,
    *,
    default: int | None = None,
    max_workers: int = DEFAULT_MAX_WORKERS,
) -> int:
    """
    Resolve a safe worker count from an env var-style string.

    - None/""/"auto" fall back to the default
    - Values <= 0 fall back to the default
    - Values above `max_workers` are clamped
    """

    cpu = os.cpu_count() or 1
    resolved_default = max(1, default if default is not None else (cpu * 2))
    if raw_value is None:
        return min(resolved_default, max_workers)

    normalized = raw_value.strip().lower()
    if not normalized or normalized in {"auto", "default"}:
        return min(resolved_default, max_workers)

    try:
        workers = int(normalized)
    except ValueError:
        return min(resolved_default, max_workers)

    if workers <= 0:
        return min(resolved_default, max_workers)
    return min(workers, max_workers)


def worker_count_from_env(*, default: int | None = None) -> int:
    return resolve_worker_count(os.environ.get(ARCHSENTINEL_WORKERS_ENV), default=default)


def prepare_target(scan_path: Path) -> ScanTarget:
    """
    Resolve project root and load configuration.

    The project root is the closest directory (at or above `scan_path`) holding
    a `pyproject.toml`; otherwise the scanned directory itself.
    """

    scan_path = scan_path.resolve()
    project_root = _detect_project_root(scan_path)
    config = load_config(project_root)
    return ScanTarget(project_root=project_root, scan_path=scan_path, config=config)


def discover_files(target: ScanTarget | SessionContext) -> list[Path]:
    scan_path = target.scan_path
    root = target.project_root
    ignore_patterns = target.config.ignore.paths

    if scan_path.is_file():
        if scan_path.suffix != JAVA_SUFFIX:
            return []
        if path_is_ignored(scan_path, project_root=root, ignore_patterns=ignore_patterns):
            return []
        return [scan_path]

    files: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(scan_path, topdown=True):
        dirnames[:] = [d for d in dirnames if d not in DEFAULT_SKIP_DIRS]
        base = Path(dirpath)

        for filename in filenames:
            if not filename.endswith(JAVA_SUFFIX):
                continue
            path = base / filename
            if path_is_ignored(path, project_root=root, ignore_patterns=ignore_patterns):
                continue
            files.append(path)

    return sorted(set(files))


def layer_for_path(relative_path: str, layers: Mapping[str, Layer]) -> Layer | None:
    """
    Tag a path with a layer. The fragment occurring earliest in the path wins,
    ties go to the fragment listed first in the mapping.
    """

    haystack = "/" + relative_path.replace("\\", "/").lstrip("/")
    best: tuple[int, int] | None = None
    best_layer: Layer | None = None
    for order, (fragment, layer) in enumerate(layers.items()):
        index = haystack.find(fragment)
        if index < 0:
            continue
        key = (index, order)
        if best is None or key < best:
            best = key
            best_layer = layer
    return best_layer


def layer_for_package(package: str, layers: Mapping[str, Layer]) -> Layer | None:
    if not package:
        return None
    return layer_for_path(package.replace(".", "/") + "/", layers)


def build_unit(
    project_root: Path,
    config: ArchSentinelConfig,
    path: Path,
) -> tuple[SourceUnit | None, Diagnostic | None]:
    relative_path = safe_relpath(path, project_root)
    try:
        data = path.read_bytes()
    except OSError as exc:
        return None, Diagnostic(kind="ParseSkipped", path=relative_path, message=f"unreadable: {exc}")

    return build_unit_from_bytes(relative_path, data, config)


def build_unit_from_bytes(
    relative_path: str,
    data: bytes,
    config: ArchSentinelConfig,
) -> tuple[SourceUnit | None, Diagnostic | None]:
    try:
        data.decode("utf-8")
    except UnicodeDecodeError as exc:
        return None, Diagnostic(kind="ParseSkipped", path=relative_path, message=f"not valid UTF-8: {exc.reason}")

    try:
        java = parse_java_source(data)
    except TreeSitterError as exc:
        return None, Diagnostic(kind="ParseSkipped", path=relative_path, message=str(exc))

    if java.has_error:
        return None, Diagnostic(kind="ParseSkipped", path=relative_path, message="syntax errors in source")

    stem = Path(relative_path).stem
    primary = java.primary_type(stem)
    if primary is None:
        return None, Diagnostic(kind="ParseSkipped", path=relative_path, message="no type declaration")

    edges: set[str] = set()
    for imp in java.imports:
        if not imp.name:
            continue
        # `import static a.b.C.m;` depends on a.b.C
        edges.add(imp.package if imp.is_static else imp.name)

    unit = SourceUnit(
        path=relative_path,
        package=java.package,
        declared_type=primary.kind,
        declared_name=primary.name,
        annotations=frozenset(a.name for a in primary.all_annotations()),
        super_types=frozenset(primary.super_types),
        implemented_interfaces=frozenset(primary.interfaces),
        import_edges=frozenset(edges),
        layer=layer_for_path(relative_path, config.layering.layers)
        or layer_for_package(java.package, config.layering.layers),
        content_hash=content_hash(data),
        conditional_count=primary.conditional_count,
        statement_count=primary.statement_count,
    )
    return unit, None


def build_source_set(
    ctx: SessionContext,
    files: Iterable[Path],
    *,
    previous: SourceSet | None = None,
    changed: Iterable[Path] | None = None,
    workers: int | None = None,
    on_path_done: Callable[[Path], None] | None = None,
) -> SourceSet:
    """
    Parse `files` into an immutable SourceSet.

    Incremental mode (`previous` and `changed` given): only changed paths and
    paths unknown to `previous` are parsed; everything else is reused. Paths
    no longer in `files` (deleted, now ignored) drop out of the set.
    """

    file_list = sorted(set(files))
    relative = {path: safe_relpath(path, ctx.project_root) for path in file_list}
    current_paths = set(relative.values())

    units: dict[str, SourceUnit] = {}
    diagnostics: list[Diagnostic] = []
    to_parse: list[Path] = file_list

    if previous is not None and changed is not None:
        changed_rel = {safe_relpath(Path(p), ctx.project_root) for p in changed}
        for rel, unit in previous.units.items():
            if rel in current_paths and rel not in changed_rel:
                units[rel] = unit
        for diag in previous.diagnostics:
            if diag.kind == "ParseSkipped" and diag.path in current_paths and diag.path not in changed_rel:
                diagnostics.append(diag)
        known = set(units) | {d.path for d in diagnostics}
        to_parse = [p for p in file_list if relative[p] not in known]

    build = partial(build_unit, ctx.project_root, ctx.config)
    effective_workers = workers if workers is not None else worker_count_from_env()

    if effective_workers <= 1 or len(to_parse) <= 1:
        results = [build(path) for path in to_parse]
    else:
        max_workers = min(max(1, effective_workers), len(to_parse))
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="archsentinel-parse") as executor:
            results = list(executor.map(build, to_parse))

    for path, (unit, diag) in zip(to_parse, results, strict=True):
        if on_path_done is not None:
            on_path_done(path)
        if unit is not None:
            units[unit.path] = unit
        if diag is not None:
            logger.debug("skipping %s: %s", diag.path, diag.message)
            diagnostics.append(diag)

    return SourceSet.build(units.values(), diagnostics)


def unit_to_json(unit: SourceUnit) -> dict[str, object]:
    return {
        "path": unit.path,
        "package": unit.package,
        "declaredType": unit.declared_type,
        "declaredName": unit.declared_name,
        "annotations": sorted(unit.annotations),
        "superTypes": sorted(unit.super_types),
        "implementedInterfaces": sorted(unit.implemented_interfaces),
        "importEdges": sorted(unit.import_edges),
        "layer": unit.layer,
        "contentHash": unit.content_hash,
        "conditionalCount": unit.conditional_count,
        "statementCount": unit.statement_count,
    }


def serialize_source_set(source_set: SourceSet) -> str:
    """Canonical JSON for a SourceSet (byte-identical for identical inputs)."""

    payload = [unit_to_json(unit) for unit in source_set.sorted_units()]
    return json.dumps(payload, indent=2, sort_keys=True) + "\n"


def _detect_project_root(start: Path) -> Path:
    # The closest pyproject.toml wins so per-project configuration is found in
    # monorepos; otherwise the closest Maven/Gradle/VCS root.
    base = start if start.is_dir() else start.parent
    candidates = [base, *base.parents]
    for candidate in candidates:
        if (candidate / "pyproject.toml").exists():
            return candidate
    for candidate in candidates:
        if any((candidate / marker).exists() for marker in PROJECT_ROOT_MARKERS):
            return candidate

    return base
