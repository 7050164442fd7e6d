from __future__ import annotations

from collections.abc import Iterable, Mapping

from archsentinel.config import LayeringConfig
from archsentinel.engine.context import SourceSet
from archsentinel.engine.types import Layer, SourceUnit
from archsentinel.scanner import layer_for_package

# Nullability annotations only; allowed in the domain.
ALLOWED_FRAMEWORK_PACKAGES = ("org.springframework.lang",)


def package_of(fqn: str) -> str:
    return fqn.rsplit(".", 1)[0] if "." in fqn else ""


def in_port_package(package: str, port_package: str) -> bool:
    """True when `package` contains the dotted segments of `port_package`."""

    return f".{port_package}." in f".{package}."


def resolve_type_fqn(unit: SourceUnit, simple_name: str, units: SourceSet) -> str:
    """
    Resolve a simple type name as seen from `unit`.

    Order: explicit single-type imports, then a unit of that name in the set
    (same package first, then wildcard-imported packages, then anywhere), then
    the unit's own package.
    """

    for edge in sorted(unit.import_edges):
        if not edge.endswith(".*") and edge.rsplit(".", 1)[-1] == simple_name:
            return edge

    same_package = f"{unit.package}.{simple_name}" if unit.package else simple_name
    if same_package in units.by_fqn:
        return same_package

    for edge in sorted(unit.import_edges):
        if edge.endswith(".*"):
            candidate = f"{edge[:-2]}.{simple_name}"
            if candidate in units.by_fqn:
                return candidate

    for candidate in units.units.values():
        if candidate.declared_name == simple_name:
            return candidate.fqn

    return same_package


def import_targets(edge: str, units: SourceSet) -> tuple[SourceUnit, ...]:
    """Units an import edge refers to: exact FQN, or every unit of a wildcard package."""

    if edge.endswith(".*"):
        package = edge[:-2]
        members = units.by_package.get(package)
        if members:
            return members
        # `import static a.b.C.*` names a type, not a package.
        unit = units.by_fqn.get(package)
        return (unit,) if unit is not None else ()

    unit = units.by_fqn.get(edge)
    return (unit,) if unit is not None else ()


def layers_of_edge(edge: str, units: SourceSet, layer_map: Mapping[str, Layer]) -> set[Layer]:
    """
    Layers an import edge points into. Types outside the set are tagged by
    applying the layer mapping to the imported name itself.
    """

    targets = import_targets(edge, units)
    if targets:
        return {t.layer for t in targets if t.layer is not None}
    layer = layer_for_package(edge.removesuffix(".*"), layer_map)
    return {layer} if layer is not None else set()


def offending_edges(
    unit: SourceUnit,
    units: SourceSet,
    layer_map: Mapping[str, Layer],
    forbidden: Iterable[Layer],
) -> list[tuple[str, Layer]]:
    forbidden_set = set(forbidden)
    out: list[tuple[str, Layer]] = []
    for edge in sorted(unit.import_edges):
        hits = layers_of_edge(edge, units, layer_map) & forbidden_set
        if hits:
            out.append((edge, sorted(hits)[0]))
    return out


def has_prefix(name: str, prefixes: Iterable[str]) -> bool:
    return any(name == p or name.startswith(p + ".") for p in prefixes)


def forbidden_annotations(unit: SourceUnit, units: SourceSet, layering: LayeringConfig) -> frozenset[str]:
    """
    Forbidden annotations on `unit`, resolved through its imports.

    A single-type import decides on its own; a type of that name in the unit's
    package shadows wildcards; otherwise a wildcard import from a forbidden
    package supplies the name. Names that resolve outside
    `forbidden_import_prefixes` (Lombok `@Value`, `java.beans.Transient`) pass.
    """

    prefixes = layering.forbidden_import_prefixes
    explicit = {e.rsplit(".", 1)[-1]: e for e in sorted(unit.import_edges) if not e.endswith(".*")}
    wildcard = any(e.endswith(".*") and has_prefix(e[:-2], prefixes) for e in unit.import_edges)
    out: set[str] = set()
    for name in unit.annotations & layering.forbidden_annotations:
        if name in explicit:
            if has_prefix(explicit[name], prefixes):
                out.add(name)
            continue
        same_package = f"{unit.package}.{name}" if unit.package else name
        if same_package in units.by_fqn:
            continue
        if wildcard:
            out.add(name)
    return frozenset(out)


def framework_imports(unit: SourceUnit, units: SourceSet, layering: LayeringConfig) -> list[str]:
    """
    Imports from `forbidden_import_prefixes`, minus the `org.springframework.lang`
    nullability annotations and the imports that only supply forbidden
    annotations (those are reported as DOMAIN_ANNOTATION).
    """

    annotations = forbidden_annotations(unit, units, layering)
    explicit = {e.rsplit(".", 1)[-1] for e in unit.import_edges if not e.endswith(".*")}
    # Annotations no single-type import accounts for came in through a wildcard.
    via_wildcard = annotations - explicit
    out: list[str] = []
    for edge in sorted(unit.import_edges):
        if has_prefix(edge.removesuffix(".*"), ALLOWED_FRAMEWORK_PACKAGES):
            continue
        if not has_prefix(edge.removesuffix(".*"), layering.forbidden_import_prefixes):
            continue
        if edge.endswith(".*"):
            if via_wildcard:
                continue
        elif edge.rsplit(".", 1)[-1] in annotations:
            continue
        out.append(edge)
    return out
