from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from pathlib import PurePosixPath
from types import MappingProxyType

from archsentinel.engine.context import SessionContext, SourceSet
from archsentinel.engine.java_model import (
    AnnotationDecl,
    FieldDecl,
    JavaFile,
    MethodDecl,
    Span,
    TypeDecl,
    parse_java_source,
)
from archsentinel.engine.types import Layer, SourceUnit
from archsentinel.remediation.plan import (
    CreateFile,
    FixConflictError,
    FixPlan,
    InsertImplementsClause,
    ModifyFile,
    Operation,
    Patch,
    TextEdit,
)
from archsentinel.remediation.synthesis import JavaField, JavaMethod, JavaTypeFragment, render_java
from archsentinel.rules.utils import forbidden_annotations, has_prefix
from archsentinel.scanner import layer_for_package
from archsentinel.utils import content_hash

logger = logging.getLogger(__name__)

MARKER = "// archsentinel:"

_JPA_ANNOTATIONS = frozenset(
    {
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
    }
)
_IMPORT_LINE_RE = re.compile(rb"^\s*import\s+[^;]+;", re.MULTILINE)


# --- naming -----------------------------------------------------------------


def port_name_for(class_name: str, adapter_suffixes: Iterable[str]) -> str:
    """
    PaymentClient -> PaymentPort, OrderRepositoryImpl -> OrderRepository,
    ShippingAdapter -> ShippingPort.
    """

    for suffix in adapter_suffixes:
        if not class_name.endswith(suffix):
            continue
        if suffix.endswith("Impl"):
            stem = class_name[: -len("Impl")]
            if stem:
                return stem
        stem = class_name[: -len(suffix)]
        if stem:
            return f"{stem}Port"
    return f"{class_name}Port"


def base_package(package: str, layers: Mapping[str, Layer]) -> str:
    """The package prefix above the first layer segment: com.acme.domain.model -> com.acme."""

    layer_segments = {f.strip("/") for f in layers if f.strip("/") and "/" not in f.strip("/")}
    segments = package.split(".") if package else []
    for index, segment in enumerate(segments):
        if segment in layer_segments:
            return ".".join(segments[:index])
    return package


def _join_package(base: str, suffix: str) -> str:
    return f"{base}.{suffix}" if base else suffix


def source_root(unit: SourceUnit) -> PurePosixPath:
    parent = PurePosixPath(unit.path).parent
    if not unit.package:
        return parent
    package_parts = tuple(unit.package.split("."))
    if parent.parts[-len(package_parts) :] == package_parts:
        remaining = parent.parts[: -len(package_parts)]
        return PurePosixPath(*remaining) if remaining else PurePosixPath(".")
    return parent


def path_for(root: PurePosixPath, package: str, type_name: str) -> str:
    return (root / package.replace(".", "/") / f"{type_name}.java").as_posix()


# --- source editing helpers -------------------------------------------------


def removal_edits(data: bytes, spans: Iterable[Span]) -> list[TextEdit]:
    """
    Edits removing `spans`. A line left blank by the removals is dropped whole;
    otherwise each span goes together with the blanks that follow it.
    """

    by_line: dict[int, list[tuple[int, int]]] = {}
    for span in spans:
        line_start = data.rfind(b"\n", 0, span.start) + 1
        by_line.setdefault(line_start, []).append((span.start, span.end))

    edits: list[TextEdit] = []
    for line_start, ranges in sorted(by_line.items()):
        ranges.sort()
        newline = data.find(b"\n", max(e for _, e in ranges))
        line_end = len(data) if newline < 0 else newline

        remaining = bytearray()
        cursor = line_start
        for start, end in ranges:
            remaining += data[cursor:start]
            cursor = max(cursor, end)
        remaining += data[cursor:line_end]

        if not remaining.strip():
            edits.append(TextEdit(line_start, line_end + 1 if newline >= 0 else line_end))
            continue
        for start, end in ranges:
            while end < line_end and data[end] in (0x20, 0x09):
                end += 1
            edits.append(TextEdit(start, end))
    return edits


def import_insertion(java: JavaFile, fqn: str) -> TextEdit | None:
    if any(imp.name == fqn for imp in java.imports):
        return None
    if java.imports:
        last = max(java.imports, key=lambda i: i.span.end)
        return TextEdit(last.span.end, last.span.end, f"\nimport {fqn};")
    if java.package_span is not None:
        end = java.package_span.end
        return TextEdit(end, end, f"\n\nimport {fqn};")
    return TextEdit(0, 0, f"import {fqn};\n\n")


def _line_indent(data: bytes, offset: int) -> tuple[int, str]:
    line_start = data.rfind(b"\n", 0, offset) + 1
    prefix = data[line_start:offset].decode("utf-8", errors="replace")
    return line_start, prefix if not prefix.strip() else ""


def _load(unit: SourceUnit, ctx: SessionContext) -> tuple[bytes, JavaFile, TypeDecl]:
    path = ctx.abspath(unit.path)
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise FixConflictError(f"{unit.path}: cannot read file: {exc}") from exc
    if content_hash(data) != unit.content_hash:
        raise FixConflictError(f"{unit.path} changed since it was scanned")
    java = parse_java_source(data)
    primary = java.primary_type(PurePosixPath(unit.path).stem)
    if primary is None:
        raise FixConflictError(f"{unit.path}: no type declaration")
    return data, java, primary


def _exists(ctx: SessionContext, relative_path: str) -> bool:
    return ctx.abspath(relative_path).exists()


def _capitalize(name: str) -> str:
    return name[:1].upper() + name[1:]


# --- MISSING_INTERFACE ------------------------------------------------------


def plan_missing_interface(unit: SourceUnit, units: SourceSet, ctx: SessionContext) -> FixPlan:
    data, java, primary = _load(unit, ctx)
    layering = ctx.config.layering

    port_name = port_name_for(unit.declared_name, layering.adapter_suffixes)
    port_package = _join_package(base_package(unit.package, layering.layers), f"{layering.port_package}.outbound")
    methods = [m for m in primary.methods if m.is_public_instance]

    operations: list[Operation] = []
    expected: dict[str, str | None] = {unit.path: unit.content_hash}

    existing = _find_port(units, port_name, port_package, layering.port_package)
    created = False
    if existing is not None:
        port_fqn = existing.fqn
    else:
        port_path = path_for(source_root(unit), port_package, port_name)
        port_fqn = f"{port_package}.{port_name}"
        if not _exists(ctx, port_path):
            fragment = JavaTypeFragment(
                package=port_package,
                name=port_name,
                kind="interface",
                imports=_signature_imports(java, methods, layering.layers, layering.forbidden_import_prefixes),
                javadoc=(f"Outbound port implemented by {unit.declared_name}.",),
                methods=tuple(
                    JavaMethod(
                        name=m.name,
                        return_type=m.return_type or "void",
                        parameters=m.parameters,
                        type_parameters=m.type_parameters,
                        throws=m.throws,
                    )
                    for m in methods
                ),
            )
            operations.append(CreateFile(port_path, render_java(fragment)))
            expected[port_path] = None
            created = True

    edits: list[TextEdit] = []
    if port_fqn.rsplit(".", 1)[0] != unit.package:
        edit = import_insertion(java, port_fqn)
        if edit is not None:
            edits.append(edit)
    if created:
        for method in methods:
            if any(a.name == "Override" for a in method.annotations):
                continue
            _, indent = _line_indent(data, method.span.start)
            edits.append(TextEdit(method.span.start, method.span.start, f"@Override\n{indent}"))
    if edits:
        operations.append(ModifyFile(unit.path, Patch(base_hash=content_hash(data), edits=tuple(edits))))
    operations.append(InsertImplementsClause(unit.path, port_fqn.rsplit(".", 1)[-1]))

    verb = "Created" if created else "Reused"
    return FixPlan(
        rule_id="MISSING_INTERFACE",
        path=unit.path,
        description=f"{verb} port {port_fqn}; {unit.declared_name} implements it",
        operations=tuple(operations),
        expected_hashes=MappingProxyType(expected),
    )


def _find_port(units: SourceSet, port_name: str, port_package: str, port_fragment: str) -> SourceUnit | None:
    exact = units.by_fqn.get(f"{port_package}.{port_name}")
    if exact is not None:
        return exact
    for candidate in units.sorted_units():
        if (
            candidate.declared_name == port_name
            and candidate.declared_type == "interface"
            and f".{port_fragment}." in f".{candidate.package}."
        ):
            return candidate
    return None


def _signature_imports(
    java: JavaFile,
    methods: Iterable[MethodDecl],
    layers: Mapping[str, Layer],
    forbidden_prefixes: Iterable[str],
) -> tuple[str, ...]:
    prefixes = tuple(forbidden_prefixes)
    names: set[str] = set()
    for method in methods:
        names.update(method.type_names)

    out: set[str] = set()
    for name in names:
        fqn = java.resolve_type(name)
        if fqn is None:
            continue
        package = fqn.rsplit(".", 1)[0]
        if has_prefix(fqn, prefixes):
            continue
        if layer_for_package(package, layers) not in (None, "domain"):
            continue
        out.add(fqn)
    return tuple(sorted(out))


# --- DOMAIN_ANNOTATION ------------------------------------------------------


def plan_domain_annotation(unit: SourceUnit, units: SourceSet, ctx: SessionContext) -> FixPlan:
    data, java, primary = _load(unit, ctx)
    layering = ctx.config.layering
    forbidden = forbidden_annotations(unit, units, layering)

    removed: list[AnnotationDecl] = [a for a in primary.all_annotations() if a.name in forbidden]
    removed_names = {a.name for a in removed}
    annotation_edits = removal_edits(data, (a.span for a in removed))

    without_annotations = Patch(base_hash="", edits=tuple(annotation_edits)).apply(data)
    body = _IMPORT_LINE_RE.sub(b"", without_annotations).decode("utf-8", errors="replace")

    import_spans: list[Span] = []
    for imp in java.imports:
        if imp.is_static or not has_prefix(imp.name.removesuffix(".*"), layering.forbidden_import_prefixes):
            continue
        if not imp.is_wildcard and imp.simple_name in removed_names:
            import_spans.append(imp.span)
        elif imp.is_wildcard or not re.search(rf"\b{re.escape(imp.simple_name)}\b", body):
            import_spans.append(imp.span)

    edits = removal_edits(data, [a.span for a in removed] + import_spans)
    operations: list[Operation] = [ModifyFile(unit.path, Patch(base_hash=content_hash(data), edits=tuple(edits)))]
    expected: dict[str, str | None] = {unit.path: unit.content_hash}
    created: list[str] = []

    if removed_names & _JPA_ANNOTATIONS:
        base = base_package(unit.package, layering.layers)
        root = source_root(unit)
        entity = _entity_fragment(java, primary, base)
        mapper = _mapper_fragment(unit, primary, entity, base)
        for fragment in (entity, mapper):
            target = path_for(root, fragment.package, fragment.name)
            if target in units.units or _exists(ctx, target):
                continue
            operations.append(CreateFile(target, render_java(fragment)))
            expected[target] = None
            created.append(fragment.name)

    listed = ", ".join(f"@{name}" for name in sorted(removed_names))
    description = f"Removed {listed} from {primary.name}"
    if created:
        description += f"; created {' and '.join(created)}"
    return FixPlan(
        rule_id="DOMAIN_ANNOTATION",
        path=unit.path,
        description=description,
        operations=tuple(operations),
        expected_hashes=MappingProxyType(expected),
    )


def _instance_fields(primary: TypeDecl) -> list[tuple[FieldDecl, str]]:
    out: list[tuple[FieldDecl, str]] = []
    for field_decl in primary.fields:
        if "static" in field_decl.modifiers:
            continue
        out.extend((field_decl, name) for name in field_decl.names)
    return out


def _entity_fragment(java: JavaFile, primary: TypeDecl, base: str) -> JavaTypeFragment:
    fields: list[JavaField] = []
    methods: list[JavaMethod] = []
    for field_decl, name in _instance_fields(primary):
        annotations = tuple(a.text for a in field_decl.annotations if a.name in _JPA_ANNOTATIONS)
        fields.append(JavaField(type_text=field_decl.type_text, name=name, annotations=annotations))
    for field_decl, name in _instance_fields(primary):
        methods.append(
            JavaMethod(name=f"get{_capitalize(name)}", return_type=field_decl.type_text, body=(f"return {name};",))
        )
        methods.append(
            JavaMethod(
                name=f"set{_capitalize(name)}",
                return_type="void",
                parameters=f"({field_decl.type_text} {name})",
                body=(f"this.{name} = {name};",),
            )
        )

    return JavaTypeFragment(
        package=_join_package(base, "infrastructure.adapter.persistence.entity"),
        name=f"{primary.name}JpaEntity",
        imports=tuple(imp.name for imp in java.imports if not imp.is_static),
        annotations=tuple(a.text for a in primary.annotations if a.name in _JPA_ANNOTATIONS),
        javadoc=(f"Persistence model for {primary.name}.",),
        fields=tuple(fields),
        methods=tuple(methods),
    )


def _mapper_fragment(unit: SourceUnit, primary: TypeDecl, entity: JavaTypeFragment, base: str) -> JavaTypeFragment:
    method_names = {m.name for m in primary.methods if "public" in m.modifiers}
    domain_name = primary.name
    entity_name = entity.name

    to_domain: list[str] = [f"{domain_name} domain = new {domain_name}();"]
    to_entity: list[str] = [f"{entity_name} entity = new {entity_name}();"]
    for _, name in _instance_fields(primary):
        cap = _capitalize(name)
        if f"set{cap}" in method_names:
            to_domain.append(f"domain.set{cap}(entity.get{cap}());")
        getter = next((g for g in (f"get{cap}", f"is{cap}") if g in method_names), None)
        if getter is not None:
            to_entity.append(f"entity.set{cap}(domain.{getter}());")
    to_domain.append("return domain;")
    to_entity.append("return entity;")

    return JavaTypeFragment(
        package=_join_package(base, "infrastructure.adapter.persistence.mapper"),
        name=f"{domain_name}Mapper",
        imports=(unit.fqn, entity.fqn),
        javadoc=(f"Maps between {domain_name} and {entity_name}.",),
        methods=(
            JavaMethod(
                name="toDomain",
                return_type=domain_name,
                parameters=f"({entity_name} entity)",
                body=tuple(to_domain),
            ),
            JavaMethod(
                name="toEntity",
                return_type=entity_name,
                parameters=f"({domain_name} domain)",
                body=tuple(to_entity),
            ),
        ),
    )


# --- BUSINESS_LOGIC_IN_WRONG_LAYER ------------------------------------------


def plan_business_logic(unit: SourceUnit, units: SourceSet, ctx: SessionContext) -> FixPlan:
    data, java, primary = _load(unit, ctx)
    layering = ctx.config.layering

    if MARKER.encode("utf-8") in data:
        return FixPlan(
            rule_id="BUSINESS_LOGIC_IN_WRONG_LAYER",
            path=unit.path,
            description="Marked for extraction already; move the logic manually",
            manual=True,
        )

    candidates = [m for m in primary.methods if not m.is_constructor and m.conditional_count > 0]
    if not candidates:
        return FixPlan(
            rule_id="BUSINESS_LOGIC_IN_WRONG_LAYER",
            path=unit.path,
            description="No single method holds the logic; move it manually",
            manual=True,
        )
    densest = max(candidates, key=lambda m: (m.conditional_count, -m.span.start))

    use_case = f"{_capitalize(densest.name)}UseCase"
    package = _join_package(base_package(unit.package, layering.layers), "application.usecase")
    target = path_for(source_root(unit), package, use_case)

    operations: list[Operation] = []
    expected: dict[str, str | None] = {unit.path: unit.content_hash}
    if target not in units.units and not _exists(ctx, target):
        fragment = JavaTypeFragment(
            package=package,
            name=use_case,
            javadoc=(
                f"Use case extracted from {primary.name}.{densest.name}.",
                "Move the decision logic of that method here and call execute() from the original site.",
            ),
            methods=(
                JavaMethod(
                    name="execute",
                    return_type="void",
                    body=(f'throw new UnsupportedOperationException("{use_case} is not implemented yet");',),
                ),
            ),
        )
        operations.append(CreateFile(target, render_java(fragment)))
        expected[target] = None

    line_start, indent = _line_indent(data, densest.span.start)
    marker = f"{indent}{MARKER} move the decision logic of {densest.name}() to {package}.{use_case}\n"
    operations.append(
        ModifyFile(unit.path, Patch(base_hash=content_hash(data), edits=(TextEdit(line_start, line_start, marker),)))
    )

    logger.debug("planned use case %s for %s", use_case, unit.path)
    return FixPlan(
        rule_id="BUSINESS_LOGIC_IN_WRONG_LAYER",
        path=unit.path,
        description=f"Created {use_case} stub and marked {primary.name}.{densest.name}() for manual extraction",
        operations=tuple(operations),
        expected_hashes=MappingProxyType(expected),
        manual=True,
    )
