"""
Structural model of a Java compilation unit.

The tree-sitter syntax tree is reduced to the handful of facts the layering
rules and the remediation planner need: package, imports, top-level type
declarations with their annotations, supertypes, members and byte spans.
All offsets are byte offsets into the source that was parsed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from archsentinel.engine.tree_sitter import parse_java
from archsentinel.engine.types import DeclaredType

_TYPE_NODE_KINDS: dict[str, DeclaredType] = {
    "class_declaration": "class",
    "interface_declaration": "interface",
    "enum_declaration": "enum",
    "record_declaration": "record",
    "annotation_type_declaration": "annotation",
}
_ANNOTATION_NODES = frozenset({"marker_annotation", "annotation"})
_CONDITIONAL_NODES = frozenset({"if_statement", "ternary_expression", "switch_expression", "switch_statement"})
_COMPARISON_OPERATORS = frozenset({"<", ">", "<=", ">=", "==", "!=", "&&", "||"})
_EXTRA_STATEMENT_NODES = frozenset({"local_variable_declaration", "explicit_constructor_invocation"})


@dataclass(frozen=True, slots=True)
class Span:
    start: int
    end: int


@dataclass(frozen=True, slots=True)
class AnnotationDecl:
    name: str  # simple name, without "@"
    text: str  # full source text, e.g. '@Table(name = "orders")'
    span: Span


@dataclass(frozen=True, slots=True)
class ImportDecl:
    name: str  # "com.acme.Foo" or "com.acme.*"
    is_static: bool
    span: Span

    @property
    def simple_name(self) -> str:
        return self.name.rsplit(".", 1)[-1]

    @property
    def is_wildcard(self) -> bool:
        return self.name.endswith(".*")

    @property
    def package(self) -> str:
        return self.name.rsplit(".", 1)[0] if "." in self.name else ""


@dataclass(frozen=True, slots=True)
class FieldDecl:
    type_text: str
    names: tuple[str, ...]
    modifiers: tuple[str, ...]
    annotations: tuple[AnnotationDecl, ...]
    span: Span


@dataclass(frozen=True, slots=True)
class MethodDecl:
    name: str
    return_type: str | None  # None for constructors
    type_parameters: str | None
    parameters: str  # "(PaymentRequest request)"
    throws: str | None
    modifiers: tuple[str, ...]
    annotations: tuple[AnnotationDecl, ...]
    type_names: frozenset[str]  # simple type names used in the signature
    span: Span
    conditional_count: int
    statement_count: int

    @property
    def is_constructor(self) -> bool:
        return self.return_type is None

    @property
    def is_public_instance(self) -> bool:
        return "public" in self.modifiers and "static" not in self.modifiers and not self.is_constructor


@dataclass(frozen=True, slots=True)
class TypeDecl:
    kind: DeclaredType
    name: str
    modifiers: tuple[str, ...]
    annotations: tuple[AnnotationDecl, ...]
    super_types: tuple[str, ...]
    interfaces: tuple[str, ...]
    fields: tuple[FieldDecl, ...]
    methods: tuple[MethodDecl, ...]
    span: Span
    # Where an implements clause goes: after the existing interface list when
    # there is one (`interfaces_end`), otherwise after name/type params/superclass.
    header_end: int
    interfaces_end: int | None
    conditional_count: int
    statement_count: int

    def all_annotations(self) -> tuple[AnnotationDecl, ...]:
        out = list(self.annotations)
        for f in self.fields:
            out.extend(f.annotations)
        for m in self.methods:
            out.extend(m.annotations)
        return tuple(out)


@dataclass(frozen=True, slots=True)
class JavaFile:
    source: bytes
    package: str
    package_span: Span | None
    imports: tuple[ImportDecl, ...]
    types: tuple[TypeDecl, ...]
    has_error: bool

    def primary_type(self, stem: str | None = None) -> TypeDecl | None:
        """
        The type a file is "about": named like the file, else the first public
        top-level type, else the first top-level type.
        """

        if not self.types:
            return None
        if stem:
            for t in self.types:
                if t.name == stem:
                    return t
        for t in self.types:
            if "public" in t.modifiers:
                return t
        return self.types[0]

    def resolve_type(self, simple_name: str) -> str | None:
        """Best-effort FQN of a simple type name via explicit imports."""

        for imp in self.imports:
            if not imp.is_static and not imp.is_wildcard and imp.simple_name == simple_name:
                return imp.name
        return None


def parse_java_source(source: bytes) -> JavaFile:
    tree = parse_java(source)
    root = tree.root_node

    package = ""
    package_span: Span | None = None
    imports: list[ImportDecl] = []
    types: list[TypeDecl] = []

    for node in root.named_children:
        if node.type == "package_declaration":
            name_node = _first_child_of_type(node, "scoped_identifier", "identifier")
            if name_node is not None:
                package = _text(source, name_node)
            package_span = Span(node.start_byte, node.end_byte)
        elif node.type == "import_declaration":
            imports.append(_import_decl(source, node))
        elif node.type in _TYPE_NODE_KINDS:
            types.append(_type_decl(source, node))

    return JavaFile(
        source=source,
        package=package,
        package_span=package_span,
        imports=tuple(imports),
        types=tuple(types),
        has_error=bool(root.has_error),
    )


def _text(source: bytes, node: Any) -> str:
    return source[node.start_byte : node.end_byte].decode("utf-8", errors="replace")


def _first_child_of_type(node: Any, *types: str) -> Any | None:
    for child in node.children:
        if child.type in types:
            return child
    return None


def _import_decl(source: bytes, node: Any) -> ImportDecl:
    is_static = any(child.type == "static" for child in node.children)
    name_node = _first_child_of_type(node, "scoped_identifier", "identifier")
    name = _text(source, name_node) if name_node is not None else ""
    if _first_child_of_type(node, "asterisk") is not None:
        name += ".*"
    return ImportDecl(name=name, is_static=is_static, span=Span(node.start_byte, node.end_byte))


def _modifiers(source: bytes, node: Any) -> tuple[tuple[str, ...], tuple[AnnotationDecl, ...]]:
    mods = _first_child_of_type(node, "modifiers")
    if mods is None:
        return (), ()
    keywords: list[str] = []
    annotations: list[AnnotationDecl] = []
    for child in mods.children:
        if child.type in _ANNOTATION_NODES:
            name_node = child.child_by_field_name("name")
            raw_name = _text(source, name_node) if name_node is not None else ""
            annotations.append(
                AnnotationDecl(
                    name=raw_name.rsplit(".", 1)[-1],
                    text=_text(source, child),
                    span=Span(child.start_byte, child.end_byte),
                )
            )
        elif not child.is_named:
            keywords.append(child.type)
    return tuple(keywords), tuple(annotations)


def type_simple_name(text: str) -> str:
    base = text.split("<", 1)[0].strip()
    base = base.replace("[]", "").strip()
    return base.rsplit(".", 1)[-1]


def _type_list(source: bytes, node: Any | None) -> tuple[str, ...]:
    if node is None:
        return ()
    type_list = _first_child_of_type(node, "type_list")
    candidates = type_list.named_children if type_list is not None else node.named_children
    return tuple(type_simple_name(_text(source, t)) for t in candidates)


def _type_decl(source: bytes, node: Any) -> TypeDecl:
    kind = _TYPE_NODE_KINDS[node.type]
    name_node = node.child_by_field_name("name")
    name = _text(source, name_node) if name_node is not None else ""
    keywords, annotations = _modifiers(source, node)

    superclass = _first_child_of_type(node, "superclass")
    extends_interfaces = _first_child_of_type(node, "extends_interfaces")
    super_interfaces = _first_child_of_type(node, "super_interfaces")

    super_types: tuple[str, ...] = ()
    interfaces: tuple[str, ...] = ()
    if superclass is not None:
        super_types = tuple(type_simple_name(_text(source, t)) for t in superclass.named_children)
    if extends_interfaces is not None:
        super_types = _type_list(source, extends_interfaces)
    if super_interfaces is not None:
        interfaces = _type_list(source, super_interfaces)

    header_end = name_node.end_byte if name_node is not None else node.start_byte
    for anchor_name in ("type_parameters", "parameters"):
        anchor = node.child_by_field_name(anchor_name)
        if anchor is not None:
            header_end = max(header_end, anchor.end_byte)
    if superclass is not None:
        header_end = max(header_end, superclass.end_byte)

    fields: list[FieldDecl] = []
    methods: list[MethodDecl] = []
    body = node.child_by_field_name("body")
    if body is not None:
        for member in _iter_members(body):
            if member.type in {"field_declaration", "constant_declaration"}:
                fields.append(_field_decl(source, member))
            elif member.type in {"method_declaration", "constructor_declaration", "compact_constructor_declaration"}:
                methods.append(_method_decl(source, member))

    conditionals, statements = _logic_metrics(body) if body is not None else (0, 0)

    return TypeDecl(
        kind=kind,
        name=name,
        modifiers=keywords,
        annotations=annotations,
        super_types=super_types,
        interfaces=interfaces,
        fields=tuple(fields),
        methods=tuple(methods),
        span=Span(node.start_byte, node.end_byte),
        header_end=header_end,
        interfaces_end=super_interfaces.end_byte if super_interfaces is not None else None,
        conditional_count=conditionals,
        statement_count=statements,
    )


def _iter_members(body: Any) -> list[Any]:
    members: list[Any] = []
    for child in body.named_children:
        if child.type == "enum_body_declarations":
            members.extend(child.named_children)
        else:
            members.append(child)
    return members


def _field_decl(source: bytes, node: Any) -> FieldDecl:
    keywords, annotations = _modifiers(source, node)
    type_node = node.child_by_field_name("type")
    names: list[str] = []
    for child in node.named_children:
        if child.type == "variable_declarator":
            name_node = child.child_by_field_name("name")
            if name_node is not None:
                names.append(_text(source, name_node))
    return FieldDecl(
        type_text=_text(source, type_node) if type_node is not None else "Object",
        names=tuple(names),
        modifiers=keywords,
        annotations=annotations,
        span=Span(node.start_byte, node.end_byte),
    )


def _method_decl(source: bytes, node: Any) -> MethodDecl:
    keywords, annotations = _modifiers(source, node)
    name_node = node.child_by_field_name("name")
    params_node = node.child_by_field_name("parameters")
    type_node = node.child_by_field_name("type")
    throws_node = _first_child_of_type(node, "throws")
    type_params_node = _first_child_of_type(node, "type_parameters")

    type_names: set[str] = set()
    for sig_node in (type_node, params_node, throws_node):
        if sig_node is not None:
            type_names.update(_collect_type_identifiers(source, sig_node))

    body = node.child_by_field_name("body")
    conditionals, statements = _logic_metrics(body) if body is not None else (0, 0)

    return_type: str | None
    if node.type == "method_declaration":
        return_type = _text(source, type_node) if type_node is not None else "void"
    else:
        return_type = None

    return MethodDecl(
        name=_text(source, name_node) if name_node is not None else "",
        return_type=return_type,
        type_parameters=_text(source, type_params_node) if type_params_node is not None else None,
        parameters=_text(source, params_node) if params_node is not None else "()",
        throws=_text(source, throws_node) if throws_node is not None else None,
        modifiers=keywords,
        annotations=annotations,
        type_names=frozenset(type_names),
        span=Span(node.start_byte, node.end_byte),
        conditional_count=conditionals,
        statement_count=statements,
    )


def _collect_type_identifiers(source: bytes, node: Any) -> set[str]:
    out: set[str] = set()
    stack = [node]
    while stack:
        current = stack.pop()
        if current.type == "type_identifier":
            out.add(_text(source, current))
        stack.extend(current.children)
    return out


def _logic_metrics(node: Any) -> tuple[int, int]:
    """Count conditional/comparison constructs and statements below `node`."""

    conditionals = 0
    statements = 0
    stack = [node]
    while stack:
        current = stack.pop()
        node_type = current.type
        if node_type in _CONDITIONAL_NODES:
            conditionals += 1
        elif node_type == "binary_expression":
            operator = current.child_by_field_name("operator")
            if operator is not None and operator.type in _COMPARISON_OPERATORS:
                conditionals += 1
        if node_type.endswith("_statement") or node_type in _EXTRA_STATEMENT_NODES:
            statements += 1
        stack.extend(current.children)
    return conditionals, statements
