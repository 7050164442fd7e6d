"""
Typed Java fragments and their serializer.

Planners describe *what* to generate as `JavaTypeFragment` values;
`render_java` decides how it is printed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

INDENT = "    "


@dataclass(frozen=True, slots=True)
class JavaField:
    type_text: str
    name: str
    annotations: tuple[str, ...] = ()
    modifiers: tuple[str, ...] = ("private",)


@dataclass(frozen=True, slots=True)
class JavaMethod:
    name: str
    return_type: str
    parameters: str = "()"
    modifiers: tuple[str, ...] = ("public",)
    annotations: tuple[str, ...] = ()
    type_parameters: str | None = None
    throws: str | None = None
    body: tuple[str, ...] | None = None  # None renders a declaration without body


@dataclass(frozen=True, slots=True)
class JavaTypeFragment:
    package: str
    name: str
    kind: Literal["class", "interface"] = "class"
    imports: tuple[str, ...] = ()
    annotations: tuple[str, ...] = ()
    javadoc: tuple[str, ...] = ()
    implements: tuple[str, ...] = ()
    fields: tuple[JavaField, ...] = ()
    methods: tuple[JavaMethod, ...] = ()

    @property
    def fqn(self) -> str:
        return f"{self.package}.{self.name}" if self.package else self.name


def render_java(fragment: JavaTypeFragment) -> str:
    lines: list[str] = []
    if fragment.package:
        lines.append(f"package {fragment.package};")
        lines.append("")

    imports = sorted({i for i in fragment.imports if i and _package(i) != fragment.package})
    if imports:
        lines.extend(f"import {name};" for name in imports)
        lines.append("")

    if fragment.javadoc:
        lines.append("/**")
        lines.extend(f" * {line}".rstrip() for line in fragment.javadoc)
        lines.append(" */")

    lines.extend(fragment.annotations)
    header = f"public {fragment.kind} {fragment.name}"
    if fragment.implements:
        header += " implements " + ", ".join(fragment.implements)
    lines.append(header + " {")

    members: list[list[str]] = []
    if fragment.fields:
        block: list[str] = []
        for f in fragment.fields:
            if f.annotations and block:
                block.append("")
            block.extend(INDENT + a for a in f.annotations)
            block.append(f"{INDENT}{_join(f.modifiers)}{f.type_text} {f.name};")
        members.append(block)

    for method in fragment.methods:
        members.append(_render_method(method, interface=fragment.kind == "interface"))

    for block in members:
        lines.append("")
        lines.extend(block)

    lines.append("}")
    return "\n".join(lines) + "\n"


def _render_method(method: JavaMethod, *, interface: bool) -> list[str]:
    out = [INDENT + a for a in method.annotations]
    modifiers = () if interface and method.body is None else method.modifiers
    signature = _join(modifiers)
    if method.type_parameters:
        signature += method.type_parameters + " "
    signature += f"{method.return_type} {method.name}{method.parameters}"
    if method.throws:
        signature += f" {method.throws}"

    if method.body is None:
        out.append(f"{INDENT}{signature};")
        return out

    out.append(f"{INDENT}{signature} {{")
    out.extend(f"{INDENT * 2}{line}" if line else "" for line in method.body)
    out.append(f"{INDENT}}}")
    return out


def _join(modifiers: tuple[str, ...]) -> str:
    return "".join(f"{m} " for m in modifiers)


def _package(fqn: str) -> str:
    return fqn.rsplit(".", 1)[0] if "." in fqn else ""
