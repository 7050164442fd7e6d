from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

Severity = Literal["CRITICAL", "HIGH", "MEDIUM", "LOW"]
Layer = Literal["domain", "application", "infrastructure", "api"]
DeclaredType = Literal["class", "interface", "enum", "record", "annotation"]
DiagnosticKind = Literal["ParseSkipped", "DetectionError", "FixConflict", "FixIneffective"]
FixOutcome = Literal[
    "fixed",
    "conflict",
    "fix_ineffective",
    "manual_fix_required",
    "not_fixable",
    "not_attempted",
]

SEVERITY_ORDER: tuple[Severity, ...] = ("CRITICAL", "HIGH", "MEDIUM", "LOW")
LAYERS: tuple[Layer, ...] = ("domain", "application", "infrastructure", "api")


@dataclass(frozen=True, slots=True)
class SourceUnit:
    path: str  # POSIX, relative to the project root
    package: str
    declared_type: DeclaredType
    declared_name: str
    annotations: frozenset[str]
    super_types: frozenset[str]
    implemented_interfaces: frozenset[str]
    import_edges: frozenset[str]
    layer: Layer | None
    content_hash: str
    conditional_count: int = 0
    statement_count: int = 0

    @property
    def fqn(self) -> str:
        if not self.package:
            return self.declared_name
        return f"{self.package}.{self.declared_name}"


@dataclass(frozen=True, slots=True)
class Violation:
    rule_id: str
    severity: Severity
    path: str
    message: str
    suggestion: str | None = None


@dataclass(frozen=True, slots=True)
class Diagnostic:
    kind: DiagnosticKind
    path: str | None
    message: str
    rule_id: str | None = None
