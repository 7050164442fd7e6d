"""
Built-in layering rules.

Each rule is a pure function of one unit plus the complete unit set; rules
never read files. Remediation is delegated to `archsentinel.remediation.planner`.
"""

from __future__ import annotations

from archsentinel.config import LayeringConfig
from archsentinel.engine.context import SessionContext, SourceSet
from archsentinel.engine.types import SourceUnit, Violation
from archsentinel.remediation import planner
from archsentinel.remediation.plan import FixPlan
from archsentinel.rules.base import BaseRule, RuleMeta
from archsentinel.rules.utils import (
    forbidden_annotations,
    framework_imports,
    in_port_package,
    offending_edges,
    package_of,
    resolve_type_fqn,
)


class MissingInterface(BaseRule):
    meta = RuleMeta(
        rule_id="MISSING_INTERFACE",
        title="Adapter without domain port",
        description="Infrastructure adapters (*Client, *RepositoryImpl, *Adapter) must implement a domain port.",
        default_severity="CRITICAL",
        auto_fixable=True,
    )

    def detect(self, unit: SourceUnit, units: SourceSet, layering: LayeringConfig) -> Violation | None:
        if unit.layer != "infrastructure" or unit.declared_type != "class":
            return None
        suffix = next((s for s in layering.adapter_suffixes if unit.declared_name.endswith(s)), None)
        if suffix is None:
            return None

        for interface in sorted(unit.implemented_interfaces):
            fqn = resolve_type_fqn(unit, interface, units)
            if in_port_package(package_of(fqn), layering.port_package):
                return None

        port_name = planner.port_name_for(unit.declared_name, layering.adapter_suffixes)
        return self._violation(
            unit,
            message=f"{unit.declared_name} does not implement a port interface from `{layering.port_package}`.",
            suggestion=f"Declare `{port_name}` in the domain port package and implement it.",
        )

    def fix(self, unit: SourceUnit, units: SourceSet, ctx: SessionContext) -> FixPlan | None:
        return planner.plan_missing_interface(unit, units, ctx)


class DomainAnnotation(BaseRule):
    meta = RuleMeta(
        rule_id="DOMAIN_ANNOTATION",
        title="Framework annotation in domain",
        description="Domain types must not carry persistence or framework annotations.",
        default_severity="CRITICAL",
        auto_fixable=True,
    )

    def detect(self, unit: SourceUnit, units: SourceSet, layering: LayeringConfig) -> Violation | None:
        if unit.layer != "domain":
            return None
        found = forbidden_annotations(unit, units, layering)
        if not found:
            return None
        names = ", ".join(f"@{a}" for a in sorted(found))
        return self._violation(
            unit,
            message=f"Domain type {unit.declared_name} carries framework annotations: {names}.",
            suggestion=f"Keep {unit.declared_name} a plain object; move persistence mapping to "
            f"{unit.declared_name}JpaEntity in infrastructure.",
        )

    def fix(self, unit: SourceUnit, units: SourceSet, ctx: SessionContext) -> FixPlan | None:
        return planner.plan_domain_annotation(unit, units, ctx)


class FrameworkImportInDomain(BaseRule):
    meta = RuleMeta(
        rule_id="FRAMEWORK_IMPORT_IN_DOMAIN",
        title="Framework import in domain",
        description="Domain code must not import Spring or persistence packages (org.springframework.lang excepted).",
        default_severity="HIGH",
    )

    def detect(self, unit: SourceUnit, units: SourceSet, layering: LayeringConfig) -> Violation | None:
        if unit.layer != "domain":
            return None
        edges = framework_imports(unit, units, layering)
        if not edges:
            return None
        listed = ", ".join(edges)
        return self._violation(
            unit,
            message=f"Domain type {unit.declared_name} imports framework packages: {listed}.",
            suggestion="Keep framework types in infrastructure and pass plain values into the domain.",
        )


class BusinessLogicInWrongLayer(BaseRule):
    meta = RuleMeta(
        rule_id="BUSINESS_LOGIC_IN_WRONG_LAYER",
        title="Business logic outside domain/application",
        description="Controllers and adapters with dense conditional logic should delegate to a use case.",
        default_severity="HIGH",
        auto_fixable=True,
    )

    def detect(self, unit: SourceUnit, units: SourceSet, layering: LayeringConfig) -> Violation | None:
        if unit.layer not in ("api", "infrastructure"):
            return None
        if unit.conditional_count < layering.logic_min_constructs:
            return None
        density = unit.conditional_count / max(unit.statement_count, 1)
        if density <= layering.logic_threshold:
            return None
        return self._violation(
            unit,
            message=(
                f"{unit.declared_name} ({unit.layer}) holds decision logic: "
                f"{unit.conditional_count} conditionals over {unit.statement_count} statements "
                f"(density {density:.2f} > {layering.logic_threshold:.2f})."
            ),
            suggestion="Move the decisions into an application use case or the domain model.",
        )

    def fix(self, unit: SourceUnit, units: SourceSet, ctx: SessionContext) -> FixPlan | None:
        return planner.plan_business_logic(unit, units, ctx)


class WrongDependencyDirection(BaseRule):
    meta = RuleMeta(
        rule_id="WRONG_DEPENDENCY_DIRECTION",
        title="Domain depends on outer layer",
        description="Domain code must not import application, infrastructure or api code.",
        default_severity="HIGH",
    )

    def detect(self, unit: SourceUnit, units: SourceSet, layering: LayeringConfig) -> Violation | None:
        if unit.layer != "domain":
            return None
        edges = offending_edges(unit, units, layering.layers, ("application", "infrastructure", "api"))
        if not edges:
            return None
        listed = ", ".join(f"{edge} ({layer})" for edge, layer in edges)
        return self._violation(
            unit,
            message=f"Domain type {unit.declared_name} imports outer layers: {listed}.",
            suggestion="Depend on a domain port and let the outer layer implement it.",
        )


class ApplicationDependsOnInfrastructure(BaseRule):
    meta = RuleMeta(
        rule_id="APPLICATION_DEPENDS_ON_INFRASTRUCTURE",
        title="Application depends on infrastructure",
        description="Application services must reach infrastructure only through domain ports.",
        default_severity="MEDIUM",
    )

    def detect(self, unit: SourceUnit, units: SourceSet, layering: LayeringConfig) -> Violation | None:
        if unit.layer != "application":
            return None
        edges = offending_edges(unit, units, layering.layers, ("infrastructure",))
        if not edges:
            return None
        listed = ", ".join(edge for edge, _ in edges)
        return self._violation(
            unit,
            message=f"Application type {unit.declared_name} imports infrastructure: {listed}.",
            suggestion="Inject the matching domain port instead of the adapter.",
        )


class MisplacedComponent(BaseRule):
    meta = RuleMeta(
        rule_id="MISPLACED_COMPONENT",
        title="Component in the wrong layer",
        description="Use cases live in application, controllers in api, domain repositories are interfaces.",
        default_severity="LOW",
    )

    def detect(self, unit: SourceUnit, units: SourceSet, layering: LayeringConfig) -> Violation | None:
        name = unit.declared_name
        if unit.layer is None:
            return None

        if name.endswith(("UseCase", "UseCaseImpl")) and unit.layer != "application":
            if not (unit.layer == "domain" and in_port_package(unit.package, layering.port_package)):
                return self._violation(
                    unit,
                    message=f"Use case {name} lives in the {unit.layer} layer.",
                    suggestion="Move it under application/usecase (port interfaces may stay in domain/port).",
                )

        if name.endswith("Controller") and unit.layer != "api":
            return self._violation(
                unit,
                message=f"Controller {name} lives in the {unit.layer} layer.",
                suggestion="Move HTTP controllers into the api layer.",
            )

        if unit.layer == "domain" and name.endswith("Repository") and unit.declared_type == "class":
            return self._violation(
                unit,
                message=f"Domain repository {name} is a class.",
                suggestion="Declare domain repositories as interfaces; implement them in infrastructure.",
            )

        return None


def builtin_layering_rules() -> list[BaseRule]:
    return [
        MissingInterface(),
        DomainAnnotation(),
        FrameworkImportInDomain(),
        BusinessLogicInWrongLayer(),
        WrongDependencyDirection(),
        ApplicationDependsOnInfrastructure(),
        MisplacedComponent(),
    ]
