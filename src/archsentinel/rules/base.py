from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

from archsentinel.config import LayeringConfig
from archsentinel.engine.context import SessionContext, SourceSet
from archsentinel.engine.types import Severity, SourceUnit, Violation

if TYPE_CHECKING:
    from archsentinel.remediation.plan import FixPlan


@dataclass(frozen=True, slots=True)
class RuleMeta:
    rule_id: str
    title: str
    description: str
    default_severity: Severity
    auto_fixable: bool = False


class BaseRule(ABC):
    meta: RuleMeta

    @abstractmethod
    def detect(self, unit: SourceUnit, units: SourceSet, layering: LayeringConfig) -> Violation | None:
        """Return at most one violation for `unit`, given the complete set."""

    def fix(self, unit: SourceUnit, units: SourceSet, ctx: SessionContext) -> FixPlan | None:
        return None

    def _violation(
        self,
        unit: SourceUnit,
        *,
        message: str,
        suggestion: str | None = None,
        severity: Severity | None = None,
    ) -> Violation:
        return Violation(
            rule_id=self.meta.rule_id,
            severity=severity or self.meta.default_severity,
            path=unit.path,
            message=message,
            suggestion=suggestion,
        )
