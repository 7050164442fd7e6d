from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace

from archsentinel.config import ArchSentinelConfig, compute_enabled_rule_ids
from archsentinel.engine.context import SourceSet
from archsentinel.engine.types import Diagnostic, SourceUnit, Violation
from archsentinel.rules.base import BaseRule
from archsentinel.rules.registry import all_rules

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DetectionResult:
    violations: tuple[Violation, ...]
    diagnostics: tuple[Diagnostic, ...]


def enabled_rules(config: ArchSentinelConfig, *, only: Iterable[str] | None = None) -> list[BaseRule]:
    available = list(all_rules())
    enabled_ids = compute_enabled_rule_ids(config, available_rule_ids=(r.meta.rule_id for r in available))
    if only is not None:
        enabled_ids &= set(only)
    return [r for r in available if r.meta.rule_id in enabled_ids]


def detect(
    units: SourceSet,
    config: ArchSentinelConfig,
    *,
    restrict_to: Iterable[str] | None = None,
    rule_filter: Iterable[str] | None = None,
    workers: int | None = None,
    on_unit_done: Callable[[str], None] | None = None,
) -> DetectionResult:
    """
    Run enabled rules over every (unit, rule) pair.

    `restrict_to` limits which unit paths are checked; rules still see the
    complete set. A rule raising on one unit becomes a DetectionError
    diagnostic for that pair only.
    """

    rules = enabled_rules(config, only=rule_filter)
    if restrict_to is None:
        targets = units.sorted_units()
    else:
        wanted = set(restrict_to)
        targets = [u for u in units.sorted_units() if u.path in wanted]

    pairs = [(unit, rule) for unit in targets for rule in rules]
    check = _pair_checker(units, config)

    effective_workers = workers or 1
    if effective_workers <= 1 or len(pairs) <= 1:
        results = [check(pair) for pair in pairs]
    else:
        max_workers = min(max(1, effective_workers), len(pairs))
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="archsentinel-detect") as executor:
            results = list(executor.map(check, pairs))

    found: dict[tuple[str, str], Violation] = {}
    diagnostics: list[Diagnostic] = []
    done: set[str] = set()
    for (unit, _rule), (violation, diag) in zip(pairs, results, strict=True):
        if violation is not None:
            found.setdefault((violation.path, violation.rule_id), violation)
        if diag is not None:
            diagnostics.append(diag)
        if on_unit_done is not None and unit.path not in done:
            done.add(unit.path)
            on_unit_done(unit.path)

    ordered = tuple(found[key] for key in sorted(found))
    return DetectionResult(violations=ordered, diagnostics=tuple(diagnostics))


def _pair_checker(
    units: SourceSet,
    config: ArchSentinelConfig,
) -> Callable[[tuple[SourceUnit, BaseRule]], tuple[Violation | None, Diagnostic | None]]:
    def check(pair: tuple[SourceUnit, BaseRule]) -> tuple[Violation | None, Diagnostic | None]:
        unit, rule = pair
        rule_id = rule.meta.rule_id
        try:
            violation = rule.detect(unit, units, config.layering)
        except Exception as exc:  # noqa: BLE001
            logger.warning("rule %s failed on %s: %s", rule_id, unit.path, exc)
            return None, Diagnostic(
                kind="DetectionError",
                path=unit.path,
                rule_id=rule_id,
                message=f"{type(exc).__name__}: {exc}",
            )
        if violation is None:
            return None, None
        return _apply_overrides(config, violation), None

    return check


def _apply_overrides(config: ArchSentinelConfig, violation: Violation) -> Violation:
    severity = config.rules.severity_overrides.get(violation.rule_id)
    if severity is None or severity == violation.severity:
        return violation
    return replace(violation, severity=severity)
