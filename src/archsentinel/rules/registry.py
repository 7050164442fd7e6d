from __future__ import annotations

import re
from functools import lru_cache

from archsentinel.rules.base import BaseRule
from archsentinel.rules.layering import builtin_layering_rules

_RULE_ID_RE = re.compile(r"^[A-Z][A-Z0-9_]{2,}$")


@lru_cache(maxsize=1)
def builtin_rules() -> tuple[BaseRule, ...]:
    by_id: dict[str, BaseRule] = {}
    for rule in builtin_layering_rules():
        rule_id = rule.meta.rule_id
        if not _RULE_ID_RE.match(rule_id):  # pragma: no cover
            raise RuntimeError(f"Rule id must match {_RULE_ID_RE.pattern}: {rule_id!r}")
        if rule_id in by_id:  # pragma: no cover
            raise RuntimeError(f"Duplicate rule id: {rule_id}")
        by_id[rule_id] = rule

    return tuple(by_id[k] for k in sorted(by_id))


def all_rules() -> tuple[BaseRule, ...]:
    return builtin_rules()


def rule_ids() -> set[str]:
    return {r.meta.rule_id for r in all_rules()}


def rule_by_id(rule_id: str) -> BaseRule | None:
    for rule in all_rules():
        if rule.meta.rule_id == rule_id:
            return rule
    return None
