"""
One validation pass: build -> detect -> plan -> apply -> reverify -> record -> report.

`SessionController` owns the state machine and the latest SourceSet, so watch
mode can run incremental passes against the previous snapshot.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Literal
from uuid import uuid4

from archsentinel.engine.context import SessionContext, SourceSet
from archsentinel.engine.detection import detect
from archsentinel.engine.tree_sitter import TreeSitterError
from archsentinel.engine.types import Diagnostic, FixOutcome, Violation
from archsentinel.remediation.applier import ApplyResult, FixApplier
from archsentinel.remediation.plan import FixConflictError, FixPlan
from archsentinel.rules.registry import rule_by_id
from archsentinel.scanner import build_source_set, discover_files, worker_count_from_env
from archsentinel.store import SessionRecord, ViolationRecord
from archsentinel.utils import safe_relpath

logger = logging.getLogger(__name__)

SessionState = Literal["Idle", "Scanning", "Detecting", "Fixing", "Reverifying", "Reporting"]
SessionStatus = Literal["passed", "failed", "fixed"]
NextAction = Literal["proceed", "review", "manual_fix_required"]

_DEFAULT_REASONS: dict[FixOutcome, str] = {
    "fixed": "fixed and reverified",
    "conflict": "fix rolled back after a conflict",
    "fix_ineffective": "fix applied but the rule still fires",
    "manual_fix_required": "requires manual changes",
    "not_fixable": "no automatic fix for this rule",
    "not_attempted": "auto-fix disabled",
}


class SessionCancelled(RuntimeError):
    """The pass was cancelled at a stage boundary before any file was changed."""


@dataclass(frozen=True, slots=True)
class ViolationOutcome:
    violation: Violation
    outcome: FixOutcome
    fix_description: str | None = None
    reason: str = ""

    @property
    def fixed(self) -> bool:
        return self.outcome == "fixed"


@dataclass(frozen=True, slots=True)
class SessionResult:
    session_id: str
    agent_name: str
    started_at: datetime
    outcomes: tuple[ViolationOutcome, ...]
    files_scanned: int
    duration_ms: int
    diagnostics: tuple[Diagnostic, ...] = ()

    @property
    def violations_found(self) -> int:
        return len(self.outcomes)

    @property
    def auto_fixed(self) -> int:
        return sum(1 for o in self.outcomes if o.fixed)

    @property
    def unresolved(self) -> tuple[ViolationOutcome, ...]:
        return tuple(o for o in self.outcomes if not o.fixed)

    @property
    def status(self) -> SessionStatus:
        if not self.outcomes:
            return "passed"
        if not self.unresolved:
            return "fixed"
        return "failed"

    @property
    def next_action(self) -> NextAction:
        if self.status != "failed":
            return "proceed"
        if any(o.outcome in ("manual_fix_required", "fix_ineffective") for o in self.outcomes):
            return "manual_fix_required"
        return "review"

    def exit_code(self) -> int:
        return 0 if self.status in ("passed", "fixed") else 1

    def to_payload(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "violations": [
                {
                    "file": o.violation.path,
                    "ruleId": o.violation.rule_id,
                    "severity": o.violation.severity,
                    "fixed": o.fixed,
                    "fixDescription": o.fix_description,
                    "reason": o.reason,
                    "message": o.violation.message,
                }
                for o in self.outcomes
            ],
            "metrics": {
                "filesScanned": self.files_scanned,
                "violationsFound": self.violations_found,
                "autoFixed": self.auto_fixed,
                "durationMs": self.duration_ms,
            },
            "nextAction": self.next_action,
            "sessionId": self.session_id,
            "agent": self.agent_name,
            "diagnostics": [
                {"kind": d.kind, "path": d.path, "ruleId": d.rule_id, "message": d.message} for d in self.diagnostics
            ],
        }


class SessionController:
    def __init__(
        self,
        ctx: SessionContext,
        *,
        applier: FixApplier | None = None,
        workers: int | None = None,
    ) -> None:
        self.ctx = ctx
        self.applier = applier or FixApplier(ctx.project_root)
        self.workers = workers if workers is not None else worker_count_from_env()
        self._state: SessionState = "Idle"
        self._state_lock = threading.Lock()
        self._cancelled = threading.Event()
        self._source_set: SourceSet | None = None

    @property
    def state(self) -> SessionState:
        with self._state_lock:
            return self._state

    @property
    def source_set(self) -> SourceSet | None:
        return self._source_set

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def _enter(self, state: SessionState) -> None:
        with self._state_lock:
            logger.debug("session state %s -> %s", self._state, state)
            self._state = state

    def _check_cancel(self) -> None:
        if self._cancelled.is_set():
            raise SessionCancelled("validation pass cancelled")

    def run_pass(
        self,
        changed: Iterable[Path] | None = None,
        *,
        fix: bool = False,
        rule_filter: Iterable[str] | None = None,
    ) -> SessionResult:
        """
        Run one pass. `changed` restricts detection (and rebuilding) to those
        files when a previous snapshot exists.

        Raises StoreUnavailableError when the store cannot be used, and
        SessionCancelled when cancelled before fixing began.
        """

        try:
            return self._run(changed, fix=fix, rule_filter=tuple(rule_filter) if rule_filter is not None else None)
        finally:
            self._enter("Idle")

    def _run(
        self,
        changed: Iterable[Path] | None,
        *,
        fix: bool,
        rule_filter: tuple[str, ...] | None,
    ) -> SessionResult:
        ctx = replace(self.ctx, session_id=uuid4().hex)
        started_at = ctx.clock()
        t0 = time.monotonic()

        self._check_cancel()
        self._enter("Scanning")
        if ctx.store is not None:
            ctx.store.ping()

        files = discover_files(ctx)
        restrict: set[str] | None = None
        if changed is not None and self._source_set is not None:
            changed_paths = [Path(p) for p in changed]
            source_set = build_source_set(
                ctx, files, previous=self._source_set, changed=changed_paths, workers=self.workers
            )
            restrict = {safe_relpath(p, ctx.project_root) for p in changed_paths}
        else:
            source_set = build_source_set(ctx, files, workers=self.workers)
        self._source_set = source_set

        self._check_cancel()
        self._enter("Detecting")
        detection = detect(
            source_set,
            ctx.config,
            restrict_to=restrict,
            rule_filter=rule_filter,
            workers=self.workers,
        )
        diagnostics: list[Diagnostic] = list(source_set.diagnostics) + list(detection.diagnostics)

        self._check_cancel()
        outcomes: dict[tuple[str, str], ViolationOutcome] = {}
        for v in detection.violations:
            outcome = _initial_outcome(v)
            outcomes[(v.path, v.rule_id)] = ViolationOutcome(v, outcome, reason=_DEFAULT_REASONS[outcome])

        if fix:
            pending = [v for v in detection.violations if outcomes[(v.path, v.rule_id)].outcome == "not_attempted"]
            if pending:
                self._enter("Fixing")
                self._fix(ctx, pending, outcomes, diagnostics, rule_filter=rule_filter)

        self._enter("Reporting")
        checked = len(source_set) if restrict is None else len(restrict & set(source_set.units))
        result = SessionResult(
            session_id=ctx.session_id,
            agent_name=ctx.agent_name,
            started_at=started_at,
            outcomes=tuple(outcomes[key] for key in sorted(outcomes)),
            files_scanned=checked,
            duration_ms=int((time.monotonic() - t0) * 1000),
            diagnostics=tuple(diagnostics),
        )
        if ctx.store is not None:
            self._record(ctx, result)
        return result

    # --- fixing ---------------------------------------------------------------

    def _fix(
        self,
        ctx: SessionContext,
        pending: list[Violation],
        outcomes: dict[tuple[str, str], ViolationOutcome],
        diagnostics: list[Diagnostic],
        *,
        rule_filter: tuple[str, ...] | None,
    ) -> None:
        """
        Plan, apply and reverify in rounds. Plans sharing a target file are
        deferred to the next round and re-planned against the rescanned set.
        """

        assert self._source_set is not None
        current = self._source_set

        for round_number in range(1, ctx.config.fix.max_rounds + 1):
            if not pending:
                break
            logger.debug("fix round %d: %d violation(s)", round_number, len(pending))

            plans: list[tuple[Violation, FixPlan]] = []
            for v in pending:
                plan = self._plan(ctx, current, v, outcomes, diagnostics)
                if plan is not None:
                    plans.append((v, plan))

            selected: list[tuple[Violation, FixPlan]] = []
            deferred: list[Violation] = []
            claimed: set[str] = set()
            for v, plan in plans:
                if plan.targets & claimed:
                    deferred.append(v)
                    continue
                claimed |= plan.targets
                selected.append((v, plan))

            results = self._apply_all([plan for _, plan in selected])
            touched: set[str] = set()
            for (v, plan), res in zip(selected, results, strict=True):
                key = (v.path, v.rule_id)
                if res.committed:
                    touched.update(res.touched)
                if res.outcome == "conflict":
                    diagnostics.append(
                        Diagnostic(kind="FixConflict", path=v.path, rule_id=v.rule_id, message=res.message)
                    )
                    outcomes[key] = ViolationOutcome(v, "conflict", reason=f"conflict: {res.message}")
                else:
                    outcomes[key] = ViolationOutcome(
                        v, res.outcome, fix_description=plan.description, reason=_DEFAULT_REASONS[res.outcome]
                    )

            if not touched:
                pending = deferred
                continue

            self._enter("Reverifying")
            current = build_source_set(
                ctx,
                discover_files(ctx),
                previous=current,
                changed=[ctx.abspath(p) for p in touched],
                workers=self.workers,
            )
            self._source_set = current
            recheck_paths = touched | {v.path for v in deferred}
            recheck = detect(current, ctx.config, restrict_to=recheck_paths, rule_filter=rule_filter)
            still_firing = {(v.path, v.rule_id): v for v in recheck.violations}

            for (v, plan), res in zip(selected, results, strict=True):
                key = (v.path, v.rule_id)
                if res.committed and key in still_firing and res.outcome == "fixed":
                    diagnostics.append(
                        Diagnostic(
                            kind="FixIneffective",
                            path=v.path,
                            rule_id=v.rule_id,
                            message=f"{v.rule_id} still fires after: {plan.description}",
                        )
                    )
                    outcomes[key] = ViolationOutcome(
                        v,
                        "fix_ineffective",
                        fix_description=plan.description,
                        reason=_DEFAULT_REASONS["fix_ineffective"],
                    )

            for key, v in still_firing.items():
                if key not in outcomes:
                    # Surfaced by a fix on a touched file.
                    outcomes[key] = ViolationOutcome(v, _initial_outcome(v), reason="appeared after an automatic fix")

            next_pending: list[Violation] = []
            for v in deferred:
                key = (v.path, v.rule_id)
                fresh = still_firing.get(key)
                if fresh is None:
                    outcomes[key] = ViolationOutcome(
                        v,
                        "fixed",
                        fix_description="resolved by another fix on the same file",
                        reason=_DEFAULT_REASONS["fixed"],
                    )
                else:
                    next_pending.append(fresh)
            pending = next_pending

        for v in pending:
            outcomes[(v.path, v.rule_id)] = ViolationOutcome(
                v, "conflict", reason="conflict: another fix targeted the same file; retry next pass"
            )

    def _plan(
        self,
        ctx: SessionContext,
        current: SourceSet,
        v: Violation,
        outcomes: dict[tuple[str, str], ViolationOutcome],
        diagnostics: list[Diagnostic],
    ) -> FixPlan | None:
        key = (v.path, v.rule_id)
        rule = rule_by_id(v.rule_id)
        unit = current.get(v.path)
        if rule is None or unit is None:
            outcomes[key] = ViolationOutcome(v, "not_fixable", reason="source unit no longer available")
            return None
        try:
            plan = rule.fix(unit, current, ctx)
        except (FixConflictError, TreeSitterError, OSError) as exc:
            diagnostics.append(Diagnostic(kind="FixConflict", path=v.path, rule_id=v.rule_id, message=str(exc)))
            outcomes[key] = ViolationOutcome(v, "conflict", reason=f"conflict: {exc}")
            return None
        if plan is None:
            outcomes[key] = ViolationOutcome(v, "not_fixable", reason=_DEFAULT_REASONS["not_fixable"])
        return plan

    def _apply_all(self, plans: list[FixPlan]) -> list[ApplyResult]:
        if len(plans) <= 1 or self.workers <= 1:
            return [self.applier.apply(plan) for plan in plans]
        max_workers = min(self.workers, len(plans))
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="archsentinel-fix") as executor:
            return list(executor.map(self.applier.apply, plans))

    # --- recording ------------------------------------------------------------

    def _record(self, ctx: SessionContext, result: SessionResult) -> None:
        assert ctx.store is not None
        now = ctx.clock()
        records = [
            ViolationRecord(
                timestamp=now,
                session_id=result.session_id,
                agent_name=result.agent_name,
                rule_id=o.violation.rule_id,
                severity=o.violation.severity,
                path=o.violation.path,
                auto_fixed=o.fixed,
                fix_description=o.fix_description,
                outcome=o.outcome,
            )
            for o in result.outcomes
        ]
        session = SessionRecord(
            id=result.session_id,
            started_at=result.started_at,
            initiator_agent=result.agent_name,
            scanned_unit_count=result.files_scanned,
            violations_found=result.violations_found,
            violations_fixed=result.auto_fixed,
        )
        ctx.store.record_session(session, records)


def _initial_outcome(violation: Violation) -> FixOutcome:
    rule = rule_by_id(violation.rule_id)
    if rule is not None and rule.meta.auto_fixable:
        return "not_attempted"
    return "not_fixable"
