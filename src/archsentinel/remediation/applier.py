from __future__ import annotations

import logging
import threading
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from archsentinel.engine.java_model import parse_java_source
from archsentinel.engine.tree_sitter import TreeSitterError
from archsentinel.engine.types import FixOutcome
from archsentinel.remediation.plan import (
    CreateFile,
    FixConflictError,
    FixPlan,
    InsertImplementsClause,
    ModifyFile,
    Operation,
    TextEdit,
)
from archsentinel.utils import atomic_write_bytes, content_hash, file_hash

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ApplyResult:
    plan: FixPlan
    committed: bool
    outcome: FixOutcome
    message: str
    touched: tuple[str, ...] = ()


class FileLockRegistry:
    """
    One lock per target path; plans acquire theirs in sorted order.

    Directory creation and removal share the registry-wide `directories` lock,
    since plans on disjoint files still create files under common parents.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self.directories = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def lock_for(self, path: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(path)
            if lock is None:
                lock = threading.Lock()
                self._locks[path] = lock
            return lock


class FixApplier:
    """
    Apply FixPlans transactionally.

    Every target is checked against the hash the plan was computed from and
    snapshotted before the first write. Any failure restores the snapshots,
    deletes files and directories the plan created, and reports `conflict`.
    """

    def __init__(self, project_root: Path, *, locks: FileLockRegistry | None = None) -> None:
        self.project_root = project_root
        self.locks = locks or FileLockRegistry()

    def apply(self, plan: FixPlan) -> ApplyResult:
        if not plan.operations:
            outcome: FixOutcome = "manual_fix_required" if plan.manual else "not_fixable"
            return ApplyResult(plan=plan, committed=False, outcome=outcome, message=plan.description)

        targets = sorted(plan.targets)
        with ExitStack() as stack:
            for target in targets:
                stack.enter_context(self.locks.lock_for(target))
            try:
                self._apply_locked(plan, targets)
            except (FixConflictError, OSError) as exc:
                logger.info("fix for %s on %s rolled back: %s", plan.rule_id, plan.path, exc)
                return ApplyResult(plan=plan, committed=False, outcome="conflict", message=str(exc))

        outcome = "manual_fix_required" if plan.manual else "fixed"
        return ApplyResult(
            plan=plan,
            committed=True,
            outcome=outcome,
            message=plan.description,
            touched=tuple(targets),
        )

    def _abs(self, relative_path: str) -> Path:
        return self.project_root / relative_path

    def _apply_locked(self, plan: FixPlan, targets: list[str]) -> None:
        for path, expected in sorted(plan.expected_hashes.items()):
            current = file_hash(self._abs(path))
            if current != expected:
                state = "exists" if expected is None else "changed since it was scanned"
                raise FixConflictError(f"{path} {state}")

        snapshots: dict[str, bytes | None] = {}
        for path in targets:
            absolute = self._abs(path)
            snapshots[path] = absolute.read_bytes() if absolute.exists() else None

        created_dirs: list[Path] = []
        try:
            for op in plan.operations:
                self._apply_op(op, created_dirs)
        except (FixConflictError, OSError, ValueError, TreeSitterError) as exc:
            self._rollback(snapshots, created_dirs)
            if isinstance(exc, FixConflictError):
                raise
            raise FixConflictError(f"{type(exc).__name__}: {exc}") from exc

    def _apply_op(self, op: Operation, created_dirs: list[Path]) -> None:
        absolute = self._abs(op.path)
        if isinstance(op, CreateFile):
            if absolute.exists():
                raise FixConflictError(f"{op.path} already exists")
            with self.locks.directories:
                self._mkdirs(absolute.parent, created_dirs)
                atomic_write_bytes(absolute, op.content.encode("utf-8"))
            return

        current = absolute.read_bytes()
        if isinstance(op, ModifyFile):
            if content_hash(current) != op.patch.base_hash:
                raise FixConflictError(f"{op.path} does not match the patch base")
            atomic_write_bytes(absolute, op.patch.apply(current))
            return

        if isinstance(op, InsertImplementsClause):
            edit = implements_edit(current, PurePosixPath(op.path).stem, op.interface_name)
            if edit is None:
                return
            atomic_write_bytes(absolute, _splice(current, edit))
            return

        raise ValueError(f"unknown operation: {op!r}")  # pragma: no cover

    def _mkdirs(self, directory: Path, created_dirs: list[Path]) -> None:
        missing: list[Path] = []
        current = directory
        while not current.exists():
            missing.append(current)
            current = current.parent
        for path in reversed(missing):
            path.mkdir(exist_ok=True)
            created_dirs.append(path)

    def _rollback(self, snapshots: dict[str, bytes | None], created_dirs: list[Path]) -> None:
        for path, data in snapshots.items():
            absolute = self._abs(path)
            if data is None:
                if absolute.exists():
                    absolute.unlink()
            elif not absolute.exists() or absolute.read_bytes() != data:
                atomic_write_bytes(absolute, data)
        with self.locks.directories:
            for directory in reversed(created_dirs):
                if directory.exists() and not any(directory.iterdir()):
                    directory.rmdir()


def implements_edit(data: bytes, stem: str, interface_name: str) -> TextEdit | None:
    """
    Locate where `interface_name` goes in the primary class header.

    Returns None when the class already implements it.
    """

    java = parse_java_source(data)
    primary = java.primary_type(stem)
    if primary is None:
        raise FixConflictError("no type declaration to extend")
    if primary.kind not in ("class", "enum", "record"):
        raise FixConflictError(f"cannot add implements clause to {primary.kind} {primary.name}")
    if interface_name in primary.interfaces:
        return None
    if primary.interfaces_end is not None:
        return TextEdit(primary.interfaces_end, primary.interfaces_end, f", {interface_name}")
    return TextEdit(primary.header_end, primary.header_end, f" implements {interface_name}")


def _splice(data: bytes, edit: TextEdit) -> bytes:
    return data[: edit.start] + edit.replacement.encode("utf-8") + data[edit.end :]
