from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType


class FixConflictError(RuntimeError):
    """A plan no longer matches the files on disk (or failed mid-way and was rolled back)."""


@dataclass(frozen=True, slots=True)
class TextEdit:
    """Replace bytes [start, end) with `replacement`. start == end inserts."""

    start: int
    end: int
    replacement: str = ""


@dataclass(frozen=True, slots=True)
class Patch:
    base_hash: str
    edits: tuple[TextEdit, ...]

    def apply(self, data: bytes) -> bytes:
        ordered = sorted(self.edits, key=lambda e: (e.start, e.end))
        previous_end = -1
        for edit in ordered:
            if edit.start < 0 or edit.end < edit.start or edit.end > len(data):
                raise ValueError(f"edit out of range: {edit}")
            if edit.start < previous_end:
                raise ValueError(f"overlapping edits at byte {edit.start}")
            previous_end = edit.end

        out = bytearray(data)
        for edit in reversed(ordered):
            out[edit.start : edit.end] = edit.replacement.encode("utf-8")
        return bytes(out)


@dataclass(frozen=True, slots=True)
class CreateFile:
    path: str
    content: str


@dataclass(frozen=True, slots=True)
class ModifyFile:
    path: str
    patch: Patch


@dataclass(frozen=True, slots=True)
class InsertImplementsClause:
    """Add `interface_name` to the primary type's implements list, located at apply time."""

    path: str
    interface_name: str


Operation = CreateFile | ModifyFile | InsertImplementsClause


@dataclass(frozen=True, slots=True)
class FixPlan:
    rule_id: str
    path: str
    description: str
    operations: tuple[Operation, ...] = ()
    # path -> content hash the plan was computed against; None = must not exist yet.
    expected_hashes: Mapping[str, str | None] = field(default_factory=lambda: MappingProxyType({}))
    manual: bool = False

    @property
    def targets(self) -> frozenset[str]:
        return frozenset(op.path for op in self.operations) | frozenset(self.expected_hashes)

    @property
    def created_paths(self) -> tuple[str, ...]:
        return tuple(op.path for op in self.operations if isinstance(op, CreateFile))
