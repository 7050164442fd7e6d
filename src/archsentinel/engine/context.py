from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING

from archsentinel.config import ArchSentinelConfig
from archsentinel.engine.types import Diagnostic, SourceUnit

if TYPE_CHECKING:
    from archsentinel.store import ViolationStore


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class SessionContext:
    """
    Everything a pass needs, passed explicitly through every stage.
    """

    project_root: Path
    scan_path: Path
    config: ArchSentinelConfig
    store: ViolationStore | None = None
    agent_name: str = "feature-developer"
    session_id: str = ""
    clock: Callable[[], datetime] = utc_now

    def abspath(self, relative_path: str) -> Path:
        return self.project_root / relative_path


@dataclass(frozen=True, slots=True)
class SourceSet:
    """
    Immutable snapshot of every parsed unit, keyed by project-relative path.
    """

    units: Mapping[str, SourceUnit] = field(default_factory=lambda: MappingProxyType({}))
    diagnostics: tuple[Diagnostic, ...] = ()
    by_fqn: Mapping[str, SourceUnit] = field(default_factory=lambda: MappingProxyType({}))
    by_package: Mapping[str, tuple[SourceUnit, ...]] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def build(cls, units: Iterable[SourceUnit], diagnostics: Iterable[Diagnostic] = ()) -> SourceSet:
        ordered = sorted(units, key=lambda u: u.path)
        by_fqn: dict[str, SourceUnit] = {}
        by_package: dict[str, list[SourceUnit]] = {}
        for unit in ordered:
            # Duplicate FQNs resolve to the first path in sort order.
            by_fqn.setdefault(unit.fqn, unit)
            by_package.setdefault(unit.package, []).append(unit)
        return cls(
            units=MappingProxyType({u.path: u for u in ordered}),
            diagnostics=tuple(sorted(diagnostics, key=lambda d: (d.path or "", d.message))),
            by_fqn=MappingProxyType(by_fqn),
            by_package=MappingProxyType({k: tuple(v) for k, v in by_package.items()}),
        )

    def __len__(self) -> int:
        return len(self.units)

    def get(self, path: str) -> SourceUnit | None:
        return self.units.get(path)

    def sorted_units(self) -> list[SourceUnit]:
        return [self.units[p] for p in sorted(self.units)]
