from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from archsentinel.store import ViolationStore
from helpers import FIXED_NOW, make_ctx


@pytest.fixture()
def store(tmp_path: Path) -> Iterator[ViolationStore]:
    with ViolationStore.open(tmp_path / ".archsentinel" / "violations.sqlite") as s:
        yield s


@pytest.fixture()
def project(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture()
def session_ctx(project: Path, store: ViolationStore):  # noqa: ANN201
    return make_ctx(project, store=store, clock=lambda: FIXED_NOW)


@pytest.fixture(autouse=True)
def _single_worker(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ARCHSENTINEL_WORKERS", "1")
