from __future__ import annotations

import os
from hashlib import sha256
from pathlib import Path


def safe_relpath(path: Path, root: Path) -> str:
    """
    Return a stable, POSIX-style path for reporting and storage.

    Prefer a path relative to `root`; fall back to `path.as_posix()` when the
    path is outside the root or cannot be resolved.
    """

    try:
        resolved_path = path.resolve()
    except OSError:
        resolved_path = path

    try:
        resolved_root = root.resolve()
    except OSError:
        resolved_root = root

    try:
        return resolved_path.relative_to(resolved_root).as_posix()
    except ValueError:
        return path.as_posix()


def content_hash(data: bytes) -> str:
    return sha256(data).hexdigest()


def file_hash(path: Path) -> str | None:
    """Hash of the file's current bytes, or None when it does not exist."""

    try:
        return content_hash(path.read_bytes())
    except FileNotFoundError:
        return None


def atomic_write_bytes(path: Path, data: bytes) -> None:
    # Write next to the target then replace, so readers never see a torn file.
    tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    try:
        tmp.write_bytes(data)
        tmp.replace(path)
    finally:
        if tmp.exists():
            tmp.unlink()
