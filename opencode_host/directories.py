"""Directory browsing confined to the host's base path."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

from .errors import ValidationError


MAX_ENTRIES = 1000


def _inside(base: str, candidate: str) -> bool:
    return candidate == base or candidate.startswith(base.rstrip(os.sep) + os.sep)


def resolve_within_base(base_path: str | Path, requested: str | None) -> Path:
    """Map a caller path onto the base path, rejecting escapes.

    Caller paths are always relative to the base: leading slashes and a
    leading ``~`` are stripped. The containment check runs on the normalized
    string, before anything touches the filesystem.
    """
    base = os.path.normpath(os.path.abspath(os.path.expanduser(str(base_path))))
    raw = (requested or "").strip()
    if raw.startswith("~"):
        raw = raw[1:]
    raw = raw.lstrip("/")
    if not raw:
        return Path(base)
    candidate = os.path.normpath(os.path.join(base, raw))
    if not _inside(base, candidate):
        raise ValidationError("Access denied: path outside base directory")
    return Path(candidate)


def _existing_sync(base_path: str | Path, target: Path, shown: str) -> str:
    real_base = os.path.realpath(os.path.expanduser(str(base_path)))
    real_target = os.path.realpath(target)
    if not _inside(real_base, real_target):
        raise ValidationError("Access denied: path outside base directory")
    if not os.path.isdir(real_target):
        raise ValidationError(f"Directory not found: {shown}")
    return real_target


def _list_sync(base_path: str | Path, target: Path, shown: str) -> list[str]:
    real_target = _existing_sync(base_path, target, shown)
    names: list[str] = []
    with os.scandir(real_target) as entries:
        for entry in entries:
            if entry.name.startswith("."):
                continue
            try:
                if entry.is_dir():
                    names.append(entry.name)
            except OSError:
                continue
    names.sort()
    return names[:MAX_ENTRIES]


async def resolve_existing_directory(base_path: str | Path, requested: str | None) -> Path:
    """Resolve a caller path to an existing directory under the base path."""
    target = resolve_within_base(base_path, requested)
    real = await asyncio.to_thread(_existing_sync, base_path, target, requested or "/")
    return Path(real)


async def list_directories(base_path: str | Path, requested: str | None = None) -> tuple[Path, list[str]]:
    """Return the resolved directory and its visible sub-directory names."""
    target = resolve_within_base(base_path, requested)
    try:
        names = await asyncio.to_thread(_list_sync, base_path, target, requested or "/")
    except PermissionError as exc:
        raise ValidationError(f"Cannot read directory: {exc}") from exc
    return target, names
