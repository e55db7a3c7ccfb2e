"""
Small on-disk JSON/text helpers for credential and tool-state files.

Readers never raise: a missing, unreadable or malformed file yields the
supplied fallback. Writers replace files atomically so a crash mid-write
cannot leave a truncated credential file behind.
"""

from __future__ import annotations

import json
import os
import tempfile

from collections.abc import Iterator
from pathlib import Path
from typing import Any


def read_text_safe(path: Path, fallback: str | None = None) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return fallback


def read_json_safe(path: Path, fallback: Any = None) -> Any:
    """Parse a JSON file, returning ``fallback`` on any read or parse error."""
    text = read_text_safe(path)
    if text is None:
        return fallback
    try:
        return json.loads(text)
    except ValueError:
        return fallback


def read_json_object(path: Path) -> dict[str, Any]:
    """Parse a JSON file that must hold an object; anything else yields ``{}``."""
    payload = read_json_safe(path, {})
    return payload if isinstance(payload, dict) else {}


def write_bytes_atomic(path: Path, data: bytes, mode: int | None = None) -> None:
    """Write ``data`` to a sibling temp file, then rename it over ``path``.

    Raises:
        OSError: If the directory cannot be created or the write fails.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        if mode is not None:
            os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def write_json_atomic(path: Path, payload: Any, mode: int | None = None) -> None:
    data = json.dumps(payload, indent=2).encode("utf-8")
    write_bytes_atomic(path, data, mode=mode)


def iter_json_files(root: Path, max_files: int) -> Iterator[Path]:
    """Yield up to ``max_files`` ``*.json`` files below ``root``, depth first.

    Unreadable directories are skipped.
    """
    if max_files <= 0:
        return
    count = 0
    stack = [root]
    while stack:
        current = stack.pop()
        try:
            entries = sorted(os.scandir(current), key=lambda e: e.name)
        except OSError:
            continue
        subdirs: list[Path] = []
        for entry in entries:
            try:
                if entry.is_dir(follow_symlinks=False):
                    subdirs.append(Path(entry.path))
                elif entry.is_file() and entry.name.endswith(".json"):
                    yield Path(entry.path)
                    count += 1
                    if count >= max_files:
                        return
            except OSError:
                continue
        stack.extend(reversed(subdirs))
