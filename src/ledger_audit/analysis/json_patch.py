"""Apply ``{path, value}`` patches to a JSON document.

Paths use dotted keys with bracketed array indices, e.g.
``issues[0].transaction_ids``. Missing object keys along the way are
created as empty objects; array indices must already exist.
"""

from __future__ import annotations

import json
import re
from typing import Any, Iterable

from ledger_audit.analysis.errors import PatchError
from ledger_audit.analysis.report import JSONPatch

_ARRAY_INDEX = re.compile(r"\[(\d+)\]")


def parse_path(path: str) -> list[str]:
    normalized = _ARRAY_INDEX.sub(r".\1", path)
    return [segment for segment in normalized.split(".") if segment]


def _array_index(container: list[Any], segment: str) -> int:
    try:
        index = int(segment)
    except ValueError as exc:
        raise PatchError(f"invalid array index {segment}") from exc
    if index < 0 or index >= len(container):
        raise PatchError(f"array index {index} out of bounds (len={len(container)})")
    return index


def _navigate(current: Any, segment: str) -> Any:
    if isinstance(current, dict):
        if segment not in current:
            current[segment] = {}
        return current[segment]
    if isinstance(current, list):
        return current[_array_index(current, segment)]
    raise PatchError(f"cannot navigate into {type(current).__name__} with segment {segment}")


def _set(current: Any, segment: str, value: Any) -> None:
    if isinstance(current, dict):
        current[segment] = value
        return
    if isinstance(current, list):
        current[_array_index(current, segment)] = value
        return
    raise PatchError(f"cannot set value on {type(current).__name__}")


def set_value(document: Any, path: str, value: Any) -> None:
    """Set ``value`` at ``path`` inside an already-decoded document, in place."""
    segments = parse_path(path)
    if not segments:
        raise PatchError("empty path")
    current = document
    for segment in segments[:-1]:
        try:
            current = _navigate(current, segment)
        except PatchError as exc:
            raise PatchError(f"failed to navigate to {segment}: {exc}") from exc
    _set(current, segments[-1], value)


def _load(data: bytes | str) -> Any:
    try:
        return json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise PatchError(f"failed to decode JSON document: {exc}") from exc


def apply_patch(data: bytes | str, patch: JSONPatch) -> bytes:
    document = _load(data)
    try:
        set_value(document, patch.path, patch.value)
    except PatchError as exc:
        raise PatchError(f"failed to apply patch at path {patch.path}: {exc}") from exc
    return json.dumps(document, indent=2).encode("utf-8")


def apply_patches(data: bytes | str, patches: Iterable[JSONPatch]) -> bytes:
    """Apply patches in order; the first failure aborts the whole batch."""
    document = _load(data)
    for index, patch in enumerate(patches):
        try:
            set_value(document, patch.path, patch.value)
        except PatchError as exc:
            raise PatchError(f"failed to apply patch {index} at path {patch.path}: {exc}") from exc
    return json.dumps(document, indent=2).encode("utf-8")


def extract_value(data: bytes | str, path: str) -> Any:
    current = _load(data)
    for segment in parse_path(path):
        if isinstance(current, dict):
            if segment not in current:
                raise PatchError(f"key {segment} not found")
            current = current[segment]
        elif isinstance(current, list):
            current = current[_array_index(current, segment)]
        else:
            raise PatchError(f"cannot navigate into {type(current).__name__} with segment {segment}")
    return current
