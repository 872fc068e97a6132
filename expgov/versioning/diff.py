"""
Structural payload diff.

Compares two configuration payloads key by key and emits typed changes.
This is a structural diff, not a text diff: nested mappings are walked,
everything else (lists included) is compared as a single leaf value.

Ordering rules:
- Keys are visited in the newer payload's order.
- Keys present only in the older payload follow, sorted, at each level.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from .models import ChangeKind, ConfigurationChange


def _join(prefix: str, key: Any) -> str:
    return f"{prefix}.{key}" if prefix else str(key)


def strict_equal(a: Any, b: Any) -> bool:
    """Type-sensitive equality: 1 != True and 1 != 1.0."""
    if type(a) is not type(b):
        return False
    if isinstance(a, Mapping):
        return a.keys() == b.keys() and all(strict_equal(a[k], b[k]) for k in a)
    if isinstance(a, (list, tuple)):
        return len(a) == len(b) and all(strict_equal(x, y) for x, y in zip(a, b))
    return a == b


def _emit_subtree(
    value: Any,
    path: str,
    kind: ChangeKind,
    out: list[ConfigurationChange],
) -> None:
    # An added or removed mapping yields one entry per leaf; an empty
    # mapping is itself the leaf.
    if isinstance(value, Mapping) and value:
        keys = list(value) if kind is ChangeKind.ADDED else sorted(value, key=str)
        for key in keys:
            _emit_subtree(value[key], _join(path, key), kind, out)
        return
    if kind is ChangeKind.ADDED:
        out.append(ConfigurationChange(path=path, kind=kind, new_value=value))
    else:
        out.append(ConfigurationChange(path=path, kind=kind, old_value=value))


def _walk(
    old: Mapping[str, Any],
    new: Mapping[str, Any],
    prefix: str,
    out: list[ConfigurationChange],
) -> None:
    for key, new_value in new.items():
        path = _join(prefix, key)
        if key not in old:
            _emit_subtree(new_value, path, ChangeKind.ADDED, out)
            continue
        old_value = old[key]
        if isinstance(old_value, Mapping) and isinstance(new_value, Mapping):
            _walk(old_value, new_value, path, out)
        elif not strict_equal(old_value, new_value):
            out.append(
                ConfigurationChange(
                    path=path,
                    kind=ChangeKind.MODIFIED,
                    old_value=old_value,
                    new_value=new_value,
                )
            )

    for key in sorted((k for k in old if k not in new), key=str):
        _emit_subtree(old[key], _join(prefix, key), ChangeKind.REMOVED, out)


def diff_payloads(
    old: Mapping[str, Any],
    new: Mapping[str, Any],
) -> tuple[ConfigurationChange, ...]:
    """
    Diff two payloads.

    Returns an empty tuple iff the payloads are structurally identical.
    """
    changes: list[ConfigurationChange] = []
    _walk(old, new, "", changes)
    return tuple(changes)
