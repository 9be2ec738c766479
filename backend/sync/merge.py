"""
Merge Engine

Reconciles records fetched from a platform with what is already stored.
Platform fields win, except for the locally-owned fields (ids, user
toggles, warehouse assignment) which always come from the stored record.

Merging never stamps timestamps or bumps counters, so re-applying the same
page is a no-op: merge(merge(R, I), I) == merge(R, I).
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from typing import Any

Record = dict[str, Any]
NaturalKey = tuple[Any, ...]


def natural_key(record: Mapping[str, Any], key_fields: Iterable[str]) -> NaturalKey:
    return tuple(record.get(f) for f in key_fields)


def merge_record(
    existing: Mapping[str, Any] | None,
    incoming: Mapping[str, Any],
    locally_owned_fields: Iterable[str],
) -> Record:
    """
    Combine one stored record with its fresh platform copy.

    With no stored record the incoming record is returned as-is. Otherwise
    every incoming field is taken, then each locally-owned field the stored
    record actually has is copied back over it.
    """
    merged = dict(incoming)
    if existing is None:
        return merged
    for field in locally_owned_fields:
        if field in existing:
            merged[field] = existing[field]
    return merged


def merge_page(
    existing_by_key: Mapping[NaturalKey, Mapping[str, Any]],
    incoming: Iterable[Mapping[str, Any]],
    key_fields: Iterable[str],
    locally_owned_fields: Iterable[str],
) -> list[Record]:
    """Merge one fetched page; records keep their fetch order."""
    key_fields = tuple(key_fields)
    locally_owned_fields = tuple(locally_owned_fields)
    return [
        merge_record(existing_by_key.get(natural_key(record, key_fields)), record, locally_owned_fields)
        for record in incoming
    ]


def merge_collection(
    existing: Iterable[Mapping[str, Any]],
    incoming: Iterable[Mapping[str, Any]],
    key_fields: Iterable[str],
    locally_owned_fields: Iterable[str],
    *,
    keep_local: Callable[[Mapping[str, Any]], bool] | None = None,
) -> list[Record]:
    """
    Reconcile a whole collection (e.g. a carrier's service list).

    Stored records the platform no longer returns are kept untouched, after
    the platform records. ``keep_local`` marks stored records the user has
    customized; their platform counterpart is ignored entirely.
    """
    key_fields = tuple(key_fields)
    locally_owned_fields = tuple(locally_owned_fields)
    existing = [dict(r) for r in existing]
    existing_by_key = {natural_key(r, key_fields): r for r in existing}
    pinned = {k for k, r in existing_by_key.items() if keep_local is not None and keep_local(r)}

    merged: list[Record] = []
    seen: set[NaturalKey] = set()
    for record in incoming:
        key = natural_key(record, key_fields)
        if key in seen:
            continue
        seen.add(key)
        if key in pinned:
            merged.append(existing_by_key[key])
            continue
        merged.append(merge_record(existing_by_key.get(key), record, locally_owned_fields))

    merged.extend(r for r in existing if natural_key(r, key_fields) not in seen)
    return merged
