"""Nearest-neighbour identity matching against an immutable store snapshot."""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Sequence

import numpy as np


@dataclass(slots=True, frozen=True, eq=False)
class IdentitySnapshot:
    """Read-only view of one identity used for matching."""

    identity_id: str
    average: np.ndarray


@dataclass(slots=True, frozen=True)
class Decision:
    """Match-or-create decision for one descriptor."""

    identity_id: str
    distance: float | None
    is_new: bool

    @classmethod
    def matched(cls, identity_id: str, distance: float) -> "Decision":
        return cls(identity_id=identity_id, distance=float(distance), is_new=False)

    @classmethod
    def new(cls, identity_id: str, nearest_distance: float | None = None) -> "Decision":
        distance = None if nearest_distance is None else float(nearest_distance)
        return cls(identity_id=identity_id, distance=distance, is_new=True)


def as_descriptor(values: Sequence[float] | np.ndarray) -> np.ndarray:
    """Return a one-dimensional float64 copy of a descriptor."""
    return np.asarray(values, dtype=np.float64).reshape(-1).copy()


def euclidean_distance(a: np.ndarray, b: np.ndarray) -> float:
    return float(np.linalg.norm(a - b))


def parse_identity_suffix(identity_id: str, prefix: str) -> int | None:
    """Return the numeric suffix of `<prefix><n>` ids, or None for foreign ids."""
    if not identity_id.startswith(prefix):
        return None
    suffix = identity_id[len(prefix):]
    if not suffix.isdigit():
        return None
    return int(suffix)


def next_identity_id(
    identity_ids: Sequence[str],
    *,
    prefix: str,
    first_id: int,
    highest_issued: int | None = None,
) -> str:
    """Build the id for a new identity as max(existing suffixes) + 1."""
    suffixes = [
        suffix
        for suffix in (parse_identity_suffix(identity_id, prefix) for identity_id in identity_ids)
        if suffix is not None
    ]
    if highest_issued is not None:
        suffixes.append(highest_issued)
    if not suffixes:
        return f"{prefix}{first_id}"
    return f"{prefix}{max(max(suffixes) + 1, first_id)}"


def _tie_break_key(identity_id: str, prefix: str) -> tuple[int, str]:
    suffix = parse_identity_suffix(identity_id, prefix)
    return (sys.maxsize if suffix is None else suffix, identity_id)


def decide(
    descriptor: np.ndarray,
    known_identities: Sequence[IdentitySnapshot],
    *,
    threshold: float,
    prefix: str = "person_",
    first_id: int = 1,
    highest_issued: int | None = None,
) -> Decision:
    """Match a descriptor to the nearest identity average or allocate a new id.

    The nearest identity wins when its distance is strictly below `threshold`.
    Equal distances resolve to the lowest numeric suffix.
    """
    new_id = next_identity_id(
        [known.identity_id for known in known_identities],
        prefix=prefix,
        first_id=first_id,
        highest_issued=highest_issued,
    )
    if not known_identities:
        return Decision.new(new_id)

    averages = np.stack([known.average for known in known_identities])
    distances = np.linalg.norm(averages - descriptor, axis=1)
    ordered = sorted(
        range(len(known_identities)),
        key=lambda idx: (
            float(distances[idx]),
            _tie_break_key(known_identities[idx].identity_id, prefix),
        ),
    )
    best_idx = ordered[0]
    best_distance = float(distances[best_idx])
    if best_distance < threshold:
        return Decision.matched(known_identities[best_idx].identity_id, best_distance)
    return Decision.new(new_id, nearest_distance=best_distance)
