"""Identity records with bounded descriptor samples, plus in-memory and JSON-file stores."""

from __future__ import annotations

import json
import logging
import operator
import os
import sys
import tempfile
import threading
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Protocol, Sequence

import numpy as np

from identity_engine.errors import InternalError, NotFoundError, ValidationError
from identity_engine.matcher import IdentitySnapshot, as_descriptor, parse_identity_suffix

logger = logging.getLogger(__name__)

STORE_FORMAT_VERSION = 1


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _frozen(vector: np.ndarray) -> np.ndarray:
    vector = np.array(vector, dtype=np.float64, copy=True)
    vector.setflags(write=False)
    return vector


def _mean_descriptor(samples: Sequence[np.ndarray]) -> np.ndarray:
    return _frozen(np.mean(np.stack(samples), axis=0))


def normalize_reported_counts(reported_counts: Mapping[str, Any]) -> dict[str, int]:
    """Return externally reported photo counts as non-negative ints or raise ValidationError."""
    counts: dict[str, int] = {}
    for identity_id, count in reported_counts.items():
        try:
            value = operator.index(count)
        except TypeError as exc:
            raise ValidationError(f"Photo count for '{identity_id}' is not an integer: {count!r}") from exc
        if value < 0:
            raise ValidationError(f"Negative photo count reported for '{identity_id}'")
        counts[identity_id] = value
    return counts


def _parse_timestamp(value: Any, default: datetime) -> datetime:
    if not isinstance(value, str) or not value:
        return default
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return default
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass(slots=True, frozen=True, eq=False)
class Identity:
    """One recurring person. Records are immutable; mutations build a replacement."""

    identity_id: str
    samples: tuple[np.ndarray, ...]
    average: np.ndarray
    photo_count: int
    thumbnail_ref: str | None
    first_seen: datetime
    last_seen: datetime

    @property
    def sample_count(self) -> int:
        return len(self.samples)

    @classmethod
    def build(
        cls,
        *,
        identity_id: str,
        samples: Iterable[np.ndarray],
        max_samples: int,
        photo_count: int,
        thumbnail_ref: str | None,
        first_seen: datetime,
        last_seen: datetime,
    ) -> "Identity":
        """Build a record keeping the newest `max_samples` samples and their mean."""
        retained = tuple(_frozen(sample) for sample in list(samples)[-max_samples:])
        if not retained:
            raise ValidationError(f"Identity '{identity_id}' needs at least one descriptor sample")
        return cls(
            identity_id=identity_id,
            samples=retained,
            average=_mean_descriptor(retained),
            photo_count=max(0, int(photo_count)),
            thumbnail_ref=thumbnail_ref or None,
            first_seen=first_seen,
            last_seen=last_seen,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity_id": self.identity_id,
            "samples": [sample.tolist() for sample in self.samples],
            "average": self.average.tolist(),
            "photo_count": self.photo_count,
            "thumbnail_ref": self.thumbnail_ref,
            "first_seen": self.first_seen.isoformat(),
            "last_seen": self.last_seen.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], *, max_samples: int) -> "Identity":
        """Rebuild a record, also accepting legacy `faceId`/`descriptors` rows.

        The stored average is ignored and recomputed from the retained samples.
        """
        identity_id = str(data.get("identity_id") or data.get("faceId") or "")
        if not identity_id:
            raise ValidationError("Stored identity row is missing its id")
        raw_samples = data.get("samples") or data.get("descriptors")
        if not raw_samples and data.get("descriptor"):
            raw_samples = [data["descriptor"]]
        metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
        thumbnail_ref = data.get("thumbnail_ref") or data.get("thumbnailDriveId") or metadata.get(
            "thumbnailDriveId"
        )
        now = _utcnow()
        last_seen = _parse_timestamp(data.get("last_seen") or data.get("lastSeen"), now)
        first_seen = _parse_timestamp(data.get("first_seen") or data.get("firstSeen"), last_seen)
        return cls.build(
            identity_id=identity_id,
            samples=[as_descriptor(sample) for sample in raw_samples or []],
            max_samples=max_samples,
            photo_count=int(data.get("photo_count", data.get("photoCount", 0)) or 0),
            thumbnail_ref=thumbnail_ref,
            first_seen=first_seen,
            last_seen=last_seen,
        )


class IdentityStore(Protocol):
    """Identity record operations used by the resolution coordinator."""

    descriptor_dimension: int
    max_samples: int

    def validate_descriptor(self, descriptor: Sequence[float] | np.ndarray) -> np.ndarray:
        """Return the descriptor as a vector or raise ValidationError."""

    def get(self, identity_id: str) -> Identity | None:
        """Return one identity or None."""

    def list_all(self) -> list[Identity]:
        """Return all identities ordered by numeric id suffix."""

    def snapshot(self) -> tuple[IdentitySnapshot, ...]:
        """Return an immutable matching view of the committed state."""

    def highest_issued_suffix(self) -> int | None:
        """Return the largest numeric id suffix ever issued by this store."""

    def create_identity(
        self,
        identity_id: str,
        descriptor: Sequence[float] | np.ndarray,
        photo_id: str,
        thumbnail_ref: str | None = None,
    ) -> Identity:
        """Create a new identity with one sample and photo_count=1."""

    def apply_match(
        self,
        identity_id: str,
        descriptor: Sequence[float] | np.ndarray,
        photo_id: str,
        thumbnail_ref: str | None = None,
    ) -> Identity:
        """Append a sample to an existing identity and bump its photo count."""

    def attach_thumbnail(self, identity_id: str, thumbnail_ref: str) -> bool:
        """Set the thumbnail reference if unset; return whether it was set."""

    def merge(self, source_id: str, target_id: str) -> Identity:
        """Fold `source_id` into `target_id` and delete the source."""

    def garbage_collect(self, reported_counts: Mapping[str, int]) -> set[str]:
        """Delete identities reported with zero remaining photos."""


class InMemoryIdentityStore:
    """Process-local identity store.

    Every mutation builds replacement records first and swaps them in under the
    store lock, so readers never observe a partially applied update.
    """

    def __init__(
        self,
        *,
        descriptor_dimension: int = 128,
        max_samples: int = 5,
        id_prefix: str = "person_",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if descriptor_dimension < 1:
            raise ValueError("descriptor_dimension must be positive")
        if max_samples < 1:
            raise ValueError("max_samples must be positive")
        self.descriptor_dimension = descriptor_dimension
        self.max_samples = max_samples
        self.id_prefix = id_prefix
        self._clock = clock or _utcnow
        self._identities: dict[str, Identity] = {}
        self._highest_issued: int | None = None
        self._lock = threading.RLock()

    def _sort_key(self, identity_id: str) -> tuple[int, str]:
        suffix = parse_identity_suffix(identity_id, self.id_prefix)
        return (sys.maxsize if suffix is None else suffix, identity_id)

    def validate_descriptor(self, descriptor: Sequence[float] | np.ndarray) -> np.ndarray:
        """Return the descriptor as a vector, rejecting wrong dimensions and non-finite values."""
        try:
            vector = as_descriptor(descriptor)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Descriptor is not numeric: {exc}") from exc
        if vector.shape[0] != self.descriptor_dimension:
            raise ValidationError(
                f"Descriptor has dimension {vector.shape[0]}, expected {self.descriptor_dimension}"
            )
        if not np.all(np.isfinite(vector)):
            raise ValidationError("Descriptor contains non-finite values")
        return vector

    def _require(self, identity_id: str) -> Identity:
        identity = self._identities.get(identity_id)
        if identity is None:
            raise NotFoundError(identity_id)
        return identity

    def _persist(self) -> None:
        """Hook for durable stores; called after each in-memory swap."""

    def _commit(
        self,
        *,
        upserts: Iterable[Identity] = (),
        deletions: Iterable[str] = (),
    ) -> None:
        previous = dict(self._identities)
        previous_highest = self._highest_issued
        for identity in upserts:
            self._identities[identity.identity_id] = identity
            suffix = parse_identity_suffix(identity.identity_id, self.id_prefix)
            if suffix is not None and (self._highest_issued is None or suffix > self._highest_issued):
                self._highest_issued = suffix
        for identity_id in deletions:
            self._identities.pop(identity_id, None)
        try:
            self._persist()
        except Exception as exc:
            self._identities = previous
            self._highest_issued = previous_highest
            logger.exception("identity_store.commit_failed")
            raise InternalError(f"Failed to commit identity store mutation: {exc}") from exc

    def get(self, identity_id: str) -> Identity | None:
        with self._lock:
            return self._identities.get(identity_id)

    def list_all(self) -> list[Identity]:
        with self._lock:
            return sorted(self._identities.values(), key=lambda item: self._sort_key(item.identity_id))

    def snapshot(self) -> tuple[IdentitySnapshot, ...]:
        with self._lock:
            return tuple(
                IdentitySnapshot(identity_id=identity.identity_id, average=identity.average)
                for identity in self.list_all()
            )

    def highest_issued_suffix(self) -> int | None:
        with self._lock:
            return self._highest_issued

    def create_identity(
        self,
        identity_id: str,
        descriptor: Sequence[float] | np.ndarray,
        photo_id: str,
        thumbnail_ref: str | None = None,
    ) -> Identity:
        vector = self.validate_descriptor(descriptor)
        with self._lock:
            if identity_id in self._identities:
                raise ValidationError(f"Identity '{identity_id}' already exists")
            suffix = parse_identity_suffix(identity_id, self.id_prefix)
            if suffix is not None and self._highest_issued is not None and suffix <= self._highest_issued:
                raise ValidationError(f"Identity id '{identity_id}' was already issued and cannot be reused")
            now = self._clock()
            identity = Identity.build(
                identity_id=identity_id,
                samples=[vector],
                max_samples=self.max_samples,
                photo_count=1,
                thumbnail_ref=thumbnail_ref,
                first_seen=now,
                last_seen=now,
            )
            self._commit(upserts=[identity])
        logger.info("identity_store.created identity_id=%s photo_id=%s", identity_id, photo_id)
        return identity

    def apply_match(
        self,
        identity_id: str,
        descriptor: Sequence[float] | np.ndarray,
        photo_id: str,
        thumbnail_ref: str | None = None,
    ) -> Identity:
        vector = self.validate_descriptor(descriptor)
        with self._lock:
            current = self._require(identity_id)
            updated = Identity.build(
                identity_id=identity_id,
                samples=[*current.samples, vector],
                max_samples=self.max_samples,
                photo_count=current.photo_count + 1,
                thumbnail_ref=current.thumbnail_ref or thumbnail_ref,
                first_seen=current.first_seen,
                last_seen=self._clock(),
            )
            self._commit(upserts=[updated])
        logger.debug(
            "identity_store.matched identity_id=%s photo_id=%s samples=%s photo_count=%s",
            identity_id,
            photo_id,
            updated.sample_count,
            updated.photo_count,
        )
        return updated

    def attach_thumbnail(self, identity_id: str, thumbnail_ref: str) -> bool:
        if not thumbnail_ref:
            return False
        with self._lock:
            current = self._require(identity_id)
            if current.thumbnail_ref:
                return False
            self._commit(upserts=[replace(current, thumbnail_ref=thumbnail_ref)])
        return True

    def merge(self, source_id: str, target_id: str) -> Identity:
        if source_id == target_id:
            raise ValidationError("Cannot merge an identity into itself")
        with self._lock:
            source = self._require(source_id)
            target = self._require(target_id)
            # The more recently seen identity contributes the newest samples.
            older, newer = (source, target) if source.last_seen <= target.last_seen else (target, source)
            merged = Identity.build(
                identity_id=target_id,
                samples=[*older.samples, *newer.samples],
                max_samples=self.max_samples,
                photo_count=source.photo_count + target.photo_count,
                thumbnail_ref=target.thumbnail_ref or source.thumbnail_ref,
                first_seen=min(source.first_seen, target.first_seen),
                last_seen=max(source.last_seen, target.last_seen),
            )
            self._commit(upserts=[merged], deletions=[source_id])
        logger.info(
            "identity_store.merged source_id=%s target_id=%s photo_count=%s samples=%s",
            source_id,
            target_id,
            merged.photo_count,
            merged.sample_count,
        )
        return merged

    def garbage_collect(self, reported_counts: Mapping[str, int]) -> set[str]:
        counts = normalize_reported_counts(reported_counts)
        with self._lock:
            deleted: set[str] = set()
            reconciled: list[Identity] = []
            for identity_id, count in counts.items():
                current = self._identities.get(identity_id)
                if current is None:
                    continue
                if count == 0:
                    deleted.add(identity_id)
                elif current.photo_count != count:
                    reconciled.append(replace(current, photo_count=count))
            if deleted or reconciled:
                self._commit(upserts=reconciled, deletions=deleted)
        if deleted:
            logger.info("identity_store.garbage_collected deleted=%s", ",".join(sorted(deleted)))
        return deleted

    def load_rows(self, rows: Iterable[Mapping[str, Any]], *, highest_issued: int | None = None) -> None:
        """Replace the store contents with previously exported rows."""
        identities = [Identity.from_dict(row, max_samples=self.max_samples) for row in rows]
        for identity in identities:
            if identity.samples[0].shape[0] != self.descriptor_dimension:
                raise ValidationError(
                    f"Stored identity '{identity.identity_id}' has dimension "
                    f"{identity.samples[0].shape[0]}, expected {self.descriptor_dimension}"
                )
        with self._lock:
            self._identities = {identity.identity_id: identity for identity in identities}
            suffixes = [
                suffix
                for suffix in (parse_identity_suffix(item.identity_id, self.id_prefix) for item in identities)
                if suffix is not None
            ]
            if highest_issued is not None:
                suffixes.append(highest_issued)
            self._highest_issued = max(suffixes) if suffixes else None

    def export_payload(self) -> dict[str, Any]:
        with self._lock:
            return {
                "version": STORE_FORMAT_VERSION,
                "highest_issued_suffix": self._highest_issued,
                "identities": [identity.to_dict() for identity in self.list_all()],
            }


class JsonFileIdentityStore(InMemoryIdentityStore):
    """Identity store that rewrites a JSON file after every committed mutation.

    A failed write restores the previous in-memory state and raises InternalError.
    """

    def __init__(self, path: str | Path, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.path = Path(path)
        self._load()

    def _load(self) -> None:
        if not self.path.is_file():
            return
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise InternalError(f"Failed to read identity store '{self.path}'") from exc
        if isinstance(payload, list):
            # Legacy export: bare list of face rows.
            self.load_rows(payload)
        else:
            self.load_rows(
                payload.get("identities", []),
                highest_issued=payload.get("highest_issued_suffix"),
            )
        logger.info("identity_store.loaded path=%s identities=%s", self.path, len(self._identities))

    def _persist(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        body = json.dumps(self.export_payload(), indent=2)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(body)
            os.replace(tmp_name, self.path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise
