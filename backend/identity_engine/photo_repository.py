"""Photo-to-identity reference tracking used for merges and orphan detection."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable


class PhotoRepository(Protocol):
    """Reverse lookups the engine needs from whoever owns photo records."""

    def rewrite_identity_references(self, source_id: str, target_id: str) -> int:
        """Point every photo referencing `source_id` at `target_id`; return photos updated."""

    def count_photos_referencing(self, identity_id: str) -> int:
        """Return how many photos still reference the identity."""


@runtime_checkable
class PhotoReferenceWriter(Protocol):
    """Repositories that let the engine record references as faces are resolved."""

    def add_identity_reference(self, photo_id: str, identity_id: str) -> None:
        """Record that `photo_id` shows `identity_id`."""

    def set_main_identity(self, photo_id: str, identity_id: str) -> None:
        """Mark the identity shown most prominently in `photo_id`."""


@dataclass(slots=True)
class PhotoFaces:
    """Identity references recorded for one photo."""

    photo_id: str
    identity_ids: list[str] = field(default_factory=list)
    main_identity_id: str | None = None

    def references(self, identity_id: str) -> bool:
        return self.main_identity_id == identity_id or identity_id in self.identity_ids


class InMemoryPhotoRepository:
    """Process-local photo reference table used in tests and local runs."""

    def __init__(self) -> None:
        self._photos: dict[str, PhotoFaces] = {}
        self._lock = threading.Lock()

    def record_photo(
        self,
        photo_id: str,
        identity_ids: list[str],
        main_identity_id: str | None = None,
    ) -> PhotoFaces:
        if main_identity_id is None and identity_ids:
            main_identity_id = identity_ids[0]
        record = PhotoFaces(
            photo_id=photo_id,
            identity_ids=list(identity_ids),
            main_identity_id=main_identity_id,
        )
        with self._lock:
            self._photos[photo_id] = record
        return record

    def add_identity_reference(self, photo_id: str, identity_id: str) -> None:
        with self._lock:
            record = self._photos.setdefault(photo_id, PhotoFaces(photo_id=photo_id))
            if identity_id not in record.identity_ids:
                record.identity_ids.append(identity_id)
            if record.main_identity_id is None:
                record.main_identity_id = identity_id

    def set_main_identity(self, photo_id: str, identity_id: str) -> None:
        with self._lock:
            record = self._photos.get(photo_id)
            if record is not None and identity_id in record.identity_ids:
                record.main_identity_id = identity_id

    def get_photo(self, photo_id: str) -> PhotoFaces | None:
        with self._lock:
            return self._photos.get(photo_id)

    def delete_photo(self, photo_id: str) -> list[str]:
        """Remove a photo and return the identity ids it referenced."""
        with self._lock:
            record = self._photos.pop(photo_id, None)
        if record is None:
            return []
        referenced = list(dict.fromkeys(record.identity_ids))
        if record.main_identity_id and record.main_identity_id not in referenced:
            referenced.append(record.main_identity_id)
        return referenced

    def photos_referencing(self, identity_id: str) -> list[str]:
        with self._lock:
            return sorted(photo_id for photo_id, record in self._photos.items() if record.references(identity_id))

    def rewrite_identity_references(self, source_id: str, target_id: str) -> int:
        updated = 0
        with self._lock:
            for record in self._photos.values():
                if not record.references(source_id):
                    continue
                rewritten = [target_id if identity_id == source_id else identity_id for identity_id in record.identity_ids]
                # A photo showing both identities keeps a single reference.
                record.identity_ids = list(dict.fromkeys(rewritten))
                if record.main_identity_id == source_id:
                    record.main_identity_id = target_id
                updated += 1
        return updated

    def count_photos_referencing(self, identity_id: str) -> int:
        with self._lock:
            return sum(1 for record in self._photos.values() if record.references(identity_id))
