"""Sequential identity resolution, merge and orphan collection over one store."""

from __future__ import annotations

import asyncio
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, Mapping, Sequence

import numpy as np
from pydantic import ValidationError as PydanticValidationError

from identity_engine.config import Settings
from identity_engine.errors import (
    IdentityEngineError,
    InternalError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from identity_engine.identity_store import (
    Identity,
    IdentityStore,
    InMemoryIdentityStore,
    JsonFileIdentityStore,
    normalize_reported_counts,
)
from identity_engine.matcher import Decision, decide
from identity_engine.photo_repository import PhotoReferenceWriter, PhotoRepository
from identity_engine.schemas import (
    BoundingBox,
    IdentitySummary,
    MergeResult,
    Observation,
    ResolutionResult,
)
from identity_engine.storage import MediaStoreConfigError, R2ThumbnailStore, ThumbnailStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PreparedObservation:
    """Validated observation ready for matching."""

    index: int
    descriptor: np.ndarray
    photo_id: str
    bounding_box: BoundingBox | None
    thumbnail: bytes | None


@dataclass(slots=True)
class _BatchTally:
    identity_ids: list[str] = field(default_factory=list)
    created_ids: list[str] = field(default_factory=list)
    matched_ids: list[str] = field(default_factory=list)
    thumbnails_requested: int = 0
    thumbnails_uploaded: int = 0

    def record(self, decision: Decision) -> None:
        self.identity_ids.append(decision.identity_id)
        target = self.created_ids if decision.is_new else self.matched_ids
        if decision.identity_id not in target:
            target.append(decision.identity_id)


def _largest_face(items: Sequence[PreparedObservation]) -> PreparedObservation:
    """Return the face with the largest box, falling back to the first face."""
    boxed = [item for item in items if item.bounding_box is not None]
    if not boxed:
        return items[0]
    return max(boxed, key=lambda item: (item.bounding_box.area, -item.index))


def _main_identity_id(prepared: Sequence[PreparedObservation], identity_ids: Sequence[str]) -> str | None:
    if not identity_ids:
        return None
    return identity_ids[_largest_face(prepared).index]


class ResolutionCoordinator:
    """Serialize match decisions and store mutations behind one critical section.

    Each observation is matched against the committed state and committed before
    the next observation is read, so a later face in the same batch (or in a
    concurrent batch) sees identities created by earlier ones.
    """

    def __init__(
        self,
        store: IdentityStore,
        *,
        threshold: float = 0.30,
        id_prefix: str = "person_",
        first_id: int = 1,
        thumbnail_store: ThumbnailStore | None = None,
        photo_repository: PhotoRepository | None = None,
        lock_timeout_seconds: float = 30.0,
    ) -> None:
        self.store = store
        self.threshold = threshold
        self.id_prefix = id_prefix
        self.first_id = first_id
        self.thumbnail_store = thumbnail_store
        self.photo_repository = photo_repository
        self.lock_timeout_seconds = lock_timeout_seconds
        self._lock = threading.Lock()
        self._reference_writer = photo_repository if isinstance(photo_repository, PhotoReferenceWriter) else None
        # Identities with a thumbnail upload in flight; guarded by _claims_lock.
        self._thumbnail_claims: set[str] = set()
        self._claims_lock = threading.Lock()

    @contextmanager
    def critical_section(self, operation: str) -> Iterator[None]:
        if not self._lock.acquire(timeout=self.lock_timeout_seconds):
            logger.error(
                "coordinator.lock_timeout operation=%s timeout_seconds=%s",
                operation,
                self.lock_timeout_seconds,
            )
            raise InternalError(
                f"Timed out after {self.lock_timeout_seconds}s waiting to run '{operation}'"
            )
        try:
            yield
        finally:
            self._lock.release()

    # -- resolution -----------------------------------------------------

    def prepare_batch(
        self,
        observations: Sequence[Observation | Mapping[str, Any]],
        *,
        bounding_boxes: Sequence[BoundingBox | Mapping[str, Any] | None] | None = None,
        thumbnails: Sequence[bytes | None] | None = None,
    ) -> list[PreparedObservation]:
        """Validate a whole batch before anything is mutated."""
        count = len(observations)
        if bounding_boxes is not None and len(bounding_boxes) != count:
            raise ValidationError(
                f"Face data mismatch: {count} observations but {len(bounding_boxes)} bounding boxes"
            )
        if thumbnails is not None and len(thumbnails) != count:
            raise ValidationError(
                f"Face data mismatch: {count} observations but {len(thumbnails)} thumbnails"
            )

        prepared: list[PreparedObservation] = []
        for index, raw in enumerate(observations):
            try:
                observation = raw if isinstance(raw, Observation) else Observation.model_validate(raw)
                box = observation.bounding_box
                if bounding_boxes is not None and bounding_boxes[index] is not None:
                    box = BoundingBox.model_validate(bounding_boxes[index])
            except PydanticValidationError as exc:
                raise ValidationError(f"Observation {index} is invalid: {exc}") from exc
            try:
                descriptor = self.store.validate_descriptor(observation.descriptor)
            except ValidationError as exc:
                raise ValidationError(f"Observation {index}: {exc}") from exc
            thumbnail = thumbnails[index] if thumbnails is not None else None
            prepared.append(
                PreparedObservation(
                    index=index,
                    descriptor=descriptor,
                    photo_id=observation.source_photo_id,
                    bounding_box=box,
                    thumbnail=thumbnail or None,
                )
            )
        return prepared

    def _decide(self, descriptor: np.ndarray) -> Decision:
        return decide(
            descriptor,
            self.store.snapshot(),
            threshold=self.threshold,
            prefix=self.id_prefix,
            first_id=self.first_id,
            highest_issued=self.store.highest_issued_suffix(),
        )

    def _commit(self, decision: Decision, item: PreparedObservation) -> Identity:
        if decision.is_new:
            return self.store.create_identity(decision.identity_id, item.descriptor, item.photo_id)
        return self.store.apply_match(decision.identity_id, item.descriptor, item.photo_id)

    def resolve_one(self, item: PreparedObservation) -> tuple[Decision, Identity, bool]:
        """Decide and commit one observation as a single atomic step.

        The photo reference is recorded and the thumbnail slot claimed in the
        same critical section. The returned flag is True when this call owns
        the claim and must upload `item.thumbnail`.
        """
        with self.critical_section("resolve"):
            decision = self._decide(item.descriptor)
            identity = self._commit(decision, item)
            if self._reference_writer is not None and item.photo_id:
                self._reference_writer.add_identity_reference(item.photo_id, identity.identity_id)
            claimed = self._claim_thumbnail(item, identity)
        logger.info(
            "resolve.%s identity_id=%s photo_id=%s distance=%s",
            "created" if decision.is_new else "matched",
            decision.identity_id,
            item.photo_id,
            "none" if decision.distance is None else f"{decision.distance:.4f}",
        )
        return decision, identity, claimed

    def _claim_thumbnail(self, item: PreparedObservation, identity: Identity) -> bool:
        if item.thumbnail is None or identity.thumbnail_ref is not None:
            return False
        with self._claims_lock:
            if identity.identity_id in self._thumbnail_claims:
                return False
            self._thumbnail_claims.add(identity.identity_id)
        return True

    def store_thumbnail(self, identity_id: str, payload: bytes) -> bool:
        """Upload a face crop and attach it to the identity.

        Returns True only when the upload became the identity's thumbnail.
        Failures are logged and reported as False. Any claim on the identity's
        thumbnail slot is released so a later batch can retry.
        """
        try:
            return self._upload_and_attach(identity_id, payload)
        except (PersistenceError, NotFoundError, InternalError) as exc:
            logger.warning("resolve.thumbnail_failed identity_id=%s error=%s", identity_id, exc)
            return False
        finally:
            with self._claims_lock:
                self._thumbnail_claims.discard(identity_id)

    def _upload_and_attach(self, identity_id: str, payload: bytes) -> bool:
        if self.thumbnail_store is None:
            raise PersistenceError("No thumbnail store is configured")
        try:
            thumbnail_ref = self.thumbnail_store.upload_identity_thumbnail(identity_id, payload)
        except Exception as exc:
            raise PersistenceError(f"Thumbnail upload failed for '{identity_id}': {exc}") from exc
        try:
            with self.critical_section("attach_thumbnail"):
                attached = self.store.attach_thumbnail(identity_id, thumbnail_ref)
                current = self.store.get(identity_id)
        except NotFoundError:
            self._delete_thumbnail(identity_id, thumbnail_ref)
            raise
        if not attached:
            if current is None or current.thumbnail_ref != thumbnail_ref:
                self._delete_thumbnail(identity_id, thumbnail_ref)
            logger.warning("resolve.thumbnail_not_attached identity_id=%s ref=%s", identity_id, thumbnail_ref)
            return False
        logger.info("resolve.thumbnail_uploaded identity_id=%s ref=%s", identity_id, thumbnail_ref)
        return True

    def record_main_identities(self, prepared: Sequence[PreparedObservation], identity_ids: Sequence[str]) -> None:
        """Mark the largest face of each source photo as that photo's main identity."""
        if self._reference_writer is None:
            return
        faces_by_photo: dict[str, list[PreparedObservation]] = {}
        for item in prepared:
            if item.photo_id:
                faces_by_photo.setdefault(item.photo_id, []).append(item)
        for photo_id, items in faces_by_photo.items():
            self._reference_writer.set_main_identity(photo_id, identity_ids[_largest_face(items).index])

    def build_result(self, prepared: Sequence[PreparedObservation], tally: _BatchTally) -> ResolutionResult:
        result = ResolutionResult(
            identity_ids=tally.identity_ids,
            created_ids=tally.created_ids,
            matched_ids=tally.matched_ids,
            main_identity_id=_main_identity_id(prepared, tally.identity_ids),
            thumbnails_requested=tally.thumbnails_requested,
            thumbnails_uploaded=tally.thumbnails_uploaded,
        )
        if result.degraded:
            logger.warning(
                "resolve.degraded thumbnails_requested=%s thumbnails_uploaded=%s",
                result.thumbnails_requested,
                result.thumbnails_uploaded,
            )
        return result

    def resolve_batch(
        self,
        observations: Sequence[Observation | Mapping[str, Any]],
        *,
        bounding_boxes: Sequence[BoundingBox | Mapping[str, Any] | None] | None = None,
        thumbnails: Sequence[bytes | None] | None = None,
    ) -> ResolutionResult:
        """Resolve an ordered batch of faces to identity ids, one per observation."""
        prepared = self.prepare_batch(observations, bounding_boxes=bounding_boxes, thumbnails=thumbnails)
        tally = _BatchTally()
        for item in prepared:
            decision, _, claimed = self.resolve_one(item)
            tally.record(decision)
            if claimed:
                tally.thumbnails_requested += 1
                if self.store_thumbnail(decision.identity_id, item.thumbnail):
                    tally.thumbnails_uploaded += 1
        self.record_main_identities(prepared, tally.identity_ids)
        return self.build_result(prepared, tally)

    def resolve_batch_unsynchronized(
        self,
        observations: Sequence[Observation | Mapping[str, Any]],
    ) -> ResolutionResult:
        """Match every face against the pre-batch state, then commit.

        This reproduces the race where concurrent matching against an empty
        store collapses distinct faces onto one new identity. It exists as a
        diagnostic control and must not be used to resolve real uploads.
        """
        prepared = self.prepare_batch(observations)
        snapshot = self.store.snapshot()
        highest = self.store.highest_issued_suffix()
        decisions = [
            decide(
                item.descriptor,
                snapshot,
                threshold=self.threshold,
                prefix=self.id_prefix,
                first_id=self.first_id,
                highest_issued=highest,
            )
            for item in prepared
        ]
        tally = _BatchTally()
        for decision, item in zip(decisions, prepared):
            if self.store.get(decision.identity_id) is None:
                self.store.create_identity(decision.identity_id, item.descriptor, item.photo_id)
            else:
                self.store.apply_match(decision.identity_id, item.descriptor, item.photo_id)
            tally.record(decision)
        return self.build_result(prepared, tally)

    # -- lifecycle --------------------------------------------------------

    def merge(self, source_id: str, target_id: str) -> MergeResult:
        """Fold one identity into another and rewrite photo references."""
        if source_id == target_id:
            raise ValidationError("Cannot merge an identity into itself")
        with self.critical_section("merge"):
            for identity_id in (source_id, target_id):
                if self.store.get(identity_id) is None:
                    raise NotFoundError(identity_id)
            merged = self.store.merge(source_id, target_id)
            photos_updated = 0
            if self.photo_repository is not None:
                try:
                    photos_updated = self.photo_repository.rewrite_identity_references(source_id, target_id)
                except Exception as exc:
                    logger.exception(
                        "merge.rewrite_failed source_id=%s target_id=%s",
                        source_id,
                        target_id,
                    )
                    raise PersistenceError(
                        f"Merged '{source_id}' into '{target_id}' but photo references were not rewritten"
                    ) from exc
        logger.info(
            "merge.completed source_id=%s target_id=%s photos_updated=%s",
            source_id,
            target_id,
            photos_updated,
        )
        return MergeResult(
            merged_from=source_id,
            merged_into=target_id,
            photos_updated=photos_updated,
            photo_count=merged.photo_count,
            sample_count=merged.sample_count,
        )

    def _collect(self, reported_counts: Mapping[str, int]) -> set[str]:
        counts = normalize_reported_counts(reported_counts)
        thumbnail_refs = {}
        for identity_id, count in counts.items():
            current = self.store.get(identity_id)
            if current is not None and count == 0 and current.thumbnail_ref:
                thumbnail_refs[identity_id] = current.thumbnail_ref
        deleted = self.store.garbage_collect(counts)
        for identity_id in sorted(deleted & thumbnail_refs.keys()):
            self._delete_thumbnail(identity_id, thumbnail_refs[identity_id])
        return deleted

    def _delete_thumbnail(self, identity_id: str, thumbnail_ref: str) -> None:
        if self.thumbnail_store is None:
            return
        try:
            self.thumbnail_store.delete_object(thumbnail_ref)
        except Exception as exc:
            logger.warning(
                "gc.thumbnail_delete_failed identity_id=%s ref=%s error=%s",
                identity_id,
                thumbnail_ref,
                exc,
            )

    def garbage_collect(self, reported_counts: Mapping[str, int]) -> set[str]:
        """Delete identities whose externally verified photo count is zero."""
        with self.critical_section("garbage_collect"):
            return self._collect(reported_counts)

    def collect_orphans(self, candidate_ids: Sequence[str]) -> set[str]:
        """Count remaining photo references for candidates and delete the orphans."""
        if self.photo_repository is None:
            raise IdentityEngineError("Orphan collection requires a photo repository")
        with self.critical_section("collect_orphans"):
            reported = {
                identity_id: self.photo_repository.count_photos_referencing(identity_id)
                for identity_id in dict.fromkeys(candidate_ids)
            }
            deleted = self._collect(reported)
        logger.info(
            "gc.completed candidates=%s deleted=%s",
            len(reported),
            ",".join(sorted(deleted)) or "none",
        )
        return deleted

    # -- queries ------------------------------------------------------------

    def get_identity(self, identity_id: str) -> Identity:
        identity = self.store.get(identity_id)
        if identity is None:
            raise NotFoundError(identity_id)
        return identity

    def list_identities(
        self,
        *,
        min_photo_count: int = 0,
        has_thumbnail: bool | None = None,
        limit: int | None = None,
    ) -> list[Identity]:
        identities = [
            identity
            for identity in self.store.list_all()
            if identity.photo_count >= min_photo_count
            and (has_thumbnail is None or (identity.thumbnail_ref is not None) == has_thumbnail)
        ]
        if limit is not None:
            identities = identities[: max(0, limit)]
        return identities

    def summarize_identities(self, **filters: Any) -> list[IdentitySummary]:
        return [
            IdentitySummary(
                identity_id=identity.identity_id,
                photo_count=identity.photo_count,
                sample_count=identity.sample_count,
                thumbnail_ref=identity.thumbnail_ref,
                first_seen=identity.first_seen,
                last_seen=identity.last_seen,
            )
            for identity in self.list_identities(**filters)
        ]


class AsyncResolutionCoordinator:
    """Asyncio front for a ResolutionCoordinator.

    Blocking steps run in worker threads and still pass through the wrapped
    coordinator's critical section, so sync and async callers share one
    serialization point per store.
    """

    def __init__(self, coordinator: ResolutionCoordinator) -> None:
        self.coordinator = coordinator

    async def resolve_batch(
        self,
        observations: Sequence[Observation | Mapping[str, Any]],
        *,
        bounding_boxes: Sequence[BoundingBox | Mapping[str, Any] | None] | None = None,
        thumbnails: Sequence[bytes | None] | None = None,
    ) -> ResolutionResult:
        coordinator = self.coordinator
        prepared = coordinator.prepare_batch(observations, bounding_boxes=bounding_boxes, thumbnails=thumbnails)
        tally = _BatchTally()
        for item in prepared:
            decision, _, claimed = await asyncio.to_thread(coordinator.resolve_one, item)
            tally.record(decision)
            if claimed:
                tally.thumbnails_requested += 1
                if await asyncio.to_thread(coordinator.store_thumbnail, decision.identity_id, item.thumbnail):
                    tally.thumbnails_uploaded += 1
        coordinator.record_main_identities(prepared, tally.identity_ids)
        return coordinator.build_result(prepared, tally)

    async def merge(self, source_id: str, target_id: str) -> MergeResult:
        return await asyncio.to_thread(self.coordinator.merge, source_id, target_id)

    async def garbage_collect(self, reported_counts: Mapping[str, int]) -> set[str]:
        return await asyncio.to_thread(self.coordinator.garbage_collect, dict(reported_counts))

    async def collect_orphans(self, candidate_ids: Sequence[str]) -> set[str]:
        return await asyncio.to_thread(self.coordinator.collect_orphans, list(candidate_ids))

    async def get_identity(self, identity_id: str) -> Identity:
        return self.coordinator.get_identity(identity_id)

    async def list_identities(self, **filters: Any) -> list[Identity]:
        return self.coordinator.list_identities(**filters)


def build_coordinator(
    settings: Settings,
    *,
    photo_repository: PhotoRepository | None = None,
    thumbnail_store: ThumbnailStore | None = None,
) -> ResolutionCoordinator:
    """Wire store, thumbnail storage and photo repository from settings."""
    store_kwargs = {
        "descriptor_dimension": settings.descriptor_dimension,
        "max_samples": settings.max_samples,
        "id_prefix": settings.identity_id_prefix,
    }
    if settings.identity_store_path:
        store: IdentityStore = JsonFileIdentityStore(settings.identity_store_path, **store_kwargs)
    else:
        store = InMemoryIdentityStore(**store_kwargs)
        logger.warning("IDENTITY_STORE_PATH is not set; identities will not survive a restart.")

    if photo_repository is None:
        logger.warning(
            "No photo repository configured; merges will not rewrite photo references "
            "and orphan collection is unavailable."
        )

    if thumbnail_store is None:
        missing = settings.missing_r2_fields()
        if missing:
            logger.warning(
                "Missing R2 configuration: %s. Face thumbnails will not be stored.",
                ", ".join(missing),
            )
        else:
            try:
                thumbnail_store = R2ThumbnailStore(
                    account_id=settings.r2_account_id,
                    bucket=settings.r2_bucket,
                    access_key_id=settings.r2_access_key_id,
                    secret_access_key=settings.r2_secret_access_key,
                )
            except MediaStoreConfigError as exc:
                logger.warning("Thumbnail storage unavailable: %s", exc)

    return ResolutionCoordinator(
        store,
        threshold=settings.match_threshold,
        id_prefix=settings.identity_id_prefix,
        first_id=settings.identity_first_id,
        thumbnail_store=thumbnail_store,
        photo_repository=photo_repository,
        lock_timeout_seconds=settings.critical_section_timeout_seconds,
    )
