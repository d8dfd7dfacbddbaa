"""Tests for ResolutionCoordinator batch resolution, thumbnails and queries."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from conftest import DIMENSION, filled
from identity_engine.coordinator import AsyncResolutionCoordinator, ResolutionCoordinator, build_coordinator
from identity_engine.errors import InternalError, NotFoundError, ValidationError
from identity_engine.identity_store import InMemoryIdentityStore, JsonFileIdentityStore
from identity_engine.schemas import Observation
from identity_engine.storage import MediaStoreError


class TestResolveBatch:
    def test_first_face_creates_person_1(self, coordinator, make_observation):
        result = coordinator.resolve_batch([make_observation(0.5)])

        assert result.identity_ids == ["person_1"]
        assert result.created_ids == ["person_1"]
        assert result.matched_ids == []
        assert result.main_identity_id == "person_1"
        assert result.degraded is False

    def test_distinct_faces_in_one_batch_get_distinct_ids(self, coordinator, make_observation):
        observations = [make_observation(value) for value in (0.1, 0.2, 0.3, 0.4, 0.5)]

        result = coordinator.resolve_batch(observations)

        assert result.identity_ids == ["person_1", "person_2", "person_3", "person_4", "person_5"]
        assert len(coordinator.list_identities()) == 5

    def test_near_duplicate_matches_existing_identity(self, coordinator, make_observation):
        coordinator.resolve_batch([make_observation(0.5, photo_id="photo-1")])

        result = coordinator.resolve_batch([make_observation(0.51, photo_id="photo-2")])

        assert result.identity_ids == ["person_1"]
        assert result.matched_ids == ["person_1"]
        identity = coordinator.get_identity("person_1")
        assert identity.photo_count == 2
        assert identity.sample_count == 2
        assert np.allclose(identity.average, 0.505)

    def test_later_face_in_batch_sees_earlier_commit(self, coordinator, make_observation):
        result = coordinator.resolve_batch([make_observation(0.5), make_observation(0.505)])

        assert result.identity_ids == ["person_1", "person_1"]
        assert result.created_ids == ["person_1"]
        assert result.matched_ids == ["person_1"]
        assert coordinator.get_identity("person_1").photo_count == 2

    def test_accepts_observation_models_and_arrays(self, coordinator):
        observation = Observation(descriptor=np.full(DIMENSION, 0.5), source_photo_id="photo-1")

        result = coordinator.resolve_batch([observation])

        assert result.identity_ids == ["person_1"]

    def test_empty_batch(self, coordinator):
        result = coordinator.resolve_batch([])

        assert result.identity_ids == []
        assert result.main_identity_id is None

    def test_main_identity_is_largest_face(self, coordinator, make_observation):
        observations = [
            make_observation(0.1, box=(0, 0, 10, 10)),
            make_observation(0.5, box=(20, 20, 40, 30)),
            make_observation(0.9, box=(80, 80, 5, 5)),
        ]

        result = coordinator.resolve_batch(observations)

        assert result.main_identity_id == "person_2"

    def test_separate_bounding_boxes_override_observation_boxes(self, coordinator, make_observation):
        observations = [make_observation(0.1), make_observation(0.9)]
        boxes = [{"x": 0, "y": 0, "width": 5, "height": 5}, {"x": 0, "y": 0, "width": 50, "height": 50}]

        result = coordinator.resolve_batch(observations, bounding_boxes=boxes)

        assert result.main_identity_id == "person_2"

    def test_custom_prefix_and_first_id(self, make_observation):
        coordinator = ResolutionCoordinator(
            InMemoryIdentityStore(descriptor_dimension=DIMENSION, id_prefix="face_"),
            id_prefix="face_",
            first_id=0,
        )

        result = coordinator.resolve_batch([make_observation(0.1), make_observation(0.9)])

        assert result.identity_ids == ["face_0", "face_1"]


class TestValidation:
    def test_wrong_dimension_fails_whole_batch(self, coordinator, make_observation):
        observations = [make_observation(0.1), make_observation(0.5, dimension=DIMENSION - 1)]

        with pytest.raises(ValidationError, match="Observation 1"):
            coordinator.resolve_batch(observations)

        assert coordinator.list_identities() == []

    def test_non_finite_descriptor_fails_closed(self, coordinator):
        observations = [{"descriptor": [float("inf")] * DIMENSION}]

        with pytest.raises(ValidationError):
            coordinator.resolve_batch(observations)

        assert coordinator.list_identities() == []

    def test_missing_descriptor_is_validation_error(self, coordinator):
        with pytest.raises(ValidationError):
            coordinator.resolve_batch([{"source_photo_id": "photo-1"}])

    def test_negative_box_is_validation_error(self, coordinator, make_observation):
        with pytest.raises(ValidationError):
            coordinator.resolve_batch([make_observation(0.5, box=(0, 0, -1, 10))])

    def test_mismatched_box_count(self, coordinator, make_observation):
        with pytest.raises(ValidationError, match="Face data mismatch"):
            coordinator.resolve_batch([make_observation(0.5)], bounding_boxes=[None, None])

    def test_mismatched_thumbnail_count(self, coordinator, make_observation):
        with pytest.raises(ValidationError, match="Face data mismatch"):
            coordinator.resolve_batch([make_observation(0.5)], thumbnails=[])


class TestThumbnails:
    def _coordinator(self, store, thumbnail_store):
        return ResolutionCoordinator(store, thumbnail_store=thumbnail_store)

    def test_new_identity_gets_thumbnail(self, store, make_observation):
        thumbnail_store = MagicMock()
        thumbnail_store.upload_identity_thumbnail.return_value = "identities/person_1/thumbnail.jpg"
        coordinator = self._coordinator(store, thumbnail_store)

        result = coordinator.resolve_batch([make_observation(0.5)], thumbnails=[b"jpeg"])

        thumbnail_store.upload_identity_thumbnail.assert_called_once_with("person_1", b"jpeg")
        assert result.thumbnails_requested == 1
        assert result.thumbnails_uploaded == 1
        assert store.get("person_1").thumbnail_ref == "identities/person_1/thumbnail.jpg"

    def test_identity_with_thumbnail_is_not_uploaded_again(self, store, make_observation):
        thumbnail_store = MagicMock()
        thumbnail_store.upload_identity_thumbnail.return_value = "thumb-1"
        coordinator = self._coordinator(store, thumbnail_store)
        coordinator.resolve_batch([make_observation(0.5)], thumbnails=[b"first"])

        result = coordinator.resolve_batch([make_observation(0.5)], thumbnails=[b"second"])

        assert thumbnail_store.upload_identity_thumbnail.call_count == 1
        assert result.thumbnails_requested == 0
        assert store.get("person_1").thumbnail_ref == "thumb-1"

    def test_failed_upload_degrades_but_keeps_identity(self, store, make_observation, caplog):
        thumbnail_store = MagicMock()
        thumbnail_store.upload_identity_thumbnail.side_effect = MediaStoreError("R2 down")
        coordinator = self._coordinator(store, thumbnail_store)

        with caplog.at_level(logging.WARNING, logger="identity_engine.coordinator"):
            result = coordinator.resolve_batch([make_observation(0.5)], thumbnails=[b"jpeg"])

        assert result.identity_ids == ["person_1"]
        assert result.thumbnails_requested == 1
        assert result.thumbnails_uploaded == 0
        assert result.degraded is True
        assert store.get("person_1").photo_count == 1
        assert store.get("person_1").thumbnail_ref is None
        assert "resolve.thumbnail_failed identity_id=person_1" in caplog.text

    def test_missing_thumbnail_store_degrades(self, store, make_observation):
        coordinator = ResolutionCoordinator(store)

        result = coordinator.resolve_batch([make_observation(0.5)], thumbnails=[b"jpeg"])

        assert result.degraded is True
        assert store.get("person_1") is not None

    def test_empty_thumbnail_is_not_requested(self, store, make_observation):
        thumbnail_store = MagicMock()
        coordinator = self._coordinator(store, thumbnail_store)

        result = coordinator.resolve_batch([make_observation(0.5)], thumbnails=[b""])

        thumbnail_store.upload_identity_thumbnail.assert_not_called()
        assert result.thumbnails_requested == 0

    def test_concurrent_batches_upload_one_thumbnail(self, store, make_observation):
        store.create_identity("person_1", filled(0.5), "photo-0")
        upload_started = threading.Event()
        release_upload = threading.Event()
        uploads = []

        def slow_upload(identity_id, payload):
            uploads.append(payload)
            upload_started.set()
            release_upload.wait(timeout=5)
            return f"identities/{identity_id}/thumbnail.jpg"

        thumbnail_store = MagicMock()
        thumbnail_store.upload_identity_thumbnail.side_effect = slow_upload
        coordinator = self._coordinator(store, thumbnail_store)

        with ThreadPoolExecutor(max_workers=1) as pool:
            first = pool.submit(
                coordinator.resolve_batch,
                [make_observation(0.5, photo_id="photo-1")],
                thumbnails=[b"first"],
            )
            try:
                assert upload_started.wait(timeout=5)
                second = coordinator.resolve_batch([make_observation(0.5, photo_id="photo-2")], thumbnails=[b"second"])
            finally:
                release_upload.set()
            first_result = first.result(timeout=5)

        assert uploads == [b"first"]
        assert first_result.thumbnails_requested == 1
        assert first_result.thumbnails_uploaded == 1
        assert second.thumbnails_requested == 0
        assert second.degraded is False
        assert store.get("person_1").thumbnail_ref == "identities/person_1/thumbnail.jpg"
        thumbnail_store.delete_object.assert_not_called()

    def test_upload_losing_to_existing_thumbnail_is_not_counted(self, store, make_observation):
        store.create_identity("person_1", filled(0.5), "photo-0")

        def upload_after_other_writer(identity_id, payload):
            store.attach_thumbnail(identity_id, "identities/person_1/other.jpg")
            return f"identities/{identity_id}/thumbnail.jpg"

        thumbnail_store = MagicMock()
        thumbnail_store.upload_identity_thumbnail.side_effect = upload_after_other_writer
        coordinator = self._coordinator(store, thumbnail_store)

        result = coordinator.resolve_batch([make_observation(0.5)], thumbnails=[b"jpeg"])

        assert result.thumbnails_requested == 1
        assert result.thumbnails_uploaded == 0
        assert result.degraded is True
        assert store.get("person_1").thumbnail_ref == "identities/person_1/other.jpg"
        thumbnail_store.delete_object.assert_called_once_with("identities/person_1/thumbnail.jpg")

    def test_failed_upload_releases_claim_for_next_batch(self, store, make_observation):
        thumbnail_store = MagicMock()
        thumbnail_store.upload_identity_thumbnail.side_effect = [MediaStoreError("R2 down"), "thumb-1"]
        coordinator = self._coordinator(store, thumbnail_store)

        first = coordinator.resolve_batch([make_observation(0.5)], thumbnails=[b"first"])
        second = coordinator.resolve_batch([make_observation(0.5)], thumbnails=[b"second"])

        assert first.thumbnails_uploaded == 0
        assert second.thumbnails_requested == 1
        assert second.thumbnails_uploaded == 1
        assert store.get("person_1").thumbnail_ref == "thumb-1"


class TestPhotoReferences:
    def test_resolve_records_faces_and_main_identity(self, coordinator, photo_repository, make_observation):
        coordinator.resolve_batch(
            [
                make_observation(0.1, photo_id="photo-1", box=(0, 0, 10, 10)),
                make_observation(0.9, photo_id="photo-1", box=(0, 0, 40, 40)),
            ]
        )

        photo = photo_repository.get_photo("photo-1")
        assert photo.identity_ids == ["person_1", "person_2"]
        assert photo.main_identity_id == "person_2"
        assert photo_repository.count_photos_referencing("person_1") == 1

    def test_faces_without_photo_id_are_not_recorded(self, coordinator, photo_repository):
        coordinator.resolve_batch([{"descriptor": [0.5] * DIMENSION}])

        assert photo_repository.count_photos_referencing("person_1") == 0

    async def test_async_resolve_records_references(self, coordinator, photo_repository, make_observation):
        front = AsyncResolutionCoordinator(coordinator)

        await front.resolve_batch([make_observation(0.5, photo_id="photo-7")])

        assert photo_repository.get_photo("photo-7").identity_ids == ["person_1"]
        assert coordinator.collect_orphans(["person_1"]) == set()

    def test_repository_without_writer_methods_is_left_alone(self, store, make_observation):
        repository = SimpleNamespace(
            rewrite_identity_references=MagicMock(return_value=0),
            count_photos_referencing=MagicMock(return_value=1),
        )
        coordinator = ResolutionCoordinator(store, photo_repository=repository)

        result = coordinator.resolve_batch([make_observation(0.5)])

        assert result.identity_ids == ["person_1"]
        assert coordinator.collect_orphans(["person_1"]) == set()


class TestCriticalSection:
    def test_lock_timeout_raises_internal_error(self, store, make_observation):
        coordinator = ResolutionCoordinator(store, lock_timeout_seconds=0.05)
        coordinator._lock.acquire()
        try:
            with pytest.raises(InternalError, match="resolve"):
                coordinator.resolve_batch([make_observation(0.5)])
        finally:
            coordinator._lock.release()

        assert store.get("person_1") is None

    def test_failed_commit_leaves_no_partial_identity(self, coordinator, make_observation):
        with patch.object(
            InMemoryIdentityStore,
            "_persist",
            side_effect=OSError("disk full"),
        ):
            with pytest.raises(InternalError):
                coordinator.resolve_batch([make_observation(0.5)])

        assert coordinator.list_identities() == []


class TestQueries:
    def test_get_identity_unknown(self, coordinator):
        with pytest.raises(NotFoundError) as excinfo:
            coordinator.get_identity("person_42")
        assert excinfo.value.code == "NOT_FOUND"
        assert str(excinfo.value) == "Identity 'person_42' not found"

    def test_list_identities_filters(self, store, coordinator, make_observation):
        coordinator.resolve_batch([make_observation(0.1), make_observation(0.5), make_observation(0.9)])
        coordinator.resolve_batch([make_observation(0.5)])
        store.attach_thumbnail("person_3", "thumb-3")

        assert [item.identity_id for item in coordinator.list_identities(min_photo_count=2)] == ["person_2"]
        assert [item.identity_id for item in coordinator.list_identities(has_thumbnail=True)] == ["person_3"]
        assert [item.identity_id for item in coordinator.list_identities(has_thumbnail=False)] == [
            "person_1",
            "person_2",
        ]
        assert [item.identity_id for item in coordinator.list_identities(limit=1)] == ["person_1"]

    def test_summaries_have_no_descriptor_data(self, coordinator, make_observation):
        coordinator.resolve_batch([make_observation(0.5)])

        summaries = coordinator.summarize_identities()

        assert len(summaries) == 1
        payload = summaries[0].model_dump()
        assert payload["identity_id"] == "person_1"
        assert payload["photo_count"] == 1
        assert payload["sample_count"] == 1
        assert "average" not in payload


def _settings(**overrides):
    values = {
        "match_threshold": 0.30,
        "max_samples": 5,
        "descriptor_dimension": DIMENSION,
        "identity_id_prefix": "person_",
        "identity_first_id": 1,
        "identity_store_path": "",
        "critical_section_timeout_seconds": 5.0,
        "orphan_sweep_enabled": False,
        "orphan_sweep_interval_hours": 24,
        "r2_account_id": "",
        "r2_bucket": "",
        "r2_access_key_id": "",
        "r2_secret_access_key": "",
    }
    values.update(overrides)
    settings = SimpleNamespace(**values)
    settings.missing_r2_fields = lambda: [
        name
        for name, value in (
            ("R2_ACCOUNT_ID", settings.r2_account_id),
            ("R2_BUCKET", settings.r2_bucket),
            ("R2_ACCESS_KEY_ID", settings.r2_access_key_id),
            ("R2_SECRET_ACCESS_KEY", settings.r2_secret_access_key),
        )
        if not value
    ]
    return settings


class TestBuildCoordinator:
    def test_in_memory_without_r2(self, caplog):
        with caplog.at_level(logging.WARNING, logger="identity_engine.coordinator"):
            coordinator = build_coordinator(_settings())

        assert isinstance(coordinator.store, InMemoryIdentityStore)
        assert coordinator.thumbnail_store is None
        assert coordinator.photo_repository is None
        assert coordinator.lock_timeout_seconds == 5.0
        assert "Missing R2 configuration" in caplog.text

    def test_json_store_and_r2_from_settings(self, tmp_path):
        settings = _settings(
            identity_store_path=str(tmp_path / "identities.json"),
            r2_account_id="acct",
            r2_bucket="faces",
            r2_access_key_id="key",
            r2_secret_access_key="secret",
        )

        with patch("identity_engine.coordinator.R2ThumbnailStore") as store_cls:
            coordinator = build_coordinator(settings)

        assert isinstance(coordinator.store, JsonFileIdentityStore)
        store_cls.assert_called_once_with(
            account_id="acct",
            bucket="faces",
            access_key_id="key",
            secret_access_key="secret",
        )
        assert coordinator.thumbnail_store is store_cls.return_value

    def test_explicit_collaborators_are_used(self):
        thumbnail_store = MagicMock()
        repository = MagicMock()

        coordinator = build_coordinator(_settings(), photo_repository=repository, thumbnail_store=thumbnail_store)

        assert coordinator.thumbnail_store is thumbnail_store
        assert coordinator.photo_repository is repository
        assert coordinator.threshold == 0.30
        assert coordinator.store.get("person_1") is None
