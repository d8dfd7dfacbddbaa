"""Shared fixtures and descriptor factories for the identity engine test suite."""

from datetime import UTC, datetime, timedelta

import numpy as np
import pytest

from identity_engine import cleanup
from identity_engine.coordinator import ResolutionCoordinator
from identity_engine.identity_store import InMemoryIdentityStore
from identity_engine.photo_repository import InMemoryPhotoRepository

DIMENSION = 128


# ---------------------------------------------------------------------------
# Autouse fixture: never leak a running scheduler between tests
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _stop_scheduler():
    yield
    cleanup.shutdown_scheduler()


# ---------------------------------------------------------------------------
# Descriptor factories
# ---------------------------------------------------------------------------

def filled(value: float, dimension: int = DIMENSION) -> list[float]:
    """Return a descriptor with every component set to `value`."""
    return [float(value)] * dimension


@pytest.fixture()
def make_observation():
    """Factory fixture building observation payloads accepted by the coordinator."""

    def _factory(
        value: float,
        *,
        photo_id: str = "photo-1",
        box: tuple[float, float, float, float] | None = None,
        dimension: int = DIMENSION,
    ) -> dict:
        payload: dict = {"descriptor": filled(value, dimension), "source_photo_id": photo_id}
        if box is not None:
            x, y, width, height = box
            payload["bounding_box"] = {"x": x, "y": y, "width": width, "height": height}
        return payload

    return _factory


# ---------------------------------------------------------------------------
# Deterministic clock
# ---------------------------------------------------------------------------

class TickingClock:
    """Clock advancing one minute per call."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 18, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        value = self.current
        self.current = value + timedelta(minutes=1)
        return value


@pytest.fixture()
def clock() -> TickingClock:
    return TickingClock()


# ---------------------------------------------------------------------------
# Store / coordinator fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def store(clock) -> InMemoryIdentityStore:
    return InMemoryIdentityStore(descriptor_dimension=DIMENSION, max_samples=5, clock=clock)


@pytest.fixture()
def photo_repository() -> InMemoryPhotoRepository:
    return InMemoryPhotoRepository()


@pytest.fixture()
def coordinator(store, photo_repository) -> ResolutionCoordinator:
    return ResolutionCoordinator(store, threshold=0.30, photo_repository=photo_repository)


def mean_of(samples) -> np.ndarray:
    return np.mean(np.stack([np.asarray(sample) for sample in samples]), axis=0)
