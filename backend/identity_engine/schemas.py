"""Pydantic models for resolution inputs and results exposed to collaborators."""

from datetime import datetime

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_validator


class BoundingBox(BaseModel):
    """Face box in source-photo pixel coordinates."""

    x: float
    y: float
    width: float = Field(..., ge=0)
    height: float = Field(..., ge=0)

    @property
    def area(self) -> float:
        return self.width * self.height


class Observation(BaseModel):
    """One detected face submitted for resolution."""

    model_config = ConfigDict(frozen=True)

    descriptor: list[float] = Field(..., min_length=1)
    source_photo_id: str = ""
    bounding_box: BoundingBox | None = None

    @field_validator("descriptor", mode="before")
    @classmethod
    def descriptor_from_array(cls, value):
        if isinstance(value, np.ndarray):
            return value.reshape(-1).tolist()
        return value


class ResolutionResult(BaseModel):
    """Identity assignment for one batch plus auxiliary side-effect counts."""

    identity_ids: list[str]
    created_ids: list[str] = Field(default_factory=list)
    matched_ids: list[str] = Field(default_factory=list)
    main_identity_id: str | None = None
    thumbnails_requested: int = 0
    thumbnails_uploaded: int = 0

    @property
    def degraded(self) -> bool:
        return self.thumbnails_uploaded < self.thumbnails_requested


class MergeResult(BaseModel):
    """Outcome of consolidating one identity into another."""

    merged_from: str
    merged_into: str
    photos_updated: int
    photo_count: int
    sample_count: int


class IdentitySummary(BaseModel):
    """Gallery row describing one identity without its descriptor data."""

    identity_id: str
    photo_count: int
    sample_count: int
    thumbnail_ref: str | None = None
    first_seen: datetime
    last_seen: datetime
