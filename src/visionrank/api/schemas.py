"""Pydantic request/response schemas for the VisionRank API."""

from __future__ import annotations

from pydantic import BaseModel, Field

from visionrank.search import SearchResult


class PredictionItem(BaseModel):
    """A single ranked label with its model score."""

    label: str
    probability: float


class ClassifyImageResponse(BaseModel):
    """Response for the image classification endpoint."""

    mimetype: str
    predictions: list[PredictionItem] = Field(description="Top-K labels, most probable first")
    search_results: list[SearchResult] | None = Field(
        default=None,
        description="Web results for the top label; null when search is disabled or skipped",
    )
    search_error: str | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """The configured classifier and, once loaded, its input contract."""

    name: str
    status: str = Field(description="Model status: 'loaded' or 'not_loaded'")
    input_name: str | None = None
    input_shape: list[int | str | None] | None = None
    input_type: str | None = None
    num_labels: int | None = None
    canonical_size: list[int] = Field(description="[width, height] every upload is resized to")
    supported_mimetypes: list[str]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
    stage: str | None = None
