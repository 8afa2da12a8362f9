"""Pydantic request/response schemas for the PhotoLabel API."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from photolabel.ml.dispatcher import ModelChoice


class PredictionRowModel(BaseModel):
    """One row of the results table."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(description="Zero-based position in the backend's ranking")
    description: str = Field(description="Class name or detected object class")
    probability: float = Field(ge=0.0, le=1.0, description="Confidence (0.0-1.0)")


class PredictResponse(BaseModel):
    """Result of a single stateless inference run."""

    model: ModelChoice
    predictions: list[PredictionRowModel]


class SessionResponse(BaseModel):
    """Current session state: active model and the rows on display."""

    model: ModelChoice
    has_photo: bool
    run_id: int = Field(description="Id of the run whose rows are shown (0 = none yet)")
    predictions_model: ModelChoice | None = Field(description="Model that produced the displayed rows")
    predictions: list[PredictionRowModel]
    updated: bool = Field(default=True, description="False if this request's run was superseded")


class SelectModelRequest(BaseModel):
    model: ModelChoice


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    choice: ModelChoice
    name: str
    task: str = Field(description="Model task: 'image_classification' or 'object_detection'")
    status: str = Field(description="Model status: 'active' or 'available'")
    loaded: bool
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
