"""Pydantic request/response schemas for the CattleScan API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class MeasurementsSchema(BaseModel):
    """Estimated body measurements in centimeters."""

    body_length: int = Field(gt=0)
    height_at_withers: int = Field(gt=0)
    chest_width: int = Field(gt=0)


class AnalysisResultSchema(BaseModel):
    """Outcome of analyzing a single image."""

    species: str
    breed: str
    confidence: int = Field(ge=0, le=100, description="Confidence percentage (0-100)")
    measurements: MeasurementsSchema


class AnimalRecordSchema(BaseModel):
    """A stored animal record."""

    id: int
    image_url: str
    species: str
    breed: str
    confidence: int = Field(ge=0, le=100)
    measurements: MeasurementsSchema
    detected_at: datetime
    synced: bool
    farmer_id: str | None = None


class AnalyzeResponse(BaseModel):
    """Response for the analyze endpoint."""

    result: AnalysisResultSchema
    record: AnimalRecordSchema


class RecordsResponse(BaseModel):
    """Records, most recent first."""

    records: list[AnimalRecordSchema]


class RecordStatsResponse(BaseModel):
    """Summary figures over all stored records."""

    total: int
    average_confidence: int
    breed_count: int
    unsynced: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    classifier_state: str
    backend: str | None = None
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    task: str = Field(description="Model task: 'image_classification'")
    status: str = Field(description="Model status: 'active' or 'available'")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str


class StoreErrorResponse(ErrorResponse):
    """Analysis succeeded but the record could not be saved."""

    result: AnalysisResultSchema
