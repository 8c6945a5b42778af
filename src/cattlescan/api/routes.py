"""API route definitions."""

from __future__ import annotations

import base64
import logging
from dataclasses import asdict
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Form, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse

from cattlescan.api.schemas import (
    AnalysisResultSchema,
    AnalyzeResponse,
    AnimalRecordSchema,
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
    RecordsResponse,
    RecordStatsResponse,
    StoreErrorResponse,
)
from cattlescan.errors import AnalysisError, ModelInitError, StoreWriteError
from cattlescan.ml.classifier_handle import ClassifierState
from cattlescan.ml.model_manager import MODEL_REGISTRY

if TYPE_CHECKING:
    from cattlescan.config import Settings
    from cattlescan.ml.classifier_handle import ClassifierHandle
    from cattlescan.ml.inference import InferencePool
    from cattlescan.ml.preprocessing import PillowPreprocessor
    from cattlescan.pipeline import AnalysisPipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1")


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_classifier_handle(request: Request) -> ClassifierHandle:
    handle: ClassifierHandle = request.app.state.classifier_handle
    return handle


def _get_preprocessor(request: Request) -> PillowPreprocessor:
    preprocessor: PillowPreprocessor = request.app.state.preprocessor
    return preprocessor


def _get_pipeline(request: Request) -> AnalysisPipeline:
    pipeline: AnalysisPipeline = request.app.state.pipeline
    return pipeline


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


def _data_url(data: bytes, content_type: str | None) -> str:
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{content_type or 'application/octet-stream'};base64,{encoded}"


@router.post(
    "/analyze",
    response_model=AnalyzeResponse,
    responses={
        413: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": StoreErrorResponse},
    },
    summary="Analyze a livestock photo and save the record",
)
async def analyze(
    request: Request,
    file: UploadFile,
    farmer_id: Annotated[str | None, Form()] = None,
) -> JSONResponse:
    """Classify an uploaded image, estimate measurements, and store the result."""
    preprocessor = _get_preprocessor(request)
    pipeline = _get_pipeline(request)

    data = await file.read()
    if len(data) > preprocessor.max_file_size:
        return _error(413, "Image file too large")

    try:
        image = await _get_inference_pool(request).run(preprocessor.decode_image, data)
        result = await pipeline.analyze(image)
        record = await pipeline.record(result, _data_url(data, file.content_type), farmer_id=farmer_id)
    except ValueError as exc:
        return _error(422, str(exc))
    except ModelInitError:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Classifier is unavailable, try again later")
    except AnalysisError as exc:
        return _error(422, f"Analysis failed: {exc}")
    except StoreWriteError as exc:
        if exc.result is None:
            return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Record could not be saved")
        body = StoreErrorResponse(
            detail="Analysis complete, but the record could not be saved",
            result=AnalysisResultSchema.model_validate(asdict(exc.result)),
        )
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body.model_dump(mode="json"))
    except TimeoutError:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Server busy, try again later")

    response = AnalyzeResponse(
        result=AnalysisResultSchema.model_validate(asdict(result)),
        record=AnimalRecordSchema.model_validate(asdict(record)),
    )
    return JSONResponse(content=response.model_dump(mode="json"))


@router.get(
    "/records",
    response_model=RecordsResponse,
    summary="List stored records",
)
async def list_records(
    request: Request,
    q: Annotated[str, Query(description="Breed or species substring")] = "",
    unsynced: Annotated[bool, Query(description="Only records not yet synced")] = False,
) -> RecordsResponse:
    """Return stored records, most recent first."""
    records = await _get_pipeline(request).records(q, unsynced=unsynced)
    return RecordsResponse(records=[AnimalRecordSchema.model_validate(asdict(r)) for r in records])


@router.get(
    "/records/stats",
    response_model=RecordStatsResponse,
    summary="Record statistics",
)
async def record_stats(request: Request) -> RecordStatsResponse:
    """Return total, average confidence, distinct breeds and unsynced count."""
    stats = await _get_pipeline(request).stats()
    return RecordStatsResponse.model_validate(asdict(stats))


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    handle = _get_classifier_handle(request)
    backend = handle.backend
    return HealthResponse(
        status="ok",
        gpu=backend is not None and backend.accelerated,
        classifier_state=handle.state,
        backend=backend.name if backend is not None else None,
        models_loaded=[settings.classifier_model] if handle.state is ClassifierState.READY else [],
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return available classifiers and which one is configured."""
    settings = _get_settings(request)
    models = [
        ModelInfo(
            name=spec.name,
            task=spec.task,
            status="active" if spec.name == settings.classifier_model else "available",
            license=spec.license,
        )
        for spec in MODEL_REGISTRY.values()
    ]
    return ModelsResponse(models=models)
