"""API route definitions."""

from __future__ import annotations

import logging
from functools import partial
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse

from visionrank.api.dependencies import (
    get_app_settings,
    get_inference_pool,
    get_model_manager,
    get_search_client,
    verify_api_key,
)
from visionrank.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    PredictionItem,
)
from visionrank.errors import (
    DecodeError,
    InferenceError,
    ModelLoadError,
    PipelineError,
    PipelineTimeoutError,
    SearchError,
    ShapeMismatchError,
    UnsupportedFormatError,
    VocabularyMismatchError,
)
from visionrank.ml.pipeline import run_pipeline
from visionrank.ml.preprocessing import supported_mimetypes

if TYPE_CHECKING:
    from visionrank.config import Settings
    from visionrank.ml.model_manager import LoadedModel, ModelManager
    from visionrank.search import SearchResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_ERROR_STATUS: dict[type[PipelineError], int] = {
    DecodeError: status.HTTP_400_BAD_REQUEST,
    UnsupportedFormatError: status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
    ShapeMismatchError: 422,
    ModelLoadError: status.HTTP_503_SERVICE_UNAVAILABLE,
    InferenceError: status.HTTP_500_INTERNAL_SERVER_ERROR,
    VocabularyMismatchError: status.HTTP_500_INTERNAL_SERVER_ERROR,
    PipelineTimeoutError: status.HTTP_504_GATEWAY_TIMEOUT,
}


async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    """Render a PipelineError as ``{detail, stage}`` with a matching status code."""
    status_code = _ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    body = ErrorResponse(detail=exc.message, stage=None if exc.stage is None else str(exc.stage))
    return JSONResponse(status_code=status_code, content=body.model_dump())


def _model_info(settings: Settings, manager: ModelManager, model: LoadedModel | None) -> ModelInfo:
    info = ModelInfo(
        name=manager.model_name,
        status="not_loaded",
        canonical_size=[settings.input_width, settings.input_height],
        supported_mimetypes=supported_mimetypes(),
    )
    if model is not None:
        info.status = "loaded"
        info.input_name = model.input_name
        info.input_shape = list(model.input_shape)
        info.input_type = model.input_type
        info.num_labels = len(model.labels)
    return info


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        413: {"model": ErrorResponse},
        status.HTTP_415_UNSUPPORTED_MEDIA_TYPE: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
        status.HTTP_504_GATEWAY_TIMEOUT: {"model": ErrorResponse},
    },
    summary="Classify an image and look up its top label",
)
async def classify_image(
    request: Request,
    file: UploadFile,
    top_k: Annotated[int | None, Query(ge=1, le=100)] = None,
    search: bool = True,
) -> ClassifyImageResponse:
    """Classify an uploaded image and return its top-K labels."""
    settings = get_app_settings(request)

    data = await file.read(settings.max_file_size + 1)
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Uploaded file is empty")
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=413,
            detail=f"Uploaded file exceeds {settings.max_file_size} bytes",
        )

    mimetype = file.content_type or "application/octet-stream"
    job = partial(
        run_pipeline,
        data,
        mimetype,
        top_k or settings.top_k,
        settings=settings,
        model_manager=get_model_manager(request),
    )
    try:
        predictions = await get_inference_pool(request).run(job)
    except TimeoutError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Server busy, try again later",
        ) from None

    search_results: list[SearchResult] | None = None
    search_error: str | None = None
    client = get_search_client(request)
    if search and client.enabled:
        term = predictions[0].label
        try:
            search_results = await client.search(term)
        except SearchError as exc:
            logger.warning("Search for %r failed: %s", term, exc)
            search_error = str(exc)

    return ClassifyImageResponse(
        mimetype=mimetype,
        predictions=[PredictionItem(label=p.label, probability=p.probability) for p in predictions],
        search_results=search_results,
        search_error=search_error,
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = get_app_settings(request)
    pool = get_inference_pool(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=get_model_manager(request).get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelInfo,
    summary="Describe the configured classifier",
)
async def describe_model(request: Request) -> ModelInfo:
    """Return the configured model and, if loaded, its input contract."""
    manager = get_model_manager(request)
    return _model_info(get_app_settings(request), manager, manager.loaded_model)


@router.post(
    "/models/reload",
    response_model=ModelInfo,
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse}},
    summary="Reload the classifier from its configured location",
)
async def reload_model(request: Request) -> ModelInfo:
    """Drop the cached model and load it again."""
    manager = get_model_manager(request)
    try:
        model = await get_inference_pool(request).run(manager.reload)
    except TimeoutError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Server busy, try again later",
        ) from None
    logger.info("Reloaded model %s", model.name)
    return _model_info(get_app_settings(request), manager, model)
