"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Annotated, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Query, UploadFile, status

from photolabel.api.dependencies import (
    get_board,
    get_dispatcher,
    get_inference_pool,
    get_model_manager,
    get_preprocessor,
    get_session,
    get_settings,
    verify_api_key,
)
from photolabel.api.schemas import (
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
    PredictionRowModel,
    PredictResponse,
    SelectModelRequest,
    SessionResponse,
)
from photolabel.config import Settings
from photolabel.ml.dispatcher import (
    MODEL_FOR_CHOICE,
    InferenceDispatcher,
    ModelChoice,
    PhotoSession,
    PredictionBoard,
)
from photolabel.ml.inference import InferencePool
from photolabel.ml.model_manager import MODEL_REGISTRY, ModelManager
from photolabel.ml.preprocessing import ImageDecodeError, ImagePreprocessor

if TYPE_CHECKING:
    from collections.abc import Callable

    import numpy as np
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_READ_CHUNK_SIZE = 1024 * 1024

T = TypeVar("T")

SettingsDep = Annotated[Settings, Depends(get_settings)]
PoolDep = Annotated[InferencePool, Depends(get_inference_pool)]
ManagerDep = Annotated[ModelManager, Depends(get_model_manager)]
DispatcherDep = Annotated[InferenceDispatcher, Depends(get_dispatcher)]
PreprocessorDep = Annotated[ImagePreprocessor, Depends(get_preprocessor)]
BoardDep = Annotated[PredictionBoard, Depends(get_board)]
SessionDep = Annotated[PhotoSession, Depends(get_session)]

_INFERENCE_RESPONSES: dict[int | str, dict[str, object]] = {
    status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
    status.HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
    status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _read_upload(file: UploadFile, max_size: int) -> bytes:
    chunks: list[bytes] = []
    total = 0
    while chunk := await file.read(_READ_CHUNK_SIZE):
        total += len(chunk)
        if total > max_size:
            raise HTTPException(
                status_code=status.HTTP_413_CONTENT_TOO_LARGE,
                detail=f"File exceeds {max_size} bytes",
            )
        chunks.append(chunk)
    return b"".join(chunks)


async def _decode_upload(
    file: UploadFile | None,
    settings: Settings,
    pool: InferencePool,
    preprocessor: ImagePreprocessor,
) -> NDArray[np.uint8]:
    if file is None:
        logger.error("No file was uploaded.")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No file was uploaded")

    data = await _read_upload(file, settings.max_file_size)
    try:
        image = await _in_pool(pool, preprocessor.decode_image, data)
    except ImageDecodeError as exc:
        logger.warning("Rejected upload %r: %s", file.filename, exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return image


async def _in_pool(pool: InferencePool, func: Callable[..., T], *args: object) -> T:
    try:
        return await pool.run(func, *args)
    except TimeoutError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Inference capacity exhausted, retry later",
        ) from None


async def _run_and_publish(
    image: NDArray[np.uint8],
    model: ModelChoice,
    pool: InferencePool,
    dispatcher: InferenceDispatcher,
    board: PredictionBoard,
    session: PhotoSession,
) -> SessionResponse:
    ticket = board.begin(model)
    rows = await _in_pool(pool, dispatcher.run, image, model)
    updated = board.publish(ticket, rows)
    return _session_response(board, session, updated=updated)


def _session_response(board: PredictionBoard, session: PhotoSession, updated: bool = True) -> SessionResponse:
    snapshot = board.snapshot()
    return SessionResponse(
        model=session.model,
        has_photo=session.photo is not None,
        run_id=snapshot.run_id,
        predictions_model=snapshot.model,
        predictions=[PredictionRowModel.model_validate(row) for row in snapshot.rows],
        updated=updated,
    )


# ---------------------------------------------------------------------------
# Inference
# ---------------------------------------------------------------------------


@router.post(
    "/predict",
    response_model=PredictResponse,
    responses=_INFERENCE_RESPONSES,
    summary="Run a model on an uploaded image",
)
async def predict(
    file: UploadFile,
    settings: SettingsDep,
    pool: PoolDep,
    dispatcher: DispatcherDep,
    preprocessor: PreprocessorDep,
    model: Annotated[ModelChoice | None, Query()] = None,
) -> PredictResponse:
    """Classify or detect objects in an image without touching the session."""
    choice = model or settings.default_model
    image = await _decode_upload(file, settings, pool, preprocessor)
    rows = await _in_pool(pool, dispatcher.run, image, choice)
    return PredictResponse(
        model=choice,
        predictions=[PredictionRowModel.model_validate(row) for row in rows],
    )


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@router.get("/session", response_model=SessionResponse, summary="Current model and predictions")
async def get_session_state(board: BoardDep, session: SessionDep) -> SessionResponse:
    return _session_response(board, session)


@router.put(
    "/session/photo",
    response_model=SessionResponse,
    responses=_INFERENCE_RESPONSES,
    summary="Upload a new photo and run the active model on it",
)
async def upload_photo(
    settings: SettingsDep,
    pool: PoolDep,
    dispatcher: DispatcherDep,
    preprocessor: PreprocessorDep,
    board: BoardDep,
    session: SessionDep,
    file: UploadFile | None = None,
) -> SessionResponse:
    """Replace the session photo and display fresh predictions.

    A missing or undecodable upload leaves the previous photo and rows as
    they were.
    """
    image = await _decode_upload(file, settings, pool, preprocessor)
    model = session.replace_photo(image)
    return await _run_and_publish(image, model, pool, dispatcher, board, session)


@router.put(
    "/session/model",
    response_model=SessionResponse,
    responses=_INFERENCE_RESPONSES,
    summary="Switch the active model",
)
async def select_model(
    body: SelectModelRequest,
    pool: PoolDep,
    dispatcher: DispatcherDep,
    board: BoardDep,
    session: SessionDep,
) -> SessionResponse:
    """Activate a model and re-run it on the current photo, if there is one."""
    photo = session.select_model(body.model)
    if photo is None:
        logger.info("Model switched to %s; no photo to run yet", body.model)
        return _session_response(board, session)
    return await _run_and_publish(photo, body.model, pool, dispatcher, board, session)


# ---------------------------------------------------------------------------
# Service info
# ---------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(settings: SettingsDep, pool: PoolDep, manager: ManagerDep) -> HealthResponse:
    """Return service health status."""
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=manager.get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(manager: ManagerDep, dispatcher: DispatcherDep, session: SessionDep) -> ModelsResponse:
    """Return the selectable models and whether each is active or loaded."""
    loaded = set(manager.get_loaded_models())
    active = session.model

    models: list[ModelInfo] = []
    for choice in dispatcher.choices:
        spec = MODEL_REGISTRY[MODEL_FOR_CHOICE[choice]]
        models.append(
            ModelInfo(
                choice=choice,
                name=spec.name,
                task=spec.task,
                status="active" if choice == active else "available",
                loaded=spec.name in loaded,
                license=spec.license,
            )
        )
    return ModelsResponse(models=models)
