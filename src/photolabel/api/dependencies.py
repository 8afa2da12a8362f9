"""Request dependencies: API key check and accessors for app state."""

from __future__ import annotations

import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

if TYPE_CHECKING:
    from photolabel.config import Settings
    from photolabel.ml.dispatcher import InferenceDispatcher, PhotoSession, PredictionBoard
    from photolabel.ml.inference import InferencePool
    from photolabel.ml.model_manager import ModelManager
    from photolabel.ml.preprocessing import ImagePreprocessor

_bearer_scheme = HTTPBearer(auto_error=False)


def get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def get_model_manager(request: Request) -> ModelManager:
    manager: ModelManager = request.app.state.model_manager
    return manager


def get_dispatcher(request: Request) -> InferenceDispatcher:
    dispatcher: InferenceDispatcher = request.app.state.dispatcher
    return dispatcher


def get_preprocessor(request: Request) -> ImagePreprocessor:
    preprocessor: ImagePreprocessor = request.app.state.preprocessor
    return preprocessor


def get_board(request: Request) -> PredictionBoard:
    board: PredictionBoard = request.app.state.board
    return board


def get_session(request: Request) -> PhotoSession:
    session: PhotoSession = request.app.state.session
    return session


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Check the Bearer token against the configured API key.

    With PHOTOLABEL_API_KEY unset every request passes; otherwise requests
    must send 'Authorization: Bearer <key>'.
    """
    api_key = get_settings(request).api_key
    if api_key is None:
        return

    if credentials is None or not secrets.compare_digest(credentials.credentials.encode(), api_key.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )
