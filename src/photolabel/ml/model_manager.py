"""ONNX model registry and session lifecycle.

Each registry entry names a file in a HuggingFace repo. Weights are fetched
into ``models_dir`` on first use, loaded into an ``InferenceSession``, and
dropped again once they have been idle for longer than ``model_ttl``.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import GraphOptimizationLevel, InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

if TYPE_CHECKING:
    from photolabel.config import Settings

logger = logging.getLogger(__name__)

Provider = str | tuple[str, dict[str, object]]


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


class ModelTask(StrEnum):
    IMAGE_CLASSIFICATION = "image_classification"
    OBJECT_DETECTION = "object_detection"


@dataclass(frozen=True)
class ModelSpec:
    """Where a model's weights live and what it does."""

    name: str
    repo_id: str
    filename: str
    subfolder: str | None
    task: ModelTask
    license: str

    def local_path(self, models_dir: Path) -> Path:
        """Path the weights occupy once downloaded into ``models_dir``."""
        base = models_dir / self.subfolder if self.subfolder else models_dir
        return base / self.filename


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "mobilenet_v2": ModelSpec(
        name="mobilenet_v2",
        repo_id="photolabel/photolabel-models",
        filename="mobilenetv2-12.onnx",
        subfolder="classification",
        task=ModelTask.IMAGE_CLASSIFICATION,
        license="Apache-2.0",
    ),
    "ssd_mobilenet_v2_coco": ModelSpec(
        name="ssd_mobilenet_v2_coco",
        repo_id="photolabel/photolabel-models",
        filename="ssd_mobilenet_v2_coco.onnx",
        subfolder="detection",
        task=ModelTask.OBJECT_DETECTION,
        license="Apache-2.0",
    ),
}


def lookup_model(model_name: str) -> ModelSpec:
    try:
        return MODEL_REGISTRY[model_name]
    except KeyError:
        raise KeyError(f"Unknown model: {model_name}") from None


# ---------------------------------------------------------------------------
# ONNX Runtime configuration
# ---------------------------------------------------------------------------


def execution_providers(settings: Settings) -> list[Provider]:
    """Execution providers for the configured device, CPU always last."""
    if settings.device == "cuda":
        cuda_options: dict[str, object] = {
            "device_id": 0,
            "gpu_mem_limit": settings.gpu_mem_limit,
            "arena_extend_strategy": "kSameAsRequested",
        }
        return [("CUDAExecutionProvider", cuda_options), "CPUExecutionProvider"]
    if settings.device == "openvino":
        return [("OpenVINOExecutionProvider", {"device_type": "CPU"}), "CPUExecutionProvider"]
    return ["CPUExecutionProvider"]


def session_options(settings: Settings) -> SessionOptions:
    opts = SessionOptions()
    opts.intra_op_num_threads = settings.intra_op_threads
    opts.inter_op_num_threads = settings.inter_op_threads
    opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
    opts.enable_mem_pattern = True
    opts.enable_mem_reuse = True
    if settings.device == "openvino":
        # OpenVINO optimizes the graph itself.
        opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
    return opts


# ---------------------------------------------------------------------------
# Session management
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Lifecycle of the ONNX sessions the backends run on."""

    def ensure_downloaded(self, model_name: str) -> Path:
        """Fetch the model's weights if needed and return their path."""
        ...

    def get_session(self, model_name: str) -> InferenceSession:
        """Return the model's session, loading it on first use."""
        ...

    def get_loaded_models(self) -> list[str]: ...

    def unload_idle_models(self) -> list[str]:
        """Drop sessions idle for longer than the TTL and return their names."""
        ...

    def shutdown(self) -> None: ...


@dataclass
class _LoadedModel:
    session: InferenceSession
    last_used: float


class OnnxModelManager:
    """Loads each registry model at most once and evicts it when idle.

    Sessions are created lazily. Concurrent first requests for the same model
    wait on a per-model lock, so the weights are downloaded and loaded a single
    time; requests for other models are not blocked meanwhile.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)
        self._providers = execution_providers(settings)
        self._options = session_options(settings)

        self._lock = threading.Lock()
        self._loaded: dict[str, _LoadedModel] = {}
        self._load_locks: dict[str, threading.Lock] = {}

    def ensure_downloaded(self, model_name: str) -> Path:
        spec = lookup_model(model_name)
        local = spec.local_path(self._models_dir)
        if local.is_file():
            return local

        path = Path(
            hf_hub_download(
                repo_id=self._settings.models_repo or spec.repo_id,
                filename=spec.filename,
                subfolder=spec.subfolder,
                local_dir=str(self._models_dir),
            )
        )
        logger.info("Downloaded %s to %s", model_name, path)
        return path

    def get_session(self, model_name: str) -> InferenceSession:
        loaded = self._touch(model_name)
        if loaded is not None:
            return loaded.session

        with self._load_lock(model_name):
            loaded = self._touch(model_name)
            if loaded is not None:
                return loaded.session

            started = time.monotonic()
            path = self.ensure_downloaded(model_name)
            session = InferenceSession(str(path), sess_options=self._options, providers=self._providers)
            with self._lock:
                self._loaded[model_name] = _LoadedModel(session, last_used=time.monotonic())
            logger.info("Loaded %s in %.2fs", model_name, time.monotonic() - started)
            return session

    def get_loaded_models(self) -> list[str]:
        with self._lock:
            return list(self._loaded)

    def unload_idle_models(self) -> list[str]:
        ttl = self._settings.model_ttl
        if ttl == 0:
            return []

        cutoff = time.monotonic() - ttl
        with self._lock:
            idle = [name for name, loaded in self._loaded.items() if loaded.last_used < cutoff]
            for name in idle:
                del self._loaded[name]
        for name in idle:
            logger.info("Unloaded idle model %s", name)
        return idle

    def shutdown(self) -> None:
        with self._lock:
            count = len(self._loaded)
            self._loaded.clear()
        logger.info("Released %d model session(s)", count)

    def _touch(self, model_name: str) -> _LoadedModel | None:
        with self._lock:
            loaded = self._loaded.get(model_name)
            if loaded is not None:
                loaded.last_used = time.monotonic()
            return loaded

    def _load_lock(self, model_name: str) -> threading.Lock:
        lookup_model(model_name)
        with self._lock:
            return self._load_locks.setdefault(model_name, threading.Lock())
