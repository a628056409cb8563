"""Model provider: locate an ONNX detection model and build its session.

The model file comes either from a local path or from a HuggingFace Hub
repository, both named in :class:`~landmarkx.config.Settings`. Sessions are
not cached here: every ``fetch_model`` call performs a fresh round trip so a
failed attempt leaves nothing behind.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from huggingface_hub.errors import HfHubHTTPError
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import (
    ExecutionMode,
    Fail,
    InvalidArgument,
    InvalidGraph,
    InvalidProtobuf,
    NoSuchFile,
)

from landmarkx.errors import ModelLoadError

if TYPE_CHECKING:
    from landmarkx.config import Settings

logger = logging.getLogger(__name__)

# Raised by the onnxruntime bindings; none of them derive from RuntimeError.
SESSION_ERRORS: tuple[type[Exception], ...] = (Fail, InvalidArgument, InvalidGraph, InvalidProtobuf, NoSuchFile)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelProvider(Protocol):
    """Protocol for acquiring a ready-to-run model artifact."""

    async def fetch_model(self, model_name: str) -> object:
        """Locate and load a model, returning the runnable artifact."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a supported detection model."""

    name: str
    filename: str
    license: str


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "blazeface_front": ModelSpec(
        name="blazeface_front",
        filename="blazeface_front_128.onnx",
        license="Apache-2.0",
    ),
}


def get_model_spec(model_name: str) -> ModelSpec:
    try:
        return MODEL_REGISTRY[model_name]
    except KeyError:
        raise KeyError(f"Unknown model: {model_name}") from None


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class HubModelProvider:
    """Resolves a model file (local or HuggingFace Hub) and opens a CPU inference session."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._session_options = self._build_session_options()

    async def fetch_model(self, model_name: str) -> InferenceSession:
        """Resolve ``model_name`` to a file and return a new InferenceSession for it.

        Raises:
            KeyError: If the model is not in the registry.
            ModelLoadError: If no source is configured, the download fails,
                or onnxruntime cannot open the file.
        """
        spec = get_model_spec(model_name)
        return await asyncio.to_thread(self._fetch_blocking, spec)

    def resolve_model_path(self, spec: ModelSpec) -> Path:
        """Return a local path for ``spec``, downloading it from the Hub if needed.

        ``settings.model_path`` wins over ``settings.model_repo_id``. The Hub
        filename defaults to the registry filename.
        """
        if self._settings.model_path:
            path = Path(self._settings.model_path)
            if not path.is_file():
                raise ModelLoadError(f"Model file for '{spec.name}' not found at {path}")
            return path

        repo_id = self._settings.model_repo_id
        if not repo_id:
            raise ModelLoadError(
                f"No source configured for model '{spec.name}'; set LANDMARKX_MODEL_PATH or LANDMARKX_MODEL_REPO_ID"
            )

        self._models_dir.mkdir(parents=True, exist_ok=True)
        downloaded = Path(
            hf_hub_download(
                repo_id=repo_id,
                filename=self._settings.model_filename or spec.filename,
                revision=self._settings.model_revision,
                local_dir=str(self._models_dir),
            )
        )
        logger.info("Downloaded %s from %s to %s", spec.name, repo_id, downloaded)
        return downloaded

    # -- Internal -----------------------------------------------------------

    def _fetch_blocking(self, spec: ModelSpec) -> InferenceSession:
        try:
            model_path = self.resolve_model_path(spec)
            session = InferenceSession(
                str(model_path),
                sess_options=self._session_options,
                providers=["CPUExecutionProvider"],
            )
        except ModelLoadError:
            raise
        except (HfHubHTTPError, OSError, RuntimeError, ValueError, *SESSION_ERRORS) as exc:
            raise ModelLoadError(f"Failed to load model '{spec.name}': {exc}") from exc

        logger.info("Loaded session for %s from %s", spec.name, model_path)
        return session

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True
        return opts
