"""Default image-to-image pipeline backed by ONNX Runtime.

Weights are ONNX exports laid out the way Hugging Face hub repositories ship
them (``<model_id>/resolve/main/onnx/<file>``), one file per precision. They
are downloaded once into the local models directory and reused afterwards.
"""

import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import numpy as np
import requests

from .capability_probe import Backend, BackendDecision
from .pipeline_cache import PipelineKey, Precision
from ..config import WorkerSettings
from ..utils.raster import Raster

logger = logging.getLogger(__name__)

PRECISION_FILES = {
    Precision.FULL: "model.onnx",
    Precision.QUANTIZED_8BIT: "model_quantized.onnx",
    Precision.QUANTIZED_4BIT: "model_q4.onnx",
    Precision.QUANTIZED_4BIT_FP16_ACCUM: "model_q4f16.onnx",
}

# ONNX Runtime severity: 0 verbose .. 3 error
ORT_LOG_SEVERITY_ERROR = 3

# Spatial multiple the model input is padded to (window size of SwinIR-style models)
DEFAULT_PAD_MULTIPLE = 8

DOWNLOAD_CHUNK_SIZE = 1024 * 1024

# Declared ONNX input type -> numpy dtype fed to the session
ONNX_INPUT_DTYPES = {
    "tensor(float)": np.float32,
    "tensor(float16)": np.float16,
}


class WeightStore:
    """Fetches and caches ONNX weight files on local disk."""

    def __init__(self, models_dir: Path, hub_url: str, timeout: float = 300.0):
        self.models_dir = Path(models_dir)
        self.hub_url = hub_url.rstrip("/")
        self.timeout = timeout

    def path_for(self, model_id: str, filename: str) -> Path:
        parts = model_id.split("/")
        if not model_id or any(part in ("", ".", "..") for part in parts):
            raise ValueError("Invalid model id: %r" % model_id)
        return self.models_dir.joinpath(*parts, filename)

    def url_for(self, model_id: str, filename: str) -> str:
        return "%s/%s/resolve/main/onnx/%s" % (self.hub_url, model_id, filename)

    def fetch(self, model_id: str, filename: str,
              on_event: Optional[Callable[[Dict[str, Any]], None]] = None) -> Path:
        """Return the local path of a weight file, downloading it if missing.

        Blocking; run it in a thread from async code.

        Args:
            model_id: Hub repository id, e.g. "Xenova/swin2SR-classical-sr-x2-64"
            filename: ONNX file name inside the repository's onnx/ folder
            on_event: Receives loader events (status, loaded, total, progress)

        Returns:
            Path to the local ONNX file
        """
        emit = on_event or (lambda event: None)
        target = self.path_for(model_id, filename)
        if target.exists():
            logger.info("Using cached weights %s", target)
            emit({"status": "ready", "file": filename, "progress": 100})
            return target

        target.parent.mkdir(parents=True, exist_ok=True)
        # A temp file per download so concurrent fetches of one file never share it
        with tempfile.NamedTemporaryFile(dir=target.parent, prefix=target.name + ".",
                                         suffix=".download", delete=False) as tmp:
            tmp_path = Path(tmp.name)
        url = self.url_for(model_id, filename)

        logger.info("Downloading weights %s -> %s", url, target)
        emit({"status": "initiate", "file": filename})
        try:
            with requests.get(url, stream=True, timeout=self.timeout) as resp:
                resp.raise_for_status()
                total = int(resp.headers.get("Content-Length") or 0)
                loaded = 0
                with open(tmp_path, "wb") as fh:
                    for chunk in resp.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                        if not chunk:
                            continue
                        fh.write(chunk)
                        loaded += len(chunk)
                        if total > 0:
                            emit({"status": "progress", "file": filename,
                                  "loaded": loaded, "total": total})
            os.replace(tmp_path, target)
        except Exception:
            tmp_path.unlink(missing_ok=True)
            raise

        emit({"status": "done", "file": filename, "progress": 100})
        return target


class OnnxUpscalePipeline:
    """Runs one ONNX image-to-image session on RGBA rasters.

    The RGB channels are fed as NCHW floats in [0, 1] (float16 when the graph
    declares a float16 input, float32 otherwise); the input is padded
    (symmetric, bottom/right) to ``pad_multiple`` and the output is cropped
    back to the unpadded extent times the model's scale factor.
    """

    def __init__(self, session, pad_multiple: int = DEFAULT_PAD_MULTIPLE):
        self._session = session
        model_input = session.get_inputs()[0]
        self._input_name = model_input.name
        self._input_dtype = ONNX_INPUT_DTYPES.get(getattr(model_input, "type", None), np.float32)
        self.pad_multiple = max(1, pad_multiple)

    async def run(self, image: Raster) -> List[Raster]:
        if self._session is None:
            raise RuntimeError("Pipeline has been disposed")
        return await asyncio.to_thread(self._run_sync, image)

    def _run_sync(self, image: Raster) -> List[Raster]:
        if image.channels >= 3:
            pixels = image.data[..., :3]
        else:
            pixels = np.repeat(image.data[..., :1], 3, axis=2)
        rgb = pixels.astype(np.float32) / 255.0

        height, width = image.height, image.width
        pad_h = (-height) % self.pad_multiple
        pad_w = (-width) % self.pad_multiple
        if pad_h or pad_w:
            rgb = np.pad(rgb, ((0, pad_h), (0, pad_w), (0, 0)), mode="symmetric")

        # HWC -> NCHW, in the dtype the graph declares
        batch = rgb.transpose(2, 0, 1)[np.newaxis].astype(self._input_dtype)
        outputs = self._session.run(None, {self._input_name: batch})

        results = []
        for output in outputs:
            if output.ndim == 4:
                output = output[0]
            if output.ndim != 3:
                continue
            factor_h = output.shape[1] // batch.shape[2]
            factor_w = output.shape[2] // batch.shape[3]
            out_h = max(1, height * factor_h)
            out_w = max(1, width * factor_w)
            # CHW -> HWC, crop away the padding
            hwc = output[:, :out_h, :out_w].transpose(1, 2, 0).astype(np.float32)
            pixels = np.clip(np.rint(hwc * 255.0), 0, 255).astype(np.uint8)
            results.append(Raster(pixels.shape[1], pixels.shape[0], pixels.shape[2],
                                  np.ascontiguousarray(pixels)))
        return results

    async def dispose(self) -> None:
        self._session = None


class OnnxPipelineFactory:
    """Builds :class:`OnnxUpscalePipeline` handles for pipeline keys."""

    def __init__(self, weight_store: WeightStore, pad_multiple: int = DEFAULT_PAD_MULTIPLE):
        self.weight_store = weight_store
        self.pad_multiple = pad_multiple

    @classmethod
    def from_settings(cls, settings: WorkerSettings) -> "OnnxPipelineFactory":
        return cls(WeightStore(settings.models_dir, settings.hub_url, settings.download_timeout))

    async def build(self, key: PipelineKey, decision: BackendDecision,
                    on_event: Callable[[Dict[str, Any]], None]) -> OnnxUpscalePipeline:
        filename = PRECISION_FILES[Precision(key.precision)]
        path = await asyncio.to_thread(self.weight_store.fetch, key.model_id, filename, on_event)
        session = await asyncio.to_thread(self._create_session, path, decision)
        return OnnxUpscalePipeline(session, pad_multiple=self.pad_multiple)

    @staticmethod
    def _create_session(path: Path, decision: BackendDecision):
        import onnxruntime as ort

        options = ort.SessionOptions()
        options.log_severity_level = ORT_LOG_SEVERITY_ERROR
        if decision.backend is Backend.CPU and decision.threads:
            options.intra_op_num_threads = decision.threads

        logger.info("Loading ONNX model from %s (providers=%s)", path, decision.providers)
        return ort.InferenceSession(str(path), sess_options=options,
                                    providers=decision.providers)


__all__ = ["WeightStore", "OnnxUpscalePipeline", "OnnxPipelineFactory", "PRECISION_FILES"]
