"""Cache for the single live inference pipeline.

At most one pipeline handle is alive at a time, keyed by
(model, precision, backend). Repeated runs with the same key reuse the
handle without reloading; a different key disposes the old handle before
the replacement is built.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Union

from .capability_probe import Backend, BackendDecision, RuntimeCapabilityProbe
from ..errors import PipelineConstructionError
from ..utils.raster import Raster, normalize_progress

logger = logging.getLogger(__name__)


class Precision(str, Enum):
    """Numeric representation the pipeline is built with."""
    FULL = "full"
    QUANTIZED_8BIT = "quantized-8bit"
    QUANTIZED_4BIT = "quantized-4bit"
    QUANTIZED_4BIT_FP16_ACCUM = "quantized-4bit-fp16-accum"


@dataclass(frozen=True)
class PipelineKey:
    """Identity of a pipeline for cache reuse."""
    model_id: str
    precision: Precision
    backend: Backend

    @property
    def cache_key(self) -> str:
        return "%s:%s:%s" % (self.model_id, Precision(self.precision).value,
                             Backend(self.backend).value)


# Raw loader events: {"status", "progress", "loaded", "total"}, all optional
LoaderEventCallback = Callable[[Dict[str, Any]], None]
# Normalized progress: (percent or None, status text or None)
ProgressCallback = Callable[[Optional[int], Optional[str]], None]
DiagnosticsCallback = Callable[[Optional[bool]], None]


class PipelineHandle(Protocol):
    """A loaded, ready-to-run model instance."""

    async def run(self, image: Raster) -> Union[Raster, List[Raster]]:
        ...

    async def dispose(self) -> None:
        ...


class PipelineFactory(Protocol):
    """Builds pipeline handles (fetching weights as needed)."""

    async def build(
        self,
        key: PipelineKey,
        decision: BackendDecision,
        on_event: LoaderEventCallback,
    ) -> PipelineHandle:
        ...


class PipelineCache:
    """Owns the worker's one pipeline handle.

    ``ensure`` and ``dispose`` are the only operations that change the
    cached handle.
    """

    def __init__(self, factory: PipelineFactory, probe: RuntimeCapabilityProbe):
        self._factory = factory
        self._probe = probe
        self._handle: Optional[PipelineHandle] = None
        self._key: Optional[PipelineKey] = None

    @property
    def current_key(self) -> Optional[PipelineKey]:
        return self._key

    @property
    def is_loaded(self) -> bool:
        return self._handle is not None

    async def ensure(
        self,
        key: PipelineKey,
        on_progress: Optional[ProgressCallback] = None,
        on_diagnostics: Optional[DiagnosticsCallback] = None,
    ) -> PipelineHandle:
        """Return the pipeline for ``key``, building it if needed.

        A cache hit returns immediately and reports no progress.

        Args:
            key: Requested pipeline identity
            on_progress: Receives normalized load progress and status text
            on_diagnostics: Receives the GPU half-precision flag after a GPU
                pipeline is built (only when it can be determined)

        Returns:
            The cached or newly built pipeline handle

        Raises:
            BackendUnavailable: The backend is not usable; the cache is untouched
            PipelineConstructionError: Fetch or initialization failed; the
                cache is left empty
        """
        if self._handle is not None and self._key == key:
            logger.debug("Pipeline cache hit: %s", key.cache_key)
            return self._handle

        decision = self._probe.probe(key.backend)

        await self.dispose()

        def on_event(event: Dict[str, Any]) -> None:
            if on_progress is None:
                return
            progress = normalize_progress(event)
            status = event.get("status")
            if progress is not None or status:
                on_progress(progress, status or None)

        logger.info("Building pipeline %s on %s", key.cache_key, decision.device_name)
        start = time.time()
        try:
            handle = await self._factory.build(key, decision, on_event)
        except PipelineConstructionError:
            raise
        except Exception as e:
            logger.error("Pipeline construction failed for %s: %s", key.cache_key, e)
            raise PipelineConstructionError(str(e) or type(e).__name__) from e

        self._handle = handle
        self._key = key
        logger.info("Pipeline %s ready in %.2fs", key.cache_key, time.time() - start)

        if on_diagnostics is not None and decision.backend is Backend.GPU:
            fp16_enabled = self._probe.fp16_supported()
            if isinstance(fp16_enabled, bool):
                on_diagnostics(fp16_enabled)

        return handle

    async def dispose(self) -> None:
        """Tear down the cached pipeline, if any. Safe to call repeatedly."""
        handle, key = self._handle, self._key
        self._handle = None
        self._key = None
        if handle is None:
            return

        try:
            await handle.dispose()
            logger.info("Disposed pipeline %s", key.cache_key)
        except Exception as e:
            logger.warning("Failed to dispose pipeline %s: %s", key.cache_key, e)
        finally:
            self._probe.clear_cache()


__all__ = [
    "Precision",
    "PipelineKey",
    "PipelineHandle",
    "PipelineFactory",
    "PipelineCache",
]
