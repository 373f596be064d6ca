"""Message protocol between the caller and the upscale worker.

Inbound messages form a closed set (:data:`InboundMessage`), as do outbound
messages (:data:`OutboundMessage`). Every outbound message carries the id of
the run it belongs to; callers ignore messages for stale run ids.

Pixel buffers travel as ndarrays inside :class:`Raster` and are handed over
by reference, never copied. ``to_dict()`` renders the JSON header of a
message without its pixels.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Dict, Optional, Union

from .services.capability_probe import Backend
from .services.pipeline_cache import Precision
from .services.tile_layout import TileConfig
from .utils.raster import Raster

logger = logging.getLogger(__name__)


# ==================== Inbound ====================


@dataclass
class RunMessage:
    """Request to upscale one image."""
    type: ClassVar[str] = "run"

    id: int
    backend: Backend
    model_id: str
    precision: Precision
    image: Raster
    scale: Optional[float] = None
    tile: Optional[TileConfig] = None


@dataclass
class ShutdownMessage:
    """Request to dispose the pipeline and stop the worker."""
    type: ClassVar[str] = "shutdown"

    id: int = -1


InboundMessage = Union[RunMessage, ShutdownMessage]


# ==================== Outbound ====================


@dataclass
class ProgressMessage:
    """Pipeline load or tile progress. Purely informative."""
    type: ClassVar[str] = "progress"

    id: int
    progress: Optional[int] = None
    status: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "id": self.id,
                "progress": self.progress, "status": self.status}


@dataclass
class ResultMessage:
    """Final upscaled image for a run."""
    type: ClassVar[str] = "result"

    id: int
    output: Raster

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "id": self.id,
            "output": {
                "width": self.output.width,
                "height": self.output.height,
                "channels": self.output.channels,
            },
        }


@dataclass
class ErrorMessage:
    """Failure of a run (or a worker fault when ``id`` is -1)."""
    type: ClassVar[str] = "error"

    id: int
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "id": self.id, "message": self.message}


@dataclass
class DiagnosticsMessage:
    """Backend details discovered while building a GPU pipeline."""
    type: ClassVar[str] = "diagnostics"

    id: int
    fp16_enabled: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "id": self.id, "fp16_enabled": self.fp16_enabled}


OutboundMessage = Union[ProgressMessage, ResultMessage, ErrorMessage, DiagnosticsMessage]


class MessageChannel:
    """Posts outbound messages to a sink.

    Posting is safe from worker threads: once bound to an event loop, posts
    made off that loop are scheduled onto it. Progress and diagnostics are
    best-effort; a failing sink is logged and the run carries on.
    """

    def __init__(self, sink: Callable[[OutboundMessage], None],
                 loop: Optional[asyncio.AbstractEventLoop] = None):
        self._sink = sink
        self._loop = loop

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def post(self, message: OutboundMessage) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if self._loop is not None and running is not self._loop:
            self._loop.call_soon_threadsafe(self._deliver, message)
        else:
            self._deliver(message)

    def _deliver(self, message: OutboundMessage) -> None:
        if isinstance(message, (ProgressMessage, DiagnosticsMessage)):
            try:
                self._sink(message)
            except Exception as e:
                logger.warning("Dropped %s message for run %s: %s", message.type, message.id, e)
            return
        self._sink(message)

    def progress(self, run_id: int, progress: Optional[int] = None,
                 status: Optional[str] = None) -> None:
        self.post(ProgressMessage(id=run_id, progress=progress, status=status))

    def result(self, run_id: int, output: Raster) -> None:
        self.post(ResultMessage(id=run_id, output=output))

    def error(self, run_id: int, message: str) -> None:
        self.post(ErrorMessage(id=run_id, message=message))

    def diagnostics(self, run_id: int, fp16_enabled: Optional[bool]) -> None:
        self.post(DiagnosticsMessage(id=run_id, fp16_enabled=fp16_enabled))


__all__ = [
    "RunMessage",
    "ShutdownMessage",
    "InboundMessage",
    "ProgressMessage",
    "ResultMessage",
    "ErrorMessage",
    "DiagnosticsMessage",
    "OutboundMessage",
    "MessageChannel",
]
