"""Upscale worker run loop.

The worker processes one inbound message at a time. Runs suspend while
weights load and while each tile is inferred, but never overlap: a run
submitted while another is in flight waits in the inbox. There is no
cancellation; every run posts its own result or error tagged with its id
and the caller ignores stale ids.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

from .capability_probe import RuntimeCapabilityProbe
from .inference_dispatcher import InferenceDispatcher
from .pipeline_cache import PipelineCache, PipelineFactory, PipelineKey
from ..config import WorkerSettings
from ..errors import InvalidRequestError, UnhandledWorkerFault
from ..protocol import (
    InboundMessage,
    MessageChannel,
    OutboundMessage,
    RunMessage,
    ShutdownMessage,
)
from ..utils.raster import RGBA_CHANNELS, round_half_up

logger = logging.getLogger(__name__)

# Run id used for faults that happen outside any run
NO_RUN_ID = -1


class UpscaleWorker:
    """Single-worker upscale executor.

    Owns the pipeline cache and an inbox queue. Outbound messages go to the
    ``sink`` callable given at construction.
    """

    def __init__(
        self,
        sink: Callable[[OutboundMessage], None],
        factory: PipelineFactory,
        probe: RuntimeCapabilityProbe,
        settings: Optional[WorkerSettings] = None,
        dispatcher: Optional[InferenceDispatcher] = None,
    ):
        self.settings = settings or WorkerSettings()
        self.channel = MessageChannel(sink)
        self.cache = PipelineCache(factory, probe)
        self.dispatcher = dispatcher or InferenceDispatcher(
            max_output_pixels=self.settings.max_output_pixels
        )
        self._inbox: "asyncio.Queue[InboundMessage]" = asyncio.Queue()
        self._active_run_id: Optional[int] = None
        self._running = False

    @property
    def active_run_id(self) -> Optional[int]:
        return self._active_run_id

    @property
    def is_running(self) -> bool:
        return self._running

    def submit(self, message: InboundMessage) -> None:
        """Queue an inbound message for processing."""
        self._inbox.put_nowait(message)

    def close(self) -> None:
        """Queue a shutdown behind any pending runs."""
        self.submit(ShutdownMessage())

    async def serve(self, install_fault_handler: bool = True) -> None:
        """Process inbound messages until a shutdown message arrives.

        Args:
            install_fault_handler: Install a loop exception handler while
                serving so stray task failures are reported to the caller
                as errors instead of being lost. Leave it off when the loop
                is shared with other workers.

        The pipeline is disposed when the worker stops.
        """
        loop = asyncio.get_running_loop()
        self.channel.bind(loop)
        previous_handler = loop.get_exception_handler()
        if install_fault_handler:
            loop.set_exception_handler(self._handle_fault)
        self._running = True
        logger.info("Upscale worker started")

        try:
            while True:
                message = await self._inbox.get()
                try:
                    if not await self.handle(message):
                        break
                except Exception as e:
                    self._report_fault(e)
                finally:
                    self._inbox.task_done()
        finally:
            self._running = False
            if install_fault_handler:
                loop.set_exception_handler(previous_handler)
            await self.cache.dispose()
            logger.info("Upscale worker stopped")

    async def handle(self, message: InboundMessage) -> bool:
        """Handle one inbound message. Returns False when the worker should stop."""
        if isinstance(message, RunMessage):
            await self.process_run(message)
            return True
        if isinstance(message, ShutdownMessage):
            logger.info("Shutdown requested")
            return False
        raise TypeError("Unhandled message type: %s" % type(message).__name__)

    async def process_run(self, message: RunMessage) -> None:
        """Execute one run and post exactly one result or error for it."""
        run_id = message.id
        self._active_run_id = run_id
        start = time.time()
        logger.info(
            "Run %d: model=%s precision=%s backend=%s image=%dx%d tiled=%s",
            run_id, message.model_id, getattr(message.precision, "value", message.precision),
            getattr(message.backend, "value", message.backend),
            message.image.width, message.image.height, message.tile is not None,
        )

        def on_load_progress(progress: Optional[int], status: Optional[str]) -> None:
            self.channel.progress(run_id, progress, status)

        def on_diagnostics(fp16_enabled: Optional[bool]) -> None:
            self.channel.diagnostics(run_id, fp16_enabled)

        def on_tile_progress(index: int, total: int) -> None:
            self.channel.progress(
                run_id,
                round_half_up((index + 1) / total * 100),
                "Upscaling tiles (%d/%d)..." % (index + 1, total),
            )

        try:
            self._validate(message)
            key = PipelineKey(message.model_id, message.precision, message.backend)
            pipeline = await self.cache.ensure(
                key, on_progress=on_load_progress, on_diagnostics=on_diagnostics
            )
            result = await self.dispatcher.run(
                pipeline,
                message.image,
                scale=message.scale,
                tile=message.tile,
                on_tile_progress=on_tile_progress,
            )
        except Exception as e:
            logger.error("Run %d failed: %s", run_id, e)
            self.channel.error(run_id, str(e) or "Upscale failed.")
            return
        finally:
            self._active_run_id = None

        logger.info("Run %d finished in %.2fs", run_id, time.time() - start)
        self.channel.result(run_id, result.output)

    @staticmethod
    def _validate(message: RunMessage) -> None:
        image = message.image
        if image.channels != RGBA_CHANNELS:
            raise InvalidRequestError(
                "Input image must be RGBA (4 channels), got %d" % image.channels
            )
        if image.width <= 0 or image.height <= 0:
            raise InvalidRequestError(
                "Input image must not be empty, got %dx%d" % (image.width, image.height)
            )

    def _report_fault(self, error: BaseException) -> None:
        fault = UnhandledWorkerFault(str(error) or type(error).__name__)
        run_id = self._active_run_id if self._active_run_id is not None else NO_RUN_ID
        logger.error("Unhandled worker fault (run %d): %s", run_id, fault, exc_info=error)
        self.channel.error(run_id, "Worker error (%s)" % fault)

    def _handle_fault(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        error = context.get("exception")
        if error is None:
            error = UnhandledWorkerFault(context.get("message") or "Worker error.")
        try:
            self._report_fault(error)
        except Exception as e:
            logger.error("Could not report worker fault: %s", e)


__all__ = ["UpscaleWorker", "NO_RUN_ID"]
