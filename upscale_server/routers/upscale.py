"""Websocket endpoint carrying the upscale message protocol.

Each inbound run is a JSON text frame (the run header) followed by one
binary frame with the RGBA pixels. Outbound messages are JSON text frames;
a result header is followed by one binary frame with the output pixels.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field, ValidationError

from ..errors import InvalidRequestError
from ..protocol import ErrorMessage, OutboundMessage, ResultMessage, RunMessage
from ..services.capability_probe import Backend
from ..services.pipeline_cache import Precision
from ..services.tile_layout import TileConfig
from ..services.worker import NO_RUN_ID, UpscaleWorker
from ..utils.raster import RGBA_CHANNELS, Raster

logger = logging.getLogger(__name__)

router = APIRouter()


class ImageHeader(BaseModel):
    """Dimensions of the RGBA frame that follows the header."""
    width: int = Field(gt=0)
    height: int = Field(gt=0)


class TileHeader(BaseModel):
    """Requested tiling (clamped by the planner)."""
    size: int
    overlap: int = 0


class RunRequestHeader(BaseModel):
    """JSON header of a run request."""
    type: Literal["run"] = "run"
    id: int
    backend: Backend
    model_id: str = Field(min_length=1)
    precision: Precision
    image: ImageHeader
    scale: Optional[float] = None
    tile: Optional[TileHeader] = None

    def to_message(self, pixels: bytes) -> RunMessage:
        image = Raster.from_bytes(pixels, self.image.width, self.image.height, RGBA_CHANNELS)
        tile = None
        if self.tile is not None:
            tile = TileConfig(size=self.tile.size, overlap=self.tile.overlap)
        return RunMessage(
            id=self.id,
            backend=self.backend,
            model_id=self.model_id,
            precision=self.precision,
            image=image,
            scale=self.scale,
            tile=tile,
        )


async def _receive_header(websocket: WebSocket) -> Dict[str, Any]:
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000))
    text = message.get("text")
    if text is None:
        raise InvalidRequestError("Expected a JSON header frame")
    try:
        header = json.loads(text)
    except json.JSONDecodeError as e:
        raise InvalidRequestError("Header is not valid JSON: %s" % e) from e
    if not isinstance(header, dict):
        raise InvalidRequestError("Header must be a JSON object")
    return header


async def _receive_pixels(websocket: WebSocket) -> bytes:
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000))
    data = message.get("bytes")
    if data is None:
        raise InvalidRequestError("Expected a binary pixel frame after the run header")
    return data


async def _send_outbound(websocket: WebSocket, outbox: "asyncio.Queue[Optional[OutboundMessage]]"):
    while True:
        message = await outbox.get()
        if message is None:
            return
        await websocket.send_json(message.to_dict())
        if isinstance(message, ResultMessage):
            await websocket.send_bytes(message.output.to_bytes())


def _header_id(header: Dict[str, Any]) -> int:
    run_id = header.get("id")
    if isinstance(run_id, int) and not isinstance(run_id, bool):
        return run_id
    return NO_RUN_ID


@router.websocket("/upscale")
async def upscale_socket(websocket: WebSocket):
    """Run an upscale worker for the lifetime of one connection."""
    await websocket.accept()
    state = websocket.app.state
    outbox: "asyncio.Queue[Optional[OutboundMessage]]" = asyncio.Queue()

    worker = UpscaleWorker(
        sink=outbox.put_nowait,
        factory=state.pipeline_factory,
        probe=state.probe,
        settings=state.settings,
    )
    # The server loop is shared between connections, so the worker does not
    # take over its exception handler
    serve_task = asyncio.create_task(worker.serve(install_fault_handler=False))
    send_task = asyncio.create_task(_send_outbound(websocket, outbox))
    logger.info("Upscale connection opened")

    graceful = False
    try:
        while True:
            header: Dict[str, Any] = {}
            try:
                header = await _receive_header(websocket)
                if header.get("type") == "shutdown":
                    logger.info("Shutdown requested by client")
                    graceful = True
                    break
                request = RunRequestHeader.model_validate(header)
                pixels = await _receive_pixels(websocket)
                worker.submit(request.to_message(pixels))
            except ValidationError as e:
                outbox.put_nowait(ErrorMessage(
                    id=_header_id(header),
                    message="Invalid run request: %s" % e.errors()[0].get("msg", e),
                ))
            except (InvalidRequestError, ValueError) as e:
                outbox.put_nowait(ErrorMessage(id=_header_id(header), message=str(e)))
    except WebSocketDisconnect:
        logger.info("Upscale connection closed by client")
    finally:
        if not graceful:
            serve_task.cancel()
            send_task.cancel()

    if not graceful:
        await asyncio.gather(serve_task, send_task, return_exceptions=True)
        return

    # Finish queued runs, then flush their messages before closing
    worker.close()
    await serve_task
    outbox.put_nowait(None)
    await send_task
    await websocket.close()
    logger.info("Upscale connection closed")
