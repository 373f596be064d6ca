"""Main entry point for the upscale server."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from . import __version__
from .config import WorkerSettings, log_level_from_env
from .routers import health, upscale

# Configure logging
logging.basicConfig(
    level=getattr(logging, log_level_from_env(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting upscale server...")
    settings = WorkerSettings.from_env()
    app.state.settings = settings

    from .services.capability_probe import get_capability_probe
    probe = get_capability_probe(thread_isolation=settings.thread_isolation)
    app.state.probe = probe
    logger.info("Capability probe ready: device=%s, gpu_available=%s",
                probe.device_type, probe.gpu_available())

    # Each websocket connection builds its own worker around this factory
    from .services.onnx_pipeline import OnnxPipelineFactory
    app.state.pipeline_factory = OnnxPipelineFactory.from_settings(settings)

    yield

    logger.info("Shutting down upscale server...")
    probe.clear_cache()


app = FastAPI(
    title="Upscale Server",
    description="Tiled image super-resolution worker",
    version=__version__,
    lifespan=lifespan
)

# Include routers
app.include_router(health.router, prefix="/api/v1", tags=["health"])
app.include_router(upscale.router, prefix="/api/v1", tags=["upscale"])


def run():
    """Run the server.

    Passes the app object directly to uvicorn instead of an import string.
    Using a string causes uvicorn to spawn a subprocess on Windows, which
    breaks Ctrl+C signal handling.
    """
    import argparse
    parser = argparse.ArgumentParser(description="Upscale Server")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8766, help="Port to bind to")
    args = parser.parse_args()

    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level=log_level_from_env().lower()
    )


if __name__ == "__main__":
    run()
