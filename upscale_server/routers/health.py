"""Health check endpoints."""

import logging

from fastapi import APIRouter, Request

from .. import __version__

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check():
    """Check server health status."""
    return {"status": "healthy", "version": __version__}


@router.get("/backends")
async def backend_info(request: Request):
    """Report which numeric backends this worker can run."""
    probe = request.app.state.probe
    info = probe.get_info()
    info["backends"] = ["gpu", "cpu"] if info["gpu_available"] else ["cpu"]
    return info
