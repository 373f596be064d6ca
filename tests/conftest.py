"""Shared fixtures for upscale_server tests.

This module provides:
- A deterministic nearest-neighbour fake pipeline and factory
- A capability probe with a fixed, injectable device
- Synthetic RGBA test images
- A helper that drives a worker through a list of messages
"""

import asyncio
from typing import List, Optional

import numpy as np
import pytest

from upscale_server.services.capability_probe import RuntimeCapabilityProbe
from upscale_server.utils.raster import Raster


def make_gradient(width: int, height: int) -> Raster:
    """RGBA image where every pixel is distinguishable from its neighbours."""
    ys, xs = np.mgrid[0:height, 0:width]
    data = np.empty((height, width, 4), dtype=np.uint8)
    data[..., 0] = xs % 256
    data[..., 1] = ys % 256
    data[..., 2] = (xs * 7 + ys * 13) % 256
    data[..., 3] = 255
    return Raster(width, height, 4, data)


def upscale_nearest(raster: Raster, factor: int) -> np.ndarray:
    """Reference nearest-neighbour upscale of a whole raster."""
    return np.repeat(np.repeat(raster.data, factor, axis=0), factor, axis=1)


class FakeUpscalePipeline:
    """Nearest-neighbour pipeline: every pixel becomes a factor x factor block."""

    def __init__(self, factor: int = 2, output_channels: int = 4,
                 fail_on_call: Optional[int] = None, candidates: int = 1,
                 fail_dispose: bool = False):
        self.factor = factor
        self.output_channels = output_channels
        self.fail_on_call = fail_on_call
        self.candidates = candidates
        self.fail_dispose = fail_dispose
        self.calls: List[tuple] = []
        self.disposed = False

    async def run(self, image: Raster):
        self.calls.append((image.width, image.height))
        if self.fail_on_call is not None and len(self.calls) == self.fail_on_call:
            raise RuntimeError("model exploded")
        data = upscale_nearest(image, self.factor)[..., :self.output_channels]
        output = Raster(image.width * self.factor, image.height * self.factor,
                        self.output_channels, np.ascontiguousarray(data))
        if self.candidates == 0:
            return []
        # Extra candidates are black so picking the wrong one is visible
        extra = [Raster(output.width, output.height, output.channels,
                        np.zeros_like(output.data))
                 for _ in range(self.candidates - 1)]
        return [output] + extra

    async def dispose(self):
        self.disposed = True
        if self.fail_dispose:
            raise RuntimeError("dispose failed")


class FakePipelineFactory:
    """Builds fake pipelines and records every build."""

    def __init__(self, events: Optional[List[dict]] = None, fail_times: int = 0,
                 **pipeline_kwargs):
        self.events = events or []
        self.fail_times = fail_times
        self.pipeline_kwargs = pipeline_kwargs
        self.builds: List[tuple] = []
        self.pipelines: List[FakeUpscalePipeline] = []

    async def build(self, key, decision, on_event):
        self.builds.append((key, decision))
        for event in self.events:
            on_event(event)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise RuntimeError("weights missing")
        pipeline = FakeUpscalePipeline(**self.pipeline_kwargs)
        self.pipelines.append(pipeline)
        return pipeline


_DEFAULT_PROVIDERS = {
    "cuda": ["CUDAExecutionProvider", "CPUExecutionProvider"],
    "mps": ["CoreMLExecutionProvider", "CPUExecutionProvider"],
    "cpu": ["CPUExecutionProvider"],
}


class StaticProbe(RuntimeCapabilityProbe):
    """Capability probe with a fixed device instead of hardware detection."""

    def __init__(self, device_type: str = "cpu", compute_capability=None,
                 providers: Optional[List[str]] = None, thread_isolation: bool = False,
                 cpu_count: int = 4):
        self._static_device = (device_type, compute_capability, providers)
        self.cleared = 0
        super().__init__(thread_isolation=thread_isolation, cpu_count=cpu_count)

    def _detect_device(self) -> None:
        device_type, compute_capability, providers = self._static_device
        self._device_type = device_type
        self._device_name = {
            "cuda": "Fake CUDA GPU",
            "mps": "Apple Silicon (MPS)",
        }.get(device_type, "CPU")
        self._compute_capability = compute_capability
        if providers is None:
            providers = _DEFAULT_PROVIDERS[device_type]
        self._onnx_providers = list(providers)

    def clear_cache(self) -> None:
        self.cleared += 1


def run_worker(factory, probe, messages, settings=None):
    """Submit ``messages`` followed by a shutdown and serve until done.

    Returns:
        (outbound messages in order, the stopped worker)
    """
    from upscale_server.services.worker import UpscaleWorker

    received = []

    async def scenario():
        worker = UpscaleWorker(sink=received.append, factory=factory,
                               probe=probe, settings=settings)
        for message in messages:
            worker.submit(message)
        worker.close()
        await worker.serve()
        return worker

    worker = asyncio.run(scenario())
    return received, worker


@pytest.fixture
def fake_factory() -> FakePipelineFactory:
    """Factory producing 2x nearest-neighbour pipelines."""
    return FakePipelineFactory()


@pytest.fixture
def cpu_probe() -> StaticProbe:
    """Probe for a worker without any GPU."""
    return StaticProbe("cpu")


@pytest.fixture
def cuda_probe() -> StaticProbe:
    """Probe for a worker with a half-precision capable CUDA GPU."""
    return StaticProbe("cuda", compute_capability=(8, 6))


@pytest.fixture
def sample_image() -> Raster:
    """130x90 RGBA gradient image."""
    return make_gradient(130, 90)


@pytest.fixture
def skip_without_cuda():
    """Skip test if CUDA is not available."""
    try:
        import torch
        if not torch.cuda.is_available():
            pytest.skip("CUDA not available")
    except ImportError:
        pytest.skip("PyTorch not available")
