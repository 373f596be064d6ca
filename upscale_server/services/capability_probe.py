"""Runtime capability probe for the numeric inference backend.

Provides:
- GPU detection (CUDA > MPS priority via PyTorch, plus ONNX Runtime's CUDA provider)
- CPU thread count selection gated on thread isolation
- ONNX Runtime execution provider ordering per backend
- Half-precision support reporting for diagnostics
- GPU cache clearing after a pipeline is disposed
"""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..errors import BackendUnavailable

logger = logging.getLogger(__name__)

# Logical core count used when the OS cannot report one
DEFAULT_CORE_COUNT = 4

# Lowest CUDA compute capability with native half-precision arithmetic
FP16_MIN_CAPABILITY = (5, 3)


class Backend(str, Enum):
    """Numeric execution target for inference."""
    GPU = "gpu"
    CPU = "cpu"


@dataclass(frozen=True)
class BackendDecision:
    """Outcome of probing for a requested backend.

    ``threads`` is only set for the CPU backend.
    """
    backend: Backend
    providers: List[str] = field(default_factory=list)
    threads: Optional[int] = None
    device_name: str = "CPU"


class RuntimeCapabilityProbe:
    """Detects which numeric backend is usable in this process.

    Detection runs once at construction; :meth:`probe` only reads the
    detected state, so it is cheap and safe to call on every run.
    """

    def __init__(self, thread_isolation: bool = False, cpu_count: Optional[int] = None):
        """Initialize the probe and detect available devices.

        Args:
            thread_isolation: Whether helper threads are allowed to share
                memory. Without it the CPU backend runs single-threaded.
            cpu_count: Override for the logical core count (detected if None)
        """
        self.thread_isolation = thread_isolation
        self._cpu_count = cpu_count
        self._device_type: str = "cpu"
        self._device_name: str = "CPU"
        self._compute_capability: Optional[tuple] = None
        self._onnx_providers: List[str] = []

        self._detect_device()

    def _detect_device(self) -> None:
        """Detect GPU capability with priority CUDA > MPS."""
        try:
            import onnxruntime as ort
            self._onnx_providers = list(ort.get_available_providers())
        except ImportError:
            logger.warning("ONNX Runtime not installed, execution providers unknown")
        except Exception as e:
            logger.warning(f"ONNX Runtime provider query failed: {e}")

        try:
            import torch

            if torch.cuda.is_available():
                self._device_type = "cuda"
                self._device_name = torch.cuda.get_device_name(0)
                self._compute_capability = torch.cuda.get_device_capability(0)
                logger.info(
                    f"CUDA GPU detected: {self._device_name} "
                    f"(compute capability {self._compute_capability})"
                )
                return

            if hasattr(torch.backends, 'mps') and torch.backends.mps.is_available():
                self._device_type = "mps"
                self._device_name = "Apple Silicon (MPS)"
                logger.info("Apple MPS device detected")
                return

        except ImportError:
            logger.warning("PyTorch not installed, falling back to ONNX Runtime detection")
        except Exception as e:
            logger.warning(f"GPU detection failed: {e}")

        if "CUDAExecutionProvider" in self._onnx_providers:
            self._device_type = "cuda"
            self._device_name = "CUDA (ONNX Runtime)"
            logger.info("CUDA execution provider available in ONNX Runtime")
            return

        self._device_type = "cpu"
        self._device_name = "CPU"
        logger.info("No GPU available, using CPU")

    @property
    def device_type(self) -> str:
        """Detected device type ('cuda', 'mps', or 'cpu')."""
        return self._device_type

    def gpu_available(self) -> bool:
        """Check if a GPU backend (CUDA or MPS) is usable for inference."""
        return self.gpu_providers()[0] != "CPUExecutionProvider"

    def cpu_thread_count(self) -> int:
        """Thread count for the CPU backend.

        All logical cores when thread isolation is enabled, otherwise 1.
        """
        if not self.thread_isolation:
            return 1
        cores = self._cpu_count or os.cpu_count() or DEFAULT_CORE_COUNT
        return max(1, cores)

    def gpu_providers(self) -> List[str]:
        """ONNX Runtime execution providers for the GPU backend.

        The accelerated provider is only listed when ONNX Runtime reports it
        (or when the available providers could not be queried).
        """
        preferred = {
            "cuda": "CUDAExecutionProvider",
            "mps": "CoreMLExecutionProvider",
        }.get(self._device_type)
        if preferred and (not self._onnx_providers or preferred in self._onnx_providers):
            return [preferred, "CPUExecutionProvider"]
        return ["CPUExecutionProvider"]

    def probe(self, requested: Backend) -> BackendDecision:
        """Decide how to run the requested backend.

        Args:
            requested: Backend asked for by the caller

        Returns:
            BackendDecision for the requested backend

        Raises:
            BackendUnavailable: GPU requested but no GPU capability detected.
                The probe never downgrades to CPU on its own.
        """
        requested = Backend(requested)
        if requested is Backend.GPU:
            if not self.gpu_available():
                raise BackendUnavailable(
                    "GPU backend is not available in this worker. Switch to CPU."
                )
            return BackendDecision(
                backend=Backend.GPU,
                providers=self.gpu_providers(),
                threads=None,
                device_name=self._device_name,
            )

        return BackendDecision(
            backend=Backend.CPU,
            providers=["CPUExecutionProvider"],
            threads=self.cpu_thread_count(),
            device_name="CPU",
        )

    def fp16_supported(self) -> Optional[bool]:
        """Whether the GPU supports half-precision arithmetic.

        Returns None when it cannot be determined (no CUDA device details).
        """
        if self._device_type == "cuda" and self._compute_capability is not None:
            return tuple(self._compute_capability) >= FP16_MIN_CAPABILITY
        if self._device_type == "mps":
            return True
        return None

    def clear_cache(self) -> None:
        """Clear GPU memory cache.

        Safe to call on any device type.
        """
        try:
            import torch

            if self._device_type == "cuda" and torch.cuda.is_available():
                torch.cuda.empty_cache()
                logger.debug("Cleared CUDA memory cache")

            elif self._device_type == "mps":
                if hasattr(torch.mps, 'empty_cache'):
                    torch.mps.empty_cache()
                    logger.debug("Cleared MPS memory cache")

        except ImportError:
            pass
        except Exception as e:
            logger.warning(f"Failed to clear GPU cache: {e}")

    def get_info(self) -> Dict[str, Any]:
        """Get backend info for the /backends endpoint."""
        return {
            "gpu_available": self.gpu_available(),
            "device_type": self._device_type,
            "name": self._device_name,
            "compute_capability": self._compute_capability,
            "fp16_supported": self.fp16_supported(),
            "thread_isolation": self.thread_isolation,
            "cpu_threads": self.cpu_thread_count(),
            "onnx_providers": self._onnx_providers,
        }


# Singleton instance for shared access
_probe_instance: Optional[RuntimeCapabilityProbe] = None


def get_capability_probe(thread_isolation: bool = False) -> RuntimeCapabilityProbe:
    """Get or create the singleton RuntimeCapabilityProbe instance.

    Args:
        thread_isolation: Used only when the instance is first created

    Returns:
        Shared RuntimeCapabilityProbe instance
    """
    global _probe_instance
    if _probe_instance is None:
        _probe_instance = RuntimeCapabilityProbe(thread_isolation=thread_isolation)
    return _probe_instance
