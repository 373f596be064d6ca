"""Error types raised by the upscale worker.

Every error that reaches the worker run loop is reported to the caller as a
single ``ErrorMessage`` carrying the run id. No retries happen inside the
worker.
"""


class UpscaleError(RuntimeError):
    """Base error for upscale worker failures."""


class InvalidRequestError(UpscaleError):
    """Raised when an inbound message is malformed."""


class BackendUnavailable(UpscaleError):
    """Raised when the requested numeric backend is not usable here."""


class PipelineConstructionError(UpscaleError):
    """Raised when fetching weights or building the pipeline fails."""


class TileInferenceError(UpscaleError):
    """Raised when inference on a tile (or the whole image) fails."""


class OutputAllocationError(UpscaleError):
    """Raised when the output scale or buffer size cannot be determined."""


class UnhandledWorkerFault(UpscaleError):
    """Raised for faults caught by the worker's top-level handler."""


__all__ = [
    "UpscaleError",
    "InvalidRequestError",
    "BackendUnavailable",
    "PipelineConstructionError",
    "TileInferenceError",
    "OutputAllocationError",
    "UnhandledWorkerFault",
]
