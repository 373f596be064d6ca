"""Worker configuration loaded from ``UPSCALE_*`` environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_MODELS_DIR = "~/.upscale_server/models"
DEFAULT_HUB_URL = "https://huggingface.co"
DEFAULT_MAX_OUTPUT_PIXELS = 16384 * 16384
DEFAULT_DOWNLOAD_TIMEOUT = 300.0

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in _TRUE_VALUES


def log_level_from_env(environ: Optional[Mapping[str, str]] = None) -> str:
    """Logging level name from ``UPSCALE_LOG_LEVEL`` (default INFO)."""
    env = os.environ if environ is None else environ
    return (env.get("UPSCALE_LOG_LEVEL") or "INFO").strip().upper()


def _env_number(env: Mapping[str, str], name: str, default, parse):
    """Parse a numeric variable, naming it in the error when malformed."""
    value = env.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        parsed = parse(value.strip())
    except ValueError:
        raise ValueError(
            "%s must be %s, got %r" % (name, "a number" if parse is float else "an integer", value)
        ) from None
    if not parsed > 0:
        raise ValueError("%s must be positive, got %r" % (name, value))
    return parsed


@dataclass(frozen=True)
class WorkerSettings:
    """Settings shared by the worker, the pipeline cache and the server.

    Attributes:
        models_dir: Directory where downloaded ONNX weights are stored
        hub_url: Base URL of the model hub weights are fetched from
        thread_isolation: Whether helper threads may share memory safely.
            When False the CPU backend is clamped to a single thread.
        max_output_pixels: Upper bound on output width*height
        download_timeout: Per-request timeout (seconds) for weight downloads
        log_level: Logging level name for the server
    """
    models_dir: Path = field(
        default_factory=lambda: Path(os.path.expanduser(DEFAULT_MODELS_DIR))
    )
    hub_url: str = DEFAULT_HUB_URL
    thread_isolation: bool = False
    max_output_pixels: int = DEFAULT_MAX_OUTPUT_PIXELS
    download_timeout: float = DEFAULT_DOWNLOAD_TIMEOUT
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "WorkerSettings":
        """Build settings from environment variables.

        Args:
            environ: Mapping to read from (defaults to ``os.environ``)

        Returns:
            WorkerSettings with defaults for unset variables

        Raises:
            ValueError: A numeric variable is malformed or not positive; the
                message names the variable
        """
        env = os.environ if environ is None else environ
        models_dir = env.get("UPSCALE_MODELS_DIR") or DEFAULT_MODELS_DIR
        return cls(
            models_dir=Path(os.path.expanduser(models_dir)),
            hub_url=(env.get("UPSCALE_HUB_URL") or DEFAULT_HUB_URL).rstrip("/"),
            thread_isolation=_env_bool(env.get("UPSCALE_THREAD_ISOLATION"), False),
            max_output_pixels=_env_number(
                env, "UPSCALE_MAX_OUTPUT_PIXELS", DEFAULT_MAX_OUTPUT_PIXELS, int
            ),
            download_timeout=_env_number(
                env, "UPSCALE_DOWNLOAD_TIMEOUT", DEFAULT_DOWNLOAD_TIMEOUT, float
            ),
            log_level=log_level_from_env(env),
        )


__all__ = ["WorkerSettings", "log_level_from_env"]
