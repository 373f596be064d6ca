"""Tiled image super-resolution worker and server."""

__version__ = "0.1.0"
