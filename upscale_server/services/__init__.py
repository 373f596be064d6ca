"""Worker services: capability probe, pipeline cache, tiling and dispatch."""
