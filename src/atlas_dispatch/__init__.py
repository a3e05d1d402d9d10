"""Render farm dispatch engine: frame decomposition, attempts, and worker dispatch."""

__version__ = "0.1.0"
