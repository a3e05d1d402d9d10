"""Slave-side render backends."""

from atlas_dispatch.dispatch.backend.base import RenderBackend, RenderRequest, RenderResult
from atlas_dispatch.dispatch.backend.command import BackendRunError, CommandRenderBackend

__all__ = [
    "BackendRunError",
    "CommandRenderBackend",
    "RenderBackend",
    "RenderRequest",
    "RenderResult",
]
