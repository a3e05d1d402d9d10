"""Render dispatch engine.

Jobs are resolved into frame sets, decomposed into tasks and pushed to
connected slaves by :class:`~atlas_dispatch.dispatch.engine.RenderDispatcher`.
Every delivery is an attempt; storage is the source of truth, the in-memory
queue is rebuilt from it by ``recover()``.
"""
