"""
Local launcher for the Blu-ray to Letterboxd development stack.

This package brings up the backend relay and the frontend dev server in order,
gating each stage on a readiness probe, and ships the relay itself as a small
FastAPI application.
"""

from __future__ import annotations

__all__ = [
    "api",
    "config",
    "health",
    "launcher",
    "main",
    "manager",
    "ports",
    "relay",
    "routing",
    "types",
]
