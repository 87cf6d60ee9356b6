"""Provide the public `feature_orchestrator` package exports."""

from __future__ import annotations

from .service import OrchestratorService

__all__ = ["OrchestratorService"]
