"""Provide the public `mission_control` package exports."""

from __future__ import annotations

from .workflow.engine import WorkflowEngine

__all__ = ["WorkflowEngine"]
