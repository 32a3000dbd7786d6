"""
Autofill Engine: parallel web form-fill execution core.

This package scans host capacity, pools browser instances, detects form
structure on live pages, maps stored profile data onto detected fields and
schedules many URL jobs under a bounded-concurrency session state machine.
"""

__version__ = "0.1.0"

from autofill_engine.core.models import (
    ExecutionConfig,
    ExecutionSession,
    Profile,
    SessionStatus,
)
from autofill_engine.execution.scheduler import ExecutionScheduler, SessionCommand

__all__ = [
    "ExecutionConfig",
    "ExecutionScheduler",
    "ExecutionSession",
    "Profile",
    "SessionCommand",
    "SessionStatus",
]
