"""Core workflow module - run status and summary types shared by the
in-process pipeline and the Temporal workflow.
"""

from core.workflow.base import (
    RunStatus,
    RunSummary,
)

__all__ = [
    "RunStatus",
    "RunSummary",
]
