"""
telerelay Agent Modules

Background task ownership and cancellation helpers.
"""

from .agent_exceptions import AsyncExceptionHandler
from .task_manager import TaskManager

__all__ = [
    "AsyncExceptionHandler",
    "TaskManager",
]
