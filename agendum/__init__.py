"""
Agendum — durable, time-based job scheduling with at-least-once execution.

Public API:
    from agendum import Scheduler, AgendumConfig, ExecutionResult
"""

__version__ = "0.1.0"

# Core
from agendum.core.config import AgendumConfig
from agendum.core.errors import (
    AgendumError,
    ConfigError,
    ExecutorFailure,
    StoreUnavailable,
    UnknownKindError,
    ValidationError,
)

# Scheduling
from agendum.scheduler.api import Scheduler
from agendum.scheduler.job import Job, JobState
from agendum.scheduler.poller import Poller

# Executors
from agendum.executors.registry import ExecutionResult, ExecutorRegistry

# Stores
from agendum.store.base import JobStore
from agendum.store.memory import InMemoryJobStore
from agendum.store.sqlite import SQLiteJobStore

__all__ = [
    # Core
    "AgendumConfig",
    "AgendumError",
    "ConfigError",
    "ExecutorFailure",
    "StoreUnavailable",
    "UnknownKindError",
    "ValidationError",
    # Scheduling
    "Scheduler",
    "Job",
    "JobState",
    "Poller",
    # Executors
    "ExecutionResult",
    "ExecutorRegistry",
    # Stores
    "JobStore",
    "InMemoryJobStore",
    "SQLiteJobStore",
]
