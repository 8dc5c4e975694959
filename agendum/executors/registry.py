"""
Executor Registry — maps a job kind to the function that does the work.

The host application registers one executor per kind; the poller
resolves it at dispatch time.  An executor takes the job payload and
returns an ExecutionResult (or raises).  Sync executors run in the
default thread pool so they never block the poll loop.

The registry does not retry.  Retry policy lives in the poller.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Union

from agendum.core.errors import ExecutorFailure, UnknownKindError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one executor invocation."""

    success: bool
    output: Any = None
    error: str | None = None

    @classmethod
    def ok(cls, output: Any = None) -> "ExecutionResult":
        return cls(success=True, output=output)

    @classmethod
    def fail(cls, error: str) -> "ExecutionResult":
        return cls(success=False, error=error)


Executor = Callable[
    [Mapping[str, Any]],
    Union[ExecutionResult, Any, Awaitable[Union[ExecutionResult, Any]]],
]


class ExecutorRegistry:
    """
    Kind → executor lookup.

    Usage:
        registry = ExecutorRegistry()
        registry.register("send email", SMTPEmailExecutor(...))

        result = await registry.dispatch("send email", job.payload)
        if not result.success:
            ...

    Return values:
        ExecutionResult  → used as-is
        anything else    → success, value kept as output
        raised exception → failure, str(exception) kept as error
    """

    def __init__(self) -> None:
        self._executors: dict[str, Executor] = {}

    def register(self, kind: str, executor: Executor) -> None:
        """
        Register an executor for a kind.

        If the kind already has an executor, it's replaced.
        """
        if not kind or not kind.strip():
            raise ValueError("Executor kind cannot be empty")
        if not callable(executor):
            raise TypeError(f"Executor for '{kind}' is not callable")
        self._executors[kind] = executor
        logger.debug(f"Registered executor {kind!r}")

    def get(self, kind: str) -> Executor:
        """
        Get the executor for a kind.

        Raises:
            UnknownKindError: If nothing is registered for kind
        """
        try:
            return self._executors[kind]
        except KeyError:
            raise UnknownKindError(kind) from None

    async def dispatch(self, kind: str, payload: Mapping[str, Any]) -> ExecutionResult:
        """
        Run the executor for kind once.

        Raises UnknownKindError before anything runs; every other failure
        comes back as a failed ExecutionResult.
        """
        executor = self.get(kind)
        try:
            if _is_async(executor):
                outcome = await executor(payload)
            else:
                loop = asyncio.get_running_loop()
                outcome = await loop.run_in_executor(
                    None, functools.partial(executor, payload)
                )
                if inspect.isawaitable(outcome):
                    outcome = await outcome
        except ExecutorFailure as e:
            return ExecutionResult.fail(e.message)
        except Exception as e:
            logger.debug(f"Executor {kind!r} raised {type(e).__name__}: {e}")
            return ExecutionResult.fail(f"{type(e).__name__}: {e}")

        if isinstance(outcome, ExecutionResult):
            return outcome
        return ExecutionResult.ok(outcome)

    def has(self, kind: str) -> bool:
        """Check if an executor is registered for kind."""
        return kind in self._executors

    def kinds(self) -> list[str]:
        """List registered kinds, in registration order."""
        return list(self._executors)

    def remove(self, kind: str) -> None:
        """Remove the executor for a kind."""
        if self._executors.pop(kind, None) is not None:
            logger.debug(f"Removed executor {kind!r}")

    def clear(self) -> None:
        """Remove all executors. Used in testing."""
        self._executors.clear()


def _is_async(executor: Executor) -> bool:
    if inspect.iscoroutinefunction(executor):
        return True
    call = getattr(executor, "__call__", None)
    return call is not None and inspect.iscoroutinefunction(call)
