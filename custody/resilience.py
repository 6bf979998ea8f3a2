"""
Bounded waits for ledger submissions.

``Timeout`` runs a call on a worker thread and stops waiting after a fixed
number of seconds. The call itself keeps running: a submission cannot be
revoked once sent, which is why a timeout is reported as an indeterminate
outcome rather than a failure.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import concurrent.futures
import threading
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

T = TypeVar("T")


class OperationTimeout(Exception):
    """Raised when a call exceeds its time bound."""
    def __init__(self, operation: str, timeout_seconds: float):
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Operation '{operation}' timed out after {timeout_seconds}s")


@dataclass
class TimeoutMetrics:
    """Timeout metrics."""
    total_calls: int = 0
    successful_calls: int = 0
    timed_out_calls: int = 0
    total_duration_seconds: float = 0.0


class Timeout:
    """
    Timeout pattern for bounded latency.

    Example:
        timeout = Timeout(seconds=30.0, name="commit")
        raw = timeout.execute(lambda: client.execute(signed, options))

    A timed-out call is abandoned, not interrupted: the worker thread is
    left to finish in the background.
    """

    def __init__(self, seconds: float, name: str = "operation"):
        self.seconds = seconds
        self.name = name
        self._metrics = TimeoutMetrics()
        self._lock = threading.Lock()

    @property
    def metrics(self) -> TimeoutMetrics:
        """Current timeout metrics."""
        with self._lock:
            return TimeoutMetrics(
                total_calls=self._metrics.total_calls,
                successful_calls=self._metrics.successful_calls,
                timed_out_calls=self._metrics.timed_out_calls,
                total_duration_seconds=self._metrics.total_duration_seconds,
            )

    def execute(self, func: Callable[[], T]) -> T:
        """Execute function with timeout."""
        with self._lock:
            self._metrics.total_calls += 1

        start_time = time.monotonic()

        executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
        try:
            future = executor.submit(func)
            try:
                result = future.result(timeout=self.seconds)
            except concurrent.futures.TimeoutError:
                with self._lock:
                    self._metrics.timed_out_calls += 1
                raise OperationTimeout(self.name, self.seconds)
            duration = time.monotonic() - start_time
            with self._lock:
                self._metrics.successful_calls += 1
                self._metrics.total_duration_seconds += duration
            return result
        finally:
            # Do not block on an abandoned call.
            executor.shutdown(wait=False)


@dataclass(frozen=True)
class ReconcilePolicy:
    """How long to wait for a commit and how often to resubmit an unlanded operation."""
    commit_timeout_seconds: float = 30.0
    max_resubmits: int = 1

    @classmethod
    def from_config(cls, config) -> "ReconcilePolicy":
        return cls(
            commit_timeout_seconds=config.commit_timeout_seconds,
            max_resubmits=config.max_resubmits,
        )
