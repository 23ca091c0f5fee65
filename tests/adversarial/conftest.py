"""
Shared fixtures for adversarial tests.

Provides common infrastructure for race condition and brute force tests:
a barrier-synchronised thread launcher and a store that counts how often
each lockout side effect actually took hold.
"""

import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any

import pytest

from src.adapters.repository.memory import InMemoryStore
from src.domain.ports import FailedAttempt, LockoutPolicy, VerificationState


class CountingStore(InMemoryStore):
    """InMemoryStore that records the lockout transitions it committed."""

    def __init__(self) -> None:
        super().__init__()
        self._count_lock = threading.Lock()
        self.rate_limits_applied = 0
        self.purges_applied = 0

    def record_failed_attempt(
        self,
        identity_id: str,
        code_hash: str,
        ceiling: int,
        policy: LockoutPolicy,
        until: datetime,
    ) -> FailedAttempt | None:
        failed = super().record_failed_attempt(identity_id, code_hash, ceiling, policy, until)
        if failed is not None:
            with self._count_lock:
                if failed.state == VerificationState.RATE_LIMITED:
                    self.rate_limits_applied += 1
                elif failed.state == VerificationState.PURGED:
                    self.purges_applied += 1
        return failed


def run_concurrently(func: Callable[[], Any], workers: int) -> list[Any]:
    """
    Run func on `workers` threads released together by a barrier.

    Exceptions are returned in place of results so callers can tally them.
    """
    barrier = threading.Barrier(workers)

    def call() -> Any:
        barrier.wait()
        try:
            return func()
        except Exception as exc:
            return exc

    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = [executor.submit(call) for _ in range(workers)]
        return [f.result() for f in futures]


@pytest.fixture
def store_class() -> type[InMemoryStore]:
    """Seeded store fixtures in this directory count lockout transitions."""
    return CountingStore


@pytest.fixture
def hammer() -> Callable[[Callable[[], Any], int], list[Any]]:
    return run_concurrently
