"""
Shared test fixtures and configuration.

This module provides pytest fixtures for:
- A controllable clock and scripted code generator
- An in-memory store seeded with identities and events
- Domain services wired to that store (low bcrypt cost for speed)
"""

import threading
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta

import pytest

from src.adapters.repository.memory import InMemoryStore
from src.domain.attendance import AttendanceService
from src.domain.codes import SecureCodeGenerator
from src.domain.identity import IdentityService
from src.domain.ports import AuthProvider, Event, EventStatus, Identity
from src.domain.verification import VerificationService

T0 = datetime(2026, 3, 2, 18, 0, tzinfo=UTC)


class FixedClock:
    """Clock that only moves when told to. Thread-safe."""

    def __init__(self, start: datetime = T0) -> None:
        self._now = start
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, delta: timedelta) -> None:
        with self._lock:
            self._now += delta

    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = value


class ScriptedCodeGenerator:
    """
    Returns scripted numeric codes first, then falls back to real draws.

    Lets tests force collisions and know the code that was emailed.
    """

    def __init__(self, codes: Iterable[str] = ()) -> None:
        self._codes = list(codes)
        self._lock = threading.Lock()
        self._fallback = SecureCodeGenerator()
        self.issued: list[str] = []

    def script(self, *codes: str) -> None:
        with self._lock:
            self._codes.extend(codes)

    def numeric_code(self, length: int) -> str:
        with self._lock:
            code = self._codes.pop(0) if self._codes else self._fallback.numeric_code(length)
            self.issued.append(code)
            return code

    def token(self) -> str:
        return self._fallback.token()


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    def send_code(self, email: str, code: str) -> None:
        self.sent.append((email, code))

    @property
    def last_code(self) -> str:
        return self.sent[-1][1]


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def codes() -> ScriptedCodeGenerator:
    return ScriptedCodeGenerator()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def store_class() -> type[InMemoryStore]:
    return InMemoryStore


@pytest.fixture
def store(store_class: type[InMemoryStore]) -> InMemoryStore:
    """Store seeded with alice (unverified Google sign-in) and bob (verified)."""
    store = store_class()
    store.add_identity(Identity(id="alice", email="alice@gmail.com", provider=AuthProvider.GOOGLE))
    store.add_identity(
        Identity(
            id="bob",
            email="bob@gmail.com",
            provider=AuthProvider.GOOGLE,
            institutional_id="R12345678",
            institutional_email="bob@ttu.edu",
            email_verified=True,
        )
    )
    store.add_event(
        Event(
            id="evt-1",
            name="General Meeting",
            points_value=10,
            start_time=T0 - timedelta(minutes=30),
            end_time=T0 + timedelta(hours=2),
            status=EventStatus.ONGOING,
        )
    )
    store.add_event(
        Event(
            id="evt-2",
            name="Career Fair",
            points_value=25,
            start_time=T0 - timedelta(minutes=10),
            status=EventStatus.ONGOING,
        )
    )
    store.add_event(
        Event(
            id="evt-future",
            name="Spring Social",
            points_value=5,
            start_time=T0 + timedelta(days=1),
        )
    )
    return store


@pytest.fixture
def verification_service(
    store: InMemoryStore,
    notifier: RecordingNotifier,
    clock: FixedClock,
    codes: ScriptedCodeGenerator,
) -> VerificationService:
    return VerificationService(
        repository=store,
        notifier=notifier,
        clock=clock,
        code_generator=codes,
        bcrypt_cost=4,
    )


@pytest.fixture
def attendance_service(
    store: InMemoryStore, clock: FixedClock, codes: ScriptedCodeGenerator
) -> AttendanceService:
    return AttendanceService(repository=store, clock=clock, code_generator=codes)


@pytest.fixture
def identity_service(
    store: InMemoryStore, clock: FixedClock, codes: ScriptedCodeGenerator
) -> IdentityService:
    return IdentityService(repository=store, clock=clock, code_generator=codes)
