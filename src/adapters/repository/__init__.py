"""Repository adapters - Database and in-memory implementations."""

from .memory import InMemoryStore
from .postgres import (
    PostgresAttendanceRepository,
    PostgresIdentityRepository,
    PostgresVerificationRepository,
    run_migrations,
)

__all__ = [
    "InMemoryStore",
    "PostgresAttendanceRepository",
    "PostgresIdentityRepository",
    "PostgresVerificationRepository",
    "run_migrations",
]
