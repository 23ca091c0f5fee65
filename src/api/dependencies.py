"""
FastAPI dependencies - Dependency injection factories.

This module provides Depends() factories for injecting
domain services and infrastructure adapters into routes.
"""

from datetime import timedelta

from fastapi import Request
from psycopg_pool import ConnectionPool

from src.adapters.repository.postgres import (
    PostgresAttendanceRepository,
    PostgresIdentityRepository,
    PostgresVerificationRepository,
)
from src.adapters.smtp.console import ConsoleNotifier
from src.config.settings import get_settings
from src.domain.attendance import AttendanceService
from src.domain.codes import SecureCodeGenerator, SystemClock
from src.domain.identity import IdentityService
from src.domain.ports import AttendanceRepository, IdentityRepository, VerificationRepository
from src.domain.verification import VerificationService

# Module-level singletons - all three are stateless
_notifier = ConsoleNotifier()
_clock = SystemClock()
_code_generator = SecureCodeGenerator()


def get_pool(request: Request) -> ConnectionPool:
    """
    Get connection pool from app state.

    The pool is created during app lifespan startup and stored in app.state.
    """
    return request.app.state.pool


def _memory_store(request: Request):
    """In-memory store from app state when STORAGE_BACKEND=memory, else None."""
    return getattr(request.app.state, "store", None)


def get_verification_repository(request: Request) -> VerificationRepository:
    store = _memory_store(request)
    if store is not None:
        return store
    return PostgresVerificationRepository(get_pool(request))


def get_attendance_repository(request: Request) -> AttendanceRepository:
    store = _memory_store(request)
    if store is not None:
        return store
    return PostgresAttendanceRepository(get_pool(request))


def get_identity_repository(request: Request) -> IdentityRepository:
    store = _memory_store(request)
    if store is not None:
        return store
    return PostgresIdentityRepository(get_pool(request))


def get_notifier() -> ConsoleNotifier:
    """Get console notifier (singleton)."""
    return _notifier


def get_verification_service(request: Request) -> VerificationService:
    """
    Create verification service with injected dependencies.

    Wires together the repository, notifier and policy settings.
    """
    settings = get_settings()
    return VerificationService(
        repository=get_verification_repository(request),
        notifier=get_notifier(),
        clock=_clock,
        code_generator=_code_generator,
        institution_domain=settings.institution_email_domain,
        code_length=settings.verification_code_length,
        max_attempts=settings.max_attempts,
        lockout_policy=settings.lockout_policy,
        cooldown=timedelta(seconds=settings.cooldown_seconds),
        code_ttl=timedelta(seconds=settings.verification_ttl_seconds),
        bcrypt_cost=settings.bcrypt_cost,
    )


def get_attendance_service(request: Request) -> AttendanceService:
    settings = get_settings()
    return AttendanceService(
        repository=get_attendance_repository(request),
        clock=_clock,
        code_generator=_code_generator,
        code_length=settings.attendance_code_length,
        max_generation_attempts=settings.code_generation_max_attempts,
    )


def get_identity_service(request: Request) -> IdentityService:
    settings = get_settings()
    return IdentityService(
        repository=get_identity_repository(request),
        clock=_clock,
        code_generator=_code_generator,
        token_ttl=timedelta(seconds=settings.linking_token_ttl_seconds),
    )
