"""
Domain layer - Pure business logic with zero framework imports.

This package contains the identity and attendance integrity core: email
verification, attendance codes, and identity deduplication/linking. It
defines its own port interfaces for infrastructure abstraction, ensuring
true hexagonal architecture decoupling.
"""

from .attendance import AttendanceResult, AttendanceService
from .codes import SecureCodeGenerator, SystemClock
from .exceptions import DomainError, ErrorKind, ReasonCode
from .identity import IdentityService, LinkResult, RegistrationDecision, RegistrationOutcome
from .ports import (
    AttendanceRepository,
    Clock,
    CodeGenerator,
    IdentityRepository,
    LockoutPolicy,
    Notifier,
    VerificationRepository,
    VerifyResult,
)
from .verification import VerificationOutcome, VerificationService

__all__ = [
    "AttendanceRepository",
    "AttendanceResult",
    "AttendanceService",
    "Clock",
    "CodeGenerator",
    "DomainError",
    "ErrorKind",
    "IdentityRepository",
    "IdentityService",
    "LinkResult",
    "LockoutPolicy",
    "Notifier",
    "ReasonCode",
    "RegistrationDecision",
    "RegistrationOutcome",
    "SecureCodeGenerator",
    "SystemClock",
    "VerificationOutcome",
    "VerificationRepository",
    "VerificationService",
    "VerifyResult",
]
