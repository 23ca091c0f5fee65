"""
Domain exceptions - Semantic error types for the identity and attendance core.

Every user-triggered failure carries a stable ReasonCode so that callers can
branch on it without parsing messages, and an ErrorKind that the HTTP layer
maps to a status code. Store failures are never wrapped in these types.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Failure category, independent of transport."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    RATE_LIMITED = "rate_limited"


class ReasonCode(str, Enum):
    """Stable, enumerable reason codes for user-visible failures."""

    INVALID_DOMAIN = "INVALID_DOMAIN"
    ALREADY_VERIFIED = "ALREADY_VERIFIED"
    IDENTITY_NOT_FOUND = "IDENTITY_NOT_FOUND"
    DUPLICATE_IDENTITY = "DUPLICATE_IDENTITY"
    RATE_LIMITED = "RATE_LIMITED"
    EVENT_NOT_FOUND = "EVENT_NOT_FOUND"
    EVENT_NOT_STARTED = "EVENT_NOT_STARTED"
    EVENT_ENDED = "EVENT_ENDED"
    NO_ATTENDANCE_CODE = "NO_ATTENDANCE_CODE"
    CODE_GENERATION_FAILED = "CODE_GENERATION_FAILED"
    ATTENDANCE_CODE_CONFLICT = "ATTENDANCE_CODE_CONFLICT"
    INVALID_CODE = "INVALID_CODE"
    ALREADY_ATTENDED = "ALREADY_ATTENDED"
    TOKEN_NOT_FOUND = "TOKEN_NOT_FOUND"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_ALREADY_USED = "TOKEN_ALREADY_USED"


class DomainError(Exception):
    """Base class for domain errors."""

    kind: ErrorKind = ErrorKind.CONFLICT
    reason: ReasonCode

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.reason.value)
        self.message = message or self.reason.value


# Verification


class InvalidDomain(DomainError):
    """Email is not on the institution's domain."""

    kind = ErrorKind.VALIDATION
    reason = ReasonCode.INVALID_DOMAIN


class VerificationRateLimited(DomainError):
    """A new challenge was requested while the cooldown is still running."""

    kind = ErrorKind.RATE_LIMITED
    reason = ReasonCode.RATE_LIMITED


class AlreadyVerified(DomainError):
    """The identity has already proven an institutional email."""

    reason = ReasonCode.ALREADY_VERIFIED


# Identity


class IdentityNotFound(DomainError):
    kind = ErrorKind.NOT_FOUND
    reason = ReasonCode.IDENTITY_NOT_FOUND


class DuplicateIdentity(DomainError):
    """Email, institutional email or institutional ID is already claimed."""

    reason = ReasonCode.DUPLICATE_IDENTITY


class TokenNotFound(DomainError):
    kind = ErrorKind.NOT_FOUND
    reason = ReasonCode.TOKEN_NOT_FOUND


class TokenExpired(DomainError):
    reason = ReasonCode.TOKEN_EXPIRED


class TokenAlreadyUsed(DomainError):
    reason = ReasonCode.TOKEN_ALREADY_USED


# Attendance


class EventNotFound(DomainError):
    kind = ErrorKind.NOT_FOUND
    reason = ReasonCode.EVENT_NOT_FOUND


class EventNotStarted(DomainError):
    reason = ReasonCode.EVENT_NOT_STARTED


class EventEnded(DomainError):
    reason = ReasonCode.EVENT_ENDED


class NoAttendanceCode(DomainError):
    """No code has ever been generated for the event."""

    kind = ErrorKind.NOT_FOUND
    reason = ReasonCode.NO_ATTENDANCE_CODE


class CodeGenerationFailed(DomainError):
    """Every draw collided with another event's active code."""

    reason = ReasonCode.CODE_GENERATION_FAILED


class AttendanceCodeConflict(DomainError):
    """Reactivation blocked: another event now holds the same active code."""

    reason = ReasonCode.ATTENDANCE_CODE_CONFLICT


class InvalidAttendanceCode(DomainError):
    """No event currently has this code active."""

    kind = ErrorKind.VALIDATION
    reason = ReasonCode.INVALID_CODE


class AlreadyAttended(DomainError):
    reason = ReasonCode.ALREADY_ATTENDED
