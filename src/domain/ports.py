"""
Port interfaces - Protocol definitions for infrastructure abstraction.

This module defines the entities, state enumerations and interfaces (ports)
that the domain requires from infrastructure. Adapters implement these
protocols structurally; none of them inherit from Protocol.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Protocol


class VerificationState(str, Enum):
    """
    Institutional email verification states.

    State Transitions:
    - PENDING -> VERIFIED      (correct code, pending row deleted)
    - PENDING -> RATE_LIMITED  (ceiling reached, rate_limit policy)
    - PENDING -> PURGED        (ceiling reached, purge policy, identity deleted)
    - RATE_LIMITED -> PENDING  (cooldown elapsed, evaluated lazily)

    Only PENDING and RATE_LIMITED are ever persisted.
    """

    PENDING = "PENDING"
    RATE_LIMITED = "RATE_LIMITED"
    VERIFIED = "VERIFIED"
    PURGED = "PURGED"


class LockoutPolicy(str, Enum):
    """What happens when the last allowed verification attempt fails."""

    RATE_LIMIT = "rate_limit"
    PURGE = "purge"


class VerifyResult(Enum):
    """Result of a verification attempt."""

    VERIFIED = "verified"
    INVALID_CODE = "invalid_code"
    RATE_LIMITED = "rate_limited"
    ACCOUNT_PURGED = "account_purged"
    EXPIRED = "expired"
    NO_PENDING_VERIFICATION = "no_pending_verification"


class AttendanceCodeState(str, Enum):
    """
    Per-event attendance code states.

    NoCode -> ACTIVE <-> INACTIVE -> SUPERSEDED

    NoCode is the absence of a code row. SUPERSEDED is terminal and is
    reached when the event ends; it is never reactivated.
    """

    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUPERSEDED = "SUPERSEDED"


class EventStatus(str, Enum):
    UPCOMING = "upcoming"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class LinkingTokenState(str, Enum):
    """ISSUED -> USED, exactly once. Expiry is evaluated against expires_at."""

    ISSUED = "ISSUED"
    USED = "USED"


class AuthProvider(str, Enum):
    GOOGLE = "GOOGLE"
    MICROSOFT = "MICROSOFT"
    EMAIL = "EMAIL"


class ChallengeWrite(Enum):
    """Result of persisting a new verification challenge."""

    ISSUED = "issued"
    RATE_LIMITED = "rate_limited"
    UNKNOWN_IDENTITY = "unknown_identity"
    ALREADY_VERIFIED = "already_verified"


class CodeInstall(Enum):
    """Result of installing or re-activating an attendance code."""

    INSTALLED = "installed"
    COLLISION = "collision"
    SUPERSEDED = "superseded"


class RecordResult(Enum):
    """Result of the unique (user, event) attendance insert."""

    RECORDED = "recorded"
    ALREADY_RECORDED = "already_recorded"
    UNKNOWN_USER = "unknown_user"
    UNKNOWN_EVENT = "unknown_event"


class LinkStatus(Enum):
    """Result of consuming a linking token."""

    LINKED = "linked"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    ALREADY_USED = "already_used"
    UNKNOWN_IDENTITY = "unknown_identity"
    DUPLICATE_EMAIL = "duplicate_email"


@dataclass(frozen=True)
class Identity:
    """Account record; email, institutional_id and institutional_email are unique."""

    id: str
    email: str
    provider: AuthProvider
    institutional_id: str | None = None
    institutional_email: str | None = None
    email_verified: bool = False
    has_completed_onboarding: bool = False
    first_name: str | None = None
    last_name: str | None = None
    points: int = 0


@dataclass(frozen=True)
class PendingVerification:
    identity_id: str
    institutional_email: str
    code_hash: str
    issued_at: datetime
    attempt_count: int = 0
    state: VerificationState = VerificationState.PENDING
    rate_limited_until: datetime | None = None

    def is_rate_limited(self, now: datetime) -> bool:
        return (
            self.state == VerificationState.RATE_LIMITED
            and self.rate_limited_until is not None
            and now < self.rate_limited_until
        )


@dataclass(frozen=True)
class FailedAttempt:
    """
    Outcome of counting one wrong code.

    state is PENDING below the ceiling, otherwise the lockout that was
    committed together with the increment: RATE_LIMITED or PURGED.
    """

    attempt_count: int
    state: VerificationState


@dataclass(frozen=True)
class Event:
    id: str
    name: str
    points_value: int
    start_time: datetime
    end_time: datetime | None = None
    status: EventStatus = EventStatus.UPCOMING

    def has_started(self, now: datetime) -> bool:
        return now >= self.start_time

    def has_ended(self, now: datetime) -> bool:
        """An event without end_time stays open until explicitly ended."""
        if self.status in (EventStatus.COMPLETED, EventStatus.CANCELLED):
            return True
        return self.end_time is not None and now >= self.end_time


@dataclass(frozen=True)
class AttendanceCode:
    event_id: str
    code: str
    state: AttendanceCodeState
    generated_at: datetime
    generated_by: str

    @property
    def active(self) -> bool:
        return self.state == AttendanceCodeState.ACTIVE


@dataclass(frozen=True)
class AttendanceRecord:
    user_id: str
    event_id: str
    points_awarded: int
    attended_at: datetime


@dataclass(frozen=True)
class LinkingToken:
    token: str
    existing_identity_id: str
    incoming_email: str
    incoming_provider: AuthProvider
    expires_at: datetime
    state: LinkingTokenState = LinkingTokenState.ISSUED

    @property
    def used(self) -> bool:
        return self.state == LinkingTokenState.USED

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def mark_used(self) -> "LinkingToken":
        return replace(self, state=LinkingTokenState.USED)


class Clock(Protocol):
    """Port interface for the current instant (timezone-aware UTC)."""

    def now(self) -> datetime: ...


class CodeGenerator(Protocol):
    """Port interface for cryptographically secure codes and tokens."""

    def numeric_code(self, length: int) -> str:
        """Fixed-width decimal string, leading zeros preserved."""
        ...

    def token(self) -> str:
        """Opaque, unguessable, URL-safe token."""
        ...


class Notifier(Protocol):
    """Port interface for outbound code delivery (fire-and-forget)."""

    def send_code(self, email: str, code: str) -> None:
        """
        Deliver a raw verification code.

        Args:
            email: Recipient institutional email address
            code: Raw numeric verification code
        """
        ...


class VerificationRepository(Protocol):
    """Port interface for pending verification persistence."""

    def find_institutional_email_owner(self, institutional_email: str) -> str | None:
        """Return the id of the identity that verified this email, if any."""
        ...

    def upsert_challenge(
        self, identity_id: str, institutional_email: str, code_hash: str, issued_at: datetime
    ) -> ChallengeWrite:
        """
        Create or reset the pending verification for an identity.

        Resets attempt_count to 0 and state to PENDING. Must not overwrite a
        RATE_LIMITED record whose cooldown is still running at issued_at, and
        must not open a challenge for an identity that is already verified.
        """
        ...

    def get_pending(self, identity_id: str) -> PendingVerification | None: ...

    def release_rate_limit(self, identity_id: str, now: datetime) -> bool:
        """Atomically move RATE_LIMITED -> PENDING (attempts reset) once the cooldown passed."""
        ...

    def record_failed_attempt(
        self,
        identity_id: str,
        code_hash: str,
        ceiling: int,
        policy: LockoutPolicy,
        until: datetime,
    ) -> FailedAttempt | None:
        """
        Atomically count a wrong code and apply the lockout at the ceiling.

        The increment only applies while the record is PENDING and still
        holds code_hash. When the new count reaches ceiling, the lockout is
        committed in the same unit: RATE_LIMIT moves the record to
        RATE_LIMITED until `until`; PURGE deletes the unverified identity
        and, through it, the pending record. A verified identity is never
        deleted; it is rate limited instead.

        Returns None if the condition did not hold.
        """
        ...

    def complete_verification(self, identity_id: str, code_hash: str) -> bool:
        """
        Delete the PENDING record holding code_hash and mark the identity verified.

        Returns False if no such record exists. Raises DuplicateIdentity if
        another identity owns the institutional email.
        """
        ...

    def purge_unverified_identity(self, identity_id: str) -> bool:
        """Delete an identity (and its pending verification) unless it is verified."""
        ...


class AttendanceRepository(Protocol):
    """Port interface for event codes and attendance records."""

    def get_event(self, event_id: str) -> Event | None: ...

    def get_code(self, event_id: str) -> AttendanceCode | None: ...

    def supersede_ended_codes(self, now: datetime) -> int:
        """Mark codes of ended events SUPERSEDED. Returns the number of codes changed."""
        ...

    def install_code(
        self, event_id: str, code: str, generated_by: str, generated_at: datetime
    ) -> CodeInstall:
        """
        Install code as the event's single ACTIVE code, replacing any previous one.

        Returns COLLISION if another event holds the same code ACTIVE, and
        SUPERSEDED if the event's code is already superseded.
        """
        ...

    def set_code_state(self, event_id: str, state: AttendanceCodeState) -> CodeInstall:
        """Switch between ACTIVE and INACTIVE; never touches a SUPERSEDED code."""
        ...

    def find_event_by_active_code(self, code: str) -> Event | None: ...

    def record_attendance(
        self, user_id: str, event_id: str, points: int, attended_at: datetime
    ) -> RecordResult:
        """
        Insert the (user, event) record and add points to the user atomically.

        The unique (user_id, event_id) key admits exactly one insert. Reports
        UNKNOWN_USER or UNKNOWN_EVENT when the referenced row does not exist.
        """
        ...

    def has_attended(self, user_id: str, event_id: str) -> bool: ...

    def end_event(self, event_id: str, now: datetime) -> Event | None:
        """Set end_time if unset, mark completed and supersede the code."""
        ...


class IdentityRepository(Protocol):
    """Port interface for identity lookups and linking tokens."""

    def get_identity(self, identity_id: str) -> Identity | None: ...

    def find_by_email(self, email: str) -> Identity | None: ...

    def find_by_institutional_id(
        self, institutional_id: str, exclude_identity_id: str | None = None
    ) -> Identity | None: ...

    def find_by_institutional_email(self, institutional_email: str) -> Identity | None: ...

    def create_linking_token(self, token: LinkingToken) -> None: ...

    def get_linking_token(self, token: str) -> LinkingToken | None: ...

    def consume_linking_token(
        self, token: str, now: datetime
    ) -> tuple[LinkStatus, Identity | None]:
        """
        Mark the token USED and rewrite the identity's email/provider in one transaction.

        Checks, in order: exists, not used, not expired, identity exists,
        incoming email not owned by another identity. Nothing is committed
        unless every check passes.
        """
        ...

    def delete_expired_tokens(self, now: datetime) -> int: ...
