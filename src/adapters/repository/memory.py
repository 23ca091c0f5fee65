"""
In-memory repository adapter - Implements all three repository protocols.

Every operation runs under one lock, so each method is an atomic unit
exactly like the conditional statements of the PostgreSQL adapter. Used for
local development (STORAGE_BACKEND=memory) and concurrency tests.

Unique keys mirrored from the SQL schema:
- identities: email, institutional_id, institutional_email
- attendance_codes: code among ACTIVE codes
- attendance_records: (user_id, event_id)
- linking_tokens: token
"""

import threading
from dataclasses import replace
from datetime import datetime

from src.domain.exceptions import DuplicateIdentity
from src.domain.ports import (
    AttendanceCode,
    AttendanceCodeState,
    AttendanceRecord,
    ChallengeWrite,
    CodeInstall,
    Event,
    EventStatus,
    FailedAttempt,
    Identity,
    LinkingToken,
    LinkStatus,
    LockoutPolicy,
    PendingVerification,
    RecordResult,
    VerificationState,
)


class InMemoryStore:
    """
    Implements VerificationRepository, AttendanceRepository and
    IdentityRepository protocols over plain dictionaries.

    Uses structural subtyping - no explicit inheritance from Protocol.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._identities: dict[str, Identity] = {}
        self._pending: dict[str, PendingVerification] = {}
        self._events: dict[str, Event] = {}
        self._codes: dict[str, AttendanceCode] = {}
        self._records: dict[tuple[str, str], AttendanceRecord] = {}
        self._tokens: dict[str, LinkingToken] = {}

    # Seeding (identity and event CRUD lives outside the core)

    def add_identity(self, identity: Identity) -> None:
        with self._lock:
            for other in self._identities.values():
                if other.id != identity.id and self._shares_unique_key(other, identity):
                    raise DuplicateIdentity("Identity unique key already claimed")
            self._identities[identity.id] = identity

    def add_event(self, event: Event) -> None:
        with self._lock:
            self._events[event.id] = event

    def attendance_records(self, event_id: str | None = None) -> list[AttendanceRecord]:
        with self._lock:
            return [r for r in self._records.values() if event_id is None or r.event_id == event_id]

    # VerificationRepository

    def find_institutional_email_owner(self, institutional_email: str) -> str | None:
        with self._lock:
            owner = self._by_institutional_email(institutional_email)
            return owner.id if owner else None

    def upsert_challenge(
        self, identity_id: str, institutional_email: str, code_hash: str, issued_at: datetime
    ) -> ChallengeWrite:
        with self._lock:
            identity = self._identities.get(identity_id)
            if identity is None:
                return ChallengeWrite.UNKNOWN_IDENTITY
            if identity.email_verified:
                return ChallengeWrite.ALREADY_VERIFIED
            current = self._pending.get(identity_id)
            if current is not None and current.is_rate_limited(issued_at):
                return ChallengeWrite.RATE_LIMITED
            self._pending[identity_id] = PendingVerification(
                identity_id=identity_id,
                institutional_email=institutional_email,
                code_hash=code_hash,
                issued_at=issued_at,
            )
            return ChallengeWrite.ISSUED

    def get_pending(self, identity_id: str) -> PendingVerification | None:
        with self._lock:
            return self._pending.get(identity_id)

    def release_rate_limit(self, identity_id: str, now: datetime) -> bool:
        with self._lock:
            current = self._pending.get(identity_id)
            if (
                current is None
                or current.state != VerificationState.RATE_LIMITED
                or current.is_rate_limited(now)
            ):
                return False
            self._pending[identity_id] = replace(
                current,
                state=VerificationState.PENDING,
                attempt_count=0,
                rate_limited_until=None,
            )
            return True

    def record_failed_attempt(
        self,
        identity_id: str,
        code_hash: str,
        ceiling: int,
        policy: LockoutPolicy,
        until: datetime,
    ) -> FailedAttempt | None:
        with self._lock:
            current = self._pending.get(identity_id)
            if (
                current is None
                or current.state != VerificationState.PENDING
                or current.code_hash != code_hash
            ):
                return None
            count = current.attempt_count + 1
            if count < ceiling:
                self._pending[identity_id] = replace(current, attempt_count=count)
                return FailedAttempt(count, VerificationState.PENDING)

            identity = self._identities.get(identity_id)
            if policy == LockoutPolicy.PURGE and (identity is None or not identity.email_verified):
                self._delete_identity(identity_id)
                return FailedAttempt(count, VerificationState.PURGED)
            self._pending[identity_id] = replace(
                current,
                attempt_count=count,
                state=VerificationState.RATE_LIMITED,
                rate_limited_until=until,
            )
            return FailedAttempt(count, VerificationState.RATE_LIMITED)

    def complete_verification(self, identity_id: str, code_hash: str) -> bool:
        with self._lock:
            current = self._pending.get(identity_id)
            if (
                current is None
                or current.state != VerificationState.PENDING
                or current.code_hash != code_hash
            ):
                return False
            identity = self._identities.get(identity_id)
            if identity is None:
                return False
            owner = self._by_institutional_email(current.institutional_email)
            if owner is not None and owner.id != identity_id:
                raise DuplicateIdentity("Institutional email is already registered")
            self._identities[identity_id] = replace(
                identity, email_verified=True, institutional_email=current.institutional_email
            )
            del self._pending[identity_id]
            return True

    def purge_unverified_identity(self, identity_id: str) -> bool:
        with self._lock:
            identity = self._identities.get(identity_id)
            if identity is None or identity.email_verified:
                return False
            self._delete_identity(identity_id)
            return True

    # AttendanceRepository

    def get_event(self, event_id: str) -> Event | None:
        with self._lock:
            return self._events.get(event_id)

    def get_code(self, event_id: str) -> AttendanceCode | None:
        with self._lock:
            return self._codes.get(event_id)

    def supersede_ended_codes(self, now: datetime) -> int:
        with self._lock:
            changed = 0
            for event_id, code in list(self._codes.items()):
                event = self._events.get(event_id)
                if code.state != AttendanceCodeState.SUPERSEDED and event and event.has_ended(now):
                    self._codes[event_id] = replace(code, state=AttendanceCodeState.SUPERSEDED)
                    changed += 1
            return changed

    def install_code(
        self, event_id: str, code: str, generated_by: str, generated_at: datetime
    ) -> CodeInstall:
        with self._lock:
            current = self._codes.get(event_id)
            if current is not None and current.state == AttendanceCodeState.SUPERSEDED:
                return CodeInstall.SUPERSEDED
            if self._active_code_holder(code, excluding=event_id) is not None:
                return CodeInstall.COLLISION
            self._codes[event_id] = AttendanceCode(
                event_id=event_id,
                code=code,
                state=AttendanceCodeState.ACTIVE,
                generated_at=generated_at,
                generated_by=generated_by,
            )
            return CodeInstall.INSTALLED

    def set_code_state(self, event_id: str, state: AttendanceCodeState) -> CodeInstall:
        with self._lock:
            current = self._codes.get(event_id)
            if current is None or current.state == AttendanceCodeState.SUPERSEDED:
                return CodeInstall.SUPERSEDED
            if (
                state == AttendanceCodeState.ACTIVE
                and self._active_code_holder(current.code, excluding=event_id) is not None
            ):
                return CodeInstall.COLLISION
            self._codes[event_id] = replace(current, state=state)
            return CodeInstall.INSTALLED

    def find_event_by_active_code(self, code: str) -> Event | None:
        with self._lock:
            holder = self._active_code_holder(code)
            return self._events.get(holder) if holder else None

    def record_attendance(
        self, user_id: str, event_id: str, points: int, attended_at: datetime
    ) -> RecordResult:
        with self._lock:
            if (user_id, event_id) in self._records:
                return RecordResult.ALREADY_RECORDED
            identity = self._identities.get(user_id)
            if identity is None:
                return RecordResult.UNKNOWN_USER
            if event_id not in self._events:
                return RecordResult.UNKNOWN_EVENT
            self._records[(user_id, event_id)] = AttendanceRecord(
                user_id=user_id,
                event_id=event_id,
                points_awarded=points,
                attended_at=attended_at,
            )
            self._identities[user_id] = replace(identity, points=identity.points + points)
            return RecordResult.RECORDED

    def has_attended(self, user_id: str, event_id: str) -> bool:
        with self._lock:
            return (user_id, event_id) in self._records

    def end_event(self, event_id: str, now: datetime) -> Event | None:
        with self._lock:
            event = self._events.get(event_id)
            if event is None:
                return None
            status = EventStatus.COMPLETED
            if event.status == EventStatus.CANCELLED:
                status = EventStatus.CANCELLED
            end_time = now if event.end_time is None or event.end_time > now else event.end_time
            ended = replace(event, end_time=end_time, status=status)
            self._events[event_id] = ended
            code = self._codes.get(event_id)
            if code is not None:
                self._codes[event_id] = replace(code, state=AttendanceCodeState.SUPERSEDED)
            return ended

    # IdentityRepository

    def get_identity(self, identity_id: str) -> Identity | None:
        with self._lock:
            return self._identities.get(identity_id)

    def find_by_email(self, email: str) -> Identity | None:
        with self._lock:
            return next((i for i in self._identities.values() if i.email == email), None)

    def find_by_institutional_id(
        self, institutional_id: str, exclude_identity_id: str | None = None
    ) -> Identity | None:
        with self._lock:
            return next(
                (
                    i
                    for i in self._identities.values()
                    if i.institutional_id == institutional_id and i.id != exclude_identity_id
                ),
                None,
            )

    def find_by_institutional_email(self, institutional_email: str) -> Identity | None:
        with self._lock:
            return self._by_institutional_email(institutional_email)

    def create_linking_token(self, token: LinkingToken) -> None:
        with self._lock:
            if token.token in self._tokens:
                raise ValueError("linking token already exists")
            self._tokens[token.token] = token

    def get_linking_token(self, token: str) -> LinkingToken | None:
        with self._lock:
            return self._tokens.get(token)

    def consume_linking_token(
        self, token: str, now: datetime
    ) -> tuple[LinkStatus, Identity | None]:
        with self._lock:
            found = self._tokens.get(token)
            if found is None:
                return LinkStatus.NOT_FOUND, None
            if found.used:
                return LinkStatus.ALREADY_USED, None
            if found.is_expired(now):
                return LinkStatus.EXPIRED, None
            identity = self._identities.get(found.existing_identity_id)
            if identity is None:
                return LinkStatus.UNKNOWN_IDENTITY, None
            holder = next(
                (i for i in self._identities.values() if i.email == found.incoming_email), None
            )
            if holder is not None and holder.id != identity.id:
                return LinkStatus.DUPLICATE_EMAIL, None

            linked = replace(
                identity, email=found.incoming_email, provider=found.incoming_provider
            )
            self._identities[identity.id] = linked
            self._tokens[token] = found.mark_used()
            return LinkStatus.LINKED, linked

    def delete_expired_tokens(self, now: datetime) -> int:
        with self._lock:
            expired = [k for k, t in self._tokens.items() if t.is_expired(now)]
            for key in expired:
                del self._tokens[key]
            return len(expired)

    # Helpers (caller holds the lock)

    def _by_institutional_email(self, institutional_email: str) -> Identity | None:
        return next(
            (
                i
                for i in self._identities.values()
                if i.institutional_email == institutional_email
            ),
            None,
        )

    def _delete_identity(self, identity_id: str) -> None:
        """Remove an identity and its dependents, mirroring ON DELETE CASCADE."""
        self._identities.pop(identity_id, None)
        self._pending.pop(identity_id, None)
        self._tokens = {
            k: t for k, t in self._tokens.items() if t.existing_identity_id != identity_id
        }
        self._records = {k: r for k, r in self._records.items() if r.user_id != identity_id}

    def _active_code_holder(self, code: str, excluding: str | None = None) -> str | None:
        for event_id, current in self._codes.items():
            if event_id != excluding and current.code == code and current.active:
                return event_id
        return None

    @staticmethod
    def _shares_unique_key(a: Identity, b: Identity) -> bool:
        if a.email == b.email:
            return True
        if a.institutional_id is not None and a.institutional_id == b.institutional_id:
            return True
        return a.institutional_email is not None and a.institutional_email == b.institutional_email
