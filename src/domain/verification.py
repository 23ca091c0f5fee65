"""
Verification domain service - institutional email challenge/response.

Proves that a person controls an address on the institution's domain with a
one-time numeric code, without letting an attacker brute-force the code.

Verification State Machine
==========================

States:
- PENDING: challenge issued, attempts remaining
- RATE_LIMITED: attempt ceiling reached, cooldown running (rate_limit policy)
- VERIFIED: correct code submitted (pending record deleted)
- PURGED: attempt ceiling reached, identity deleted (purge policy)

Transitions:
    PENDING -> VERIFIED       (code matches)
    PENDING -> PENDING        (mismatch below the ceiling, attempt_count + 1)
    PENDING -> RATE_LIMITED   (mismatch reaching the ceiling, rate_limit policy)
    PENDING -> PURGED         (mismatch reaching the ceiling, purge policy)
    RATE_LIMITED -> PENDING   (cooldown elapsed, checked lazily on next attempt)

The attempt counter is only ever changed by the repository's conditional
increment, and the increment that reaches the ceiling commits the lockout
in the same atomic unit. The lockout therefore fires exactly once and is
never left half applied. Identities that already verified cannot open a
challenge, so the purge policy only ever deletes unverified identities.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

import bcrypt

from .exceptions import (
    AlreadyVerified,
    DuplicateIdentity,
    IdentityNotFound,
    InvalidDomain,
    VerificationRateLimited,
)
from .ports import (
    ChallengeWrite,
    Clock,
    CodeGenerator,
    FailedAttempt,
    LockoutPolicy,
    Notifier,
    PendingVerification,
    VerificationRepository,
    VerificationState,
    VerifyResult,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerificationOutcome:
    """Result of submit_attempt, suitable for direct display."""

    result: VerifyResult
    remaining_attempts: int = 0
    retry_after: datetime | None = None


@dataclass
class VerificationService:
    """
    Domain service for institutional email verification.

    Orchestrates code generation, hashing, delivery and the bounded-attempt
    state machine. Holds no state across calls.
    """

    repository: VerificationRepository
    notifier: Notifier
    clock: Clock
    code_generator: CodeGenerator
    institution_domain: str = "ttu.edu"
    code_length: int = 6
    max_attempts: int = 3
    lockout_policy: LockoutPolicy = LockoutPolicy.RATE_LIMIT
    cooldown: timedelta = timedelta(minutes=5)
    code_ttl: timedelta = timedelta(minutes=10)
    bcrypt_cost: int = 10

    def request_challenge(self, identity_id: str, institutional_email: str) -> None:
        """
        Issue a new verification code and send it to the institutional email.

        Only the code's bcrypt hash is stored. Delivery failures are logged
        and do not roll back the challenge; the user can request another.

        Args:
            identity_id: Identity awaiting verification
            institutional_email: Address on the institution's domain

        Raises:
            InvalidDomain: Email is not on the institution's domain
            DuplicateIdentity: Another identity already verified this email
            IdentityNotFound: Identity does not exist
            AlreadyVerified: Identity has already verified an institutional email
            VerificationRateLimited: Cooldown from a previous lockout is running
        """
        email = self._normalize_email(institutional_email)
        self._validate_domain(email)

        owner = self.repository.find_institutional_email_owner(email)
        if owner is not None and owner != identity_id:
            raise DuplicateIdentity("Institutional email is already registered")

        code = self.code_generator.numeric_code(self.code_length)
        written = self.repository.upsert_challenge(
            identity_id, email, self._hash_code(code), self.clock.now()
        )
        if written == ChallengeWrite.UNKNOWN_IDENTITY:
            raise IdentityNotFound(f"Identity {identity_id} not found")
        if written == ChallengeWrite.ALREADY_VERIFIED:
            raise AlreadyVerified(f"Identity {identity_id} is already verified")
        if written == ChallengeWrite.RATE_LIMITED:
            raise VerificationRateLimited("Too many failed attempts, try again later")

        logger.info("Verification challenge issued for identity %s", identity_id)
        try:
            self.notifier.send_code(email, code)
        except Exception:
            logger.warning(
                "Verification code delivery failed for identity %s", identity_id, exc_info=True
            )

    def submit_attempt(self, identity_id: str, candidate_code: str) -> VerificationOutcome:
        """
        Check a candidate code against the pending challenge.

        A running cooldown or an expired code is reported without consuming
        an attempt. Re-submitting after success returns
        NO_PENDING_VERIFICATION.

        Args:
            identity_id: Identity awaiting verification
            candidate_code: Code typed by the user

        Returns:
            VerificationOutcome with the result and remaining attempts
        """
        now = self.clock.now()
        pending = self.repository.get_pending(identity_id)
        if pending is None:
            return VerificationOutcome(VerifyResult.NO_PENDING_VERIFICATION)

        if pending.state == VerificationState.RATE_LIMITED:
            if pending.is_rate_limited(now):
                return VerificationOutcome(
                    VerifyResult.RATE_LIMITED, retry_after=pending.rate_limited_until
                )
            self.repository.release_rate_limit(identity_id, now)
            pending = self.repository.get_pending(identity_id)
            if pending is None or pending.state == VerificationState.RATE_LIMITED:
                return self._observed_outcome(pending)

        if now >= pending.issued_at + self.code_ttl:
            return VerificationOutcome(VerifyResult.EXPIRED)

        if self._code_matches(candidate_code, pending.code_hash):
            if self.repository.complete_verification(identity_id, pending.code_hash):
                logger.info("Identity %s verified institutional email", identity_id)
                return VerificationOutcome(VerifyResult.VERIFIED)
            return self._observed_outcome(self.repository.get_pending(identity_id))

        until = now + self.cooldown
        failed = self.repository.record_failed_attempt(
            identity_id, pending.code_hash, self.max_attempts, self.lockout_policy, until
        )
        if failed is None:
            return self._observed_outcome(self.repository.get_pending(identity_id))
        return self._failure_outcome(identity_id, failed, until)

    def cleanup_abandoned(self, identity_id: str) -> None:
        """
        Best-effort deletion of an identity that never verified its email.

        Fire-and-forget: never raises, whatever the store does. Verified
        identities are left untouched.
        """
        try:
            if self.repository.purge_unverified_identity(identity_id):
                logger.info("Removed abandoned identity %s", identity_id)
        except Exception:
            logger.exception("Cleanup of abandoned identity %s failed", identity_id)

    def _failure_outcome(
        self, identity_id: str, failed: FailedAttempt, until: datetime
    ) -> VerificationOutcome:
        """Report exactly the transition the repository committed."""
        if failed.state == VerificationState.PURGED:
            logger.warning(
                "Identity %s purged after %d failed attempts", identity_id, failed.attempt_count
            )
            return VerificationOutcome(VerifyResult.ACCOUNT_PURGED)
        if failed.state == VerificationState.RATE_LIMITED:
            logger.warning("Identity %s rate limited until %s", identity_id, until.isoformat())
            return VerificationOutcome(VerifyResult.RATE_LIMITED, retry_after=until)
        if failed.state != VerificationState.PENDING or failed.attempt_count >= self.max_attempts:
            raise RuntimeError(
                f"attempt ceiling reached without lockout for {identity_id}: {failed}"
            )
        return VerificationOutcome(
            VerifyResult.INVALID_CODE,
            remaining_attempts=self.max_attempts - failed.attempt_count,
        )

    def _observed_outcome(self, pending: PendingVerification | None) -> VerificationOutcome:
        """Report the stored state after a conditional write lost to a concurrent request."""
        if pending is None:
            return VerificationOutcome(VerifyResult.NO_PENDING_VERIFICATION)
        if pending.state == VerificationState.RATE_LIMITED:
            return VerificationOutcome(
                VerifyResult.RATE_LIMITED, retry_after=pending.rate_limited_until
            )
        # The challenge was replaced while this attempt was in flight.
        return VerificationOutcome(
            VerifyResult.INVALID_CODE,
            remaining_attempts=max(self.max_attempts - pending.attempt_count, 0),
        )

    def _validate_domain(self, email: str) -> None:
        local, _, domain = email.rpartition("@")
        if not local or domain != self.institution_domain.lower():
            raise InvalidDomain(f"Email must be an @{self.institution_domain} address")

    def _normalize_email(self, email: str) -> str:
        """
        Normalize email address for consistent storage and lookup.

        Applies: strip whitespace + lowercase
        """
        return email.strip().lower()

    def _code_matches(self, candidate_code: str, code_hash: str) -> bool:
        """Constant-time bcrypt comparison."""
        return bcrypt.checkpw(candidate_code.encode(), code_hash.encode())

    def _hash_code(self, code: str) -> str:
        return bcrypt.hashpw(code.encode(), bcrypt.gensalt(rounds=self.bcrypt_cost)).decode()
