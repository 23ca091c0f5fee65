"""
Identity domain service - uniqueness enforcement and account linking.

Email and institutional ID are globally unique across identities; the
store's unique indexes are the final guard, this service turns would-be
violations into explicit outcomes.

Linking tokens authorize merging a new sign-in method into an existing
identity. A token moves ISSUED -> USED exactly once, in the same
transaction as the identity rewrite it authorizes; an expired or used
token is permanently inert.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum

from .exceptions import (
    DuplicateIdentity,
    IdentityNotFound,
    TokenAlreadyUsed,
    TokenExpired,
    TokenNotFound,
)
from .ports import (
    AuthProvider,
    Clock,
    CodeGenerator,
    Identity,
    IdentityRepository,
    LinkingToken,
    LinkStatus,
)

logger = logging.getLogger(__name__)


class RegistrationDecision(Enum):
    CREATE = "create"
    LINK = "link"


@dataclass(frozen=True)
class RegistrationOutcome:
    """
    What the onboarding flow should do with a sign-in email.

    CREATE: nobody claims the email, proceed with normal creation.
    LINK: existing_identity_id claims it under another provider; issue a
    linking token for it.
    """

    decision: RegistrationDecision
    existing_identity_id: str | None = None


@dataclass(frozen=True)
class LinkResult:
    identity: Identity


_LINK_FAILURES = {
    LinkStatus.NOT_FOUND: TokenNotFound,
    LinkStatus.EXPIRED: TokenExpired,
    LinkStatus.ALREADY_USED: TokenAlreadyUsed,
    LinkStatus.UNKNOWN_IDENTITY: IdentityNotFound,
    LinkStatus.DUPLICATE_EMAIL: DuplicateIdentity,
}


@dataclass
class IdentityService:
    """Domain service for identity deduplication and linking tokens."""

    repository: IdentityRepository
    clock: Clock
    code_generator: CodeGenerator
    token_ttl: timedelta = timedelta(minutes=10)

    def register_or_link_email(
        self,
        candidate_email: str,
        candidate_provider: AuthProvider,
        requesting_identity_id: str | None = None,
    ) -> RegistrationOutcome:
        """
        Decide whether a sign-in email creates an identity or links to one.

        Args:
            candidate_email: Email presented by the sign-in provider
            candidate_provider: Provider the email arrived through
            requesting_identity_id: Identity the caller is already signed in
                as, if any

        Raises:
            DuplicateIdentity: Email is claimed under the same provider, or
                by an identity other than requesting_identity_id
        """
        email = self._normalize_email(candidate_email)
        existing = self.repository.find_by_email(email)
        if existing is None:
            return RegistrationOutcome(RegistrationDecision.CREATE)

        if existing.provider == candidate_provider:
            raise DuplicateIdentity("An account with this email already exists")
        if requesting_identity_id is not None and requesting_identity_id != existing.id:
            raise DuplicateIdentity("Email belongs to a different account")

        return RegistrationOutcome(RegistrationDecision.LINK, existing_identity_id=existing.id)

    def check_institutional_id_exists(
        self, institutional_id: str, exclude_identity_id: str | None = None
    ) -> Identity | None:
        """Read-only duplicate check run before onboarding data is committed."""
        return self.repository.find_by_institutional_id(
            institutional_id.strip().upper(), exclude_identity_id
        )

    def check_institutional_email_exists(self, institutional_email: str) -> Identity | None:
        return self.repository.find_by_institutional_email(
            self._normalize_email(institutional_email)
        )

    def issue_linking_token(
        self, existing_identity_id: str, incoming_email: str, incoming_provider: AuthProvider
    ) -> str:
        """
        Create a single-use linking token for an existing identity.

        Delivering the token (e.g. to the identity's verified email) is the
        caller's job.

        Raises:
            IdentityNotFound: existing_identity_id does not exist
        """
        if self.repository.get_identity(existing_identity_id) is None:
            raise IdentityNotFound(f"Identity {existing_identity_id} not found")

        token = LinkingToken(
            token=self.code_generator.token(),
            existing_identity_id=existing_identity_id,
            incoming_email=self._normalize_email(incoming_email),
            incoming_provider=incoming_provider,
            expires_at=self.clock.now() + self.token_ttl,
        )
        self.repository.create_linking_token(token)
        logger.info("Linking token issued for identity %s", existing_identity_id)
        return token.token

    def process_linking(self, token: str) -> LinkResult:
        """
        Consume a linking token and merge the incoming sign-in method.

        The token flip and the email/provider rewrite commit together. All
        other profile fields are preserved.

        Raises:
            TokenNotFound, TokenAlreadyUsed, TokenExpired: Token is unusable
            IdentityNotFound: Target identity no longer exists
            DuplicateIdentity: Incoming email belongs to another identity
        """
        status, identity = self.repository.consume_linking_token(token, self.clock.now())
        if status != LinkStatus.LINKED or identity is None:
            failure = _LINK_FAILURES.get(status, TokenNotFound)
            logger.warning("Account linking refused: %s", status.value)
            raise failure()

        logger.info("Identity %s linked to %s sign-in", identity.id, identity.provider.value)
        return LinkResult(identity=identity)

    def validate_linking_token(self, token: str) -> bool:
        """True if the token exists, is unused and has not expired."""
        found = self.repository.get_linking_token(token)
        return found is not None and not found.used and not found.is_expired(self.clock.now())

    def cleanup_expired_tokens(self) -> int:
        """Best-effort removal of expired tokens. Never raises."""
        try:
            removed = self.repository.delete_expired_tokens(self.clock.now())
        except Exception:
            logger.exception("Cleanup of expired linking tokens failed")
            return 0
        if removed:
            logger.info("Removed %d expired linking tokens", removed)
        return removed

    def _normalize_email(self, email: str) -> str:
        return email.strip().lower()
