"""
Leaf collaborators - system clock and secure code generation.

Default implementations of the Clock and CodeGenerator ports. Both are
stateless and safe to share between services and threads.
"""

import secrets
from datetime import UTC, datetime

_DIGITS = "0123456789"


class SystemClock:
    """Implements Clock protocol with the wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class SecureCodeGenerator:
    """
    Implements CodeGenerator protocol via the secrets module.

    Codes are returned as strings to preserve leading zeros.
    """

    def __init__(self, token_bytes: int = 32) -> None:
        self._token_bytes = token_bytes

    def numeric_code(self, length: int) -> str:
        if length < 1:
            raise ValueError("code length must be positive")
        return "".join(secrets.choice(_DIGITS) for _ in range(length))

    def token(self) -> str:
        return secrets.token_urlsafe(self._token_bytes)
