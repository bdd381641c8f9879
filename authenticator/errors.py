"""
errors.py — Exception taxonomy for the authenticator.

Every error raised on purpose by this package derives from AuthenticatorError:

- ValidationError : bad user input, rejected before any network call
- DecodeError     : a secret that is not valid Base32
- TransportError  : backend unreachable / timeout
- ProtocolError   : backend answered with a non-2xx status
- IdentityError   : signing is strictly required but no key material exists
- SelfTestError   : the HMAC-SHA1 self-test failed, TOTP codes must not be served
"""

from typing import Iterable, List, Optional


class AuthenticatorError(Exception):
    """Base class for every error raised by this package."""


class ValidationError(AuthenticatorError, ValueError):
    """
    Input rejected locally.

    Carries every problem found; ``str(err)`` is the first one so it can be
    shown to a human as a single message.
    """

    def __init__(self, messages):
        if isinstance(messages, str):
            messages = [messages]
        self.messages: List[str] = list(messages)
        super().__init__(self.messages[0] if self.messages else "Invalid input")

    @classmethod
    def collect(cls, messages: Iterable[str]) -> None:
        messages = list(messages)
        if messages:
            raise cls(messages)


class DecodeError(AuthenticatorError, ValueError):
    """Secret could not be Base32-decoded."""


class SelfTestError(AuthenticatorError):
    """HMAC-SHA1 implementation failed the RFC 6238 self-test."""


class TransportError(AuthenticatorError):
    """Backend could not be reached."""

    user_message = "Cannot reach server. Check your connection and try again."


class ProtocolError(AuthenticatorError):
    """Backend answered with an error status."""

    # Statuses that mean the challenge itself is unusable
    CHALLENGE_FATAL_STATUSES = frozenset({403, 404, 410, 429})

    def __init__(self, status_code: int, message: Optional[str] = None):
        self.status_code = status_code
        self.message = message or f"Something went wrong ({status_code}). Try again."
        super().__init__(self.message)

    @property
    def is_challenge_fatal(self) -> bool:
        return self.status_code in self.CHALLENGE_FATAL_STATUSES


class UnauthorizedError(ProtocolError):
    """401 on an authorized call; the local session has been cleared."""

    def __init__(self, message: Optional[str] = None, revoked: bool = False):
        super().__init__(401, message or "Session expired. Please sign in again.")
        self.revoked = revoked


class IdentityError(AuthenticatorError):
    """No usable signing key for an operation that requires one."""
