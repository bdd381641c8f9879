"""
mfa.py — Push-approval challenge protocol.

Two sides of the same challenge:

- LoginApprovalPoller : on the device that is signing in, polls the login
                        status until the challenge is approved, denied or
                        expired. The first terminal status wins; anything
                        arriving later is ignored.
- ChallengeResponder  : on a device that is already signed in, polls for
                        pending challenges and submits a signed decision.

The signed message is "<challenge_id>:<decision>".
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Set

from .api_client import Approved, Denied, Expired, LoginStatus, PendingChallenge
from .config import REQUESTER_POLL_INTERVAL, RESPONDER_POLL_INTERVAL
from .errors import AuthenticatorError, IdentityError, ProtocolError, TransportError
from .timers import RepeatingTimer

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    APPROVED = "approved"
    DENIED = "denied"


class FailureReason(str, Enum):
    DENIED = "denied"
    EXPIRED = "expired"
    REJECTED = "rejected"   # backend refused the challenge (403/404/410/429)


@dataclass(frozen=True)
class MfaFailure:
    reason: FailureReason
    message: str
    status_code: Optional[int] = None


def challenge_message(challenge_id: str, decision: Decision) -> str:
    return f"{challenge_id}:{Decision(decision).value}"


async def _call(callback: Optional[Callable[..., Any]], *args) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


# --- Requester ---------------------------------------------------------------
class LoginApprovalPoller:
    """
    Polls GET /api/auth/login-status for one challenge.

    on_approved(AuthSuccess) or on_failed(MfaFailure) is called exactly once.
    Transport errors and non-fatal statuses are ignored until the next poll.
    """

    def __init__(
        self,
        client,
        challenge_id: str,
        device_id: str,
        on_approved: Callable[..., Any],
        on_failed: Callable[..., Any],
        interval: float = REQUESTER_POLL_INTERVAL,
    ):
        self.client = client
        self.challenge_id = challenge_id
        self.device_id = device_id
        self._on_approved = on_approved
        self._on_failed = on_failed
        self._latched = False
        self._cancelled = False
        self._timer = RepeatingTimer(interval, self.poll_once, name=f"login-status:{challenge_id}")

    @property
    def latched(self) -> bool:
        return self._latched

    @property
    def running(self) -> bool:
        return self._timer.running

    def start(self) -> None:
        self._timer.start()

    def cancel(self) -> None:
        self._cancelled = True
        self._timer.stop()

    async def poll_once(self) -> Optional[LoginStatus]:
        if self._latched or self._cancelled:
            return None
        try:
            status = await asyncio.to_thread(self.client.login_status, self.challenge_id, self.device_id)
        except TransportError as e:
            logger.debug("login-status %s: %s", self.challenge_id, e)
            return None
        except ProtocolError as e:
            if e.is_challenge_fatal:
                await self._finish(
                    self._on_failed, MfaFailure(FailureReason.REJECTED, e.message, e.status_code)
                )
            else:
                logger.debug("login-status %s: %s (%s)", self.challenge_id, e.message, e.status_code)
            return None

        if isinstance(status, Approved):
            await self._finish(self._on_approved, status.session)
        elif isinstance(status, Denied):
            await self._finish(
                self._on_failed, MfaFailure(FailureReason.DENIED, "Sign-in was denied on your other device")
            )
        elif isinstance(status, Expired):
            await self._finish(
                self._on_failed, MfaFailure(FailureReason.EXPIRED, "Sign-in request expired. Try again.")
            )
        return status

    async def _finish(self, callback, value) -> None:
        if self._latched or self._cancelled:
            return
        self._latched = True
        self._timer.stop()
        logger.info("Challenge %s finished", self.challenge_id)
        await _call(callback, value)


# --- Responder ---------------------------------------------------------------
class ChallengeResponder:
    """
    Polls GET /api/mfa/pending and resolves what it finds.

    Usage:
        responder = ChallengeResponder(client, identity_manager, on_challenge=show)
        responder.start()
        ...
        await responder.resolve(Decision.APPROVED)
    """

    def __init__(
        self,
        client,
        identity_manager,
        interval: float = RESPONDER_POLL_INTERVAL,
        on_challenge: Optional[Callable[[PendingChallenge], Any]] = None,
        on_cleared: Optional[Callable[[], Any]] = None,
        on_resolved: Optional[Callable[[PendingChallenge, Decision], Any]] = None,
    ):
        self.client = client
        self.identity_manager = identity_manager
        self.on_challenge = on_challenge
        self.on_cleared = on_cleared
        self.on_resolved = on_resolved
        self.current: Optional[PendingChallenge] = None
        self._resolved: Set[str] = set()
        self._timer = RepeatingTimer(interval, self.poll_once, name="mfa-pending")

    @property
    def running(self) -> bool:
        return self._timer.running

    def start(self) -> None:
        self._timer.start()

    def stop(self) -> None:
        self._timer.stop()
        self.current = None
        self._resolved.clear()

    async def _identity(self):
        identity = self.identity_manager.identity
        if identity is None:
            identity = await asyncio.to_thread(self.identity_manager.ensure_identity)
        return identity

    async def poll_once(self) -> Optional[PendingChallenge]:
        identity = await self._identity()
        try:
            challenge = await asyncio.to_thread(self.client.pending_challenge, identity.device_id)
        except (TransportError, ProtocolError) as e:
            logger.debug("mfa/pending: %s", e)
            return self.current

        if challenge is None or challenge.challenge_id in self._resolved:
            if self.current is not None:
                await self._clear()
            return None
        if self.current is None or self.current.challenge_id != challenge.challenge_id:
            self.current = challenge
            logger.info("Sign-in request %s waiting for a decision", challenge.challenge_id)
            await _call(self.on_challenge, challenge)
        return self.current

    async def _clear(self) -> None:
        self.current = None
        await _call(self.on_cleared)

    async def resolve(self, decision) -> None:
        """
        Sign and submit `decision` for the challenge being shown.

        The challenge is cleared whatever happens; errors are re-raised.

        Raises:
            IdentityError: approving without a usable signing key
            TransportError, ProtocolError: submission failed
        """
        decision = Decision(decision)
        challenge = self.current
        if challenge is None:
            raise AuthenticatorError("No sign-in request is waiting")
        try:
            identity = await self._identity()
            signature = await self.identity_manager.sign_async(
                challenge_message(challenge.challenge_id, decision), identity
            )
            if not signature and decision is Decision.APPROVED:
                raise IdentityError(f"Cannot approve without a device signature ({signature.reason})")
            if not signature:
                logger.warning("Submitting denial of %s unsigned: %s", challenge.challenge_id, signature.reason)
            await asyncio.to_thread(
                self.client.resolve_challenge,
                challenge.challenge_id,
                decision.value,
                signature.signature if signature else None,
                identity.device_id,
            )
            self._resolved.add(challenge.challenge_id)
            logger.info("Challenge %s %s", challenge.challenge_id, decision.value)
            await _call(self.on_resolved, challenge, decision)
        finally:
            if self.current is challenge:
                await self._clear()

    async def issue_backup_code(self) -> str:
        """One-time code for the shown challenge, to be typed on the other device."""
        challenge = self.current
        if challenge is None:
            raise AuthenticatorError("No sign-in request is waiting")
        return await asyncio.to_thread(self.client.generate_backup_code, challenge.challenge_id)
