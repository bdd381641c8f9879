"""
session.py — Authentication session for this device.

States:
    anonymous          no token
    awaiting-approval  login needs approval on another device; polling
    otp-fallback       same challenge, user is typing a backup code instead
    authenticated      token held and persisted

    anonymous -> awaiting-approval -> authenticated -> anonymous
    awaiting-approval <-> otp-fallback   (challenge id kept)
    awaiting-approval -> anonymous       on deny / expire / cancel / fatal error
    authenticated -> anonymous           on logout / inactivity expiry / 401

Listeners are called as callback(event, manager) on the event loop.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional

from .api_client import AuthSuccess, DeviceRegistration, MfaRequired, User
from .config import Settings
from .errors import ProtocolError, TransportError, UnauthorizedError, ValidationError
from .mfa import LoginApprovalPoller, MfaFailure
from .timers import RepeatingTimer
from .validation import normalize_backup_code, validate_login, validate_register

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


class SessionState(str, Enum):
    ANONYMOUS = "anonymous"
    AWAITING_APPROVAL = "awaiting-approval"
    OTP_FALLBACK = "otp-fallback"
    AUTHENTICATED = "authenticated"


class SessionEvent(str, Enum):
    STATE_CHANGED = "state-changed"
    MFA_FAILED = "mfa-failed"
    SIGNED_OUT = "signed-out"
    REVOKED = "revoked"


@dataclass
class PendingMfa:
    challenge_id: str
    email: str
    otp_fallback: bool = False


class AuthSessionManager:
    """
    Usage:
        manager = AuthSessionManager(client, store, identity_manager, settings)
        await manager.restore()
        state = await manager.login("alice@example.com", "...")
        if state is SessionState.AWAITING_APPROVAL:
            ...  # approval arrives through the listeners
    """

    def __init__(
        self,
        client,
        store,
        identity_manager,
        settings: Optional[Settings] = None,
        clock=time.time,
        push_token_provider: Optional[Callable[[], Any]] = None,
    ):
        self.client = client
        self.store = store
        self.identity_manager = identity_manager
        self.settings = settings or Settings()
        self._clock = clock
        self.push_token_provider = push_token_provider

        self.user: Optional[User] = None
        self.pending: Optional[PendingMfa] = None
        self.last_failure: Optional[MfaFailure] = None
        self.remember_device = True

        self._listeners: List[Callable[[SessionEvent, "AuthSessionManager"], Any]] = []
        self._poller: Optional[LoginApprovalPoller] = None
        self._signed_in = False
        self._liveness = RepeatingTimer(
            self.settings.liveness_interval, self.check_liveness, name="liveness", immediate=False
        )
        client.context.add_unauthorized_listener(self._on_unauthorized)

    # --- state -----------------------------------------------------------------
    @property
    def token(self) -> Optional[str]:
        return self.client.context.token

    @property
    def state(self) -> SessionState:
        if self._signed_in:
            return SessionState.AUTHENTICATED
        if self.pending is not None:
            return SessionState.OTP_FALLBACK if self.pending.otp_fallback else SessionState.AWAITING_APPROVAL
        return SessionState.ANONYMOUS

    @property
    def polling(self) -> bool:
        return self._poller is not None and self._poller.running

    def add_listener(self, callback: Callable[[SessionEvent, "AuthSessionManager"], Any]) -> None:
        self._listeners.append(callback)

    def _emit(self, event: SessionEvent) -> None:
        for callback in list(self._listeners):
            callback(event, self)

    def _changed(self, previous: SessionState) -> None:
        if self.state is not previous:
            logger.info("Session %s -> %s", previous.value, self.state.value)
            self._emit(SessionEvent.STATE_CHANGED)

    async def _device_id(self) -> str:
        identity = self.identity_manager.identity
        if identity is None:
            identity = await asyncio.to_thread(self.identity_manager.ensure_identity)
        return identity.device_id

    # --- sign in ---------------------------------------------------------------
    async def login(
        self, email: str, password: str, device_id: Optional[str] = None, remember_device: bool = True
    ) -> SessionState:
        """
        Password sign-in.

        Returns the new state: authenticated, or awaiting-approval when the
        account needs approval on another device.

        Raises:
            ValidationError: malformed email or blank password
            TransportError, ProtocolError: backend failure; state unchanged
        """
        validate_login(email, password)
        device_id = device_id or await self._device_id()
        result = await asyncio.to_thread(self.client.login, email.strip(), password, device_id)
        self.remember_device = remember_device
        if isinstance(result, MfaRequired):
            self._await_approval(result.challenge_id, email.strip(), device_id)
        else:
            await self._authenticated(result)
        return self.state

    async def register(self, email: str, password: str, display_name: Optional[str] = None) -> SessionState:
        validate_register(email, password, display_name)
        name = display_name.strip() if display_name and display_name.strip() else None
        result = await asyncio.to_thread(self.client.register, email.strip(), password, name)
        await self._authenticated(result)
        return self.state

    def _await_approval(self, challenge_id: str, email: str, device_id: str) -> None:
        previous = self.state
        self._stop_poller()
        self.pending = PendingMfa(challenge_id=challenge_id, email=email)
        self.last_failure = None
        self._poller = LoginApprovalPoller(
            self.client,
            challenge_id,
            device_id,
            on_approved=self._on_approved,
            on_failed=self._on_mfa_failed,
            interval=self.settings.requester_poll_interval,
        )
        self._poller.start()
        self._changed(previous)

    async def _on_approved(self, success: AuthSuccess) -> None:
        if self.pending is None:
            return
        await self._authenticated(success)

    def _on_mfa_failed(self, failure: MfaFailure) -> None:
        if self.pending is None:
            return
        previous = self.state
        logger.info("Sign-in challenge failed: %s", failure.reason.value)
        self._poller = None
        self.pending = None
        self.last_failure = failure
        self._emit(SessionEvent.MFA_FAILED)
        self._changed(previous)

    async def login_with_otp(self, code: str) -> SessionState:
        """
        Finish a pending sign-in with a backup code from the approving device.

        On failure the session is left in otp-fallback with the challenge kept
        and the error re-raised.
        """
        pending = self.pending
        if pending is None:
            raise ValidationError("No sign-in is waiting for a code")
        code = normalize_backup_code(code)
        device_id = await self._device_id()
        try:
            success = await asyncio.to_thread(self.client.login_with_otp, pending.challenge_id, device_id, code)
        except (TransportError, ProtocolError):
            if self.pending is pending and not pending.otp_fallback:
                previous = self.state
                pending.otp_fallback = True
                self._changed(previous)
            raise
        if self.pending is not pending:
            logger.info("Sign-in %s was cancelled; ignoring code result", pending.challenge_id)
            return self.state
        await self._authenticated(success)
        return self.state

    def begin_otp_fallback(self) -> None:
        if self.pending is None or self.pending.otp_fallback:
            return
        previous = self.state
        self.pending.otp_fallback = True
        self._changed(previous)

    def cancel_otp_fallback(self) -> None:
        if self.pending is None or not self.pending.otp_fallback:
            return
        previous = self.state
        self.pending.otp_fallback = False
        self._changed(previous)

    def cancel_pending_mfa(self) -> None:
        """Forget the outstanding challenge locally; the backend is not told."""
        if self.pending is None:
            return
        previous = self.state
        self._stop_poller()
        self.pending = None
        self._changed(previous)

    def _stop_poller(self) -> None:
        if self._poller is not None:
            self._poller.cancel()
            self._poller = None

    async def _authenticated(self, success: AuthSuccess) -> None:
        previous = self.state
        self._stop_poller()
        self.pending = None
        self.last_failure = None
        self.client.context.activate(success.token)
        self.user = success.user
        self._signed_in = True
        await asyncio.to_thread(self.store.save_token, success.token)
        self.record_activity()
        self._liveness.start()
        self._changed(previous)
        await self.register_device()

    async def register_device(self) -> bool:
        """
        Register this device's public keys with the backend.

        Failure is logged and reported as False, never raised.
        """
        identity = self.identity_manager.identity
        if identity is None:
            identity = await asyncio.to_thread(self.identity_manager.ensure_identity)
        if identity.keypair is None:
            logger.warning("No device keypair; skipping device registration")
            return False
        kem = await asyncio.to_thread(self.identity_manager.ensure_kem_keypair)
        registration = DeviceRegistration(
            device_id=identity.device_id,
            pqc_public_key=identity.keypair.public_key,
            pqc_algorithm=identity.keypair.algorithm,
            platform=self.settings.platform,
            remember_device=self.remember_device,
            kyber_public_key=kem.public_key if kem else None,
            kyber_algorithm=kem.algorithm if kem else None,
            push_token=await self._push_token(),
        )
        try:
            await asyncio.to_thread(self.client.register_device, registration)
        except (TransportError, ProtocolError) as e:
            logger.warning("Device registration failed: %s", e)
            return False
        logger.info("Registered device %s", identity.device_id)
        return True

    async def _push_token(self) -> Optional[str]:
        if self.push_token_provider is None:
            return None
        try:
            token = self.push_token_provider()
            if inspect.isawaitable(token):
                token = await token
        except Exception:
            logger.warning("Push token unavailable; registering without one", exc_info=True)
            return None
        return token or None

    # --- activity & expiry -----------------------------------------------------
    def record_activity(self) -> None:
        self.store.save_last_activity(self._clock())

    def note_activity(self) -> bool:
        """User interaction: extend a persisted session that has not expired yet."""
        if not self.store.get_token() or self.is_expired():
            return False
        self.record_activity()
        return True

    def is_expired(self) -> bool:
        """
        True when the inactivity timeout has passed.

        A timeout of 0 disables expiry. With a timeout set, a session with no
        recorded activity counts as expired.
        """
        timeout_days = self.settings.session_timeout_days
        if timeout_days <= 0:
            return False
        last_activity = self.store.get_last_activity()
        if last_activity is None:
            return True
        return self._clock() - last_activity > timeout_days * SECONDS_PER_DAY

    async def restore(self) -> SessionState:
        """
        Cold start: resume a persisted session unless it has expired.

        Resuming counts as activity and restarts the idle timeout.
        """
        token = await asyncio.to_thread(self.store.get_token)
        if not token:
            return self.state
        if await asyncio.to_thread(self.is_expired):
            logger.info("Persisted session expired; discarding it")
            await asyncio.to_thread(self.store.save_token, None)
            return self.state

        await asyncio.to_thread(self.record_activity)
        previous = self.state
        self.client.context.activate(token)
        self._signed_in = True
        self._liveness.start()
        self._changed(previous)
        try:
            self.user = await asyncio.to_thread(self.client.me)
        except UnauthorizedError as e:
            self._handle_unauthorized(e.revoked)
        except (TransportError, ProtocolError) as e:
            logger.info("Could not load profile: %s", e)
        return self.state

    async def check_liveness(self) -> None:
        """Re-validate the session with the backend; run by the liveness timer."""
        if self.state is not SessionState.AUTHENTICATED:
            return
        if await asyncio.to_thread(self.is_expired):
            logger.info("Session expired after inactivity")
            self.logout()
            return
        try:
            user = await asyncio.to_thread(self.client.me)
        except UnauthorizedError as e:
            self._handle_unauthorized(e.revoked)
            return
        except (TransportError, ProtocolError) as e:
            logger.debug("Liveness check failed: %s", e)
            return
        if user is not None:
            self.user = user

    # --- sign out --------------------------------------------------------------
    def _teardown(self) -> None:
        self._liveness.stop()
        self._stop_poller()
        self.pending = None
        self.client.context.clear()
        self.user = None
        self._signed_in = False
        self.store.save_token(None)

    def logout(self) -> None:
        previous = self.state
        self._teardown()
        logger.info("Signed out")
        self._emit(SessionEvent.SIGNED_OUT)
        self._changed(previous)

    def _on_unauthorized(self, revoked: bool) -> None:
        # a newer login may already hold a fresh token
        if self.client.context.token is not None:
            return
        self._handle_unauthorized(revoked)

    def _handle_unauthorized(self, revoked: bool) -> None:
        if not self._signed_in:
            return
        previous = self.state
        self._teardown()
        logger.warning("Session rejected by the server%s", " (device revoked)" if revoked else "")
        if revoked:
            self._emit(SessionEvent.REVOKED)
        self._emit(SessionEvent.SIGNED_OUT)
        self._changed(previous)

    def close(self) -> None:
        """Stop background work, keeping the persisted session."""
        self._liveness.stop()
        self._stop_poller()
