"""
app.py — Wires the store, identity, backend client, session and timers together.

Usage:
    app = AuthenticatorApp(Settings.from_env())
    await app.start()
    ...
    await app.shutdown()
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from local_store import LocalStore

from . import otp_core
from .accounts import AccountBook
from .api_client import BackendClient, SessionContext
from .config import Settings
from .device_identity import DeviceIdentityManager, platform_identifier
from .errors import SelfTestError
from .mfa import ChallengeResponder
from .session import AuthSessionManager, SessionEvent, SessionState
from .timers import RepeatingTimer

logger = logging.getLogger(__name__)


class AuthenticatorApp:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[LocalStore] = None,
        http=None,
        platform_id=platform_identifier,
        push_token_provider=None,
    ):
        self.settings = settings or Settings.from_env()
        self.store = store or LocalStore(self.settings.db_path)
        self.context = SessionContext()
        self.client = BackendClient(self.settings.api_url, self.context, self.settings.http_timeout, http=http)
        self.identity = DeviceIdentityManager(self.store, platform_id=platform_id)
        self.accounts = AccountBook(self.store)
        self.session = AuthSessionManager(
            self.client, self.store, self.identity, self.settings, push_token_provider=push_token_provider
        )
        self.responder = ChallengeResponder(
            self.client,
            self.identity,
            interval=self.settings.responder_poll_interval,
            on_resolved=self._on_challenge_resolved,
        )
        self.codes: Dict[str, otp_core.TotpSample] = {}
        self.code_listeners: List[Callable[[Dict[str, otp_core.TotpSample]], None]] = []
        self.engine_error: Optional[SelfTestError] = None
        self._responder_enabled = True
        self._code_timer = RepeatingTimer(self.settings.code_refresh_interval, self.refresh_codes, name="totp")
        self.session.add_listener(self._on_session_event)

    async def start(self, responder: bool = True) -> None:
        """
        Bring the app up: identity, accounts, persisted session, code refresh.

        When `responder` is False the pending-challenge poller is never started
        (a device that only signs in).
        """
        self._responder_enabled = responder
        try:
            otp_core.require_verified_engine()
        except SelfTestError as e:
            logger.error("%s", e)
            self.engine_error = e
        await asyncio.to_thread(self.identity.ensure_identity)
        await asyncio.to_thread(self.accounts.load)
        await self.session.restore()
        if self.engine_error is None:
            self._code_timer.start()

    def refresh_codes(self) -> Dict[str, otp_core.TotpSample]:
        self.codes = self.accounts.refresh()
        for callback in list(self.code_listeners):
            callback(self.codes)
        return self.codes

    def _on_challenge_resolved(self, challenge, decision) -> None:
        if self.session.state is SessionState.AUTHENTICATED:
            self.session.record_activity()

    def _on_session_event(self, event: SessionEvent, session: AuthSessionManager) -> None:
        if event is not SessionEvent.STATE_CHANGED:
            return
        if session.state is SessionState.AUTHENTICATED:
            if self._responder_enabled and not self.responder.running:
                self.responder.start()
        elif self.responder.running:
            self.responder.stop()

    async def shutdown(self) -> None:
        self._code_timer.stop()
        self.responder.stop()
        self.session.close()
        # let cancelled timer tasks unwind
        await asyncio.sleep(0)
