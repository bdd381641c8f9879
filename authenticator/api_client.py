"""
api_client.py — HTTP client for the authenticator backend.

Every endpoint returns an explicit result type instead of a loose dict:

    login()         -> AuthSuccess | MfaRequired
    login_status()  -> Pending | Approved | Denied | Expired
    pending_challenge() -> PendingChallenge | None

Failures are exceptions from errors.py: TransportError when the backend cannot
be reached, ProtocolError for error statuses, UnauthorizedError when a call
made with a bearer token comes back 401 (the SessionContext is invalidated
first).

The bearer token lives in a SessionContext passed in by the caller, never in
module state, so tests can hand in their own.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

import requests

from .config import DEFAULT_HTTP_TIMEOUT
from .errors import ProtocolError, TransportError, UnauthorizedError

logger = logging.getLogger(__name__)


# --- Session context -------------------------------------------------------
class ContextState(str, Enum):
    INIT = "init"
    ACTIVE = "active"
    CLEARED = "cleared"


class SessionContext:
    """
    Holds the bearer token for authenticated calls.

    Lifecycle: init -> active -> cleared (and active again after a new login).
    Unauthorized listeners are called with `revoked: bool` when the backend
    rejects the current token. The client may run on a worker thread, so
    listeners are handed back to the event loop that activated the context.
    """

    def __init__(self):
        self._token: Optional[str] = None
        self._state = ContextState.INIT
        self._listeners: List[Callable[[bool], Any]] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._lock = threading.Lock()

    @property
    def token(self) -> Optional[str]:
        return self._token

    @property
    def state(self) -> ContextState:
        return self._state

    def activate(self, token: str) -> None:
        if not token:
            raise ValueError("Cannot activate a session without a token")
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None
        with self._lock:
            self._token = token
            self._state = ContextState.ACTIVE

    def clear(self) -> None:
        with self._lock:
            self._token = None
            self._state = ContextState.CLEARED

    def add_unauthorized_listener(self, callback: Callable[[bool], Any]) -> None:
        self._listeners.append(callback)

    def invalidate(self, token: str, revoked: bool = False) -> bool:
        """
        Drop `token` after a 401. A stale 401 for a token that has already been
        replaced is ignored. Returns True if the context was cleared.
        """
        with self._lock:
            if token is None or self._token != token:
                return False
            self._token = None
            self._state = ContextState.CLEARED
        loop = self._loop
        for callback in list(self._listeners):
            if loop is not None and not loop.is_closed() and _off_loop(loop):
                loop.call_soon_threadsafe(callback, revoked)
            else:
                callback(revoked)
        return True


def _off_loop(loop: asyncio.AbstractEventLoop) -> bool:
    try:
        return asyncio.get_running_loop() is not loop
    except RuntimeError:
        return True


# --- Result types ----------------------------------------------------------
@dataclass(frozen=True)
class User:
    id: Optional[str]
    email: str
    display_name: Optional[str] = None

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> Optional["User"]:
        if not data.get("email"):
            return None
        uid = data.get("uid")
        return cls(id=None if uid is None else str(uid), email=data["email"], display_name=data.get("displayName"))


@dataclass(frozen=True)
class AuthSuccess:
    token: str
    user: Optional[User]


@dataclass(frozen=True)
class MfaRequired:
    challenge_id: str


LoginResult = Union[AuthSuccess, MfaRequired]


@dataclass(frozen=True)
class Pending:
    pass


@dataclass(frozen=True)
class Approved:
    session: AuthSuccess


@dataclass(frozen=True)
class Denied:
    pass


@dataclass(frozen=True)
class Expired:
    pass


LoginStatus = Union[Pending, Approved, Denied, Expired]


@dataclass(frozen=True)
class PendingChallenge:
    challenge_id: str
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DeviceRegistration:
    device_id: str
    pqc_public_key: str
    pqc_algorithm: str
    platform: str
    remember_device: bool = True
    kyber_public_key: Optional[str] = None
    kyber_algorithm: Optional[str] = None
    push_token: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            "deviceId": self.device_id,
            "pqcPublicKey": self.pqc_public_key,
            "pqcAlgorithm": self.pqc_algorithm,
            "platform": self.platform,
            "pushToken": self.push_token,
            "rememberDevice": self.remember_device,
        }
        if self.kyber_public_key:
            payload["kyberPublicKey"] = self.kyber_public_key
            payload["kyberAlgorithm"] = self.kyber_algorithm
        return payload


def _auth_success(data: Dict[str, Any]) -> AuthSuccess:
    token = data.get("token")
    if not token:
        raise ProtocolError(200, "Server response did not include a session token")
    return AuthSuccess(token=token, user=User.from_payload(data))


def _message(body: Any) -> Optional[str]:
    if isinstance(body, dict):
        return body.get("message") or body.get("error")
    return None


# --- Client ----------------------------------------------------------------
class BackendClient:
    """
    Blocking client; async callers run it through asyncio.to_thread.

    Usage:
        context = SessionContext()
        client = BackendClient("https://auth.example.com", context)
        result = client.login("alice@example.com", "...", device_id)
    """

    def __init__(
        self,
        base_url: str,
        context: SessionContext,
        timeout: Optional[float] = DEFAULT_HTTP_TIMEOUT,
        http: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.context = context
        self.timeout = timeout
        self._http = http or requests.Session()

    def _request(self, method: str, path: str, *, json=None, params=None) -> Any:
        token = self.context.token
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            response = self._http.request(
                method,
                self.base_url + path,
                json=json,
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning("%s %s failed: %s", method, path, e)
            raise TransportError(f"Cannot reach {self.base_url}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code == 401 and token:
            revoked = "revoked" in (response.text or "").lower()
            logger.info("%s %s -> 401%s; clearing session", method, path, " (revoked)" if revoked else "")
            self.context.invalidate(token, revoked=revoked)
            raise UnauthorizedError(_message(body), revoked=revoked)
        if response.status_code >= 400:
            raise ProtocolError(response.status_code, _message(body))
        return body

    # --- auth --------------------------------------------------------------
    def register(self, email: str, password: str, display_name: Optional[str] = None) -> AuthSuccess:
        data = self._request(
            "POST",
            "/api/auth/register",
            json={"email": email, "password": password, "displayName": display_name},
        )
        return _auth_success(data)

    def login(self, email: str, password: str, device_id: str) -> LoginResult:
        data = self._request(
            "POST",
            "/api/auth/login",
            json={"email": email, "password": password, "deviceId": device_id},
        )
        if data.get("requiresMfa") and data.get("challengeId"):
            return MfaRequired(challenge_id=str(data["challengeId"]))
        return _auth_success(data)

    def login_status(self, challenge_id: str, device_id: str) -> LoginStatus:
        data = self._request(
            "GET",
            "/api/auth/login-status",
            params={"challengeId": challenge_id, "deviceId": device_id},
        )
        status = data.get("status")
        if status == "approved":
            return Approved(_auth_success(data))
        if status == "denied":
            return Denied()
        if status == "expired":
            return Expired()
        return Pending()

    def login_with_otp(self, challenge_id: str, device_id: str, code: str) -> AuthSuccess:
        data = self._request(
            "POST",
            "/api/auth/login-with-otp",
            json={"challengeId": challenge_id, "deviceId": device_id, "code": code},
        )
        return _auth_success(data)

    def me(self) -> Optional[User]:
        return User.from_payload(self._request("GET", "/api/auth/me"))

    def login_history(self) -> List[Dict[str, Any]]:
        return _items(self._request("GET", "/api/auth/login-history"))

    # --- mfa ---------------------------------------------------------------
    def pending_challenge(self, device_id: str) -> Optional[PendingChallenge]:
        data = self._request("GET", "/api/mfa/pending", params={"deviceId": device_id})
        challenge = data.get("challenge")
        if not isinstance(challenge, dict) or not challenge.get("challengeId"):
            return None
        return PendingChallenge(
            challenge_id=str(challenge["challengeId"]),
            context=challenge.get("context") or {},
        )

    def resolve_challenge(
        self, challenge_id: str, decision: str, signature: Optional[str], device_id: str
    ) -> None:
        self._request(
            "POST",
            "/api/mfa/resolve",
            json={
                "challengeId": challenge_id,
                "decision": decision,
                "signature": signature,
                "deviceId": device_id,
            },
        )

    def generate_backup_code(self, challenge_id: str) -> str:
        data = self._request("POST", "/api/mfa/generate-code", json={"challengeId": challenge_id})
        code = data.get("code")
        if not code:
            raise ProtocolError(200, "Server response did not include a code")
        return str(code)

    def mfa_history(self) -> List[Dict[str, Any]]:
        return _items(self._request("GET", "/api/mfa/history"))

    # --- devices -----------------------------------------------------------
    def register_device(self, registration: DeviceRegistration) -> None:
        self._request("POST", "/api/devices/register", json=registration.to_payload())

    def revoke_device(self, device_id: str) -> None:
        self._request("POST", "/api/devices/revoke", json={"deviceId": device_id})


def _items(body: Any) -> List[Dict[str, Any]]:
    if isinstance(body, list):
        return body
    if isinstance(body, dict):
        items = body.get("history")
        return items if isinstance(items, list) else []
    return []
