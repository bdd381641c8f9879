"""
models.py — In-memory state of the stub backend.

Users, bearer tokens, registered devices and sign-in challenges. A user with
at least one other active device must approve each new sign-in from that
device; approvals must carry a valid ML-DSA-44 signature over
"<challenge_id>:approved".

Not persistent: restarting the server forgets everything.
"""

import logging
import secrets
import threading
import time
import uuid
from typing import Dict, List, Optional

from werkzeug.security import check_password_hash, generate_password_hash

from authenticator.device_identity import SIGNATURE_ALGORITHM, MlDsa44Scheme
from authenticator.mfa import Decision, challenge_message

logger = logging.getLogger(__name__)

CHALLENGE_TTL = 120  # seconds a sign-in challenge stays pending


class StubError(Exception):
    """Turned into a JSON {"message": ...} response with `status`."""

    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status
        self.message = message


class BackendState:
    def __init__(self, clock=time.time, challenge_ttl: float = CHALLENGE_TTL):
        self._clock = clock
        self.challenge_ttl = challenge_ttl
        self._lock = threading.RLock()
        self._scheme = MlDsa44Scheme()
        self.users: Dict[str, dict] = {}        # email -> user
        self.tokens: Dict[str, dict] = {}       # token -> {uid, device_id}
        self.devices: Dict[str, dict] = {}      # device_id -> device
        self.challenges: Dict[str, dict] = {}   # challenge_id -> challenge
        self.login_history: List[dict] = []
        self.mfa_history: List[dict] = []

    # --- helpers -----------------------------------------------------------
    def _user_by_uid(self, uid: str) -> dict:
        for user in self.users.values():
            if user["uid"] == uid:
                return user
        raise StubError(404, "User not found")

    def _issue_token(self, uid: str, device_id: Optional[str]) -> str:
        token = secrets.token_urlsafe(32)
        self.tokens[token] = {"uid": uid, "device_id": device_id}
        return token

    def _session_payload(self, user: dict, token: str) -> dict:
        return {"token": token, "uid": user["uid"], "email": user["email"], "displayName": user["display_name"]}

    def _active_devices(self, uid: str) -> List[dict]:
        return [d for d in self.devices.values() if d["uid"] == uid and not d["revoked"]]

    def _record_login(self, uid: str, device_id: Optional[str], method: str) -> None:
        self.login_history.append({"uid": uid, "deviceId": device_id, "method": method, "at": self._clock()})

    def _challenge(self, challenge_id: str) -> dict:
        challenge = self.challenges.get(challenge_id)
        if challenge is None:
            raise StubError(404, "Challenge not found")
        if challenge["status"] == "pending" and self._clock() - challenge["created"] > self.challenge_ttl:
            challenge["status"] = "expired"
        return challenge

    # --- auth --------------------------------------------------------------
    def register(self, email: str, password: str, display_name: Optional[str]) -> dict:
        if not email or not password:
            raise StubError(400, "Email and password are required")
        email = email.strip().lower()
        with self._lock:
            if email in self.users:
                raise StubError(409, "Email already registered")
            user = {
                "uid": uuid.uuid4().hex,
                "email": email,
                "password": generate_password_hash(password),
                "display_name": display_name,
            }
            self.users[email] = user
            token = self._issue_token(user["uid"], None)
            self._record_login(user["uid"], None, "register")
            logger.info("Registered %s", email)
            return self._session_payload(user, token)

    def login(self, email: str, password: str, device_id: Optional[str]) -> dict:
        with self._lock:
            user = self.users.get((email or "").strip().lower())
            if user is None or not check_password_hash(user["password"], password or ""):
                raise StubError(401, "Invalid email or password")
            approvers = [d for d in self._active_devices(user["uid"]) if d["device_id"] != device_id]
            if not approvers:
                token = self._issue_token(user["uid"], device_id)
                self._record_login(user["uid"], device_id, "password")
                return self._session_payload(user, token)
            challenge_id = uuid.uuid4().hex
            self.challenges[challenge_id] = {
                "id": challenge_id,
                "uid": user["uid"],
                "device_id": device_id,
                "status": "pending",
                "created": self._clock(),
                "token": None,
                "backup_code": None,
                "context": {"email": user["email"], "deviceId": device_id},
            }
            logger.info("Sign-in for %s needs approval (%s)", user["email"], challenge_id)
            return {"requiresMfa": True, "challengeId": challenge_id}

    def login_status(self, challenge_id: str, device_id: Optional[str]) -> dict:
        with self._lock:
            challenge = self._challenge(challenge_id)
            if challenge["device_id"] != device_id:
                raise StubError(403, "Challenge belongs to another device")
            if challenge["status"] != "approved":
                return {"status": challenge["status"]}
            user = self._user_by_uid(challenge["uid"])
            return {"status": "approved", **self._session_payload(user, challenge["token"])}

    def login_with_otp(self, challenge_id: str, device_id: Optional[str], code: str) -> dict:
        with self._lock:
            challenge = self._challenge(challenge_id)
            if challenge["device_id"] != device_id:
                raise StubError(403, "Challenge belongs to another device")
            if challenge["status"] != "pending":
                raise StubError(410, f"Challenge {challenge['status']}")
            if not challenge["backup_code"] or not secrets.compare_digest(challenge["backup_code"], code or ""):
                raise StubError(400, "Invalid code")
            challenge["status"] = "approved"
            challenge["token"] = self._issue_token(challenge["uid"], device_id)
            self._record_login(challenge["uid"], device_id, "backup-code")
            user = self._user_by_uid(challenge["uid"])
            return self._session_payload(user, challenge["token"])

    def authenticate(self, token: Optional[str]) -> dict:
        """Bearer token -> user. Tokens of revoked devices are rejected."""
        with self._lock:
            entry = self.tokens.get(token or "")
            if entry is None:
                raise StubError(401, "Invalid or expired session")
            device = self.devices.get(entry["device_id"] or "")
            if device is not None and device["revoked"]:
                raise StubError(401, "Device revoked")
            user = self._user_by_uid(entry["uid"])
            return {**user, "token": token, "device_id": entry["device_id"]}

    def history_for(self, uid: str, mfa: bool = False) -> List[dict]:
        with self._lock:
            entries = self.mfa_history if mfa else self.login_history
            return [dict(e) for e in entries if e["uid"] == uid]

    # --- mfa ---------------------------------------------------------------
    def pending_for(self, uid: str, device_id: Optional[str]) -> Optional[dict]:
        with self._lock:
            for challenge in list(self.challenges.values()):
                challenge = self._challenge(challenge["id"])
                if challenge["uid"] != uid or challenge["status"] != "pending":
                    continue
                if challenge["device_id"] == device_id:
                    continue
                return {"challengeId": challenge["id"], "context": dict(challenge["context"])}
            return None

    def resolve(self, uid: str, challenge_id: str, decision: str, signature: Optional[str], device_id: str) -> None:
        try:
            decision = Decision(decision)
        except ValueError:
            raise StubError(400, "Decision must be 'approved' or 'denied'") from None
        with self._lock:
            challenge = self._challenge(challenge_id)
            if challenge["uid"] != uid:
                raise StubError(404, "Challenge not found")
            if challenge["status"] != "pending":
                raise StubError(410, f"Challenge {challenge['status']}")
            device = self.devices.get(device_id or "")
            if device is None or device["uid"] != uid or device["revoked"]:
                raise StubError(403, "Device is not registered")
            if signature or decision is Decision.APPROVED:
                if not self._signature_ok(device, challenge_message(challenge_id, decision), signature):
                    raise StubError(400, "Invalid signature")
            challenge["status"] = decision.value
            if decision is Decision.APPROVED:
                challenge["token"] = self._issue_token(uid, challenge["device_id"])
                self._record_login(uid, challenge["device_id"], "push")
            self.mfa_history.append(
                {"uid": uid, "challengeId": challenge_id, "decision": decision.value, "deviceId": device_id, "at": self._clock()}
            )
            logger.info("Challenge %s %s by %s", challenge_id, decision.value, device_id)

    def _signature_ok(self, device: dict, message: str, signature: Optional[str]) -> bool:
        if not signature or device["pqc_algorithm"] != SIGNATURE_ALGORITHM:
            return False
        try:
            return self._scheme.verify(
                bytes.fromhex(device["pqc_public_key"]), message.encode("utf-8"), bytes.fromhex(signature)
            )
        except ValueError:
            return False

    def generate_code(self, uid: str, challenge_id: str) -> str:
        with self._lock:
            challenge = self._challenge(challenge_id)
            if challenge["uid"] != uid:
                raise StubError(404, "Challenge not found")
            if challenge["status"] != "pending":
                raise StubError(410, f"Challenge {challenge['status']}")
            challenge["backup_code"] = f"{secrets.randbelow(10 ** 6):06d}"
            return challenge["backup_code"]

    # --- devices -----------------------------------------------------------
    def register_device(self, auth: dict, payload: dict) -> None:
        device_id = payload.get("deviceId")
        public_key = payload.get("pqcPublicKey")
        if not device_id or not public_key:
            raise StubError(400, "deviceId and pqcPublicKey are required")
        with self._lock:
            existing = self.devices.get(device_id)
            if existing is not None and existing["uid"] != auth["uid"]:
                raise StubError(409, "Device belongs to another account")
            self.devices[device_id] = {
                "device_id": device_id,
                "uid": auth["uid"],
                "pqc_public_key": public_key,
                "pqc_algorithm": payload.get("pqcAlgorithm"),
                "kyber_public_key": payload.get("kyberPublicKey"),
                "kyber_algorithm": payload.get("kyberAlgorithm"),
                "platform": payload.get("platform"),
                "push_token": payload.get("pushToken"),
                "remember": bool(payload.get("rememberDevice", True)),
                "revoked": False,
            }
            self.tokens[auth["token"]]["device_id"] = device_id
            logger.info("Registered device %s for %s", device_id, auth["email"])

    def revoke_device(self, uid: str, device_id: str) -> None:
        with self._lock:
            device = self.devices.get(device_id or "")
            if device is None or device["uid"] != uid:
                raise StubError(404, "Device not found")
            device["revoked"] = True
            logger.info("Revoked device %s", device_id)
