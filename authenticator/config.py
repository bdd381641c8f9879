"""
config.py — Constants and environment-driven settings.

Constants are the protocol defaults; Settings lets every tunable be overridden
through AUTHENTICATOR_* environment variables.
"""

import os
from dataclasses import dataclass
from typing import Optional

# --- Config / constants ----------------------------------------------------
DEFAULT_API_URL = "http://127.0.0.1:5000"
DEFAULT_DB_PATH = os.path.join(os.path.expanduser("~"), ".authenticator", "authenticator.db")
DEFAULT_SESSION_TIMEOUT_DAYS = 90
DEFAULT_HTTP_TIMEOUT = 10.0

CODE_REFRESH_INTERVAL = 1.0     # TOTP display refresh (seconds)
REQUESTER_POLL_INTERVAL = 0.3   # login-status polling while a challenge is outstanding
RESPONDER_POLL_INTERVAL = 2.0   # pending-challenge polling on an approving device
LIVENESS_INTERVAL = 60.0        # session re-validation while authenticated

DEFAULT_PLATFORM = "python"


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


@dataclass
class Settings:
    api_url: str = DEFAULT_API_URL
    db_path: str = DEFAULT_DB_PATH
    session_timeout_days: int = DEFAULT_SESSION_TIMEOUT_DAYS
    http_timeout: Optional[float] = DEFAULT_HTTP_TIMEOUT
    code_refresh_interval: float = CODE_REFRESH_INTERVAL
    requester_poll_interval: float = REQUESTER_POLL_INTERVAL
    responder_poll_interval: float = RESPONDER_POLL_INTERVAL
    liveness_interval: float = LIVENESS_INTERVAL
    platform: str = DEFAULT_PLATFORM

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Build settings from the environment.

        An HTTP timeout of 0 disables the request time limit.
        """
        http_timeout = _env_float("AUTHENTICATOR_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT)
        return cls(
            api_url=os.environ.get("AUTHENTICATOR_API_URL", DEFAULT_API_URL).rstrip("/"),
            db_path=os.environ.get("AUTHENTICATOR_DB", DEFAULT_DB_PATH),
            session_timeout_days=_env_int(
                "AUTHENTICATOR_SESSION_TIMEOUT_DAYS", DEFAULT_SESSION_TIMEOUT_DAYS
            ),
            http_timeout=http_timeout or None,
            requester_poll_interval=_env_float(
                "AUTHENTICATOR_REQUESTER_POLL_INTERVAL", REQUESTER_POLL_INTERVAL
            ),
            responder_poll_interval=_env_float(
                "AUTHENTICATOR_RESPONDER_POLL_INTERVAL", RESPONDER_POLL_INTERVAL
            ),
            liveness_interval=_env_float("AUTHENTICATOR_LIVENESS_INTERVAL", LIVENESS_INTERVAL),
            platform=os.environ.get("AUTHENTICATOR_PLATFORM", DEFAULT_PLATFORM),
        )
