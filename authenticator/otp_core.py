#!/usr/bin/env python3
"""
otp_core.py — Self-contained TOTP engine (RFC 6238 / RFC 4226).

Goals:
- Pure functions only: no I/O, no network, no third-party packages.
- Base32 (RFC 4648) via base64.b32decode, HMAC-SHA1 (RFC 2104) via hmac +
  hashlib.sha1.
- A self-test against the RFC 6238 HMAC-SHA1 vector runs at import time; if it
  fails, every code-serving function raises SelfTestError.

Security notes:
- Only the *display* window is widened (previous / next code); this module
  never verifies codes.
- A broken secret must never stop the caller's refresh loop: use `sample()`,
  which degrades to PLACEHOLDER_CODE for that one secret.
"""

import base64
import hashlib
import hmac
import logging
import struct
import time
from typing import NamedTuple, Optional

from .errors import DecodeError, SelfTestError

logger = logging.getLogger(__name__)

# --- Config / constants ----------------------------------------------------
DEFAULT_DIGITS = 6          # standard: 6 digits
DEFAULT_TIME_STEP = 30      # TOTP step (seconds)
PLACEHOLDER_CODE = "-" * DEFAULT_DIGITS
MAX_COUNTER = 2 ** 64 - 1

# RFC 6238 Appendix B: ASCII "12345678901234567890", counter 1
RFC6238_TEST_KEY_HEX = "3132333435363738393031323334353637383930"
RFC6238_TEST_COUNTER = 1
RFC6238_TEST_CODE = "287082"


class AdjacentCodes(NamedTuple):
    current: str
    prev: str
    next: str


class TotpSample(NamedTuple):
    current: str
    previous: str
    next: str
    seconds_remaining: int


# --- Byte-level primitives -------------------------------------------------
def base32_decode(text: str) -> bytes:
    """
    Decode an RFC 4648 Base32 string.

    - Case-insensitive.
    - Whitespace anywhere is ignored ("JBSW Y3DP ..." as printed by most sites).
    - Trailing '=' padding is optional and ignored.

    Raises:
        DecodeError: not a string, or a character outside the Base32 alphabet
    """
    if not isinstance(text, str):
        raise DecodeError(f"Base32 secret must be a string, not {type(text).__name__}")
    clean = "".join(text.split()).rstrip("=")
    # b32decode wants full 8-character blocks
    padded = clean + "=" * (-len(clean) % 8)
    try:
        return base64.b32decode(padded, casefold=True)
    except ValueError as e:
        raise DecodeError(f"Invalid Base32 secret: {e}") from e


def hmac_sha1(key: bytes, message: bytes) -> bytes:
    """HMAC-SHA1 per RFC 2104 (20-byte MAC)."""
    return hmac.new(key, message, hashlib.sha1).digest()


# --- RFC helpers -----------------------------------------------------------
def int_to_bytes(i: int) -> bytes:
    """
    8-byte big-endian counter as RFC 4226 requires.

    Example: int_to_bytes(1) -> b'\\x00\\x00\\x00\\x00\\x00\\x00\\x00\\x01'
    """
    return struct.pack(">Q", i)


def dynamic_truncate(hmac_digest: bytes) -> int:
    """
    RFC 4226 dynamic truncation.

    - offset = low nibble of the last byte
    - take 4 bytes at offset, clear the top bit -> 31-bit unsigned integer
    """
    offset = hmac_digest[-1] & 0x0F
    return (
        ((hmac_digest[offset] & 0x7F) << 24)
        | ((hmac_digest[offset + 1] & 0xFF) << 16)
        | ((hmac_digest[offset + 2] & 0xFF) << 8)
        | (hmac_digest[offset + 3] & 0xFF)
    )


def hotp(secret: bytes, counter: int, digits: int = DEFAULT_DIGITS) -> str:
    """
    HOTP value for raw key bytes.

    Steps:
    1. message = 8-byte big-endian counter
    2. HMAC-SHA1(key, message)
    3. dynamic truncation -> 31-bit integer
    4. modulo 10^digits, zero-padded

    Raises:
        ValueError: if counter does not fit an unsigned 64-bit integer
    """
    if counter < 0 or counter > MAX_COUNTER:
        raise ValueError(f"HOTP counter out of range: {counter}")
    digest = hmac_sha1(secret, int_to_bytes(counter))
    return str(dynamic_truncate(digest) % (10 ** digits)).zfill(digits)


# --- Self-test -------------------------------------------------------------
def verify_implementation() -> bool:
    """Compare hotp() with the RFC 6238 published HMAC-SHA1 vector."""
    try:
        got = hotp(bytes.fromhex(RFC6238_TEST_KEY_HEX), RFC6238_TEST_COUNTER)
    except Exception:
        logger.exception("TOTP self-test raised")
        return False
    return got == RFC6238_TEST_CODE


def require_verified_engine() -> None:
    if not _ENGINE_VERIFIED:
        raise SelfTestError("HMAC-SHA1 self-test failed; refusing to serve TOTP codes")


# --- TOTP ------------------------------------------------------------------
def time_counter(timestamp: Optional[float] = None, timestep: int = DEFAULT_TIME_STEP) -> int:
    if timestamp is None:
        timestamp = time.time()
    return int(timestamp // timestep)


def _decode_secret(secret_b32: str) -> bytes:
    key = base32_decode(secret_b32)
    if not key:
        raise DecodeError("Empty secret")
    return key


def generate_totp(secret_b32: str, timestamp: Optional[float] = None) -> str:
    """
    Current TOTP code for a Base32 secret, counter = floor(t / 30).

    Raises:
        DecodeError: invalid or empty secret
        SelfTestError: engine failed its self-test
    """
    require_verified_engine()
    return hotp(_decode_secret(secret_b32), time_counter(timestamp))


def generate_totp_with_adjacent(secret_b32: str, timestamp: Optional[float] = None) -> AdjacentCodes:
    """
    Current code plus the codes of the previous and next windows.

    Shown so the user can still type a code the verifying service accepts when
    clocks are skewed. At counter 0 there is no previous window and `prev` is
    PLACEHOLDER_CODE.
    """
    require_verified_engine()
    key = _decode_secret(secret_b32)
    counter = time_counter(timestamp)
    prev = hotp(key, counter - 1) if counter > 0 else PLACEHOLDER_CODE
    return AdjacentCodes(current=hotp(key, counter), prev=prev, next=hotp(key, counter + 1))


def seconds_remaining_in_window(timestamp: Optional[float] = None) -> int:
    """Seconds until the current code rolls over: 30 - (t mod 30), in 1..30."""
    if timestamp is None:
        timestamp = time.time()
    return DEFAULT_TIME_STEP - (int(timestamp) % DEFAULT_TIME_STEP)


def sample(secret_b32: str, timestamp: Optional[float] = None) -> TotpSample:
    """
    Codes + countdown for one account, never raising for a bad secret.

    A missing, empty or undecodable secret degrades to PLACEHOLDER_CODE so one
    broken account cannot stop the refresh of the others. SelfTestError is not
    caught: a broken engine must stop everything.
    """
    if timestamp is None:
        timestamp = time.time()
    remaining = seconds_remaining_in_window(timestamp)
    try:
        codes = generate_totp_with_adjacent(secret_b32 or "", timestamp)
    except (DecodeError, ValueError) as e:
        logger.debug("Placeholder code for undecodable secret: %s", e)
        return TotpSample(PLACEHOLDER_CODE, PLACEHOLDER_CODE, PLACEHOLDER_CODE, remaining)
    return TotpSample(codes.current, codes.prev, codes.next, remaining)


_ENGINE_VERIFIED = verify_implementation()
if not _ENGINE_VERIFIED:
    logger.error("HMAC-SHA1 self-test failed (RFC 6238 vector); TOTP codes are disabled")
