"""
otp_uri.py — Parse otpauth:// provisioning URIs into enrollable accounts.

Accepted shape:

    otpauth://totp/<label>?secret=<base32>&issuer=<issuer>

The input may come from a camera scan, a pasted link or a deep link; this
module does not care. It is a pure transform: telling the user is the caller's
job, using UriParseError.reason / str(error).
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict
from urllib.parse import parse_qsl, unquote_plus, urlsplit

from .errors import ValidationError

MIN_SECRET_LENGTH = 16
UNKNOWN_ISSUER = "Unknown"

_FALLBACK_PATTERN = re.compile(r"^otpauth://totp/([^?]+)(?:\?(.+))?$", re.IGNORECASE)


class ParseFailure(str, Enum):
    EMPTY = "empty"
    INVALID_SCHEME = "invalid-scheme"
    NOT_TOTP = "not-totp"
    MISSING_SECRET = "missing-secret"
    SECRET_TOO_SHORT = "secret-too-short"
    UNPARSEABLE = "unparseable"


_MESSAGES = {
    ParseFailure.EMPTY: "No data received. Try again or use manual entry.",
    ParseFailure.INVALID_SCHEME: "This is not a 2FA setup code (expected otpauth://).",
    ParseFailure.NOT_TOTP: "Only TOTP (time-based) codes are supported.",
    ParseFailure.MISSING_SECRET: "TOTP secret is missing. Use manual entry.",
    ParseFailure.SECRET_TOO_SHORT: "TOTP secret is too short. Use manual entry.",
    ParseFailure.UNPARSEABLE: "Could not parse the link. Use manual entry and paste the key.",
}


class UriParseError(ValidationError):
    def __init__(self, reason: ParseFailure):
        self.reason = reason
        super().__init__(_MESSAGES[reason])


@dataclass(frozen=True)
class ParsedAccount:
    issuer: str
    label: str
    secret: str


def _query_params(query: str) -> Dict[str, str]:
    # Blank values are dropped; '+' decodes to a space
    return {key.strip(): value for key, value in parse_qsl(query or "") if key.strip()}


def _split_strict(raw: str):
    parts = urlsplit(raw)
    if parts.netloc.lower() != "totp":
        raise UriParseError(ParseFailure.NOT_TOTP)
    return parts.path.lstrip("/"), parts.query


def _split_fallback(raw: str):
    match = _FALLBACK_PATTERN.match(raw)
    if not match:
        raise UriParseError(ParseFailure.UNPARSEABLE)
    return match.group(1).lstrip("/"), match.group(2) or ""


def parse_otpauth_uri(data) -> ParsedAccount:
    """
    Decode an otpauth://totp URI.

    - label  : percent-decoded path, issuer prefix kept as authored
               ("Google:alice@example.com")
    - issuer : `issuer` query parameter, else the label part before ':',
               else "Unknown"
    - secret : `secret` query parameter with all whitespace removed,
               at least 16 characters

    Raises:
        UriParseError: with `reason` set to the failing check
    """
    raw = re.sub(r"\r\n|\r|\n", "", "" if data is None else str(data)).strip()
    if not raw:
        raise UriParseError(ParseFailure.EMPTY)
    lowered = raw.lower()
    if not lowered.startswith("otpauth://"):
        raise UriParseError(ParseFailure.INVALID_SCHEME)
    if "totp" not in lowered:
        raise UriParseError(ParseFailure.NOT_TOTP)

    try:
        path, query = _split_strict(raw)
    except ValueError as e:
        if isinstance(e, UriParseError):
            raise
        path, query = _split_fallback(raw)

    label = unquote_plus(path)
    params = _query_params(query)
    issuer = params.get("issuer") or (label.split(":", 1)[0] if ":" in label else UNKNOWN_ISSUER)
    issuer = issuer.strip() or UNKNOWN_ISSUER

    secret = "".join(params.get("secret", "").split())
    if not secret:
        raise UriParseError(ParseFailure.MISSING_SECRET)
    if len(secret) < MIN_SECRET_LENGTH:
        raise UriParseError(ParseFailure.SECRET_TOO_SHORT)

    return ParsedAccount(issuer=issuer, label=label, secret=secret)
