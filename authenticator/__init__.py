"""
authenticator package
=====================

Personal authenticator: TOTP codes (RFC 6238 / RFC 4226) for enrolled
accounts, and push sign-in approval between devices signed with a
post-quantum device key (ML-DSA-44).

──────────────────────────────────────────────
Core algorithm
──────────────────────────────────────────────
- HOTP: code = Truncate(HMAC-SHA1(key=secret, msg=counter)) mod 10^6
- TOTP: HOTP with counter = floor(unix_time / 30)
- Dynamic truncation: 4 bytes at offset (last byte & 0x0F), top bit masked.

HMAC-SHA1 is implemented here on top of hashlib and checked against the
RFC 6238 test key at import; codes are refused if that check fails.

──────────────────────────────────────────────
Quick use
──────────────────────────────────────────────
>>> from authenticator import generate_totp, parse_otpauth_uri
>>> account = parse_otpauth_uri("otpauth://totp/GitHub:alice?secret=JBSWY3DPEHPK3PXP")
>>> code = generate_totp(account.secret)

Async side (sessions, approvals) goes through AuthenticatorApp.
"""

from .app import AuthenticatorApp
from .otp_core import generate_totp, generate_totp_with_adjacent, seconds_remaining_in_window
from .otp_uri import ParsedAccount, parse_otpauth_uri

__all__ = [
    'AuthenticatorApp',
    'generate_totp',
    'generate_totp_with_adjacent',
    'seconds_remaining_in_window',
    'ParsedAccount',
    'parse_otpauth_uri',
]
