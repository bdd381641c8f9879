"""
validation.py — Local format checks run before anything is sent to the backend.

These only check shape; whether credentials are right is the backend's call.
"""

import re
from typing import List, Optional

from .errors import ValidationError

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
EMAIL_MAX_LENGTH = 254
PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
DISPLAY_NAME_MAX_LENGTH = 50
BACKUP_CODE_PATTERN = re.compile(r"^\d{6}$")

PASSWORD_REQUIREMENTS = "8+ chars, upper, lower, number, special char (!@#$%^&*)"


def is_valid_email(email) -> bool:
    if not isinstance(email, str):
        return False
    trimmed = email.strip()
    return 0 < len(trimmed) <= EMAIL_MAX_LENGTH and bool(EMAIL_PATTERN.match(trimmed))


def password_problems(password) -> List[str]:
    """Registration password policy; empty list means the password is fine."""
    if not isinstance(password, str) or not password:
        return ["Password is required"]
    if len(password) < PASSWORD_MIN_LENGTH:
        return [f"Password must be at least {PASSWORD_MIN_LENGTH} characters"]
    if len(password) > PASSWORD_MAX_LENGTH:
        return [f"Password must be at most {PASSWORD_MAX_LENGTH} characters"]
    problems = []
    if not re.search(r"[a-z]", password):
        problems.append("Password must contain at least one lowercase letter")
    if not re.search(r"[A-Z]", password):
        problems.append("Password must contain at least one uppercase letter")
    if not re.search(r"[0-9]", password):
        problems.append("Password must contain at least one number")
    if not re.search(r"[^a-zA-Z0-9]", password):
        problems.append("Password must contain at least one special character (!@#$%^&* etc.)")
    return problems


def _email_problems(email) -> List[str]:
    if not isinstance(email, str) or not email.strip():
        return ["Email is required"]
    if not is_valid_email(email):
        return ["Enter a valid email address"]
    return []


def validate_login(email, password) -> None:
    problems = _email_problems(email)
    if not isinstance(password, str) or not password.strip():
        problems.append("Password is required")
    ValidationError.collect(problems)


def validate_register(email, password, display_name: Optional[str] = None) -> None:
    problems = _email_problems(email) + password_problems(password)
    if display_name and len(str(display_name).strip()) > DISPLAY_NAME_MAX_LENGTH:
        problems.append(f"Display name must be at most {DISPLAY_NAME_MAX_LENGTH} characters")
    ValidationError.collect(problems)


def normalize_backup_code(code) -> str:
    """Six digits, whitespace ignored."""
    clean = "".join(str(code or "").split())
    if not BACKUP_CODE_PATTERN.match(clean):
        raise ValidationError("Enter the 6-digit code")
    return clean
