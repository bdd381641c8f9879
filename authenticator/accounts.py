"""
accounts.py — Enrolled TOTP accounts and their per-second code refresh.
"""

import logging
import time
import uuid
from dataclasses import asdict, dataclass, replace
from typing import Dict, List, Optional

from . import otp_core
from .errors import DecodeError, ValidationError
from .otp_uri import MIN_SECRET_LENGTH, UNKNOWN_ISSUER, parse_otpauth_uri

logger = logging.getLogger(__name__)

MIN_SECRET_BYTES = 10


@dataclass
class Account:
    id: str
    issuer: str
    label: str
    secret: str
    favorite: bool = False
    last_used: Optional[float] = None

    @classmethod
    def from_dict(cls, data: dict) -> "Account":
        return cls(
            id=str(data.get("id") or uuid.uuid4().hex),
            issuer=str(data.get("issuer") or ""),
            label=str(data.get("label") or ""),
            secret=str(data.get("secret") or ""),
            favorite=bool(data.get("favorite", False)),
            last_used=data.get("last_used"),
        )

    def to_dict(self) -> dict:
        return asdict(self)


def normalize_secret(secret: str) -> str:
    """
    Strip whitespace and check that a secret is usable.

    Raises:
        ValidationError: shorter than 16 characters, not Base32, or fewer than
            10 key bytes
    """
    clean = "".join(str(secret or "").split())
    if len(clean) < MIN_SECRET_LENGTH:
        raise ValidationError(f"Secret must be at least {MIN_SECRET_LENGTH} characters")
    try:
        key = otp_core.base32_decode(clean)
    except DecodeError:
        raise ValidationError("Secret is not valid Base32 (A-Z, 2-7)") from None
    if len(key) < MIN_SECRET_BYTES:
        raise ValidationError("Secret is too short")
    return clean


class AccountBook:
    """
    The accounts enrolled on this device, persisted as a JSON array.

    Usage:
        book = AccountBook(store)
        book.load()
        book.add_from_uri("otpauth://totp/GitHub:alice?secret=...")
        samples = book.refresh()
    """

    def __init__(self, store):
        self._store = store
        self._accounts: List[Account] = []

    @property
    def accounts(self) -> List[Account]:
        return list(self._accounts)

    def load(self) -> List[Account]:
        self._accounts = [
            Account.from_dict(item) for item in self._store.get_accounts() if isinstance(item, dict)
        ]
        return self.accounts

    def _save(self, accounts: List[Account]) -> None:
        self._store.save_accounts([account.to_dict() for account in accounts])
        self._accounts = accounts

    def get(self, account_id: str) -> Optional[Account]:
        for account in self._accounts:
            if account.id == account_id:
                return account
        return None

    def add(self, issuer: str, label: str, secret: str) -> Account:
        """Manual entry; the secret is validated before anything is stored."""
        account = Account(
            id=uuid.uuid4().hex,
            issuer=(issuer or "").strip() or UNKNOWN_ISSUER,
            label=(label or "").strip(),
            secret=normalize_secret(secret),
        )
        self._save(self._accounts + [account])
        logger.info("Enrolled account %s (%s)", account.id, account.issuer)
        return account

    def add_from_uri(self, uri: str) -> Account:
        parsed = parse_otpauth_uri(uri)
        return self.add(parsed.issuer, parsed.label, parsed.secret)

    def remove(self, account_id: str) -> bool:
        remaining = [account for account in self._accounts if account.id != account_id]
        if len(remaining) == len(self._accounts):
            return False
        self._save(remaining)
        logger.info("Removed account %s", account_id)
        return True

    def _replace(self, account_id: str, **changes) -> Account:
        account = self.get(account_id)
        if account is None:
            raise ValidationError(f"No account with id {account_id}")
        updated = replace(account, **changes)
        self._save([updated if a.id == account_id else a for a in self._accounts])
        return updated

    def update(self, account_id: str, issuer: Optional[str] = None, label: Optional[str] = None) -> Account:
        """
        Rename an account. Fields left as None keep their value; the secret
        cannot be changed here.

        Raises:
            ValidationError: unknown account id
        """
        changes = {}
        if issuer is not None:
            changes["issuer"] = issuer.strip() or UNKNOWN_ISSUER
        if label is not None:
            changes["label"] = label.strip()
        account = self._replace(account_id, **changes)
        logger.info("Updated account %s", account_id)
        return account

    def toggle_favorite(self, account_id: str) -> Account:
        account = self.get(account_id)
        if account is None:
            raise ValidationError(f"No account with id {account_id}")
        return self._replace(account_id, favorite=not account.favorite)

    def mark_used(self, account_id: str, timestamp: Optional[float] = None) -> Account:
        return self._replace(account_id, last_used=time.time() if timestamp is None else timestamp)

    def reorder(self, account_ids: List[str]) -> List[Account]:
        """
        Put the listed accounts first, in the given order. Unknown ids are
        ignored; accounts not listed keep their relative order after them.
        """
        by_id = {account.id: account for account in self._accounts}
        ordered = [by_id.pop(account_id) for account_id in dict.fromkeys(account_ids) if account_id in by_id]
        ordered += [account for account in self._accounts if account.id in by_id]
        self._save(ordered)
        return self.accounts

    def refresh(self, timestamp: Optional[float] = None) -> Dict[str, otp_core.TotpSample]:
        """
        Codes for every account at one instant.

        Each account is computed on its own: a broken secret yields the
        placeholder for that account only.
        """
        if timestamp is None:
            timestamp = time.time()
        return {account.id: otp_core.sample(account.secret, timestamp) for account in self._accounts}
