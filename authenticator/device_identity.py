"""
device_identity.py — The device's long-term post-quantum identity.

One identity per installation:
- device_id   : stable opaque string, derived from the platform machine id
                (hashed) or a random uuid4
- pqc keypair : ML-DSA-44 (FIPS 204, the standardised Dilithium2), private
                key stored as its 32-byte seed in hex, never sent anywhere
- kem keypair : optional ML-KEM-768 keypair whose public key is registered
                with the backend

Approval decisions are signed with the ML-DSA key. Signing returns an explicit
Signed / Unsigned value instead of raising, so callers cannot mistake "could
not sign" for "signed".
"""

import asyncio
import base64
import hashlib
import logging
import secrets
import uuid
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Union

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric import mldsa, mlkem

from local_store.db_manager import (
    DEVICE_ID_KEY,
    IDENTITY_VERSION_KEY,
    KEM_KEYPAIR_KEY,
    PQC_KEYPAIR_KEY,
)

logger = logging.getLogger(__name__)

# --- Config / constants ----------------------------------------------------
SIGNATURE_ALGORITHM = "ML-DSA-44"
KEM_ALGORITHM = "ML-KEM-768"
SEED_BYTES = 32
DEVICE_ID_PREFIX = "device-"

# Identity format version. Bump when a migration below has to run again.
IDENTITY_VERSION = 2
# Placeholder signer of early builds: keys with this tag carry no security
OBSOLETE_ALGORITHMS = frozenset({"Mock-Dilithium"})
# Ids derived from the application id were identical on every device
OBSOLETE_DEVICE_ID_PREFIX = "device-com."

MACHINE_ID_PATHS = ("/etc/machine-id", "/var/lib/dbus/machine-id")


# --- Types -----------------------------------------------------------------
@dataclass(frozen=True)
class DeviceKeypair:
    algorithm: str
    public_key: str   # hex
    private_key: str  # hex

    @classmethod
    def from_dict(cls, data) -> Optional["DeviceKeypair"]:
        if not isinstance(data, dict):
            return None
        fields = (data.get("algorithm"), data.get("public_key"), data.get("private_key"))
        if not all(isinstance(value, str) and value for value in fields):
            return None
        return cls(*fields)

    def to_dict(self) -> dict:
        return {"algorithm": self.algorithm, "public_key": self.public_key, "private_key": self.private_key}


@dataclass(frozen=True)
class KemKeypair:
    algorithm: str
    public_key: str   # base64
    private_key: str  # base64

    @classmethod
    def from_dict(cls, data) -> Optional["KemKeypair"]:
        if not isinstance(data, dict):
            return None
        fields = (data.get("algorithm"), data.get("public_key"), data.get("private_key"))
        if not all(isinstance(value, str) and value for value in fields):
            return None
        return cls(*fields)

    def to_dict(self) -> dict:
        return {"algorithm": self.algorithm, "public_key": self.public_key, "private_key": self.private_key}


@dataclass(frozen=True)
class DeviceIdentity:
    device_id: str
    keypair: Optional[DeviceKeypair]

    @property
    def can_sign(self) -> bool:
        return self.keypair is not None and self.keypair.algorithm == SIGNATURE_ALGORITHM


@dataclass(frozen=True)
class Signed:
    signature: str  # hex

    def __bool__(self) -> bool:
        return True


@dataclass(frozen=True)
class Unsigned:
    reason: str = "no usable keypair"

    def __bool__(self) -> bool:
        return False


Signature = Union[Signed, Unsigned]


# --- Primitives ------------------------------------------------------------
class MlDsa44Scheme:
    """ML-DSA-44 through `cryptography`; private keys are 32-byte seeds."""

    algorithm = SIGNATURE_ALGORITHM

    def generate(self, seed: bytes) -> Tuple[bytes, bytes]:
        private_key = mldsa.MLDSA44PrivateKey.from_seed_bytes(seed)
        return private_key.public_key().public_bytes_raw(), private_key.private_bytes_raw()

    def sign(self, private_key: bytes, message: bytes) -> bytes:
        return mldsa.MLDSA44PrivateKey.from_seed_bytes(private_key).sign(message)

    def verify(self, public_key: bytes, message: bytes, signature: bytes) -> bool:
        try:
            mldsa.MLDSA44PublicKey.from_public_bytes(public_key).verify(signature, message)
        except InvalidSignature:
            return False
        return True


class MlKem768Scheme:
    algorithm = KEM_ALGORITHM

    def generate(self) -> Tuple[bytes, bytes]:
        private_key = mlkem.MLKEM768PrivateKey.generate()
        return private_key.public_key().public_bytes_raw(), private_key.private_bytes_raw()


def platform_identifier() -> Optional[str]:
    """
    Stable per-machine identifier, or None when the platform has none.

    The machine id must not be exposed verbatim, so only a digest is used.
    """
    for path in MACHINE_ID_PATHS:
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = f.read().strip()
        except OSError:
            continue
        if raw:
            return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]
    return None


# --- Manager ---------------------------------------------------------------
class DeviceIdentityManager:
    """
    Owns the persisted identity of this installation.

    Usage:
        manager = DeviceIdentityManager(store)
        identity = manager.ensure_identity()
        signature = manager.sign("challenge-id:approved")
        if signature:
            submit(signature.signature)
    """

    def __init__(
        self,
        store,
        scheme=None,
        kem_scheme=None,
        platform_id: Callable[[], Optional[str]] = platform_identifier,
    ):
        self._store = store
        self._scheme = scheme or MlDsa44Scheme()
        self._kem_scheme = kem_scheme or MlKem768Scheme()
        self._platform_id = platform_id
        self._identity: Optional[DeviceIdentity] = None

    @property
    def identity(self) -> Optional[DeviceIdentity]:
        return self._identity

    def migrate(self) -> bool:
        """
        One-time identity migration, gated by the persisted version tag.

        Discards keypairs tagged with an obsolete placeholder algorithm and
        device ids of the obsolete shared format. Returns True if anything was
        discarded; once the tag is current this is a no-op returning False.
        """
        stored = self._store.get(IDENTITY_VERSION_KEY)
        try:
            if stored is not None and int(stored) >= IDENTITY_VERSION:
                return False
        except ValueError:
            logger.warning("Unreadable identity version %r; migrating", stored)

        discarded = False
        keypair = self._store.get_json(PQC_KEYPAIR_KEY)
        if isinstance(keypair, dict) and keypair.get("algorithm") in OBSOLETE_ALGORITHMS:
            logger.warning("Discarding keypair with obsolete algorithm %s", keypair.get("algorithm"))
            self._store.delete(PQC_KEYPAIR_KEY)
            discarded = True

        device_id = self._store.get(DEVICE_ID_KEY)
        if device_id and device_id.startswith(OBSOLETE_DEVICE_ID_PREFIX):
            logger.warning("Discarding shared-format device id")
            self._store.delete(DEVICE_ID_KEY)
            discarded = True

        self._store.set(IDENTITY_VERSION_KEY, str(IDENTITY_VERSION))
        if discarded:
            self._identity = None
        return discarded

    def ensure_identity(self) -> DeviceIdentity:
        """
        Load the identity, creating whatever part is missing.

        - device id : "device-" + platform identifier, else a random uuid4
        - keypair   : fresh ML-DSA-44 keypair from a 32-byte CSPRNG seed

        If the crypto backend cannot do ML-DSA the identity has no keypair and
        every sign() returns Unsigned.
        """
        self.migrate()

        device_id = self._store.get(DEVICE_ID_KEY)
        if not device_id:
            device_id = DEVICE_ID_PREFIX + (self._platform_id() or uuid.uuid4().hex)
            self._store.set(DEVICE_ID_KEY, device_id)
            logger.info("Created device id %s", device_id)

        keypair = self._load_keypair()
        if keypair is None:
            keypair = self._generate_keypair()

        self._identity = DeviceIdentity(device_id=device_id, keypair=keypair)
        return self._identity

    def _load_keypair(self) -> Optional[DeviceKeypair]:
        raw = self._store.get_json(PQC_KEYPAIR_KEY)
        keypair = DeviceKeypair.from_dict(raw)
        if raw is not None and keypair is None:
            logger.warning("Stored keypair is malformed; a new one will be generated")
        return keypair

    def _generate_keypair(self) -> Optional[DeviceKeypair]:
        seed = secrets.token_bytes(SEED_BYTES)
        try:
            public_key, private_key = self._scheme.generate(seed)
        except UnsupportedAlgorithm as e:
            logger.error("Cannot generate %s keypair: %s", self._scheme.algorithm, e)
            return None
        keypair = DeviceKeypair(
            algorithm=self._scheme.algorithm,
            public_key=public_key.hex(),
            private_key=private_key.hex(),
        )
        self._store.set_json(PQC_KEYPAIR_KEY, keypair.to_dict())
        logger.info("Generated %s keypair", keypair.algorithm)
        return keypair

    def ensure_kem_keypair(self) -> Optional[KemKeypair]:
        """Optional ML-KEM-768 keypair; None when the crypto backend lacks it."""
        keypair = KemKeypair.from_dict(self._store.get_json(KEM_KEYPAIR_KEY))
        if keypair is not None:
            return keypair
        try:
            public_key, private_key = self._kem_scheme.generate()
        except UnsupportedAlgorithm as e:
            logger.warning("Cannot generate %s keypair: %s", self._kem_scheme.algorithm, e)
            return None
        keypair = KemKeypair(
            algorithm=self._kem_scheme.algorithm,
            public_key=base64.b64encode(public_key).decode("ascii"),
            private_key=base64.b64encode(private_key).decode("ascii"),
        )
        self._store.set_json(KEM_KEYPAIR_KEY, keypair.to_dict())
        return keypair

    def sign(self, message: str, identity: Optional[DeviceIdentity] = None) -> Signature:
        """
        Sign `message` (UTF-8) with the device private key.

        Returns Unsigned, never raises, when there is no keypair, the keypair is
        not an ML-DSA-44 one, or the primitive fails.
        """
        keypair = identity.keypair if identity is not None else None
        if keypair is None and identity is None:
            keypair = self._identity.keypair if self._identity else self._load_keypair()
        if keypair is None or not keypair.private_key:
            return Unsigned("no keypair")
        if keypair.algorithm != self._scheme.algorithm:
            return Unsigned(f"unsupported algorithm {keypair.algorithm}")
        try:
            signature = self._scheme.sign(bytes.fromhex(keypair.private_key), message.encode("utf-8"))
        except (ValueError, UnsupportedAlgorithm) as e:
            logger.error("Signing failed: %s", e)
            return Unsigned("signing failed")
        return Signed(signature.hex())

    async def sign_async(self, message: str, identity: Optional[DeviceIdentity] = None) -> Signature:
        """sign() on a worker thread so the event loop keeps running."""
        return await asyncio.to_thread(self.sign, message, identity)

    def verify(self, message: str, signature_hex: str, public_key_hex: str) -> bool:
        try:
            return self._scheme.verify(
                bytes.fromhex(public_key_hex), message.encode("utf-8"), bytes.fromhex(signature_hex)
            )
        except (ValueError, UnsupportedAlgorithm):
            return False
