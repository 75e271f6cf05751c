import hashlib
import os
from base64 import urlsafe_b64encode

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .config import KEY_SIZE, SALT_SIZE
from .errors import DecryptionFailed


def random_bytes(size: int) -> bytes:
    return os.urandom(size)


def new_salt() -> bytes:
    return random_bytes(SALT_SIZE)


def derive_key(password: str, salt: bytes, iterations: int) -> bytearray:
    """
    PBKDF2-HMAC-SHA256 over the UTF-8 password.
    Returns a mutable buffer so the caller can zero it when done.
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=iterations,
    )
    return bytearray(kdf.derive(password.encode("utf-8")))


def sha256(data) -> bytes:
    return hashlib.sha256(bytes(data)).digest()


def secure_zero(buf: bytearray) -> None:
    for i in range(len(buf)):
        buf[i] = 0


def _fernet(key) -> Fernet:
    return Fernet(urlsafe_b64encode(bytes(key)))


def seal(key, plaintext: bytes) -> bytes:
    """Authenticated encryption of a byte blob under a 32-byte key."""
    return _fernet(key).encrypt(plaintext)


def open_sealed(key, blob: bytes) -> bytes:
    """
    Inverse of seal(). Fails closed: a wrong key or a tampered blob raises
    DecryptionFailed and no plaintext is returned.
    """
    try:
        return _fernet(key).decrypt(bytes(blob))
    except (InvalidToken, ValueError, TypeError) as exc:
        raise DecryptionFailed() from exc


def seal_text(key, text: str) -> bytes:
    return seal(key, text.encode("utf-8"))


def open_text(key, blob: bytes) -> str:
    return open_sealed(key, blob).decode("utf-8")


class MasterKey:
    """
    Owned buffer for the derived master key.

    wipe() zeroes the buffer in place; every later use raises. Copies handed
    out for a single operation are the caller's to drop.
    """

    __slots__ = ("_buf", "_wiped")

    def __init__(self, material: bytearray):
        self._buf = bytearray(material)
        self._wiped = False
        if isinstance(material, bytearray):
            secure_zero(material)

    @property
    def wiped(self) -> bool:
        return self._wiped

    def raw(self) -> bytearray:
        if self._wiped:
            raise ValueError("master key has been wiped")
        return self._buf

    def verifier(self) -> bytes:
        return sha256(self.raw())

    def wipe(self) -> None:
        if self._wiped:
            return
        secure_zero(self._buf)
        self._wiped = True

    def __len__(self) -> int:
        return len(self._buf)

    def __del__(self):
        self.wipe()

    def __repr__(self) -> str:
        return f"<MasterKey len={len(self._buf)} wiped={self._wiped}>"
