from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from nacl.bindings import (
    crypto_aead_chacha20poly1305_ietf_encrypt,
    crypto_aead_chacha20poly1305_ietf_decrypt,
    crypto_aead_chacha20poly1305_ietf_KEYBYTES,
    crypto_aead_chacha20poly1305_ietf_NPUBBYTES,
    crypto_aead_chacha20poly1305_ietf_ABYTES,
)
from nacl.exceptions import CryptoError
import os, hmac, base64, binascii

from .errors import DecryptionError

SALT_SIZE = 16
NONCE_SIZE = crypto_aead_chacha20poly1305_ietf_NPUBBYTES  # 12
KEY_SIZE = crypto_aead_chacha20poly1305_ietf_KEYBYTES     # 32
TAG_SIZE = crypto_aead_chacha20poly1305_ietf_ABYTES       # 16
HEADER_SIZE = SALT_SIZE + NONCE_SIZE
MIN_ENVELOPE_SIZE = HEADER_SIZE + TAG_SIZE

PBKDF2_ITERATIONS = 100_000

_DECRYPT_FAILED = "Decryption failed - invalid password or corrupted data"


def derive_key(password: str, salt: bytes) -> bytearray:
    """Derive a 32-byte key from the master password with PBKDF2-HMAC-SHA256.

    The result is a ``bytearray`` so callers can wipe it with ``zero_bytes``.
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=bytes(salt),
        iterations=PBKDF2_ITERATIONS,
    )
    pw = bytearray(password.encode("utf-8"))
    try:
        return bytearray(kdf.derive(bytes(pw)))
    finally:
        zero_bytes(pw)


def gen_salt() -> bytes:
    """Return 16 random bytes of per-encryption KDF salt."""
    return os.urandom(SALT_SIZE)


def gen_nonce() -> bytes:
    """Return a cryptographically-random 12-byte nonce for ChaCha20-Poly1305."""
    return os.urandom(NONCE_SIZE)


def aead_encrypt(key: bytes, nonce: bytes, plaintext: bytes, ad: bytes | None = None) -> bytes:
    """Encrypt `plaintext` with ChaCha20-Poly1305 (IETF) using the supplied nonce and AD."""
    return crypto_aead_chacha20poly1305_ietf_encrypt(plaintext, ad, nonce, bytes(key))


def aead_decrypt(key: bytes, nonce: bytes, ciphertext: bytes, ad: bytes | None = None) -> bytes:
    """Decrypt a ciphertext produced by `aead_encrypt`, raising DecryptionError on failure."""
    try:
        return crypto_aead_chacha20poly1305_ietf_decrypt(ciphertext, ad, nonce, bytes(key))
    except CryptoError as exc:
        raise DecryptionError(_DECRYPT_FAILED) from exc


def encrypt(plaintext: bytes, password: str) -> str:
    """Encrypt `plaintext` under `password` and return a base64 envelope.

    Layout before encoding: ``salt[16] || nonce[12] || ciphertext || tag[16]``.
    Salt and nonce are fresh on every call, so the derived key never sees a
    repeated nonce.
    """
    salt = gen_salt()
    nonce = gen_nonce()
    key = derive_key(password, salt)
    try:
        ct = aead_encrypt(key, nonce, plaintext)
    finally:
        zero_bytes(key)
    return b64e(salt + nonce + ct)


def split_envelope(envelope: str) -> tuple[bytes, bytes, bytes]:
    """Decode an envelope string into ``(salt, nonce, ciphertext)``.

    Raises DecryptionError if the string is not canonical base64 or is too
    short to hold salt, nonce and tag.
    """
    if not isinstance(envelope, str):
        raise DecryptionError(_DECRYPT_FAILED)
    try:
        raw = base64.b64decode(envelope.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise DecryptionError(_DECRYPT_FAILED) from exc
    if len(raw) < MIN_ENVELOPE_SIZE:
        raise DecryptionError(_DECRYPT_FAILED)
    # canonical form only: non-zero pad bits in the last char are rejected
    if b64e(raw) != envelope:
        raise DecryptionError(_DECRYPT_FAILED)
    return raw[:SALT_SIZE], raw[SALT_SIZE:HEADER_SIZE], raw[HEADER_SIZE:]


def decrypt(envelope: str, password: str) -> bytes:
    """Open an envelope produced by `encrypt`.

    Every failure cause (bad encoding, short input, wrong password, tampered
    bytes) raises the same DecryptionError.
    """
    salt, nonce, ct = split_envelope(envelope)
    key = derive_key(password, salt)
    try:
        return aead_decrypt(key, nonce, ct)
    finally:
        zero_bytes(key)


def b64e(b: bytes) -> str: return base64.b64encode(b).decode("ascii")


def consteq(a: bytes, b: bytes) -> bool:
    """Constant-time comparison helper to avoid timing leaks when comparing secrets."""
    return hmac.compare_digest(a, b)


def zero_bytes(b):
    """Best-effort zeroization for mutable buffers that held sensitive information."""
    if isinstance(b, bytearray):
        for i in range(len(b)):
            b[i] = 0
    elif isinstance(b, memoryview) and not b.readonly:
        b[:] = b"\x00" * len(b)
