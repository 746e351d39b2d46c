"""Time-based one-time passwords (RFC 6238 on top of RFC 4226 HOTP).

Secrets are exchanged as unpadded RFC 4648 Base32. Decoding is forgiving
about case and trailing ``=`` padding but rejects any other character with
InvalidSecretError.
"""
from datetime import datetime
from urllib.parse import quote
import base64, hashlib, hmac, secrets, struct, time

from .errors import InvalidSecretError

BASE32_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"
SECRET_SIZE = 20
DEFAULT_STEP = 30
DEFAULT_DIGITS = 6
DEFAULT_WINDOW = 1

_B32_INDEX = {c: i for i, c in enumerate(BASE32_ALPHABET)}


def b32encode(data: bytes) -> str:
    """Base32-encode without padding."""
    return base64.b32encode(data).decode("ascii").rstrip("=")


def b32decode(secret: str) -> bytes:
    """Decode a Base32 secret of any length; leftover bits (< 8) are dropped."""
    cleaned = secret.upper().rstrip("=")
    out = bytearray()
    value = 0
    bits = 0
    for ch in cleaned:
        idx = _B32_INDEX.get(ch)
        if idx is None:
            raise InvalidSecretError(f"invalid base32 character: {ch!r}")
        value = ((value << 5) | idx) & 0x1FFF
        bits += 5
        if bits >= 8:
            out.append((value >> (bits - 8)) & 0xFF)
            bits -= 8
    return bytes(out)


def generate_secret() -> str:
    """Return a fresh 20-byte secret, Base32-encoded (32 characters)."""
    return b32encode(secrets.token_bytes(SECRET_SIZE))


def _timestamp(for_time) -> float:
    if for_time is None:
        return time.time()
    if isinstance(for_time, datetime):
        return for_time.timestamp()
    return float(for_time)


def _counter(for_time, step: int) -> int:
    if step <= 0:
        raise ValueError("step must be positive")
    return int(_timestamp(for_time) // step)


def hotp(key: bytes, counter: int, digits: int = DEFAULT_DIGITS) -> str:
    """RFC 4226 HOTP value for `counter`, zero-padded to `digits`."""
    mac = hmac.new(key, struct.pack(">Q", counter), hashlib.sha1).digest()
    offset = mac[-1] & 0x0F
    binary = struct.unpack(">I", mac[offset:offset + 4])[0] & 0x7FFFFFFF
    return str(binary % (10 ** digits)).zfill(digits)


def generate(secret: str, for_time=None, step: int = DEFAULT_STEP, digits: int = DEFAULT_DIGITS) -> str:
    """Current (or `for_time`'s) TOTP code for a Base32 secret."""
    return hotp(b32decode(secret), _counter(for_time, step), digits)


def verify(
    secret: str,
    code: str,
    window: int = DEFAULT_WINDOW,
    for_time=None,
    step: int = DEFAULT_STEP,
    digits: int = DEFAULT_DIGITS,
) -> bool:
    """Check `code` against counters ``current-window .. current+window``.

    All candidates are compared in constant time and the loop never exits
    early, so timing does not reveal which offset matched.
    """
    if window < 0:
        raise ValueError("window must be non-negative")
    key = b32decode(secret)
    current = _counter(for_time, step)
    if not isinstance(code, str) or len(code) != digits or not code.isascii() or not code.isdigit():
        return False
    candidate = code.encode("ascii")
    matched = False
    for counter in range(current - window, current + window + 1):
        expected = hotp(key, counter, digits).encode("ascii")
        matched |= hmac.compare_digest(expected, candidate)
    return matched


def provisioning_uri(secret: str, account_label: str, issuer: str = "CredVault") -> str:
    """otpauth:// URI understood by authenticator apps (and rendered as a QR code)."""
    label = f"{quote(issuer, safe='')}:{quote(account_label, safe='')}"
    return f"otpauth://totp/{label}?secret={secret}&issuer={quote(issuer, safe='')}"
