"""Key-value blob stores backing the vault and account records.

The vault only needs ``get``/``put`` on opaque byte values; a ``put`` must
replace the whole value atomically. ``FileBlobStore`` gets that from a
write-to-temp-then-rename in a 0700 directory.
"""
import os, pathlib, stat, re, tempfile, threading
from abc import ABC, abstractmethod
from typing import Dict, Optional

from .logging import get_logger

LOG = get_logger("storage")

NOFOLLOW_FLAG = getattr(os, "O_NOFOLLOW", 0)
KEY_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,200}$")
BLOB_SUFFIX = ".bin"


def validate_key(key: str) -> str:
    if not isinstance(key, str):
        raise TypeError("key must be a string")
    if not KEY_PATTERN.fullmatch(key) or key in (".", ".."):
        raise ValueError(f"invalid storage key: {key!r}")
    return key


def ensure_not_symlink(path: pathlib.Path, label: str):
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        return
    if stat.S_ISLNK(st.st_mode):
        raise RuntimeError(f"{label} {path} is a symlink, which is not allowed")


def ensure_regular_file(path: pathlib.Path, label: str, allow_missing: bool = False):
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        if allow_missing:
            return
        raise
    if not stat.S_ISREG(st.st_mode):
        raise RuntimeError(f"{label} {path} is not a regular file")
    if st.st_nlink > 1:
        raise RuntimeError(f"{label} {path} has unexpected hard links")


def safe_read_bytes(path: pathlib.Path) -> bytes:
    """
    Open and read a file without following symlinks, holding the descriptor for the read.
    """
    ensure_regular_file(path, str(path))
    flags = os.O_RDONLY
    if NOFOLLOW_FLAG:
        flags |= NOFOLLOW_FLAG
    fd = os.open(path, flags)
    with os.fdopen(fd, "rb") as f:
        return f.read()


def write_secure_file(path, data: bytes):
    """Atomically replace `path` with `data`, mode 0600 (owner read/write only)."""
    path = pathlib.Path(path)
    ensure_not_symlink(path.parent, "Parent directory")
    ensure_not_symlink(path, "Target file")
    fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, path)
    finally:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
    ensure_regular_file(path, "Target file")


def check_dir_permissions(path: pathlib.Path):
    if os.name != "posix":
        return  # only enforce on Linux/Unix
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        return
    if stat.S_ISLNK(st.st_mode):
        raise PermissionError(f"Vault directory {path} cannot be a symlink")
    # group or others have any permission -> too open
    if st.st_mode & (stat.S_IRWXG | stat.S_IRWXO):
        raise PermissionError(
            f"Vault directory {path} is too open. "
            f"Fix with: chmod 700 {path}"
        )


def canonicalize_path(path) -> pathlib.Path:
    """Absolute, symlink-resolved version of `path`."""
    return pathlib.Path(path).expanduser().resolve(strict=False)


class BlobStore(ABC):
    """Minimal key-value interface: whole-value reads and atomic whole-value writes."""

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        """Return the stored value, or None when the key is absent."""

    @abstractmethod
    def put(self, key: str, value: bytes) -> None:
        """Replace the value stored under `key`."""


class MemoryBlobStore(BlobStore):
    """In-process store, used for tests and throwaway sessions."""

    def __init__(self, initial: Optional[Dict[str, bytes]] = None):
        self._data: Dict[str, bytes] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(validate_key(key))

    def put(self, key: str, value: bytes) -> None:
        if not isinstance(value, (bytes, bytearray)):
            raise TypeError("value must be bytes")
        with self._lock:
            self._data[validate_key(key)] = bytes(value)

    def keys(self):
        with self._lock:
            return sorted(self._data)


class FileBlobStore(BlobStore):
    """One 0600 file per key inside a 0700 directory."""

    def __init__(self, root):
        self.root = canonicalize_path(root)
        ensure_not_symlink(self.root, "Vault root")
        check_dir_permissions(self.root)
        self._mkroot()

    def _mkroot(self):
        self.root.mkdir(parents=True, exist_ok=True)
        ensure_not_symlink(self.root, "Vault root")
        if os.name == "posix":
            os.chmod(self.root, 0o700)

    def path_for(self, key: str) -> pathlib.Path:
        return self.root / f"{validate_key(key)}{BLOB_SUFFIX}"

    def get(self, key: str) -> Optional[bytes]:
        path = self.path_for(key)
        try:
            return safe_read_bytes(path)
        except FileNotFoundError:
            return None

    def put(self, key: str, value: bytes) -> None:
        path = self.path_for(key)
        write_secure_file(path, bytes(value))
        LOG.debug("blob_written", store=str(self.root), blob=key, size=len(value))

    def keys(self):
        return sorted(p.name[: -len(BLOB_SUFFIX)] for p in self.root.glob(f"*{BLOB_SUFFIX}") if not p.name.startswith("."))
