"""
Structural and cryptographic health checks for a stored vault.

Checks:
- Storage directory / blob permissions (700/600), ownership, symlinks
- Stored blob shape (JSON array of envelope strings)
- Envelope encoding and length
- Salt and nonce uniqueness across envelopes
- With the master password: every envelope decrypts, ids are unique,
  timestamps are ordered
"""

from __future__ import annotations

import os
import stat
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import codec, crypto
from .errors import CredVaultError, DecryptionError, InvalidFormatError
from .storage import BlobStore, FileBlobStore
from .vault import VaultStore


class Severity(str, Enum):
    OK = "OK"
    WARNING = "WARNING"
    ERROR = "ERROR"


@dataclass
class CheckResult:
    id: str
    severity: Severity
    message: str
    path: Optional[Path] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "severity": self.severity.value,
            "message": self.message,
            "path": str(self.path) if self.path else None,
            "details": self.details or None,
        }


def _mode_bits(path: Path) -> int:
    """Permission bits (0o000-0o777) for a path without following symlinks."""
    return stat.S_IMODE(os.lstat(path).st_mode)


def _is_owned_by_current_user(path: Path) -> bool:
    return os.lstat(path).st_uid == os.getuid()


def has_errors(results: List[CheckResult]) -> bool:
    return any(r.severity == Severity.ERROR for r in results)


def format_result(r: CheckResult) -> str:
    prefix = {
        Severity.OK: "[OK]     ",
        Severity.WARNING: "[WARN]   ",
        Severity.ERROR: "[ERROR]  ",
    }[r.severity]
    loc = f" ({r.path})" if r.path else ""
    line = f"{prefix}{r.id}: {r.message}{loc}"
    if r.details:
        line += f"\n          details: {r.details}"
    return line


class VaultDoctor:
    def __init__(self, blobs: BlobStore, account_id: str, password: Optional[str] = None) -> None:
        self.blobs = blobs
        self.store = VaultStore(blobs, account_id)
        self.password = password

    def run(self) -> List[CheckResult]:
        results: List[CheckResult] = []

        if isinstance(self.blobs, FileBlobStore) and os.name == "posix":
            results.extend(self._check_files())

        envelopes, blob_results = self._load_envelopes()
        results.extend(blob_results)

        if envelopes:
            results.extend(self._check_envelopes(envelopes))
            if self.password is not None and not has_errors(results):
                results.extend(self._check_contents(envelopes))

        if not any(r.severity != Severity.OK for r in results):
            results.append(
                CheckResult(
                    id="summary_all_good",
                    severity=Severity.OK,
                    message="Vault passed all checks.",
                )
            )
        return results

    def _check_files(self) -> List[CheckResult]:
        results: List[CheckResult] = []
        root = self.blobs.root
        if stat.S_ISLNK(os.lstat(root).st_mode):
            results.append(CheckResult("root_is_symlink", Severity.ERROR, "Vault directory is a symlink.", root))
            return results

        actual = _mode_bits(root)
        if actual != 0o700:
            results.append(
                CheckResult(
                    "permission_mismatch",
                    Severity.ERROR,
                    f"Directory permissions {oct(actual)} != expected 0o700",
                    root,
                    {"expected": "0o700", "actual": oct(actual)},
                )
            )
        else:
            results.append(CheckResult("root_permissions_ok", Severity.OK, "Vault directory permissions are 700.", root))

        if not _is_owned_by_current_user(root):
            results.append(CheckResult("root_wrong_owner", Severity.ERROR, "Vault directory is not owned by the current user.", root))

        blob = self.blobs.path_for(self.store.storage_key)
        if os.path.lexists(blob):
            st = os.lstat(blob)
            if stat.S_ISLNK(st.st_mode) or not stat.S_ISREG(st.st_mode):
                results.append(CheckResult("blob_not_regular_file", Severity.ERROR, "Vault blob is not a regular file.", blob))
            elif _mode_bits(blob) != 0o600:
                results.append(
                    CheckResult(
                        "permission_mismatch",
                        Severity.ERROR,
                        f"File permissions {oct(_mode_bits(blob))} != expected 0o600",
                        blob,
                        {"expected": "0o600", "actual": oct(_mode_bits(blob))},
                    )
                )
            else:
                results.append(CheckResult("blob_permissions_ok", Severity.OK, "Vault blob permissions are 600.", blob))
        return results

    def _load_envelopes(self):
        try:
            envelopes = self.store.read_envelopes()
        except InvalidFormatError as e:
            return None, [CheckResult("blob_malformed", Severity.ERROR, str(e))]
        except (OSError, RuntimeError) as e:
            return None, [CheckResult("blob_read_failed", Severity.ERROR, f"Failed to read vault blob: {e}")]
        if envelopes is None:
            return None, [CheckResult("vault_empty", Severity.WARNING, "No vault stored for this account yet.")]
        return envelopes, [
            CheckResult("blob_shape_ok", Severity.OK, "Vault blob is a JSON envelope list.", details={"envelopes": len(envelopes)})
        ]

    def _check_envelopes(self, envelopes: List[str]) -> List[CheckResult]:
        results: List[CheckResult] = []
        salts, nonces = set(), set()
        malformed = reused = 0
        for idx, env in enumerate(envelopes):
            try:
                salt, nonce, _ = crypto.split_envelope(env)
            except DecryptionError:
                malformed += 1
                results.append(
                    CheckResult("envelope_malformed", Severity.ERROR, "Envelope is not valid base64 or is truncated.", details={"index": idx})
                )
                continue
            if salt in salts or nonce in nonces:
                reused += 1
                results.append(
                    CheckResult("salt_or_nonce_reuse", Severity.ERROR, "Salt or nonce reused across envelopes.", details={"index": idx})
                )
            salts.add(salt)
            nonces.add(nonce)

        if not malformed:
            results.append(CheckResult("envelopes_well_formed", Severity.OK, "All envelopes are well formed."))
        if not reused:
            results.append(CheckResult("nonce_reuse_check_ok", Severity.OK, "No salt or nonce reuse detected."))
        return results

    def _check_contents(self, envelopes: List[str]) -> List[CheckResult]:
        results: List[CheckResult] = []
        try:
            items = [codec.decode(crypto.decrypt(env, self.password)) for env in envelopes]
        except CredVaultError as e:
            return [CheckResult("decrypt_failed", Severity.ERROR, f"Vault could not be decrypted: {e}")]
        results.append(CheckResult("decrypt_ok", Severity.OK, "All envelopes decrypt and decode.", details={"items": len(items)}))

        ids = [it.id for it in items]
        if len(ids) != len(set(ids)):
            results.append(CheckResult("duplicate_ids", Severity.ERROR, "Item ids are not unique."))
        for it in items:
            if it.updated_at < it.created_at:
                results.append(
                    CheckResult("timestamps_out_of_order", Severity.WARNING, "updatedAt precedes createdAt.", details={"item": it.id})
                )
        return results
