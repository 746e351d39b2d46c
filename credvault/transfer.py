"""Portable export documents and import (replace or merge-by-id).

Document shape::

    {"version": "1.0", "timestamp": <unix ms>, "items": ["<envelope>", ...]}

Every item is its own envelope, encrypted under the export password.
"""
from enum import Enum
from typing import List, Optional, Sequence
import json

from pydantic import ValidationError

from .errors import InvalidFormatError, VaultLockedError
from .logging import get_logger
from .models import ExportDocument, VaultItem
from .vault import VaultStore, now_ms

LOG = get_logger("transfer")

FORMAT_VERSION = "1.0"
SUPPORTED_VERSIONS = (FORMAT_VERSION,)


class ImportMode(str, Enum):
    REPLACE = "replace"
    MERGE = "merge"


def export_document(store: VaultStore, items: Sequence[VaultItem], password: str, now: Optional[int] = None) -> str:
    """Serialize `items` into an export document encrypted under `password`."""
    doc = ExportDocument(
        version=FORMAT_VERSION,
        timestamp=now if now is not None else now_ms(),
        items=store.encrypt_items(list(items), password),
    )
    return json.dumps(doc.model_dump(), indent=2)


def export_vault(store: VaultStore, password: Optional[str] = None) -> str:
    """Export the unlocked collection, by default under the session password."""
    items = store.items
    doc = export_document(store, items, password if password is not None else store.session_password())
    LOG.info("vault_exported", account=store.account_id, items=len(items))
    return doc


def parse_document(text) -> ExportDocument:
    """Validate the document shape, raising InvalidFormatError for anything else."""
    try:
        obj = json.loads(text)
    except (TypeError, ValueError) as exc:
        raise InvalidFormatError("Invalid vault file format") from exc
    if not isinstance(obj, dict):
        raise InvalidFormatError("Invalid vault file format")
    try:
        doc = ExportDocument.model_validate(obj)
    except ValidationError as exc:
        raise InvalidFormatError("Invalid vault file format") from exc
    if doc.version not in SUPPORTED_VERSIONS:
        raise InvalidFormatError(f"Unsupported vault file version: {doc.version}")
    return doc


def merge_items(existing: Sequence[VaultItem], imported: Sequence[VaultItem]) -> List[VaultItem]:
    """Append imported items whose id is new; on id collision the existing item wins."""
    merged = list(existing)
    seen = {it.id for it in existing}
    for it in imported:
        if it.id not in seen:
            merged.append(it)
            seen.add(it.id)
    return merged


def import_document(store: VaultStore, text, password: str, mode: ImportMode = ImportMode.REPLACE) -> List[VaultItem]:
    """Decrypt every item of `text` with `password` and apply it to the unlocked store.

    All items are decrypted before anything changes; a single failure raises
    DecryptionError (or MalformedRecordError) and the vault is untouched.
    The result is persisted under the session master password.
    """
    mode = ImportMode(mode)
    if not store.is_unlocked:
        raise VaultLockedError("vault is locked")
    doc = parse_document(text)
    imported = store.decrypt_envelopes(doc.items, password)
    if mode is ImportMode.MERGE:
        result = store.apply(lambda current: merge_items(current, imported))
    else:
        result = store.apply(lambda current: list(imported))
    LOG.info("vault_imported", account=store.account_id, mode=mode.value, imported=len(imported), total=len(result))
    return result
