"""Unlocked-session vault: the decrypted item collection and its persistence.

The store is either Locked (nothing decrypted held) or Unlocked (items plus
the master password, kept so every mutation can re-encrypt). Each mutation
re-encrypts the *whole* collection with fresh salts/nonces and overwrites
the stored blob; the in-memory list is only swapped after the write.
"""
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Callable, Iterable, List, Optional, Sequence, Union
import json, threading, time, uuid

from . import codec, crypto
from .errors import (
    DecryptionError,
    IncorrectPasswordError,
    InvalidFormatError,
    NotFoundError,
    VaultLockedError,
)
from .logging import get_logger
from .models import ItemDraft, ItemPatch, VaultItem
from .storage import BlobStore

LOG = get_logger("vault")


def now_ms() -> int:
    return int(time.time() * 1000)


def vault_key(account_id: str) -> str:
    """Storage key holding an account's list of item envelopes."""
    return f"vault_{account_id}"


class VaultState(str, Enum):
    LOCKED = "locked"
    UNLOCKED = "unlocked"


class VaultStore:
    """Owns the decrypted collection for one account's session.

    Mutations (add/update/remove/apply) hold an RLock across the whole
    read-modify-persist sequence. `search` works on a snapshot taken under
    the same lock.
    """

    def __init__(self, blobs: BlobStore, account_id: str, workers: int = 1):
        if not account_id:
            raise ValueError("account_id is required")
        self._blobs = blobs
        self.account_id = account_id
        self.storage_key = vault_key(account_id)
        self._workers = max(1, int(workers))
        self._lock = threading.RLock()
        self._items: Optional[List[VaultItem]] = None
        self._password: Optional[bytearray] = None

    # ------------------------------------------------------------------
    # session state
    # ------------------------------------------------------------------

    @property
    def state(self) -> VaultState:
        return VaultState.UNLOCKED if self._items is not None else VaultState.LOCKED

    @property
    def is_unlocked(self) -> bool:
        return self.state is VaultState.UNLOCKED

    @property
    def items(self) -> tuple:
        with self._lock:
            return tuple(self._require_items())

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.lock()

    def __len__(self):
        with self._lock:
            return len(self._items) if self._items is not None else 0

    def _require_items(self) -> List[VaultItem]:
        if self._items is None:
            raise VaultLockedError("vault is locked")
        return self._items

    def _session_password(self) -> str:
        if self._password is None:
            raise VaultLockedError("vault is locked")
        return self._password.decode("utf-8")

    def unlock(self, password: str) -> List[VaultItem]:
        """Decrypt the stored collection and enter the Unlocked state.

        A vault with nothing stored yet unlocks with zero items. If any
        envelope fails to authenticate, IncorrectPasswordError is raised and
        the store stays Locked; nothing partially decrypted is kept.
        """
        with self._lock:
            self.lock()
            envelopes = self.read_envelopes()
            if envelopes is None:
                items: List[VaultItem] = []
            else:
                try:
                    items = self.decrypt_envelopes(envelopes, password)
                except DecryptionError as exc:
                    LOG.warning("vault_unlock_failed", account=self.account_id, envelopes=len(envelopes))
                    raise IncorrectPasswordError("Failed to decrypt vault - invalid password") from exc
            self._password = bytearray(password.encode("utf-8"))
            self._items = items
            LOG.info("vault_unlocked", account=self.account_id, items=len(items))
            return list(items)

    def lock(self):
        """Forget the decrypted items and wipe the cached password. Always succeeds."""
        with self._lock:
            was_unlocked = self._items is not None
            if self._password is not None:
                crypto.zero_bytes(self._password)
            self._password = None
            self._items = None
            if was_unlocked:
                LOG.info("vault_locked", account=self.account_id)

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------

    def read_envelopes(self) -> Optional[List[str]]:
        """Stored envelope strings, or None when this account has no vault blob yet."""
        raw = self._blobs.get(self.storage_key)
        if raw is None:
            return None
        try:
            envelopes = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise InvalidFormatError("stored vault is not a JSON envelope list") from exc
        if not isinstance(envelopes, list) or not all(isinstance(e, str) for e in envelopes):
            raise InvalidFormatError("stored vault is not a JSON envelope list")
        return envelopes

    def _map(self, fn: Callable, seq: Sequence) -> list:
        # KDF + AEAD are CPU bound; spread across threads when configured
        if self._workers > 1 and len(seq) > 1:
            with ThreadPoolExecutor(max_workers=self._workers) as pool:
                return list(pool.map(fn, seq))
        return [fn(x) for x in seq]

    def encrypt_items(self, items: Sequence[VaultItem], password: str) -> List[str]:
        """One fresh envelope per item."""
        return self._map(lambda it: crypto.encrypt(codec.encode(it), password), items)

    def decrypt_envelopes(self, envelopes: Sequence[str], password: str) -> List[VaultItem]:
        """Open every envelope; the first failure aborts the whole batch."""
        return self._map(lambda env: codec.decode(crypto.decrypt(env, password)), envelopes)

    def _persist(self, items: List[VaultItem], password: Optional[str] = None):
        pw = password if password is not None else self._session_password()
        envelopes = self.encrypt_items(items, pw)
        self._blobs.put(self.storage_key, json.dumps(envelopes).encode("utf-8"))

    def apply(self, change: Callable[[List[VaultItem]], List[VaultItem]]) -> List[VaultItem]:
        """Run `change` on a copy of the collection, persist the result, then swap it in.

        If `change` or the write raises, the in-memory collection is untouched.
        """
        with self._lock:
            current = list(self._require_items())
            updated = list(change(current))
            ids = [it.id for it in updated]
            if len(ids) != len(set(ids)):
                raise InvalidFormatError("duplicate item ids in collection")
            self._persist(updated)
            self._items = updated
            return list(updated)

    # ------------------------------------------------------------------
    # item operations
    # ------------------------------------------------------------------

    def add(self, draft: Union[ItemDraft, dict]) -> VaultItem:
        draft = draft if isinstance(draft, ItemDraft) else ItemDraft.model_validate(draft)
        with self._lock:
            existing = {it.id for it in self._require_items()}
            item_id = str(uuid.uuid4())
            while item_id in existing:
                item_id = str(uuid.uuid4())
            ts = now_ms()
            item = VaultItem(id=item_id, created_at=ts, updated_at=ts, **draft.model_dump())
            self.apply(lambda items: items + [item])
        LOG.info("item_added", account=self.account_id, item=item.id)
        return item

    def get(self, item_id: str) -> VaultItem:
        with self._lock:
            for it in self._require_items():
                if it.id == item_id:
                    return it
        raise NotFoundError(f"item not found: {item_id}")

    def update(self, item_id: str, patch: Union[ItemPatch, dict]) -> VaultItem:
        patch = patch if isinstance(patch, ItemPatch) else ItemPatch.model_validate(patch)
        with self._lock:
            current = self.get(item_id)
            data = current.model_dump()
            data.update(patch.model_dump(exclude_unset=True))
            data["id"] = current.id
            data["created_at"] = current.created_at
            data["updated_at"] = max(now_ms(), current.updated_at)
            updated = VaultItem.model_validate(data)
            self.apply(lambda items: [updated if it.id == item_id else it for it in items])
        LOG.info("item_updated", account=self.account_id, item=item_id)
        return updated

    def remove(self, item_id: str) -> bool:
        """Delete an item if present. Removing an unknown id is not an error."""
        with self._lock:
            before = len(self._require_items())
            remaining = self.apply(lambda items: [it for it in items if it.id != item_id])
        removed = len(remaining) != before
        LOG.info("item_removed", account=self.account_id, item=item_id, removed=removed)
        return removed

    def search(self, query: str) -> List[VaultItem]:
        """Case-insensitive substring match on title, username, url, notes and tags."""
        q = query.lower()
        return [it for it in self.items if _matches(it, q)]

    def change_password(self, new_password: str) -> None:
        """Re-encrypt the whole collection under a new master password."""
        with self._lock:
            items = list(self._require_items())
            self._persist(items, new_password)
            crypto.zero_bytes(self._password)
            self._password = bytearray(new_password.encode("utf-8"))
        LOG.info("master_password_changed", account=self.account_id, items=len(items))

    def session_password(self) -> str:
        """Master password of the current session (for exporting under it)."""
        with self._lock:
            return self._session_password()


def _matches(item: VaultItem, q: str) -> bool:
    fields: Iterable[str] = (item.title, item.username, item.url, item.notes)
    return any(q in f.lower() for f in fields) or any(q in t.lower() for t in item.tags)
