"""Account records: master-password hashes and the TOTP second factor.

Records live under a single ``users`` key as a JSON object keyed by email.
The vault itself never reads them; it only receives the account id.
"""
from dataclasses import dataclass
from typing import Dict, Optional
import json, threading, uuid

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from . import totp
from .errors import AccountExistsError, InvalidFormatError, NotFoundError
from .logging import get_logger
from .models import AccountRecord
from .storage import BlobStore

LOG = get_logger("accounts")

USERS_KEY = "users"

ARGON2_PARAMS = dict(
    time_cost=3,
    memory_cost=64 * 1024,
    parallelism=2,
    hash_len=32,
    type=Type.ID,
)


@dataclass(frozen=True)
class Account:
    """Session handle for a logged-in account, passed explicitly to VaultStore."""
    id: str
    email: str
    totp_enabled: bool = False


@dataclass(frozen=True)
class LoginResult:
    success: bool
    requires_2fa: bool = False
    account: Optional[Account] = None


@dataclass(frozen=True)
class Enrollment:
    secret: str
    uri: str


def _handle(rec: AccountRecord) -> Account:
    return Account(id=rec.id, email=rec.email, totp_enabled=rec.totp_enabled)


class AccountStore:
    def __init__(self, blobs: BlobStore, hasher: Optional[PasswordHasher] = None):
        self._blobs = blobs
        self._hasher = hasher or PasswordHasher(**ARGON2_PARAMS)
        self._lock = threading.RLock()
        # verified against when the email is unknown, so both failures cost the same
        self._dummy_hash = self._hasher.hash(uuid.uuid4().hex)

    def _load(self) -> Dict[str, AccountRecord]:
        raw = self._blobs.get(USERS_KEY)
        if raw is None:
            return {}
        try:
            data = json.loads(raw.decode("utf-8"))
            if not isinstance(data, dict):
                raise ValueError("users blob is not an object")
            return {email: AccountRecord.model_validate(rec) for email, rec in data.items()}
        except ValueError as exc:
            raise InvalidFormatError("account records are corrupted") from exc

    def _store(self, users: Dict[str, AccountRecord]):
        payload = {email: rec.model_dump() for email, rec in users.items()}
        self._blobs.put(USERS_KEY, json.dumps(payload).encode("utf-8"))

    def get(self, email: str) -> AccountRecord:
        with self._lock:
            rec = self._load().get(email)
        if rec is None:
            raise NotFoundError(f"no account for {email}")
        return rec

    def signup(self, email: str, password: str) -> Account:
        if not email:
            raise ValueError("email is required")
        with self._lock:
            users = self._load()
            if email in users:
                raise AccountExistsError(f"account already exists: {email}")
            rec = AccountRecord(
                id=str(uuid.uuid4()),
                email=email,
                password_hash=self._hasher.hash(password),
            )
            users[email] = rec
            self._store(users)
        LOG.info("account_created", account=rec.id)
        return _handle(rec)

    def _check_password(self, rec: Optional[AccountRecord], password: str) -> bool:
        try:
            self._hasher.verify(rec.password_hash if rec else self._dummy_hash, password)
        except (VerificationError, InvalidHashError):
            return False
        return rec is not None

    def login(self, email: str, password: str, totp_code: Optional[str] = None, for_time=None) -> LoginResult:
        """Check the master password and, when enabled, the TOTP code.

        Unknown email and wrong password give the same failed result. With 2FA
        enabled and no code supplied the result asks for the second factor.
        """
        with self._lock:
            users = self._load()
            rec = users.get(email)
            if not self._check_password(rec, password):
                LOG.warning("login_failed", email=email)
                return LoginResult(success=False)
            if rec.totp_enabled:
                if not totp_code:
                    return LoginResult(success=False, requires_2fa=True)
                if not totp.verify(rec.totp_secret, totp_code, for_time=for_time):
                    LOG.warning("login_totp_failed", account=rec.id)
                    return LoginResult(success=False)
            if self._hasher.check_needs_rehash(rec.password_hash):
                users[email] = rec.model_copy(update={"password_hash": self._hasher.hash(password)})
                self._store(users)
        LOG.info("login_succeeded", account=rec.id)
        return LoginResult(success=True, account=_handle(rec))

    def change_password(self, account: Account, new_password: str) -> None:
        with self._lock:
            users = self._load()
            rec = users[account.email]
            users[account.email] = rec.model_copy(update={"password_hash": self._hasher.hash(new_password)})
            self._store(users)

    def begin_enrollment(self, account: Account, issuer: str = "CredVault") -> Enrollment:
        """Fresh secret and provisioning URI. Nothing is stored until `enable_2fa`."""
        secret = totp.generate_secret()
        return Enrollment(secret=secret, uri=totp.provisioning_uri(secret, account.email, issuer))

    def enable_2fa(self, account: Account, secret: str, code: str, for_time=None) -> Optional[Account]:
        """Persist `secret` if `code` verifies against it; returns the updated handle or None."""
        if not totp.verify(secret, code, for_time=for_time):
            LOG.warning("totp_enable_rejected", account=account.id)
            return None
        with self._lock:
            users = self._load()
            rec = users.get(account.email)
            if rec is None:
                return None
            rec = rec.model_copy(update={"totp_enabled": True, "totp_secret": secret})
            users[account.email] = rec
            self._store(users)
        LOG.info("totp_enabled", account=account.id)
        return _handle(rec)

    def disable_2fa(self, account: Account, code: str, for_time=None) -> Optional[Account]:
        """Erase the secret after checking a current code; returns the updated handle or None."""
        with self._lock:
            users = self._load()
            rec = users.get(account.email)
            if rec is None or not rec.totp_enabled:
                return None
            if not totp.verify(rec.totp_secret, code, for_time=for_time):
                LOG.warning("totp_disable_rejected", account=account.id)
                return None
            rec = rec.model_copy(update={"totp_enabled": False, "totp_secret": None})
            users[account.email] = rec
            self._store(users)
        LOG.info("totp_disabled", account=account.id)
        return _handle(rec)

    def get_2fa_secret(self, account: Account) -> Optional[str]:
        with self._lock:
            rec = self._load().get(account.email)
        return rec.totp_secret if rec else None
