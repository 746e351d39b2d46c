class CredVaultError(Exception):
    """Base class for every error raised by credvault."""


class DecryptionError(CredVaultError, ValueError):
    """An envelope could not be opened: malformed, tampered, or wrong password."""


class IncorrectPasswordError(DecryptionError):
    """Unlock failed authentication. Indistinguishable from corrupted ciphertext."""


class MalformedRecordError(CredVaultError, ValueError):
    """A decrypted record is missing required fields or is not a record at all."""


class InvalidFormatError(CredVaultError, ValueError):
    """Stored or imported data does not have the expected document shape."""


class NotFoundError(CredVaultError, KeyError):
    """No item with the requested id exists in the unlocked collection."""

    def __str__(self):
        return Exception.__str__(self)


class InvalidSecretError(CredVaultError, ValueError):
    """A TOTP secret contains characters outside the Base32 alphabet."""


class VaultLockedError(CredVaultError, RuntimeError):
    """Operation requires an unlocked vault."""


class AccountExistsError(CredVaultError, ValueError):
    """Signup attempted for an email that already has an account."""
