"""
Error taxonomy for the vault core.

Every public operation of Vault, Repository, CsvImportEngine and BackupCodec
raises only subclasses of VaultError; infrastructure exceptions are caught at
those boundaries and re-raised as one of these with the cause chained.
Messages are meant for the user and never contain secret material.
"""


class VaultError(Exception):
    """Base class for every failure surfaced by the vault core."""

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__doc__ or self.__class__.__name__)

    @property
    def message(self) -> str:
        return str(self)


class NotInitialized(VaultError):
    """Vault is not initialized"""


class AlreadyInitialized(VaultError):
    """Vault is already initialized"""


class WrongPassword(VaultError):
    """Wrong master password"""


class WrongPassphraseOrCorrupt(VaultError):
    """Wrong backup passphrase or corrupted backup"""


class NotUnlocked(VaultError):
    """Vault is locked"""


class EmptyInput(VaultError):
    """Required value is empty"""


class InvalidArgument(VaultError):
    """Invalid argument"""


class NotFound(InvalidArgument):
    """Record not found"""


class RootGroupProtected(InvalidArgument):
    """The root group cannot be renamed or deleted"""


class NotEmpty(VaultError):
    """Group is not empty"""


class DuplicateName(VaultError):
    """Name already exists"""


class DecryptionFailed(VaultError):
    """Decryption failed: data is corrupted or the key does not match"""


class UnrecognizedFormat(VaultError):
    """Unrecognized format"""


class StoreUnavailable(VaultError):
    """Database operation failed"""


class Canceled(VaultError):
    """Operation canceled"""
