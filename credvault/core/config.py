import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.getenv("CREDVAULT_DATA_DIR", str(BASE_DIR / "data")))
DATA_DIR.mkdir(parents=True, exist_ok=True)

DB_PATH = os.getenv("CREDVAULT_DB_PATH", str(DATA_DIR / "vault.db"))
LOG_PATH = os.getenv("CREDVAULT_LOG_PATH", str(DATA_DIR / "credvault.log"))

KDF_ITERATIONS = int(os.getenv("CREDVAULT_KDF_ITERATIONS", "120000"))
BACKUP_KDF_ITERATIONS = int(os.getenv("CREDVAULT_BACKUP_KDF_ITERATIONS", "120000"))
SALT_SIZE = 16
KEY_SIZE = 32

ROOT_GROUP_ID = 1
ROOT_GROUP_NAME = "All"

BACKUP_FORMAT = "CredVaultBackup"
BACKUP_VERSION = 1

CSV_TAG_DELIMITER = ";"

SESSION_MINUTES = int(os.getenv("CREDVAULT_SESSION_MINUTES", "15"))
