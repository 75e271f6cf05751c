import time
from contextlib import contextmanager

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from .config import DB_PATH, ROOT_GROUP_ID, ROOT_GROUP_NAME
from .errors import StoreUnavailable
from .logging import logger


# -----------------------------------------
# SQLAlchemy Base
# -----------------------------------------
class Base(DeclarativeBase):
    pass


def _describe(exc: SQLAlchemyError) -> str:
    # the DBAPI message only; the wrapper text would echo bound parameters
    orig = getattr(exc, "orig", None)
    return str(orig) if orig is not None else exc.__class__.__name__


def _enable_foreign_keys(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# -----------------------------------------
# STORE
# -----------------------------------------
class Store:
    """
    Transactional handle to the vault database.

    One Store per vault file; pass it explicitly to Vault, Repository and the
    import/backup codecs. Sessions are short-lived and opened per transaction,
    so a Store can be shared with the CSV import worker thread.
    """

    def __init__(self, url: str | None = None):
        self.url = url or f"sqlite:///{DB_PATH}"
        self.engine = create_engine(
            self.url,
            future=True,
            connect_args={"check_same_thread": False} if self.url.startswith("sqlite") else {},
        )
        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine, "connect", _enable_foreign_keys)
        self._session_factory = sessionmaker(bind=self.engine, autocommit=False, autoflush=False)

    @classmethod
    def open(cls, path: str | None = None) -> "Store":
        store = cls(f"sqlite:///{path}" if path else None)
        store.ensure_schema()
        return store

    @contextmanager
    def transaction(self):
        """
        Yield a session; commit when the block exits normally, roll back on
        any exception. Database errors come out as StoreUnavailable.
        """
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Transaction rolled back: %s", _describe(exc))
            raise StoreUnavailable(f"Database operation failed: {_describe(exc)}") from exc
        except BaseException:
            db.rollback()
            raise
        finally:
            db.close()

    def dispose(self):
        self.engine.dispose()

    # -----------------------------------------
    # INITIALIZE SCHEMA
    # -----------------------------------------
    def ensure_schema(self):
        try:
            self.init_db()
            self.seed_root_group()
            self.run_migrations()
        except SQLAlchemyError as exc:
            logger.error("Schema bootstrap failed: %s", _describe(exc))
            raise StoreUnavailable(f"Cannot prepare database: {_describe(exc)}") from exc

    def init_db(self):
        """
        Create tables if they do not exist.
        Does NOT handle migrations by itself.
        """
        from . import models  # noqa
        Base.metadata.create_all(bind=self.engine)

    def seed_root_group(self):
        now = int(time.time())
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    "INSERT OR IGNORE INTO groups(id, parent_id, name, created_at, updated_at) "
                    "VALUES(:id, NULL, :name, :now, :now)"
                ),
                {"id": ROOT_GROUP_ID, "name": ROOT_GROUP_NAME, "now": now},
            )

    # -----------------------------------------
    # SCHEMA VERSION TABLE
    # -----------------------------------------
    def get_current_version(self, conn) -> int:
        inspector = inspect(conn)

        # Before version table exists
        if "schema_version" not in inspector.get_table_names():
            return 0

        result = conn.execute(text("SELECT version FROM schema_version LIMIT 1")).fetchone()
        if not result:
            return 0

        return result[0]

    # -----------------------------------------
    # AUTOMATIC MIGRATIONS
    # -----------------------------------------
    def run_migrations(self):
        """
        Automatic database migration handler.
        Brings databases written by older releases up to the current schema.
        """
        with self.engine.begin() as conn:
            version = self.get_current_version(conn)

            # -------------------------------------
            # MIGRATION 0 → 1:
            # Entries gained a group and a credential type
            # -------------------------------------
            if version < 1:
                logger.info("[MIGRATION] Starting migration 0 → 1")

                columns = [c["name"] for c in inspect(conn).get_columns("password_entries")]

                if "group_id" not in columns:
                    logger.info("[MIGRATION] Adding 'group_id' column to password_entries")
                    conn.execute(text(
                        "ALTER TABLE password_entries ADD COLUMN group_id INTEGER NOT NULL DEFAULT 1"
                    ))

                if "entry_type" not in columns:
                    logger.info("[MIGRATION] Adding 'entry_type' column to password_entries")
                    conn.execute(text(
                        "ALTER TABLE password_entries ADD COLUMN entry_type INTEGER NOT NULL DEFAULT 0"
                    ))

                conn.execute(text(
                    "CREATE INDEX IF NOT EXISTS idx_password_entries_group_id "
                    "ON password_entries(group_id)"
                ))
                conn.execute(text(
                    "CREATE INDEX IF NOT EXISTS idx_password_entries_entry_type "
                    "ON password_entries(entry_type)"
                ))

                conn.execute(text("DELETE FROM schema_version"))
                conn.execute(text("INSERT INTO schema_version (version) VALUES (1)"))

                logger.info("[MIGRATION] Migration 0 → 1 complete")

        logger.info("[MIGRATION] Database schema up-to-date")
