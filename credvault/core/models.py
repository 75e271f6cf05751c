from sqlalchemy import (
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
)

from .db import Base


class VaultMeta(Base):
    __tablename__ = "vault_meta"
    __table_args__ = (CheckConstraint("id = 1", name="ck_vault_meta_singleton"),)

    id = Column(Integer, primary_key=True)
    kdf_salt = Column(LargeBinary, nullable=False)
    kdf_iterations = Column(Integer, nullable=False)
    verifier = Column(LargeBinary, nullable=False)
    created_at = Column(Integer, nullable=False)
    updated_at = Column(Integer, nullable=False)


class Group(Base):
    __tablename__ = "groups"
    __table_args__ = (UniqueConstraint("parent_id", "name"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    parent_id = Column(Integer, ForeignKey("groups.id"), nullable=True)
    name = Column(Text, nullable=False)
    created_at = Column(Integer, nullable=False)
    updated_at = Column(Integer, nullable=False)


class Entry(Base):
    __tablename__ = "password_entries"
    __table_args__ = (
        Index("idx_password_entries_category", "category"),
        Index("idx_password_entries_group_id", "group_id"),
        Index("idx_password_entries_entry_type", "entry_type"),
        Index("idx_password_entries_updated_at", "updated_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    group_id = Column(Integer, nullable=False, default=1, server_default="1")
    entry_type = Column(Integer, nullable=False, default=0, server_default="0")
    title = Column(Text, nullable=False)
    username = Column(Text)
    password_enc = Column(LargeBinary, nullable=False)
    url = Column(Text)
    category = Column(Text)
    notes_enc = Column(LargeBinary)
    created_at = Column(Integer, nullable=False)
    updated_at = Column(Integer, nullable=False)


class Tag(Base):
    __tablename__ = "tags"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, unique=True, nullable=False)
    created_at = Column(Integer, nullable=False)
    updated_at = Column(Integer, nullable=False)


class EntryTag(Base):
    __tablename__ = "entry_tags"
    __table_args__ = (Index("idx_entry_tags_tag_id", "tag_id"),)

    entry_id = Column(
        Integer, ForeignKey("password_entries.id", ondelete="CASCADE"), primary_key=True
    )
    tag_id = Column(Integer, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True)
    created_at = Column(Integer, nullable=False)


class CommonPassword(Base):
    __tablename__ = "common_passwords"
    __table_args__ = (Index("idx_common_passwords_updated_at", "updated_at"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, unique=True, nullable=False)
    password_enc = Column(LargeBinary, nullable=False)
    notes_enc = Column(LargeBinary)
    created_at = Column(Integer, nullable=False)
    updated_at = Column(Integer, nullable=False)


class SchemaVersion(Base):
    __tablename__ = "schema_version"

    version = Column(Integer, primary_key=True, nullable=False)
