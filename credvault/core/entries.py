from dataclasses import dataclass, field
from enum import IntEnum

from .config import ROOT_GROUP_ID


class EntryType(IntEnum):
    WEB_LOGIN = 0
    DESKTOP_CLIENT = 1
    API_KEY_TOKEN = 2
    DATABASE_CREDENTIAL = 3
    SERVER_SSH = 4
    DEVICE_WIFI = 5

    @classmethod
    def from_int(cls, value) -> "EntryType":
        """Decode a stored integer; unknown values fall back to WEB_LOGIN."""
        try:
            return cls(int(value))
        except (TypeError, ValueError):
            return cls.WEB_LOGIN

    @classmethod
    def parse(cls, text: str, default: "EntryType") -> "EntryType":
        """Accept an integer, a member name or a display label (case-insensitive)."""
        value = (text or "").strip()
        if not value:
            return default
        if value.lstrip("-").isdigit():
            return cls.from_int(value)
        key = value.lower()
        for member in cls:
            if key in (member.name.lower(), member.label.lower()):
                return member
        return default

    @property
    def label(self) -> str:
        return _LABELS[self]


_LABELS = {
    EntryType.WEB_LOGIN: "Web login",
    EntryType.DESKTOP_CLIENT: "Desktop/Client",
    EntryType.API_KEY_TOKEN: "API key/Token",
    EntryType.DATABASE_CREDENTIAL: "Database credential",
    EntryType.SERVER_SSH: "Server/SSH",
    EntryType.DEVICE_WIFI: "Device/Wi-Fi",
}


@dataclass
class PasswordGroup:
    id: int
    parent_id: int  # 0 for the root group
    name: str


@dataclass
class PasswordEntry:
    """Index metadata of an entry; never carries secret material."""

    id: int = 0
    group_id: int = ROOT_GROUP_ID
    type: EntryType = EntryType.WEB_LOGIN
    title: str = ""
    username: str = ""
    url: str = ""
    category: str = ""
    tags: list[str] = field(default_factory=list)
    created_at: int = 0
    updated_at: int = 0


@dataclass
class PasswordEntrySecrets:
    entry: PasswordEntry = field(default_factory=PasswordEntry)
    password: str = ""
    notes: str = ""

    def __repr__(self) -> str:
        return f"PasswordEntrySecrets(entry={self.entry!r}, password=***, notes=***)"


@dataclass
class CommonPasswordSummary:
    id: int = 0
    name: str = ""
    created_at: int = 0
    updated_at: int = 0


@dataclass
class CommonPasswordSecrets:
    item: CommonPasswordSummary = field(default_factory=CommonPasswordSummary)
    password: str = ""
    notes: str = ""

    def __repr__(self) -> str:
        return f"CommonPasswordSecrets(item={self.item!r}, password=***, notes=***)"


def normalize_tags(tags) -> list[str]:
    """Trim, drop empties, de-duplicate case-insensitively keeping first-seen casing."""
    out = []
    seen = set()
    for tag in tags or []:
        trimmed = (tag or "").strip()
        if not trimmed:
            continue
        key = trimmed.casefold()
        if key in seen:
            continue
        seen.add(key)
        out.append(trimmed)
    return out


class GroupTree:
    """
    Parent/child index over a flat group list.

    Derived from Repository.list_groups(); rebuild it after group changes
    rather than mutating it.
    """

    def __init__(self, groups: list[PasswordGroup]):
        self._groups = {g.id: g for g in groups}
        self._children: dict[int, list[int]] = {}
        for g in groups:
            self._children.setdefault(g.parent_id or 0, []).append(g.id)

    def __contains__(self, group_id) -> bool:
        return group_id in self._groups

    def __len__(self) -> int:
        return len(self._groups)

    def get(self, group_id: int) -> PasswordGroup | None:
        return self._groups.get(group_id)

    def children(self, group_id: int) -> list[PasswordGroup]:
        return [self._groups[i] for i in self._children.get(group_id, [])]

    def descendant_ids(self, group_id: int) -> list[int]:
        """The group itself followed by every group below it."""
        if group_id not in self._groups:
            return []
        out = []
        stack = [group_id]
        while stack:
            current = stack.pop()
            if current in out:
                continue
            out.append(current)
            stack.extend(reversed(self._children.get(current, [])))
        return out

    def path(self, group_id: int) -> list[str]:
        """Names from the first level below root down to the group."""
        names = []
        seen = set()
        current = self._groups.get(group_id)
        while current is not None and current.id != ROOT_GROUP_ID and current.id not in seen:
            seen.add(current.id)
            names.append(current.name)
            current = self._groups.get(current.parent_id)
        names.reverse()
        return names
