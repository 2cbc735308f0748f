"""
Plain data records exchanged between the directory reader, the reconciliation
engine and the local group stores.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class DirectoryGroupRecord:
    """A group object as read from the directory for one run."""

    directory_id: Optional[str]
    account_name: Optional[str]
    distinguished_name: Optional[str]
    display_name: Optional[str] = None
    description: Optional[str] = None


@dataclass
class Group:
    """Local group entity. ``local_id`` is None until the store persists it."""

    local_id: Optional[int] = None
    directory_id: Optional[str] = None
    code: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    distinguished_name: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    is_directory_managed: bool = False

    def get_title(self) -> str:
        return self.title or self.code or f"#{self.local_id}"


@dataclass
class GroupMapping:
    """Binds a group to a distinguished name in the directory."""

    distinguished_name: str
    mapping_id: Optional[int] = None
    group_id: Optional[int] = None


@dataclass(frozen=True)
class GroupRef:
    """Lightweight reference yielded by the directory-managed group scan."""

    local_id: int
    directory_id: Optional[str]


@dataclass
class RunSummary:
    """Counters for a single reconciliation run."""

    processed_count: int = 0
    created_count: int = 0
    updated_count: int = 0
    deleted_count: int = 0
    skipped_count: int = 0
    duration_seconds: float = 0.0
    destructive: bool = False
    interrupted: bool = False
    started_at: Optional[datetime] = field(default=None, compare=False)

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.started_at is not None:
            data['started_at'] = self.started_at.isoformat()
        return data
