"""
SQLAlchemy-backed group store.

Groups live in the ``groups`` table and their distinguished-name mappings in
``group_mappings``. ORM rows never leave this module: every method converts to
and from the plain dataclasses in :mod:`ldap_group_sync.models`.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    delete,
    select,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

from ldap_group_sync.models import Group, GroupMapping, GroupRef
from ldap_group_sync.stores.base import GroupStore, PersistenceError

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class GroupRow(Base):
    """ORM model for the groups table."""

    __tablename__ = "groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    directory_id: Mapped[Optional[str]] = mapped_column(
        String(64), unique=True, index=True, nullable=True
    )
    code: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    distinguished_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    is_directory_managed: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, index=True
    )

    def __repr__(self) -> str:
        return f"<GroupRow(id={self.id}, directory_id={self.directory_id}, code={self.code})>"


class GroupMappingRow(Base):
    """ORM model for the group_mappings table."""

    __tablename__ = "group_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    distinguished_name: Mapped[str] = mapped_column(Text, nullable=False)
    group_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("groups.id", ondelete="CASCADE"), nullable=True, index=True
    )

    def __repr__(self) -> str:
        return f"<GroupMappingRow(id={self.id}, group_id={self.group_id}, dn={self.distinguished_name})>"


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops the offset, so naive values read back are UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_group(row: GroupRow) -> Group:
    return Group(
        local_id=row.id,
        directory_id=row.directory_id,
        code=row.code,
        title=row.title,
        description=row.description,
        distinguished_name=row.distinguished_name,
        last_synced_at=_utc(row.last_synced_at),
        is_directory_managed=row.is_directory_managed,
    )


def _to_mapping(row: GroupMappingRow) -> GroupMapping:
    return GroupMapping(
        distinguished_name=row.distinguished_name,
        mapping_id=row.id,
        group_id=row.group_id,
    )


class SQLGroupStore(GroupStore):
    """
    :class:`GroupStore` on top of a SQLAlchemy engine.

    Writes are flushed immediately and made durable by :meth:`commit`, so one
    reconciled record is one transaction.
    """

    def __init__(self, url: str, batch_size: int = 500, echo: bool = False,
                 create_tables: bool = True):
        """
        Initialize the store.

        Args:
            url: SQLAlchemy database URL
            batch_size: Number of ids fetched per page by the streaming scan
            echo: Log emitted SQL statements
            create_tables: Create missing tables on startup
        """
        self.url = url
        self.batch_size = batch_size
        try:
            self.engine = create_engine(url, echo=echo, future=True)
            if create_tables:
                Base.metadata.create_all(self.engine)
            self.session = Session(self.engine, expire_on_commit=False)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to open group store {url}: {e}")
        logger.debug(f"Opened SQL group store at {self.engine.url!r}")

    def _fail(self, action: str, error: Exception):
        self.session.rollback()
        raise PersistenceError(f"Failed to {action}: {error}") from error

    def find_group_by_directory_id(self, directory_id: str) -> Optional[Group]:
        try:
            row = self.session.scalars(
                select(GroupRow).where(GroupRow.directory_id == directory_id).limit(1)
            ).first()
        except SQLAlchemyError as e:
            self._fail(f"look up group {directory_id}", e)
        return _to_group(row) if row else None

    def get_group(self, local_id: int) -> Optional[Group]:
        try:
            row = self.session.get(GroupRow, local_id)
        except SQLAlchemyError as e:
            self._fail(f"load group {local_id}", e)
        return _to_group(row) if row else None

    def save_group(self, group: Group) -> None:
        values: Dict[str, Any] = {
            'directory_id': group.directory_id,
            'code': group.code,
            'title': group.title,
            'description': group.description,
            'distinguished_name': group.distinguished_name,
            'last_synced_at': _utc(group.last_synced_at),
            'is_directory_managed': group.is_directory_managed,
        }
        try:
            if group.local_id is None:
                row = GroupRow(**values)
                self.session.add(row)
            else:
                row = self.session.get(GroupRow, group.local_id)
                if row is None:
                    raise PersistenceError(f"Group {group.local_id} no longer exists")
                for key, value in values.items():
                    setattr(row, key, value)
            self.session.flush()
        except SQLAlchemyError as e:
            self._fail(f"save group {group.directory_id or group.local_id}", e)
        group.local_id = row.id

    def list_mappings(self, group: Group) -> List[GroupMapping]:
        if group.local_id is None:
            return []
        try:
            rows = self.session.scalars(
                select(GroupMappingRow)
                .where(GroupMappingRow.group_id == group.local_id)
                .order_by(GroupMappingRow.id)
            ).all()
        except SQLAlchemyError as e:
            self._fail(f"list mappings of group {group.local_id}", e)
        return [_to_mapping(row) for row in rows]

    def attach_mapping(self, group: Group, mapping: GroupMapping) -> None:
        if group.local_id is None:
            raise PersistenceError(
                f"Cannot attach mapping {mapping.distinguished_name} to unsaved group"
            )
        try:
            if mapping.mapping_id is None:
                row = GroupMappingRow(distinguished_name=mapping.distinguished_name,
                                      group_id=group.local_id)
                self.session.add(row)
            else:
                row = self.session.get(GroupMappingRow, mapping.mapping_id)
                if row is None:
                    raise PersistenceError(f"Mapping {mapping.mapping_id} no longer exists")
                row.group_id = group.local_id
            self.session.flush()
        except SQLAlchemyError as e:
            self._fail(f"attach mapping {mapping.distinguished_name}", e)
        mapping.mapping_id = row.id
        mapping.group_id = group.local_id

    def delete_mapping(self, mapping: GroupMapping) -> None:
        try:
            self.session.execute(
                delete(GroupMappingRow).where(GroupMappingRow.id == mapping.mapping_id)
            )
            self.session.flush()
        except SQLAlchemyError as e:
            self._fail(f"delete mapping {mapping.mapping_id}", e)

    def delete_group(self, group: Group) -> None:
        try:
            # SQLite only honours ON DELETE CASCADE with foreign keys enabled
            self.session.execute(
                delete(GroupMappingRow).where(GroupMappingRow.group_id == group.local_id)
            )
            self.session.execute(delete(GroupRow).where(GroupRow.id == group.local_id))
            self.session.flush()
        except SQLAlchemyError as e:
            self._fail(f"delete group {group.local_id}", e)

    def stream_directory_managed_groups(self) -> Iterator[GroupRef]:
        last_id = 0
        while True:
            try:
                rows = self.session.execute(
                    select(GroupRow.id, GroupRow.directory_id)
                    .where(GroupRow.is_directory_managed.is_(True), GroupRow.id > last_id)
                    .order_by(GroupRow.id)
                    .limit(self.batch_size)
                ).all()
            except SQLAlchemyError as e:
                self._fail("scan directory-managed groups", e)
            if not rows:
                return
            for local_id, directory_id in rows:
                yield GroupRef(local_id=local_id, directory_id=directory_id)
            last_id = rows[-1][0]

    def commit(self) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self._fail("commit", e)

    def rollback(self) -> None:
        self.session.rollback()

    def close(self) -> None:
        self.session.close()
        self.engine.dispose()
        logger.debug("SQL group store closed")
